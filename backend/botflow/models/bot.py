from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from botflow.core.security import ServiceCredential
from botflow.models.actions import ParsedAction, parse_bot_actions
from botflow.models.manuscript import MessagePrivacy


class BotPermission(str, Enum):
    READ_MANUSCRIPT = "read_manuscript"
    READ_MANUSCRIPT_FILES = "read_manuscript_files"
    UPLOAD_FILES = "upload_files"
    UPDATE_MANUSCRIPT = "update_manuscript"
    ASSIGN_REVIEWERS = "assign_reviewers"
    MAKE_EDITORIAL_DECISION = "make_editorial_decision"


class BotEventName(str, Enum):
    MANUSCRIPT_SUBMITTED = "manuscript.submitted"
    MANUSCRIPT_STATUS_CHANGED = "manuscript.statusChanged"
    FILE_UPLOADED = "file.uploaded"
    REVIEWER_ASSIGNED = "reviewer.assigned"
    REVIEWER_STATUS_CHANGED = "reviewer.statusChanged"
    WORKFLOW_PHASE_CHANGED = "workflow.phaseChanged"
    DECISION_RELEASED = "decision.released"


class TriggerKind(str, Enum):
    MENTION = "MENTION"
    EVENT = "EVENT"


# 事件 / 流水线触发时使用的固定操作者
SYSTEM_USER_ID = "system"


class BotMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    content: str
    reply_to: Optional[str] = Field(None, alias="replyTo")
    privacy: Optional[MessagePrivacy] = None

    @field_validator("privacy", mode="before")
    @classmethod
    def _normalize_privacy(cls, v: Any) -> Any:
        if v is None or isinstance(v, MessagePrivacy):
            return v
        raw = str(v).strip().upper().replace("-", "_")
        return raw or None


class BotResponse(BaseModel):
    """
    单次 bot 调用的结果。

    中文注释:
    - actions 在这里逐个解析（见 parse_bot_actions），未知种类 / 非法 payload 各自独立标记。
    - errors 非空时：消息与 action 仍会落地，但流水线不再推进。
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore", arbitrary_types_allowed=True)

    bot_id: Optional[str] = Field(None, alias="botId")
    messages: list[BotMessage] = Field(default_factory=list)
    actions: list[Any] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)

    @field_validator("actions", mode="before")
    @classmethod
    def _parse_actions(cls, v: Any) -> list[ParsedAction]:
        return parse_bot_actions(v)

    @field_validator("errors", mode="before")
    @classmethod
    def _stringify_errors(cls, v: Any) -> list[str]:
        if not v:
            return []
        if isinstance(v, str):
            return [v]
        return [str(e) for e in v]

    @classmethod
    def failure(cls, bot_id: str, *errors: str) -> "BotResponse":
        return cls(bot_id=bot_id, errors=list(errors))


@dataclass(frozen=True)
class TriggeredBy:
    message_id: str
    user_id: str
    trigger: TriggerKind
    user_role: Optional[str] = None


@dataclass
class BotInvocationContext:
    """
    传给 bot 业务逻辑的执行上下文（每个 job 新建，从不持久化）。

    中文注释: manuscript/files/conversation 是尽力预取的快照，预取失败时为 None。
    """

    manuscript_id: str
    conversation_id: str
    triggered_by: TriggeredBy
    credential: ServiceCredential
    journal: dict[str, Any] = field(default_factory=dict)
    config: dict[str, Any] = field(default_factory=dict)
    manuscript: Optional[dict[str, Any]] = None
    files: Optional[list[dict[str, Any]]] = None
    conversation: Optional[dict[str, Any]] = None

    @property
    def service_token(self) -> str:
        return self.credential.token


CommandExecutor = Callable[[dict[str, Any], BotInvocationContext], Awaitable[Any]]
EventHandler = Callable[[BotInvocationContext, dict[str, Any]], Awaitable[Any]]


@dataclass(frozen=True)
class CommandParameter:
    name: str
    required: bool = False
    default: Any = None
    description: str = ""


@dataclass(frozen=True)
class BotCommand:
    name: str
    execute: CommandExecutor
    parameters: tuple[CommandParameter, ...] = ()
    permissions: tuple[str, ...] = ()
    description: str = ""


@dataclass(frozen=True)
class BotPlugin:
    """
    Bot 插件定义（由 BOT_PLUGINS 指向的 `module:attr` 加载）。

    中文注释:
    - commands: 显式 @mention 调用。
    - events: 事件名 -> handler，事件触发时调用。
    - event_permissions: 事件 handler 的声明权限；缺省回退到插件级 permissions。
    """

    id: str
    name: str
    commands: tuple[BotCommand, ...] = ()
    events: dict[str, EventHandler] = field(default_factory=dict)
    permissions: tuple[str, ...] = ()
    event_permissions: dict[str, tuple[str, ...]] = field(default_factory=dict)
    default_config: dict[str, Any] = field(default_factory=dict)

    def get_command(self, name: str) -> Optional[BotCommand]:
        for cmd in self.commands:
            if cmd.name == name:
                return cmd
        return None

    def permissions_for_event(self, event_name: str) -> tuple[str, ...]:
        return tuple(self.event_permissions.get(event_name) or self.permissions)
