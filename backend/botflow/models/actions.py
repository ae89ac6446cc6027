from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

logger = logging.getLogger("bot_actions")


class ActionKind(str, Enum):
    """Bot 响应中可携带的动作种类（闭合集合）。"""

    ASSIGN_REVIEWER = "ASSIGN_REVIEWER"
    UPDATE_MANUSCRIPT_STATUS = "UPDATE_MANUSCRIPT_STATUS"
    CREATE_CONVERSATION = "CREATE_CONVERSATION"
    RESPOND_TO_REVIEW = "RESPOND_TO_REVIEW"
    SUBMIT_REVIEW = "SUBMIT_REVIEW"
    MAKE_EDITORIAL_DECISION = "MAKE_EDITORIAL_DECISION"
    ASSIGN_ACTION_EDITOR = "ASSIGN_ACTION_EDITOR"
    EXECUTE_PUBLICATION_WORKFLOW = "EXECUTE_PUBLICATION_WORKFLOW"
    UPDATE_WORKFLOW_PHASE = "UPDATE_WORKFLOW_PHASE"
    SEND_MANUAL_REMINDER = "SEND_MANUAL_REMINDER"


@dataclass(frozen=True)
class ActionContext:
    """
    同一批 action 共享的上下文。

    中文注释: 整批固定不变，不会因为某个 action 失败而被替换或丢弃。
    """

    manuscript_id: str
    user_id: str
    conversation_id: str


class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


# === 各 action 的 payload ===


class AssignReviewerData(_Payload):
    reviewers: list[str] = Field(..., min_length=1)
    deadline: Optional[str] = None
    custom_message: Optional[str] = Field(None, alias="customMessage")

    @field_validator("reviewers")
    @classmethod
    def _strip_emails(cls, v: list[str]) -> list[str]:
        cleaned = [str(e).strip() for e in v if str(e or "").strip()]
        if not cleaned:
            raise ValueError("reviewers must contain at least one email")
        return cleaned


class UpdateManuscriptStatusData(_Payload):
    # 中文注释: status 不在这里限定枚举，由状态机统一拒绝越界值
    status: str
    reason: Optional[str] = None


class CreateConversationData(_Payload):
    title: str = Field(..., min_length=1)
    type: Optional[str] = None
    privacy: Optional[str] = None
    participant_ids: list[str] = Field(default_factory=list, alias="participantIds")


class RespondToReviewData(_Payload):
    assignment_id: str = Field(..., alias="assignmentId")
    response: Literal["ACCEPT", "DECLINE"]
    message: Optional[str] = None

    @field_validator("response", mode="before")
    @classmethod
    def _upper(cls, v: Any) -> Any:
        return str(v).strip().upper() if v is not None else v


class SubmitReviewData(_Payload):
    assignment_id: str = Field(..., alias="assignmentId")
    review_content: str = Field(..., alias="reviewContent")
    recommendation: str
    confidential_comments: Optional[str] = Field(None, alias="confidentialComments")
    score: Optional[float] = None


class MakeEditorialDecisionData(_Payload):
    decision: str
    status: str
    revision_type: Optional[str] = Field(None, alias="revisionType")


class AssignActionEditorData(_Payload):
    editor: str = Field(..., min_length=1)
    custom_message: Optional[str] = Field(None, alias="customMessage")
    assigned_by: Optional[str] = Field(None, alias="assignedBy")


class ExecutePublicationWorkflowData(_Payload):
    manuscript_id: Optional[str] = Field(None, alias="manuscriptId")
    accepted_date: Optional[str] = Field(None, alias="acceptedDate")
    reason: Optional[str] = None
    triggered_by: Optional[str] = Field(None, alias="triggeredBy")


class UpdateWorkflowPhaseData(_Payload):
    phase: str
    decision: Optional[str] = None
    notes: Optional[str] = None
    require_all_reviews_complete: bool = Field(False, alias="requireAllReviewsComplete")


class SendManualReminderData(_Payload):
    reviewer: str = Field(..., min_length=1)
    custom_message: Optional[str] = Field(None, alias="customMessage")
    triggered_by: Optional[str] = Field(None, alias="triggeredBy")


# === 带标签的 action 信封 ===


class AssignReviewerAction(BaseModel):
    type: Literal["ASSIGN_REVIEWER"]
    data: AssignReviewerData


class UpdateManuscriptStatusAction(BaseModel):
    type: Literal["UPDATE_MANUSCRIPT_STATUS"]
    data: UpdateManuscriptStatusData


class CreateConversationAction(BaseModel):
    type: Literal["CREATE_CONVERSATION"]
    data: CreateConversationData


class RespondToReviewAction(BaseModel):
    type: Literal["RESPOND_TO_REVIEW"]
    data: RespondToReviewData


class SubmitReviewAction(BaseModel):
    type: Literal["SUBMIT_REVIEW"]
    data: SubmitReviewData


class MakeEditorialDecisionAction(BaseModel):
    type: Literal["MAKE_EDITORIAL_DECISION"]
    data: MakeEditorialDecisionData


class AssignActionEditorAction(BaseModel):
    type: Literal["ASSIGN_ACTION_EDITOR"]
    data: AssignActionEditorData


class ExecutePublicationWorkflowAction(BaseModel):
    type: Literal["EXECUTE_PUBLICATION_WORKFLOW"]
    data: ExecutePublicationWorkflowData = Field(default_factory=ExecutePublicationWorkflowData)


class UpdateWorkflowPhaseAction(BaseModel):
    type: Literal["UPDATE_WORKFLOW_PHASE"]
    data: UpdateWorkflowPhaseData


class SendManualReminderAction(BaseModel):
    type: Literal["SEND_MANUAL_REMINDER"]
    data: SendManualReminderData


BotAction = Annotated[
    Union[
        AssignReviewerAction,
        UpdateManuscriptStatusAction,
        CreateConversationAction,
        RespondToReviewAction,
        SubmitReviewAction,
        MakeEditorialDecisionAction,
        AssignActionEditorAction,
        ExecutePublicationWorkflowAction,
        UpdateWorkflowPhaseAction,
        SendManualReminderAction,
    ],
    Field(discriminator="type"),
]

_bot_action_adapter: TypeAdapter[BotAction] = TypeAdapter(BotAction)


class UnknownBotAction(BaseModel):
    """未注册的 action 种类：ActionProcessor 记 warning 后跳过。"""

    type: str
    data: dict[str, Any] = Field(default_factory=dict)


class InvalidBotAction(BaseModel):
    """已知种类但 payload 校验失败：ActionProcessor 记为该 action 失败，不影响其余 action。"""

    type: ActionKind
    data: Any = None
    error: str


ParsedAction = Union[
    AssignReviewerAction,
    UpdateManuscriptStatusAction,
    CreateConversationAction,
    RespondToReviewAction,
    SubmitReviewAction,
    MakeEditorialDecisionAction,
    AssignActionEditorAction,
    ExecutePublicationWorkflowAction,
    UpdateWorkflowPhaseAction,
    SendManualReminderAction,
    UnknownBotAction,
    InvalidBotAction,
]

_KNOWN_KINDS = {k.value for k in ActionKind}


def parse_bot_action(raw: Any) -> ParsedAction:
    """
    在进程边界把单个 action 解析为强类型对象。

    中文注释:
    - 逐个解析：一个 action 的 payload 非法不会连累同批其他 action。
    - kind 不在闭合集合内 -> UnknownBotAction；kind 已知但 payload 非法 -> InvalidBotAction。
    """

    if isinstance(raw, BaseModel):
        if isinstance(raw, (UnknownBotAction, InvalidBotAction)):
            return raw
        raw = raw.model_dump(by_alias=True)

    if not isinstance(raw, dict):
        return UnknownBotAction(type=str(type(raw).__name__), data={})

    raw_kind = raw.get("type")
    kind = str(raw_kind.value if isinstance(raw_kind, Enum) else (raw_kind or "")).strip()
    if kind not in _KNOWN_KINDS:
        data = raw.get("data")
        return UnknownBotAction(type=kind, data=data if isinstance(data, dict) else {})

    try:
        return _bot_action_adapter.validate_python({**raw, "type": kind})
    except ValidationError as e:
        logger.warning("Invalid payload for bot action %s: %s", kind, e)
        return InvalidBotAction(type=ActionKind(kind), data=raw.get("data"), error=str(e))


def parse_bot_actions(raw_actions: Any) -> list[ParsedAction]:
    if not raw_actions:
        return []
    if not isinstance(raw_actions, (list, tuple)):
        raw_actions = [raw_actions]
    return [parse_bot_action(a) for a in raw_actions]
