from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from botflow.core.config import CrossrefConfig, app_config
from botflow.core.mail import EmailService
from botflow.models.actions import ActionContext
from botflow.models.manuscript import MessagePrivacy
from botflow.services.conversation_service import ConversationService
from botflow.services.editorial_service import ManuscriptStateMachine
from botflow.services.effects import EffectDispatcher
from botflow.services.reminder_service import ReminderService
from botflow.services.user_service import UserService

logger = logging.getLogger("bot_actions")


@dataclass
class ActionServices:
    """action handler 共享的协作者（启动时构建一次）。"""

    state_machine: ManuscriptStateMachine
    conversations: ConversationService
    users: UserService
    effects: EffectDispatcher
    email: EmailService
    reminders: ReminderService
    crossref: CrossrefConfig


def now_label() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M UTC")


def today_label() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d")


def conversation_url(conversation_id: str) -> str:
    return f"{app_config.frontend_url}/conversations/{conversation_id}"


def manuscript_url(manuscript_id: str) -> str:
    return f"{app_config.frontend_url}/manuscripts/{manuscript_id}"


def post_note(
    services: ActionServices,
    *,
    conversation_id: str | None,
    author_id: str,
    content: str,
    privacy: MessagePrivacy = MessagePrivacy.EDITOR_ONLY,
    metadata: dict[str, Any] | None = None,
) -> dict[str, Any] | None:
    """
    在会话里写一条 bot 说明消息。

    中文注释: 事件/流水线触发时可能没有会话（conversation_id 为空），此时只记日志。
    """
    if not conversation_id:
        logger.info("No conversation to post note into: %s", content.splitlines()[0] if content else "")
        return None
    return services.conversations.create_message(
        conversation_id=conversation_id,
        author_id=author_id,
        content=content,
        privacy=privacy,
        is_bot=True,
        metadata=metadata,
    )


def editorial_conversation_id(services: ActionServices, manuscript_id: str) -> str | None:
    conv = services.conversations.find_first_conversation(manuscript_id, "EDITORIAL")
    return str(conv["id"]) if conv else None


def ctx_author(ctx: ActionContext, override: str | None = None) -> str:
    return override or ctx.user_id
