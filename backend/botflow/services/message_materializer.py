from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

from botflow.models.bot import BotMessage
from botflow.models.manuscript import MessagePrivacy
from botflow.services.bot_registry import BotRegistry
from botflow.services.broadcaster import Broadcaster
from botflow.services.conversation_service import ConversationService

logger = logging.getLogger("message_materializer")


class MessageMaterializer:
    """
    把 bot 响应中的消息写入会话，并推送 new-message 事件。

    中文注释:
    - 作者为 bot 对应的用户身份；映射缺失时该条消息跳过（warning），其余消息照常处理。
    - 可见性缺省 AUTHOR_VISIBLE；消息自带 privacy 时以消息为准。
    - 推送失败只记日志，不影响已写入的消息。
    """

    def __init__(
        self,
        *,
        registry: BotRegistry,
        conversations: ConversationService,
        broadcaster: Broadcaster,
    ):
        self.registry = registry
        self.conversations = conversations
        self.broadcaster = broadcaster

    async def materialize(
        self,
        *,
        bot_id: str,
        messages: list[BotMessage],
        conversation_id: str,
        manuscript_id: Optional[str] = None,
        parent_id: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        if not messages:
            return []
        if not conversation_id:
            logger.warning("Bot %s produced %s message(s) but there is no conversation to post into", bot_id, len(messages))
            return []

        created: list[dict[str, Any]] = []
        for message in messages:
            author_id = self.registry.get_bot_user_id(bot_id)
            if not author_id:
                logger.warning("No user ID found for bot %s; skipping message", bot_id)
                continue
            row = await asyncio.to_thread(
                self.conversations.create_message,
                conversation_id=conversation_id,
                author_id=author_id,
                content=message.content,
                privacy=message.privacy or MessagePrivacy.AUTHOR_VISIBLE,
                parent_id=message.reply_to or parent_id,
                is_bot=True,
            )
            created.append(row)
            try:
                await asyncio.to_thread(self.broadcaster.new_message, conversation_id, row, manuscript_id)
            except Exception as e:
                logger.error("Failed to broadcast bot message %s: %s", row.get("id"), e)
        return created

    async def post_as_bot(
        self,
        *,
        bot_id: str,
        conversation_id: str,
        content: str,
        parent_id: Optional[str] = None,
        manuscript_id: Optional[str] = None,
    ) -> Optional[dict[str, Any]]:
        created = await self.materialize(
            bot_id=bot_id,
            messages=[BotMessage(content=content)],
            conversation_id=conversation_id,
            manuscript_id=manuscript_id,
            parent_id=parent_id,
        )
        return created[0] if created else None
