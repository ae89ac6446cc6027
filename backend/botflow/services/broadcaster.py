from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from botflow.lib.api_client import supabase_admin


class Broadcaster:
    """
    会话事件推送（写入 conversation_events，由前端通过 Supabase Realtime 订阅）。

    中文注释:
    - 这里只负责“落一条事件”；推送协议由 Realtime 负责。
    - 失败直接抛出，由 EffectDispatcher 记录为 DependencyFailure。
    """

    def __init__(self, client=None):
        self.client = client or supabase_admin

    def notify(
        self,
        conversation_id: str,
        event: dict[str, Any],
        manuscript_id: Optional[str] = None,
    ) -> None:
        if not conversation_id:
            # 中文注释: 事件/流水线触发时可能没有会话，直接跳过
            return
        self.client.table("conversation_events").insert(
            {
                "conversation_id": conversation_id,
                "manuscript_id": manuscript_id,
                "event_type": str(event.get("type") or "unknown"),
                "payload": event,
                "created_at": datetime.now(timezone.utc).isoformat(),
            }
        ).execute()

    def new_message(self, conversation_id: str, message: dict[str, Any], manuscript_id: Optional[str] = None) -> None:
        self.notify(
            conversation_id,
            {
                "type": "new-message",
                "message": {
                    "id": message.get("id"),
                    "content": message.get("content"),
                    "privacy": message.get("privacy"),
                    "author_id": message.get("author_id"),
                    "parent_id": message.get("parent_id"),
                    "is_bot": message.get("is_bot", True),
                    "created_at": message.get("created_at"),
                },
            },
            manuscript_id,
        )
