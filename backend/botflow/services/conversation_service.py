from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Iterable, Optional
from uuid import uuid4

from botflow.lib.api_client import supabase_admin
from botflow.models.manuscript import (
    ConversationPrivacy,
    ConversationType,
    MessagePrivacy,
    ParticipantRole,
)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class ConversationService:
    """
    会话与消息持久化（conversations / conversation_participants / messages）。

    中文注释:
    - 所有写入都走 service_role 客户端；可见性由 messages.privacy 字段在读取侧过滤。
    - bot 产生的消息统一 is_bot=True。
    """

    def __init__(self, client=None):
        self.client = client or supabase_admin

    def get_conversation(self, conversation_id: str) -> Optional[dict[str, Any]]:
        if not conversation_id:
            return None
        resp = (
            self.client.table("conversations")
            .select("id, manuscript_id, title, type, privacy, created_at")
            .eq("id", conversation_id)
            .limit(1)
            .execute()
        )
        rows = getattr(resp, "data", None) or []
        return rows[0] if rows else None

    def find_first_conversation(self, manuscript_id: str, conv_type: ConversationType | str) -> Optional[dict[str, Any]]:
        """按创建时间取稿件下第一个指定类型的会话。"""
        if not manuscript_id:
            return None
        t = conv_type.value if isinstance(conv_type, ConversationType) else str(conv_type)
        resp = (
            self.client.table("conversations")
            .select("id, manuscript_id, title, type, privacy, created_at")
            .eq("manuscript_id", manuscript_id)
            .eq("type", t)
            .order("created_at", desc=False)
            .limit(1)
            .execute()
        )
        rows = getattr(resp, "data", None) or []
        return rows[0] if rows else None

    def find_conversation_by_title(
        self, manuscript_id: str, *, title: str, conv_type: str | None = None
    ) -> Optional[dict[str, Any]]:
        q = (
            self.client.table("conversations")
            .select("id, manuscript_id, title, type, privacy, created_at")
            .eq("manuscript_id", manuscript_id)
            .eq("title", title)
        )
        if conv_type:
            q = q.eq("type", conv_type)
        resp = q.limit(1).execute()
        rows = getattr(resp, "data", None) or []
        return rows[0] if rows else None

    def find_conversation_title_contains(self, manuscript_id: str, fragment: str) -> Optional[dict[str, Any]]:
        resp = (
            self.client.table("conversations")
            .select("id, title, type")
            .eq("manuscript_id", manuscript_id)
            .ilike("title", f"%{fragment}%")
            .limit(1)
            .execute()
        )
        rows = getattr(resp, "data", None) or []
        return rows[0] if rows else None

    def count_messages(self, conversation_id: str) -> int:
        resp = (
            self.client.table("messages")
            .select("id", count="exact")
            .eq("conversation_id", conversation_id)
            .execute()
        )
        count = getattr(resp, "count", None)
        if count is None:
            count = len(getattr(resp, "data", None) or [])
        return int(count)

    def get_message(self, message_id: str) -> Optional[dict[str, Any]]:
        resp = (
            self.client.table("messages")
            .select("id, conversation_id, author_id, content, privacy, parent_id, created_at")
            .eq("id", message_id)
            .limit(1)
            .execute()
        )
        rows = getattr(resp, "data", None) or []
        return rows[0] if rows else None

    def create_message(
        self,
        *,
        conversation_id: str,
        author_id: str,
        content: str,
        privacy: MessagePrivacy | str = MessagePrivacy.AUTHOR_VISIBLE,
        parent_id: str | None = None,
        is_bot: bool = True,
        metadata: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        row = {
            "id": str(uuid4()),
            "conversation_id": conversation_id,
            "author_id": author_id,
            "content": content,
            "privacy": privacy.value if isinstance(privacy, MessagePrivacy) else str(privacy),
            "parent_id": parent_id,
            "is_bot": is_bot,
            "metadata": metadata or {},
            "created_at": _now_iso(),
        }
        resp = self.client.table("messages").insert(row).execute()
        rows = getattr(resp, "data", None) or []
        return rows[0] if rows else row

    def create_conversation(
        self,
        *,
        manuscript_id: str,
        title: str,
        conv_type: str | None,
        privacy: str | None,
        moderator_id: str,
        participant_ids: Iterable[str] = (),
    ) -> dict[str, Any]:
        """
        创建会话并写入参与者。

        中文注释:
        - type/privacy 缺省为 EDITORIAL/PRIVATE。
        - moderator_id 为 MODERATOR，其余为 PARTICIPANT；参与者去重且保持顺序。
        """
        row = {
            "id": str(uuid4()),
            "manuscript_id": manuscript_id,
            "title": title,
            "type": (conv_type or ConversationType.EDITORIAL.value).upper(),
            "privacy": (privacy or ConversationPrivacy.PRIVATE.value).upper(),
            "created_at": _now_iso(),
        }
        resp = self.client.table("conversations").insert(row).execute()
        rows = getattr(resp, "data", None) or []
        conversation = rows[0] if rows else row

        members = [m for m in dict.fromkeys([moderator_id, *participant_ids]) if m]
        if members:
            self.client.table("conversation_participants").insert(
                [
                    {
                        "id": str(uuid4()),
                        "conversation_id": conversation["id"],
                        "user_id": uid,
                        "role": (
                            ParticipantRole.MODERATOR.value
                            if uid == moderator_id
                            else ParticipantRole.PARTICIPANT.value
                        ),
                    }
                    for uid in members
                ]
            ).execute()
        conversation["participants"] = members
        return conversation
