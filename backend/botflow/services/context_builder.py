from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

from botflow.core.security import ServiceCredential
from botflow.lib.api_client import supabase_admin
from botflow.models.bot import BotInvocationContext, BotPermission, TriggeredBy
from botflow.services.conversation_service import ConversationService

logger = logging.getLogger("context_builder")

MANUSCRIPT_COLUMNS = (
    "id, title, abstract, status, keywords, workflow_phase, workflow_round, doi, journal_id"
)
FILE_COLUMNS = "id, original_name, storage_path, file_type, mime_type, size"


class ContextBuilder:
    """
    为 bot 调用组装执行上下文（尽力预取）。

    中文注释:
    - manuscript / files / conversation 三项预取并行执行、各自独立失败。
    - 单项失败只记 warning，对应字段保持 None；build() 本身不会因预取失败而抛异常。
    - 预取范围受凭证权限约束：没有 read_manuscript 不读稿件，没有 read_manuscript_files 不读文件列表。
    """

    def __init__(self, client=None, conversations: ConversationService | None = None):
        self.client = client or supabase_admin
        self.conversations = conversations or ConversationService(self.client)

    def fetch_manuscript(self, manuscript_id: str) -> Optional[dict[str, Any]]:
        resp = (
            self.client.table("manuscripts")
            .select(MANUSCRIPT_COLUMNS)
            .eq("id", manuscript_id)
            .limit(1)
            .execute()
        )
        rows = getattr(resp, "data", None) or []
        if not rows:
            return None
        manuscript = dict(rows[0])

        authors_resp = (
            self.client.table("manuscript_authors")
            .select("user_id, user_profiles(full_name, email)")
            .eq("manuscript_id", manuscript_id)
            .execute()
        )
        authors: list[str] = []
        for row in getattr(authors_resp, "data", None) or []:
            profile = row.get("user_profiles") or {}
            authors.append(profile.get("full_name") or profile.get("email") or "Unknown")
        manuscript["authors"] = authors
        return manuscript

    def fetch_files(self, manuscript_id: str) -> list[dict[str, Any]]:
        resp = (
            self.client.table("manuscript_files")
            .select(FILE_COLUMNS)
            .eq("manuscript_id", manuscript_id)
            .execute()
        )
        return list(getattr(resp, "data", None) or [])

    def _fetch_conversation(self, conversation_id: str) -> Optional[dict[str, Any]]:
        conversation = self.conversations.get_conversation(conversation_id)
        if not conversation:
            return None
        return {
            "id": conversation["id"],
            "title": conversation.get("title"),
            "type": conversation.get("type"),
            "privacy": conversation.get("privacy"),
            "message_count": self.conversations.count_messages(conversation_id),
        }

    async def _prefetch(self, label: str, fn, *args) -> Any:
        try:
            return await asyncio.to_thread(fn, *args)
        except Exception as e:
            logger.warning("Context prefetch '%s' failed: %s", label, e)
            return None

    async def _skip(self) -> None:
        return None

    async def build(
        self,
        *,
        manuscript_id: str,
        conversation_id: str,
        triggered_by: TriggeredBy,
        credential: ServiceCredential,
        config: dict[str, Any] | None = None,
        journal: dict[str, Any] | None = None,
    ) -> BotInvocationContext:
        can_read_manuscript = bool(manuscript_id) and credential.allows(BotPermission.READ_MANUSCRIPT.value)
        can_read_files = bool(manuscript_id) and credential.allows(BotPermission.READ_MANUSCRIPT_FILES.value)

        manuscript, files, conversation = await asyncio.gather(
            self._prefetch("manuscript", self.fetch_manuscript, manuscript_id) if can_read_manuscript else self._skip(),
            self._prefetch("files", self.fetch_files, manuscript_id) if can_read_files else self._skip(),
            self._prefetch("conversation", self._fetch_conversation, conversation_id) if conversation_id else self._skip(),
        )

        return BotInvocationContext(
            manuscript_id=manuscript_id,
            conversation_id=conversation_id,
            triggered_by=triggered_by,
            credential=credential,
            journal=journal or {"id": "default", "settings": {}},
            config=dict(config or {}),
            manuscript=manuscript,
            files=files,
            conversation=conversation,
        )
