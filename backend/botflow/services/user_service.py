from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Optional

from botflow.core.errors import DependencyFailure
from botflow.lib.api_client import supabase_admin

_INVALID_CHARS = re.compile(r"[^a-z0-9-]")
_LEADING_NON_LETTER = re.compile(r"^[^a-z]")
_MAX_BASE_LEN = 27
_MIN_LEN = 3

PROFILE_COLUMNS = "id, email, username, full_name, roles"


def username_base(email: str) -> str:
    """
    由邮箱 local part 生成用户名基底（不含去重后缀）。

    规则:
    - 小写；非 [a-z0-9-] 字符替换为 '-'
    - 首字符不是字母时替换为 'u'
    - 截断到 27 个字符（给 "-NN" 后缀留空间）
    - 'bot-' 前缀保留给 bot 账号，改写为 'u'
    - 不足 3 个字符用 'x' 补齐
    """
    local = (email or "").strip().lower().split("@")[0]
    base = _INVALID_CHARS.sub("-", local)
    base = _LEADING_NON_LETTER.sub("u", base, count=1)
    base = base[:_MAX_BASE_LEN]
    if base.startswith("bot-"):
        base = "u" + base[4:]
    if len(base) < _MIN_LEN:
        base = base + "x" * (_MIN_LEN - len(base))
    return base


class UserService:
    """
    bot 动作用到的用户读写（user_profiles + Supabase Auth）。
    """

    def __init__(self, client=None):
        self.client = client or supabase_admin

    def _username_taken(self, username: str) -> bool:
        resp = (
            self.client.table("user_profiles")
            .select("id")
            .eq("username", username)
            .limit(1)
            .execute()
        )
        return bool(getattr(resp, "data", None))

    def generate_unique_username(self, email: str) -> str:
        base = username_base(email)
        username = base
        suffix = 2
        while self._username_taken(username):
            username = f"{base}-{suffix}"
            suffix += 1
        return username

    def get_user(self, user_id: str) -> Optional[dict[str, Any]]:
        if not user_id:
            return None
        resp = (
            self.client.table("user_profiles")
            .select(PROFILE_COLUMNS)
            .eq("id", str(user_id))
            .limit(1)
            .execute()
        )
        rows = getattr(resp, "data", None) or []
        return rows[0] if rows else None

    def get_user_by_email(self, email: str) -> Optional[dict[str, Any]]:
        resp = (
            self.client.table("user_profiles")
            .select(PROFILE_COLUMNS)
            .eq("email", (email or "").strip().lower())
            .limit(1)
            .execute()
        )
        rows = getattr(resp, "data", None) or []
        return rows[0] if rows else None

    def find_by_name(self, handle: str, *, include_username: bool = True) -> Optional[dict[str, Any]]:
        """
        按 @handle 查找用户：先匹配 full_name，再匹配 username。
        """
        name = (handle or "").strip().lstrip("@")
        if not name:
            return None
        columns = ("full_name", "username") if include_username else ("full_name",)
        for column in columns:
            resp = (
                self.client.table("user_profiles")
                .select(PROFILE_COLUMNS)
                .eq(column, name)
                .limit(1)
                .execute()
            )
            rows = getattr(resp, "data", None) or []
            if rows:
                return rows[0]
        return None

    def find_or_create_reviewer(self, email: str) -> tuple[dict[str, Any], bool]:
        """
        按邮箱（小写）查找用户；不存在则创建 Auth 用户 + user_profiles。

        返回 (profile, created)。
        """
        normalized = (email or "").strip().lower()
        existing = self.get_user_by_email(normalized)
        if existing:
            return existing, False

        username = self.generate_unique_username(normalized)
        user_response = self.client.auth.admin.create_user(
            {
                "email": normalized,
                "email_confirm": True,
                "user_metadata": {"username": username},
            }
        )
        new_user = getattr(user_response, "user", None)
        if not new_user:
            raise DependencyFailure("supabase_auth", f"create_user returned no user for {normalized}")

        now = datetime.now(timezone.utc).isoformat()
        profile = {
            "id": str(new_user.id),
            "email": normalized,
            "username": username,
            "full_name": None,
            "roles": ["reviewer"],
            "created_at": now,
            "updated_at": now,
        }
        resp = self.client.table("user_profiles").upsert(profile).execute()
        rows = getattr(resp, "data", None) or []
        return (rows[0] if rows else profile), True

    def get_author_emails(self, manuscript_id: str) -> list[str]:
        resp = (
            self.client.table("manuscript_authors")
            .select("user_id, user_profiles(email)")
            .eq("manuscript_id", manuscript_id)
            .execute()
        )
        emails: list[str] = []
        for row in getattr(resp, "data", None) or []:
            profile = row.get("user_profiles") or {}
            email = (profile.get("email") or "").strip()
            if email and email not in emails:
                emails.append(email)
        return emails

    def get_author_ids(self, manuscript_id: str) -> list[str]:
        resp = (
            self.client.table("manuscript_authors")
            .select("user_id")
            .eq("manuscript_id", manuscript_id)
            .execute()
        )
        return [str(r["user_id"]) for r in (getattr(resp, "data", None) or []) if r.get("user_id")]


def display_name(profile: dict[str, Any] | None) -> str:
    if not profile:
        return "Unknown user"
    return str(profile.get("full_name") or profile.get("username") or profile.get("email") or profile.get("id"))
