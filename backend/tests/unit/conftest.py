from __future__ import annotations

import re
from types import SimpleNamespace
from typing import Any, Callable
from uuid import uuid4

import pytest

from botflow.core.config import BotRuntimeConfig, CrossrefConfig, WorkerConfig
from botflow.jobs.deps import build_default_dependencies
from botflow.models.bot import BotCommand, BotPlugin
from botflow.services.asset_manager import PublishedAssetManager
from botflow.services.bot_actions.common import ActionServices
from botflow.services.bot_registry import BotRegistry, bot_email
from botflow.services.broadcaster import Broadcaster
from botflow.services.conversation_service import ConversationService
from botflow.services.editorial_service import ManuscriptStateMachine
from botflow.services.effects import EffectDispatcher
from botflow.services.job_queue import InMemoryJobQueue
from botflow.services.reminder_service import ReminderService
from botflow.services.user_service import UserService

# === 内存版 Supabase（PostgREST builder + storage + auth.admin 的最小子集）===

# 嵌入查询 `table(cols)` 的外键列
_EMBED_KEYS = {"user_profiles": "user_id", "manuscripts": "manuscript_id"}
_EMBED_RE = re.compile(r"(\w+)\(([^)]*)\)")


class FakeAPIError(Exception):
    pass


def _sort_key(col: str) -> Callable[[dict], tuple]:
    return lambda r: (r.get(col) is None, str(r.get(col) if r.get(col) is not None else ""))


class _FakeQuery:
    def __init__(self, db: "FakeSupabase", name: str) -> None:
        self.db = db
        self.name = name
        self._op = "select"
        self._payload: Any = None
        self._filters: list[Callable[[dict], bool]] = []
        self._order: list[tuple[str, bool]] = []
        self._limit: int | None = None
        self._single = False
        self._count: str | None = None
        self._on_conflict = "id"
        self._embeds: list[str] = []

    def select(self, columns: str = "*", count: str | None = None):
        if self._op not in {"insert", "update", "upsert", "delete"}:
            self._op = "select"
        self._embeds = [m.group(1) for m in _EMBED_RE.finditer(columns or "")]
        self._count = count
        return self

    def insert(self, payload):
        self._op = "insert"
        self._payload = payload
        return self

    def update(self, payload):
        self._op = "update"
        self._payload = payload
        return self

    def upsert(self, payload, on_conflict: str = "id", **_kwargs):
        self._op = "upsert"
        self._payload = payload
        self._on_conflict = on_conflict or "id"
        return self

    def delete(self):
        self._op = "delete"
        return self

    def eq(self, col: str, val: Any):
        self._filters.append(lambda r: r.get(col) == val)
        return self

    def neq(self, col: str, val: Any):
        self._filters.append(lambda r: r.get(col) != val)
        return self

    def in_(self, col: str, vals):
        allowed = list(vals)
        self._filters.append(lambda r: r.get(col) in allowed)
        return self

    def is_(self, col: str, val: Any):
        if val in ("null", None):
            self._filters.append(lambda r: r.get(col) is None)
        else:
            self._filters.append(lambda r: str(r.get(col)).lower() == str(val).lower())
        return self

    def lt(self, col: str, val: Any):
        self._filters.append(lambda r: r.get(col) is not None and str(r.get(col)) < str(val))
        return self

    def lte(self, col: str, val: Any):
        self._filters.append(lambda r: r.get(col) is not None and str(r.get(col)) <= str(val))
        return self

    def gte(self, col: str, val: Any):
        self._filters.append(lambda r: r.get(col) is not None and str(r.get(col)) >= str(val))
        return self

    def ilike(self, col: str, pattern: str):
        regex = re.compile("^" + re.escape(pattern).replace("%", ".*") + "$", re.IGNORECASE)
        self._filters.append(lambda r: r.get(col) is not None and bool(regex.match(str(r.get(col)))))
        return self

    def order(self, col: str, desc: bool = False):
        self._order.append((col, desc))
        return self

    def limit(self, n: int):
        self._limit = n
        return self

    def single(self):
        self._single = True
        return self

    def _matches(self, row: dict) -> bool:
        return all(f(row) for f in self._filters)

    def _embed(self, row: dict) -> dict:
        out = dict(row)
        for name in self._embeds:
            fk = _EMBED_KEYS.get(name)
            if not fk:
                continue
            target = next((t for t in self.db.tables.get(name, []) if t.get("id") == row.get(fk)), None)
            out[name] = dict(target) if target else None
        return out

    def execute(self):
        self.db.calls.append((self.name, self._op))
        err = self.db.failures.get((self.name, self._op)) or self.db.failures.get((self.name, "*"))
        if err is not None:
            raise err

        rows = self.db.tables.setdefault(self.name, [])
        if self._op == "insert":
            items = self._payload if isinstance(self._payload, list) else [self._payload]
            created = []
            for item in items:
                row = dict(item)
                row.setdefault("id", str(uuid4()))
                rows.append(row)
                created.append(dict(row))
            return SimpleNamespace(data=created, count=None)

        if self._op == "upsert":
            items = self._payload if isinstance(self._payload, list) else [self._payload]
            keys = [k.strip() for k in self._on_conflict.split(",")]
            out = []
            for item in items:
                existing = next((r for r in rows if all(r.get(k) == item.get(k) for k in keys)), None)
                if existing is not None:
                    existing.update(item)
                    out.append(dict(existing))
                else:
                    row = dict(item)
                    row.setdefault("id", str(uuid4()))
                    rows.append(row)
                    out.append(dict(row))
            return SimpleNamespace(data=out, count=None)

        if self._op == "update":
            updated = []
            for row in rows:
                if self._matches(row):
                    row.update(self._payload)
                    updated.append(dict(row))
            return SimpleNamespace(data=updated, count=None)

        if self._op == "delete":
            removed = [r for r in rows if self._matches(r)]
            self.db.tables[self.name] = [r for r in rows if not self._matches(r)]
            return SimpleNamespace(data=removed, count=None)

        matched = [r for r in rows if self._matches(r)]
        for col, desc in reversed(self._order):
            matched.sort(key=_sort_key(col), reverse=desc)
        count = len(matched) if self._count else None
        if self._limit is not None:
            matched = matched[: self._limit]
        data = [self._embed(r) for r in matched]
        if self._single:
            if len(data) != 1:
                raise FakeAPIError("JSON object requested, multiple (or no) rows returned")
            return SimpleNamespace(data=data[0], count=count)
        return SimpleNamespace(data=data, count=count)


class _FakeBucket:
    def __init__(self, files: dict[str, bytes]) -> None:
        self.files = files

    def download(self, path: str) -> bytes:
        if path not in self.files:
            raise FakeAPIError(f"Object not found: {path}")
        return self.files[path]

    def upload(self, path: str, content: bytes, file_options: dict | None = None):
        self.files[path] = content
        return SimpleNamespace(path=path)

    def list(self, prefix: str | None = None, *_args):
        head = f"{prefix}/" if prefix else ""
        return [{"name": p[len(head):]} for p in self.files if p.startswith(head)]

    def remove(self, paths: list[str]):
        return [{"name": p} for p in paths if self.files.pop(p, None) is not None]


class _FakeStorage:
    def __init__(self) -> None:
        self.buckets: dict[str, dict[str, bytes]] = {}

    def from_(self, name: str) -> _FakeBucket:
        return _FakeBucket(self.buckets.setdefault(name, {}))

    def get_bucket(self, name: str):
        if name not in self.buckets:
            raise FakeAPIError(f"Bucket not found: {name}")
        return SimpleNamespace(name=name)

    def create_bucket(self, name: str, options: dict | None = None):
        self.buckets.setdefault(name, {})
        return SimpleNamespace(name=name)


class _FakeAuthAdmin:
    def __init__(self) -> None:
        self.created: list[dict] = []

    def create_user(self, attributes: dict):
        user = SimpleNamespace(id=str(uuid4()), email=attributes.get("email"))
        self.created.append({"id": user.id, **attributes})
        return SimpleNamespace(user=user)


class FakeSupabase:
    def __init__(self) -> None:
        self.tables: dict[str, list[dict]] = {}
        self.failures: dict[tuple[str, str], Exception] = {}
        self.calls: list[tuple[str, str]] = []
        self.storage = _FakeStorage()
        self.auth = SimpleNamespace(admin=_FakeAuthAdmin())

    def table(self, name: str) -> _FakeQuery:
        return _FakeQuery(self, name)

    def seed(self, name: str, *rows: dict) -> None:
        self.tables.setdefault(name, []).extend(dict(r) for r in rows)

    def rows(self, name: str, **where) -> list[dict]:
        return [r for r in self.tables.get(name, []) if all(r.get(k) == v for k, v in where.items())]

    def fail(self, name: str, op: str = "*", error: Exception | None = None) -> None:
        self.failures[(name, op)] = error or FakeAPIError(f"{name} unavailable")


class RecordingEmailService:
    """记录发送请求的邮件服务（不触网）。"""

    def __init__(self, *, ok: bool = True) -> None:
        self.ok = ok
        self.sent: list[dict] = []

    def send_template_email(self, *, to_email, subject, template_name, context, manuscript_id=None, **_kw) -> bool:
        self.sent.append(
            {
                "to": to_email,
                "subject": subject,
                "template": template_name,
                "context": context,
                "manuscript_id": manuscript_id,
            }
        )
        return self.ok

    def invitation_url(self, assignment_id: str, reviewer_email: str) -> str:
        return f"http://localhost:3000/review/invitation?assignment_id={assignment_id}"


# === fixtures ===

MANUSCRIPT_ID = "11111111-2222-3333-4444-555555555555"
EDITOR_ID = "editor-1"
AUTHOR_ID = "author-1"


@pytest.fixture
def fake_db() -> FakeSupabase:
    return FakeSupabase()


@pytest.fixture
def email_service() -> RecordingEmailService:
    return RecordingEmailService()


@pytest.fixture
def seeded_db(fake_db: FakeSupabase) -> FakeSupabase:
    fake_db.seed(
        "manuscripts",
        {
            "id": MANUSCRIPT_ID,
            "title": "Graph Methods for Peer Review",
            "status": "UNDER_REVIEW",
            "workflow_phase": "REVIEW",
            "workflow_round": 1,
            "version": 1,
            "doi": None,
        },
    )
    fake_db.seed(
        "user_profiles",
        {"id": EDITOR_ID, "email": "editor@example.com", "username": "editor", "full_name": "Dana Editor", "roles": ["editor"]},
        {"id": AUTHOR_ID, "email": "author@example.com", "username": "author", "full_name": "Ari Author", "roles": ["author"]},
    )
    fake_db.seed("manuscript_authors", {"id": "ma-1", "manuscript_id": MANUSCRIPT_ID, "user_id": AUTHOR_ID})
    fake_db.seed(
        "conversations",
        {"id": "conv-review", "manuscript_id": MANUSCRIPT_ID, "title": "Review", "type": "REVIEW", "created_at": "2026-01-01T00:00:00+00:00"},
        {"id": "conv-editorial", "manuscript_id": MANUSCRIPT_ID, "title": "Editorial", "type": "EDITORIAL", "created_at": "2026-01-01T00:00:00+00:00"},
    )
    return fake_db


@pytest.fixture
def action_services(seeded_db: FakeSupabase, email_service: RecordingEmailService) -> ActionServices:
    return ActionServices(
        state_machine=ManuscriptStateMachine(seeded_db),
        conversations=ConversationService(seeded_db),
        users=UserService(seeded_db),
        effects=EffectDispatcher(
            email_service=email_service,
            broadcaster=Broadcaster(seeded_db),
            asset_manager=PublishedAssetManager(seeded_db),
        ),
        email=email_service,
        reminders=ReminderService(email_service, seeded_db),
        crossref=CrossrefConfig(doi_prefix="10.5555", journal_title="Test Journal"),
    )


@pytest.fixture
def worker_config() -> WorkerConfig:
    return WorkerConfig(
        enabled=False,
        concurrency=2,
        poll_interval_sec=0.01,
        max_attempts=3,
        backoff_seconds=(0,),
        queue_backend="memory",
    )


@pytest.fixture
def runtime_config() -> BotRuntimeConfig:
    return BotRuntimeConfig(
        execution_timeout_ms=2000,
        service_token_secret="test-bot-secret",
        service_token_ttl_sec=3600,
    )


@pytest.fixture
def memory_queue(worker_config: WorkerConfig) -> InMemoryJobQueue:
    return InMemoryJobQueue(worker_config)


@pytest.fixture
def registry(seeded_db: FakeSupabase) -> BotRegistry:
    return BotRegistry(seeded_db)


@pytest.fixture
def job_deps(seeded_db, memory_queue, registry, email_service, worker_config, runtime_config):
    return build_default_dependencies(
        client=seeded_db,
        queue=memory_queue,
        registry=registry,
        email_service=email_service,
        worker_config=worker_config,
        runtime_config=runtime_config,
    )


@pytest.fixture
def make_plugin():
    """按 {command 名: 协程} 快速构造插件定义。"""

    def _make(
        bot_id: str,
        commands: dict | None = None,
        *,
        events: dict | None = None,
        permissions: tuple[str, ...] = ("read_manuscript",),
        default_config: dict | None = None,
    ) -> BotPlugin:
        built = tuple(
            fn if isinstance(fn, BotCommand) else BotCommand(name=name, execute=fn, permissions=permissions)
            for name, fn in (commands or {}).items()
        )
        return BotPlugin(
            id=bot_id,
            name=bot_id.replace("-", " ").title(),
            commands=built,
            events=dict(events or {}),
            permissions=permissions,
            default_config=dict(default_config or {}),
        )

    return _make


@pytest.fixture
def install_bot(registry: BotRegistry, seeded_db: FakeSupabase):
    """注册 + 安装插件，并补齐 bot 用户身份；返回 bot 的 user id。"""

    def _install(plugin: BotPlugin, *, enabled: bool = True, config: dict | None = None) -> str:
        registry.register(plugin)
        registry.install(plugin.id, config, enabled=enabled)
        user_id = f"user-{plugin.id}"
        seeded_db.seed(
            "user_profiles",
            {"id": user_id, "email": bot_email(plugin.id), "username": plugin.id, "roles": ["bot"]},
        )
        registry.set_bot_user_id(plugin.id, user_id)
        return user_id

    return _install
