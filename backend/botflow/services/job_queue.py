from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Protocol
from uuid import uuid4

from botflow.core.config import WorkerConfig
from botflow.lib.api_client import supabase_admin
from botflow.models.jobs import JobKind, JobStatus, QueuedJob, job_payload

logger = logging.getLogger("job_queue")


def _now() -> datetime:
    return datetime.now(timezone.utc)


class JobQueue(Protocol):
    """
    至少一次投递的任务队列。

    中文注释: 跨 job 不保证顺序；整 job 失败的唯一重试机制就是 fail()。
    """

    def enqueue(self, job: Any) -> str: ...

    def claim(self, worker_id: str) -> Optional[QueuedJob]: ...

    def complete(self, job_id: str) -> None: ...

    def fail(self, job: QueuedJob, error: str) -> JobStatus: ...

    def dead_letter(self, job: QueuedJob, error: str) -> None: ...

    def health(self) -> dict[str, int]: ...


def _kind_of(job: Any) -> str:
    kind = getattr(job, "kind", None)
    if isinstance(kind, JobKind):
        return kind.value
    if not kind:
        raise ValueError(f"Cannot enqueue object without kind: {job!r}")
    return str(kind)


class SupabaseJobQueue:
    """
    基于 bot_jobs 表的队列实现。

    中文注释:
    - claim：先取最早到期的 pending 行，再做 status=pending -> processing 的条件更新；
      条件更新未命中（被其它 worker 抢走）时返回 None。
    - 没有到期的 pending 行时，回收锁已过期（locked_at 早于 lock_timeout_sec）的 processing 行；
      条件更新同时比对原 locked_by / locked_at，回收计为一次 attempt，已用尽 attempts 的直接进入 dead。
    - fail：attempts < max_attempts 时按 backoff 重新排期；否则进入 dead（死信）并记录 error 日志。
    """

    TABLE = "bot_jobs"

    def __init__(self, client=None, config: WorkerConfig | None = None):
        self.client = client or supabase_admin
        self.config = config or WorkerConfig.from_env()

    def enqueue(self, job: Any, *, run_at: datetime | None = None) -> str:
        job_id = str(uuid4())
        now = _now()
        row = {
            "id": job_id,
            "kind": _kind_of(job),
            "payload": job_payload(job),
            "status": JobStatus.PENDING.value,
            "attempts": 0,
            "max_attempts": self.config.max_attempts,
            "run_at": (run_at or now).isoformat(),
            "created_at": now.isoformat(),
        }
        self.client.table(self.TABLE).insert(row).execute()
        logger.info("Enqueued %s job %s", row["kind"], job_id)
        return job_id

    def claim(self, worker_id: str) -> Optional[QueuedJob]:
        now = _now()
        res = (
            self.client.table(self.TABLE)
            .select("*")
            .eq("status", JobStatus.PENDING.value)
            .lte("run_at", now.isoformat())
            .order("run_at", desc=False)
            .limit(1)
            .execute()
        )
        rows = getattr(res, "data", None) or []
        if rows:
            row = rows[0]
            guard: dict[str, Any] = {"status": JobStatus.PENDING.value}
        else:
            row = self._expired_lock(now)
            if row is None:
                return None
            guard = {
                "status": JobStatus.PROCESSING.value,
                "locked_by": row.get("locked_by"),
                "locked_at": row.get("locked_at"),
            }
            attempts = int(row.get("attempts") or 0)
            if attempts >= int(row.get("max_attempts") or self.config.max_attempts):
                error = f"Lock held by {row.get('locked_by')} expired after {attempts} attempt(s)"
                if self._guarded_update(
                    row["id"], guard, {"status": JobStatus.DEAD.value, "last_error": error, "locked_by": None}
                ):
                    logger.error("Job %s (%s) dead-lettered: %s", row["id"], row.get("kind"), error)
                return None
            logger.warning(
                "Reclaiming job %s (%s); lock held by %s expired", row["id"], row.get("kind"), row.get("locked_by")
            )

        claimed = self._guarded_update(
            row["id"],
            guard,
            {
                "status": JobStatus.PROCESSING.value,
                "locked_at": now.isoformat(),
                "locked_by": worker_id,
                "attempts": int(row.get("attempts") or 0) + 1,
            },
        )
        if not claimed:
            return None
        return QueuedJob.model_validate(claimed[0])

    def _expired_lock(self, now: datetime) -> Optional[dict[str, Any]]:
        """locked_at 早于 now - lock_timeout_sec 的 processing 行（持锁 worker 视为已崩溃）。"""
        cutoff = now - timedelta(seconds=self.config.lock_timeout_sec)
        res = (
            self.client.table(self.TABLE)
            .select("*")
            .eq("status", JobStatus.PROCESSING.value)
            .lt("locked_at", cutoff.isoformat())
            .order("locked_at", desc=False)
            .limit(1)
            .execute()
        )
        rows = getattr(res, "data", None) or []
        return rows[0] if rows else None

    def _guarded_update(self, job_id: str, guard: dict[str, Any], values: dict[str, Any]) -> list[dict[str, Any]]:
        query = self.client.table(self.TABLE).update(values).eq("id", job_id)
        for col, val in guard.items():
            query = query.is_(col, "null") if val is None else query.eq(col, val)
        return getattr(query.execute(), "data", None) or []

    def complete(self, job_id: str) -> None:
        self.client.table(self.TABLE).update(
            {
                "status": JobStatus.COMPLETED.value,
                "completed_at": _now().isoformat(),
                "locked_by": None,
            }
        ).eq("id", job_id).execute()

    def fail(self, job: QueuedJob, error: str) -> JobStatus:
        if job.attempts >= job.max_attempts:
            self.client.table(self.TABLE).update(
                {"status": JobStatus.DEAD.value, "last_error": error, "locked_by": None}
            ).eq("id", job.id).execute()
            logger.error(
                "Job %s (%s) dead-lettered after %s attempt(s): %s", job.id, job.kind, job.attempts, error
            )
            return JobStatus.DEAD

        next_run = _now() + timedelta(seconds=self.config.backoff_for(job.attempts))
        self.client.table(self.TABLE).update(
            {
                "status": JobStatus.PENDING.value,
                "run_at": next_run.isoformat(),
                "last_error": error,
                "locked_by": None,
                "locked_at": None,
            }
        ).eq("id", job.id).execute()
        logger.warning("Job %s (%s) failed, retry at %s: %s", job.id, job.kind, next_run.isoformat(), error)
        return JobStatus.PENDING

    def dead_letter(self, job: QueuedJob, error: str) -> None:
        self.client.table(self.TABLE).update(
            {"status": JobStatus.DEAD.value, "last_error": error, "locked_by": None}
        ).eq("id", job.id).execute()
        logger.error("Job %s (%s) dead-lettered: %s", job.id, job.kind, error)

    def health(self) -> dict[str, int]:
        out: dict[str, int] = {}
        for status in JobStatus:
            resp = (
                self.client.table(self.TABLE)
                .select("id", count="exact")
                .eq("status", status.value)
                .execute()
            )
            count = getattr(resp, "count", None)
            out[status.value] = int(count if count is not None else len(getattr(resp, "data", None) or []))
        return out


class InMemoryJobQueue:
    """
    进程内队列（本地开发 / 测试）。与 SupabaseJobQueue 语义一致：attempts、backoff 排期、死信。
    """

    def __init__(self, config: WorkerConfig | None = None):
        self.config = config or WorkerConfig.from_env()
        self._lock = threading.Lock()
        self._rows: dict[str, dict[str, Any]] = {}
        self._order: list[str] = []

    def enqueue(self, job: Any, *, run_at: datetime | None = None) -> str:
        job_id = str(uuid4())
        with self._lock:
            self._rows[job_id] = {
                "id": job_id,
                "kind": _kind_of(job),
                "payload": job_payload(job),
                "status": JobStatus.PENDING,
                "attempts": 0,
                "max_attempts": self.config.max_attempts,
                "run_at": run_at or _now(),
                "last_error": None,
                "locked_by": None,
                "locked_at": None,
            }
            self._order.append(job_id)
        return job_id

    def claim(self, worker_id: str) -> Optional[QueuedJob]:
        now = _now()
        cutoff = now - timedelta(seconds=self.config.lock_timeout_sec)
        with self._lock:
            rows = [self._rows[jid] for jid in self._order]
            due = [r for r in rows if r["status"] == JobStatus.PENDING and r["run_at"] <= now]
            if due:
                row = min(due, key=lambda r: r["run_at"])
            else:
                expired = [
                    r
                    for r in rows
                    if r["status"] == JobStatus.PROCESSING and r["locked_at"] is not None and r["locked_at"] < cutoff
                ]
                if not expired:
                    return None
                row = min(expired, key=lambda r: r["locked_at"])
                if row["attempts"] >= row["max_attempts"]:
                    row["status"] = JobStatus.DEAD
                    row["last_error"] = f"Lock held by {row['locked_by']} expired after {row['attempts']} attempt(s)"
                    row["locked_by"] = None
                    logger.error("Job %s (%s) dead-lettered: %s", row["id"], row["kind"], row["last_error"])
                    return None
                logger.warning("Reclaiming job %s (%s); lock held by %s expired", row["id"], row["kind"], row["locked_by"])
            row["status"] = JobStatus.PROCESSING
            row["attempts"] += 1
            row["locked_by"] = worker_id
            row["locked_at"] = now
            return QueuedJob.model_validate(row)

    def complete(self, job_id: str) -> None:
        with self._lock:
            row = self._rows.get(job_id)
            if row is not None:
                row["status"] = JobStatus.COMPLETED
                row["locked_by"] = None

    def fail(self, job: QueuedJob, error: str) -> JobStatus:
        with self._lock:
            row = self._rows[job.id]
            row["last_error"] = error
            row["locked_by"] = None
            if row["attempts"] >= row["max_attempts"]:
                row["status"] = JobStatus.DEAD
            else:
                row["status"] = JobStatus.PENDING
                row["run_at"] = _now() + timedelta(seconds=self.config.backoff_for(row["attempts"]))
            status = row["status"]
        if status == JobStatus.DEAD:
            logger.error("Job %s (%s) dead-lettered after %s attempt(s): %s", job.id, job.kind, job.attempts, error)
        else:
            logger.warning("Job %s (%s) failed, will retry: %s", job.id, job.kind, error)
        return status

    def dead_letter(self, job: QueuedJob, error: str) -> None:
        with self._lock:
            row = self._rows[job.id]
            row["status"] = JobStatus.DEAD
            row["last_error"] = error
            row["locked_by"] = None
        logger.error("Job %s (%s) dead-lettered: %s", job.id, job.kind, error)

    def health(self) -> dict[str, int]:
        with self._lock:
            out = {status.value: 0 for status in JobStatus}
            for row in self._rows.values():
                out[row["status"].value] += 1
        return out

    # 测试 / 调试辅助

    def get(self, job_id: str) -> Optional[QueuedJob]:
        with self._lock:
            row = self._rows.get(job_id)
            return QueuedJob.model_validate(row) if row else None

    def jobs(self, *, kind: str | None = None, status: JobStatus | None = None) -> list[QueuedJob]:
        with self._lock:
            rows = [self._rows[jid] for jid in self._order]
            return [
                QueuedJob.model_validate(r)
                for r in rows
                if (kind is None or r["kind"] == kind) and (status is None or r["status"] == status)
            ]

    def expire_locks(self) -> None:
        """把 processing 任务的锁回拨到超时之前（模拟持锁 worker 崩溃）。"""
        with self._lock:
            stale = _now() - timedelta(seconds=self.config.lock_timeout_sec + 1)
            for row in self._rows.values():
                if row["status"] == JobStatus.PROCESSING:
                    row["locked_at"] = stale

    def make_due(self) -> None:
        """把所有重试中的任务提前到现在（测试中跳过 backoff 等待）。"""
        with self._lock:
            now = _now()
            for row in self._rows.values():
                if row["status"] == JobStatus.PENDING:
                    row["run_at"] = now


def build_job_queue(config: WorkerConfig | None = None, client=None) -> JobQueue:
    cfg = config or WorkerConfig.from_env()
    if cfg.queue_backend == "memory":
        return InMemoryJobQueue(cfg)
    return SupabaseJobQueue(client, cfg)
