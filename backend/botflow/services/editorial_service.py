from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from botflow.core.errors import ConcurrentTransitionError, NotFoundError, WorkflowValidationError
from botflow.lib.api_client import supabase_admin
from botflow.models.manuscript import (
    ACTIVE_REVIEW_STATUSES,
    ManuscriptStatus,
    ReviewStatus,
    WorkflowPhase,
    check_status_transition,
    normalize_phase,
    normalize_status,
)
from botflow.services.effects import Effect, PublishAssets, UnpublishAssets

MANUSCRIPT_COLUMNS = (
    "id,title,status,workflow_phase,workflow_round,version,doi,"
    "released_at,published_at,accepted_at,journal_id,updated_at"
)


@dataclass(frozen=True)
class StatusTransitionLog:
    from_status: str | None
    to_status: str
    changed_by: str | None
    comment: str | None
    created_at: str


@dataclass
class StatusChange:
    row: dict[str, Any]
    previous: str | None
    effects: list[Effect] = field(default_factory=list)


@dataclass
class PhaseChange:
    row: dict[str, Any]
    previous: str | None
    round: int
    release: dict[str, Any]
    active_reviews: list[dict[str, Any]] = field(default_factory=list)


class ManuscriptStateMachine:
    """
    稿件状态 / workflow phase 的唯一写入口。

    中文注释:
    - 写入为条件写（compare-and-swap）：同时匹配读到的 status/phase 与 version，
      未命中任何行时抛 ConcurrentTransitionError，由调用方（单个 action）失败处理。
    - 副作用（资源发布/撤回）不在这里执行，只作为 effects 返回，由 EffectDispatcher 统一执行。
    """

    def __init__(self, client=None) -> None:
        self.client = client or supabase_admin

    def _now(self) -> str:
        return datetime.now(timezone.utc).isoformat()

    def get_manuscript(self, manuscript_id: str) -> dict[str, Any]:
        if not manuscript_id:
            raise NotFoundError("Manuscript", str(manuscript_id))
        try:
            resp = (
                self.client.table("manuscripts")
                .select(MANUSCRIPT_COLUMNS)
                .eq("id", manuscript_id)
                .single()
                .execute()
            )
            data = getattr(resp, "data", None) or None
        except Exception as e:
            # PostgREST single() 0 行会抛异常；这里统一转为 NotFound
            raise NotFoundError("Manuscript", manuscript_id) from e
        if not data:
            raise NotFoundError("Manuscript", manuscript_id)
        return data

    def list_active_reviews(self, manuscript_id: str) -> list[dict[str, Any]]:
        resp = (
            self.client.table("review_assignments")
            .select("id,reviewer_id,status")
            .eq("manuscript_id", manuscript_id)
            .in_("status", list(ACTIVE_REVIEW_STATUSES))
            .execute()
        )
        return getattr(resp, "data", None) or []

    def _cas_update(
        self,
        *,
        manuscript: dict[str, Any],
        guard_column: str,
        payload: dict[str, Any],
    ) -> dict[str, Any]:
        manuscript_id = str(manuscript["id"])
        current_value = manuscript.get(guard_column)
        version = manuscript.get("version")

        q = self.client.table("manuscripts").update(
            {**payload, "version": int(version or 0) + 1, "updated_at": self._now()}
        ).eq("id", manuscript_id)
        q = q.is_(guard_column, "null") if current_value is None else q.eq(guard_column, current_value)
        q = q.is_("version", "null") if version is None else q.eq("version", version)

        resp = q.execute()
        rows = getattr(resp, "data", None) or []
        if not rows:
            raise ConcurrentTransitionError(
                f"Manuscript {manuscript_id} was modified concurrently "
                f"({guard_column}={current_value}, version={version}); transition rejected"
            )
        return rows[0]

    def _restore_phase(self, updated: dict[str, Any], *, previous: dict[str, Any]) -> None:
        """release 记录写入失败时，把 phase 条件写回原值（version 继续递增）。"""
        payload = {"workflow_phase": previous.get("workflow_phase"), "released_at": previous.get("released_at")}
        try:
            self._cas_update(manuscript=updated, guard_column="workflow_phase", payload=payload)
        except Exception as e:
            print(f"[Workflow] phase rollback failed for {updated.get('id')}: {e}")

    def _insert_transition_log(self, log: StatusTransitionLog, manuscript_id: str) -> None:
        try:
            self.client.table("status_transition_logs").insert(
                {
                    "manuscript_id": manuscript_id,
                    "from_status": log.from_status,
                    "to_status": log.to_status,
                    "comment": log.comment,
                    "changed_by": log.changed_by,
                    "created_at": log.created_at,
                }
            ).execute()
        except Exception as e:
            # 中文注释: 审计日志写失败不回滚状态
            print(f"[Workflow] transition log insert failed (ignored): {e}")

    def transition_status(
        self,
        *,
        manuscript_id: str,
        requested: str,
        changed_by: str | None = None,
        comment: str | None = None,
        extra_updates: dict[str, Any] | None = None,
    ) -> StatusChange:
        """
        校验并写入状态流转。

        抛出:
        - NotFoundError: 稿件不存在
        - WorkflowValidationError: 非法状态值 / 前置状态不满足
        - ConcurrentTransitionError: 条件写未命中（并发冲突）
        """
        ms = self.get_manuscript(manuscript_id)
        current = normalize_status(ms.get("status")) or ms.get("status")
        target = check_status_transition(current, requested)

        payload: dict[str, Any] = {"status": target}
        if extra_updates:
            payload.update(extra_updates)
        updated = self._cas_update(manuscript=ms, guard_column="status", payload=payload)

        effects: list[Effect] = []
        if target == ManuscriptStatus.PUBLISHED.value and current != ManuscriptStatus.PUBLISHED.value:
            effects.append(PublishAssets(manuscript_id=manuscript_id))
        elif target == ManuscriptStatus.RETRACTED.value and current == ManuscriptStatus.PUBLISHED.value:
            effects.append(UnpublishAssets(manuscript_id=manuscript_id))

        self._insert_transition_log(
            StatusTransitionLog(
                from_status=current,
                to_status=target,
                changed_by=changed_by,
                comment=comment,
                created_at=self._now(),
            ),
            manuscript_id=manuscript_id,
        )
        return StatusChange(row=updated, previous=current, effects=effects)

    def transition_workflow_phase(
        self,
        *,
        manuscript_id: str,
        phase: str,
        released_by: str,
        decision: Optional[str] = None,
        notes: Optional[str] = None,
        require_all_reviews_complete: bool = False,
    ) -> PhaseChange:
        """
        校验并写入 workflow phase，同时追加一条不可变的 workflow_releases 记录。

        中文注释: 目标为 RELEASED 且要求全部审稿完成时，任何活跃审稿任务未 COMPLETED 都会拒绝，
        此时不写 phase，也不追加 release 记录。
        """
        target = normalize_phase(phase)
        if target is None:
            raise WorkflowValidationError(f"Invalid workflow phase: {phase}")

        ms = self.get_manuscript(manuscript_id)
        active = self.list_active_reviews(manuscript_id)

        if require_all_reviews_complete and target == WorkflowPhase.RELEASED.value:
            incomplete = [a for a in active if str(a.get("status")) != ReviewStatus.COMPLETED.value]
            if incomplete:
                raise WorkflowValidationError(
                    f"Cannot release: {len(incomplete)} review(s) are not yet complete"
                )

        payload: dict[str, Any] = {"workflow_phase": target}
        if target == WorkflowPhase.RELEASED.value:
            payload["released_at"] = self._now()
        updated = self._cas_update(manuscript=ms, guard_column="workflow_phase", payload=payload)

        round_no = int(ms.get("workflow_round") or 1)
        release_row = {
            "manuscript_id": manuscript_id,
            "round": round_no,
            "released_by": released_by,
            "decision_type": decision,
            "notes": notes,
            "from_phase": ms.get("workflow_phase"),
            "to_phase": target,
            "created_at": self._now(),
        }
        try:
            resp = self.client.table("workflow_releases").insert(release_row).execute()
        except Exception:
            self._restore_phase(updated, previous=ms)
            raise
        rows = getattr(resp, "data", None) or []

        return PhaseChange(
            row=updated,
            previous=ms.get("workflow_phase"),
            round=round_no,
            release=rows[0] if rows else release_row,
            active_reviews=active,
        )
