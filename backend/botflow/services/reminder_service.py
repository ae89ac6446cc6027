from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from botflow.core.mail import EmailService
from botflow.lib.api_client import supabase_admin
from botflow.models.manuscript import ReviewStatus

REMINDER_SUBJECT = "Friendly Reminder: Review Deadline Approaching"
_REMINDABLE_STATUSES = [ReviewStatus.ACCEPTED.value, ReviewStatus.IN_PROGRESS.value]


@dataclass(frozen=True)
class ReminderResult:
    ok: bool
    error: Optional[str] = None


class ReminderService:
    """
    审稿催办。

    中文注释:
    1) send_manual_reminder: 由 SEND_MANUAL_REMINDER action 触发，针对单个 assignment。
    2) run_scan: 通过内部接口 /api/v1/internal/cron/review-reminders 手动/定时触发。
       幂等：仅处理 last_reminded_at 为空且 due_date <= now + 24h 的 ACCEPTED/IN_PROGRESS 任务。
    3) 邮件失败只记录日志，不抛异常；last_reminded_at 仅在发送成功后写入。
    """

    def __init__(self, email_service: Optional[EmailService] = None, client=None):
        self._email = email_service or EmailService()
        self.client = client or supabase_admin

    def find_active_assignment(self, manuscript_id: str, reviewer_id: str) -> Optional[dict[str, Any]]:
        resp = (
            self.client.table("review_assignments")
            .select("id, reviewer_id, manuscript_id, status, due_date, manuscripts(title)")
            .eq("manuscript_id", manuscript_id)
            .eq("reviewer_id", reviewer_id)
            .in_("status", _REMINDABLE_STATUSES)
            .limit(1)
            .execute()
        )
        rows = getattr(resp, "data", None) or []
        return rows[0] if rows else None

    def send_manual_reminder(
        self,
        *,
        assignment: dict[str, Any],
        reviewer: dict[str, Any],
        sent_by: str,
        custom_message: Optional[str] = None,
    ) -> ReminderResult:
        reviewer_email = (reviewer.get("email") or "").strip()
        if not reviewer_email:
            return ReminderResult(ok=False, error="Reviewer has no email address")

        manuscript = assignment.get("manuscripts") or {}
        ok = self._email.send_template_email(
            to_email=reviewer_email,
            subject=REMINDER_SUBJECT,
            template_name="review_reminder.html",
            context={
                "recipient_name": reviewer.get("full_name") or reviewer_email.split("@")[0],
                "manuscript_title": manuscript.get("title") or "Manuscript",
                "due_date": assignment.get("due_date"),
                "custom_message": custom_message,
                "review_url": None,
            },
            manuscript_id=assignment.get("manuscript_id"),
        )
        if not ok:
            return ReminderResult(ok=False, error="Email delivery failed")

        self._mark_reminded(assignment.get("id"), sent_by=sent_by)
        return ReminderResult(ok=True)

    def _mark_reminded(self, assignment_id: Any, *, sent_by: str | None = None) -> None:
        try:
            payload: dict[str, Any] = {"last_reminded_at": datetime.now(timezone.utc).isoformat()}
            if sent_by:
                payload["last_reminded_by"] = sent_by
            self.client.table("review_assignments").update(payload).eq("id", assignment_id).execute()
        except Exception as e:
            # 中文注释: 仅影响幂等标记，不影响本次催办结果
            print(f"[ReminderService] 写入 last_reminded_at 失败: {e}")

    def run_scan(self) -> Dict[str, int]:
        now = datetime.now(timezone.utc)
        threshold = now + timedelta(hours=24)

        processed_count = 0
        emails_sent = 0

        try:
            res = (
                self.client.table("review_assignments")
                .select("id, reviewer_id, manuscript_id, due_date, last_reminded_at, manuscripts(title)")
                .in_("status", _REMINDABLE_STATUSES)
                .is_("last_reminded_at", "null")
                .lte("due_date", threshold.isoformat())
                .execute()
            )
            assignments = getattr(res, "data", None) or []
        except Exception as e:
            print(f"[ReminderService] 查询失败（可能缺表/缺列）: {e}")
            return {"processed_count": 0, "emails_sent": 0}

        for row in assignments:
            processed_count += 1
            reviewer = self._get_reviewer(row.get("reviewer_id"))
            if not reviewer or not reviewer.get("email"):
                print(f"[ReminderService] 缺少 reviewer email，跳过: reviewer_id={row.get('reviewer_id')}")
                continue

            result = self.send_manual_reminder(assignment=row, reviewer=reviewer, sent_by="system")
            if result.ok:
                emails_sent += 1

        return {"processed_count": processed_count, "emails_sent": emails_sent}

    def _get_reviewer(self, reviewer_id: Any) -> Optional[dict[str, Any]]:
        if not reviewer_id:
            return None
        try:
            res = (
                self.client.table("user_profiles")
                .select("id, email, full_name")
                .eq("id", str(reviewer_id))
                .single()
                .execute()
            )
            return getattr(res, "data", None) or None
        except Exception:
            return None
