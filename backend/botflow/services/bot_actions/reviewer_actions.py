from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from botflow.models.actions import ActionContext, AssignReviewerData
from botflow.models.manuscript import ReviewStatus
from botflow.services.bot_actions.common import ActionServices
from botflow.services.effects import Broadcast, Effect, SendEmail

logger = logging.getLogger("bot_actions")

DEFAULT_REVIEW_DAYS = 30


@dataclass
class AssignmentReport:
    successful: list[dict] = field(default_factory=list)
    already_invited: list[dict] = field(default_factory=list)
    failed: list[dict] = field(default_factory=list)


def resolve_due_date(deadline: str | None, *, now: datetime | None = None) -> str:
    """显式 deadline 优先；否则为 now + 30 天。"""
    if deadline:
        raw = deadline.strip()
        try:
            parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            parsed = None
        if parsed is not None:
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return parsed.isoformat()
    base = now or datetime.now(timezone.utc)
    return (base + timedelta(days=DEFAULT_REVIEW_DAYS)).isoformat()


async def handle_assign_reviewer(
    data: AssignReviewerData, ctx: ActionContext, *, services: ActionServices
) -> AssignmentReport:
    """
    ASSIGN_REVIEWER：逐个邮箱处理，单个邮箱失败不影响其它邮箱。

    中文注释:
    - 邮箱无对应用户时自动创建（唯一 username）。
    - 已有该稿件的审稿任务则跳过（重复投递安全）。
    - 新任务状态 PENDING，截止日期缺省 now + 30 天。
    """

    manuscript = services.state_machine.get_manuscript(ctx.manuscript_id)
    client = services.state_machine.client
    report = AssignmentReport()
    effects: list[Effect] = []

    for email in data.reviewers:
        try:
            reviewer, created = services.users.find_or_create_reviewer(email)
            reviewer_id = str(reviewer["id"])

            existing_resp = (
                client.table("review_assignments")
                .select("id, status")
                .eq("manuscript_id", ctx.manuscript_id)
                .eq("reviewer_id", reviewer_id)
                .limit(1)
                .execute()
            )
            existing = getattr(existing_resp, "data", None) or []
            if existing:
                report.already_invited.append(
                    {"email": email, "reviewer_id": reviewer_id, "status": existing[0].get("status")}
                )
                continue

            assignment = {
                "id": str(uuid4()),
                "manuscript_id": ctx.manuscript_id,
                "reviewer_id": reviewer_id,
                "status": ReviewStatus.PENDING.value,
                "due_date": resolve_due_date(data.deadline),
                "assigned_by": ctx.user_id,
                "created_at": datetime.now(timezone.utc).isoformat(),
            }
            resp = client.table("review_assignments").insert(assignment).execute()
            rows = getattr(resp, "data", None) or []
            assignment = rows[0] if rows else assignment

            reviewer_email = str(reviewer.get("email") or email).lower()
            effects.append(
                SendEmail(
                    to_email=reviewer_email,
                    subject=f"Review Invitation: {manuscript.get('title') or 'Manuscript'}",
                    template_name="review_invitation.html",
                    context={
                        "manuscript_title": manuscript.get("title") or "Manuscript",
                        "custom_message": data.custom_message,
                        "due_date": str(assignment.get("due_date") or "")[:10] or None,
                        "invitation_url": services.email.invitation_url(str(assignment["id"]), reviewer_email),
                    },
                    manuscript_id=ctx.manuscript_id,
                )
            )
            effects.append(
                Broadcast(
                    conversation_id=ctx.conversation_id,
                    manuscript_id=ctx.manuscript_id,
                    event={
                        "type": "reviewer-assigned",
                        "assignment": {
                            "manuscriptId": ctx.manuscript_id,
                            "reviewer": {
                                "id": reviewer_id,
                                "email": reviewer_email,
                                "name": reviewer.get("full_name") or reviewer_email,
                            },
                            "assignmentId": assignment["id"],
                            "status": assignment.get("status"),
                            "dueDate": assignment.get("due_date"),
                            "assignedAt": datetime.now(timezone.utc).isoformat(),
                        },
                    },
                )
            )
            report.successful.append(
                {
                    "email": email,
                    "reviewer_id": reviewer_id,
                    "assignment_id": assignment["id"],
                    "created_user": created,
                }
            )
        except Exception as e:
            logger.error("Failed to assign reviewer %s: %s", email, e, exc_info=True)
            report.failed.append({"email": email, "error": str(e)})

    await services.effects.drain(effects)
    logger.info(
        "Bot reviewer assignment completed: %s successful, %s failed, %s already invited",
        len(report.successful),
        len(report.failed),
        len(report.already_invited),
    )
    return report
