from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from botflow.core.errors import NotFoundError, WorkflowValidationError
from botflow.models.actions import ActionContext, RespondToReviewData, SubmitReviewData
from botflow.models.manuscript import MessagePrivacy, ReviewStatus
from botflow.services.bot_actions.common import ActionServices, editorial_conversation_id, post_note
from botflow.services.user_service import display_name

logger = logging.getLogger("bot_actions")


def _load_assignment(services: ActionServices, assignment_id: str) -> dict[str, Any]:
    resp = (
        services.state_machine.client.table("review_assignments")
        .select("id, manuscript_id, reviewer_id, status, manuscripts(title)")
        .eq("id", assignment_id)
        .limit(1)
        .execute()
    )
    rows = getattr(resp, "data", None) or []
    if not rows:
        raise NotFoundError("Review assignment", assignment_id)
    return rows[0]


def _cas_assignment_status(
    services: ActionServices, assignment: dict[str, Any], payload: dict[str, Any]
) -> dict[str, Any]:
    resp = (
        services.state_machine.client.table("review_assignments")
        .update(payload)
        .eq("id", assignment["id"])
        .eq("status", assignment["status"])
        .execute()
    )
    rows = getattr(resp, "data", None) or []
    if not rows:
        raise WorkflowValidationError(
            f"Review assignment {assignment['id']} changed concurrently; please retry"
        )
    return rows[0]


async def handle_respond_to_review(
    data: RespondToReviewData, ctx: ActionContext, *, services: ActionServices
) -> None:
    assignment = _load_assignment(services, data.assignment_id)

    if str(assignment.get("reviewer_id")) != ctx.user_id:
        raise WorkflowValidationError("You can only respond to your own review invitations")
    status = str(assignment.get("status") or "")
    if status != ReviewStatus.PENDING.value:
        raise WorkflowValidationError(f"You have already {status.lower()} this review invitation")

    accepted = data.response == "ACCEPT"
    new_status = ReviewStatus.ACCEPTED.value if accepted else ReviewStatus.DECLINED.value
    _cas_assignment_status(services, assignment, {"status": new_status})

    reviewer = services.users.get_user(ctx.user_id)
    title = (assignment.get("manuscripts") or {}).get("title") or "Manuscript"
    if accepted:
        content = (
            "✅ **Review Invitation Accepted via Bot**\n\n"
            f"**Reviewer:** {display_name(reviewer)}\n**Manuscript:** {title}"
            + (f"\n**Message:** {data.message}" if data.message else "")
        )
    else:
        content = (
            "❌ **Review Invitation Declined via Bot**\n\n"
            f"**Reviewer:** {display_name(reviewer)}\n**Manuscript:** {title}"
            + (f"\n**Reason:** {data.message}" if data.message else "")
        )
    post_note(
        services,
        conversation_id=editorial_conversation_id(services, str(assignment["manuscript_id"])),
        author_id=ctx.user_id,
        content=content,
        metadata={
            "type": "review_invitation_response",
            "assignmentId": data.assignment_id,
            "response": new_status,
            "via": "bot",
        },
    )
    logger.info("Review invitation %s for assignment %s via bot", new_status.lower(), data.assignment_id)


async def handle_submit_review(
    data: SubmitReviewData, ctx: ActionContext, *, services: ActionServices
) -> None:
    assignment = _load_assignment(services, data.assignment_id)

    if str(assignment.get("reviewer_id")) != ctx.user_id:
        raise WorkflowValidationError("You can only submit reviews for your own assignments")
    status = str(assignment.get("status") or "")
    if status not in (ReviewStatus.ACCEPTED.value, ReviewStatus.IN_PROGRESS.value):
        raise WorkflowValidationError(f"Cannot submit review for assignment with status: {status}")

    _cas_assignment_status(
        services,
        assignment,
        {
            "status": ReviewStatus.COMPLETED.value,
            "completed_at": datetime.now(timezone.utc).isoformat(),
            "recommendation": data.recommendation,
            "score": data.score,
        },
    )

    review_conv = services.conversations.find_first_conversation(str(assignment["manuscript_id"]), "REVIEW")
    if not review_conv:
        logger.info("No review conversation for manuscript %s; review stored without message", assignment["manuscript_id"])
        return

    reviewer = services.users.get_user(ctx.user_id)
    content = (
        "📝 **Review Submitted via Bot**\n\n"
        f"**Reviewer:** {display_name(reviewer)}\n\n"
        f"**Recommendation:** {data.recommendation}\n\n"
        f"**Review:**\n{data.review_content}"
        + (f"\n\n**Score:** {data.score:g}/10" if data.score is not None else "")
    )
    post_note(
        services,
        conversation_id=str(review_conv["id"]),
        author_id=ctx.user_id,
        content=content,
        privacy=MessagePrivacy.PUBLIC,
        metadata={
            "type": "review_submission",
            "assignmentId": data.assignment_id,
            "recommendation": data.recommendation,
            "score": data.score,
            "hasConfidentialComments": bool(data.confidential_comments),
            "via": "bot",
        },
    )
    if data.confidential_comments:
        post_note(
            services,
            conversation_id=str(review_conv["id"]),
            author_id=ctx.user_id,
            content=f"🔒 **Confidential Comments (via Bot)**\n\n{data.confidential_comments}",
            privacy=MessagePrivacy.EDITOR_ONLY,
            metadata={"type": "confidential_review_comments", "assignmentId": data.assignment_id, "via": "bot"},
        )
    logger.info("Review submitted for assignment %s via bot", data.assignment_id)
