from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from botflow.core.errors import NotFoundError
from botflow.models.actions import (
    ActionContext,
    AssignActionEditorData,
    MakeEditorialDecisionData,
    SendManualReminderData,
    UpdateWorkflowPhaseData,
)
from botflow.models.manuscript import (
    ConversationPrivacy,
    ConversationType,
    ManuscriptStatus,
    MessagePrivacy,
    ReviewStatus,
    WorkflowPhase,
)
from botflow.services.bot_actions.common import (
    ActionServices,
    conversation_url,
    ctx_author,
    editorial_conversation_id,
    manuscript_url,
    now_label,
    post_note,
    today_label,
)
from botflow.services.effects import Broadcast, Effect, SendEmail
from botflow.services.user_service import display_name

logger = logging.getLogger("bot_actions")

DECISION_LABELS = {
    "accept": "Accepted",
    "minor_revision": "Minor Revisions Required",
    "major_revision": "Major Revisions Required",
    "reject": "Rejected",
}

PHASE_LABELS = {
    WorkflowPhase.REVIEW.value: "Review Phase",
    WorkflowPhase.DELIBERATION.value: "Deliberation Phase",
    WorkflowPhase.RELEASED.value: "Released to Authors",
    WorkflowPhase.AUTHOR_RESPONDING.value: "Author Response Phase",
}


def _completed_recommendations(services: ActionServices, manuscript_id: str) -> Counter:
    resp = (
        services.state_machine.client.table("review_assignments")
        .select("id, recommendation")
        .eq("manuscript_id", manuscript_id)
        .eq("status", ReviewStatus.COMPLETED.value)
        .execute()
    )
    rows = getattr(resp, "data", None) or []
    return Counter(str(r.get("recommendation") or "unknown") for r in rows)


def _decision_summary(
    *, decision: str, title: str, revision_type: str | None, recommendations: Counter
) -> str:
    text = f"⚖️ **Editorial Decision: {decision.replace('_', ' ', 1).upper()}**\n\n"
    text += f"**Manuscript:** {title}\n"
    text += f"**Decision Date:** {now_label()}\n"
    if revision_type:
        text += f"**Revision Type:** {revision_type.upper()}\n"
    total = sum(recommendations.values())
    if total:
        text += "\n**Review Summary:**\n"
        text += f"- {total} review(s) completed\n"
        for rec, count in recommendations.items():
            text += f"- {rec}: {count}\n"
    return text


def _ensure_revision_conversation(
    services: ActionServices, *, manuscript_id: str, editor_id: str, revision_type: str | None
) -> dict[str, Any] | None:
    """REVISION_REQUESTED 时创建作者修改讨论会话；已存在则不重复创建。"""

    if services.conversations.find_conversation_title_contains(manuscript_id, "Revision"):
        return None

    conversation = services.conversations.create_conversation(
        manuscript_id=manuscript_id,
        title=f"{revision_type or 'Manuscript'} Revision Discussion",
        conv_type=ConversationType.SEMI_PUBLIC.value,
        privacy=ConversationPrivacy.PUBLIC.value,
        moderator_id=editor_id,
        participant_ids=services.users.get_author_ids(manuscript_id),
    )
    post_note(
        services,
        conversation_id=str(conversation["id"]),
        author_id=editor_id,
        content=(
            "📝 **Revision Discussion Created**\n\n"
            f"This conversation is for discussing the {revision_type or 'manuscript'} revisions. "
            "Please use this space to:\n\n"
            "- Address reviewer comments\n"
            "- Discuss specific changes\n"
            "- Ask questions about the revision requirements"
        ),
        privacy=MessagePrivacy.PUBLIC,
        metadata={"type": "revision_conversation_created", "revisionType": revision_type},
    )
    return conversation


async def handle_make_editorial_decision(
    data: MakeEditorialDecisionData, ctx: ActionContext, *, services: ActionServices
) -> None:
    manuscript = services.state_machine.get_manuscript(ctx.manuscript_id)
    title = manuscript.get("title") or "Manuscript"

    extra: dict[str, Any] = {}
    if (data.status or "").upper() == ManuscriptStatus.ACCEPTED.value:
        extra["accepted_at"] = datetime.now(timezone.utc).isoformat()
    change = services.state_machine.transition_status(
        manuscript_id=ctx.manuscript_id,
        requested=data.status,
        changed_by=ctx.user_id,
        comment=f"editorial decision: {data.decision}",
        extra_updates=extra,
    )
    new_status = str(change.row.get("status") or data.status).upper()

    post_note(
        services,
        conversation_id=editorial_conversation_id(services, ctx.manuscript_id),
        author_id=ctx.user_id,
        content=_decision_summary(
            decision=data.decision,
            title=title,
            revision_type=data.revision_type,
            recommendations=_completed_recommendations(services, ctx.manuscript_id),
        ),
        metadata={
            "type": "editorial_decision",
            "decision": data.decision,
            "previousStatus": change.previous,
            "newStatus": new_status,
            "revisionType": data.revision_type,
            "via": "bot",
        },
    )

    label = DECISION_LABELS.get(data.decision, data.decision)
    effects: list[Effect] = list(change.effects)
    for email in services.users.get_author_emails(ctx.manuscript_id):
        effects.append(
            SendEmail(
                to_email=email,
                subject=f"Editorial Decision: {title} - {label}",
                template_name="editorial_decision.html",
                context={
                    "manuscript_title": title,
                    "decision_label": label,
                    "decision_date": today_label(),
                    "is_positive": data.decision == "accept",
                    "is_revision": "revision" in data.decision,
                    "conversation_url": conversation_url(ctx.conversation_id),
                },
                manuscript_id=ctx.manuscript_id,
            )
        )
    await services.effects.drain(effects)

    if new_status == ManuscriptStatus.REVISION_REQUESTED.value:
        _ensure_revision_conversation(
            services,
            manuscript_id=ctx.manuscript_id,
            editor_id=ctx.user_id,
            revision_type=data.revision_type,
        )
    logger.info("Editorial decision %r made for manuscript %s via bot", data.decision, ctx.manuscript_id)


async def handle_assign_action_editor(
    data: AssignActionEditorData, ctx: ActionContext, *, services: ActionServices
) -> None:
    editor = services.users.find_by_name(data.editor)
    if not editor:
        raise NotFoundError("User", data.editor)

    manuscript = services.state_machine.get_manuscript(ctx.manuscript_id)
    title = manuscript.get("title") or "Manuscript"
    now = datetime.now(timezone.utc).isoformat()

    # 中文注释: 每篇稿件只有一个 action editor，manuscript_id 唯一，重复投递即覆盖
    services.state_machine.client.table("action_editors").upsert(
        {
            "id": str(uuid4()),
            "manuscript_id": ctx.manuscript_id,
            "editor_id": str(editor["id"]),
            "assigned_at": now,
        },
        on_conflict="manuscript_id",
    ).execute()

    name = display_name(editor)
    content = "👤 **Action Editor Assignment via Bot**\n\n"
    content += f"**Assigned Editor:** {name} (@{editor.get('username') or name})\n"
    content += f"**Email:** {editor.get('email')}\n"
    if data.custom_message:
        content += f"**Message:** {data.custom_message}\n"
    content += f"**Assigned:** {now_label()}\n"
    post_note(
        services,
        conversation_id=editorial_conversation_id(services, ctx.manuscript_id),
        author_id=ctx_author(ctx, data.assigned_by),
        content=content,
        metadata={"type": "action_editor_assignment", "editorId": editor["id"], "assignedEditor": name, "via": "bot"},
    )

    effects: list[Effect] = [
        Broadcast(
            conversation_id=ctx.conversation_id,
            manuscript_id=ctx.manuscript_id,
            event={
                "type": "action-editor-assigned",
                "assignment": {
                    "manuscriptId": ctx.manuscript_id,
                    "editor": {"id": editor["id"], "name": name, "email": editor.get("email")},
                    "assignedAt": now,
                },
            },
        )
    ]
    if editor.get("email"):
        effects.append(
            SendEmail(
                to_email=str(editor["email"]),
                subject=f"Action Editor Assignment: {title}",
                template_name="action_editor_assignment.html",
                context={
                    "manuscript_title": title,
                    "custom_message": data.custom_message,
                    "assigned_date": today_label(),
                    "manuscript_url": manuscript_url(ctx.manuscript_id),
                },
                manuscript_id=ctx.manuscript_id,
            )
        )
    await services.effects.drain(effects)
    logger.info("Action editor assigned for manuscript %s: %s", ctx.manuscript_id, name)


async def handle_update_workflow_phase(
    data: UpdateWorkflowPhaseData, ctx: ActionContext, *, services: ActionServices
) -> None:
    change = services.state_machine.transition_workflow_phase(
        manuscript_id=ctx.manuscript_id,
        phase=data.phase,
        released_by=ctx.user_id,
        decision=data.decision,
        notes=data.notes,
        require_all_reviews_complete=data.require_all_reviews_complete,
    )
    phase = str(change.row.get("workflow_phase") or data.phase).upper()
    title = change.row.get("title") or "Manuscript"

    content = "🔄 **Workflow Phase Updated**\n\n"
    content += f"**New Phase:** {PHASE_LABELS.get(phase, phase)}\n"
    content += f"**Round:** {change.round}\n"
    if data.decision:
        content += f"**Decision:** {data.decision}\n"
    if data.notes:
        content += f"**Notes:** {data.notes}\n"
    content += f"**Updated:** {now_label()}\n"
    post_note(
        services,
        conversation_id=ctx.conversation_id,
        author_id=ctx.user_id,
        content=content,
        metadata={
            "type": "workflow_phase_change",
            "previousPhase": change.previous,
            "newPhase": phase,
            "round": change.round,
            "decision": data.decision,
            "via": "bot",
        },
    )

    effects: list[Effect] = [
        Broadcast(
            conversation_id=ctx.conversation_id,
            manuscript_id=ctx.manuscript_id,
            event={
                "type": "workflow-phase-changed",
                "phase": phase,
                "round": change.round,
                "decision": data.decision,
                "manuscriptId": ctx.manuscript_id,
            },
        )
    ]
    if phase == WorkflowPhase.RELEASED.value:
        for email in services.users.get_author_emails(ctx.manuscript_id):
            effects.append(
                SendEmail(
                    to_email=email,
                    subject=f"Reviews Released: {title}",
                    template_name="reviews_released.html",
                    context={
                        "manuscript_title": title,
                        "decision": data.decision,
                        "release_date": today_label(),
                        "conversation_url": conversation_url(ctx.conversation_id),
                    },
                    manuscript_id=ctx.manuscript_id,
                )
            )
    elif phase == WorkflowPhase.DELIBERATION.value:
        for assignment in change.active_reviews:
            reviewer = services.users.get_user(str(assignment.get("reviewer_id") or ""))
            if not reviewer or not reviewer.get("email"):
                continue
            effects.append(
                SendEmail(
                    to_email=str(reviewer["email"]),
                    subject=f"Deliberation Phase: {title}",
                    template_name="deliberation_started.html",
                    context={"manuscript_title": title, "conversation_url": conversation_url(ctx.conversation_id)},
                    manuscript_id=ctx.manuscript_id,
                )
            )
    await services.effects.drain(effects)
    logger.info("Workflow phase updated for manuscript %s: %s", ctx.manuscript_id, phase)


def _reminder_failed(
    services: ActionServices, ctx: ActionContext, data: SendManualReminderData, *, text: str, error: str
) -> None:
    logger.warning("Reminder for %s on manuscript %s failed: %s", data.reviewer, ctx.manuscript_id, error)
    post_note(
        services,
        conversation_id=ctx.conversation_id,
        author_id=ctx_author(ctx, data.triggered_by),
        content=f"❌ **Reminder Failed**\n\n{text}",
        metadata={"type": "reminder_error", "reviewer": data.reviewer, "error": error},
    )


async def handle_send_manual_reminder(
    data: SendManualReminderData, ctx: ActionContext, *, services: ActionServices
) -> None:
    """
    SEND_MANUAL_REMINDER：任何前置条件不满足都只在会话里写一条 EDITOR_ONLY 失败说明，不抛异常。
    """

    reviewer = services.users.find_by_name(data.reviewer)
    if not reviewer:
        _reminder_failed(
            services,
            ctx,
            data,
            text=f"Could not find reviewer {data.reviewer}. Please check the username and try again.",
            error="User not found",
        )
        return

    assignment = services.reminders.find_active_assignment(ctx.manuscript_id, str(reviewer["id"]))
    if not assignment:
        _reminder_failed(
            services,
            ctx,
            data,
            text=(
                f"No active review assignment found for {data.reviewer} on this manuscript. "
                "The reviewer may have declined, completed their review, or not yet accepted the invitation."
            ),
            error="No active assignment",
        )
        return

    if not assignment.get("due_date"):
        _reminder_failed(
            services,
            ctx,
            data,
            text=f"No due date set for {data.reviewer}'s review assignment. Please set a due date first.",
            error="No due date",
        )
        return

    result = services.reminders.send_manual_reminder(
        assignment=assignment,
        reviewer=reviewer,
        sent_by=ctx_author(ctx, data.triggered_by),
        custom_message=data.custom_message,
    )
    if not result.ok:
        _reminder_failed(
            services,
            ctx,
            data,
            text=f"Could not send reminder to {data.reviewer}: {result.error}",
            error=str(result.error),
        )
        return
    logger.info("Manual reminder sent to %s for manuscript %s", data.reviewer, ctx.manuscript_id)
