from __future__ import annotations

import logging

from botflow.models.actions import ActionContext, CreateConversationData, UpdateManuscriptStatusData
from botflow.models.manuscript import MessagePrivacy
from botflow.services.bot_actions.common import ActionServices, now_label, post_note

logger = logging.getLogger("bot_actions")


async def handle_create_conversation(
    data: CreateConversationData, ctx: ActionContext, *, services: ActionServices
) -> None:
    """CREATE_CONVERSATION：同名同类型会话已存在时直接复用（重复投递安全）。"""

    conv_type = (data.type or "EDITORIAL").upper()
    existing = services.conversations.find_conversation_by_title(
        ctx.manuscript_id, title=data.title, conv_type=conv_type
    )
    if existing:
        logger.info("Conversation %r already exists for manuscript %s", data.title, ctx.manuscript_id)
        return

    conversation = services.conversations.create_conversation(
        manuscript_id=ctx.manuscript_id,
        title=data.title,
        conv_type=conv_type,
        privacy=data.privacy,
        moderator_id=ctx.user_id,
        participant_ids=data.participant_ids,
    )
    logger.info("Created conversation %s for manuscript %s by bot", conversation.get("id"), ctx.manuscript_id)


async def handle_update_manuscript_status(
    data: UpdateManuscriptStatusData, ctx: ActionContext, *, services: ActionServices
) -> None:
    change = services.state_machine.transition_status(
        manuscript_id=ctx.manuscript_id,
        requested=data.status,
        changed_by=ctx.user_id,
        comment=data.reason,
    )
    new_status = str(change.row.get("status") or data.status)

    # 中文注释: 状态已写入；资源发布/撤回失败只记录，不回滚
    await services.effects.drain(change.effects)

    content = (
        "📋 **Manuscript Status Updated by Editorial Bot**\n\n"
        f"**New Status:** {new_status.replace('_', ' ')}\n"
        + (f"**Reason:** {data.reason}\n" if data.reason else "")
        + f"**Updated:** {now_label()}"
    )
    post_note(
        services,
        conversation_id=ctx.conversation_id,
        author_id=ctx.user_id,
        content=content,
        privacy=MessagePrivacy.EDITOR_ONLY,
        metadata={
            "botAction": "UPDATE_MANUSCRIPT_STATUS",
            "previousStatus": change.previous,
            "newStatus": new_status,
            "reason": data.reason,
        },
    )
    logger.info("Manuscript %s status updated %s -> %s by bot", ctx.manuscript_id, change.previous, new_status)
