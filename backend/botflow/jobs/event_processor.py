from __future__ import annotations

import asyncio
import logging
from typing import Any

from botflow.jobs.deps import SYSTEM_USER_ROLE, JobDependencies
from botflow.models.actions import ActionContext
from botflow.models.bot import SYSTEM_USER_ID, TriggerKind, TriggeredBy
from botflow.models.jobs import EventTriggerJob

logger = logging.getLogger("bot_worker")


async def process_event_job(job: EventTriggerJob, deps: JobDependencies) -> dict[str, Any]:
    """
    生命周期事件触发单个 bot 的事件 handler。

    中文注释:
    - bot 未安装 / 已禁用 / 未订阅该事件：丢弃（不抛异常，不重试）。
    - 消息写入稿件的第一个 REVIEW 会话；actions 以 system 身份执行。
    """
    resolved = deps.dispatcher.resolve_event(job.bot_id, job.event_name, manuscript_id=job.manuscript_id)
    if resolved is None:
        return {"bot_id": job.bot_id, "event": job.event_name, "dropped": True}

    conversation_id = await asyncio.to_thread(deps.review_conversation_id, job.manuscript_id)
    journal = await asyncio.to_thread(deps.journal)
    context = await deps.contexts.build(
        manuscript_id=job.manuscript_id,
        conversation_id=conversation_id,
        triggered_by=TriggeredBy(
            message_id="",
            user_id=SYSTEM_USER_ID,
            trigger=TriggerKind.EVENT,
            user_role=SYSTEM_USER_ROLE,
        ),
        credential=resolved.credential,
        config=resolved.invocation_config(),
        journal=journal,
    )

    response = await deps.executor.execute_event(
        bot_id=resolved.bot_id,
        event_name=job.event_name,
        handler=resolved.event_handler,
        context=context,
        payload=job.payload,
    )
    await deps.apply_response(
        response,
        bot_id=resolved.bot_id,
        conversation_id=conversation_id,
        action_context=ActionContext(
            manuscript_id=job.manuscript_id,
            user_id=SYSTEM_USER_ID,
            conversation_id=conversation_id,
        ),
    )
    if response.errors:
        logger.warning("Bot %s event %s reported errors: %s", resolved.bot_id, job.event_name, response.errors)

    logger.info("Bot %s handled event %s for manuscript %s", resolved.bot_id, job.event_name, job.manuscript_id)
    return {"bot_id": job.bot_id, "event": job.event_name, "dropped": False, "errors": list(response.errors)}
