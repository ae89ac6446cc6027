from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from botflow.jobs.deps import SYSTEM_USER_ROLE, JobDependencies
from botflow.models.actions import ActionContext
from botflow.models.bot import SYSTEM_USER_ID, TriggerKind, TriggeredBy
from botflow.models.jobs import PipelineStepJob

logger = logging.getLogger("pipeline")


@dataclass(frozen=True)
class PipelineStepOutcome:
    step_index: int
    executed: bool
    halted: bool
    next_job_id: Optional[str] = None


async def process_pipeline_step(job: PipelineStepJob, deps: JobDependencies) -> PipelineStepOutcome:
    """
    执行流水线的一步，成功后再 enqueue 下一步。

    中文注释:
    - 下一步只在本步消息 / actions 全部落地之后才 enqueue（通过队列“蹦床”推进，不在进程内循环）。
    - 本步响应 errors 非空：停止流水线，但本步的消息与 actions 照常落地。
    - bot / command 不可用：记录后停止，不抛异常。
    """
    cursor = job.cursor
    step = cursor.current
    if step is None:
        return PipelineStepOutcome(step_index=cursor.index, executed=False, halted=True)

    resolved = deps.dispatcher.resolve_command(step.bot, step.command, manuscript_id=job.manuscript_id)
    if resolved is None:
        logger.error("Pipeline step %s: bot %s/%s not available; stopping", cursor.index, step.bot, step.command)
        return PipelineStepOutcome(step_index=cursor.index, executed=False, halted=True)

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

    params = {
        **{p.name: p.default for p in resolved.command.parameters if p.default is not None},
        **step.parameters,
    }
    response = await deps.executor.execute_command(
        bot_id=resolved.bot_id,
        command=resolved.command,
        params=params,
        context=context,
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
        logger.error(
            "Pipeline step %s (%s/%s) errors: %s", cursor.index, step.bot, step.command, response.errors
        )
        return PipelineStepOutcome(step_index=cursor.index, executed=True, halted=True)

    if not cursor.has_next():
        logger.info("Pipeline completed for manuscript %s after %s step(s)", job.manuscript_id, len(cursor.steps))
        return PipelineStepOutcome(step_index=cursor.index, executed=True, halted=False)

    next_job = PipelineStepJob.from_cursor(job.manuscript_id, cursor.advance())
    next_job_id = await asyncio.to_thread(deps.queue.enqueue, next_job)
    return PipelineStepOutcome(step_index=cursor.index, executed=True, halted=False, next_job_id=next_job_id)
