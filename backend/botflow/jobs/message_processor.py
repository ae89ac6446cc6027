from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

from botflow.core.errors import NotFoundError
from botflow.jobs.deps import JobDependencies
from botflow.models.actions import ActionContext
from botflow.models.bot import TriggerKind, TriggeredBy
from botflow.models.jobs import MessageTriggerJob
from botflow.services.bot_runtime import parse_mentions, parse_parameters

logger = logging.getLogger("bot_worker")

WARNING_TEMPLATE = (
    "⚠️ **Bot Processing Warning**\n\n"
    "The {bot_id} bot encountered some issues while processing your request. "
    "Some features may not work as expected."
)
FAILURE_NOTICE = (
    "❌ **Bot Processing Failed**\n\n"
    "Sorry, there was an error processing your bot command. "
    "Please try again or contact support if the issue persists."
)
# 整个 job 失败时，用这些 bot 身份发失败提示（按顺序取第一个有映射的）
FAILURE_NOTICE_BOTS = ("system", "editorial-bot")


async def _post_failure_notice(deps: JobDependencies, job: MessageTriggerJob) -> None:
    for bot_id in FAILURE_NOTICE_BOTS:
        if deps.registry.get_bot_user_id(bot_id):
            await deps.materializer.post_as_bot(
                bot_id=bot_id,
                conversation_id=job.conversation_id,
                content=FAILURE_NOTICE,
                parent_id=job.message_id,
                manuscript_id=job.manuscript_id,
            )
            return
    logger.warning("No system bot identity available to post failure notice for message %s", job.message_id)


async def process_message_job(job: MessageTriggerJob, deps: JobDependencies) -> dict[str, Any]:
    """
    用户消息 @bot 触发。

    中文注释:
    - 消息 / 用户不存在：NotFoundError，整 job 失败并交给队列重试。
    - 每个 mention 独立调度；未知 / 未启用的 bot 或 command 直接跳过。
    - bot 响应带 errors：在原消息下以 bot 身份回复一条 Warning。
    - 整 job 失败：先尽力发一条 Failed 提示，再把异常继续上抛。
    """
    logger.info("Processing bot job for message %s in conversation %s", job.message_id, job.conversation_id)
    try:
        message = await asyncio.to_thread(deps.conversations.get_message, job.message_id)
        if not message:
            raise NotFoundError("Message", job.message_id)
        user = await asyncio.to_thread(deps.users.get_user, job.user_id)
        if not user:
            raise NotFoundError("User", job.user_id)

        manuscript_id: Optional[str] = job.manuscript_id
        if not manuscript_id:
            conversation = await asyncio.to_thread(deps.conversations.get_conversation, job.conversation_id)
            manuscript_id = str((conversation or {}).get("manuscript_id") or "") or None

        mentions = parse_mentions(message.get("content") or "", [p.id for p in deps.registry.plugins()])
        if not mentions:
            logger.info("No bot mentions in message %s", job.message_id)
            return {"message_id": job.message_id, "responses": 0}

        roles = user.get("roles") or []
        triggered_by = TriggeredBy(
            message_id=job.message_id,
            user_id=job.user_id,
            trigger=TriggerKind.MENTION,
            user_role=str(roles[0]).upper() if roles else None,
        )
        action_context = (
            ActionContext(manuscript_id=manuscript_id, user_id=job.user_id, conversation_id=job.conversation_id)
            if manuscript_id
            else None
        )
        journal = await asyncio.to_thread(deps.journal)

        responses = 0
        for mention in mentions:
            resolved = deps.dispatcher.resolve_command(mention.bot_id, mention.command, manuscript_id=manuscript_id)
            if resolved is None:
                continue

            context = await deps.contexts.build(
                manuscript_id=manuscript_id or "",
                conversation_id=job.conversation_id,
                triggered_by=triggered_by,
                credential=resolved.credential,
                config=resolved.invocation_config(),
                journal=journal,
            )
            params = parse_parameters(mention.arg_text, resolved.command.parameters)
            response = await deps.executor.execute_command(
                bot_id=resolved.bot_id,
                command=resolved.command,
                params=params,
                context=context,
            )
            responses += 1

            await deps.apply_response(
                response,
                bot_id=resolved.bot_id,
                conversation_id=job.conversation_id,
                action_context=action_context,
                parent_id=job.message_id,
            )

            if response.errors:
                logger.warning("Bot %s reported errors: %s", resolved.bot_id, response.errors)
                await deps.materializer.post_as_bot(
                    bot_id=resolved.bot_id,
                    conversation_id=job.conversation_id,
                    content=WARNING_TEMPLATE.format(bot_id=resolved.bot_id),
                    parent_id=job.message_id,
                    manuscript_id=manuscript_id,
                )

        logger.info("Bot processing completed for message %s with %s result(s)", job.message_id, responses)
        return {"message_id": job.message_id, "responses": responses}

    except Exception as e:
        logger.error("Bot processing failed for message %s: %s", job.message_id, e)
        try:
            await _post_failure_notice(deps, job)
        except Exception as notice_error:
            logger.error("Failed to post failure notice for message %s: %s", job.message_id, notice_error)
        raise
