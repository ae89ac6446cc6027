from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from botflow.core.config import BotRuntimeConfig, CrossrefConfig, WorkerConfig
from botflow.core.mail import EmailService
from botflow.lib.api_client import supabase_admin
from botflow.models.actions import ActionContext
from botflow.models.bot import BotResponse
from botflow.services.action_processor import ActionBatchResult, ActionProcessor
from botflow.services.asset_manager import PublishedAssetManager
from botflow.services.bot_actions.common import ActionServices
from botflow.services.bot_registry import BotRegistry, TriggerDispatcher
from botflow.services.bot_runtime import BotExecutor
from botflow.services.broadcaster import Broadcaster
from botflow.services.context_builder import ContextBuilder
from botflow.services.conversation_service import ConversationService
from botflow.services.editorial_service import ManuscriptStateMachine
from botflow.services.effects import EffectDispatcher
from botflow.services.job_queue import JobQueue, build_job_queue
from botflow.services.message_materializer import MessageMaterializer
from botflow.services.pipeline_service import PipelineService
from botflow.services.reminder_service import ReminderService
from botflow.services.user_service import UserService

logger = logging.getLogger("bot_worker")

# 事件 / 流水线触发时的操作者角色
SYSTEM_USER_ROLE = "SYSTEM"


@dataclass
class JobDependencies:
    """三类 job processor 共享的协作者（进程启动时构建一次）。"""

    queue: JobQueue
    registry: BotRegistry
    dispatcher: TriggerDispatcher
    executor: BotExecutor
    contexts: ContextBuilder
    materializer: MessageMaterializer
    actions: ActionProcessor
    conversations: ConversationService
    users: UserService
    pipelines: PipelineService
    reminders: ReminderService

    def review_conversation_id(self, manuscript_id: str) -> str:
        conv = self.conversations.find_first_conversation(manuscript_id, "REVIEW")
        return str(conv["id"]) if conv else ""

    def journal(self) -> dict:
        try:
            return self.pipelines.get_journal()
        except Exception as e:
            logger.warning("Failed to load journal settings: %s", e)
            return {"id": "default", "settings": {}}

    async def apply_response(
        self,
        response: BotResponse,
        *,
        bot_id: str,
        conversation_id: str,
        action_context: Optional[ActionContext],
        parent_id: Optional[str] = None,
    ) -> Optional[ActionBatchResult]:
        """
        落地一次 bot 响应：先写消息，再处理 actions。

        中文注释: errors 非空时消息与 actions 依旧落地；是否继续流水线由调用方决定。
        """
        manuscript_id = action_context.manuscript_id if action_context else None
        await self.materializer.materialize(
            bot_id=bot_id,
            messages=response.messages,
            conversation_id=conversation_id,
            manuscript_id=manuscript_id,
            parent_id=parent_id,
        )
        if not response.actions:
            return None
        if action_context is None or not action_context.manuscript_id:
            logger.warning("Bot %s returned %s action(s) without a manuscript; skipping", bot_id, len(response.actions))
            return None
        result = await self.actions.process_actions(response.actions, action_context)
        logger.info(
            "Bot %s actions: %s processed, %s failed, %s skipped",
            bot_id,
            len(result.processed),
            len(result.failed),
            len(result.skipped),
        )
        return result


def build_default_dependencies(
    *,
    client=None,
    queue: JobQueue | None = None,
    registry: BotRegistry | None = None,
    email_service: EmailService | None = None,
    worker_config: WorkerConfig | None = None,
    runtime_config: BotRuntimeConfig | None = None,
) -> JobDependencies:
    db = client or supabase_admin
    runtime_cfg = runtime_config or BotRuntimeConfig.from_env()
    email = email_service or EmailService(supabase_client=db)

    conversations = ConversationService(db)
    users = UserService(db)
    broadcaster = Broadcaster(db)
    registry = registry or BotRegistry(db)
    queue = queue or build_job_queue(worker_config, db)

    services = ActionServices(
        state_machine=ManuscriptStateMachine(db),
        conversations=conversations,
        users=users,
        effects=EffectDispatcher(
            email_service=email,
            broadcaster=broadcaster,
            asset_manager=PublishedAssetManager(db),
        ),
        email=email,
        reminders=ReminderService(email, db),
        crossref=CrossrefConfig.from_env(),
    )

    return JobDependencies(
        queue=queue,
        registry=registry,
        dispatcher=TriggerDispatcher(registry, runtime_cfg),
        executor=BotExecutor(runtime_cfg),
        contexts=ContextBuilder(db, conversations),
        materializer=MessageMaterializer(registry=registry, conversations=conversations, broadcaster=broadcaster),
        actions=ActionProcessor.from_services(services),
        conversations=conversations,
        users=users,
        pipelines=PipelineService(queue=queue, registry=registry, client=db),
        reminders=services.reminders,
    )
