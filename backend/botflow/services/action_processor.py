from __future__ import annotations

import logging
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Awaitable, Callable, Iterable, Mapping

from botflow.models.actions import (
    ActionContext,
    ActionKind,
    InvalidBotAction,
    UnknownBotAction,
    parse_bot_action,
)
from botflow.services.bot_actions.common import ActionServices
from botflow.services.bot_actions.conversation_actions import (
    handle_create_conversation,
    handle_update_manuscript_status,
)
from botflow.services.bot_actions.editorial_actions import (
    handle_assign_action_editor,
    handle_make_editorial_decision,
    handle_send_manual_reminder,
    handle_update_workflow_phase,
)
from botflow.services.bot_actions.publication_actions import handle_execute_publication_workflow
from botflow.services.bot_actions.review_actions import handle_respond_to_review, handle_submit_review
from botflow.services.bot_actions.reviewer_actions import handle_assign_reviewer

logger = logging.getLogger("action_processor")

ActionHandler = Callable[[Any, ActionContext], Awaitable[Any]]

_HANDLERS = {
    ActionKind.ASSIGN_REVIEWER: handle_assign_reviewer,
    ActionKind.UPDATE_MANUSCRIPT_STATUS: handle_update_manuscript_status,
    ActionKind.CREATE_CONVERSATION: handle_create_conversation,
    ActionKind.RESPOND_TO_REVIEW: handle_respond_to_review,
    ActionKind.SUBMIT_REVIEW: handle_submit_review,
    ActionKind.MAKE_EDITORIAL_DECISION: handle_make_editorial_decision,
    ActionKind.ASSIGN_ACTION_EDITOR: handle_assign_action_editor,
    ActionKind.EXECUTE_PUBLICATION_WORKFLOW: handle_execute_publication_workflow,
    ActionKind.UPDATE_WORKFLOW_PHASE: handle_update_workflow_phase,
    ActionKind.SEND_MANUAL_REMINDER: handle_send_manual_reminder,
}


def build_handler_registry(services: ActionServices) -> dict[ActionKind, ActionHandler]:
    """
    启动时构建一次：action kind -> handler(data, ctx)。

    中文注释: 闭合集合中的每个 kind 必须恰好有一个 handler，缺失时直接在启动阶段失败。
    """
    registry: dict[ActionKind, ActionHandler] = {
        kind: partial(handler, services=services) for kind, handler in _HANDLERS.items()
    }
    missing = [k.value for k in ActionKind if k not in registry]
    if missing:
        raise RuntimeError(f"No handler registered for action kind(s): {', '.join(missing)}")
    return registry


@dataclass
class ActionBatchResult:
    processed: list[str] = field(default_factory=list)
    failed: list[tuple[str, str]] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


class ActionProcessor:
    """
    按数组顺序分发 bot actions。

    中文注释:
    - 单个 action 抛异常：记录 kind + 错误后继续下一个，不回滚、不阻塞后续 action。
    - 未注册的 kind：warning 后跳过，不计为失败。
    - ActionContext 整批共享，不因失败而改变。
    """

    def __init__(self, handlers: Mapping[ActionKind, ActionHandler]):
        self._handlers = dict(handlers)

    @classmethod
    def from_services(cls, services: ActionServices) -> "ActionProcessor":
        return cls(build_handler_registry(services))

    async def process_actions(self, actions: Iterable[Any], ctx: ActionContext) -> ActionBatchResult:
        result = ActionBatchResult()
        for raw in actions or []:
            action = parse_bot_action(raw)

            if isinstance(action, UnknownBotAction):
                logger.warning("Unknown bot action type: %s", action.type or "<empty>")
                result.skipped.append(action.type)
                continue

            kind = ActionKind(action.type)
            if isinstance(action, InvalidBotAction):
                logger.error("Failed to process bot action %s: invalid payload: %s", kind.value, action.error)
                result.failed.append((kind.value, action.error))
                continue

            handler = self._handlers.get(kind)
            if handler is None:
                logger.warning("No handler registered for bot action type: %s", kind.value)
                result.skipped.append(kind.value)
                continue

            try:
                await handler(action.data, ctx)
                result.processed.append(kind.value)
            except Exception as e:
                logger.error("Failed to process bot action %s: %s", kind.value, e, exc_info=True)
                result.failed.append((kind.value, str(e)))
        return result
