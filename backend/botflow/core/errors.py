from __future__ import annotations

from dataclasses import dataclass


class BotflowError(Exception):
    """所有引擎内部异常的基类。"""


@dataclass
class NotFoundError(BotflowError):
    """
    引用的 message/user/manuscript/assignment 不存在。

    中文注释: 对所在的工作单元（单个 action 或整个 job）是致命的，记录日志后继续上抛。
    """

    entity: str
    entity_id: str

    def __str__(self) -> str:
        return f"{self.entity} {self.entity_id} not found"


class WorkflowValidationError(BotflowError):
    """
    非法状态流转 / 枚举越界 / 操作者无权处理目标实体。

    中文注释: 仅对抛出它的单个 action 致命，由 ActionProcessor 捕获。
    """


class ConcurrentTransitionError(WorkflowValidationError):
    """条件写（compare-and-swap）未命中任何行：另一个并发流转抢先写入。"""


@dataclass
class DependencyFailure(BotflowError):
    """外部依赖（邮件/广播/资源发布）失败；只记录，不阻断主流程。"""

    dependency: str
    detail: str

    def __str__(self) -> str:
        return f"{self.dependency} failed: {self.detail}"


class BotTimeoutError(BotflowError):
    """Bot 执行超过截止时间；向上抛给队列，按重试策略处理。"""
