from __future__ import annotations

from enum import Enum

from botflow.core.errors import WorkflowValidationError


class ManuscriptStatus(str, Enum):
    """
    稿件生命周期状态枚举。

    中文注释:
    - 只有两条受限边：PUBLISHED 只能从 ACCEPTED 进入，RETRACTED 只能从 PUBLISHED 进入。
    - 其余状态可从任意当前状态进入（编辑流程由 bot 决定，不在此处限制）。
    """

    SUBMITTED = "SUBMITTED"
    UNDER_REVIEW = "UNDER_REVIEW"
    REVISION_REQUESTED = "REVISION_REQUESTED"
    REVISED = "REVISED"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    PUBLISHED = "PUBLISHED"
    RETRACTED = "RETRACTED"

    @classmethod
    def required_predecessor(cls, target: "ManuscriptStatus") -> "ManuscriptStatus | None":
        if target == cls.PUBLISHED:
            return cls.ACCEPTED
        if target == cls.RETRACTED:
            return cls.PUBLISHED
        return None


class WorkflowPhase(str, Enum):
    REVIEW = "REVIEW"
    DELIBERATION = "DELIBERATION"
    RELEASED = "RELEASED"
    AUTHOR_RESPONDING = "AUTHOR_RESPONDING"


class ReviewStatus(str, Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    IN_PROGRESS = "IN_PROGRESS"
    DECLINED = "DECLINED"
    COMPLETED = "COMPLETED"


# 参与 phase 校验的“活跃”审稿任务（PENDING/DECLINED 不计入）
ACTIVE_REVIEW_STATUSES = (
    ReviewStatus.ACCEPTED.value,
    ReviewStatus.IN_PROGRESS.value,
    ReviewStatus.COMPLETED.value,
)


class ConversationType(str, Enum):
    EDITORIAL = "EDITORIAL"
    REVIEW = "REVIEW"
    SEMI_PUBLIC = "SEMI_PUBLIC"
    PUBLIC = "PUBLIC"
    AUTHOR_ONLY = "AUTHOR_ONLY"


class ConversationPrivacy(str, Enum):
    PRIVATE = "PRIVATE"
    SEMI_PUBLIC = "SEMI_PUBLIC"
    PUBLIC = "PUBLIC"


class MessagePrivacy(str, Enum):
    """消息可见性分级（前端按此过滤）。"""

    PUBLIC = "PUBLIC"
    AUTHOR_VISIBLE = "AUTHOR_VISIBLE"
    REVIEWER_ONLY = "REVIEWER_ONLY"
    EDITOR_ONLY = "EDITOR_ONLY"
    ADMIN_ONLY = "ADMIN_ONLY"


class ParticipantRole(str, Enum):
    OBSERVER = "OBSERVER"
    PARTICIPANT = "PARTICIPANT"
    MODERATOR = "MODERATOR"


def normalize_status(value: str | None) -> str | None:
    if value is None:
        return None
    v = str(value).strip().upper()
    if not v:
        return None
    try:
        return ManuscriptStatus(v).value
    except ValueError:
        return None


def normalize_phase(value: str | None) -> str | None:
    if value is None:
        return None
    v = str(value).strip().upper()
    if not v:
        return None
    try:
        return WorkflowPhase(v).value
    except ValueError:
        return None


def check_status_transition(current: str | None, requested: str | None) -> str:
    """
    校验 (current, requested) 状态流转，返回规范化后的目标状态。

    抛出 WorkflowValidationError:
    - requested 不在枚举内
    - requested == PUBLISHED 且 current != ACCEPTED
    - requested == RETRACTED 且 current != PUBLISHED
    """

    target = normalize_status(requested)
    if target is None:
        raise WorkflowValidationError(f"Invalid manuscript status: {requested}")

    current_norm = normalize_status(current)
    required = ManuscriptStatus.required_predecessor(ManuscriptStatus(target))
    if required is not None and current_norm != required.value:
        verb = "publish" if target == ManuscriptStatus.PUBLISHED.value else "retract"
        raise WorkflowValidationError(
            f"Cannot {verb} manuscript. Manuscripts can only be moved to {target} "
            f"from {required.value} status, but current status is {current_norm or current}"
        )
    return target
