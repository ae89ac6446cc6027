from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator


class JobKind(str, Enum):
    MESSAGE_TRIGGER = "bot-processing"
    EVENT_TRIGGER = "bot-event-processing"
    PIPELINE_STEP = "pipeline-step"


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    # 死信：超过 max_attempts 仍失败 / 无法识别的 kind
    DEAD = "dead"


class _JobBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class MessageTriggerJob(_JobBase):
    """用户消息中 @bot 触发。"""

    kind: Literal["bot-processing"] = "bot-processing"
    message_id: str = Field(..., alias="messageId")
    conversation_id: str = Field(..., alias="conversationId")
    user_id: str = Field(..., alias="userId")
    manuscript_id: Optional[str] = Field(None, alias="manuscriptId")


class EventTriggerJob(_JobBase):
    """稿件生命周期事件触发（每个订阅该事件的 bot 一个 job）。"""

    kind: Literal["bot-event-processing"] = "bot-event-processing"
    event_name: str = Field(..., alias="eventName")
    bot_id: str = Field(..., alias="botId")
    manuscript_id: str = Field(..., alias="manuscriptId")
    payload: dict[str, Any] = Field(default_factory=dict)


class PipelineStep(_JobBase):
    bot: str
    command: str
    parameters: dict[str, Any] = Field(default_factory=dict)


class PipelineCursor(_JobBase):
    """
    流水线游标：完整步骤列表 + 当前下标，全部保存在 job payload 内。

    中文注释: advance() 只在当前步骤的同步工作全部完成后调用，永远不在进程内递归执行下一步。
    """

    steps: list[PipelineStep]
    index: int = Field(0, ge=0)

    @property
    def current(self) -> PipelineStep | None:
        if self.index >= len(self.steps):
            return None
        return self.steps[self.index]

    def has_next(self) -> bool:
        return self.index + 1 < len(self.steps)

    def advance(self) -> "PipelineCursor":
        return PipelineCursor(steps=self.steps, index=self.index + 1)


class PipelineStepJob(_JobBase):
    kind: Literal["pipeline-step"] = "pipeline-step"
    manuscript_id: str = Field(..., alias="manuscriptId")
    steps: list[PipelineStep]
    step_index: int = Field(0, ge=0, alias="stepIndex")

    @property
    def cursor(self) -> PipelineCursor:
        return PipelineCursor(steps=self.steps, index=self.step_index)

    @classmethod
    def from_cursor(cls, manuscript_id: str, cursor: PipelineCursor) -> "PipelineStepJob":
        return cls(manuscript_id=manuscript_id, steps=cursor.steps, step_index=cursor.index)


Job = Annotated[
    Union[MessageTriggerJob, EventTriggerJob, PipelineStepJob],
    Field(discriminator="kind"),
]

_job_adapter: TypeAdapter[Job] = TypeAdapter(Job)


def parse_job(kind: str, payload: dict[str, Any]) -> MessageTriggerJob | EventTriggerJob | PipelineStepJob:
    """按 kind 解析队列中的 payload（payload 本身不需要携带 kind）。"""

    data = dict(payload or {})
    data["kind"] = kind.value if isinstance(kind, JobKind) else str(kind)
    return _job_adapter.validate_python(data)


def job_payload(job: MessageTriggerJob | EventTriggerJob | PipelineStepJob) -> dict[str, Any]:
    return job.model_dump(mode="json", by_alias=True, exclude={"kind"})


class QueuedJob(BaseModel):
    """队列中的一行（bot_jobs 表 / 内存队列条目）。"""

    model_config = ConfigDict(extra="ignore")

    id: str
    kind: str
    payload: dict[str, Any] = Field(default_factory=dict)
    status: JobStatus = JobStatus.PENDING
    attempts: int = 0
    max_attempts: int = 3
    last_error: Optional[str] = None

    @model_validator(mode="after")
    def _clamp_attempts(self) -> "QueuedJob":
        if self.max_attempts < 1:
            self.max_attempts = 1
        return self
