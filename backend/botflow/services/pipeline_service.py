from __future__ import annotations

import logging
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from botflow.lib.api_client import supabase_admin
from botflow.models.bot import BotEventName
from botflow.models.jobs import EventTriggerJob, PipelineStep, PipelineStepJob
from botflow.services.bot_registry import BotRegistry
from botflow.services.job_queue import JobQueue

logger = logging.getLogger("pipeline")

EVENT_PIPELINE_KEYS: dict[str, str] = {
    BotEventName.MANUSCRIPT_SUBMITTED.value: "on-submission",
    BotEventName.MANUSCRIPT_STATUS_CHANGED.value: "on-status-changed",
    BotEventName.FILE_UPLOADED.value: "on-file-uploaded",
    BotEventName.REVIEWER_ASSIGNED.value: "on-reviewer-assigned",
    BotEventName.REVIEWER_STATUS_CHANGED.value: "on-reviewer-status-changed",
    BotEventName.WORKFLOW_PHASE_CHANGED.value: "on-phase-changed",
    BotEventName.DECISION_RELEASED.value: "on-decision-released",
}


def event_to_pipeline_key(event_name: str) -> Optional[str]:
    return EVENT_PIPELINE_KEYS.get(event_name)


class PipelineConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    pipelines: dict[str, list[PipelineStep]] = Field(default_factory=dict)


def load_journal_settings(client=None) -> Optional[dict[str, Any]]:
    """读取期刊配置（单期刊部署：journal_settings 表第一行）。"""
    db = client or supabase_admin
    resp = db.table("journal_settings").select("id, name, settings").limit(1).execute()
    rows = getattr(resp, "data", None) or []
    return rows[0] if rows else None


def parse_pipeline_config(settings: Any) -> Optional[PipelineConfig]:
    if not isinstance(settings, dict):
        return None
    try:
        return PipelineConfig.model_validate(settings)
    except ValidationError as e:
        logger.warning("Ignoring malformed pipeline config: %s", e.error_count())
        return None


class PipelineService:
    """
    生命周期事件 -> bot 事件任务 + 流水线首步任务。

    中文注释:
    - dispatch_bot_event: 每个已安装、已启用且订阅该事件的 bot 各 enqueue 一个 EventTrigger。
    - dispatch_pipeline: 事件映射到 pipelines 的 key，配置非空时只 enqueue 第 0 步；
      后续步骤由 pipeline_processor 在上一步完成后逐步 enqueue。
    """

    def __init__(self, *, queue: JobQueue, registry: BotRegistry, client=None):
        self.queue = queue
        self.registry = registry
        self.client = client or supabase_admin

    def get_journal(self) -> dict[str, Any]:
        row = load_journal_settings(self.client)
        if not row:
            return {"id": "default", "settings": {}}
        return {"id": str(row.get("id") or "default"), "name": row.get("name"), "settings": row.get("settings") or {}}

    def get_pipeline_config(self) -> Optional[PipelineConfig]:
        row = load_journal_settings(self.client)
        if not row:
            return None
        return parse_pipeline_config(row.get("settings"))

    def start_pipeline(self, pipeline_key: str, manuscript_id: str) -> Optional[str]:
        config = self.get_pipeline_config()
        steps = (config.pipelines.get(pipeline_key) if config else None) or []
        if not steps:
            logger.info("No pipeline configured for %s", pipeline_key)
            return None
        job = PipelineStepJob(manuscript_id=manuscript_id, steps=steps, step_index=0)
        job_id = self.queue.enqueue(job)
        logger.info("Pipeline %s started for manuscript %s (%s steps)", pipeline_key, manuscript_id, len(steps))
        return job_id

    def dispatch_pipeline(self, event_name: str, manuscript_id: str) -> Optional[str]:
        pipeline_key = event_to_pipeline_key(event_name)
        if not pipeline_key:
            return None
        return self.start_pipeline(pipeline_key, manuscript_id)

    def dispatch_bot_event(self, event_name: str, manuscript_id: str, payload: dict[str, Any] | None = None) -> list[str]:
        job_ids: list[str] = []
        for plugin, _install in self.registry.subscribers(event_name):
            job = EventTriggerJob(
                event_name=event_name,
                bot_id=plugin.id,
                manuscript_id=manuscript_id,
                payload=dict(payload or {}),
            )
            job_ids.append(self.queue.enqueue(job))
        return job_ids

    def dispatch_lifecycle_event(
        self, event_name: str, manuscript_id: str, payload: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        event_jobs = self.dispatch_bot_event(event_name, manuscript_id, payload)
        pipeline_job = self.dispatch_pipeline(event_name, manuscript_id)
        return {"event_jobs": event_jobs, "pipeline_job": pipeline_job}
