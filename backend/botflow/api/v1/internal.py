import asyncio
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, ConfigDict, Field

from botflow.core.security import require_admin_key
from botflow.jobs.deps import JobDependencies
from botflow.models.bot import BotEventName
from botflow.models.jobs import MessageTriggerJob
from botflow.services.reminder_service import ReminderService

router = APIRouter(prefix="/internal", tags=["Internal"])


class LifecycleEventRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    event_name: BotEventName = Field(..., alias="eventName")
    manuscript_id: str = Field(..., alias="manuscriptId")
    payload: Dict[str, Any] = Field(default_factory=dict)


class StartPipelineRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    manuscript_id: str = Field(..., alias="manuscriptId")


def get_job_dependencies(request: Request) -> JobDependencies:
    deps: Optional[JobDependencies] = getattr(request.app.state, "job_deps", None)
    if deps is None:
        raise HTTPException(status_code=503, detail="Bot engine not initialised")
    return deps


def get_reminder_service(deps: JobDependencies = Depends(get_job_dependencies)) -> ReminderService:
    return deps.reminders


@router.post("/jobs/message", status_code=202)
async def enqueue_message_job(
    job: MessageTriggerJob,
    _admin: None = Depends(require_admin_key),
    deps: JobDependencies = Depends(get_job_dependencies),
):
    """
    新消息创建后由上游投递：异步处理消息中的 @bot 提及。
    """
    job_id = await asyncio.to_thread(deps.queue.enqueue, job)
    return {"success": True, "job_id": job_id}


@router.post("/events", status_code=202)
async def dispatch_event(
    body: LifecycleEventRequest,
    _admin: None = Depends(require_admin_key),
    deps: JobDependencies = Depends(get_job_dependencies),
):
    """
    稿件生命周期事件：扇出到订阅该事件的 bot，并启动对应的流水线（如已配置）。
    """
    result = await asyncio.to_thread(
        deps.pipelines.dispatch_lifecycle_event,
        body.event_name.value,
        body.manuscript_id,
        body.payload,
    )
    return {"success": True, **result}


@router.post("/pipelines/{pipeline_key}", status_code=202)
async def start_pipeline(
    pipeline_key: str,
    body: StartPipelineRequest,
    _admin: None = Depends(require_admin_key),
    deps: JobDependencies = Depends(get_job_dependencies),
):
    job_id = await asyncio.to_thread(deps.pipelines.start_pipeline, pipeline_key, body.manuscript_id)
    if not job_id:
        raise HTTPException(status_code=404, detail=f"No pipeline configured for '{pipeline_key}'")
    return {"success": True, "job_id": job_id}


@router.get("/jobs/health")
async def jobs_health(
    _admin: None = Depends(require_admin_key),
    deps: JobDependencies = Depends(get_job_dependencies),
):
    counts = await asyncio.to_thread(deps.queue.health)
    return {"success": True, "jobs": counts}


@router.post("/cron/review-reminders")
async def review_reminders(
    _admin: None = Depends(require_admin_key),
    service: ReminderService = Depends(get_reminder_service),
):
    """
    触发审稿截止提醒扫描（内部接口）
    """
    result = await asyncio.to_thread(service.run_scan)
    return {"success": True, **result}
