import asyncio

from fastapi import APIRouter, Depends, HTTPException

from botflow.api.v1.internal import get_job_dependencies
from botflow.core.security import ServiceCredential, require_service_credential
from botflow.jobs.deps import JobDependencies
from botflow.models.bot import BotPermission

router = APIRouter(prefix="/bots", tags=["Bots"])


def _check_scope(credential: ServiceCredential, manuscript_id: str, permission: BotPermission) -> None:
    """
    service token 只对签发时的稿件有效，且必须声明了对应权限。

    中文注释: 越权统一返回 403，不区分“稿件不符”和“权限不足”以外的细节。
    """
    if credential.manuscript_id != manuscript_id:
        raise HTTPException(status_code=403, detail="Service token is not scoped to this manuscript")
    if not credential.allows(permission.value):
        raise HTTPException(status_code=403, detail=f"Missing permission: {permission.value}")


@router.get("/manuscripts/{manuscript_id}")
async def read_manuscript(
    manuscript_id: str,
    credential: ServiceCredential = Depends(require_service_credential),
    deps: JobDependencies = Depends(get_job_dependencies),
):
    """bot 执行期间回读稿件快照（含作者列表）。"""
    _check_scope(credential, manuscript_id, BotPermission.READ_MANUSCRIPT)
    manuscript = await asyncio.to_thread(deps.contexts.fetch_manuscript, manuscript_id)
    if manuscript is None:
        raise HTTPException(status_code=404, detail=f"Manuscript {manuscript_id} not found")
    return {"success": True, "data": manuscript}


@router.get("/manuscripts/{manuscript_id}/files")
async def read_manuscript_files(
    manuscript_id: str,
    credential: ServiceCredential = Depends(require_service_credential),
    deps: JobDependencies = Depends(get_job_dependencies),
):
    _check_scope(credential, manuscript_id, BotPermission.READ_MANUSCRIPT_FILES)
    files = await asyncio.to_thread(deps.contexts.fetch_files, manuscript_id)
    return {"success": True, "data": files}
