import time
import logging
from fastapi import Request, HTTPException
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from botflow.core.errors import ConcurrentTransitionError, NotFoundError, WorkflowValidationError

# === 结构化日志配置 ===
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("botflow")


def http_error_for(exc: Exception) -> HTTPException | None:
    """
    引擎异常 -> HTTP 状态码（NotFound 404 / 并发冲突 409 / 校验失败 422）。
    """
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ConcurrentTransitionError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, WorkflowValidationError):
        return HTTPException(status_code=422, detail=str(exc))
    return None


class ExceptionHandlerMiddleware(BaseHTTPMiddleware):
    """
    统一异常捕获中间件：请求日志 + 引擎异常映射 + 兜底 500。
    """
    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        try:
            response = await call_next(request)
            process_time = time.time() - start_time
            logger.info(f"Method: {request.method} Path: {request.url.path} Status: {response.status_code} Time: {process_time:.4f}s")
            return response
        except HTTPException as exc:
            return JSONResponse(
                status_code=exc.status_code,
                content={"detail": exc.detail, "type": "http_exception"}
            )
        except Exception as e:
            mapped = http_error_for(e)
            if mapped is not None:
                logger.warning(f"Method: {request.method} Path: {request.url.path} Status: {mapped.status_code} Error: {mapped.detail}")
                return JSONResponse(
                    status_code=mapped.status_code,
                    content={"detail": mapped.detail, "type": "workflow_error"}
                )
            logger.error(f"Unhandled Exception: {str(e)}", exc_info=True)
            return JSONResponse(
                status_code=500,
                content={"detail": "内部系统错误，请联系管理员", "type": "server_error"}
            )
