import os
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from dotenv import load_dotenv

# 在应用启动前加载环境变量
load_dotenv()

_SENTRY_ENABLED = False
try:
    from botflow.core.sentry_init import init_sentry

    _SENTRY_ENABLED = init_sentry()
    if _SENTRY_ENABLED:
        print("[sentry] enabled")
except Exception as e:
    # 中文注释: 零崩溃原则，Sentry 任何异常不得阻塞启动
    print(f"[sentry] init failed (ignored): {e}")

from botflow.api.v1 import bots, internal
from botflow.core.config import WorkerConfig
from botflow.core.middleware import ExceptionHandlerMiddleware
from botflow.jobs.deps import build_default_dependencies
from botflow.jobs.worker import WorkerPool, bootstrap_registry


@asynccontextmanager
async def lifespan(app: FastAPI):
    # 中文注释:
    # - 插件加载 / 安装状态同步 / bot 用户身份补齐都是尽力而为，不阻塞启动。
    # - WORKER_ENABLED=0 时只提供投递接口，由独立进程 `python -m botflow.jobs.worker` 消费队列。
    worker_cfg = WorkerConfig.from_env()
    deps = build_default_dependencies(worker_config=worker_cfg)
    try:
        bootstrap_registry(deps)
    except Exception as e:
        print(f"[bots] bootstrap failed (ignored): {e}")
    app.state.job_deps = deps

    pool = None
    if worker_cfg.enabled:
        pool = WorkerPool.from_dependencies(deps, worker_cfg)
        await pool.start()
        print(f"[worker] started: concurrency={worker_cfg.concurrency} backend={worker_cfg.queue_backend}")
    try:
        yield
    finally:
        if pool is not None:
            await pool.stop()


app = FastAPI(
    title="ScholarFlow Bot Engine",
    description="Bot action processing and workflow pipelines",
    version="1.0.0",
    lifespan=lifespan,
)

if _SENTRY_ENABLED:
    try:
        from sentry_sdk.integrations.asgi import SentryAsgiMiddleware

        app.add_middleware(SentryAsgiMiddleware)
    except Exception as e:
        print(f"[sentry] middleware attach failed (ignored): {e}")


def _parse_frontend_origins() -> list[str]:
    """
    解析允许跨域的前端 Origins（FRONTEND_ORIGIN / FRONTEND_ORIGINS，逗号分隔）。
    """
    origins: list[str] = []

    single = (os.environ.get("FRONTEND_ORIGIN") or "").strip()
    if single:
        origins.append(single.rstrip("/"))

    many = (os.environ.get("FRONTEND_ORIGINS") or "").strip()
    if many:
        for part in many.split(","):
            o = (part or "").strip().rstrip("/")
            if o:
                origins.append(o)

    if not origins:
        origins = ["http://localhost:3000"]

    return list(dict.fromkeys(origins))


# === 中间件配置 ===
app.add_middleware(
    CORSMiddleware,
    allow_origins=_parse_frontend_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(ExceptionHandlerMiddleware)

# === 路由注册 ===
app.include_router(internal.router, prefix="/api/v1")
app.include_router(bots.router, prefix="/api/v1")


@app.get("/")
async def root():
    return {"message": "ScholarFlow Bot Engine is running", "docs": "/docs"}
