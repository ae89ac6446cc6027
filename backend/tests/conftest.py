import os
import sys
from typing import AsyncGenerator

import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# === 全局测试配置 ===
# 中文注释:
# 1. backend/ 放到 sys.path，保证 `import main` / `import botflow` 可用。
# 2. 测试环境不启动 worker，不依赖真实 Supabase；service token 使用固定测试密钥。
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

os.environ.setdefault("BOT_SERVICE_TOKEN_SECRET", "test-bot-secret")
os.environ.setdefault("WORKER_ENABLED", "0")
os.environ.setdefault("JOB_QUEUE_BACKEND", "memory")


@pytest_asyncio.fixture
async def client() -> AsyncGenerator:
    """
    ASGI 测试客户端（不触发 lifespan；需要的 app.state 由用例自行注入）
    """
    from main import app

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as ac:
        yield ac
