from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterable

import jwt
from fastapi import Depends, Header, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from botflow.core.config import BotRuntimeConfig, get_admin_api_key

SERVICE_TOKEN_TYPE = "bot_service"
ALGORITHM = "HS256"

# 中文注释: 缺失 Authorization 头时由依赖自行返回 401
bot_bearer = HTTPBearer(auto_error=False)


async def require_admin_key(x_admin_key: str | None = Header(default=None, alias="X-Admin-Key")) -> None:
    """
    内部接口鉴权依赖

    中文注释:
    - 该 Key 不属于用户体系（不是 JWT），仅用于内部任务触发器 / 上游服务投递任务。
    - 若未配置 ADMIN_API_KEY，则直接拒绝，避免误开放“内部接口”。
    """

    expected = get_admin_api_key()
    if not expected:
        raise HTTPException(status_code=401, detail="Admin key not configured")
    if not x_admin_key or x_admin_key != expected:
        raise HTTPException(status_code=401, detail="Invalid admin key")


@dataclass(frozen=True)
class ServiceCredential:
    bot_id: str
    manuscript_id: str
    permissions: tuple[str, ...]
    token: str

    def allows(self, permission: str) -> bool:
        return permission in self.permissions


def _get_service_token_secret(config: BotRuntimeConfig | None = None) -> str:
    cfg = config or BotRuntimeConfig.from_env()
    if not cfg.service_token_secret:
        raise RuntimeError("BOT_SERVICE_TOKEN_SECRET/SECRET_KEY not configured")
    return cfg.service_token_secret


def mint_service_credential(
    *,
    bot_id: str,
    manuscript_id: str | None,
    permissions: Iterable[str],
    config: BotRuntimeConfig | None = None,
) -> ServiceCredential:
    """
    为单次 bot 调用签发最小权限 service token。

    中文注释:
    - permissions 必须恰好是目标 command / event handler 声明的权限，不做合并放大。
    - token 随 job 生命周期使用，不落库。
    """

    cfg = config or BotRuntimeConfig.from_env()
    secret = _get_service_token_secret(cfg)
    perms = tuple(dict.fromkeys(str(p) for p in permissions if str(p).strip()))
    now = datetime.now(timezone.utc)
    payload = {
        "type": SERVICE_TOKEN_TYPE,
        "bot_id": bot_id,
        "manuscript_id": manuscript_id or "",
        "permissions": list(perms),
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(seconds=cfg.service_token_ttl_sec)).timestamp()),
    }
    token = jwt.encode(payload, secret, algorithm=ALGORITHM)
    return ServiceCredential(
        bot_id=bot_id,
        manuscript_id=manuscript_id or "",
        permissions=perms,
        token=token,
    )


def decode_service_credential(token: str, *, config: BotRuntimeConfig | None = None) -> ServiceCredential:
    """
    解码并校验 service token（供 bot 回调 API 使用）。

    抛出:
    - HTTPException(401): token 无效/过期/类型不符
    """

    try:
        secret = _get_service_token_secret(config)
    except RuntimeError:
        raise HTTPException(status_code=500, detail="Service token secret not configured")

    try:
        raw = jwt.decode(token, secret, algorithms=[ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Service token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid service token")

    if raw.get("type") != SERVICE_TOKEN_TYPE:
        raise HTTPException(status_code=401, detail="Invalid service token")

    return ServiceCredential(
        bot_id=str(raw.get("bot_id") or ""),
        manuscript_id=str(raw.get("manuscript_id") or ""),
        permissions=tuple(str(p) for p in (raw.get("permissions") or [])),
        token=token,
    )


async def require_service_credential(
    credentials: HTTPAuthorizationCredentials | None = Depends(bot_bearer),
) -> ServiceCredential:
    """bot 回调 API 的鉴权依赖：Authorization: Bearer <service token>。"""
    if credentials is None or not credentials.credentials:
        raise HTTPException(status_code=401, detail="Missing service token")
    return decode_service_credential(credentials.credentials)
