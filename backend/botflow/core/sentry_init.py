from typing import Any

from botflow.core.config import SentryConfig

_SENSITIVE_KEYS = {
    "password",
    "access_token",
    "refresh_token",
    "token",
    "jwt",
    "authorization",
    "cookie",
    "set-cookie",
    "x-admin-key",
    "admin_api_key",
    "supabase_key",
    "service_role",
    "service_role_key",
    # bot 调用凭证
    "service_token",
    "servicetoken",
    "credential",
}

_MAX_TEXT_LEN = 5000


def _scrub(value: Any) -> Any:
    """
    隐私清洗：递归去除敏感字段与超长文本（消息正文 / 审稿意见）。
    """
    if isinstance(value, (bytes, bytearray)):
        return "[Filtered]"
    if isinstance(value, str) and len(value) > _MAX_TEXT_LEN:
        return "[Filtered]"

    if isinstance(value, dict):
        out: dict[str, Any] = {}
        for k, v in value.items():
            if str(k).strip().lower() in _SENSITIVE_KEYS:
                out[str(k)] = "[Filtered]"
                continue
            out[str(k)] = _scrub(v)
        return out

    if isinstance(value, (list, tuple)):
        return [_scrub(v) for v in value]

    return value


def _before_send(event: dict[str, Any], hint: dict[str, Any]) -> dict[str, Any] | None:
    # 中文注释: 不上传请求体，只保留必要的诊断信息。
    request = event.get("request")
    if isinstance(request, dict):
        headers = request.get("headers")
        if isinstance(headers, dict):
            request["headers"] = {
                k: v for k, v in headers.items() if str(k).strip().lower() not in _SENSITIVE_KEYS
            }
        for key in ("cookies", "data", "body"):
            if key in request:
                request[key] = "[Filtered]"
        event["request"] = request

    # 中文注释: job payload / bot 上下文可能被放进 extra/contexts，其中含 service token
    for section in ("extra", "contexts"):
        obj = event.get(section)
        if isinstance(obj, dict):
            event[section] = _scrub(obj)

    return event


def init_sentry() -> bool:
    """
    初始化 Sentry。

    零崩溃原则：
    - 若未配置 DSN / 显式禁用，则直接返回 False。
    - 任何初始化异常都应在调用方 try/except 处理，不得阻塞启动。
    """
    cfg = SentryConfig.from_env()
    if not cfg.enabled or not cfg.dsn:
        return False

    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration

    options: dict[str, Any] = {
        "dsn": cfg.dsn,
        "environment": cfg.environment,
        "traces_sample_rate": cfg.traces_sample_rate,
        "integrations": [FastApiIntegration()],
        "send_default_pii": False,
        "before_send": _before_send,
        "max_request_body_size": "never",
        "with_locals": False,
    }
    try:
        sentry_sdk.init(**options)
    except Exception as exc:
        message = str(exc)
        # 旧版本 sentry-sdk 不认识部分选项时降级重试
        if "Unknown option" in message or "unexpected keyword argument" in message:
            options.pop("with_locals", None)
            options.pop("max_request_body_size", None)
            sentry_sdk.init(**options)
        else:
            raise
    return True
