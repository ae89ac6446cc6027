import os
from dataclasses import dataclass, field
from typing import Optional


def _env_bool(key: str, default: bool) -> bool:
    raw = os.environ.get(key)
    if raw is None:
        return default
    lowered = raw.strip().lower()
    return lowered in {"1", "true", "yes", "y", "on"}


def _env_int(key: str, default: int, *, min_value: int | None = None) -> int:
    raw = (os.environ.get(key) or "").strip()
    try:
        value = int(raw) if raw else default
    except ValueError:
        value = default
    if min_value is not None:
        value = max(min_value, value)
    return value


def _env_float(key: str, default: float, *, min_value: float | None = None) -> float:
    raw = (os.environ.get(key) or "").strip()
    try:
        value = float(raw) if raw else default
    except ValueError:
        value = default
    if min_value is not None:
        value = max(min_value, value)
    return value


@dataclass(frozen=True)
class AppConfig:
    """
    进程级基础配置（Supabase 连接 + 前后端地址）
    """

    env: str  # 'development', 'staging', 'production'
    is_staging: bool
    supabase_url: str
    supabase_key: str
    frontend_url: str
    api_url: str

    @staticmethod
    def from_env() -> "AppConfig":
        env = (os.environ.get("APP_ENV") or "development").strip().lower()
        is_staging = env == "staging"

        supabase_url = (os.environ.get("SUPABASE_URL") or "").strip()
        supabase_key = (os.environ.get("SUPABASE_SERVICE_ROLE_KEY") or "").strip()
        frontend_url = (os.environ.get("FRONTEND_URL") or "http://localhost:3000").strip().rstrip("/")
        api_url = (os.environ.get("API_URL") or "http://localhost:8000").strip().rstrip("/")

        return AppConfig(
            env=env,
            is_staging=is_staging,
            supabase_url=supabase_url,
            supabase_key=supabase_key,
            frontend_url=frontend_url,
            api_url=api_url,
        )


# Global Config Instance
app_config = AppConfig.from_env()


@dataclass(frozen=True)
class WorkerConfig:
    """
    Bot 任务队列 / Worker 池配置

    中文注释:
    1) concurrency 为“单进程”并发槽位数；多进程部署时总并发 = 进程数 * concurrency。
    2) backoff_seconds 按失败次数取值，超出列表长度时沿用最后一档。
    3) attempts >= max_attempts 后任务进入 dead 状态（死信），不再重试。
    4) processing 状态的锁超过 lock_timeout_sec 视为 worker 已崩溃，任务会被重新领取。
    """

    enabled: bool
    concurrency: int
    poll_interval_sec: float
    max_attempts: int
    backoff_seconds: tuple[int, ...]
    queue_backend: str
    lock_timeout_sec: int = 300

    @staticmethod
    def from_env() -> "WorkerConfig":
        raw_backoff = (os.environ.get("JOB_BACKOFF_SECONDS") or "60,300,1800").strip()
        backoff: list[int] = []
        for part in raw_backoff.split(","):
            part = part.strip()
            if not part:
                continue
            try:
                backoff.append(max(0, int(part)))
            except ValueError:
                continue
        if not backoff:
            backoff = [60, 300, 1800]

        backend = (os.environ.get("JOB_QUEUE_BACKEND") or "supabase").strip().lower()
        if backend not in {"supabase", "memory"}:
            backend = "supabase"

        return WorkerConfig(
            enabled=_env_bool("WORKER_ENABLED", True),
            concurrency=_env_int("WORKER_CONCURRENCY", 3, min_value=1),
            poll_interval_sec=_env_float("WORKER_POLL_INTERVAL_SEC", 1.0, min_value=0.05),
            max_attempts=_env_int("JOB_MAX_ATTEMPTS", 3, min_value=1),
            backoff_seconds=tuple(backoff),
            queue_backend=backend,
            lock_timeout_sec=_env_int("JOB_LOCK_TIMEOUT_SEC", 300, min_value=1),
        )

    def backoff_for(self, attempts: int) -> int:
        idx = min(max(attempts - 1, 0), len(self.backoff_seconds) - 1)
        return self.backoff_seconds[idx]


@dataclass(frozen=True)
class BotRuntimeConfig:
    """
    Bot 执行时配置

    中文注释:
    - service token 的签名密钥严禁复用 SUPABASE_SERVICE_ROLE_KEY。
    - 未配置 BOT_SERVICE_TOKEN_SECRET 时回退 SECRET_KEY；两者都缺失则在签发时报错。
    """

    execution_timeout_ms: int
    service_token_secret: Optional[str]
    service_token_ttl_sec: int
    plugins: tuple[str, ...] = field(default_factory=tuple)

    @staticmethod
    def from_env() -> "BotRuntimeConfig":
        secret = (os.environ.get("BOT_SERVICE_TOKEN_SECRET") or "").strip() or (
            os.environ.get("SECRET_KEY") or ""
        ).strip()
        raw_plugins = (os.environ.get("BOT_PLUGINS") or "").strip()
        plugins = tuple(p.strip() for p in raw_plugins.split(",") if p.strip())
        return BotRuntimeConfig(
            execution_timeout_ms=_env_int("BOT_EXECUTION_TIMEOUT_MS", 30000, min_value=1),
            service_token_secret=secret or None,
            service_token_ttl_sec=_env_int("BOT_SERVICE_TOKEN_TTL_SEC", 3600, min_value=60),
            plugins=plugins,
        )


@dataclass(frozen=True)
class SMTPConfig:
    """
    SMTP 配置（从环境变量读取）

    中文注释:
    1) 该配置只存在于后端进程内，严禁泄露到前端。
    2) 允许在本地/测试环境缺省（此时邮件发送逻辑会优雅降级为“只记录日志”）。
    """

    host: str
    port: int
    user: Optional[str]
    password: Optional[str]
    from_email: str
    use_starttls: bool

    @staticmethod
    def from_env() -> Optional["SMTPConfig"]:
        host = (os.environ.get("SMTP_HOST") or "").strip()
        if not host:
            return None

        port = _env_int("SMTP_PORT", 587)
        user = (os.environ.get("SMTP_USER") or "").strip() or None
        password = (os.environ.get("SMTP_PASSWORD") or "").strip() or None

        from_email = (
            os.environ.get("SMTP_FROM_EMAIL") or user or "no-reply@scholarflow.local"
        ).strip()

        use_starttls = _env_bool("SMTP_USE_STARTTLS", True)

        return SMTPConfig(
            host=host,
            port=port,
            user=user,
            password=password,
            from_email=from_email,
            use_starttls=use_starttls,
        )


@dataclass(frozen=True)
class ResendConfig:
    """
    Resend API Configuration (production email)
    """
    api_key: str
    sender: str

    @staticmethod
    def from_env() -> Optional["ResendConfig"]:
        api_key = (os.environ.get("RESEND_API_KEY") or "").strip()
        if not api_key:
            return None

        sender = (
            os.environ.get("EMAIL_SENDER") or "ScholarFlow <onboarding@resend.dev>"
        ).strip()

        return ResendConfig(api_key=api_key, sender=sender)


@dataclass(frozen=True)
class CrossrefConfig:
    """
    DOI 前缀配置（出版流程生成本地 DOI 时使用）
    """

    doi_prefix: str
    journal_title: str

    @staticmethod
    def from_env() -> "CrossrefConfig":
        doi_prefix = (os.environ.get("CROSSREF_DOI_PREFIX") or "10.5555").strip()
        journal_title = (os.environ.get("JOURNAL_TITLE") or "Scholar Flow Journal").strip()
        return CrossrefConfig(doi_prefix=doi_prefix, journal_title=journal_title)


@dataclass(frozen=True)
class SentryConfig:
    enabled: bool
    dsn: Optional[str]
    environment: str
    traces_sample_rate: float

    @staticmethod
    def from_env() -> "SentryConfig":
        dsn = (os.environ.get("SENTRY_DSN") or "").strip() or None
        return SentryConfig(
            enabled=_env_bool("SENTRY_ENABLED", bool(dsn)),
            dsn=dsn,
            environment=(os.environ.get("SENTRY_ENVIRONMENT") or app_config.env).strip(),
            traces_sample_rate=_env_float("SENTRY_TRACES_SAMPLE_RATE", 0.0, min_value=0.0),
        )


def get_admin_api_key() -> Optional[str]:
    """
    内部接口鉴权 Key（/api/v1/internal/*）
    """

    raw = os.environ.get("ADMIN_API_KEY")
    return raw.strip() if raw else None
