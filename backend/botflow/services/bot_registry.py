from __future__ import annotations

import importlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from botflow.core.config import BotRuntimeConfig, app_config
from botflow.core.errors import NotFoundError
from botflow.core.security import ServiceCredential, mint_service_credential
from botflow.lib.api_client import supabase_admin
from botflow.models.bot import BotCommand, BotPlugin, EventHandler

logger = logging.getLogger("bot_registry")

BOT_EMAIL_DOMAIN = "bots.scholarflow.local"


def bot_email(bot_id: str) -> str:
    return f"{bot_id}@{BOT_EMAIL_DOMAIN}"


@dataclass
class BotInstall:
    bot_id: str
    config: dict[str, Any] = field(default_factory=dict)
    is_enabled: bool = True


def load_plugin(ref: str) -> BotPlugin:
    """
    按 `package.module:attr` 加载插件对象。

    attr 可以是 BotPlugin 实例，也可以是返回 BotPlugin 的无参工厂函数。
    """
    module_name, _, attr = ref.partition(":")
    if not module_name or not attr:
        raise ValueError(f"Invalid plugin ref '{ref}', expected 'module:attr'")
    module = importlib.import_module(module_name)
    obj = getattr(module, attr)
    if callable(obj) and not isinstance(obj, BotPlugin):
        obj = obj()
    if not isinstance(obj, BotPlugin):
        raise TypeError(f"Plugin ref '{ref}' did not resolve to a BotPlugin")
    return obj


class BotRegistry:
    """
    进程内 bot 注册表：插件定义 + 安装状态 + bot 用户身份映射。

    中文注释:
    - register 只登记定义；只有 install 且 is_enabled 的 bot 才会被调度。
    - 安装状态的持久化来源是 bot_installs 表，sync_installs() 尽力同步，失败只记日志。
    """

    def __init__(self, client=None):
        self.client = client or supabase_admin
        self._plugins: dict[str, BotPlugin] = {}
        self._installs: dict[str, BotInstall] = {}
        self._bot_user_ids: dict[str, str] = {}

    # --- 插件定义 ---

    def register(self, plugin: BotPlugin) -> None:
        if plugin.id in self._plugins:
            logger.warning("Bot %s registered twice; replacing previous definition", plugin.id)
        self._plugins[plugin.id] = plugin

    def get_plugin(self, bot_id: str) -> Optional[BotPlugin]:
        return self._plugins.get(bot_id)

    def plugins(self) -> list[BotPlugin]:
        return list(self._plugins.values())

    def load_plugins(self, refs: Iterable[str] | None = None) -> list[BotPlugin]:
        """加载 BOT_PLUGINS 中声明的插件；单个插件加载失败不影响其它插件。"""
        if refs is None:
            refs = BotRuntimeConfig.from_env().plugins
        loaded: list[BotPlugin] = []
        for ref in refs:
            try:
                plugin = load_plugin(ref)
            except Exception as e:
                logger.error("Failed to load bot plugin %s: %s", ref, e, exc_info=True)
                continue
            self.register(plugin)
            loaded.append(plugin)
        logger.info("Loaded %s bot plugin(s)", len(loaded))
        return loaded

    # --- 安装状态 ---

    def install(self, bot_id: str, config: dict[str, Any] | None = None, *, enabled: bool = True) -> BotInstall:
        plugin = self._plugins.get(bot_id)
        if plugin is None:
            raise NotFoundError("Bot", bot_id)
        install = BotInstall(
            bot_id=bot_id,
            config={**plugin.default_config, **(config or {})},
            is_enabled=enabled,
        )
        self._installs[bot_id] = install
        return install

    def uninstall(self, bot_id: str) -> None:
        self._installs.pop(bot_id, None)

    def set_enabled(self, bot_id: str, enabled: bool) -> None:
        install = self._installs.get(bot_id)
        if install is not None:
            install.is_enabled = enabled

    def get_install(self, bot_id: str) -> Optional[BotInstall]:
        return self._installs.get(bot_id)

    def active_install(self, bot_id: str) -> Optional[tuple[BotPlugin, BotInstall]]:
        """已注册、已安装且启用时返回 (plugin, install)，否则 None。"""
        plugin = self._plugins.get(bot_id)
        install = self._installs.get(bot_id)
        if plugin is None or install is None or not install.is_enabled:
            return None
        return plugin, install

    def installed(self) -> list[tuple[BotPlugin, BotInstall]]:
        out: list[tuple[BotPlugin, BotInstall]] = []
        for bot_id, install in self._installs.items():
            plugin = self._plugins.get(bot_id)
            if plugin is not None:
                out.append((plugin, install))
        return out

    def subscribers(self, event_name: str) -> list[tuple[BotPlugin, BotInstall]]:
        return [
            (plugin, install)
            for plugin, install in self.installed()
            if install.is_enabled and event_name in plugin.events
        ]

    def sync_installs(self) -> int:
        """
        从 bot_installs 读取安装状态（bot_id, config, is_enabled, bot_user_id）。

        中文注释: 表不存在 / 网络异常时保持内存状态不变，返回 0。
        """
        try:
            resp = self.client.table("bot_installs").select("bot_id, config, is_enabled, bot_user_id").execute()
        except Exception as e:
            logger.warning("Failed to sync bot installs: %s", e)
            return 0

        synced = 0
        for row in getattr(resp, "data", None) or []:
            bot_id = str(row.get("bot_id") or "")
            if bot_id not in self._plugins:
                logger.warning("bot_installs references unregistered bot %s; skipping", bot_id or "<empty>")
                continue
            self.install(bot_id, row.get("config") or {}, enabled=bool(row.get("is_enabled", True)))
            if row.get("bot_user_id"):
                self._bot_user_ids[bot_id] = str(row["bot_user_id"])
            synced += 1
        return synced

    # --- bot 用户身份 ---

    def set_bot_user_id(self, bot_id: str, user_id: str) -> None:
        self._bot_user_ids[bot_id] = user_id

    def get_bot_user_id(self, bot_id: str) -> Optional[str]:
        return self._bot_user_ids.get(bot_id)

    def ensure_bot_user(self, bot_id: str) -> str:
        """
        确保 bot 在 user_profiles 中有对应身份（邮箱 {bot_id}@bots.scholarflow.local）。

        中文注释: username 直接使用 bot_id；普通用户名生成规则会改写 'bot-' 前缀，避免冲突。
        """
        cached = self._bot_user_ids.get(bot_id)
        if cached:
            return cached

        plugin = self._plugins.get(bot_id)
        email = bot_email(bot_id)
        resp = self.client.table("user_profiles").select("id").eq("email", email).limit(1).execute()
        rows = getattr(resp, "data", None) or []
        if rows:
            user_id = str(rows[0]["id"])
        else:
            created = self.client.auth.admin.create_user(
                {"email": email, "email_confirm": True, "user_metadata": {"username": bot_id, "is_bot": True}}
            )
            user = getattr(created, "user", None)
            if not user:
                raise RuntimeError(f"create_user returned no user for bot {bot_id}")
            user_id = str(user.id)
            now = datetime.now(timezone.utc).isoformat()
            self.client.table("user_profiles").upsert(
                {
                    "id": user_id,
                    "email": email,
                    "username": bot_id,
                    "full_name": plugin.name if plugin else bot_id,
                    "roles": ["bot"],
                    "created_at": now,
                    "updated_at": now,
                }
            ).execute()
            logger.info("Created bot user %s for %s", user_id, bot_id)

        self._bot_user_ids[bot_id] = user_id
        return user_id

    def ensure_bot_users(self) -> None:
        for plugin, _install in self.installed():
            try:
                self.ensure_bot_user(plugin.id)
            except Exception as e:
                logger.warning("Failed to ensure bot user for %s: %s", plugin.id, e)


@dataclass(frozen=True)
class ResolvedTrigger:
    """调度结果：目标 bot + 具体 command / event handler + 最小权限凭证。"""

    plugin: BotPlugin
    install: BotInstall
    credential: ServiceCredential
    command: Optional[BotCommand] = None
    event_handler: Optional[EventHandler] = None

    @property
    def bot_id(self) -> str:
        return self.plugin.id

    def invocation_config(self) -> dict[str, Any]:
        return {"api_url": app_config.api_url, **self.install.config}


class TriggerDispatcher:
    """
    job -> (已安装 bot, command / event handler, 凭证)。

    中文注释:
    - bot 未注册 / 未安装 / 已禁用 / handler 不存在：返回 None 并 warning（job 直接丢弃，不重试）。
    - 凭证只携带目标 command / handler 声明的权限。
    """

    def __init__(self, registry: BotRegistry, runtime_config: BotRuntimeConfig | None = None):
        self.registry = registry
        self.runtime_config = runtime_config or BotRuntimeConfig.from_env()

    def _active(self, bot_id: str) -> Optional[tuple[BotPlugin, BotInstall]]:
        active = self.registry.active_install(bot_id)
        if active is None:
            if self.registry.get_plugin(bot_id) is None:
                logger.warning("Bot %s is not registered; dropping job", bot_id)
            else:
                logger.warning("Bot %s is not installed or is disabled; dropping job", bot_id)
        return active

    def resolve_command(self, bot_id: str, command_name: str, *, manuscript_id: str | None) -> Optional[ResolvedTrigger]:
        active = self._active(bot_id)
        if active is None:
            return None
        plugin, install = active
        command = plugin.get_command(command_name)
        if command is None:
            logger.warning("Bot %s has no command %s; dropping job", bot_id, command_name)
            return None
        credential = mint_service_credential(
            bot_id=bot_id,
            manuscript_id=manuscript_id,
            permissions=command.permissions,
            config=self.runtime_config,
        )
        return ResolvedTrigger(plugin=plugin, install=install, credential=credential, command=command)

    def resolve_event(self, bot_id: str, event_name: str, *, manuscript_id: str) -> Optional[ResolvedTrigger]:
        active = self._active(bot_id)
        if active is None:
            return None
        plugin, install = active
        handler = plugin.events.get(event_name)
        if handler is None:
            logger.warning("Bot %s has no handler for event %s; dropping job", bot_id, event_name)
            return None
        credential = mint_service_credential(
            bot_id=bot_id,
            manuscript_id=manuscript_id,
            permissions=plugin.permissions_for_event(event_name),
            config=self.runtime_config,
        )
        return ResolvedTrigger(plugin=plugin, install=install, credential=credential, event_handler=handler)
