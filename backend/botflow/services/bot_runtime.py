from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Any, Iterable

from pydantic import ValidationError

from botflow.core.config import BotRuntimeConfig
from botflow.core.errors import BotTimeoutError
from botflow.models.bot import (
    BotCommand,
    BotInvocationContext,
    BotMessage,
    BotResponse,
    CommandParameter,
    EventHandler,
)

logger = logging.getLogger("bot_runtime")

_MENTION_PATTERN = re.compile(r"@([a-zA-Z0-9-]+)\s+([a-zA-Z0-9-]+)(?:[ \t]+([^@\n]*))?")
_KEY_VALUE_PATTERN = re.compile(r"(\w+)=(\"[^\"]*\"|'[^']*'|\S+)")
_TRUE_VALUES = {"true", "yes", "1", "on"}


@dataclass(frozen=True)
class ParsedMention:
    bot_id: str
    command: str
    arg_text: str
    raw_text: str


def parse_mentions(text: str, known_bots: Iterable[str] | None = None) -> list[ParsedMention]:
    """
    解析消息中的 `@bot-id command key=value ...`。

    中文注释:
    - known_bots 给定时只保留已注册的 bot id（普通 @用户 提及被忽略）。
    - 同一条消息可以包含多个 mention，按出现顺序返回。
    """
    allowed = set(known_bots) if known_bots is not None else None
    mentions: list[ParsedMention] = []
    for match in _MENTION_PATTERN.finditer(text or ""):
        bot_id, command, arg_text = match.group(1), match.group(2), match.group(3) or ""
        if allowed is not None and bot_id not in allowed:
            continue
        mentions.append(
            ParsedMention(bot_id=bot_id, command=command, arg_text=arg_text.strip(), raw_text=match.group(0))
        )
    return mentions


def _convert(value: str, param: CommandParameter) -> Any:
    # 中文注释: 参数没有显式类型，按默认值的类型转换；无默认值时保留字符串
    default = param.default
    if isinstance(default, bool):
        return value.strip().lower() in _TRUE_VALUES
    if isinstance(default, int):
        try:
            return int(value)
        except ValueError:
            return value
    if isinstance(default, float):
        try:
            return float(value)
        except ValueError:
            return value
    if isinstance(default, (list, tuple)):
        return [v.strip() for v in value.split(",") if v.strip()]
    return value


def parse_parameters(arg_text: str, parameters: Iterable[CommandParameter]) -> dict[str, Any]:
    """
    key=value 优先；剩余的位置参数依次填给尚未赋值的参数；最后补默认值。
    """
    defs = list(parameters)
    by_name = {p.name: p for p in defs}
    params: dict[str, Any] = {}

    remaining = arg_text or ""
    for match in _KEY_VALUE_PATTERN.finditer(arg_text or ""):
        key, raw = match.group(1), match.group(2)
        if raw[:1] in {'"', "'"} and raw[-1:] == raw[:1]:
            raw = raw[1:-1]
        param = by_name.get(key)
        if param is not None:
            params[key] = _convert(raw, param)
        remaining = remaining.replace(match.group(0), " ", 1)

    positional = [p for p in defs if p.name not in params]
    for param, value in zip(positional, remaining.split()):
        params[param.name] = _convert(value, param)

    for param in defs:
        if param.name not in params and param.default is not None:
            params[param.name] = param.default
    return params


def validate_parameters(params: dict[str, Any], command: BotCommand) -> list[str]:
    errors: list[str] = []
    for param in command.parameters:
        value = params.get(param.name)
        if param.required and (value is None or value == ""):
            errors.append(f"Missing required parameter: {param.name}")
    return errors


def invalid_parameters_message(command: BotCommand, errors: list[str]) -> BotMessage:
    lines = [f"❌ **Invalid Parameters for `{command.name}`**", ""]
    lines.extend(f"- {e}" for e in errors)
    usage = " ".join(
        f"{p.name}=<{p.name}>" if p.required else f"[{p.name}=<{p.name}>]" for p in command.parameters
    )
    lines.extend(["", f"**Usage:** `{command.name} {usage}`".rstrip()])
    return BotMessage(content="\n".join(lines))


def coerce_response(bot_id: str, raw: Any) -> BotResponse:
    """把插件返回值统一成 BotResponse（None -> 空响应）。"""
    if raw is None:
        return BotResponse(bot_id=bot_id)
    if isinstance(raw, BotResponse):
        return raw.model_copy(update={"bot_id": raw.bot_id or bot_id})
    try:
        response = BotResponse.model_validate(raw)
    except ValidationError as e:
        logger.error("Bot %s returned an invalid response: %s", bot_id, e)
        return BotResponse.failure(bot_id, f"Invalid bot response: {e.error_count()} validation error(s)")
    if not response.bot_id:
        response = response.model_copy(update={"bot_id": bot_id})
    return response


class BotExecutor:
    """
    执行 bot command / event handler。

    中文注释:
    - 必填参数缺失：不调用插件，直接返回带 errors 的响应。
    - 插件抛异常：转成 errors 返回（消息/action 由调用方照常处理）。
    - 超过 BOT_EXECUTION_TIMEOUT_MS：抛 BotTimeoutError，交给队列重试。
    """

    def __init__(self, config: BotRuntimeConfig | None = None):
        self.config = config or BotRuntimeConfig.from_env()

    @property
    def timeout_sec(self) -> float:
        return self.config.execution_timeout_ms / 1000.0

    async def _run(self, bot_id: str, label: str, coro) -> BotResponse:
        try:
            raw = await asyncio.wait_for(coro, timeout=self.timeout_sec)
        except asyncio.TimeoutError:
            raise BotTimeoutError(
                f"Bot {bot_id} {label} timed out after {self.config.execution_timeout_ms}ms"
            )
        except Exception as e:
            logger.error("Bot %s %s failed: %s", bot_id, label, e, exc_info=True)
            return BotResponse.failure(bot_id, str(e) or type(e).__name__)
        return coerce_response(bot_id, raw)

    async def execute_command(
        self,
        *,
        bot_id: str,
        command: BotCommand,
        params: dict[str, Any],
        context: BotInvocationContext,
    ) -> BotResponse:
        errors = validate_parameters(params, command)
        if errors:
            return BotResponse(
                bot_id=bot_id,
                messages=[invalid_parameters_message(command, errors)],
                errors=errors,
            )
        return await self._run(bot_id, f"command '{command.name}'", command.execute(params, context))

    async def execute_event(
        self,
        *,
        bot_id: str,
        event_name: str,
        handler: EventHandler,
        context: BotInvocationContext,
        payload: dict[str, Any],
    ) -> BotResponse:
        return await self._run(bot_id, f"event '{event_name}'", handler(context, payload))
