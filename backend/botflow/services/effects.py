from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional, Union

from botflow.core.errors import DependencyFailure
from botflow.core.mail import EmailService
from botflow.services.asset_manager import PublishedAssetManager
from botflow.services.broadcaster import Broadcaster

logger = logging.getLogger("effects")


@dataclass(frozen=True)
class SendEmail:
    to_email: str
    subject: str
    template_name: str
    context: dict[str, Any] = field(default_factory=dict)
    manuscript_id: Optional[str] = None


@dataclass(frozen=True)
class Broadcast:
    conversation_id: str
    event: dict[str, Any]
    manuscript_id: Optional[str] = None


@dataclass(frozen=True)
class PublishAssets:
    manuscript_id: str


@dataclass(frozen=True)
class UnpublishAssets:
    manuscript_id: str


Effect = Union[SendEmail, Broadcast, PublishAssets, UnpublishAssets]


@dataclass(frozen=True)
class EffectOutcome:
    effect: Effect
    ok: bool
    error: Optional[str] = None


class EffectDispatcher:
    """
    副作用执行器：状态写入成功之后再逐个执行 effects。

    中文注释:
    - drain() 永不抛异常：每个 effect 的失败包装为 DependencyFailure 并记录日志。
    - 返回与输入一一对应的 outcome 列表，调用方可单独观察/重试失败项。
    """

    def __init__(
        self,
        *,
        email_service: EmailService,
        broadcaster: Broadcaster,
        asset_manager: PublishedAssetManager,
    ):
        self.email_service = email_service
        self.broadcaster = broadcaster
        self.asset_manager = asset_manager

    async def drain(self, effects: Iterable[Effect]) -> list[EffectOutcome]:
        outcomes: list[EffectOutcome] = []
        for effect in effects:
            try:
                await self._perform(effect)
                outcomes.append(EffectOutcome(effect=effect, ok=True))
            except DependencyFailure as e:
                logger.error("Effect %s failed: %s", type(effect).__name__, e)
                outcomes.append(EffectOutcome(effect=effect, ok=False, error=str(e)))
            except Exception as e:
                failure = DependencyFailure(type(effect).__name__, str(e))
                logger.error("Effect %s failed: %s", type(effect).__name__, failure, exc_info=True)
                outcomes.append(EffectOutcome(effect=effect, ok=False, error=str(failure)))
        return outcomes

    async def _perform(self, effect: Effect) -> None:
        if isinstance(effect, SendEmail):
            ok = await asyncio.to_thread(
                self.email_service.send_template_email,
                to_email=effect.to_email,
                subject=effect.subject,
                template_name=effect.template_name,
                context=effect.context,
                manuscript_id=effect.manuscript_id,
            )
            if not ok:
                raise DependencyFailure("email", f"send to {effect.to_email} failed")
        elif isinstance(effect, Broadcast):
            await asyncio.to_thread(
                self.broadcaster.notify,
                effect.conversation_id,
                effect.event,
                effect.manuscript_id,
            )
        elif isinstance(effect, PublishAssets):
            report = await asyncio.to_thread(self.asset_manager.publish, effect.manuscript_id)
            logger.info(
                "Assets published for manuscript %s: %s published, %s missing",
                effect.manuscript_id,
                len(report.published),
                len(report.missing),
            )
        elif isinstance(effect, UnpublishAssets):
            await asyncio.to_thread(self.asset_manager.unpublish, effect.manuscript_id)
        else:
            raise DependencyFailure("effect", f"unsupported effect {effect!r}")
