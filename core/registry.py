"""
Bot Registry — tenant id → everything needed to run that tenant's bot.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

import structlog

from core.engine import DialogEngine
from core.errors import DuplicateRegistrationError, UnknownTenantError
from core.live_chat import LiveChatBridge
from models.schemas import DEFAULT_SESSION_TIMEOUT_MS, ChannelType

logger = structlog.get_logger()


@dataclass
class BotRuntime:
    tenant_id: str
    engine: DialogEngine
    bridge: Optional[LiveChatBridge] = None
    adapter: Optional[Any] = None               # channels.base.ChannelAdapter
    session_timeout_ms: int = DEFAULT_SESSION_TIMEOUT_MS
    channel: ChannelType = ChannelType.WEB
    bot_name: str = ""
    # Clients to close on shutdown (backend services, bridge client, adapter)
    resources: list[Any] = field(default_factory=list)

    def describe(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "bot_name": self.bot_name,
            "channel": self.channel.value,
            "session_timeout_ms": self.session_timeout_ms,
            "live_chat": self.bridge is not None,
            "dialog": self.engine.dialog.describe(),
        }


class BotRegistry:

    def __init__(self):
        self._runtimes: dict[str, BotRuntime] = {}

    def register(self, runtime: BotRuntime) -> None:
        if runtime.tenant_id in self._runtimes:
            raise DuplicateRegistrationError("tenant", runtime.tenant_id)
        self._runtimes[runtime.tenant_id] = runtime
        logger.info("bot_registered",
                    tenant_id=runtime.tenant_id,
                    dialog=runtime.engine.dialog.name,
                    channel=runtime.channel.value,
                    live_chat=runtime.bridge is not None)

    def unregister(self, tenant_id: str) -> Optional[BotRuntime]:
        return self._runtimes.pop(tenant_id, None)

    def get(self, tenant_id: str) -> BotRuntime:
        runtime = self._runtimes.get(tenant_id)
        if runtime is None:
            raise UnknownTenantError(tenant_id)
        return runtime

    def is_registered(self, tenant_id: str) -> bool:
        return tenant_id in self._runtimes

    def ids(self) -> list[str]:
        return list(self._runtimes)

    def runtimes(self) -> list[BotRuntime]:
        return list(self._runtimes.values())

    def __len__(self) -> int:
        return len(self._runtimes)

    def __contains__(self, tenant_id: str) -> bool:
        return tenant_id in self._runtimes
