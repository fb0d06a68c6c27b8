"""
Bot Runtime Factory — builds a tenant's BotRuntime from its TenantConfig.

    TenantConfig → bot script (dialog + bridge texts)
                 → DialogEngine
                 → LiveChatBridge (when live chat is enabled)
                 → ChannelAdapter (LINE)

Bot scripts are looked up by the tenant's ``dialog`` name and imported lazily.
"""
from __future__ import annotations

import importlib
from typing import Callable

import structlog

from backend.live_chat import LiveChatClient
from bots.base import BotScript
from config.settings import Settings, TenantConfig
from core.engine import DialogEngine
from core.live_chat import LiveChatBridge
from core.registry import BotRegistry, BotRuntime
from models.schemas import ChannelType

logger = structlog.get_logger()


class BotFactory:
    """
    Usage:
        runtime = BotFactory.create(settings.tenants["fabbank"], settings)
        registry.register(runtime)
    """

    # dialog name → (module, builder)
    _SCRIPTS = {
        "fabbank": ("bots.fabbank", "create_script"),
    }

    @classmethod
    def available(cls) -> list[str]:
        return sorted(cls._SCRIPTS)

    @classmethod
    def load_script(cls, name: str) -> Callable[[TenantConfig], BotScript]:
        if name not in cls._SCRIPTS:
            raise ValueError(
                f"Unknown bot script: {name!r}. Supported: {', '.join(cls.available())}"
            )
        module_name, attr = cls._SCRIPTS[name]
        return getattr(importlib.import_module(module_name), attr)

    @classmethod
    def create(cls, tenant: TenantConfig, settings: Settings) -> BotRuntime:
        script = cls.load_script(tenant.dialog)(tenant)
        resources = list(script.resources)

        engine = DialogEngine(
            script.dialog,
            handler_timeout=settings.engine.handler_timeout_s,
        )

        try:
            channel = ChannelType(tenant.channel)
        except ValueError:
            raise ValueError(f"Tenant '{tenant.tenant_id}' has unsupported channel: {tenant.channel!r}")

        bridge = None
        if tenant.live_chat.enabled and script.dialog.live_chat_state:
            client = LiveChatClient(tenant.tenant_id, tenant.live_chat, channel=channel.value)
            bridge = LiveChatBridge.for_dialog(
                script.dialog, client, tenant.live_chat, messages=script.bridge_messages,
            )
            resources.append(client)

        adapter = None
        if channel == ChannelType.LINE:
            from channels.line_adapter import LineAdapter
            adapter = LineAdapter(
                tenant.tenant_id,
                access_token=tenant.channel_credentials.get("access_token", ""),
            )
            resources.append(adapter)

        runtime = BotRuntime(
            tenant_id=tenant.tenant_id,
            engine=engine,
            bridge=bridge,
            adapter=adapter,
            session_timeout_ms=tenant.session_timeout_ms,
            channel=channel,
            bot_name=tenant.bot_name,
            resources=resources,
        )
        logger.info("bot_runtime_created",
                    tenant_id=tenant.tenant_id,
                    dialog=tenant.dialog,
                    channel=channel.value,
                    adapter=type(adapter).__name__ if adapter else None,
                    live_chat=bridge is not None)
        return runtime


def build_registry(settings: Settings) -> BotRegistry:
    """One runtime per enabled tenant."""
    registry = BotRegistry()
    for tenant in settings.tenants.values():
        if not tenant.enabled:
            logger.info("tenant_disabled", tenant_id=tenant.tenant_id)
            continue
        registry.register(BotFactory.create(tenant, settings))
    return registry


async def close_runtime(runtime: BotRuntime) -> None:
    for resource in runtime.resources:
        try:
            if hasattr(resource, "close"):
                await resource.close()
            elif hasattr(resource, "shutdown"):
                await resource.shutdown()
        except Exception as e:
            logger.warning("resource_close_failed", tenant_id=runtime.tenant_id,
                           resource=type(resource).__name__, error=str(e))
