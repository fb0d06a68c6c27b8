"""Bot scripts and the runtime factory that wires them to tenants."""
from bots.base import BotScript
from bots.factory import BotFactory, build_registry, close_runtime

__all__ = ["BotScript", "BotFactory", "build_registry", "close_runtime"]
