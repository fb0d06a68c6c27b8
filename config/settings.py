"""
Configuration loader for the BotFlow platform.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from models.schemas import DEFAULT_SESSION_TIMEOUT_MS

DEFAULT_EXIT_KEYWORDS = [
    "exit", "quit", "end chat", "exit chat", "close chat", "back to bot",
    "end live chat", "end session", "close session", "menu", "main menu",
    "disconnect",
]
DEFAULT_CLOSE_KEYWORDS = ["end session", "close session"]


@dataclass
class LoggingConfig:
    level: str = "INFO"
    json: bool = False


@dataclass
class StoreConfig:
    backend: str = "memory"                     # "memory" | "file" | "sql"
    file_dir: str = "./data"                    # directory for file backend
    url: str = "sqlite:///./botflow.db"         # postgresql:// | mysql:// | sqlite://
    sweep_interval_s: float = 30.0              # expiry sweep for durable backends


@dataclass
class EngineConfig:
    handler_timeout_s: float = 20.0


@dataclass
class BackendConfig:
    base_url: str = ""
    timeout_s: float = 5.0
    auth_type: str = "none"                     # "none" | "bearer" | "api_key"
    auth_credentials: dict[str, Any] = field(default_factory=dict)
    endpoints: dict[str, str] = field(default_factory=dict)


@dataclass
class LiveChatConfig:
    enabled: bool = True
    base_url: str = ""
    timeout_s: float = 5.0
    connect_action: str = "live_chat"
    exit_actions: list[str] = field(default_factory=lambda: ["end_live_chat"])
    exit_keywords: list[str] = field(default_factory=lambda: list(DEFAULT_EXIT_KEYWORDS))
    close_keywords: list[str] = field(default_factory=lambda: list(DEFAULT_CLOSE_KEYWORDS))


@dataclass
class TenantConfig:
    tenant_id: str
    dialog: str = ""                            # bot script name, e.g. "fabbank"
    enabled: bool = True
    channel: str = "line"
    bot_name: str = ""
    session_timeout_ms: int = DEFAULT_SESSION_TIMEOUT_MS
    welcome_image: str = ""
    backend: BackendConfig = field(default_factory=BackendConfig)
    live_chat: LiveChatConfig = field(default_factory=LiveChatConfig)
    channel_credentials: dict[str, Any] = field(default_factory=dict)


@dataclass
class Settings:
    app_name: str = "BotFlow"
    debug: bool = False
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)
    tenants: dict[str, TenantConfig] = field(default_factory=dict)


_settings: Optional[Settings] = None

_ENV_REF = re.compile(r"\$\{(\w+)\}")


def _expand_env(node: Any) -> Any:
    """${VAR} → os.environ["VAR"] in every string of the parsed YAML; unset refs stay."""
    if isinstance(node, dict):
        return {key: _expand_env(value) for key, value in node.items()}
    if isinstance(node, list):
        return [_expand_env(item) for item in node]
    if isinstance(node, str):
        return _ENV_REF.sub(lambda m: os.environ.get(m.group(1), m.group(0)), node)
    return node


def _resolved(value: Any) -> str:
    """Empty string for an unset ${VAR} placeholder."""
    if not value or (isinstance(value, str) and _ENV_REF.fullmatch(value)):
        return ""
    return str(value)


def _parse_backend(raw: dict[str, Any]) -> BackendConfig:
    return BackendConfig(
        base_url=_resolved(raw.get("base_url")),
        timeout_s=float(raw.get("timeout_s", 5.0)),
        auth_type=raw.get("auth_type", "none"),
        auth_credentials=raw.get("auth_credentials", {}),
        endpoints=raw.get("endpoints", {}),
    )


def _parse_live_chat(raw: dict[str, Any]) -> LiveChatConfig:
    defaults = LiveChatConfig()
    return LiveChatConfig(
        enabled=raw.get("enabled", defaults.enabled),
        base_url=_resolved(raw.get("base_url")),
        timeout_s=float(raw.get("timeout_s", defaults.timeout_s)),
        connect_action=raw.get("connect_action", defaults.connect_action),
        exit_actions=raw.get("exit_actions", defaults.exit_actions),
        exit_keywords=raw.get("exit_keywords", defaults.exit_keywords),
        close_keywords=raw.get("close_keywords", defaults.close_keywords),
    )


def parse_tenant(tenant_id: str, raw: dict[str, Any]) -> TenantConfig:
    return TenantConfig(
        tenant_id=tenant_id,
        dialog=raw.get("dialog", tenant_id),
        enabled=raw.get("enabled", True),
        channel=raw.get("channel", "line"),
        bot_name=raw.get("bot_name", ""),
        session_timeout_ms=int(raw.get("session_timeout_ms", DEFAULT_SESSION_TIMEOUT_MS)),
        welcome_image=_resolved(raw.get("welcome_image")),
        backend=_parse_backend(raw.get("backend", {})),
        live_chat=_parse_live_chat(raw.get("live_chat", {})),
        channel_credentials={
            k: _resolved(v) if isinstance(v, str) else v
            for k, v in (raw.get("channel_credentials") or {}).items()
        },
    )


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "BOTFLOW_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _expand_env(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)

        if "logging" in raw:
            lg = raw["logging"]
            settings.logging = LoggingConfig(
                level=str(lg.get("level", "INFO")).upper(),
                json=bool(lg.get("json", False)),
            )

        if "store" in raw:
            st = raw["store"]
            settings.store = StoreConfig(
                backend=st.get("backend", settings.store.backend),
                file_dir=st.get("file_dir", settings.store.file_dir),
                url=st.get("url", settings.store.url),
                sweep_interval_s=float(st.get("sweep_interval_s", settings.store.sweep_interval_s)),
            )

        if "engine" in raw:
            settings.engine = EngineConfig(
                handler_timeout_s=float(raw["engine"].get("handler_timeout_s", 20.0)),
            )

        for tenant_id, t_data in (raw.get("tenants") or {}).items():
            settings.tenants[tenant_id] = parse_tenant(tenant_id, t_data or {})

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings (for testing)."""
    global _settings
    _settings = None
