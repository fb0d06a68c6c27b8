"""Shared test fixtures for BotFlow."""
from unittest.mock import AsyncMock

import pytest

from core.dialog import Dialog
from core.engine import DialogEngine
from core.live_chat import BridgeMessages, LiveChatBridge
from core.orchestrator import SessionOrchestrator
from core.registry import BotRegistry, BotRuntime
from database.store_memory import InMemorySessionStore
from models.schemas import BridgeResult, OutboundMessage

from helpers import RecordingAdapter, build_menu_dialog


@pytest.fixture
def menu_dialog() -> Dialog:
    return build_menu_dialog()


@pytest.fixture
def engine(menu_dialog) -> DialogEngine:
    return DialogEngine(menu_dialog, handler_timeout=1.0)


@pytest.fixture
def adapter() -> RecordingAdapter:
    return RecordingAdapter()


@pytest.fixture
def bridge_client() -> AsyncMock:
    """LiveChatClient stand-in; every call succeeds unless a test says otherwise."""
    client = AsyncMock()
    client.start.return_value = BridgeResult(success=True, data={"sessionId": "lc-1"})
    client.send.return_value = BridgeResult(success=True)
    client.end.return_value = BridgeResult(success=True)
    return client


@pytest.fixture
def bridge(menu_dialog, bridge_client) -> LiveChatBridge:
    return LiveChatBridge.for_dialog(
        menu_dialog, bridge_client,
        messages=BridgeMessages(resume=[OutboundMessage.text_message("Back at the menu")]),
    )


@pytest.fixture
def store() -> InMemorySessionStore:
    return InMemorySessionStore()


@pytest.fixture
def runtime(engine, bridge, adapter) -> BotRuntime:
    return BotRuntime(
        tenant_id="acme",
        engine=engine,
        bridge=bridge,
        adapter=adapter,
        session_timeout_ms=60_000,
    )


@pytest.fixture
def orchestrator(runtime, store) -> SessionOrchestrator:
    registry = BotRegistry()
    registry.register(runtime)
    return SessionOrchestrator(registry, store)
