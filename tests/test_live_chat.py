"""
Tests for the live-agent handoff.

Covers:
  - LiveChatBridge state machine (connect, relay, exit, close)
  - LiveChatClient HTTP contract (httpx MockTransport)
"""
import json

import httpx
import pytest

from backend.live_chat import NOT_CONFIGURED, LiveChatClient
from config.settings import LiveChatConfig
from core.dialog import TurnContext
from models.schemas import BridgeResult, DialogEvent, LifecycleType


@pytest.fixture
def ctx():
    return TurnContext(tenant_id="acme", user_id="U1", state="LIVE", display_name="Asha")


# ──────────────────────────────────────────────────────────────
#  Bridge
# ──────────────────────────────────────────────────────────────

class TestLiveChatBridgeConnect:
    @pytest.mark.asyncio
    async def test_connect_success(self, bridge, bridge_client, ctx):
        resp = await bridge.connect(ctx, DialogEvent.action_event("live_chat"))
        bridge_client.start.assert_awaited_once_with("U1", "Asha", "")
        assert resp.next_state == "LIVE"
        assert resp.messages[0].text == bridge.messages.connected
        assert "live_chat_started_at" in resp.attributes

    @pytest.mark.asyncio
    async def test_connect_failure_still_goes_live(self, bridge, bridge_client, ctx):
        bridge_client.start.return_value = BridgeResult(success=False, error="503")
        resp = await bridge.connect(ctx, DialogEvent.action_event("live_chat"))
        assert resp.next_state == "LIVE"
        assert resp.messages[0].text == bridge.messages.connect_failed

    @pytest.mark.asyncio
    async def test_connect_client_exception_is_contained(self, bridge, bridge_client, ctx):
        bridge_client.start.side_effect = RuntimeError("boom")
        resp = await bridge.connect(ctx, DialogEvent.action_event("live_chat"))
        assert resp.next_state == "LIVE"
        assert resp.messages[0].text == bridge.messages.connect_failed

    def test_timed_out_replies(self, bridge):
        relay = bridge.timed_out("LIVE")
        assert relay.next_state is None
        assert relay.messages[0].text == bridge.messages.delivery_failed
        connect = bridge.timed_out("MENU")
        assert connect.next_state == "LIVE"
        assert connect.messages[0].text == bridge.messages.connect_failed
        assert "live_chat_started_at" in connect.attributes

    def test_predicates(self, bridge):
        assert bridge.is_active("LIVE")
        assert not bridge.is_active("MENU")
        assert bridge.is_connect(DialogEvent.action_event("live_chat"))
        assert not bridge.is_connect(DialogEvent.text_event("live_chat"))


class TestLiveChatBridgeRelay:
    @pytest.mark.asyncio
    async def test_text_is_forwarded_without_reply(self, bridge, bridge_client, ctx):
        resp = await bridge.relay(ctx, DialogEvent.text_event("my card was charged twice"))
        bridge_client.send.assert_awaited_once_with(
            "U1", {"type": "text", "text": "my card was charged twice"}, display_name="Asha",
        )
        assert resp.messages == []
        assert resp.next_state is None

    @pytest.mark.asyncio
    async def test_raw_payload_forwarded_verbatim(self, bridge, bridge_client, ctx):
        sticker = {"type": "sticker", "packageId": "446", "stickerId": "1988"}
        await bridge.relay(ctx, DialogEvent.raw_event(sticker))
        bridge_client.send.assert_awaited_once_with("U1", sticker, display_name="Asha")

    @pytest.mark.asyncio
    async def test_text_keeps_channel_message_when_available(self, bridge, bridge_client, ctx):
        raw = {"id": "m1", "type": "text", "text": "hello agent"}
        await bridge.relay(ctx, DialogEvent.text_event("hello agent", raw=raw))
        assert bridge_client.send.await_args.args[1] == raw

    @pytest.mark.asyncio
    async def test_forward_failure_gives_soft_notice(self, bridge, bridge_client, ctx):
        bridge_client.send.return_value = BridgeResult(success=False, error="timeout")
        resp = await bridge.relay(ctx, DialogEvent.text_event("hello?"))
        assert [m.text for m in resp.messages] == [bridge.messages.delivery_failed]
        assert "menu" in resp.messages[0].text
        assert resp.next_state is None

    @pytest.mark.asyncio
    async def test_exit_keyword_returns_to_bot(self, bridge, bridge_client, ctx):
        resp = await bridge.relay(ctx, DialogEvent.text_event("Back to bot please"))
        bridge_client.end.assert_awaited_once_with("U1")
        bridge_client.send.assert_not_awaited()
        assert resp.next_state == "MENU"
        assert [m.text for m in resp.messages] == [bridge.messages.ended, "Back at the menu"]
        assert resp.attributes == {"live_chat_started_at": None}
        assert resp.clear_attributes is False

    @pytest.mark.asyncio
    async def test_close_keyword_closes_session(self, bridge, bridge_client, ctx):
        resp = await bridge.relay(ctx, DialogEvent.text_event("please end session now"))
        bridge_client.end.assert_awaited_once_with("U1")
        assert resp.next_state == "CLOSED"
        assert resp.clear_attributes is True
        assert [m.text for m in resp.messages] == [bridge.messages.closed]

    @pytest.mark.asyncio
    async def test_exit_keyword_needs_word_boundary(self, bridge, bridge_client, ctx):
        resp = await bridge.relay(ctx, DialogEvent.text_event("the exits were crowded"))
        bridge_client.end.assert_not_awaited()
        bridge_client.send.assert_awaited_once()
        assert resp.messages == []

    @pytest.mark.asyncio
    async def test_exit_action(self, bridge, bridge_client, ctx):
        resp = await bridge.relay(ctx, DialogEvent.action_event("end_live_chat"))
        bridge_client.end.assert_awaited_once()
        assert resp.next_state == "MENU"

    @pytest.mark.asyncio
    async def test_other_action_is_forwarded(self, bridge, bridge_client, ctx):
        await bridge.relay(ctx, DialogEvent.action_event("check_balance"))
        payload = bridge_client.send.await_args.args[1]
        assert payload == {"type": "action", "action": "check_balance", "params": {}}

    @pytest.mark.asyncio
    async def test_end_failure_is_swallowed(self, bridge, bridge_client, ctx):
        bridge_client.end.side_effect = RuntimeError("agent service down")
        resp = await bridge.relay(ctx, DialogEvent.text_event("exit"))
        assert resp.next_state == "MENU"

    @pytest.mark.asyncio
    async def test_lifecycle_event_is_ignored(self, bridge, bridge_client, ctx):
        resp = await bridge.relay(ctx, DialogEvent.lifecycle_event(LifecycleType.FOLLOW))
        bridge_client.send.assert_not_awaited()
        assert resp.messages == []


class TestLiveChatBridgeConfig:
    @pytest.mark.asyncio
    async def test_close_keywords_always_exit(self, menu_dialog, bridge_client, ctx):
        from core.live_chat import LiveChatBridge
        config = LiveChatConfig(exit_keywords=["quit"], close_keywords=["close session"])
        bridge = LiveChatBridge.for_dialog(menu_dialog, bridge_client, config)
        resp = await bridge.relay(ctx, DialogEvent.text_event("Close Session"))
        assert resp.next_state == "CLOSED"
        resp = await bridge.relay(ctx, DialogEvent.text_event("menu"))
        # "menu" is not an exit keyword for this tenant
        assert resp.next_state is None

    def test_dialog_without_live_state_rejected(self, bridge_client):
        from core.dialog import Dialog
        from core.live_chat import LiveChatBridge
        dialog = Dialog(name="plain", states=["A"], start_state="A")
        with pytest.raises(ValueError):
            LiveChatBridge.for_dialog(dialog, bridge_client)


# ──────────────────────────────────────────────────────────────
#  HTTP client
# ──────────────────────────────────────────────────────────────

class TestLiveChatClient:
    @pytest.fixture
    def calls(self):
        return []

    def _client(self, calls, status=200, body=None):
        def handler(request: httpx.Request) -> httpx.Response:
            calls.append((request.method, request.url.path, json.loads(request.content)))
            return httpx.Response(status, json=body if body is not None else {"ok": True})
        config = LiveChatConfig(base_url="https://livechat.test/api")
        return LiveChatClient("fabbank", config, channel="line", transport=httpx.MockTransport(handler))

    @pytest.mark.asyncio
    async def test_start(self, calls):
        client = self._client(calls)
        result = await client.start("U1", "Asha")
        assert result.success
        method, path, body = calls[0]
        assert (method, path) == ("POST", "/api/live-chat/start")
        assert body == {"userId": "U1", "displayName": "Asha", "channel": "line",
                        "message": "Customer initiated live chat"}
        await client.close()

    @pytest.mark.asyncio
    async def test_send_uses_tenant_path(self, calls):
        client = self._client(calls)
        await client.send("U1", {"type": "image", "id": "img1"}, display_name="Asha")
        method, path, body = calls[0]
        assert path == "/api/live-chat/message/fabbank"
        assert body["message"] == {"type": "image", "id": "img1"}
        assert body["displayName"] == "Asha"
        await client.close()

    @pytest.mark.asyncio
    async def test_send_wraps_plain_text(self, calls):
        client = self._client(calls)
        await client.send("U1", "hi")
        assert calls[0][2]["message"] == {"type": "text", "text": "hi"}
        await client.close()

    @pytest.mark.asyncio
    async def test_end(self, calls):
        client = self._client(calls)
        await client.end("U1")
        assert calls[0][1:] == ("/api/live-chat/end", {"userId": "U1", "channel": "line"})
        await client.close()

    @pytest.mark.asyncio
    async def test_http_error_is_returned_not_raised(self, calls):
        client = self._client(calls, status=500, body={"error": "down"})
        result = await client.send("U1", "hi")
        assert result.success is False
        assert result.status_code == 500
        await client.close()

    @pytest.mark.asyncio
    async def test_transport_error_is_retried_then_reported(self):
        attempts = []

        def handler(request):
            attempts.append(1)
            raise httpx.ConnectError("refused", request=request)

        client = LiveChatClient("fabbank", LiveChatConfig(base_url="https://livechat.test"),
                                transport=httpx.MockTransport(handler))
        result = await client.end("U1")
        assert result.success is False
        assert len(attempts) == 2
        await client.close()

    @pytest.mark.asyncio
    async def test_not_configured(self):
        client = LiveChatClient("fabbank", LiveChatConfig(base_url=""))
        result = await client.start("U1", "Asha")
        assert result.success is False
        assert result.error == NOT_CONFIGURED
