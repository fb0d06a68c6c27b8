"""
LINE Channel Adapter — LINE Messaging API integration.

Provides:
- Webhook normalization: text → text event, other message types (image,
  sticker, file, location, ...) → raw event, postback → action event with
  parsed "action=x&k=v" params, follow / unfollow → lifecycle events
- Redelivered webhook events are dropped
- Outbound rendering: text, image, buttons template (4 actions per template,
  extra options continue in further templates)
- Delivery: first 5 messages on the reply token, the rest pushed in chunks of 5
- Display names via the profile API
"""
from __future__ import annotations

from typing import Any, Optional
from urllib.parse import parse_qsl, urlencode

import httpx
import structlog

from channels.base import ChannelAdapter
from models.schemas import (
    ChannelType, DialogEvent, InboundEnvelope, LifecycleType, MessageType, OutboundMessage,
)

logger = structlog.get_logger()

LINE_API_BASE = "https://api.line.me"
MAX_BUTTONS = 4
MAX_TEXT = 5000
MAX_TEMPLATE_TEXT = 160
MAX_ALT_TEXT = 400
MAX_LABEL = 20


def parse_postback_data(data: str) -> tuple[str, dict[str, str]]:
    """'action=block_card&cardId=42' → ('block_card', {'cardId': '42'})"""
    if data and "=" not in data:
        return data, {}
    params = dict(parse_qsl(data or "", keep_blank_values=True))
    action = params.pop("action", "")
    return action, params


class LineAdapter(ChannelAdapter):

    channel_type = ChannelType.LINE
    max_messages_per_reply = 5

    def __init__(
        self,
        tenant_id: str,
        access_token: str = "",
        api_base: str = LINE_API_BASE,
        timeout_s: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(tenant_id)
        self._access_token = access_token
        self._api_base = api_base
        self._timeout = timeout_s
        self._transport = transport
        self.client: Optional[httpx.AsyncClient] = None
        if not access_token:
            logger.warning("line_access_token_missing", tenant_id=tenant_id)

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(
                base_url=self._api_base,
                headers={"Authorization": f"Bearer {self._access_token}"},
                timeout=self._timeout,
                transport=self._transport,
            )
        return self.client

    # ── Inbound ───────────────────────────────────────────────

    def normalize(self, raw_body: dict[str, Any]) -> list[InboundEnvelope]:
        envelopes = []
        for event in raw_body.get("events") or []:
            envelope = self._normalize_event(event)
            if envelope is not None:
                envelopes.append(envelope)
        self._metrics.events_received += len(envelopes)
        return envelopes

    def _normalize_event(self, event: dict[str, Any]) -> Optional[InboundEnvelope]:
        user_id = (event.get("source") or {}).get("userId")
        etype = event.get("type", "")
        if not user_id:
            logger.debug("line_event_skipped", type=etype, reason="no_user")
            return None
        if (event.get("deliveryContext") or {}).get("isRedelivery"):
            logger.info("line_event_skipped", type=etype, user_id=user_id, reason="redelivery")
            return None
        event_id = event.get("webhookEventId")
        if event_id and self._deduplicator.is_duplicate(event_id):
            logger.info("line_event_skipped", type=etype, user_id=user_id, reason="duplicate")
            return None

        if etype == "message":
            message = event.get("message") or {}
            if message.get("type") == "text":
                dialog_event = DialogEvent.text_event(message.get("text", ""), raw=message)
            else:
                dialog_event = DialogEvent.raw_event(message)
        elif etype == "postback":
            postback = event.get("postback") or {}
            action, params = parse_postback_data(postback.get("data", ""))
            dialog_event = DialogEvent.action_event(action, params, raw=postback)
        elif etype == "follow":
            dialog_event = DialogEvent.lifecycle_event(LifecycleType.FOLLOW)
        elif etype == "unfollow":
            dialog_event = DialogEvent.lifecycle_event(LifecycleType.UNFOLLOW)
        else:
            logger.debug("line_event_skipped", type=etype, user_id=user_id, reason="unsupported")
            return None

        return InboundEnvelope(
            tenant_id=self.tenant_id,
            user_id=user_id,
            channel=self.channel_type,
            event=dialog_event,
            reply_token=event.get("replyToken"),
        )

    # ── Outbound rendering ────────────────────────────────────

    def render(self, messages: list[OutboundMessage]) -> list[dict[str, Any]]:
        rendered: list[dict[str, Any]] = []
        for msg in messages:
            if msg.type == MessageType.TEXT:
                rendered.append({"type": "text", "text": msg.text[:MAX_TEXT]})
            elif msg.type == MessageType.IMAGE:
                rendered.append({
                    "type": "image",
                    "originalContentUrl": msg.image_url,
                    "previewImageUrl": msg.preview_url or msg.image_url,
                })
            elif msg.type == MessageType.CHOICE:
                rendered.extend(self._render_buttons(msg))
        return rendered

    def _render_buttons(self, msg: OutboundMessage) -> list[dict[str, Any]]:
        templates = []
        options = msg.options
        if not options:
            return [{"type": "text", "text": msg.text[:MAX_TEXT]}] if msg.text else []
        for start in range(0, len(options), MAX_BUTTONS):
            actions = [
                {
                    "type": "postback",
                    "label": opt.label[:MAX_LABEL],
                    "data": urlencode({"action": opt.action, **opt.params}),
                    "displayText": opt.display_text or opt.label,
                }
                for opt in options[start:start + MAX_BUTTONS]
            ]
            text = msg.text if start == 0 else "More options"
            templates.append({
                "type": "template",
                "altText": (msg.alt_text or msg.text)[:MAX_ALT_TEXT],
                "template": {
                    "type": "buttons",
                    "text": text[:MAX_TEMPLATE_TEXT],
                    "actions": actions,
                },
            })
        return templates

    # ── Delivery ──────────────────────────────────────────────

    async def _deliver(self, user_id: str, payloads: list[dict[str, Any]],
                       reply_token: Optional[str]) -> None:
        if not payloads:
            return
        chunks = self.chunk(payloads)
        client = await self._get_client()

        if reply_token:
            first, rest = chunks[0], chunks[1:]
            response = await client.post("/v2/bot/message/reply",
                                         json={"replyToken": reply_token, "messages": first})
            response.raise_for_status()
        else:
            rest = chunks

        for batch in rest:
            response = await client.post("/v2/bot/message/push",
                                         json={"to": user_id, "messages": batch})
            response.raise_for_status()

        logger.info("line_messages_sent", tenant_id=self.tenant_id, user_id=user_id,
                    messages=len(payloads), pushed_batches=len(rest))

    async def get_display_name(self, user_id: str) -> str:
        client = await self._get_client()
        response = await client.get(f"/v2/bot/profile/{user_id}")
        response.raise_for_status()
        return response.json().get("displayName", "")

    async def shutdown(self) -> None:
        if self.client:
            await self.client.aclose()
