"""
Live Chat Client — HTTP bridge to the external live-agent middleware.

    POST {base}/live-chat/start                  {userId, displayName, channel, message}
    POST {base}/live-chat/message/{tenantId}     {userId, displayName, channel, message}
    POST {base}/live-chat/end                    {userId, channel}

No call raises: failures come back as BridgeResult(success=False, error=...).
Delivery to the agent is at-most-once from the bot's point of view.
"""
from __future__ import annotations

from typing import Any, Optional

import httpx
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from config.settings import LiveChatConfig
from models.schemas import BridgeResult

logger = structlog.get_logger()

NOT_CONFIGURED = "Live chat service not configured"
DEFAULT_INITIAL_MESSAGE = "Customer initiated live chat"


class LiveChatClient:

    def __init__(
        self,
        tenant_id: str,
        config: Optional[LiveChatConfig] = None,
        channel: str = "line",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.tenant_id = tenant_id
        self.config = config or LiveChatConfig()
        self.channel = channel
        self._transport = transport
        self.client: Optional[httpx.AsyncClient] = None
        if not self.is_available:
            logger.warning("live_chat_not_configured", tenant_id=tenant_id)

    @property
    def is_available(self) -> bool:
        return bool(self.config.base_url)

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(
                base_url=self.config.base_url.rstrip("/"),
                headers={"Content-Type": "application/json"},
                timeout=self.config.timeout_s,
                transport=self._transport,
            )
        return self.client

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(2),
        wait=wait_exponential(multiplier=0.2, max=1),
        reraise=True,
    )
    async def _post(self, path: str, payload: dict[str, Any]) -> Any:
        client = await self._get_client()
        response = await client.post(path, json=payload)
        response.raise_for_status()
        return response.json() if response.content else {}

    async def _call(self, op: str, user_id: str, path: str, payload: dict[str, Any]) -> BridgeResult:
        if not self.is_available:
            logger.warning("live_chat_not_configured", tenant_id=self.tenant_id,
                           user_id=user_id, op=op)
            return BridgeResult(success=False, error=NOT_CONFIGURED)
        try:
            data = await self._post(path, payload)
        except httpx.HTTPStatusError as e:
            logger.error("live_chat_call_failed", op=op, tenant_id=self.tenant_id,
                         user_id=user_id, status_code=e.response.status_code, error=str(e))
            return BridgeResult(success=False, error=str(e), status_code=e.response.status_code)
        except (httpx.HTTPError, ValueError) as e:
            logger.error("live_chat_call_failed", op=op, tenant_id=self.tenant_id,
                         user_id=user_id, error=str(e))
            return BridgeResult(success=False, error=str(e) or type(e).__name__)

        logger.info("live_chat_call_ok", op=op, tenant_id=self.tenant_id, user_id=user_id)
        return BridgeResult(success=True, data=data)

    # ── Operations ────────────────────────────────────────

    async def start(self, user_id: str, display_name: str, message: str = "") -> BridgeResult:
        return await self._call("start", user_id, "/live-chat/start", {
            "userId": user_id,
            "displayName": display_name,
            "channel": self.channel,
            "message": message or DEFAULT_INITIAL_MESSAGE,
        })

    async def send(self, user_id: str, message: dict[str, Any] | str,
                   display_name: str = "") -> BridgeResult:
        if isinstance(message, str):
            message = {"type": "text", "text": message}
        return await self._call("message", user_id, f"/live-chat/message/{self.tenant_id}", {
            "userId": user_id,
            "displayName": display_name,
            "channel": self.channel,
            "message": message,
        })

    async def end(self, user_id: str) -> BridgeResult:
        return await self._call("end", user_id, "/live-chat/end", {
            "userId": user_id,
            "channel": self.channel,
        })

    async def close(self) -> None:
        if self.client:
            await self.client.aclose()
