"""
Banking Service — domain client for the banking backend used by the fabbank bot.

Every method returns a ServiceResult and never raises; the dialog handlers
decide what to show the user. Phone numbers are masked in every log line.

Backend responses of the form {"success": bool, "data": ..., "message": ...}
are unwrapped; any other JSON body is taken as the data of a successful call.
"""
from __future__ import annotations

from typing import Any, Optional

import httpx
import structlog

from backend.connector import RESTServiceClient, ServiceNotConfiguredError
from config.settings import BackendConfig
from models.schemas import ServiceResult
from utils.validators import mask_phone

logger = structlog.get_logger()

DEFAULT_ENDPOINTS = {
    "send_otp": "/banking/auth/send-otp",
    "verify_otp": "/banking/auth/verify-otp",
    "get_balance": "/banking/account/balance",
    "get_mini_statement": "/banking/account/mini-statement",
    "get_cards": "/banking/cards",
    "block_card": "/banking/cards/block",
    "unblock_card": "/banking/cards/unblock",
    "report_lost_card": "/banking/cards/report-lost",
    "get_card_limits": "/banking/cards/{card_id}/limits",
}


def _format_phone(phone: str) -> str:
    return phone if phone.startswith("+") else f"+{phone}"


class BankingService:

    def __init__(
        self,
        config: Optional[BackendConfig] = None,
        client: Optional[RESTServiceClient] = None,
    ):
        self.client = client or RESTServiceClient(config, default_endpoints=DEFAULT_ENDPOINTS)

    # ── Authentication ────────────────────────────────────

    async def send_otp(self, phone: str) -> ServiceResult:
        return await self._call(
            "send_otp", "POST", phone=phone,
            failure="Failed to send OTP",
            json={"phone": _format_phone(phone)},
        )

    async def verify_otp(self, phone: str, otp: str) -> ServiceResult:
        result = await self._call(
            "verify_otp", "POST", phone=phone,
            failure="OTP verification failed",
            json={"phone": _format_phone(phone), "otp": otp},
        )
        if not result.success and result.data is None:
            result.data = {"verified": False}
        return result

    # ── Account ───────────────────────────────────────────

    async def get_balance(self, phone: str) -> ServiceResult:
        return await self._call(
            "get_balance", "GET", phone=phone,
            failure="Failed to fetch balance",
            params={"phone": _format_phone(phone)},
        )

    async def get_mini_statement(self, phone: str, limit: int = 5) -> ServiceResult:
        return await self._call(
            "get_mini_statement", "GET", phone=phone,
            failure="Failed to fetch statement",
            params={"phone": _format_phone(phone), "limit": limit},
        )

    # ── Cards ─────────────────────────────────────────────

    async def get_cards(self, phone: str) -> ServiceResult:
        return await self._call(
            "get_cards", "GET", phone=phone,
            failure="Failed to fetch cards",
            params={"phone": _format_phone(phone)},
        )

    async def block_card(self, phone: str, card_id: str, reason: str = "") -> ServiceResult:
        return await self._call(
            "block_card", "POST", phone=phone, card_id=card_id,
            failure="Failed to block card",
            json={"phone": _format_phone(phone), "cardId": card_id, "reason": reason},
        )

    async def unblock_card(self, phone: str, card_id: str) -> ServiceResult:
        return await self._call(
            "unblock_card", "POST", phone=phone, card_id=card_id,
            failure="Failed to unblock card",
            json={"phone": _format_phone(phone), "cardId": card_id},
        )

    async def report_lost_card(self, phone: str, card_id: str) -> ServiceResult:
        return await self._call(
            "report_lost_card", "POST", phone=phone, card_id=card_id,
            failure="Failed to report card lost",
            json={"phone": _format_phone(phone), "cardId": card_id, "reason": "Lost card"},
        )

    async def get_card_limits(self, card_id: str) -> ServiceResult:
        return await self._call(
            "get_card_limits", "GET", card_id=card_id,
            failure="Failed to fetch limits",
            path_params={"card_id": card_id},
        )

    async def close(self) -> None:
        await self.client.close()

    # ── Internals ─────────────────────────────────────────

    async def _call(
        self, operation: str, method: str, *,
        failure: str, phone: str = "", card_id: str = "", **kwargs: Any,
    ) -> ServiceResult:
        log = logger.bind(operation=operation, phone=mask_phone(phone), card_id=card_id or None)
        try:
            body = await self.client.request(method, operation, **kwargs)
        except ServiceNotConfiguredError:
            log.warning("banking_service_not_configured")
            return ServiceResult(success=False, message="Banking service not configured")
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            log.error("banking_call_failed", status_code=status, error=str(e))
            return ServiceResult(
                success=False,
                message=_error_message(e.response) or failure,
                status_code=status,
            )
        except (httpx.HTTPError, ValueError) as e:
            log.error("banking_call_failed", error=str(e))
            return ServiceResult(success=False, message=failure)

        log.info("banking_call_ok")
        if isinstance(body, dict) and "success" in body:
            return ServiceResult(
                success=bool(body["success"]),
                data=body.get("data"),
                message=body.get("message") or ("" if body["success"] else failure),
            )
        return ServiceResult(success=True, data=body)


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return ""
    return body.get("message", "") if isinstance(body, dict) else ""
