"""
Backend Connector — Generic REST client for a bot's business backend.

Configured per tenant (tenants.<id>.backend in settings.yaml):
    backend:
      base_url: https://api.example.com
      timeout_s: 5
      auth_type: bearer            # none | bearer | api_key
      auth_credentials: {token: ...}
      endpoints:                   # optional overrides of named endpoints
        get_balance: /v2/account/balance

Transport errors (connect/read timeouts, refused connections) are retried
with exponential backoff; HTTP error statuses are not.
"""
from __future__ import annotations

from typing import Any, Optional

import httpx
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from config.settings import BackendConfig

logger = structlog.get_logger()


class ServiceNotConfiguredError(RuntimeError):
    """Raised when a request is made without a configured base URL."""


class RESTServiceClient:
    """
    REST API client.
    Named endpoints resolve through config.endpoints, then default_endpoints,
    then are used as a raw path.
    """

    def __init__(
        self,
        config: Optional[BackendConfig] = None,
        default_endpoints: Optional[dict[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config or BackendConfig()
        self.endpoints = {**(default_endpoints or {}), **self.config.endpoints}
        self._transport = transport
        self.client: Optional[httpx.AsyncClient] = None

    @property
    def is_configured(self) -> bool:
        return bool(self.config.base_url)

    def _auth_headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.config.auth_type == "bearer":
            token = self.config.auth_credentials.get("token", "")
            headers["Authorization"] = f"Bearer {token}"
        elif self.config.auth_type == "api_key":
            key_name = self.config.auth_credentials.get("header_name", "X-API-Key")
            headers[key_name] = self.config.auth_credentials.get("api_key", "")
        return headers

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(
                base_url=self.config.base_url,
                headers=self._auth_headers(),
                timeout=self.config.timeout_s,
                transport=self._transport,
            )
        return self.client

    def resolve(self, endpoint: str, path_params: Optional[dict[str, Any]] = None) -> str:
        url = self.endpoints.get(endpoint, endpoint)
        for k, v in (path_params or {}).items():
            url = url.replace(f"{{{k}}}", str(v))
        return url

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.2, max=2),
        reraise=True,
    )
    async def request(self, method: str, endpoint: str, **kwargs) -> Any:
        if not self.is_configured:
            raise ServiceNotConfiguredError("Backend base_url is not configured")
        client = await self._get_client()
        url = self.resolve(endpoint, kwargs.pop("path_params", None))

        response = await client.request(method, url, **kwargs)
        response.raise_for_status()
        if not response.content:
            return {}
        return response.json()

    async def close(self):
        if self.client:
            await self.client.aclose()
