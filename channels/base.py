"""
Channel adapter base: the seam between a messaging platform and the orchestrator.

An adapter turns a webhook body into InboundEnvelopes and sends
OutboundMessage descriptors back in the platform's wire format. The base
class owns the delivery guard rails shared by every platform:

- ChannelError / CircuitOpenError
- CircuitBreaker that stops hammering a platform API that keeps failing
- ChannelMetrics for /health
- MessageDeduplicator keyed by the platform's webhook event id
"""
from __future__ import annotations

import abc
import time
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

import httpx
import structlog

from models.schemas import ChannelType, InboundEnvelope, OutboundMessage

logger = structlog.get_logger()


class ChannelError(Exception):
    """Delivery to a channel failed."""

    def __init__(self, message: str, channel: str = "", retryable: bool = False):
        super().__init__(message)
        self.channel = channel
        self.retryable = retryable


class CircuitOpenError(ChannelError):
    def __init__(self, channel: str = ""):
        super().__init__(f"{channel or 'channel'} delivery suspended: circuit open",
                         channel, retryable=True)


# ──────────────────────────────────────────────────────────────
#  Circuit breaker
# ──────────────────────────────────────────────────────────────

class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Opens after ``failure_threshold`` consecutive failed sends. Once
    ``recovery_timeout`` seconds have passed it reports half_open and lets
    one send through; that send closes it again or re-opens it.
    """

    def __init__(self, failure_threshold: int = 5, recovery_timeout: float = 60.0):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._tripped = False
        self._consecutive_failures = 0
        self._tripped_at = 0.0

    @property
    def state(self) -> BreakerState:
        if not self._tripped:
            return BreakerState.CLOSED
        if time.monotonic() - self._tripped_at < self.recovery_timeout:
            return BreakerState.OPEN
        return BreakerState.HALF_OPEN

    @property
    def is_open(self) -> bool:
        return self.state == BreakerState.OPEN

    def record_failure(self) -> None:
        probing = self.state == BreakerState.HALF_OPEN
        self._consecutive_failures += 1
        if probing or self._consecutive_failures >= self.failure_threshold:
            self._tripped = True
            self._tripped_at = time.monotonic()
            logger.warning("circuit_opened", failures=self._consecutive_failures, probe=probing)

    def record_success(self) -> None:
        if self._tripped:
            logger.info("circuit_closed")
        self._tripped = False
        self._consecutive_failures = 0

    @property
    def stats(self) -> dict[str, Any]:
        return {"state": self.state.value, "failure_count": self._consecutive_failures}


# ──────────────────────────────────────────────────────────────
#  Metrics & dedup
# ──────────────────────────────────────────────────────────────

@dataclass
class ChannelMetrics:
    channel: ChannelType
    events_received: int = 0
    messages_sent: int = 0
    sends_failed: int = 0
    latencies_ms: deque = field(default_factory=lambda: deque(maxlen=100))
    recent_errors: deque = field(default_factory=lambda: deque(maxlen=10))

    def record_send(self, count: int, latency_ms: float) -> None:
        self.messages_sent += count
        self.latencies_ms.append(latency_ms)

    def record_failure(self, error: str) -> None:
        self.sends_failed += 1
        self.recent_errors.append(error)

    def to_dict(self) -> dict[str, Any]:
        latencies = self.latencies_ms
        return {
            "channel": self.channel.value,
            "received": self.events_received,
            "sent": self.messages_sent,
            "failed": self.sends_failed,
            "avg_latency_ms": round(sum(latencies) / len(latencies), 1) if latencies else 0.0,
            "recent_errors": list(self.recent_errors),
        }


class MessageDeduplicator:
    """Remembers webhook event ids for ``ttl_seconds``, oldest first."""

    def __init__(self, ttl_seconds: float = 300.0, max_entries: int = 10_000):
        self.ttl = ttl_seconds
        self.max_entries = max_entries
        self._seen: OrderedDict[str, float] = OrderedDict()

    def is_duplicate(self, event_id: str) -> bool:
        now = time.monotonic()
        while self._seen:
            oldest_id, seen_at = next(iter(self._seen.items()))
            if now - seen_at < self.ttl and len(self._seen) < self.max_entries:
                break
            del self._seen[oldest_id]
        if event_id in self._seen:
            return True
        self._seen[event_id] = now
        return False


# ──────────────────────────────────────────────────────────────
#  Adapter base
# ──────────────────────────────────────────────────────────────

class ChannelAdapter(abc.ABC):
    """
    Subclasses implement normalize(), render() and _deliver(). send() wraps
    delivery with the breaker and metrics; httpx failures surface as
    ChannelError.
    """

    channel_type: ChannelType
    max_messages_per_reply: int = 5

    def __init__(self, tenant_id: str):
        self.tenant_id = tenant_id
        self._breaker = CircuitBreaker()
        self._metrics = ChannelMetrics(self.channel_type)
        self._deduplicator = MessageDeduplicator()

    @abc.abstractmethod
    def normalize(self, raw_body: dict[str, Any]) -> list[InboundEnvelope]:
        """Webhook body → envelopes, in arrival order."""

    @abc.abstractmethod
    def render(self, messages: list[OutboundMessage]) -> list[dict[str, Any]]:
        """Message descriptors → platform wire messages."""

    @abc.abstractmethod
    async def _deliver(self, user_id: str, payloads: list[dict[str, Any]],
                       reply_token: Optional[str]) -> None:
        ...

    async def send(self, user_id: str, messages: list[OutboundMessage],
                   reply_token: Optional[str] = None) -> dict[str, Any]:
        if not messages:
            return {"status": "skipped", "messages": 0}
        channel = self.channel_type.value
        if self._breaker.is_open:
            self._metrics.record_failure("circuit_open")
            raise CircuitOpenError(channel)

        payloads = self.render(messages)
        started = time.monotonic()
        try:
            await self._deliver(user_id, payloads, reply_token)
        except (ChannelError, httpx.HTTPError) as e:
            self._breaker.record_failure()
            self._metrics.record_failure(str(e))
            if isinstance(e, ChannelError):
                raise
            raise ChannelError(str(e), channel,
                               retryable=isinstance(e, httpx.TransportError)) from e

        latency_ms = round((time.monotonic() - started) * 1000, 1)
        self._breaker.record_success()
        self._metrics.record_send(len(payloads), latency_ms)
        logger.debug("channel_sent", channel=channel, tenant_id=self.tenant_id,
                     user_id=user_id, messages=len(payloads), latency_ms=latency_ms)
        return {"status": "sent", "messages": len(payloads), "latency_ms": latency_ms}

    def chunk(self, payloads: list[dict[str, Any]], size: Optional[int] = None) -> list[list[dict[str, Any]]]:
        size = size or self.max_messages_per_reply
        return [payloads[i:i + size] for i in range(0, len(payloads), size)]

    async def get_display_name(self, user_id: str) -> str:
        return ""

    async def health_check(self) -> dict[str, Any]:
        return {
            "channel": self.channel_type.value,
            "tenant_id": self.tenant_id,
            "circuit_breaker": self._breaker.stats,
            "metrics": self._metrics.to_dict(),
        }

    async def shutdown(self) -> None:
        pass
