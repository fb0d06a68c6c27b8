"""Channel adapters for the supported messaging channels."""
from channels.base import (
    ChannelAdapter,
    ChannelError,
    CircuitOpenError,
    CircuitBreaker,
    ChannelMetrics,
    MessageDeduplicator,
)
from channels.line_adapter import LineAdapter

__all__ = [
    "ChannelAdapter", "ChannelError", "CircuitOpenError",
    "CircuitBreaker", "ChannelMetrics", "MessageDeduplicator",
    "LineAdapter",
]
