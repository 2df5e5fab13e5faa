"""Channel adapters: the engine's outbound send capability."""
from channels.base import (
    ChannelAdapter,
    ChannelRegistry,
    ChannelError,
    CircuitBreaker,
    ChannelMetrics,
    DeliveryStatus,
    DeliveryRecord,
)
from channels.chat_adapter import ChatAdapter
from channels.email_adapter import EmailAdapter
from channels.relay_adapter import RelayAdapter

__all__ = [
    "ChannelAdapter", "ChannelRegistry", "ChannelError",
    "CircuitBreaker", "ChannelMetrics", "DeliveryStatus", "DeliveryRecord",
    "ChatAdapter", "EmailAdapter", "RelayAdapter",
]
