"""
Channel Adapters — outbound send capability used by the flow engine.

The engine never speaks a channel wire format. It hands an OutboundMessage
(``{userId, channel, renderedText, buttons}``) to the registry and moves on;
delivery state is tracked here, not on the session.

Provides:
- ChannelError: structured error with retryable flag
- CircuitBreaker: failure-counting breaker with half-open probe
- ChannelMetrics: per-channel send/fail/latency tracking
- DeliveryStatus / DeliveryRecord: message lifecycle with history
- ChannelAdapter: abstract base wrapping every send with breaker + metrics
- ChannelRegistry: adapter lookup, fire-and-forget dispatch, health checks
"""
from __future__ import annotations

import abc
import asyncio
import time
import structlog
from enum import Enum
from typing import Any, Optional
from datetime import datetime, timezone

from models.schemas import ChannelType, OutboundMessage

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class ChannelError(Exception):
    """Base exception for all channel operations."""

    def __init__(self, message: str, channel: str = "", retryable: bool = False):
        self.channel = channel
        self.retryable = retryable
        super().__init__(message)


class CircuitOpenError(ChannelError):
    def __init__(self, channel: str = ""):
        super().__init__(f"Circuit breaker open for {channel}", channel, retryable=True)


# ══════════════════════════════════════════════════════════════
#  CIRCUIT BREAKER
# ══════════════════════════════════════════════════════════════

class CircuitBreaker:
    """
    Synchronous circuit breaker with failure counting.

    closed → open (after threshold failures) → half_open (after timeout) →
    closed (on success) or open (on failure).
    """

    def __init__(self, failure_threshold: int = 5, recovery_timeout: float = 60.0):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._state = "closed"
        self._failure_count = 0
        self._opened_at: float = 0.0

    @property
    def state(self) -> str:
        if self._state == "open":
            if time.monotonic() - self._opened_at >= self.recovery_timeout:
                return "half_open"
        return self._state

    @property
    def is_open(self) -> bool:
        return self.state == "open"

    def record_failure(self):
        self._failure_count += 1
        if self.state == "half_open" or self._failure_count >= self.failure_threshold:
            self._state = "open"
            self._opened_at = time.monotonic()
            logger.warning("circuit_opened", failures=self._failure_count)

    def record_success(self):
        self._state = "closed"
        self._failure_count = 0

    @property
    def stats(self) -> dict[str, Any]:
        return {"state": self.state, "failure_count": self._failure_count}


# ══════════════════════════════════════════════════════════════
#  CHANNEL METRICS
# ══════════════════════════════════════════════════════════════

class ChannelMetrics:
    """Tracks per-channel send, failure, and latency metrics."""

    def __init__(self, channel: ChannelType):
        self.channel = channel
        self.messages_sent: int = 0
        self.messages_failed: int = 0
        self._latencies: list[float] = []
        self._errors: list[str] = []

    def record_send(self, latency_ms: float = 0.0):
        self.messages_sent += 1
        if latency_ms > 0:
            self._latencies.append(latency_ms)

    def record_failure(self, error: str = ""):
        self.messages_failed += 1
        if error:
            self._errors.append(error)

    @property
    def avg_latency_ms(self) -> float:
        return sum(self._latencies) / len(self._latencies) if self._latencies else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "channel": self.channel.value,
            "sent": self.messages_sent,
            "failed": self.messages_failed,
            "avg_latency_ms": round(self.avg_latency_ms, 1),
            "recent_errors": self._errors[-10:],
        }


# ══════════════════════════════════════════════════════════════
#  DELIVERY STATUS & RECORD
# ══════════════════════════════════════════════════════════════

class DeliveryStatus(str, Enum):
    QUEUED = "queued"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"


class DeliveryRecord:
    """Tracks the lifecycle of one outbound message."""

    def __init__(self, message: OutboundMessage):
        self.message_id = message.id
        self.channel = message.channel
        self.recipient = message.user_id
        self.session_id = message.session_id
        self.status = DeliveryStatus.QUEUED
        self.status_history: list[dict[str, Any]] = []
        self.channel_message_id: str = ""
        self.error: str = ""
        self.created_at = datetime.now(timezone.utc)

    def update_status(self, new_status: DeliveryStatus, error: str = ""):
        self.status_history.append({
            "from": self.status.value,
            "to": new_status.value,
            "at": datetime.now(timezone.utc).isoformat(),
        })
        self.status = new_status
        if error:
            self.error = error


# ══════════════════════════════════════════════════════════════
#  CHANNEL ADAPTER — Abstract Base
# ══════════════════════════════════════════════════════════════

class ChannelAdapter(abc.ABC):
    """
    Base class for all channel adapters.

    Subclasses implement _do_send. The base class wraps every send with the
    circuit breaker, metrics and a delivery record. Send failures are
    recorded, never raised: the engine treats sends as fire-and-forget.
    """

    channel_type: ChannelType

    def __init__(self):
        self._initialized = False
        self._config: dict[str, Any] = {}
        self._breaker = CircuitBreaker()
        self._metrics: Optional[ChannelMetrics] = None
        self.deliveries: dict[str, DeliveryRecord] = {}

    def _ensure_metrics(self):
        if self._metrics is None:
            self._metrics = ChannelMetrics(self.channel_type)

    # ── Abstract hooks ────────────────────────────────────────

    @abc.abstractmethod
    async def _do_send(self, message: OutboundMessage) -> dict[str, Any]:
        ...

    async def initialize(self, config: dict[str, Any]) -> None:
        self._config = config or {}
        self._initialized = True

    # ── Public send ───────────────────────────────────────────

    async def send(self, message: OutboundMessage) -> DeliveryRecord:
        self._ensure_metrics()
        record = DeliveryRecord(message)
        self.deliveries[message.id] = record
        start = time.monotonic()

        if self._breaker.is_open:
            self._metrics.record_failure("circuit_open")
            record.update_status(DeliveryStatus.FAILED, "circuit_open")
            return record

        try:
            result = await self._do_send(message)
        except Exception as e:
            self._breaker.record_failure()
            self._metrics.record_failure(str(e))
            record.update_status(DeliveryStatus.FAILED, str(e))
            logger.warning("channel_send_failed",
                           channel=self.channel_type.value,
                           session_id=message.session_id,
                           error=str(e))
            return record

        self._breaker.record_success()
        self._metrics.record_send((time.monotonic() - start) * 1000)
        record.channel_message_id = str(result.get("channel_message_id", ""))
        status = result.get("status", "sent")
        record.update_status(
            DeliveryStatus.DELIVERED if status == "delivered" else DeliveryStatus.SENT
        )
        return record

    # ── Health ────────────────────────────────────────────────

    async def health_check(self) -> dict[str, Any]:
        self._ensure_metrics()
        return {
            "channel": self.channel_type.value,
            "initialized": self._initialized,
            "circuit_breaker": self._breaker.stats,
            "metrics": self._metrics.to_dict(),
        }

    async def shutdown(self) -> None:
        pass


# ══════════════════════════════════════════════════════════════
#  CHANNEL REGISTRY
# ══════════════════════════════════════════════════════════════

class ChannelRegistry:
    """
    Adapter lookup by channel. A default adapter catches channels that have
    no dedicated adapter registered.
    """

    def __init__(self, default: Optional[ChannelAdapter] = None):
        self._adapters: dict[ChannelType, ChannelAdapter] = {}
        self._default = default
        self._tasks: set[asyncio.Task] = set()

    def register(self, adapter: ChannelAdapter, channel: Optional[ChannelType] = None):
        self._adapters[channel or adapter.channel_type] = adapter

    def set_default(self, adapter: ChannelAdapter):
        self._default = adapter

    def get(self, channel_type: ChannelType) -> Optional[ChannelAdapter]:
        return self._adapters.get(channel_type, self._default)

    def get_available(self) -> list[ChannelType]:
        return list(self._adapters.keys())

    async def send(self, message: OutboundMessage) -> Optional[DeliveryRecord]:
        adapter = self.get(message.channel)
        if adapter is None:
            logger.error("no_adapter_for_channel", channel=message.channel.value,
                         session_id=message.session_id)
            return None
        return await adapter.send(message)

    def dispatch(self, message: OutboundMessage) -> asyncio.Task:
        """Fire-and-forget send. The task is kept referenced until it finishes."""
        task = asyncio.create_task(self.send(message))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for in-flight dispatches (shutdown and tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def health_check_all(self) -> dict[str, Any]:
        return {ch.value: await a.health_check() for ch, a in self._adapters.items()}

    async def initialize_all(self, configs: dict[str, Any]):
        for ch, adapter in self._adapters.items():
            try:
                ch_cfg = configs.get(ch.value, {})
                # ChannelConfig dataclass → dict so adapters can call .get()
                if hasattr(ch_cfg, "credentials"):
                    ch_cfg = ch_cfg.credentials
                await adapter.initialize(ch_cfg)
            except Exception as e:
                logger.error("channel_init_failed", channel=ch.value, error=str(e))

    async def shutdown_all(self):
        await self.drain()
        for ch, a in self._adapters.items():
            try:
                await a.shutdown()
            except Exception as e:
                logger.warning("channel_shutdown_failed", channel=ch.value, error=str(e))
