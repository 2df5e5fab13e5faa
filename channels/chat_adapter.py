"""
Chat Channel Adapter — in-process outbox for the web widget and bot preview.

Messages are kept per user until the client drains them, which is also what
the bot test dialog and the test suite read back.
"""
from __future__ import annotations

import uuid
import structlog
from collections import deque
from typing import Any

from models.schemas import ChannelType, OutboundMessage
from channels.base import ChannelAdapter

logger = structlog.get_logger()


class ChatAdapter(ChannelAdapter):
    """Queues rendered messages per user; ``drain`` hands them to the client."""

    channel_type = ChannelType.WEB

    def __init__(self, max_queue_size: int = 100):
        super().__init__()
        self._max_queue_size = max_queue_size
        self._outbox: dict[str, deque[OutboundMessage]] = {}
        self.sent: list[OutboundMessage] = []

    async def initialize(self, config: dict[str, Any]) -> None:
        await super().initialize(config)
        self._max_queue_size = self._config.get("max_queue_size", self._max_queue_size)

    async def _do_send(self, message: OutboundMessage) -> dict[str, Any]:
        queue = self._outbox.setdefault(message.user_id, deque(maxlen=self._max_queue_size))
        queue.append(message)
        self.sent.append(message)
        logger.debug("chat_message_queued", user_id=message.user_id, node_id=message.node_id)
        return {"status": "delivered", "channel_message_id": str(uuid.uuid4())}

    def drain(self, user_id: str) -> list[OutboundMessage]:
        queue = self._outbox.pop(user_id, None)
        return list(queue) if queue else []

    def texts(self, user_id: str = None) -> list[str]:
        return [m.rendered_text for m in self.sent if user_id is None or m.user_id == user_id]
