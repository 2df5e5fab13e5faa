"""
Relay Channel Adapter — hands rendered messages to the platform's social
send service (WhatsApp, Instagram, Facebook, Telegram, Twitter).

The send service owns the channel wire formats; this adapter only POSTs the
neutral payload:

    {"userId": ..., "channel": ..., "renderedText": ..., "buttons": [...],
     "sessionId": ..., "nodeId": ...}

Configuration (settings.yaml → channels.<name>.credentials):
    send_url: https://platform.example.com/functions/v1/send-social-message
    token:    ${SOCIAL_SEND_TOKEN}
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

import httpx

from models.schemas import ChannelType, OutboundMessage
from channels.base import ChannelAdapter, ChannelError

logger = structlog.get_logger()


class RelayAdapter(ChannelAdapter):

    def __init__(
        self,
        channel_type: ChannelType = ChannelType.WHATSAPP,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__()
        self.channel_type = channel_type
        self._send_url: str = ""
        self._token: str = ""
        self._timeout: float = 10.0
        self._transport = transport
        self.client: Optional[httpx.AsyncClient] = None

    async def initialize(self, config: dict[str, Any]) -> None:
        await super().initialize(config)
        self._send_url = self._config.get("send_url", "")
        self._token = self._config.get("token", "")
        self._timeout = float(self._config.get("timeout", 10.0))

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            headers = {"Authorization": f"Bearer {self._token}"} if self._token else {}
            self.client = httpx.AsyncClient(
                headers=headers, timeout=self._timeout, transport=self._transport,
            )
        return self.client

    async def _do_send(self, message: OutboundMessage) -> dict[str, Any]:
        if not self._send_url:
            raise ChannelError("send_url not configured", self.channel_type.value)

        payload = message.to_wire()
        payload["sessionId"] = message.session_id
        payload["nodeId"] = message.node_id

        client = await self._get_client()
        try:
            response = await client.post(self._send_url, json=payload)
        except httpx.HTTPError as e:
            raise ChannelError(str(e), self.channel_type.value, retryable=True) from e
        if response.status_code >= 400:
            raise ChannelError(
                f"send service returned {response.status_code}",
                self.channel_type.value,
                retryable=response.status_code >= 500,
            )

        body = response.json() if response.content else {}
        logger.info("relay_message_sent",
                    channel=self.channel_type.value,
                    user_id=message.user_id,
                    session_id=message.session_id)
        return {"status": "sent", "channel_message_id": body.get("message_id", "")}

    async def shutdown(self) -> None:
        if self.client is not None and not self.client.is_closed:
            await self.client.aclose()
