"""
Email Channel Adapter — transactional email for ``email`` flow nodes.

Sends through an HTTP email API (settings.yaml → integrations.email_*).
Unlike chat sends, an email node needs to know whether the send worked so
it can follow its error branch: ``send_email`` raises ChannelError on
failure and the engine applies its retry policy around it.

Provides:
- send_email: subject/body (or named template) to one or more recipients
- Suppression list (bounces, unsubscribes)
- Address validation before any network call
"""
from __future__ import annotations

import re
import uuid
import structlog
from typing import Any, Optional

import httpx

from models.schemas import ChannelType, OutboundMessage
from channels.base import ChannelAdapter, ChannelError

logger = structlog.get_logger()

_EMAIL = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class EmailAdapter(ChannelAdapter):

    channel_type = ChannelType.EMAIL

    def __init__(
        self,
        api_url: str = "",
        api_key: str = "",
        from_email: str = "noreply@example.com",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__()
        self._api_url = api_url
        self._api_key = api_key
        self._from_email = from_email
        self._transport = transport
        self._suppressed: set[str] = set()      # emails that should not receive
        self.client: Optional[httpx.AsyncClient] = None

    async def initialize(self, config: dict[str, Any]) -> None:
        await super().initialize(config)
        self._api_url = self._config.get("api_url", self._api_url)
        self._api_key = self._config.get("api_key", self._api_key)
        self._from_email = self._config.get("from_email", self._from_email)

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            headers = {"Authorization": f"Bearer {self._api_key}"} if self._api_key else {}
            self.client = httpx.AsyncClient(headers=headers, timeout=10.0, transport=self._transport)
        return self.client

    # ── Send ──────────────────────────────────────────────────

    async def send_email(
        self, to: str, subject: str, body: str = "", template: Optional[str] = None,
        variables: dict[str, Any] = None,
    ) -> dict[str, Any]:
        recipients = [addr.strip() for addr in re.split(r"[,;]", to or "") if addr.strip()]
        if not recipients:
            raise ChannelError("No recipient address", "email")
        invalid = [r for r in recipients if not _EMAIL.match(r)]
        if invalid:
            raise ChannelError(f"Invalid recipient: {invalid[0]}", "email")
        recipients = [r for r in recipients if not self.is_suppressed(r)]
        if not recipients:
            raise ChannelError("All recipients suppressed", "email")
        if not self._api_url:
            raise ChannelError("Email API not configured", "email")

        payload: dict[str, Any] = {
            "from": self._from_email,
            "to": recipients,
            "subject": subject,
        }
        if template:
            payload["template"] = template
            payload["variables"] = variables or {}
        else:
            payload["text"] = body

        client = await self._get_client()
        try:
            response = await client.post(self._api_url, json=payload)
        except httpx.HTTPError as e:
            raise ChannelError(str(e), "email", retryable=True) from e
        if response.status_code >= 400:
            raise ChannelError(
                f"Email API returned {response.status_code}", "email",
                retryable=response.status_code >= 500,
            )

        message_id = f"<{uuid.uuid4().hex}>"
        logger.info("email_sent", to=recipients, subject=subject, message_id=message_id)
        return {"status": "sent", "channel_message_id": message_id, "to": recipients}

    async def _do_send(self, message: OutboundMessage) -> dict[str, Any]:
        return await self.send_email(
            message.user_id,
            message.metadata.get("subject", ""),
            message.rendered_text,
        )

    # ── Suppression ───────────────────────────────────────────

    def is_suppressed(self, email: str) -> bool:
        return email.lower() in self._suppressed

    def suppress(self, email: str, reason: str = "unsubscribe") -> None:
        self._suppressed.add(email.lower())
        logger.info("email_suppressed", email=email.lower(), reason=reason)

    async def shutdown(self) -> None:
        if self.client is not None and not self.client.is_closed:
            await self.client.aclose()
