"""
External Caller — outbound HTTP side effects of flow nodes.

Serves apiCall, webhookTrigger and appointment nodes (email goes through the
email channel adapter but shares the same retry policy via ``call``).

Every call:
  - runs on a shared httpx.AsyncClient with a bounded timeout
  - is retried with exponential backoff (tenacity) on timeouts, transport
    errors, 5xx, 408 and 429
  - raises ExternalCallError once attempts are exhausted
"""
from __future__ import annotations

import json
import structlog
from typing import Any, Awaitable, Callable, Optional

import httpx
from tenacity import (
    AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential,
)

from config.settings import EngineConfig, IntegrationsConfig
from flows.errors import ExternalCallError

logger = structlog.get_logger()

_RETRYABLE_STATUS = {408, 429}


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, ExternalCallError) and exc.retryable


def _log_retry(state: RetryCallState) -> None:
    exc = state.outcome.exception() if state.outcome else None
    logger.warning("external_call_retry",
                   attempt=state.attempt_number,
                   error=str(exc) if exc else "")


class ExternalCaller:
    """Shared HTTP client plus the retry policy for node side effects."""

    def __init__(
        self,
        timeout: float = 10.0,
        max_retries: int = 2,
        backoff_base: float = 1.0,
        backoff_max: float = 30.0,
        booking_url: str = "",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.timeout = timeout
        self.max_retries = max(int(max_retries), 0)
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.booking_url = booking_url
        self._transport = transport
        self.client: Optional[httpx.AsyncClient] = None

    @classmethod
    def from_settings(cls, engine: EngineConfig, integrations: IntegrationsConfig) -> "ExternalCaller":
        return cls(
            timeout=engine.http_timeout,
            max_retries=engine.max_retries,
            backoff_base=engine.retry_backoff_base,
            backoff_max=engine.retry_backoff_max,
            booking_url=integrations.booking_url,
        )

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self.client

    async def close(self) -> None:
        if self.client is not None and not self.client.is_closed:
            await self.client.aclose()

    # ── Retry policy ──────────────────────────────────────────

    async def call(self, fn: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """Run ``fn`` under the retry policy. Non-ExternalCallError failures are wrapped."""
        async def attempt():
            try:
                return await fn(*args, **kwargs)
            except ExternalCallError:
                raise
            except Exception as e:
                retryable = getattr(e, "retryable", True)
                raise ExternalCallError(str(e) or type(e).__name__, retryable=retryable) from e

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_exponential(multiplier=self.backoff_base, max=self.backoff_max),
            retry=retry_if_exception(_is_retryable),
            before_sleep=_log_retry,
            reraise=True,
        )
        async for state in retrying:
            with state:
                return await attempt()

    async def _send(self, method: str, url: str, **kwargs) -> Any:
        client = await self._get_client()
        try:
            response = await client.request(method.upper(), url, **kwargs)
        except httpx.TimeoutException as e:
            raise ExternalCallError(f"timeout calling {url}") from e
        except httpx.HTTPError as e:
            raise ExternalCallError(f"{type(e).__name__} calling {url}: {e}") from e

        if response.status_code >= 400:
            retryable = response.status_code >= 500 or response.status_code in _RETRYABLE_STATUS
            raise ExternalCallError(
                f"HTTP {response.status_code} from {url}",
                status_code=response.status_code,
                retryable=retryable,
            )
        return _parse_body(response)

    async def request(self, method: str, url: str, **kwargs) -> Any:
        if not url:
            raise ExternalCallError("no URL configured", retryable=False)
        return await self.call(self._send, method, url, **kwargs)

    # ── Node operations ───────────────────────────────────────

    async def call_api(
        self, method: str, url: str, headers: dict[str, str] = None, body: Any = None,
    ) -> Any:
        kwargs: dict[str, Any] = {"headers": headers or {}}
        if body is not None and method.upper() not in ("GET", "DELETE"):
            kwargs["json"] = body
        return await self.request(method, url, **kwargs)

    async def fire_webhook(
        self, url: str, method: str = "POST", headers: dict[str, str] = None,
        payload: dict[str, Any] = None,
    ) -> Any:
        return await self.request(method, url, headers=headers or {}, json=payload or {})

    async def book_appointment(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Ask the booking service for a slot. Result has ``status`` booked|cancelled."""
        result = await self.request("POST", self.booking_url, json=payload)
        if not isinstance(result, dict):
            result = {"raw": result}
        status = str(result.get("status", "")).lower()
        result["status"] = "booked" if status in ("booked", "confirmed", "scheduled") else "cancelled"
        return result


def _parse_body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except (json.JSONDecodeError, ValueError):
        return response.text
