"""
Single webhook delivery attempt.

Performs exactly one signed HTTP POST and reports the outcome as a
DeliveryResult. Transport failures are returned, not raised, so the retry
loop branches on data. Nothing is persisted here.
"""
import asyncio
import time
from dataclasses import dataclass
from typing import Protocol

import httpx

from readiness_webhooks.config import settings
from readiness_webhooks.schemas.webhook import RESERVED_HEADERS
from readiness_webhooks.webhooks.events import WebhookEvent
from readiness_webhooks.webhooks.signing import SIGNATURE_HEADER, sign_payload


class DeliveryTarget(Protocol):
    """The endpoint attributes a delivery needs."""
    id: str
    url: str
    secret: str
    headers: dict[str, str]
    timeout_ms: int


@dataclass(frozen=True)
class DeliveryResult:
    """Outcome of one HTTP delivery try."""
    ok: bool
    status_code: int | None
    response_body: str | None
    error: str | None
    duration_ms: int

    @classmethod
    def from_response(cls, response: httpx.Response, duration_ms: int) -> "DeliveryResult":
        body = response.text[: settings.WEBHOOK_RESPONSE_BODY_LIMIT] if response.content else ""
        return cls(
            ok=200 <= response.status_code < 300,
            status_code=response.status_code,
            response_body=body,
            error=None,
            duration_ms=duration_ms,
        )

    @classmethod
    def transport_failure(cls, error: str, duration_ms: int) -> "DeliveryResult":
        return cls(
            ok=False,
            status_code=None,
            response_body=None,
            error=error,
            duration_ms=duration_ms,
        )

    def failure_reason(self) -> str:
        """Human-readable reason used for the webhook.failed event."""
        if self.error:
            return self.error
        return f"HTTP {self.status_code}: {self.response_body or ''}"


def build_headers(event: WebhookEvent, endpoint: DeliveryTarget, attempt: int, signature: str) -> httpx.Headers:
    """
    Endpoint custom headers overlaid with the fixed delivery headers.

    httpx.Headers is case-insensitive, so a custom header that collides
    with a fixed one is replaced rather than sent twice. Framing and
    hop-by-hop headers are left to httpx.
    """
    custom = {
        name: value
        for name, value in (endpoint.headers or {}).items()
        if name.lower() not in RESERVED_HEADERS
    }
    headers = httpx.Headers(custom)
    headers.update({
        "Content-Type": "application/json",
        "User-Agent": settings.WEBHOOK_USER_AGENT,
        "X-Webhook-ID": endpoint.id,
        "X-Event-ID": event.id,
        SIGNATURE_HEADER: signature,
        "X-Attempt": str(attempt),
        "X-Timestamp": event.timestamp,
    })
    return headers


async def deliver_once(
    event: WebhookEvent,
    endpoint: DeliveryTarget,
    attempt: int,
    transport: httpx.AsyncBaseTransport | None = None,
) -> DeliveryResult:
    """
    POST the signed event payload to the endpoint once.

    The whole exchange is bounded by the endpoint's timeout; when it
    elapses the in-flight request is cancelled and a timeout failure is
    returned.
    """
    timeout_seconds = endpoint.timeout_ms / 1000
    start = time.perf_counter()

    body = event.serialize()
    signature = sign_payload(body, endpoint.secret)
    try:
        headers = build_headers(event, endpoint, attempt, signature)
    except ValueError as exc:
        # UnicodeEncodeError lands here for non-ASCII header values
        return DeliveryResult.transport_failure(
            f"Invalid request headers: {exc}",
            _elapsed_ms(start),
        )

    try:
        async with httpx.AsyncClient(transport=transport, timeout=timeout_seconds) as client:
            response = await asyncio.wait_for(
                client.post(endpoint.url, content=body, headers=headers),
                timeout=timeout_seconds,
            )
    except (asyncio.TimeoutError, httpx.TimeoutException):
        return DeliveryResult.transport_failure(
            f"Request timed out after {endpoint.timeout_ms}ms",
            _elapsed_ms(start),
        )
    except (httpx.HTTPError, httpx.InvalidURL) as exc:
        return DeliveryResult.transport_failure(
            str(exc) or exc.__class__.__name__,
            _elapsed_ms(start),
        )

    return DeliveryResult.from_response(response, _elapsed_ms(start))


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)
