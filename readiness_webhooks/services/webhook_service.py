"""
Webhook Service

Event fan-out, per-endpoint delivery with linear-backoff retries, and the
endpoint registry.

Triggering an event returns as soon as the event row is written; each
subscribed endpoint then gets its own detached asyncio task. Delivery
failures never propagate back to the code that triggered the event.

SECURITY: All queries MUST include organization_id filter.
Failure to do so will result in data leakage between tenants.
"""
import asyncio
import enum
import secrets
from datetime import timedelta
from typing import Any, Awaitable, Callable, Coroutine

import httpx
from pydantic import ValidationError

from readiness_webhooks.errors import (
    WebhookError,
    WebhookEventNotFoundError,
    WebhookNotFoundError,
    WebhookStoreError,
    WebhookValidationError,
)
from readiness_webhooks.logging_config import get_logger, logger
from readiness_webhooks.models.base import utcnow
from readiness_webhooks.models.webhook import WebhookDeliveryAttempt, WebhookEndpoint, WebhookEventLog
from readiness_webhooks.routes.metrics import (
    track_delivery_attempt,
    track_delivery_exhausted,
    track_event_triggered,
)
from readiness_webhooks.schemas.webhook import (
    EventCount,
    Timeframe,
    WebhookAnalytics,
    WebhookEndpointCreate,
    WebhookEndpointUpdate,
    WebhookEventCreate,
    WebhookTestResult,
)
from readiness_webhooks.sentry_config import capture_exception
from readiness_webhooks.services.webhook_store import WebhookStore
from readiness_webhooks.webhooks.delivery import DeliveryResult, deliver_once
from readiness_webhooks.webhooks.events import WebhookEvent, WebhookEventType, new_id, utc_timestamp

TIMEFRAMES = {
    "hour": timedelta(hours=1),
    "day": timedelta(days=1),
    "week": timedelta(weeks=1),
    "month": timedelta(days=30),
}

# Fields an update may touch that are re-checked against the creation contract
ENDPOINT_FIELDS = ("name", "url", "events", "secret", "headers", "timeout_ms", "retry_count", "retry_delay_ms")


class DeliveryState(str, enum.Enum):
    PENDING = "pending"
    ATTEMPTING = "attempting"
    SUCCEEDED = "succeeded"
    RETRYING = "retrying"
    EXHAUSTED = "exhausted"


def generate_webhook_secret() -> str:
    """64 hex chars of randomness."""
    return secrets.token_hex(32)


def _outcome(result: DeliveryResult) -> str:
    if result.ok:
        return "success"
    return "transport_error" if result.status_code is None else "http_error"


class WebhookManager:
    """
    Owns webhook delivery and the endpoint registry.

    `transport` is handed to httpx for every outbound request (tests pass
    an httpx.MockTransport). `sleep` is awaited between retries.
    """

    def __init__(
        self,
        store: WebhookStore,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.store = store
        self.transport = transport
        self._sleep = sleep
        self._tasks: set[asyncio.Task] = set()

    # ============================================
    # Fan-out
    # ============================================

    async def trigger_webhook(self, payload: WebhookEventCreate) -> WebhookEvent:
        """
        Record an event and start delivery to every subscribed endpoint.

        Raises WebhookStoreError if the event row cannot be written. Once
        recorded, nothing that happens during delivery reaches the caller.
        """
        event = WebhookEvent(
            id=new_id(),
            event=payload.event,
            data=payload.data,
            timestamp=payload.timestamp or utc_timestamp(),
            request_id=payload.request_id or new_id(),
            organization_id=payload.organization_id,
            user_id=payload.user_id,
        )
        log = get_logger(event_id=event.id, event_type=event.event, org_id=event.organization_id)

        await self.store.record_event(event)
        track_event_triggered(event.event)

        try:
            endpoints = await self.store.find_subscribed_endpoints(event.organization_id, event.event)
        except WebhookStoreError as exc:
            log.error("webhook_endpoint_lookup_failed", error=str(exc))
            return event

        log.info("webhook_event_recorded", endpoints=len(endpoints))

        for endpoint in endpoints:
            self._spawn(self.deliver_to_endpoint(event, endpoint))

        return event

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("webhook_delivery_crashed", error=str(exc), exc_info=exc)
            capture_exception(exc)

    @property
    def pending_deliveries(self) -> int:
        return len(self._tasks)

    async def wait_idle(self, timeout: float | None = None) -> bool:
        """
        Wait until no delivery tasks are in flight, including failure
        events spawned by deliveries that finish while waiting.

        Returns False if the timeout elapsed first.
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while self._tasks:
            remaining = None
            if deadline is not None:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    return False
            await asyncio.wait(set(self._tasks), timeout=remaining)
        return True

    # ============================================
    # Retry loop
    # ============================================

    async def deliver_to_endpoint(self, event: WebhookEvent, endpoint: WebhookEndpoint) -> DeliveryState:
        """
        Deliver one event to one endpoint, retrying with linear backoff.

        Attempt n that fails waits retry_delay_ms * n before attempt n + 1,
        up to retry_count + 1 attempts in total. Every attempt is recorded.
        """
        log = get_logger(
            event_id=event.id,
            event_type=event.event,
            webhook_id=endpoint.id,
            org_id=event.organization_id,
        )
        log.info("webhook_delivery_queued", state=DeliveryState.PENDING.value, max_attempts=endpoint.retry_count + 1)
        attempt = 1

        while True:
            state = DeliveryState.ATTEMPTING
            log.info("webhook_delivery_attempt", attempt=attempt, state=state.value)

            result = await deliver_once(event, endpoint, attempt, transport=self.transport)
            track_delivery_attempt(_outcome(result), result.duration_ms)
            await self._record_attempt(event, endpoint, attempt, result, log)

            if result.ok:
                log.info(
                    "webhook_delivery_succeeded",
                    attempt=attempt,
                    status_code=result.status_code,
                    duration_ms=result.duration_ms,
                )
                return DeliveryState.SUCCEEDED

            if attempt > endpoint.retry_count:
                break

            state = DeliveryState.RETRYING
            delay_ms = endpoint.retry_delay_ms * attempt
            log.warning(
                "webhook_delivery_retrying",
                attempt=attempt,
                state=state.value,
                delay_ms=delay_ms,
                error=result.failure_reason(),
            )
            await self._sleep(delay_ms / 1000)
            attempt += 1

        log.warning("webhook_delivery_exhausted", attempts=attempt, error=result.failure_reason())
        track_delivery_exhausted()
        await self._dispatch_failure(event, endpoint, result.failure_reason(), log)
        return DeliveryState.EXHAUSTED

    async def _record_attempt(self, event, endpoint, attempt, result, log) -> None:
        try:
            await self.store.record_attempt(
                webhook_endpoint_id=endpoint.id,
                event_id=event.id,
                attempt_number=attempt,
                url=endpoint.url,
                http_status=result.status_code,
                response_body=result.response_body,
                error_message=result.error,
                duration_ms=result.duration_ms,
            )
        except WebhookStoreError as exc:
            log.error("webhook_attempt_record_failed", attempt=attempt, error=str(exc))

    async def _dispatch_failure(self, event: WebhookEvent, endpoint: WebhookEndpoint, error: str, log) -> None:
        # A failed delivery of a failure notice must not produce another one
        if event.event == WebhookEventType.WEBHOOK_FAILED.value:
            return

        failure = WebhookEventCreate(
            event=WebhookEventType.WEBHOOK_FAILED.value,
            data={
                "original_event": event.event,
                "original_event_id": event.id,
                "webhook": {
                    "id": endpoint.id,
                    "name": endpoint.name,
                    "url": endpoint.url,
                },
                "error": error,
                "timestamp": utc_timestamp(),
            },
            organization_id=event.organization_id,
            user_id=event.user_id,
        )
        try:
            await self.trigger_webhook(failure)
        except WebhookError as exc:
            log.error("webhook_failure_event_failed", error=str(exc))

    # ============================================
    # Event log
    # ============================================

    async def list_events(
        self,
        organization_id: str,
        event_type: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[WebhookEventLog]:
        return await self.store.list_events(organization_id, event_type, limit=limit, offset=offset)

    async def get_event(self, event_id: str, organization_id: str) -> WebhookEventLog:
        row = await self.store.get_event(event_id, organization_id)
        if row is None:
            raise WebhookEventNotFoundError(event_id)
        return row

    # ============================================
    # Registry
    # ============================================

    async def register_webhook(
        self,
        user_id: str,
        organization_id: str,
        payload: WebhookEndpointCreate,
    ) -> WebhookEndpoint:
        values = payload.model_dump()
        values["secret"] = payload.secret or generate_webhook_secret()
        endpoint = await self.store.create_endpoint(organization_id, user_id, values)
        get_logger(org_id=organization_id, webhook_id=endpoint.id).info(
            "webhook_registered", events=endpoint.events
        )
        return endpoint

    async def list_webhooks(self, organization_id: str) -> list[WebhookEndpoint]:
        return await self.store.list_endpoints(organization_id)

    async def get_webhook(self, webhook_id: str, organization_id: str) -> WebhookEndpoint:
        endpoint = await self.store.get_endpoint(webhook_id, organization_id)
        if endpoint is None:
            raise WebhookNotFoundError(webhook_id)
        return endpoint

    async def update_webhook(
        self,
        webhook_id: str,
        user_id: str,
        organization_id: str,
        changes: WebhookEndpointUpdate,
    ) -> WebhookEndpoint:
        """
        Merge the provided fields into the stored endpoint.

        The merged record must still satisfy the creation contract, so a
        change that is valid alone but breaks the whole is rejected.
        """
        current = await self.store.get_endpoint(webhook_id, organization_id, user_id=user_id)
        if current is None:
            raise WebhookNotFoundError(webhook_id)

        provided = changes.changes()
        merged = {field: getattr(current, field) for field in ENDPOINT_FIELDS}
        merged.update({key: value for key, value in provided.items() if key in ENDPOINT_FIELDS})
        try:
            validated = WebhookEndpointCreate.model_validate(merged)
        except ValidationError as exc:
            raise WebhookValidationError.from_pydantic(exc) from exc

        values = validated.model_dump()
        if "is_active" in provided:
            values["is_active"] = provided["is_active"]

        endpoint = await self.store.update_endpoint(webhook_id, user_id, organization_id, values)
        if endpoint is None:
            raise WebhookNotFoundError(webhook_id)
        return endpoint

    async def delete_webhook(self, webhook_id: str, user_id: str, organization_id: str) -> None:
        deleted = await self.store.delete_endpoint(webhook_id, user_id, organization_id)
        if not deleted:
            raise WebhookNotFoundError(webhook_id)
        get_logger(org_id=organization_id, webhook_id=webhook_id).info("webhook_deleted")

    async def test_webhook(self, webhook_id: str, organization_id: str) -> WebhookTestResult:
        """Send one synthetic webhook.test delivery. Nothing is recorded."""
        endpoint = await self.get_webhook(webhook_id, organization_id)
        now = utc_timestamp()
        event = WebhookEvent(
            id=new_id(),
            event=WebhookEventType.WEBHOOK_TEST.value,
            data={"message": "This is a test webhook delivery", "timestamp": now},
            timestamp=now,
            request_id=new_id(),
            organization_id=organization_id,
        )
        result = await deliver_once(event, endpoint, 1, transport=self.transport)
        return WebhookTestResult(
            success=result.ok,
            status_code=result.status_code,
            response=result.response_body,
            error=result.error,
            duration=result.duration_ms,
        )

    async def get_delivery_history(
        self,
        webhook_id: str,
        organization_id: str,
        limit: int = 50,
        offset: int = 0,
    ) -> list[WebhookDeliveryAttempt]:
        await self.get_webhook(webhook_id, organization_id)
        return await self.store.list_attempts(webhook_id, organization_id, limit=limit, offset=offset)

    async def get_webhook_analytics(self, organization_id: str, timeframe: Timeframe = "week") -> WebhookAnalytics:
        """Delivery totals for the organisation over the trailing timeframe."""
        since = utcnow() - TIMEFRAMES[timeframe]
        stats = await self.store.delivery_stats(organization_id, since)

        total = stats["total"]
        successful = stats["successful"]
        rate = round(successful / total * 100, 2) if total else 0.0

        return WebhookAnalytics(
            timeframe=timeframe,
            total_deliveries=total,
            successful_deliveries=successful,
            failed_deliveries=total - successful,
            average_response_time_ms=round(stats["average_duration_ms"], 2),
            top_events=[EventCount(event=name, count=count) for name, count in stats["top_events"]],
            delivery_success_rate=rate,
        )
