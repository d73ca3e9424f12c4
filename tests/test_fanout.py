"""Tests for event recording and fan-out to subscribed endpoints."""

import asyncio
import json
from types import SimpleNamespace

import httpx
import pytest
import sentry_sdk

from readiness_webhooks.errors import WebhookStoreError
from readiness_webhooks.schemas.webhook import WebhookEndpointUpdate, WebhookEventCreate
from readiness_webhooks.services.webhook_service import WebhookManager
from tests.conftest import ORG_ID, OTHER_ORG_ID, OTHER_USER_ID, USER_ID


def event_for(event_type="survey.created", organization_id=ORG_ID, data=None, **overrides):
    return WebhookEventCreate(
        event=event_type,
        data={"id": 1} if data is None else data,
        organization_id=organization_id,
        user_id=USER_ID,
        **overrides,
    )


class TestTriggerWebhook:
    @pytest.mark.asyncio
    async def test_event_recorded_without_subscribers(self, manager, store, receiver):
        """No subscriber: the event row exists and nothing is delivered."""
        event = await manager.trigger_webhook(event_for())
        await manager.wait_idle(timeout=5)

        rows = await store.list_events(ORG_ID)
        assert [row.id for row in rows] == [event.id]
        assert rows[0].event_type == "survey.created"
        assert rows[0].payload == {"id": 1}
        assert receiver.requests == []
        assert manager.pending_deliveries == 0

    @pytest.mark.asyncio
    async def test_returns_before_delivery_finishes(self, manager, register):
        await register()

        event = await manager.trigger_webhook(event_for())

        assert event.id
        assert manager.pending_deliveries == 1
        assert await manager.wait_idle(timeout=5)
        assert manager.pending_deliveries == 0

    @pytest.mark.asyncio
    async def test_generates_id_timestamp_and_request_id(self, manager):
        event = await manager.trigger_webhook(event_for())
        assert event.id
        assert event.timestamp.endswith("+00:00")
        assert event.request_id

    @pytest.mark.asyncio
    async def test_keeps_caller_request_id_and_timestamp(self, manager, store):
        event = await manager.trigger_webhook(
            event_for(request_id="req-42", timestamp="2026-10-16T08:00:00+00:00")
        )
        row = await store.get_event(event.id, ORG_ID)
        assert row.request_id == "req-42"
        assert row.timestamp == "2026-10-16T08:00:00+00:00"

    @pytest.mark.asyncio
    async def test_delivers_to_every_matching_endpoint(self, manager, receiver, register):
        urls = [f"https://example.com/hook/{n}" for n in range(3)]
        for url in urls:
            await register(url=url)

        event = await manager.trigger_webhook(event_for())
        await manager.wait_idle(timeout=5)

        assert sorted(str(r.url) for r in receiver.requests) == urls
        assert {r.headers["X-Event-ID"] for r in receiver.requests} == {event.id}

    @pytest.mark.asyncio
    async def test_skips_unsubscribed_inactive_and_foreign_endpoints(self, manager, store, receiver, register):
        wanted = await register(url="https://example.com/wanted")
        await register(url="https://example.com/other-type", events=["response.submitted"])
        paused = await register(url="https://example.com/paused")
        await manager.update_webhook(paused.id, USER_ID, ORG_ID, WebhookEndpointUpdate(is_active=False))
        await register(url="https://example.com/foreign", organization_id=OTHER_ORG_ID, user_id=OTHER_USER_ID)

        await manager.trigger_webhook(event_for())
        await manager.wait_idle(timeout=5)

        assert [str(r.url) for r in receiver.requests] == [wanted.url]

    @pytest.mark.asyncio
    async def test_payload_data_passes_through_untouched(self, manager, receiver, register):
        await register()
        data = {"nested": {"list": [1, "two", None]}, "unicode": "Zoë", "flag": True}

        await manager.trigger_webhook(event_for(data=data))
        await manager.wait_idle(timeout=5)

        assert receiver.requests[0].content.decode("utf-8").count("Zoë") == 1
        assert json.loads(receiver.requests[0].content)["data"] == data

    @pytest.mark.asyncio
    async def test_event_persist_failure_propagates(self, manager, store, receiver, register, monkeypatch):
        await register()

        async def broken_record_event(event):
            raise WebhookStoreError("database is down")

        monkeypatch.setattr(store, "record_event", broken_record_event)

        with pytest.raises(WebhookStoreError):
            await manager.trigger_webhook(event_for())
        assert manager.pending_deliveries == 0
        assert receiver.requests == []

    @pytest.mark.asyncio
    async def test_endpoint_lookup_failure_is_contained(self, manager, store, receiver, register, monkeypatch):
        await register()

        async def broken_lookup(organization_id, event_type):
            raise WebhookStoreError("read replica unavailable")

        monkeypatch.setattr(store, "find_subscribed_endpoints", broken_lookup)

        event = await manager.trigger_webhook(event_for())
        assert event.id
        assert manager.pending_deliveries == 0
        assert receiver.requests == []

    @pytest.mark.asyncio
    async def test_crashed_delivery_task_is_discarded(self, manager, register, monkeypatch):
        await register()
        loop_errors = []
        loop = asyncio.get_running_loop()
        loop.set_exception_handler(lambda _loop, context: loop_errors.append(context))

        async def explode(event, endpoint):
            raise RuntimeError("unexpected")

        monkeypatch.setattr(manager, "deliver_to_endpoint", explode)

        try:
            await manager.trigger_webhook(event_for())
            assert await manager.wait_idle(timeout=5)
        finally:
            loop.set_exception_handler(None)

        assert manager.pending_deliveries == 0
        # The done callback itself must not blow up
        assert loop_errors == []

    @pytest.mark.asyncio
    async def test_crashed_delivery_task_is_reported(self, manager, register, monkeypatch):
        await register()
        reported = []
        monkeypatch.setattr(sentry_sdk, "get_client", lambda: SimpleNamespace(is_active=lambda: True))
        monkeypatch.setattr(sentry_sdk, "capture_exception", reported.append)

        async def explode(event, endpoint):
            raise RuntimeError("unexpected")

        monkeypatch.setattr(manager, "deliver_to_endpoint", explode)

        await manager.trigger_webhook(event_for())
        assert await manager.wait_idle(timeout=5)

        assert [str(exc) for exc in reported] == ["unexpected"]


class TestWaitIdle:
    @pytest.mark.asyncio
    async def test_returns_true_when_nothing_in_flight(self, manager):
        assert await manager.wait_idle() is True

    @pytest.mark.asyncio
    async def test_times_out_on_slow_delivery(self, manager, register, monkeypatch):
        await register()
        release = asyncio.Event()

        async def slow(event, endpoint):
            await release.wait()

        monkeypatch.setattr(manager, "deliver_to_endpoint", slow)

        await manager.trigger_webhook(event_for())
        assert await manager.wait_idle(timeout=0.05) is False

        release.set()
        assert await manager.wait_idle(timeout=5) is True


class TestEndpointIndependence:
    @pytest.mark.asyncio
    async def test_backoff_on_one_endpoint_does_not_delay_another(self, store, receiver, register):
        slow = await register(url="https://example.com/slow", retry_count=1, retry_delay_ms=100)
        fast = await register(url="https://example.com/fast")
        receiver.always(500, url=slow.url)

        backing_off = asyncio.Event()
        release = asyncio.Event()

        async def held_sleep(seconds):
            backing_off.set()
            await release.wait()

        held = WebhookManager(store, transport=httpx.MockTransport(receiver.handler), sleep=held_sleep)

        try:
            await held.trigger_webhook(event_for())
            await asyncio.wait_for(backing_off.wait(), timeout=5)

            for _ in range(500):
                if held.pending_deliveries == 1:
                    break
                await asyncio.sleep(0.01)

            # Fast endpoint finished while the slow one is still waiting to retry
            assert held.pending_deliveries == 1
            fast_history = await held.get_delivery_history(fast.id, ORG_ID)
            assert [(a.attempt_number, a.http_status) for a in fast_history] == [(1, 200)]
            assert len(await held.get_delivery_history(slow.id, ORG_ID)) == 1
        finally:
            release.set()
            await held.wait_idle(timeout=5)

        assert len(await held.get_delivery_history(slow.id, ORG_ID)) == 2
