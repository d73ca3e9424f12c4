"""Tests for the webhook endpoint registry, history, test delivery and analytics."""

import re

import pytest
from pydantic import ValidationError

from readiness_webhooks.config import settings
from readiness_webhooks.errors import WebhookNotFoundError, WebhookValidationError
from readiness_webhooks.schemas.webhook import (
    WebhookEndpointCreate,
    WebhookEndpointUpdate,
    WebhookEventCreate,
)
from tests.conftest import HOOK_URL, ORG_ID, OTHER_ORG_ID, OTHER_USER_ID, USER_ID


def valid_fields(**overrides):
    fields = {"name": "CRM sync", "url": HOOK_URL, "events": ["survey.created"]}
    fields.update(overrides)
    return fields


class TestEndpointValidation:
    def test_defaults(self):
        payload = WebhookEndpointCreate(**valid_fields())
        assert payload.timeout_ms == 30000
        assert payload.retry_count == 3
        assert payload.retry_delay_ms == 1000
        assert payload.headers == {}
        assert payload.secret is None

    @pytest.mark.parametrize(
        "overrides",
        [
            {"name": ""},
            {"name": "x" * 101},
            {"url": "not a url"},
            {"url": "ftp://example.com/hook"},
            {"url": "https://example.com/" + "a" * 2048},
            {"events": []},
            {"events": ["Survey.Created"]},
            {"events": ["survey"]},
            {"secret": "too-short"},
            {"timeout_ms": 999},
            {"timeout_ms": 60001},
            {"retry_count": -1},
            {"retry_count": 11},
            {"retry_delay_ms": 99},
            {"headers": {"Bad Header": "x"}},
            {"headers": {"X-Ok": "line\r\nbreak"}},
            {"headers": {"X-Team": "Zoë"}},
            {"headers": {"X-Ok": "bell\x07"}},
            {"headers": {"Content-Length": "3"}},
            {"headers": {"host": "evil.test"}},
            {"headers": {"Transfer-Encoding": "chunked"}},
            {"headers": {"Connection": "close"}},
        ],
    )
    def test_rejects_invalid_fields(self, overrides):
        with pytest.raises(ValidationError):
            WebhookEndpointCreate(**valid_fields(**overrides))

    def test_events_are_deduplicated_in_order(self):
        payload = WebhookEndpointCreate(
            **valid_fields(events=["survey.created", "response.submitted", "survey.created"])
        )
        assert payload.events == ["survey.created", "response.submitted"]

    def test_printable_header_values_are_accepted(self):
        headers = {"X-Team": "growth team", "Authorization": "Bearer abc.def~123"}
        payload = WebhookEndpointCreate(**valid_fields(headers=headers))
        assert payload.headers == headers

    def test_url_spelling_is_preserved(self):
        payload = WebhookEndpointCreate(**valid_fields(url="https://Example.com/Hook?x=1"))
        assert payload.url == "https://Example.com/Hook?x=1"

    def test_localhost_allowed_outside_production(self):
        payload = WebhookEndpointCreate(**valid_fields(url="http://localhost:8080/hook"))
        assert payload.url == "http://localhost:8080/hook"

    def test_localhost_rejected_in_production(self, monkeypatch):
        monkeypatch.setattr(settings, "ENVIRONMENT", "production")
        with pytest.raises(ValidationError):
            WebhookEndpointCreate(**valid_fields(url="http://localhost:8080/hook"))

    def test_event_create_requires_namespaced_type(self):
        with pytest.raises(ValidationError):
            WebhookEventCreate(event="created", organization_id=ORG_ID)


class TestRegisterAndRead:
    @pytest.mark.asyncio
    async def test_register_generates_secret(self, register):
        endpoint = await register()
        assert re.fullmatch(r"[0-9a-f]{64}", endpoint.secret)
        assert endpoint.organization_id == ORG_ID
        assert endpoint.user_id == USER_ID
        assert endpoint.is_active is True

    @pytest.mark.asyncio
    async def test_register_keeps_supplied_secret(self, register):
        endpoint = await register(secret="my-own-secret-value")
        assert endpoint.secret == "my-own-secret-value"

    @pytest.mark.asyncio
    async def test_secrets_are_unique(self, register):
        first = await register()
        second = await register()
        assert first.secret != second.secret

    @pytest.mark.asyncio
    async def test_list_is_newest_first_and_org_scoped(self, manager, register):
        older = await register(name="older")
        newer = await register(name="newer")
        await register(name="foreign", organization_id=OTHER_ORG_ID, user_id=OTHER_USER_ID)

        listed = await manager.list_webhooks(ORG_ID)
        assert [e.id for e in listed] == [newer.id, older.id]

    @pytest.mark.asyncio
    async def test_get_webhook(self, manager, register):
        endpoint = await register()
        fetched = await manager.get_webhook(endpoint.id, ORG_ID)
        assert fetched.id == endpoint.id

    @pytest.mark.asyncio
    async def test_get_webhook_from_other_org_is_not_found(self, manager, register):
        endpoint = await register()
        with pytest.raises(WebhookNotFoundError):
            await manager.get_webhook(endpoint.id, OTHER_ORG_ID)

    @pytest.mark.asyncio
    async def test_get_unknown_webhook_is_not_found(self, manager):
        with pytest.raises(WebhookNotFoundError):
            await manager.get_webhook("does-not-exist", ORG_ID)


class TestUpdate:
    @pytest.mark.asyncio
    async def test_partial_update_merges_and_bumps_updated_at(self, manager, register):
        endpoint = await register(retry_count=2)

        updated = await manager.update_webhook(
            endpoint.id, USER_ID, ORG_ID, WebhookEndpointUpdate(name="Renamed", events=["response.completed"])
        )

        assert updated.name == "Renamed"
        assert updated.events == ["response.completed"]
        assert updated.url == endpoint.url
        assert updated.retry_count == 2
        assert updated.secret == endpoint.secret
        assert updated.updated_at > endpoint.updated_at

    @pytest.mark.asyncio
    async def test_deactivate(self, manager, register):
        endpoint = await register()
        updated = await manager.update_webhook(endpoint.id, USER_ID, ORG_ID, WebhookEndpointUpdate(is_active=False))
        assert updated.is_active is False

    @pytest.mark.asyncio
    async def test_merged_record_is_revalidated(self, manager, register, monkeypatch):
        endpoint = await register(url="http://localhost:9000/hook")
        monkeypatch.setattr(settings, "ENVIRONMENT", "production")

        with pytest.raises(WebhookValidationError) as exc_info:
            await manager.update_webhook(endpoint.id, USER_ID, ORG_ID, WebhookEndpointUpdate(name="Renamed"))

        assert str(exc_info.value).startswith("url:")

    @pytest.mark.asyncio
    async def test_update_by_other_user_is_not_found(self, manager, register):
        endpoint = await register()
        with pytest.raises(WebhookNotFoundError):
            await manager.update_webhook(endpoint.id, OTHER_USER_ID, ORG_ID, WebhookEndpointUpdate(name="Hijack"))

    @pytest.mark.asyncio
    async def test_update_from_other_org_is_not_found(self, manager, register):
        endpoint = await register()
        with pytest.raises(WebhookNotFoundError):
            await manager.update_webhook(endpoint.id, USER_ID, OTHER_ORG_ID, WebhookEndpointUpdate(name="Hijack"))

        unchanged = await manager.get_webhook(endpoint.id, ORG_ID)
        assert unchanged.name == endpoint.name


class TestDelete:
    @pytest.mark.asyncio
    async def test_delete(self, manager, register):
        endpoint = await register()
        await manager.delete_webhook(endpoint.id, USER_ID, ORG_ID)
        assert await manager.list_webhooks(ORG_ID) == []

    @pytest.mark.asyncio
    async def test_delete_from_other_org_is_not_found(self, manager, register):
        endpoint = await register()
        with pytest.raises(WebhookNotFoundError):
            await manager.delete_webhook(endpoint.id, USER_ID, OTHER_ORG_ID)
        assert len(await manager.list_webhooks(ORG_ID)) == 1

    @pytest.mark.asyncio
    async def test_delete_by_other_user_is_not_found(self, manager, register):
        endpoint = await register()
        with pytest.raises(WebhookNotFoundError):
            await manager.delete_webhook(endpoint.id, OTHER_USER_ID, ORG_ID)

    @pytest.mark.asyncio
    async def test_delete_twice_is_not_found(self, manager, register):
        endpoint = await register()
        await manager.delete_webhook(endpoint.id, USER_ID, ORG_ID)
        with pytest.raises(WebhookNotFoundError):
            await manager.delete_webhook(endpoint.id, USER_ID, ORG_ID)

    @pytest.mark.asyncio
    async def test_delete_hides_history_but_keeps_event_log(self, manager, store, register):
        endpoint = await register()
        await manager.trigger_webhook(WebhookEventCreate(event="survey.created", organization_id=ORG_ID))
        await manager.wait_idle(timeout=5)

        await manager.delete_webhook(endpoint.id, USER_ID, ORG_ID)

        with pytest.raises(WebhookNotFoundError):
            await manager.get_delivery_history(endpoint.id, ORG_ID)
        # The event audit row is untouched
        assert len(await store.list_events(ORG_ID, "survey.created")) == 1


class TestDeliveryHistory:
    @pytest.mark.asyncio
    async def test_history_newest_first_with_paging(self, manager, receiver, register):
        endpoint = await register(retry_count=2, retry_delay_ms=100)
        receiver.always(500)

        await manager.trigger_webhook(WebhookEventCreate(event="survey.created", organization_id=ORG_ID))
        await manager.wait_idle(timeout=5)

        history = await manager.get_delivery_history(endpoint.id, ORG_ID)
        assert [a.attempt_number for a in history] == [3, 2, 1]

        page = await manager.get_delivery_history(endpoint.id, ORG_ID, limit=1, offset=1)
        assert [a.attempt_number for a in page] == [2]

    @pytest.mark.asyncio
    async def test_history_is_org_scoped(self, manager, register):
        endpoint = await register()
        await manager.trigger_webhook(WebhookEventCreate(event="survey.created", organization_id=ORG_ID))
        await manager.wait_idle(timeout=5)

        assert len(await manager.get_delivery_history(endpoint.id, ORG_ID)) == 1
        with pytest.raises(WebhookNotFoundError):
            await manager.get_delivery_history(endpoint.id, OTHER_ORG_ID)

    @pytest.mark.asyncio
    async def test_history_of_unknown_endpoint_is_not_found(self, manager):
        with pytest.raises(WebhookNotFoundError):
            await manager.get_delivery_history("does-not-exist", ORG_ID)


class TestTestDelivery:
    @pytest.mark.asyncio
    async def test_single_call_and_no_audit_rows(self, manager, store, receiver, register):
        """One HTTP call, result returned directly, nothing recorded."""
        endpoint = await register(retry_count=5)

        result = await manager.test_webhook(endpoint.id, ORG_ID)

        assert result.success is True
        assert result.status_code == 200
        assert result.response == "ok"
        assert result.duration is not None
        assert len(receiver.requests) == 1
        assert receiver.requests[0].headers["X-Attempt"] == "1"
        assert await store.list_attempts(endpoint.id, ORG_ID) == []
        assert await store.list_events(ORG_ID) == []

    @pytest.mark.asyncio
    async def test_failing_endpoint_is_not_retried(self, manager, receiver, recorded_sleep, register):
        endpoint = await register(retry_count=5)
        receiver.always((502, "bad gateway"))

        result = await manager.test_webhook(endpoint.id, ORG_ID)

        assert result.success is False
        assert result.status_code == 502
        assert result.response == "bad gateway"
        assert len(receiver.requests) == 1
        assert recorded_sleep.delays == []

    @pytest.mark.asyncio
    async def test_payload_is_a_test_event(self, manager, receiver, register):
        endpoint = await register()
        await manager.test_webhook(endpoint.id, ORG_ID)
        assert b'"event":"webhook.test"' in receiver.requests[0].content

    @pytest.mark.asyncio
    async def test_other_org_is_not_found(self, manager, receiver, register):
        endpoint = await register()
        with pytest.raises(WebhookNotFoundError):
            await manager.test_webhook(endpoint.id, OTHER_ORG_ID)
        assert receiver.requests == []


class TestAnalytics:
    @pytest.mark.asyncio
    async def test_empty(self, manager):
        analytics = await manager.get_webhook_analytics(ORG_ID, "day")
        assert analytics.timeframe == "day"
        assert analytics.total_deliveries == 0
        assert analytics.delivery_success_rate == 0.0
        assert analytics.top_events == []

    @pytest.mark.asyncio
    async def test_counts_attempts_by_outcome_and_event(self, manager, receiver, register):
        await register(url="https://example.com/flaky", events=["survey.created"], retry_count=2, retry_delay_ms=100)
        await register(url="https://example.com/steady", events=["response.submitted"])
        receiver.always(500, url="https://example.com/flaky")

        await manager.trigger_webhook(WebhookEventCreate(event="survey.created", organization_id=ORG_ID))
        await manager.wait_idle(timeout=5)
        await manager.trigger_webhook(WebhookEventCreate(event="response.submitted", organization_id=ORG_ID))
        await manager.wait_idle(timeout=5)

        analytics = await manager.get_webhook_analytics(ORG_ID, "hour")

        assert analytics.total_deliveries == 4
        assert analytics.successful_deliveries == 1
        assert analytics.failed_deliveries == 3
        assert analytics.delivery_success_rate == 25.0
        assert analytics.average_response_time_ms >= 0
        assert [(e.event, e.count) for e in analytics.top_events] == [
            ("survey.created", 3),
            ("response.submitted", 1),
        ]

    @pytest.mark.asyncio
    async def test_other_org_sees_nothing(self, manager, register):
        await register()
        await manager.trigger_webhook(WebhookEventCreate(event="survey.created", organization_id=ORG_ID))
        await manager.wait_idle(timeout=5)

        analytics = await manager.get_webhook_analytics(OTHER_ORG_ID, "week")
        assert analytics.total_deliveries == 0
