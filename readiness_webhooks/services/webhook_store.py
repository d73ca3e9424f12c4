"""
Persistence for webhook endpoints, events and delivery attempts.

Each call opens its own short session from the injected factory, so the
detached delivery tasks never share a session with a request or with
each other.

SECURITY: All queries MUST include organization_id filter.
Failure to do so will result in data leakage between tenants.
"""
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator

from sqlalchemy import case, delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from readiness_webhooks.errors import WebhookStoreError
from readiness_webhooks.models.base import utcnow
from readiness_webhooks.models.webhook import WebhookDeliveryAttempt, WebhookEndpoint, WebhookEventLog
from readiness_webhooks.webhooks.events import WebhookEvent


class WebhookStore:
    """Data access for the webhook tables."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        async with self.session_factory() as session:
            try:
                yield session
            except SQLAlchemyError as exc:
                await session.rollback()
                raise WebhookStoreError(str(exc)) from exc

    # Endpoints

    async def create_endpoint(self, organization_id: str, user_id: str, values: dict[str, Any]) -> WebhookEndpoint:
        """Insert a new endpoint row."""
        endpoint = WebhookEndpoint(
            organization_id=organization_id,
            user_id=user_id,
            **values,
        )
        async with self._session() as session:
            session.add(endpoint)
            await session.commit()
            await session.refresh(endpoint)
        return endpoint

    async def list_endpoints(self, organization_id: str) -> list[WebhookEndpoint]:
        """All endpoints in the organisation, newest first."""
        stmt = (
            select(WebhookEndpoint)
            .where(WebhookEndpoint.organization_id == organization_id)
            .order_by(WebhookEndpoint.created_at.desc())
        )
        async with self._session() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def get_endpoint(
        self,
        webhook_id: str,
        organization_id: str,
        user_id: str | None = None,
    ) -> WebhookEndpoint | None:
        """Get an endpoint within the organisation, optionally also by owner."""
        stmt = select(WebhookEndpoint).where(
            WebhookEndpoint.id == webhook_id,
            WebhookEndpoint.organization_id == organization_id,
        )
        if user_id is not None:
            stmt = stmt.where(WebhookEndpoint.user_id == user_id)
        async with self._session() as session:
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def update_endpoint(
        self,
        webhook_id: str,
        user_id: str,
        organization_id: str,
        values: dict[str, Any],
    ) -> WebhookEndpoint | None:
        """Apply already-validated values to an owned endpoint."""
        stmt = select(WebhookEndpoint).where(
            WebhookEndpoint.id == webhook_id,
            WebhookEndpoint.user_id == user_id,
            WebhookEndpoint.organization_id == organization_id,
        )
        async with self._session() as session:
            result = await session.execute(stmt)
            endpoint = result.scalar_one_or_none()
            if endpoint is None:
                return None
            for key, value in values.items():
                setattr(endpoint, key, value)
            endpoint.updated_at = utcnow()
            await session.commit()
            await session.refresh(endpoint)
            return endpoint

    async def delete_endpoint(self, webhook_id: str, user_id: str, organization_id: str) -> bool:
        """Hard delete an owned endpoint. Returns False if nothing matched."""
        stmt = delete(WebhookEndpoint).where(
            WebhookEndpoint.id == webhook_id,
            WebhookEndpoint.user_id == user_id,
            WebhookEndpoint.organization_id == organization_id,
        )
        async with self._session() as session:
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount > 0

    async def find_subscribed_endpoints(self, organization_id: str, event_type: str) -> list[WebhookEndpoint]:
        """
        Active endpoints in the organisation subscribed to the event type.

        The subscription list is a JSON column, so membership is checked
        in Python to stay portable across databases.
        """
        stmt = (
            select(WebhookEndpoint)
            .where(
                WebhookEndpoint.organization_id == organization_id,
                WebhookEndpoint.is_active.is_(True),
            )
            .order_by(WebhookEndpoint.created_at)
        )
        async with self._session() as session:
            result = await session.execute(stmt)
            return [endpoint for endpoint in result.scalars().all() if endpoint.subscribes_to(event_type)]

    # Events and attempts

    async def record_event(self, event: WebhookEvent) -> None:
        """Write the audit row for an event."""
        row = WebhookEventLog(
            id=event.id,
            event_type=event.event,
            payload=event.data,
            organization_id=event.organization_id,
            user_id=event.user_id,
            request_id=event.request_id,
            timestamp=event.timestamp,
        )
        async with self._session() as session:
            session.add(row)
            await session.commit()

    async def get_event(self, event_id: str, organization_id: str) -> WebhookEventLog | None:
        stmt = select(WebhookEventLog).where(
            WebhookEventLog.id == event_id,
            WebhookEventLog.organization_id == organization_id,
        )
        async with self._session() as session:
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def list_events(
        self,
        organization_id: str,
        event_type: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[WebhookEventLog]:
        """Recorded events in the organisation, newest first."""
        stmt = select(WebhookEventLog).where(WebhookEventLog.organization_id == organization_id)
        if event_type is not None:
            stmt = stmt.where(WebhookEventLog.event_type == event_type)
        stmt = stmt.order_by(WebhookEventLog.created_at.desc()).limit(limit).offset(offset)
        async with self._session() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def record_attempt(
        self,
        webhook_endpoint_id: str,
        event_id: str,
        attempt_number: int,
        url: str,
        http_status: int | None,
        response_body: str | None,
        error_message: str | None,
        duration_ms: int,
    ) -> WebhookDeliveryAttempt:
        """Append one delivery attempt row."""
        attempt = WebhookDeliveryAttempt(
            webhook_endpoint_id=webhook_endpoint_id,
            event_id=event_id,
            attempt_number=attempt_number,
            url=url,
            http_status=http_status,
            response_body=response_body,
            error_message=error_message,
            duration_ms=duration_ms,
        )
        async with self._session() as session:
            session.add(attempt)
            await session.commit()
        return attempt

    async def list_attempts(
        self,
        webhook_id: str,
        organization_id: str,
        limit: int = 50,
        offset: int = 0,
    ) -> list[WebhookDeliveryAttempt]:
        """Delivery history for one endpoint, scoped through the endpoint's organisation."""
        stmt = (
            select(WebhookDeliveryAttempt)
            .join(WebhookEndpoint, WebhookEndpoint.id == WebhookDeliveryAttempt.webhook_endpoint_id)
            .where(
                WebhookDeliveryAttempt.webhook_endpoint_id == webhook_id,
                WebhookEndpoint.organization_id == organization_id,
            )
            .order_by(
                WebhookDeliveryAttempt.timestamp.desc(),
                WebhookDeliveryAttempt.attempt_number.desc(),
            )
            .limit(limit)
            .offset(offset)
        )
        async with self._session() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def delivery_stats(self, organization_id: str, since: datetime, top: int = 5) -> dict[str, Any]:
        """Aggregate attempt counts and timings for the organisation since a cutoff."""
        succeeded = case(
            (
                (WebhookDeliveryAttempt.http_status >= 200) & (WebhookDeliveryAttempt.http_status < 300),
                1,
            ),
            else_=0,
        )
        scoped = (
            WebhookEndpoint.organization_id == organization_id,
            WebhookDeliveryAttempt.timestamp >= since,
        )
        totals_stmt = (
            select(
                func.count(WebhookDeliveryAttempt.id),
                func.coalesce(func.sum(succeeded), 0),
                func.avg(WebhookDeliveryAttempt.duration_ms),
            )
            .join(WebhookEndpoint, WebhookEndpoint.id == WebhookDeliveryAttempt.webhook_endpoint_id)
            .where(*scoped)
        )
        top_stmt = (
            select(WebhookEventLog.event_type, func.count(WebhookDeliveryAttempt.id).label("deliveries"))
            .join(WebhookEndpoint, WebhookEndpoint.id == WebhookDeliveryAttempt.webhook_endpoint_id)
            .join(WebhookEventLog, WebhookEventLog.id == WebhookDeliveryAttempt.event_id)
            .where(*scoped)
            .group_by(WebhookEventLog.event_type)
            .order_by(func.count(WebhookDeliveryAttempt.id).desc(), WebhookEventLog.event_type)
            .limit(top)
        )
        async with self._session() as session:
            total, successful, average = (await session.execute(totals_stmt)).one()
            top_rows = (await session.execute(top_stmt)).all()

        return {
            "total": int(total or 0),
            "successful": int(successful or 0),
            "average_duration_ms": float(average or 0.0),
            "top_events": [(event_type, int(count)) for event_type, count in top_rows],
        }
