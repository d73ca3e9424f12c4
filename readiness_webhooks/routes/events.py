"""
Event trigger and event log routes.

Lets an organisation admin broadcast an event to the organisation's
webhook endpoints, and any member read back the recorded event log.
Other platform services call the manager directly.
"""
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from readiness_webhooks.dependencies.auth import TokenPayload, require_admin
from readiness_webhooks.dependencies.rate_limit import check_rate_limit
from readiness_webhooks.dependencies.webhooks import get_webhook_manager
from readiness_webhooks.errors import WebhookEventNotFoundError, WebhookStoreError
from readiness_webhooks.logging_config import logger
from readiness_webhooks.schemas.webhook import (
    EventAcceptedResponse,
    TriggerEventRequest,
    WebhookEventCreate,
    WebhookEventLogResponse,
)
from readiness_webhooks.services.webhook_service import WebhookManager


router = APIRouter(prefix="/api/events", tags=["events"])


@router.post("", response_model=EventAcceptedResponse, status_code=status.HTTP_202_ACCEPTED)
async def trigger_event(
    body: TriggerEventRequest,
    request: Request,
    user: TokenPayload = Depends(require_admin),
    manager: WebhookManager = Depends(get_webhook_manager)
):
    """
    Record an event in the caller's organisation and queue its deliveries.

    202 means the event was durably recorded; delivery happens afterwards.
    """
    payload = WebhookEventCreate(
        event=body.event,
        data=body.data,
        organization_id=user.org_id,
        user_id=user.sub,
        request_id=getattr(request.state, "request_id", None),
    )
    try:
        event = await manager.trigger_webhook(payload)
    except WebhookStoreError as e:
        logger.error("webhook_event_record_failed", event_type=body.event, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Event could not be recorded"
        )

    return EventAcceptedResponse(
        id=event.id,
        event=event.event,
        timestamp=event.timestamp,
        request_id=event.request_id,
    )


@router.get("", response_model=list[WebhookEventLogResponse])
async def list_events(
    event_type: str | None = Query(None, max_length=100),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    user: TokenPayload = Depends(check_rate_limit),
    manager: WebhookManager = Depends(get_webhook_manager)
):
    """Recorded events in the caller's organisation, newest first."""
    try:
        rows = await manager.list_events(user.org_id, event_type, limit=limit, offset=offset)
    except WebhookStoreError as e:
        logger.error("webhook_store_unavailable", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Webhook storage unavailable"
        )
    return [WebhookEventLogResponse.model_validate(row) for row in rows]


@router.get("/{event_id}", response_model=WebhookEventLogResponse)
async def get_event(
    event_id: str,
    user: TokenPayload = Depends(check_rate_limit),
    manager: WebhookManager = Depends(get_webhook_manager)
):
    try:
        row = await manager.get_event(event_id, user.org_id)
    except WebhookEventNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Event not found"
        )
    except WebhookStoreError as e:
        logger.error("webhook_store_unavailable", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Webhook storage unavailable"
        )
    return WebhookEventLogResponse.model_validate(row)
