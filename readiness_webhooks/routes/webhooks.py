"""
Webhook API routes.

Register, inspect, test and remove webhook endpoints for the caller's
organisation, and read their delivery history and analytics.

SECURITY: All queries MUST include organization_id filter.
Failure to do so will result in data leakage between tenants.
"""
from contextlib import contextmanager

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status

from readiness_webhooks.dependencies.auth import TokenPayload
from readiness_webhooks.dependencies.rate_limit import check_rate_limit
from readiness_webhooks.dependencies.webhooks import get_webhook_manager
from readiness_webhooks.errors import WebhookNotFoundError, WebhookStoreError, WebhookValidationError
from readiness_webhooks.logging_config import logger
from readiness_webhooks.schemas.webhook import (
    DeliveryAttemptResponse,
    Timeframe,
    WebhookAnalytics,
    WebhookEndpointCreate,
    WebhookEndpointCreatedResponse,
    WebhookEndpointResponse,
    WebhookEndpointUpdate,
    WebhookTestResult,
)
from readiness_webhooks.services.webhook_service import WebhookManager
from readiness_webhooks.webhooks.events import WebhookEventType


router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


@contextmanager
def webhook_errors():
    """Translate webhook domain errors into HTTP responses."""
    try:
        yield
    except WebhookNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Webhook not found"
        )
    except WebhookValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(e)
        )
    except WebhookStoreError as e:
        logger.error("webhook_store_unavailable", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Webhook storage unavailable"
        )


@router.post("", response_model=WebhookEndpointCreatedResponse, status_code=status.HTTP_201_CREATED)
async def register_webhook(
    request: WebhookEndpointCreate,
    user: TokenPayload = Depends(check_rate_limit),
    manager: WebhookManager = Depends(get_webhook_manager)
):
    """
    Register a webhook endpoint for the organisation.

    The signing secret is only ever returned by this call.
    """
    with webhook_errors():
        endpoint = await manager.register_webhook(user.sub, user.org_id, request)
    return WebhookEndpointCreatedResponse.model_validate(endpoint)


@router.get("", response_model=list[WebhookEndpointResponse])
async def list_webhooks(
    user: TokenPayload = Depends(check_rate_limit),
    manager: WebhookManager = Depends(get_webhook_manager)
):
    """List the organisation's webhook endpoints, newest first."""
    with webhook_errors():
        endpoints = await manager.list_webhooks(user.org_id)
    return [WebhookEndpointResponse.model_validate(endpoint) for endpoint in endpoints]


@router.get("/event-types", response_model=list[str])
async def list_event_types(user: TokenPayload = Depends(check_rate_limit)):
    """Event types the platform emits."""
    return [event_type.value for event_type in WebhookEventType]


@router.get("/analytics", response_model=WebhookAnalytics)
async def get_webhook_analytics(
    timeframe: Timeframe = Query("week"),
    user: TokenPayload = Depends(check_rate_limit),
    manager: WebhookManager = Depends(get_webhook_manager)
):
    with webhook_errors():
        return await manager.get_webhook_analytics(user.org_id, timeframe)


@router.get("/{webhook_id}", response_model=WebhookEndpointResponse)
async def get_webhook(
    webhook_id: str,
    user: TokenPayload = Depends(check_rate_limit),
    manager: WebhookManager = Depends(get_webhook_manager)
):
    with webhook_errors():
        endpoint = await manager.get_webhook(webhook_id, user.org_id)
    return WebhookEndpointResponse.model_validate(endpoint)


@router.patch("/{webhook_id}", response_model=WebhookEndpointResponse)
async def update_webhook(
    webhook_id: str,
    request: WebhookEndpointUpdate,
    user: TokenPayload = Depends(check_rate_limit),
    manager: WebhookManager = Depends(get_webhook_manager)
):
    """Update an endpoint owned by the caller. Omitted fields are kept."""
    with webhook_errors():
        endpoint = await manager.update_webhook(webhook_id, user.sub, user.org_id, request)
    return WebhookEndpointResponse.model_validate(endpoint)


@router.delete("/{webhook_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_webhook(
    webhook_id: str,
    user: TokenPayload = Depends(check_rate_limit),
    manager: WebhookManager = Depends(get_webhook_manager)
):
    """Permanently remove an endpoint owned by the caller."""
    with webhook_errors():
        await manager.delete_webhook(webhook_id, user.sub, user.org_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{webhook_id}/test", response_model=WebhookTestResult)
async def test_webhook(
    webhook_id: str,
    user: TokenPayload = Depends(check_rate_limit),
    manager: WebhookManager = Depends(get_webhook_manager)
):
    """
    Send a single webhook.test delivery to the endpoint.

    The outcome is returned directly; it is not retried or recorded.
    """
    with webhook_errors():
        return await manager.test_webhook(webhook_id, user.org_id)


@router.get("/{webhook_id}/deliveries", response_model=list[DeliveryAttemptResponse])
async def get_delivery_history(
    webhook_id: str,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    user: TokenPayload = Depends(check_rate_limit),
    manager: WebhookManager = Depends(get_webhook_manager)
):
    """Delivery attempts for the endpoint, newest first."""
    with webhook_errors():
        attempts = await manager.get_delivery_history(webhook_id, user.org_id, limit=limit, offset=offset)
    return [DeliveryAttemptResponse.model_validate(attempt) for attempt in attempts]
