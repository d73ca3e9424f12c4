"""
Dependency providing the application's WebhookManager.
"""
from fastapi import Request

from readiness_webhooks.services.webhook_service import WebhookManager


def get_webhook_manager(request: Request) -> WebhookManager:
    """The manager created at startup; tests override this dependency."""
    return request.app.state.webhook_manager
