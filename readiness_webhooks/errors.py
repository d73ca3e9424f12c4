"""
Domain errors raised by the webhook registry and store.

Routes translate these into HTTP responses; the delivery pipeline never
lets them escape to the code that triggered an event.
"""
from pydantic import ValidationError


class WebhookError(Exception):
    """Base class for webhook subsystem errors."""


class WebhookNotFoundError(WebhookError):
    """
    The endpoint does not exist or belongs to another organisation/user.

    Both cases are reported identically so callers cannot discover ids
    owned by other tenants.
    """

    def __init__(self, webhook_id: str):
        self.webhook_id = webhook_id
        super().__init__("Webhook not found")


class WebhookEventNotFoundError(WebhookError):
    """No recorded event with this id in the caller's organisation."""

    def __init__(self, event_id: str):
        self.event_id = event_id
        super().__init__("Event not found")


class WebhookValidationError(WebhookError):
    """Input rejected by the endpoint creation contract."""

    def __init__(self, message: str, errors: list[dict] | None = None):
        self.errors = errors or []
        super().__init__(message)

    @classmethod
    def from_pydantic(cls, exc: ValidationError) -> "WebhookValidationError":
        errors = exc.errors(include_url=False, include_context=False)
        first = errors[0] if errors else {}
        location = ".".join(str(part) for part in first.get("loc", ()))
        message = first.get("msg", "Invalid webhook")
        if location:
            message = f"{location}: {message}"
        return cls(message, errors=errors)


class WebhookStoreError(WebhookError):
    """The persistence layer failed to read or write a webhook row."""
