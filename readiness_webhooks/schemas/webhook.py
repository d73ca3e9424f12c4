"""Webhook request, response and event schemas."""
import re
from datetime import datetime
from typing import Annotated, Any, Literal

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, HttpUrl, TypeAdapter, ValidationError

from readiness_webhooks.config import settings

EVENT_TYPE_PATTERN = re.compile(r"^[a-z0-9_]+(\.[a-z0-9_]+)+$")
HEADER_NAME_PATTERN = re.compile(r"^[!#$%&'*+.^_`|~0-9A-Za-z-]+$")
HEADER_VALUE_PATTERN = re.compile(r"^[\t\x20-\x7e]*$")
# Set by the HTTP client from the request itself
RESERVED_HEADERS = frozenset({
    "connection",
    "content-length",
    "host",
    "keep-alive",
    "proxy-connection",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
})
LOCAL_HOSTS = {"localhost", "127.0.0.1", "::1", "[::1]"}

_http_url = TypeAdapter(HttpUrl)

Timeframe = Literal["hour", "day", "week", "month"]


def validate_webhook_url(value: str) -> str:
    """Accept absolute http(s) URLs; keep the caller's exact spelling."""
    value = value.strip()
    try:
        parsed = _http_url.validate_python(value)
    except ValidationError:
        raise ValueError("must be an absolute http or https URL") from None
    if settings.ENVIRONMENT == "production" and parsed.host in LOCAL_HOSTS:
        raise ValueError("localhost URLs are not allowed in production")
    return value


def validate_event_types(values: list[str]) -> list[str]:
    """Normalise a subscription list: stripped, namespaced, de-duplicated."""
    seen: list[str] = []
    for raw in values:
        event_type = raw.strip()
        if not EVENT_TYPE_PATTERN.match(event_type):
            raise ValueError(f"invalid event type: {raw!r}")
        if event_type not in seen:
            seen.append(event_type)
    return seen


def validate_custom_headers(values: dict[str, str]) -> dict[str, str]:
    """Header names must be tokens and values printable ASCII."""
    for name, value in values.items():
        if not HEADER_NAME_PATTERN.fullmatch(name):
            raise ValueError(f"invalid header name: {name!r}")
        if name.lower() in RESERVED_HEADERS:
            raise ValueError(f"header {name!r} cannot be overridden")
        if not HEADER_VALUE_PATTERN.fullmatch(value):
            raise ValueError(f"invalid value for header {name!r}")
    return values


WebhookUrl = Annotated[str, Field(max_length=2048), AfterValidator(validate_webhook_url)]
EventTypes = Annotated[list[str], Field(min_length=1), AfterValidator(validate_event_types)]
CustomHeaders = Annotated[dict[str, str], AfterValidator(validate_custom_headers)]


def validate_event_type(value: str) -> str:
    return validate_event_types([value])[0]


EventType = Annotated[str, Field(min_length=1, max_length=100), AfterValidator(validate_event_type)]


class WebhookEndpointCreate(BaseModel):
    """Creation contract for a webhook endpoint."""
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=100)
    url: WebhookUrl
    events: EventTypes
    secret: str | None = Field(default=None, min_length=16, max_length=128)
    headers: CustomHeaders = Field(default_factory=dict)
    timeout_ms: int = Field(default=30000, ge=1000, le=60000)
    retry_count: int = Field(default=3, ge=0, le=10)
    retry_delay_ms: int = Field(default=1000, ge=100, le=60000)


class WebhookEndpointUpdate(BaseModel):
    """Partial update; unset fields keep their stored value."""
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str | None = Field(default=None, min_length=1, max_length=100)
    url: WebhookUrl | None = None
    events: EventTypes | None = None
    secret: str | None = Field(default=None, min_length=16, max_length=128)
    headers: CustomHeaders | None = None
    is_active: bool | None = None
    timeout_ms: int | None = Field(default=None, ge=1000, le=60000)
    retry_count: int | None = Field(default=None, ge=0, le=10)
    retry_delay_ms: int | None = Field(default=None, ge=100, le=60000)

    def changes(self) -> dict[str, Any]:
        """Fields explicitly provided with a value."""
        return {
            key: value
            for key, value in self.model_dump(exclude_unset=True).items()
            if value is not None
        }


class WebhookEndpointResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    organization_id: str
    user_id: str
    name: str
    url: str
    events: list[str]
    is_active: bool
    headers: dict[str, str]
    timeout_ms: int
    retry_count: int
    retry_delay_ms: int
    created_at: datetime
    updated_at: datetime


class WebhookEndpointCreatedResponse(WebhookEndpointResponse):
    """Returned once at registration; the secret is not shown again."""
    secret: str


class WebhookEventCreate(BaseModel):
    """An event to broadcast, before an id is assigned."""
    event: EventType
    data: Any = None
    organization_id: str = Field(min_length=1, max_length=36)
    user_id: str | None = Field(default=None, max_length=36)
    timestamp: str | None = None
    request_id: str | None = Field(default=None, max_length=64)


class TriggerEventRequest(BaseModel):
    event: EventType
    data: Any = None


class EventAcceptedResponse(BaseModel):
    id: str
    event: str
    timestamp: str
    request_id: str
    status: str = "accepted"


class WebhookEventLogResponse(BaseModel):
    """A recorded event as stored in the audit log."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    event: str = Field(validation_alias="event_type")
    data: Any = Field(default=None, validation_alias="payload")
    organization_id: str
    user_id: str | None = None
    request_id: str
    timestamp: str
    created_at: datetime


class DeliveryAttemptResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    webhook_endpoint_id: str
    event_id: str
    attempt_number: int
    url: str
    http_status: int | None = None
    response_body: str | None = None
    error_message: str | None = None
    duration_ms: int
    timestamp: datetime


class WebhookTestResult(BaseModel):
    success: bool
    status_code: int | None = None
    response: str | None = None
    error: str | None = None
    duration: int | None = None


class EventCount(BaseModel):
    event: str
    count: int


class WebhookAnalytics(BaseModel):
    timeframe: Timeframe
    total_deliveries: int = 0
    successful_deliveries: int = 0
    failed_deliveries: int = 0
    average_response_time_ms: float = 0.0
    top_events: list[EventCount] = Field(default_factory=list)
    delivery_success_rate: float = 0.0
