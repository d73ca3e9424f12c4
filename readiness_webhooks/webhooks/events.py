"""
Webhook event types and the immutable event value object.
"""
import enum
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any


class WebhookEventType(str, enum.Enum):
    """Namespaced event types emitted by the platform."""
    # Surveys
    SURVEY_CREATED = "survey.created"
    SURVEY_UPDATED = "survey.updated"
    SURVEY_DELETED = "survey.deleted"
    SURVEY_PUBLISHED = "survey.published"

    # Responses
    RESPONSE_SUBMITTED = "response.submitted"
    RESPONSE_COMPLETED = "response.completed"
    RESPONSE_UPDATED = "response.updated"

    # Analysis
    LLM_ANALYSIS_COMPLETED = "llm.analysis.completed"
    LLM_BATCH_COMPLETED = "llm.batch.completed"
    JTBD_ANALYSIS_COMPLETED = "jtbd.analysis.completed"

    # Users
    USER_REGISTERED = "user.registered"
    USER_UPDATED = "user.updated"
    USER_INVITATION_SENT = "user.invitation.sent"
    USER_INVITATION_ACCEPTED = "user.invitation.accepted"

    # Organisations
    ORGANIZATION_CREATED = "organization.created"
    ORGANIZATION_UPDATED = "organization.updated"
    ORGANIZATION_MEMBER_ADDED = "organization.member.added"
    ORGANIZATION_MEMBER_REMOVED = "organization.member.removed"

    # System
    API_KEY_CREATED = "api_key.created"
    API_KEY_REVOKED = "api_key.revoked"
    WEBHOOK_FAILED = "webhook.failed"
    WEBHOOK_TEST = "webhook.test"
    RATE_LIMIT_EXCEEDED = "rate_limit.exceeded"


def utc_timestamp() -> str:
    """Current time as an ISO-8601 UTC string."""
    return datetime.now(timezone.utc).isoformat()


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True)
class WebhookEvent:
    """
    A broadcast fact. Never mutated after construction.

    `data` is passed through to receivers untouched; the delivery code
    only ever serialises it.
    """
    id: str
    event: str
    data: Any
    timestamp: str
    request_id: str
    organization_id: str
    user_id: str | None = None

    def wire_payload(self) -> dict[str, Any]:
        """The exact JSON object POSTed to endpoints."""
        return {
            "id": self.id,
            "event": self.event,
            "data": self.data,
            "timestamp": self.timestamp,
            "request_id": self.request_id,
        }

    def serialize(self) -> bytes:
        """Compact JSON body; these bytes are both signed and sent."""
        return json.dumps(
            self.wire_payload(),
            separators=(",", ":"),
            ensure_ascii=False,
            default=str,
        ).encode("utf-8")
