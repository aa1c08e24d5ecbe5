"""Domain types for coordination requests and their audit trail.

Timestamps are always timezone-aware UTC datetimes in memory. The store writes
them through :func:`to_iso`, which produces fixed-width strings so that string
comparison in SQL matches chronological order.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field


class Intent(str, Enum):
    APPROVAL = "APPROVAL"
    CLARIFICATION = "CLARIFICATION"
    ESCALATION = "ESCALATION"
    NOTIFICATION = "NOTIFICATION"
    DECISION = "DECISION"
    REVIEW = "REVIEW"
    INPUT = "INPUT"


class Urgency(str, Enum):
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class RequestState(str, Enum):
    SUBMITTED = "SUBMITTED"
    ROUTING = "ROUTING"
    PENDING_RESPONSE = "PENDING_RESPONSE"
    RESPONDED = "RESPONDED"
    DELIVERED = "DELIVERED"
    ESCALATED = "ESCALATED"
    TIMED_OUT = "TIMED_OUT"
    CANCELLED = "CANCELLED"


class FallbackPolicy(str, Enum):
    AUTO_APPROVE = "AUTO_APPROVE"
    AUTO_REJECT = "AUTO_REJECT"
    ESCALATE = "ESCALATE"
    BLOCK = "BLOCK"
    FAIL = "FAIL"
    SKIP = "SKIP"


class ActorType(str, Enum):
    AGENT = "AGENT"
    HUMAN = "HUMAN"
    SYSTEM = "SYSTEM"


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def to_iso(value: datetime) -> str:
    """Serialize a datetime as fixed-width UTC ISO-8601 with microseconds."""

    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def from_iso(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


class Attachment(BaseModel):
    type: str
    name: str
    content: str


class ContextPackage(BaseModel):
    summary: str = Field(min_length=1)
    detail: str | None = None
    metadata: dict[str, Any] | None = None
    attachments: list[Attachment] | None = None


class ResponseOption(BaseModel):
    key: str
    label: str
    description: str | None = None


class ResponseSchema(BaseModel):
    type: Literal["choice", "text", "structured"]
    options: list[ResponseOption] | None = None
    json_schema: dict[str, Any] | None = None


class TimeoutPolicy(BaseModel):
    timeout_seconds: int = Field(gt=0)
    fallback: FallbackPolicy
    escalation_responder_id: str | None = None

    def deadline_from(self, start: datetime) -> datetime:
        return start + timedelta(seconds=self.timeout_seconds)


class RoutingHints(BaseModel):
    responder_id: str = Field(min_length=1)
    channel: Literal["portal", "slack"] = "portal"
    slack_channel_id: str | None = None


class NewRequest(BaseModel):
    """Everything an agent supplies when it asks for a human decision."""

    intent: Intent
    urgency: Urgency
    context_package: ContextPackage
    response_schema: ResponseSchema | None = None
    timeout_policy: TimeoutPolicy
    routing_hints: RoutingHints
    trace_id: str | None = None
    idempotency_key: str | None = None


class CoordinationRequest(BaseModel):
    request_id: str
    agent_id: str
    intent: Intent
    urgency: Urgency
    state: RequestState = RequestState.SUBMITTED
    context_package: ContextPackage
    response_schema: ResponseSchema | None = None
    timeout_policy: TimeoutPolicy
    routing_hints: RoutingHints
    trace_id: str | None = None
    idempotency_key: str | None = None
    responder_id: str

    response_data: dict[str, Any] | None = None
    responded_by: str | None = None
    responded_at: datetime | None = None

    submitted_at: datetime
    updated_at: datetime
    timeout_at: datetime
    delivered_at: datetime | None = None


class AuditEvent(BaseModel):
    """One append-only entry in a request's causal history."""

    event_id: str
    request_id: str
    event_type: str
    actor: str
    actor_type: ActorType
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
