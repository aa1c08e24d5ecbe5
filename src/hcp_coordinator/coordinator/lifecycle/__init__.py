"""Coordination-request lifecycle.

This package introduces first-class types for:
- The request state machine and its transition engine
- The routing pipeline that brings a request in front of a responder
- The timeout scheduler that applies fallback policies
- Process-local fanout of state changes

Every state change is a compare-and-swap against the store, paired with exactly
one audit event.
"""

from hcp_coordinator.coordinator.lifecycle.errors import (
    ConcurrentModification,
    CoordinationError,
    InvalidTransition,
    NotificationAdapterFailure,
    RequestNotFound,
    StorageFailure,
)
from hcp_coordinator.coordinator.lifecycle.models import (
    ActorType,
    AuditEvent,
    CoordinationRequest,
    FallbackPolicy,
    Intent,
    NewRequest,
    RequestState,
    Urgency,
)

__all__ = [
    "ActorType",
    "AuditEvent",
    "ConcurrentModification",
    "CoordinationError",
    "CoordinationRequest",
    "FallbackPolicy",
    "Intent",
    "InvalidTransition",
    "NewRequest",
    "NotificationAdapterFailure",
    "RequestNotFound",
    "RequestState",
    "StorageFailure",
    "Urgency",
]
