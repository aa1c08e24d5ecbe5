"""The coordination-request lifecycle and the engine that applies it.

Every state change goes through :meth:`TransitionEngine.transition`. The change
itself is a compare-and-swap against the store; the audit append and the fanout
publish that follow are side effects of an already-committed change and never
undo it.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from hcp_coordinator.coordinator.lifecycle.errors import (
    ConcurrentModification,
    InvalidTransition,
    RequestNotFound,
    StorageFailure,
)
from hcp_coordinator.coordinator.lifecycle.fanout import BroadcastFanout
from hcp_coordinator.coordinator.lifecycle.models import (
    ActorType,
    CoordinationRequest,
    RequestState,
    utc_now,
)
from hcp_coordinator.coordinator.storage.audit_log import AuditLog
from hcp_coordinator.coordinator.storage.request_store import RequestStore

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[RequestState, set[RequestState]] = {
    RequestState.SUBMITTED: {RequestState.ROUTING, RequestState.CANCELLED},
    RequestState.ROUTING: {
        RequestState.PENDING_RESPONSE,
        RequestState.ESCALATED,
        RequestState.CANCELLED,
    },
    RequestState.PENDING_RESPONSE: {
        RequestState.RESPONDED,
        RequestState.ESCALATED,
        RequestState.TIMED_OUT,
        RequestState.CANCELLED,
    },
    RequestState.RESPONDED: {RequestState.DELIVERED},
    RequestState.ESCALATED: {
        RequestState.ROUTING,
        RequestState.TIMED_OUT,
        RequestState.CANCELLED,
    },
    RequestState.DELIVERED: set(),
    RequestState.TIMED_OUT: set(),
    RequestState.CANCELLED: set(),
}

TERMINAL_STATES = frozenset(s for s, targets in ALLOWED_TRANSITIONS.items() if not targets)

CANCELLABLE_STATES = frozenset(
    {
        RequestState.SUBMITTED,
        RequestState.ROUTING,
        RequestState.PENDING_RESPONSE,
        RequestState.ESCALATED,
    }
)


def can_transition(from_state: RequestState, to_state: RequestState) -> bool:
    return to_state in ALLOWED_TRANSITIONS.get(from_state, set())


def is_cancellable(state: RequestState) -> bool:
    return state in CANCELLABLE_STATES


def event_type_for(state: RequestState) -> str:
    return f"CR_{state.value}"


class TransitionEngine:
    def __init__(
        self,
        *,
        store: RequestStore,
        audit: AuditLog,
        fanout: BroadcastFanout,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.audit = audit
        self.fanout = fanout
        self._clock = clock

    def transition(
        self,
        request_id: str,
        from_state: RequestState,
        to_state: RequestState,
        *,
        actor: str,
        actor_type: ActorType,
        payload: dict[str, Any] | None = None,
        changes: dict[str, Any] | None = None,
    ) -> CoordinationRequest:
        """Move ``request_id`` from ``from_state`` to ``to_state``.

        Raises:
            InvalidTransition: the edge is not in :data:`ALLOWED_TRANSITIONS`.
            RequestNotFound: no such request.
            ConcurrentModification: the stored state was no longer ``from_state``.
            StorageFailure: the store failed. ``committed`` is set when only the
                audit append failed and the state change itself is durable.

        Returns the request as read back after the change.
        """

        if not can_transition(from_state, to_state):
            raise InvalidTransition(from_state.value, to_state.value)

        result = self.store.update_if_state(
            request_id,
            expected_state=from_state,
            new_state=to_state,
            updated_at=self._clock(),
            changes=changes,
        )
        if result.rowcount == 0 or result.updated_at is None:
            if self.store.get(request_id) is None:
                raise RequestNotFound(request_id)
            logger.info(
                "Transition lost compare-and-swap",
                extra={
                    "request_id": request_id,
                    "from_state": from_state.value,
                    "to_state": to_state.value,
                },
            )
            raise ConcurrentModification(request_id, from_state.value)

        logger.debug(
            "Transition applied",
            extra={
                "request_id": request_id,
                "from_state": from_state.value,
                "to_state": to_state.value,
                "actor": actor,
            },
        )

        try:
            self.audit.append(
                request_id=request_id,
                event_type=event_type_for(to_state),
                actor=actor,
                actor_type=actor_type,
                payload=payload,
                created_at=result.updated_at,
            )
        except StorageFailure as e:
            logger.exception(
                "Audit append failed after committed transition",
                extra={"request_id": request_id, "to_state": to_state.value},
            )
            raise StorageFailure(
                f"Transition {from_state.value} -> {to_state.value} for {request_id} "
                f"was applied but its audit event could not be written: {e}",
                committed=True,
            ) from e

        updated = self.store.get(request_id)
        if updated is None:
            raise RequestNotFound(request_id)

        self._publish(updated, to_state)
        return updated

    def _publish(self, request: CoordinationRequest, to_state: RequestState) -> None:
        event = {
            "event": "state_change",
            "request_id": request.request_id,
            "state": to_state.value,
            "agent_id": request.agent_id,
            "responder_id": request.responder_id,
        }
        try:
            self.fanout.publish(event)
        except Exception:
            logger.exception(
                "Fanout publish failed", extra={"request_id": request.request_id}
            )

    def read(
        self, request_id: str, *, reader: str, reader_type: ActorType
    ) -> CoordinationRequest:
        """Read one request, delivering it if a response is waiting.

        Observing RESPONDED triggers RESPONDED -> DELIVERED with the reader as
        actor. Losing that race to another reader is expected and silent: the
        previously observed request is returned unchanged.
        """

        request = self.store.get(request_id)
        if request is None:
            raise RequestNotFound(request_id)
        if request.state != RequestState.RESPONDED:
            return request

        try:
            return self.transition(
                request_id,
                RequestState.RESPONDED,
                RequestState.DELIVERED,
                actor=reader,
                actor_type=reader_type,
                changes={"delivered_at": self._clock()},
            )
        except ConcurrentModification:
            return request
