"""Entry points used by the API and CLI layers.

:class:`CoordinationService` wires the store, audit log, fanout, transition
engine, routing pipeline and timeout scheduler together and exposes the
operations agents and humans perform on a request.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any

from hcp_coordinator.coordinator.config import CoordinatorSettings
from hcp_coordinator.coordinator.lifecycle.errors import (
    InvalidTransition,
    RequestNotFound,
    StorageFailure,
)
from hcp_coordinator.coordinator.lifecycle.fanout import BroadcastFanout
from hcp_coordinator.coordinator.lifecycle.models import (
    ActorType,
    AuditEvent,
    CoordinationRequest,
    NewRequest,
    RequestState,
    utc_now,
)
from hcp_coordinator.coordinator.lifecycle.routing import RoutingPipeline
from hcp_coordinator.coordinator.lifecycle.scheduler import TimeoutScheduler
from hcp_coordinator.coordinator.lifecycle.state_machine import (
    TransitionEngine,
    event_type_for,
    is_cancellable,
)
from hcp_coordinator.coordinator.notify.base import NotificationAdapter
from hcp_coordinator.coordinator.notify.slack import SlackNotifier
from hcp_coordinator.coordinator.storage.audit_log import AuditLog, AuditQuery
from hcp_coordinator.coordinator.storage.database import Database, open_database
from hcp_coordinator.coordinator.storage.request_store import RequestFilters, RequestStore

logger = logging.getLogger(__name__)


class CoordinationService:
    def __init__(
        self,
        *,
        db: Database,
        adapters: Mapping[str, NotificationAdapter] | None = None,
        poll_interval_seconds: float = 10.0,
        scheduler_max_workers: int = 4,
        fanout: BroadcastFanout | None = None,
        clock: Callable[[], datetime] = utc_now,
        route_inline: bool = False,
    ) -> None:
        self.db = db
        self.store = RequestStore(db)
        self.audit = AuditLog(db)
        self.fanout = fanout or BroadcastFanout()
        self.engine = TransitionEngine(
            store=self.store, audit=self.audit, fanout=self.fanout, clock=clock
        )
        self.adapters = dict(adapters or {})
        self.routing = RoutingPipeline(engine=self.engine, adapters=self.adapters)
        self.scheduler = TimeoutScheduler(
            engine=self.engine,
            routing=self.routing,
            interval_seconds=poll_interval_seconds,
            max_workers=scheduler_max_workers,
            clock=clock,
        )
        self._clock = clock
        self._route_inline = route_inline

    @classmethod
    def from_settings(
        cls, settings: CoordinatorSettings, *, route_inline: bool = False
    ) -> CoordinationService:
        adapters: dict[str, NotificationAdapter] = {}
        if settings.slack_configured:
            adapters["slack"] = SlackNotifier(
                token=settings.slack_bot_token,
                base_url=settings.base_url,
                api_url=settings.slack_api_url,
            )
        db = open_database(settings.resolved_db_path, busy_timeout_ms=settings.busy_timeout_ms)
        return cls(
            db=db,
            adapters=adapters,
            poll_interval_seconds=settings.timeout_poll_interval_seconds,
            scheduler_max_workers=settings.scheduler_max_workers,
            route_inline=route_inline,
        )

    def close(self) -> None:
        self.scheduler.stop()
        for adapter in self.adapters.values():
            close = getattr(adapter, "close", None)
            if close is not None:
                close()
        self.db.close()

    # -- agent operations ----------------------------------------------------

    def submit(self, agent_id: str, new: NewRequest) -> tuple[CoordinationRequest, bool]:
        """Create a request in SUBMITTED and start routing it.

        Returns ``(request, created)``. ``created`` is false when the
        idempotency key matched an earlier submission, which is returned as-is.
        """

        if new.idempotency_key:
            existing = self.store.find_by_idempotency_key(new.idempotency_key)
            if existing is not None:
                return existing, False

        now = self._clock()
        request = CoordinationRequest(
            request_id=uuid.uuid4().hex,
            agent_id=agent_id,
            intent=new.intent,
            urgency=new.urgency,
            state=RequestState.SUBMITTED,
            context_package=new.context_package,
            response_schema=new.response_schema,
            timeout_policy=new.timeout_policy,
            routing_hints=new.routing_hints,
            trace_id=new.trace_id,
            idempotency_key=new.idempotency_key,
            responder_id=new.routing_hints.responder_id,
            submitted_at=now,
            updated_at=now,
            timeout_at=new.timeout_policy.deadline_from(now),
        )
        try:
            # The row and its CR_SUBMITTED event commit together or not at all.
            with self.db.transaction():
                self.store.insert(request)
                self.audit.append(
                    request_id=request.request_id,
                    event_type=event_type_for(RequestState.SUBMITTED),
                    actor=agent_id,
                    actor_type=ActorType.AGENT,
                    payload={"intent": request.intent.value, "urgency": request.urgency.value},
                    created_at=now,
                )
        except StorageFailure:
            # A concurrent submission with the same idempotency key won the insert.
            if new.idempotency_key:
                existing = self.store.find_by_idempotency_key(new.idempotency_key)
                if existing is not None:
                    return existing, False
            raise
        logger.info(
            "Request submitted",
            extra={"request_id": request.request_id, "agent_id": agent_id},
        )

        if self._route_inline:
            self.routing.route(request)
        else:
            self.routing.dispatch(request)
        return request, True

    def get(
        self, request_id: str, *, reader: str | None = None, reader_type: ActorType | None = None
    ) -> CoordinationRequest:
        """Read a request; a waiting response is delivered to the reader."""

        if reader is None:
            return self.engine.read(request_id, reader="system", reader_type=ActorType.SYSTEM)
        return self.engine.read(
            request_id, reader=reader, reader_type=reader_type or ActorType.AGENT
        )

    def list(self, filters: RequestFilters | None = None) -> list[CoordinationRequest]:
        return self.store.list(filters)

    def cancel(
        self, request_id: str, *, actor: str, actor_type: ActorType
    ) -> CoordinationRequest:
        current = self._require(request_id)
        if not is_cancellable(current.state):
            raise InvalidTransition(current.state.value, RequestState.CANCELLED.value)
        return self.engine.transition(
            request_id,
            current.state,
            RequestState.CANCELLED,
            actor=actor,
            actor_type=actor_type,
        )

    # -- human operations ----------------------------------------------------

    def respond(
        self, request_id: str, *, response_data: dict[str, Any], responded_by: str
    ) -> CoordinationRequest:
        current = self._require(request_id)
        if current.state != RequestState.PENDING_RESPONSE:
            raise InvalidTransition(current.state.value, RequestState.RESPONDED.value)
        return self.engine.transition(
            request_id,
            RequestState.PENDING_RESPONSE,
            RequestState.RESPONDED,
            actor=responded_by,
            actor_type=ActorType.HUMAN,
            payload={"response_data": response_data},
            changes={
                "response_data": response_data,
                "responded_by": responded_by,
                "responded_at": self._clock(),
            },
        )

    # -- audit ---------------------------------------------------------------

    def audit_trail(self, query: AuditQuery | None = None) -> list[AuditEvent]:
        return self.audit.query(query)

    def _require(self, request_id: str) -> CoordinationRequest:
        request = self.store.get(request_id)
        if request is None:
            raise RequestNotFound(request_id)
        return request
