"""Drive a freshly submitted request to PENDING_RESPONSE and alert the responder."""

from __future__ import annotations

import logging
import threading
from collections.abc import Mapping

from hcp_coordinator.coordinator.lifecycle.errors import (
    ConcurrentModification,
    InvalidTransition,
    NotificationAdapterFailure,
    RequestNotFound,
)
from hcp_coordinator.coordinator.lifecycle.models import (
    ActorType,
    CoordinationRequest,
    RequestState,
)
from hcp_coordinator.coordinator.lifecycle.state_machine import TransitionEngine
from hcp_coordinator.coordinator.notify.base import NotificationAdapter

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"


class RoutingPipeline:
    def __init__(
        self,
        *,
        engine: TransitionEngine,
        adapters: Mapping[str, NotificationAdapter] | None = None,
    ) -> None:
        self.engine = engine
        self._adapters = dict(adapters or {})

    def dispatch(self, request: CoordinationRequest) -> threading.Thread:
        """Run :meth:`route` in the background and return immediately."""

        thread = threading.Thread(
            target=self._route_logged,
            name=f"route-{request.request_id}",
            daemon=True,
            args=(request,),
        )
        thread.start()
        return thread

    def _route_logged(self, request: CoordinationRequest) -> None:
        try:
            self.route(request)
        except Exception:
            logger.exception("Routing failed", extra={"request_id": request.request_id})

    def enter_pending(
        self,
        request_id: str,
        *,
        responder_id: str,
        channel: str | None = None,
        from_state: RequestState = RequestState.SUBMITTED,
    ) -> CoordinationRequest:
        """``from_state`` -> ROUTING -> PENDING_RESPONSE, as two audited transitions."""

        self.engine.transition(
            request_id,
            from_state,
            RequestState.ROUTING,
            actor=SYSTEM_ACTOR,
            actor_type=ActorType.SYSTEM,
            payload={"responder_id": responder_id},
        )
        payload: dict[str, object] = {"responder_id": responder_id}
        if channel is not None:
            payload = {"channel": channel, **payload}
        return self.engine.transition(
            request_id,
            RequestState.ROUTING,
            RequestState.PENDING_RESPONSE,
            actor=SYSTEM_ACTOR,
            actor_type=ActorType.SYSTEM,
            payload=payload,
        )

    def route(self, request: CoordinationRequest) -> CoordinationRequest | None:
        """Returns the request once awaiting a response, or ``None`` if routing was abandoned.

        A lost transition (typically a concurrent cancel) ends routing
        silently: cancellation takes precedence. Storage failures propagate.
        """

        hints = request.routing_hints
        try:
            pending = self.enter_pending(
                request.request_id, responder_id=hints.responder_id, channel=hints.channel
            )
        except (ConcurrentModification, InvalidTransition, RequestNotFound) as e:
            logger.info(
                "Routing abandoned",
                extra={"request_id": request.request_id, "reason": type(e).__name__},
            )
            return None

        self._notify(pending)
        return pending

    def _notify(self, request: CoordinationRequest) -> None:
        adapter = self._adapters.get(request.routing_hints.channel)
        if adapter is None:
            return
        try:
            details = adapter.notify(request)
        except NotificationAdapterFailure:
            logger.warning(
                "Notification failed; request stays pending",
                exc_info=True,
                extra={"request_id": request.request_id, "channel": adapter.channel},
            )
            return
        except Exception:
            logger.exception(
                "Notification adapter crashed; request stays pending",
                extra={"request_id": request.request_id, "channel": adapter.channel},
            )
            return
        if details is None:
            return

        self.engine.audit.append(
            request_id=request.request_id,
            event_type=f"{adapter.channel.upper()}_NOTIFIED",
            actor=SYSTEM_ACTOR,
            actor_type=ActorType.SYSTEM,
            payload=dict(details),
        )
