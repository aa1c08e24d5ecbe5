"""Periodic timeout scan and fallback-policy application.

Deadlines are advisory: a request is acted on at the first tick after its
``timeout_at``, so the time to fallback is bounded by deadline plus one poll
interval.

Fallback dispatch is an explicit table with one handler per policy. BLOCK, FAIL
and SKIP share a handler: at the state-machine level all three end in
TIMED_OUT. The chosen policy stays on the record (``timeout_policy.fallback``)
and in the audit payload so consumers can still tell them apart.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime

from hcp_coordinator.coordinator.lifecycle.models import (
    ActorType,
    CoordinationRequest,
    FallbackPolicy,
    RequestState,
    utc_now,
)
from hcp_coordinator.coordinator.lifecycle.routing import SYSTEM_ACTOR, RoutingPipeline
from hcp_coordinator.coordinator.lifecycle.state_machine import TransitionEngine

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class TickResult:
    scanned: int
    applied: int
    failed: int
    skipped: bool = False


class TimeoutScheduler:
    def __init__(
        self,
        *,
        engine: TransitionEngine,
        routing: RoutingPipeline,
        interval_seconds: float,
        max_workers: int = 4,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.engine = engine
        self.routing = routing
        self.interval_seconds = interval_seconds
        self.max_workers = max_workers
        self._clock = clock

        self._tick_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

        self._handlers: dict[
            FallbackPolicy, Callable[[CoordinationRequest, datetime], None]
        ] = {
            FallbackPolicy.AUTO_APPROVE: self._auto_approve,
            FallbackPolicy.AUTO_REJECT: self._auto_reject,
            FallbackPolicy.ESCALATE: self._escalate,
            FallbackPolicy.BLOCK: self._time_out,
            FallbackPolicy.FAIL: self._time_out,
            FallbackPolicy.SKIP: self._time_out,
        }

    # -- lifecycle -----------------------------------------------------------

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="timeout-scheduler", daemon=True)
        self._thread.start()
        logger.info("Timeout scheduler started", extra={"interval_seconds": self.interval_seconds})

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        logger.info("Timeout scheduler stopped")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                self.run_once()
            except Exception:
                logger.exception("Timeout scheduler tick failed")

    # -- one tick ------------------------------------------------------------

    def run_once(self, now: datetime | None = None) -> TickResult:
        """Apply fallbacks to every expired request. Never overlaps a running tick."""

        if not self._tick_lock.acquire(blocking=False):
            logger.warning("Previous timeout scan still running; skipping tick")
            return TickResult(scanned=0, applied=0, failed=0, skipped=True)
        try:
            now = now or self._clock()
            expired = self.engine.store.scan_expired(now)
            if not expired:
                return TickResult(scanned=0, applied=0, failed=0)

            workers = max(1, min(self.max_workers, len(expired)))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="timeout") as pool:
                outcomes = list(pool.map(lambda r: self._process(r, now), expired))

            applied = sum(1 for ok in outcomes if ok)
            result = TickResult(
                scanned=len(expired), applied=applied, failed=len(expired) - applied
            )
            logger.debug(
                "Timeout scan complete",
                extra={
                    "scanned": result.scanned,
                    "applied": result.applied,
                    "failed": result.failed,
                },
            )
            return result
        finally:
            self._tick_lock.release()

    def _process(self, request: CoordinationRequest, now: datetime) -> bool:
        fallback = request.timeout_policy.fallback
        try:
            self._handlers[fallback](request, now)
        except Exception:
            logger.exception(
                "Failed to apply timeout fallback",
                extra={"request_id": request.request_id, "fallback": fallback.value},
            )
            return False
        return True

    # -- fallback handlers -----------------------------------------------------

    def _auto_approve(self, request: CoordinationRequest, now: datetime) -> None:
        self._auto_respond(request, now, decision="approved")

    def _auto_reject(self, request: CoordinationRequest, now: datetime) -> None:
        self._auto_respond(request, now, decision="rejected")

    def _auto_respond(self, request: CoordinationRequest, now: datetime, *, decision: str) -> None:
        policy_name = "auto_approve" if decision == "approved" else "auto_reject"
        self.engine.transition(
            request.request_id,
            request.state,
            RequestState.RESPONDED,
            actor=SYSTEM_ACTOR,
            actor_type=ActorType.SYSTEM,
            payload={"fallback": request.timeout_policy.fallback.value, "auto": True},
            changes={
                "response_data": {"decision": decision, "auto": True},
                "responded_by": f"system:{policy_name}",
                "responded_at": now,
            },
        )

    def _escalate(self, request: CoordinationRequest, now: datetime) -> None:
        policy = request.timeout_policy
        target = policy.escalation_responder_id
        if not target:
            self._time_out(request, now, reason="no_escalation_target")
            return

        # Three independent steps. A failure part-way leaves the request in the
        # last state reached, which is itself valid and audited.
        self.engine.transition(
            request.request_id,
            request.state,
            RequestState.ESCALATED,
            actor=SYSTEM_ACTOR,
            actor_type=ActorType.SYSTEM,
            payload={"fallback": policy.fallback.value, "escalation_responder_id": target},
            changes={
                "responder_id": target,
                "timeout_at": policy.deadline_from(now),
                "timeout_policy": policy.model_copy(update={"escalation_responder_id": None}),
            },
        )
        self.routing.enter_pending(
            request.request_id, responder_id=target, from_state=RequestState.ESCALATED
        )

    def _time_out(
        self, request: CoordinationRequest, now: datetime, *, reason: str | None = None
    ) -> None:
        payload: dict[str, object] = {"fallback": request.timeout_policy.fallback.value}
        if reason is not None:
            payload["reason"] = reason
        self.engine.transition(
            request.request_id,
            request.state,
            RequestState.TIMED_OUT,
            actor=SYSTEM_ACTOR,
            actor_type=ActorType.SYSTEM,
            payload=payload,
        )
