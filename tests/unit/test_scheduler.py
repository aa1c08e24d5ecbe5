"""Unit tests for timeout scanning and fallback policies."""

from __future__ import annotations

import time
from datetime import UTC, datetime, timedelta

import pytest

from hcp_coordinator.coordinator.lifecycle.models import (
    ActorType,
    FallbackPolicy,
    RequestState,
    utc_now,
)
from hcp_coordinator.coordinator.lifecycle.routing import RoutingPipeline
from hcp_coordinator.coordinator.lifecycle.scheduler import TimeoutScheduler
from hcp_coordinator.coordinator.storage.audit_log import AuditQuery

T0 = datetime(2026, 1, 1, 12, 0, 0, tzinfo=UTC)
AFTER_DEADLINE = T0 + timedelta(seconds=61)


@pytest.fixture
def scheduler(engine) -> TimeoutScheduler:
    return TimeoutScheduler(
        engine=engine,
        routing=RoutingPipeline(engine=engine),
        interval_seconds=0.05,
        max_workers=4,
    )


def _events(audit, request_id: str = "req-1"):
    return audit.query(AuditQuery(request_id=request_id))


def test_nothing_happens_before_the_deadline(scheduler, store, audit, request_factory) -> None:
    store.insert(request_factory())

    result = scheduler.run_once(now=T0 + timedelta(seconds=30))

    assert result.scanned == 0
    assert store.get("req-1").state == RequestState.PENDING_RESPONSE
    assert _events(audit) == []


@pytest.mark.parametrize(
    ("fallback", "decision", "responded_by"),
    [
        (FallbackPolicy.AUTO_APPROVE, "approved", "system:auto_approve"),
        (FallbackPolicy.AUTO_REJECT, "rejected", "system:auto_reject"),
    ],
)
def test_auto_fallbacks_respond_on_behalf_of_the_human(
    scheduler, store, audit, request_factory, fallback, decision, responded_by
) -> None:
    store.insert(request_factory(fallback=fallback))

    result = scheduler.run_once(now=AFTER_DEADLINE)

    assert (result.scanned, result.applied, result.failed) == (1, 1, 0)
    request = store.get("req-1")
    assert request.state == RequestState.RESPONDED
    assert request.response_data == {"decision": decision, "auto": True}
    assert request.responded_by == responded_by
    assert request.responded_at == AFTER_DEADLINE
    events = _events(audit)
    assert [e.event_type for e in events] == ["CR_RESPONDED"]
    assert events[0].actor_type == ActorType.SYSTEM
    assert events[0].payload == {"fallback": fallback.value, "auto": True}


@pytest.mark.parametrize(
    "fallback", [FallbackPolicy.BLOCK, FallbackPolicy.FAIL, FallbackPolicy.SKIP]
)
def test_terminal_fallbacks_time_out_and_keep_the_policy(
    scheduler, store, audit, request_factory, fallback
) -> None:
    store.insert(request_factory(fallback=fallback))

    scheduler.run_once(now=AFTER_DEADLINE)

    request = store.get("req-1")
    assert request.state == RequestState.TIMED_OUT
    assert request.timeout_policy.fallback == fallback
    events = _events(audit)
    assert [e.event_type for e in events] == ["CR_TIMED_OUT"]
    assert events[0].payload == {"fallback": fallback.value}


def test_escalate_without_target_times_out(scheduler, store, audit, request_factory) -> None:
    store.insert(request_factory(fallback=FallbackPolicy.ESCALATE))

    scheduler.run_once(now=AFTER_DEADLINE)

    assert store.get("req-1").state == RequestState.TIMED_OUT
    events = _events(audit)
    assert [e.event_type for e in events] == ["CR_TIMED_OUT"]
    assert events[0].payload == {"fallback": "ESCALATE", "reason": "no_escalation_target"}


def test_escalate_reroutes_to_the_escalation_responder(
    scheduler, store, audit, request_factory
) -> None:
    store.insert(
        request_factory(fallback=FallbackPolicy.ESCALATE, escalation_responder_id="lead-2")
    )

    scheduler.run_once(now=AFTER_DEADLINE)

    request = store.get("req-1")
    assert request.state == RequestState.PENDING_RESPONSE
    assert request.responder_id == "lead-2"
    assert request.timeout_at == AFTER_DEADLINE + timedelta(seconds=60)
    assert request.timeout_policy.escalation_responder_id is None
    events = _events(audit)
    assert [e.event_type for e in events] == [
        "CR_ESCALATED",
        "CR_ROUTING",
        "CR_PENDING_RESPONSE",
    ]
    assert events[0].payload == {"fallback": "ESCALATE", "escalation_responder_id": "lead-2"}


def test_second_expiry_after_escalation_times_out(
    scheduler, store, audit, request_factory
) -> None:
    store.insert(
        request_factory(fallback=FallbackPolicy.ESCALATE, escalation_responder_id="lead-2")
    )

    scheduler.run_once(now=AFTER_DEADLINE)
    assert scheduler.run_once(now=AFTER_DEADLINE + timedelta(seconds=30)).scanned == 0
    scheduler.run_once(now=AFTER_DEADLINE + timedelta(seconds=61))

    assert store.get("req-1").state == RequestState.TIMED_OUT
    assert [e.event_type for e in _events(audit)][-1] == "CR_TIMED_OUT"


def test_escalated_fanout_event_carries_the_new_responder(
    scheduler, store, fanout, request_factory, recording_handle
) -> None:
    store.insert(
        request_factory(fallback=FallbackPolicy.ESCALATE, escalation_responder_id="lead-2")
    )
    fanout.subscribe("lead-2", recording_handle, responder_id="lead-2")

    scheduler.run_once(now=AFTER_DEADLINE)

    assert [e["state"] for e in recording_handle.events] == [
        "ESCALATED",
        "ROUTING",
        "PENDING_RESPONSE",
    ]


def test_one_failing_request_does_not_block_the_others(
    scheduler, store, request_factory
) -> None:
    # ESCALATED -> RESPONDED is not an edge, so auto-approving this one fails.
    store.insert(
        request_factory(
            request_id="broken",
            state=RequestState.ESCALATED,
            fallback=FallbackPolicy.AUTO_APPROVE,
        )
    )
    store.insert(request_factory(request_id="fine", fallback=FallbackPolicy.AUTO_APPROVE))

    result = scheduler.run_once(now=AFTER_DEADLINE)

    assert (result.scanned, result.applied, result.failed) == (2, 1, 1)
    assert store.get("fine").state == RequestState.RESPONDED
    assert store.get("broken").state == RequestState.ESCALATED


def test_fallback_loses_to_a_concurrent_cancel(
    scheduler, engine, store, audit, request_factory
) -> None:
    stale = request_factory(fallback=FallbackPolicy.AUTO_APPROVE)
    store.insert(stale)
    engine.transition(
        "req-1",
        RequestState.PENDING_RESPONSE,
        RequestState.CANCELLED,
        actor="agent-1",
        actor_type=ActorType.AGENT,
    )

    assert scheduler._process(stale, AFTER_DEADLINE) is False

    assert store.get("req-1").state == RequestState.CANCELLED
    assert [e.event_type for e in _events(audit)] == ["CR_CANCELLED"]


def test_escalation_chain_stops_when_cancelled_after_escalating(
    scheduler, engine, store, audit, fanout, request_factory
) -> None:
    request = request_factory(fallback=FallbackPolicy.ESCALATE, escalation_responder_id="lead-2")
    store.insert(request)

    class CancelOnEscalated:
        def send(self, event):
            if event["state"] == "ESCALATED":
                engine.transition(
                    event["request_id"],
                    RequestState.ESCALATED,
                    RequestState.CANCELLED,
                    actor="agent-1",
                    actor_type=ActorType.AGENT,
                )

    fanout.subscribe("canceller", CancelOnEscalated())

    assert scheduler._process(request, AFTER_DEADLINE) is False

    assert store.get("req-1").state == RequestState.CANCELLED
    assert [e.event_type for e in _events(audit)] == ["CR_ESCALATED", "CR_CANCELLED"]


def test_overlapping_tick_is_skipped(scheduler, store, request_factory) -> None:
    store.insert(request_factory())
    scheduler._tick_lock.acquire()
    try:
        result = scheduler.run_once(now=AFTER_DEADLINE)
    finally:
        scheduler._tick_lock.release()

    assert result.skipped is True
    assert store.get("req-1").state == RequestState.PENDING_RESPONSE


def test_background_loop_applies_fallbacks(scheduler, store, request_factory) -> None:
    store.insert(
        request_factory(
            fallback=FallbackPolicy.AUTO_REJECT,
            submitted_at=utc_now() - timedelta(hours=1),
        )
    )

    scheduler.start()
    try:
        assert scheduler.running
        deadline = time.monotonic() + 5
        while time.monotonic() < deadline:
            if store.get("req-1").state == RequestState.RESPONDED:
                break
            time.sleep(0.02)
    finally:
        scheduler.stop(timeout=5)

    assert not scheduler.running
    assert store.get("req-1").state == RequestState.RESPONDED
