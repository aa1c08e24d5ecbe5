"""Unit tests for the routing pipeline."""

from __future__ import annotations

import logging

import pytest

from hcp_coordinator.coordinator.lifecycle.errors import NotificationAdapterFailure, StorageFailure
from hcp_coordinator.coordinator.lifecycle.models import (
    ActorType,
    RequestState,
    RoutingHints,
)
from hcp_coordinator.coordinator.lifecycle.routing import RoutingPipeline
from hcp_coordinator.coordinator.storage.audit_log import AuditQuery


class FakeSlack:
    channel = "slack"

    def __init__(self, *, result=None, error: Exception | None = None) -> None:
        self.result = result
        self.error = error
        self.notified: list[str] = []

    def notify(self, request):
        self.notified.append(request.request_id)
        if self.error is not None:
            raise self.error
        return self.result


def _slack_request(request_factory):
    request = request_factory(state=RequestState.SUBMITTED)
    return request.model_copy(
        update={
            "routing_hints": RoutingHints(
                responder_id="lead-1", channel="slack", slack_channel_id="C123"
            )
        }
    )


def _events(audit, request_id: str = "req-1") -> list[str]:
    return [e.event_type for e in audit.query(AuditQuery(request_id=request_id))]


def test_route_moves_request_to_pending_response(engine, store, audit, request_factory) -> None:
    request = request_factory(state=RequestState.SUBMITTED)
    store.insert(request)

    pending = RoutingPipeline(engine=engine).route(request)

    assert pending is not None
    assert pending.state == RequestState.PENDING_RESPONSE
    events = audit.query(AuditQuery(request_id="req-1"))
    assert [e.event_type for e in events] == ["CR_ROUTING", "CR_PENDING_RESPONSE"]
    assert all(e.actor_type == ActorType.SYSTEM for e in events)
    assert events[1].payload == {"channel": "portal", "responder_id": "lead-1"}


def test_successful_notification_is_audited(engine, store, audit, request_factory) -> None:
    request = _slack_request(request_factory)
    store.insert(request)
    slack = FakeSlack(result={"channel_id": "C123"})

    RoutingPipeline(engine=engine, adapters={"slack": slack}).route(request)

    assert slack.notified == ["req-1"]
    assert _events(audit) == ["CR_ROUTING", "CR_PENDING_RESPONSE", "SLACK_NOTIFIED"]
    notified = audit.query(AuditQuery(request_id="req-1", event_type="SLACK_NOTIFIED"))
    assert notified[0].payload == {"channel_id": "C123"}


def test_adapter_failure_leaves_request_pending(engine, store, audit, request_factory) -> None:
    request = _slack_request(request_factory)
    store.insert(request)
    slack = FakeSlack(error=NotificationAdapterFailure("slack", "channel_not_found"))

    pending = RoutingPipeline(engine=engine, adapters={"slack": slack}).route(request)

    assert pending.state == RequestState.PENDING_RESPONSE
    assert store.get("req-1").state == RequestState.PENDING_RESPONSE
    assert _events(audit) == ["CR_ROUTING", "CR_PENDING_RESPONSE"]


def test_adapter_crash_leaves_request_pending(engine, store, audit, request_factory) -> None:
    request = _slack_request(request_factory)
    store.insert(request)
    slack = FakeSlack(error=RuntimeError("unexpected"))

    RoutingPipeline(engine=engine, adapters={"slack": slack}).route(request)

    assert store.get("req-1").state == RequestState.PENDING_RESPONSE
    assert _events(audit) == ["CR_ROUTING", "CR_PENDING_RESPONSE"]


def test_adapter_returning_none_is_not_audited(engine, store, audit, request_factory) -> None:
    request = _slack_request(request_factory)
    store.insert(request)

    RoutingPipeline(engine=engine, adapters={"slack": FakeSlack(result=None)}).route(request)

    assert _events(audit) == ["CR_ROUTING", "CR_PENDING_RESPONSE"]


def test_unconfigured_channel_skips_notification(engine, store, audit, request_factory) -> None:
    request = _slack_request(request_factory)
    store.insert(request)

    pending = RoutingPipeline(engine=engine).route(request)

    assert pending.state == RequestState.PENDING_RESPONSE
    assert _events(audit) == ["CR_ROUTING", "CR_PENDING_RESPONSE"]


def test_routing_stops_when_request_was_cancelled_first(
    engine, store, audit, request_factory
) -> None:
    request = request_factory(state=RequestState.SUBMITTED)
    store.insert(request)
    engine.transition(
        "req-1",
        RequestState.SUBMITTED,
        RequestState.CANCELLED,
        actor="agent-1",
        actor_type=ActorType.AGENT,
    )
    slack = FakeSlack(result={"channel_id": "C123"})

    result = RoutingPipeline(engine=engine, adapters={"slack": slack}).route(request)

    assert result is None
    assert slack.notified == []
    assert store.get("req-1").state == RequestState.CANCELLED
    assert _events(audit) == ["CR_CANCELLED"]


def test_cancel_between_routing_steps_wins(engine, store, audit, fanout, request_factory) -> None:
    request = _slack_request(request_factory)
    store.insert(request)
    slack = FakeSlack(result={"channel_id": "C123"})

    class CancelOnRouting:
        def send(self, event):
            if event["state"] == "ROUTING":
                engine.transition(
                    event["request_id"],
                    RequestState.ROUTING,
                    RequestState.CANCELLED,
                    actor="agent-1",
                    actor_type=ActorType.AGENT,
                )

    fanout.subscribe("canceller", CancelOnRouting())

    result = RoutingPipeline(engine=engine, adapters={"slack": slack}).route(request)

    assert result is None
    assert slack.notified == []
    assert store.get("req-1").state == RequestState.CANCELLED
    assert _events(audit) == ["CR_ROUTING", "CR_CANCELLED"]


def test_dispatch_routes_in_the_background(engine, store, request_factory) -> None:
    request = request_factory(state=RequestState.SUBMITTED)
    store.insert(request)

    thread = RoutingPipeline(engine=engine).dispatch(request)
    thread.join(timeout=5)

    assert not thread.is_alive()
    assert store.get("req-1").state == RequestState.PENDING_RESPONSE


def test_enter_pending_from_escalated(engine, store, audit, request_factory) -> None:
    store.insert(request_factory(state=RequestState.ESCALATED, responder_id="lead-2"))

    pending = RoutingPipeline(engine=engine).enter_pending(
        "req-1", responder_id="lead-2", from_state=RequestState.ESCALATED
    )

    assert pending.state == RequestState.PENDING_RESPONSE
    events = audit.query(AuditQuery(request_id="req-1"))
    assert [e.event_type for e in events] == ["CR_ROUTING", "CR_PENDING_RESPONSE"]
    assert events[1].payload == {"responder_id": "lead-2"}


def test_storage_failure_during_routing_propagates(
    engine, store, audit, request_factory, monkeypatch
) -> None:
    request = request_factory(state=RequestState.SUBMITTED)
    store.insert(request)

    def failing_update(*args, **kwargs):
        raise StorageFailure("disk I/O error")

    monkeypatch.setattr(store, "update_if_state", failing_update)

    with pytest.raises(StorageFailure, match="disk I/O error"):
        RoutingPipeline(engine=engine).route(request)

    assert store.get("req-1").state == RequestState.SUBMITTED
    assert _events(audit) == []


def test_background_storage_failure_is_logged_with_traceback(
    engine, store, request_factory, monkeypatch, caplog
) -> None:
    request = request_factory(state=RequestState.SUBMITTED)
    store.insert(request)

    def failing_update(*args, **kwargs):
        raise StorageFailure("disk I/O error")

    monkeypatch.setattr(store, "update_if_state", failing_update)

    with caplog.at_level(logging.INFO, logger="hcp_coordinator"):
        RoutingPipeline(engine=engine)._route_logged(request)

    records = [r for r in caplog.records if r.name.endswith("routing")]
    assert [r.getMessage() for r in records] == ["Routing failed"]
    assert records[0].levelno == logging.ERROR
    assert records[0].exc_info is not None
    assert isinstance(records[0].exc_info[1], StorageFailure)
