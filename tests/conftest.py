"""Test configuration and fixtures."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import pytest

from hcp_coordinator.coordinator.lifecycle.fanout import BroadcastFanout
from hcp_coordinator.coordinator.lifecycle.models import (
    CoordinationRequest,
    FallbackPolicy,
    Intent,
    NewRequest,
    RequestState,
    Urgency,
)
from hcp_coordinator.coordinator.lifecycle.service import CoordinationService
from hcp_coordinator.coordinator.lifecycle.state_machine import TransitionEngine
from hcp_coordinator.coordinator.storage.audit_log import AuditLog
from hcp_coordinator.coordinator.storage.database import Database, open_database
from hcp_coordinator.coordinator.storage.request_store import RequestStore

T0 = datetime(2026, 1, 1, 12, 0, 0, tzinfo=UTC)


class RecordingHandle:
    """Subscriber handle that keeps every event it receives."""

    def __init__(self) -> None:
        self.events: list[dict[str, Any]] = []

    def send(self, event: dict[str, Any]) -> None:
        self.events.append(event)


class BrokenHandle:
    def __init__(self) -> None:
        self.calls = 0

    def send(self, event: dict[str, Any]) -> None:
        self.calls += 1
        raise ConnectionError("client went away")


def new_request_payload(**overrides: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "intent": "APPROVAL",
        "urgency": "HIGH",
        "context_package": {"summary": "Deploy release 1.4 to production?"},
        "timeout_policy": {"timeout_seconds": 300, "fallback": "AUTO_REJECT"},
        "routing_hints": {"responder_id": "lead-1"},
    }
    payload.update(overrides)
    return payload


def make_new_request(**overrides: Any) -> NewRequest:
    return NewRequest.model_validate(new_request_payload(**overrides))


def make_request(
    *,
    request_id: str = "req-1",
    state: RequestState = RequestState.PENDING_RESPONSE,
    fallback: FallbackPolicy = FallbackPolicy.AUTO_REJECT,
    escalation_responder_id: str | None = None,
    timeout_seconds: int = 60,
    submitted_at: datetime = T0,
    agent_id: str = "agent-1",
    responder_id: str = "lead-1",
) -> CoordinationRequest:
    policy: dict[str, Any] = {"timeout_seconds": timeout_seconds, "fallback": fallback}
    if escalation_responder_id is not None:
        policy["escalation_responder_id"] = escalation_responder_id
    request = CoordinationRequest.model_validate(
        {
            "request_id": request_id,
            "agent_id": agent_id,
            "intent": Intent.APPROVAL,
            "urgency": Urgency.HIGH,
            "state": state,
            "context_package": {"summary": "Ship it?"},
            "timeout_policy": policy,
            "routing_hints": {"responder_id": responder_id},
            "responder_id": responder_id,
            "submitted_at": submitted_at,
            "updated_at": submitted_at,
            "timeout_at": submitted_at,
        }
    )
    return request.model_copy(
        update={"timeout_at": request.timeout_policy.deadline_from(submitted_at)}
    )


@pytest.fixture
def db(tmp_path: Path) -> Iterator[Database]:
    """Provide a fresh on-disk SQLite database."""
    database = open_database(tmp_path / "hcp.db")
    yield database
    database.close()


@pytest.fixture
def store(db: Database) -> RequestStore:
    return RequestStore(db)


@pytest.fixture
def audit(db: Database) -> AuditLog:
    return AuditLog(db)


@pytest.fixture
def fanout() -> BroadcastFanout:
    return BroadcastFanout()


@pytest.fixture
def engine(store: RequestStore, audit: AuditLog, fanout: BroadcastFanout) -> TransitionEngine:
    return TransitionEngine(store=store, audit=audit, fanout=fanout)


@pytest.fixture
def service(db: Database, fanout: BroadcastFanout) -> Iterator[CoordinationService]:
    """Provide a service that routes synchronously, without any notification adapter."""
    svc = CoordinationService(db=db, fanout=fanout, route_inline=True)
    yield svc
    svc.scheduler.stop()


@pytest.fixture
def request_factory():
    """Build stored-shape requests (defaults: PENDING_RESPONSE, AUTO_REJECT, deadline T0+60s)."""
    return make_request


@pytest.fixture
def new_request_factory():
    return make_new_request


@pytest.fixture
def payload_factory():
    """Build JSON bodies for ``POST /v1/requests``."""
    return new_request_payload


@pytest.fixture
def recording_handle() -> RecordingHandle:
    return RecordingHandle()


@pytest.fixture
def broken_handle() -> BrokenHandle:
    return BrokenHandle()


@pytest.fixture
def restore_root_logger() -> Iterator[None]:
    """Undo `configure_logging` so later tests keep pytest's own handlers."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in list(root.handlers):
        root.removeHandler(handler)
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)
