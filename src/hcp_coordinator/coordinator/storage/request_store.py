"""Row storage for coordination requests.

The only write that changes an existing row is :meth:`RequestStore.update_if_state`,
a compare-and-swap on ``state``. It is the single synchronization primitive the
lifecycle relies on: two writers racing from the same observed state cannot both
succeed.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from pydantic import BaseModel

from hcp_coordinator.coordinator.lifecycle.models import (
    CoordinationRequest,
    RequestState,
    from_iso,
    to_iso,
)
from hcp_coordinator.coordinator.storage.database import Database

_JSON_COLUMNS = {
    "context_package",
    "response_schema",
    "timeout_policy",
    "routing_hints",
    "response_data",
}
_DATETIME_COLUMNS = {"responded_at", "submitted_at", "updated_at", "timeout_at", "delivered_at"}

# Columns a transition may set alongside the state change.
MUTABLE_COLUMNS = {
    "responder_id",
    "timeout_policy",
    "timeout_at",
    "response_data",
    "responded_by",
    "responded_at",
    "delivered_at",
}

_COLUMNS = (
    "request_id",
    "agent_id",
    "intent",
    "urgency",
    "state",
    "context_package",
    "response_schema",
    "timeout_policy",
    "routing_hints",
    "trace_id",
    "idempotency_key",
    "responder_id",
    "response_data",
    "responded_by",
    "responded_at",
    "submitted_at",
    "updated_at",
    "timeout_at",
    "delivered_at",
)

ACTIVE_DEADLINE_STATES = (RequestState.PENDING_RESPONSE, RequestState.ESCALATED)


def _encode(column: str, value: Any) -> Any:
    if value is None:
        return None
    if column in _JSON_COLUMNS:
        if isinstance(value, BaseModel):
            value = value.model_dump(mode="json", exclude_none=True)
        return json.dumps(value, ensure_ascii=False)
    if column in _DATETIME_COLUMNS:
        return to_iso(value)
    if isinstance(value, Enum):
        return value.value
    return value


def _decode_row(row: dict[str, Any]) -> CoordinationRequest:
    data: dict[str, Any] = {}
    for key, value in row.items():
        if value is not None and key in _JSON_COLUMNS:
            data[key] = json.loads(value)
        else:
            data[key] = value
    return CoordinationRequest.model_validate(data)


@dataclass(frozen=True, slots=True)
class ConditionalUpdate:
    rowcount: int
    updated_at: datetime | None


@dataclass(frozen=True, slots=True)
class RequestFilters:
    agent_id: str | None = None
    state: RequestState | None = None
    intent: str | None = None
    urgency: str | None = None
    responder_id: str | None = None
    limit: int = 50
    offset: int = 0


class RequestStore:
    def __init__(self, db: Database) -> None:
        self._db = db

    def insert(self, request: CoordinationRequest) -> None:
        values = [_encode(col, getattr(request, col)) for col in _COLUMNS]
        placeholders = ", ".join("?" for _ in _COLUMNS)
        self._db.execute(
            f"INSERT INTO coordination_requests ({', '.join(_COLUMNS)}) VALUES ({placeholders})",
            values,
        )

    def get(self, request_id: str) -> CoordinationRequest | None:
        row = self._db.fetchone(
            "SELECT * FROM coordination_requests WHERE request_id = ?", (request_id,)
        )
        return _decode_row(row) if row is not None else None

    def find_by_idempotency_key(self, key: str) -> CoordinationRequest | None:
        row = self._db.fetchone(
            "SELECT * FROM coordination_requests WHERE idempotency_key = ?", (key,)
        )
        return _decode_row(row) if row is not None else None

    def list(self, filters: RequestFilters | None = None) -> list[CoordinationRequest]:
        filters = filters or RequestFilters()
        conditions: list[str] = []
        params: list[Any] = []
        for column in ("agent_id", "state", "intent", "urgency", "responder_id"):
            value = getattr(filters, column)
            if value is None:
                continue
            conditions.append(f"{column} = ?")
            params.append(value.value if isinstance(value, Enum) else value)

        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        rows = self._db.fetchall(
            f"SELECT * FROM coordination_requests {where} "
            "ORDER BY submitted_at DESC LIMIT ? OFFSET ?",
            (*params, filters.limit, filters.offset),
        )
        return [_decode_row(r) for r in rows]

    def scan_expired(self, now: datetime) -> list[CoordinationRequest]:
        """Requests awaiting a human whose deadline has passed, oldest deadline first."""

        rows = self._db.fetchall(
            "SELECT * FROM coordination_requests "
            "WHERE state IN (?, ?) AND timeout_at <= ? ORDER BY timeout_at ASC",
            (*(s.value for s in ACTIVE_DEADLINE_STATES), to_iso(now)),
        )
        return [_decode_row(r) for r in rows]

    def update_if_state(
        self,
        request_id: str,
        *,
        expected_state: RequestState,
        new_state: RequestState,
        updated_at: datetime,
        changes: dict[str, Any] | None = None,
    ) -> ConditionalUpdate:
        """Apply ``new_state`` (plus ``changes``) iff the row is still in ``expected_state``.

        ``rowcount`` is 1 on success and 0 when the row is missing or another
        writer got there first. ``updated_at`` is bumped by one microsecond when
        the clock did not advance past the stored value; the value actually
        written is returned.
        """

        changes = dict(changes or {})
        unknown = set(changes) - MUTABLE_COLUMNS
        if unknown:
            raise ValueError(f"Columns cannot be changed by a transition: {sorted(unknown)}")

        with self._db.transaction() as conn:
            row = conn.execute(
                "SELECT updated_at FROM coordination_requests WHERE request_id = ?",
                (request_id,),
            ).fetchone()
            if row is None:
                return ConditionalUpdate(rowcount=0, updated_at=None)
            previous = from_iso(row["updated_at"])
            if updated_at <= previous:
                updated_at = previous + timedelta(microseconds=1)

            assignments = ["state = ?", "updated_at = ?"]
            params: list[Any] = [new_state.value, to_iso(updated_at)]
            for column, value in changes.items():
                assignments.append(f"{column} = ?")
                params.append(_encode(column, value))
            params.extend([request_id, expected_state.value])

            cursor = conn.execute(
                f"UPDATE coordination_requests SET {', '.join(assignments)} "
                "WHERE request_id = ? AND state = ?",
                params,
            )
            if cursor.rowcount == 0:
                return ConditionalUpdate(rowcount=0, updated_at=None)
            return ConditionalUpdate(rowcount=cursor.rowcount, updated_at=updated_at)
