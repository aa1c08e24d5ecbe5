"""Append-only audit trail.

Events are never updated or deleted. Storage errors propagate to the caller: a
missing audit record is a correctness problem, not a liveness one.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from hcp_coordinator.coordinator.lifecycle.models import (
    ActorType,
    AuditEvent,
    from_iso,
    to_iso,
    utc_now,
)
from hcp_coordinator.coordinator.storage.database import Database


@dataclass(frozen=True, slots=True)
class AuditQuery:
    request_id: str | None = None
    event_type: str | None = None
    limit: int = 100
    offset: int = 0


class AuditLog:
    def __init__(self, db: Database) -> None:
        self._db = db

    def append(
        self,
        *,
        request_id: str,
        event_type: str,
        actor: str,
        actor_type: ActorType,
        payload: dict[str, Any] | None = None,
        created_at: datetime | None = None,
    ) -> AuditEvent:
        """Insert one event.

        Transition events pass the ``updated_at`` written with the state change
        as ``created_at`` so that per-request ordering follows the store's write
        order even when two appends land out of order.
        """

        event = AuditEvent(
            event_id=uuid.uuid4().hex,
            request_id=request_id,
            event_type=event_type,
            actor=actor,
            actor_type=actor_type,
            payload=payload or {},
            created_at=created_at or utc_now(),
        )
        self._db.execute(
            "INSERT INTO audit_events "
            "(event_id, request_id, event_type, actor, actor_type, payload, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (
                event.event_id,
                event.request_id,
                event.event_type,
                event.actor,
                event.actor_type.value,
                json.dumps(event.payload, ensure_ascii=False, default=str),
                to_iso(event.created_at),
            ),
        )
        return event

    def query(self, query: AuditQuery | None = None) -> list[AuditEvent]:
        """Events matching the filters, oldest first.

        There is no cap beyond ``limit``; keeping scans bounded is the caller's job.
        """

        query = query or AuditQuery()
        conditions: list[str] = []
        params: list[Any] = []
        if query.request_id:
            conditions.append("request_id = ?")
            params.append(query.request_id)
        if query.event_type:
            conditions.append("event_type = ?")
            params.append(query.event_type)

        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        rows = self._db.fetchall(
            f"SELECT * FROM audit_events {where} ORDER BY created_at ASC, seq ASC LIMIT ? OFFSET ?",
            (*params, query.limit, query.offset),
        )
        return [
            AuditEvent(
                event_id=row["event_id"],
                request_id=row["request_id"],
                event_type=row["event_type"],
                actor=row["actor"],
                actor_type=ActorType(row["actor_type"]),
                payload=json.loads(row["payload"]),
                created_at=from_iso(row["created_at"]),
            )
            for row in rows
        ]
