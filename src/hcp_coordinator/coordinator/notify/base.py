from __future__ import annotations

from typing import Protocol

from hcp_coordinator.coordinator.lifecycle.models import CoordinationRequest


class NotificationAdapter(Protocol):
    """Alerts a responder that a request is waiting for them.

    Implementations make network calls and may block; they signal failure with
    :class:`~hcp_coordinator.coordinator.lifecycle.errors.NotificationAdapterFailure`.
    ``notify`` returns the audit payload describing where the alert went, or
    ``None`` when nothing was sent.
    """

    channel: str

    def notify(self, request: CoordinationRequest) -> dict[str, object] | None: ...
