from __future__ import annotations


class CoordinationError(Exception):
    """Base class for every error raised by the lifecycle core."""


class InvalidTransition(CoordinationError, ValueError):
    """The requested edge is not part of the lifecycle graph."""

    def __init__(self, from_state: str, to_state: str) -> None:
        super().__init__(f"Invalid state transition: {from_state} -> {to_state}")
        self.from_state = from_state
        self.to_state = to_state


class ConcurrentModification(CoordinationError):
    """The stored state no longer matched the expected one when the write landed.

    Callers must re-read the request before deciding what to do next.
    """

    def __init__(self, request_id: str, expected_state: str) -> None:
        super().__init__(
            f"Failed to transition request {request_id}: "
            f"state is no longer {expected_state} (changed concurrently)"
        )
        self.request_id = request_id
        self.expected_state = expected_state


class RequestNotFound(CoordinationError, LookupError):
    def __init__(self, request_id: str) -> None:
        super().__init__(f"Coordination request not found: {request_id}")
        self.request_id = request_id


class NotificationAdapterFailure(CoordinationError):
    def __init__(self, channel: str, message: str) -> None:
        super().__init__(f"{channel} notification failed: {message}")
        self.channel = channel


class StorageFailure(CoordinationError):
    """A read or write against the store failed.

    ``committed`` is true when the failure happened after the state change was
    already durable (for example the audit insert that follows a transition).
    """

    def __init__(self, message: str, *, committed: bool = False) -> None:
        super().__init__(message)
        self.committed = committed
