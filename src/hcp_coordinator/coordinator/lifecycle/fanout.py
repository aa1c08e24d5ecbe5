"""Process-local broadcast of state changes to live subscribers.

This is a best-effort notification layer, not a source of truth: a subscriber
that misses an event reconciles by re-reading the request from the store.
"""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class SubscriberHandle(Protocol):
    """Transport for one subscriber. ``send`` raising means the transport is gone."""

    def send(self, event: dict[str, Any]) -> None: ...


class SubscriberGone(Exception):
    pass


class QueueHandle:
    """Bounded in-memory mailbox, drained by a streaming response.

    A full mailbox means the consumer stopped reading; the subscriber is then
    dropped rather than blocking the publisher.
    """

    def __init__(self, maxsize: int = 256) -> None:
        self._queue: queue.Queue[dict[str, Any]] = queue.Queue(maxsize=maxsize)

    def send(self, event: dict[str, Any]) -> None:
        try:
            self._queue.put_nowait(event)
        except queue.Full as e:
            raise SubscriberGone("subscriber mailbox is full") from e

    def get(self, timeout: float) -> dict[str, Any] | None:
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None


@dataclass(frozen=True, slots=True)
class Subscription:
    subscriber_id: str
    handle: SubscriberHandle
    agent_id: str | None = None
    responder_id: str | None = None

    def wants(self, event: dict[str, Any]) -> bool:
        if self.agent_id is not None and event.get("agent_id") != self.agent_id:
            return False
        if self.responder_id is not None and event.get("responder_id") != self.responder_id:
            return False
        return True


class BroadcastFanout:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscriptions: dict[str, Subscription] = {}

    def subscribe(
        self,
        subscriber_id: str,
        handle: SubscriberHandle,
        *,
        agent_id: str | None = None,
        responder_id: str | None = None,
    ) -> Subscription:
        subscription = Subscription(
            subscriber_id=subscriber_id,
            handle=handle,
            agent_id=agent_id or None,
            responder_id=responder_id or None,
        )
        with self._lock:
            self._subscriptions[subscriber_id] = subscription
        return subscription

    def unsubscribe(self, subscriber_id: str) -> None:
        with self._lock:
            self._subscriptions.pop(subscriber_id, None)

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def publish(self, event: dict[str, Any]) -> int:
        """Deliver ``event`` to every matching subscriber; return how many received it.

        A subscriber whose handle raises is removed and does not affect the others.
        """

        with self._lock:
            targets = list(self._subscriptions.values())

        delivered = 0
        for subscription in targets:
            if not subscription.wants(event):
                continue
            try:
                subscription.handle.send(event)
            except Exception:
                logger.info(
                    "Dropping subscriber after failed delivery",
                    extra={"subscriber_id": subscription.subscriber_id},
                )
                with self._lock:
                    # Only remove the exact registration that failed.
                    if self._subscriptions.get(subscription.subscriber_id) is subscription:
                        del self._subscriptions[subscription.subscriber_id]
                continue
            delivered += 1
        return delivered
