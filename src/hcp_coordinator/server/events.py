"""Server-sent events over the broadcast fanout."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

from hcp_coordinator.coordinator.lifecycle.fanout import BroadcastFanout, QueueHandle

logger = logging.getLogger(__name__)

KEEPALIVE = ": keepalive\n\n"


def format_sse(event: str, data: dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(data, ensure_ascii=False, default=str)}\n\n"


async def event_stream(
    fanout: BroadcastFanout,
    subscriber_id: str,
    handle: QueueHandle,
    *,
    keepalive_seconds: float,
    is_disconnected: Callable[[], Awaitable[bool]] | None = None,
    poll_seconds: float = 1.0,
) -> AsyncIterator[str]:
    """Yield SSE frames for one subscriber until the client goes away.

    The subscription must already be registered. It is removed as soon as
    ``is_disconnected`` reports the client gone, or when the generator is
    closed or cancelled.
    """

    poll_seconds = min(poll_seconds, keepalive_seconds)
    idle = 0.0
    try:
        yield format_sse("connected", {"subscriber_id": subscriber_id})
        while True:
            if is_disconnected is not None and await is_disconnected():
                return
            event = await asyncio.to_thread(handle.get, poll_seconds)
            if event is None:
                idle += poll_seconds
                if idle >= keepalive_seconds:
                    idle = 0.0
                    yield KEEPALIVE
                continue
            idle = 0.0
            yield format_sse(str(event.get("event", "message")), event)
    finally:
        fanout.unsubscribe(subscriber_id)
        logger.debug("Event stream closed", extra={"subscriber_id": subscriber_id})
