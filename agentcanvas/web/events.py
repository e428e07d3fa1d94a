"""In-memory event hub for SSE status and output streaming."""

from __future__ import annotations

import asyncio
import itertools
from collections import deque
from collections.abc import AsyncIterator, Callable
from typing import Any

from agentcanvas.web.protocol import EventType, envelope, format_sse


class EventHub:
    """Bounded event log + pub/sub.

    Events get a process-wide increasing integer id so a reconnecting client can
    ask for everything after the last id it saw. Publishing never waits on
    subscribers: it appends and notifies, nothing more.
    """

    def __init__(self, max_events: int = 5000):
        self._events: deque[dict[str, Any]] = deque(maxlen=max_events)
        self._ids = itertools.count(1)
        self._cond = asyncio.Condition()

    @property
    def latest_id(self) -> int:
        return self._events[-1]["id"] if self._events else 0

    async def publish(self, session_id: str, type: str, payload: dict[str, Any]) -> dict[str, Any]:
        event = envelope(type, session_id=session_id, payload=payload, id=next(self._ids))
        async with self._cond:
            self._events.append(event)
            self._cond.notify_all()
        return event

    def get_since(self, session_id: str | None = None, since_id: int | None = None) -> list[dict[str, Any]]:
        """Events after `since_id` (exclusive), optionally for one session."""
        last = since_id or 0
        return [
            e
            for e in list(self._events)
            if e["id"] > last and (session_id is None or e["session_id"] == session_id)
        ]

    async def wait_for_new(self, timeout_s: float = 15.0) -> bool:
        try:
            async with self._cond:
                await asyncio.wait_for(self._cond.wait(), timeout=timeout_s)
            return True
        except asyncio.TimeoutError:
            return False


async def sse_stream(
    request: Any,
    hub: EventHub,
    current: Callable[[], list[dict[str, Any]]],
    *,
    session_id: str | None = None,
    since: int | None = None,
    poll_s: float = 1.0,
    heartbeat_s: float = 15.0,
) -> AsyncIterator[str]:
    """Yield SSE frames for one client until it disconnects.

    `current` returns the live status snapshots. After every wait the stream
    compares them with the revisions it already sent and resends any the push
    path missed; a status event whose revision was already sent is dropped.
    """
    loop = asyncio.get_running_loop()
    last_id = hub.latest_id if since is None else since
    sent: dict[str, int] = {}

    def _unseen(snap: dict[str, Any]) -> bool:
        if sent.get(snap["session_id"]) == snap["revision"]:
            return False
        sent[snap["session_id"]] = snap["revision"]
        return True

    yield format_sse(
        envelope(EventType.CONNECTED.value, session_id=session_id or "", payload={"latest_id": hub.latest_id})
    )

    # backlog (reconnect)
    if since is not None:
        for item in hub.get_since(session_id, last_id):
            last_id = item["id"]
            if item["type"] == EventType.STATUS.value:
                sent[item["session_id"]] = item["payload"]["revision"]
            yield format_sse(item)

    for snap in current():
        if _unseen(snap):
            yield format_sse(envelope(EventType.STATUS.value, session_id=snap["session_id"], payload=snap))

    last_beat = loop.time()
    while True:
        if await request.is_disconnected():
            break

        await hub.wait_for_new(timeout_s=poll_s)

        for item in hub.get_since(session_id, last_id):
            last_id = item["id"]
            if item["type"] == EventType.STATUS.value:
                rev = item["payload"]["revision"]
                if rev <= sent.get(item["session_id"], -1):
                    continue
                sent[item["session_id"]] = rev
            yield format_sse(item)

        # reconciliation read
        for snap in current():
            if _unseen(snap):
                yield format_sse(envelope(EventType.STATUS.value, session_id=snap["session_id"], payload=snap))

        if loop.time() - last_beat >= heartbeat_s:
            last_beat = loop.time()
            yield format_sse(envelope(EventType.HEARTBEAT.value, session_id=session_id or ""))
