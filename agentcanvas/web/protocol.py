"""SSE wire format.

Every event is sent as

    id: <int>
    event: <type>
    data: {"id", "type", "session_id", "ts", "payload"}

`status` payloads are full session snapshots carrying a `revision`; clients keep
the highest revision per session and ignore older or repeated ones.
"""

from __future__ import annotations

import json
import time
from enum import Enum
from typing import Any


class EventType(str, Enum):
    CONNECTED = "connected"
    STATUS = "status"
    OUTPUT = "output"
    REMOVED = "removed"
    HEARTBEAT = "heartbeat"


def envelope(
    type: str,
    *,
    session_id: str = "",
    payload: dict[str, Any] | None = None,
    id: int = 0,
) -> dict[str, Any]:
    return {
        "id": id,
        "type": type,
        "session_id": session_id,
        "ts": time.time(),
        "payload": payload or {},
    }


def format_sse(event: dict[str, Any]) -> str:
    data = json.dumps(event, ensure_ascii=False)
    if event.get("id"):
        return f"id: {event['id']}\nevent: {event['type']}\ndata: {data}\n\n"
    return f"event: {event['type']}\ndata: {data}\n\n"
