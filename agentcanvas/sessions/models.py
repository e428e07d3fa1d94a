"""Live session model and the status state machine."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_session_id() -> str:
    return f"ses_{uuid.uuid4().hex[:12]}"


def new_node_id() -> str:
    return f"node_{uuid.uuid4().hex[:12]}"


class SessionStatus(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    TOOL_CALLING = "tool_calling"
    WAITING_INPUT = "waiting_input"
    IDLE = "idle"
    DISCONNECTED = "disconnected"
    ERROR = "error"


S = SessionStatus

# Allowed status changes. `disconnected`, `error` and `idle` are reachable from
# everywhere; nothing is terminal, restart re-enters `starting`.
TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    S.IDLE: frozenset({S.STARTING, S.DISCONNECTED, S.ERROR}),
    S.STARTING: frozenset({S.RUNNING, S.IDLE, S.DISCONNECTED, S.ERROR}),
    S.RUNNING: frozenset({S.TOOL_CALLING, S.WAITING_INPUT, S.IDLE, S.DISCONNECTED, S.ERROR}),
    S.TOOL_CALLING: frozenset({S.RUNNING, S.WAITING_INPUT, S.IDLE, S.DISCONNECTED, S.ERROR}),
    S.WAITING_INPUT: frozenset({S.RUNNING, S.IDLE, S.DISCONNECTED, S.ERROR}),
    S.DISCONNECTED: frozenset({S.STARTING, S.IDLE, S.ERROR}),
    S.ERROR: frozenset({S.STARTING, S.IDLE, S.DISCONNECTED}),
}


def can_transition(current: SessionStatus, target: SessionStatus) -> bool:
    return target in TRANSITIONS[current]


@dataclass
class Session:
    """One logical agent run. `session_id` never changes; `node_id` is its canvas slot."""

    node_id: str
    session_id: str
    agent_id: str
    agent_name: str
    command: str
    cwd: str
    created_at: str = field(default_factory=_now_iso)
    status: SessionStatus = SessionStatus.IDLE
    original_cwd: str | None = None
    git_branch: str | None = None
    custom_name: str | None = None
    custom_color: str | None = None
    icon: str | None = None
    notes: str | None = None
    archived: bool = False
    ticket_id: str | None = None
    ticket_title: str | None = None
    is_restored: bool = False
    canvas_id: str | None = None
    agent_session_id: str | None = None

    current_tool: str | None = None
    tool_started_at: float | None = None
    long_running_tool: bool = False
    last_error: str | None = None
    last_input_at: float | None = None
    updated_at: float = field(default_factory=time.time)
    revision: int = 0

    @property
    def display_name(self) -> str:
        return self.custom_name or self.agent_name or "Agent"

    def touch(self) -> None:
        self.revision += 1
        self.updated_at = time.time()

    def status_snapshot(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "node_id": self.node_id,
            "status": self.status.value,
            "current_tool": self.current_tool,
            "long_running_tool": self.long_running_tool,
            "is_restored": self.is_restored,
            "last_error": self.last_error,
            "git_branch": self.git_branch,
            "revision": self.revision,
            "updated_at": self.updated_at,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "node_id": self.node_id,
            "session_id": self.session_id,
            "agent_id": self.agent_id,
            "agent_name": self.agent_name,
            "command": self.command,
            "cwd": self.cwd,
            "original_cwd": self.original_cwd,
            "git_branch": self.git_branch,
            "created_at": self.created_at,
            "status": self.status.value,
            "custom_name": self.custom_name,
            "custom_color": self.custom_color,
            "icon": self.icon,
            "notes": self.notes,
            "archived": self.archived,
            "ticket_id": self.ticket_id,
            "ticket_title": self.ticket_title,
            "is_restored": self.is_restored,
            "canvas_id": self.canvas_id,
            "agent_session_id": self.agent_session_id,
            "current_tool": self.current_tool,
            "long_running_tool": self.long_running_tool,
            "last_error": self.last_error,
            "revision": self.revision,
        }
