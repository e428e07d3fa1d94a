"""Durable canvas state: node placements, session metadata and canvases.

The whole state is one JSON document (camelCase keys) rewritten atomically on
every mutation. Loading never fails: damaged entries are dropped or defaulted,
and a corrupt document falls back to the last temp file written.
"""

from __future__ import annotations

import json
import math
import os
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from agentcanvas.sessions.errors import CanvasError
from agentcanvas.sessions.models import Session

DEFAULT_CANVAS_NAME = "Main"
DEFAULT_CANVAS_COLOR = "#3B82F6"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class _StateModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class NodePosition(_StateModel):
    x: float
    y: float


class Canvas(_StateModel):
    id: str
    name: str
    color: str = DEFAULT_CANVAS_COLOR
    order: int = 0
    created_at: str = Field(default_factory=_now_iso)
    is_default: bool = False


class PersistedNode(_StateModel):
    node_id: str
    session_id: str
    agent_id: str = "claude"
    agent_name: str = ""
    command: str = ""
    cwd: str = ""
    original_cwd: str | None = None
    git_branch: str | None = None
    created_at: str = ""
    custom_name: str | None = None
    custom_color: str | None = None
    icon: str | None = None
    notes: str | None = None
    archived: bool = False
    ticket_id: str | None = None
    ticket_title: str | None = None
    is_restored: bool = False
    agent_session_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices("agentSessionId", "agent_session_id", "claudeSessionId"),
        serialization_alias="agentSessionId",
    )
    position: NodePosition | None = None
    canvas_id: str | None = None

    @field_validator("archived", "is_restored", mode="before")
    @classmethod
    def _none_is_false(cls, v: Any) -> Any:
        return False if v is None else v

    @field_validator("position", mode="before")
    @classmethod
    def _drop_bad_position(cls, v: Any) -> Any:
        if isinstance(v, NodePosition):
            return v
        if not isinstance(v, dict):
            return None
        for axis in ("x", "y"):
            value = v.get(axis)
            if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
                return None
        return v


class PersistedState(_StateModel):
    nodes: list[PersistedNode] = Field(default_factory=list)
    canvases: list[Canvas] = Field(default_factory=list)


def node_from_session(
    session: Session,
    *,
    position: NodePosition | None = None,
    canvas_id: str | None = None,
) -> PersistedNode:
    return PersistedNode(
        node_id=session.node_id,
        session_id=session.session_id,
        agent_id=session.agent_id,
        agent_name=session.agent_name,
        command=session.command,
        cwd=session.cwd,
        original_cwd=session.original_cwd,
        git_branch=session.git_branch,
        created_at=session.created_at,
        custom_name=session.custom_name,
        custom_color=session.custom_color,
        icon=session.icon,
        notes=session.notes,
        archived=session.archived,
        ticket_id=session.ticket_id,
        ticket_title=session.ticket_title,
        is_restored=session.is_restored,
        agent_session_id=session.agent_session_id,
        position=position,
        canvas_id=canvas_id or session.canvas_id,
    )


def session_from_node(node: PersistedNode) -> Session:
    return Session(
        node_id=node.node_id,
        session_id=node.session_id,
        agent_id=node.agent_id,
        agent_name=node.agent_name,
        command=node.command,
        cwd=node.cwd,
        created_at=node.created_at or _now_iso(),
        original_cwd=node.original_cwd,
        git_branch=node.git_branch,
        custom_name=node.custom_name,
        custom_color=node.custom_color,
        icon=node.icon,
        notes=node.notes,
        archived=node.archived,
        ticket_id=node.ticket_id,
        ticket_title=node.ticket_title,
        canvas_id=node.canvas_id,
        agent_session_id=node.agent_session_id,
    )


def _write_atomic(path: Path, payload: dict[str, Any]) -> None:
    tmp = path.with_name(path.name + ".tmp")
    with tmp.open("w", encoding="utf-8") as fh:
        json.dump(payload, fh, indent=2, ensure_ascii=False)
        fh.flush()
        os.fsync(fh.fileno())
    os.replace(tmp, path)


class CanvasStateStore:
    """Thread-safe owner of the persisted canvas document and saved output buffers."""

    def __init__(self, path: str | Path, *, buffers_dir: str | Path | None = None):
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._tmp_path = self._path.with_name(self._path.name + ".tmp")
        self._buffers_dir = Path(buffers_dir) if buffers_dir else self._path.parent / "buffers"
        self._lock = threading.RLock()
        self._state: PersistedState | None = None

    @property
    def path(self) -> Path:
        return self._path

    # ── Load / save ───────────────────────────────────────────────

    def _read_document(self) -> dict[str, Any] | None:
        for candidate in (self._path, self._tmp_path):
            if not candidate.exists():
                continue
            try:
                data = json.loads(candidate.read_text(encoding="utf-8"))
            except (OSError, ValueError) as e:
                logger.warning(f"unreadable canvas state {candidate}: {e}")
                continue
            if isinstance(data, dict):
                if candidate is self._tmp_path:
                    logger.warning(f"recovered canvas state from {candidate}")
                return data
            logger.warning(f"ignoring canvas state {candidate}: not an object")
        return None

    def load(self) -> PersistedState:
        """(Re)read the document from disk, repairing it as needed."""
        with self._lock:
            data = self._read_document() or {}
            state = PersistedState()

            for item in data.get("canvases") or []:
                try:
                    state.canvases.append(Canvas.model_validate(item))
                except ValidationError as e:
                    logger.warning(f"dropping malformed canvas entry: {e.errors()[0]['msg']}")

            seen: set[str] = set()
            for item in data.get("nodes") or []:
                try:
                    node = PersistedNode.model_validate(item)
                except ValidationError as e:
                    logger.warning(f"dropping malformed node entry: {e.errors()[0]['msg']}")
                    continue
                if node.node_id in seen:
                    logger.warning(f"dropping duplicate node {node.node_id}")
                    continue
                seen.add(node.node_id)
                state.nodes.append(node)

            self._repair(state)
            self._state = state
            return state

    def _repair(self, state: PersistedState) -> None:
        if not state.canvases:
            state.canvases.append(
                Canvas(
                    id=f"canvas_{uuid.uuid4().hex[:12]}",
                    name=DEFAULT_CANVAS_NAME,
                    color=DEFAULT_CANVAS_COLOR,
                    order=0,
                    is_default=True,
                )
            )
        if not any(c.is_default for c in state.canvases):
            min(state.canvases, key=lambda c: c.order).is_default = True

        default_id = next(c.id for c in state.canvases if c.is_default)
        known = {c.id for c in state.canvases}
        for node in state.nodes:
            if node.canvas_id not in known:
                node.canvas_id = default_id

    @property
    def state(self) -> PersistedState:
        with self._lock:
            if self._state is None:
                return self.load()
            return self._state

    def save(self) -> None:
        with self._lock:
            payload = self.state.model_dump(mode="json", by_alias=True)
            _write_atomic(self._path, payload)

    # ── Nodes ─────────────────────────────────────────────────────

    @property
    def default_canvas_id(self) -> str:
        with self._lock:
            return next(c.id for c in self.state.canvases if c.is_default)

    def nodes(self, *, archived: bool | None = None) -> list[PersistedNode]:
        with self._lock:
            items = list(self.state.nodes)
        if archived is None:
            return items
        return [n for n in items if n.archived is archived]

    def get_node(self, node_id: str) -> PersistedNode | None:
        with self._lock:
            return next((n for n in self.state.nodes if n.node_id == node_id), None)

    def find_by_session(self, session_id: str) -> PersistedNode | None:
        with self._lock:
            return next((n for n in self.state.nodes if n.session_id == session_id), None)

    def upsert_node(self, node: PersistedNode, *, save: bool = True) -> PersistedNode:
        with self._lock:
            state = self.state
            if node.canvas_id not in {c.id for c in state.canvases}:
                node.canvas_id = self.default_canvas_id
            for i, existing in enumerate(state.nodes):
                if existing.node_id == node.node_id:
                    if node.position is None:
                        node.position = existing.position
                    state.nodes[i] = node
                    break
            else:
                state.nodes.append(node)
            if save:
                self.save()
            return node

    def remove_node(self, node_id: str) -> bool:
        with self._lock:
            state = self.state
            before = len(state.nodes)
            state.nodes = [n for n in state.nodes if n.node_id != node_id]
            removed = len(state.nodes) != before
            if removed:
                self.save()
            return removed

    def set_archived(self, session_id: str, archived: bool) -> PersistedNode | None:
        with self._lock:
            node = self.find_by_session(session_id)
            if node is None:
                return None
            if node.archived != archived:
                node.archived = archived
                self.save()
            return node

    def save_positions(self, positions: dict[str, dict[str, Any]]) -> int:
        """Apply `{node_id: {x, y, canvas_id?}}`; unknown nodes and bad entries are skipped."""
        updated = 0
        with self._lock:
            known = {c.id for c in self.state.canvases}
            for node_id, raw in positions.items():
                node = self.get_node(node_id)
                if node is None or not isinstance(raw, dict):
                    continue
                try:
                    node.position = NodePosition(x=raw["x"], y=raw["y"])
                except (KeyError, ValidationError):
                    continue
                canvas_id = raw.get("canvas_id") or raw.get("canvasId")
                if canvas_id in known:
                    node.canvas_id = canvas_id
                updated += 1
            if updated:
                self.save()
        return updated

    def positions_on_canvas(self, canvas_id: str | None) -> list[NodePosition]:
        cid = canvas_id or self.default_canvas_id
        with self._lock:
            return [n.position for n in self.state.nodes if n.canvas_id == cid and n.position is not None]

    # ── Canvases ──────────────────────────────────────────────────

    def list_canvases(self) -> list[Canvas]:
        with self._lock:
            return sorted(self.state.canvases, key=lambda c: c.order)

    def get_canvas(self, canvas_id: str) -> Canvas | None:
        with self._lock:
            return next((c for c in self.state.canvases if c.id == canvas_id), None)

    def create_canvas(self, name: str, color: str | None = None) -> Canvas:
        with self._lock:
            order = max((c.order for c in self.state.canvases), default=-1) + 1
            canvas = Canvas(
                id=f"canvas_{uuid.uuid4().hex[:12]}",
                name=name,
                color=color or DEFAULT_CANVAS_COLOR,
                order=order,
            )
            self.state.canvases.append(canvas)
            self.save()
            return canvas

    def update_canvas(self, canvas_id: str, *, name: str | None = None, color: str | None = None) -> Canvas:
        with self._lock:
            canvas = self.get_canvas(canvas_id)
            if canvas is None:
                raise CanvasError(f"canvas not found: {canvas_id}")
            if name is not None:
                canvas.name = name
            if color is not None:
                canvas.color = color
            self.save()
            return canvas

    def delete_canvas(self, canvas_id: str) -> None:
        with self._lock:
            canvas = self.get_canvas(canvas_id)
            if canvas is None:
                raise CanvasError(f"canvas not found: {canvas_id}")
            if canvas.is_default:
                raise CanvasError("the default canvas cannot be deleted")
            if any(n.canvas_id == canvas_id for n in self.state.nodes):
                raise CanvasError("canvas still holds nodes; move them first")
            self.state.canvases = [c for c in self.state.canvases if c.id != canvas_id]
            self.save()

    def reorder_canvases(self, canvas_ids: list[str]) -> list[Canvas]:
        with self._lock:
            by_id = {c.id: c for c in self.state.canvases}
            if len(canvas_ids) != len(by_id) or set(canvas_ids) != set(by_id):
                raise CanvasError("reorder must list every canvas exactly once")
            for order, cid in enumerate(canvas_ids):
                by_id[cid].order = order
            self.save()
            return self.list_canvases()

    # ── Output buffers ────────────────────────────────────────────

    def _buffer_path(self, session_id: str) -> Path:
        return self._buffers_dir / f"{Path(session_id).name}.txt"

    def save_buffer(self, session_id: str, chunks: list[str]) -> None:
        self._buffers_dir.mkdir(parents=True, exist_ok=True)
        self._buffer_path(session_id).write_text("".join(chunks), encoding="utf-8")

    def load_buffer(self, session_id: str) -> str:
        path = self._buffer_path(session_id)
        if not path.exists():
            return ""
        try:
            return path.read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            logger.warning(f"could not read buffer for {session_id}: {e}")
            return ""

    def delete_buffer(self, session_id: str) -> None:
        self._buffer_path(session_id).unlink(missing_ok=True)
