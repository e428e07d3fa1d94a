"""Session registry: the single owner of live session state.

Every status change goes through `_transition()` while holding that session's
lock, and is published to the event hub right after. The poll endpoints and the
SSE reconciliation read the same `Session` objects, so push and poll can only
disagree until the next read.
"""

from __future__ import annotations

import asyncio
import codecs
import os
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from loguru import logger

from agentcanvas.canvas.positioning import allocate_one
from agentcanvas.canvas.state import (
    CanvasStateStore,
    NodePosition,
    node_from_session,
    session_from_node,
)
from agentcanvas.sessions.classifier import (
    OutputClassifier,
    OutputEvent,
    OutputEventKind,
    PatternClassifier,
    strip_ansi,
)
from agentcanvas.sessions.commands import build_resume_command
from agentcanvas.sessions.errors import SessionLaunchError, SessionNotFoundError
from agentcanvas.sessions.models import (
    Session,
    SessionStatus,
    can_transition,
    new_node_id,
    new_session_id,
)
from agentcanvas.sessions.process import AgentProcess, ProcessLauncher
from agentcanvas.web.events import EventHub
from agentcanvas.web.protocol import EventType

S = SessionStatus
ACTIVE_STATUSES = frozenset({S.STARTING, S.RUNNING, S.TOOL_CALLING, S.WAITING_INPUT})
MAX_INPUT_CHARS = 4096

# Tools whose permission prompt is shown inside the tool itself.
QUESTION_TOOLS = frozenset({"AskUserQuestion"})


@dataclass
class SessionSpec:
    """What to launch. Ids are generated unless the caller supplies them."""

    agent_id: str
    agent_name: str
    command: str
    cwd: str
    session_id: str | None = None
    node_id: str | None = None
    original_cwd: str | None = None
    git_branch: str | None = None
    custom_name: str | None = None
    custom_color: str | None = None
    icon: str | None = None
    notes: str | None = None
    ticket_id: str | None = None
    ticket_title: str | None = None
    agent_session_id: str | None = None
    canvas_id: str | None = None
    near: tuple[float, float] | None = None


@dataclass
class _Entry:
    session: Session
    classifier: OutputClassifier
    output: deque[str]
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    process: AgentProcess | None = None
    pump: asyncio.Task[None] | None = None
    stop_requested: bool = False
    launching: bool = False
    got_output: bool = False


class SessionRegistry:
    def __init__(
        self,
        *,
        store: CanvasStateStore,
        launcher: ProcessLauncher,
        hub: EventHub | None = None,
        classifier_factory: Callable[[], OutputClassifier] = PatternClassifier,
        output_buffer_max_chunks: int = 1000,
        long_running_tool_s: float = 300.0,
    ):
        self.store = store
        self.launcher = launcher
        self.hub = hub
        self._classifier_factory = classifier_factory
        self._buffer_max = output_buffer_max_chunks
        self._long_running_tool_s = long_running_tool_s
        self._entries: dict[str, _Entry] = {}
        self._map_lock = asyncio.Lock()

    # ── Lookup ────────────────────────────────────────────────────

    def _entry(self, session_id: str) -> _Entry:
        entry = self._entries.get(session_id)
        if entry is None:
            raise SessionNotFoundError(session_id)
        return entry

    def get(self, session_id: str) -> Session:
        return self._entry(session_id).session

    def find(self, session_id: str) -> Session | None:
        entry = self._entries.get(session_id)
        return entry.session if entry else None

    def by_node(self, node_id: str) -> Session | None:
        return next((e.session for e in self._entries.values() if e.session.node_id == node_id), None)

    def by_agent_session(self, agent_session_id: str) -> Session | None:
        return next(
            (e.session for e in self._entries.values() if e.session.agent_session_id == agent_session_id),
            None,
        )

    def sessions(self) -> list[Session]:
        return [e.session for e in list(self._entries.values())]

    def snapshot(self, session_id: str) -> dict[str, Any]:
        return self.get(session_id).status_snapshot()

    def snapshots(self) -> list[dict[str, Any]]:
        return [s.status_snapshot() for s in self.sessions()]

    def is_alive(self, session_id: str) -> bool:
        entry = self._entries.get(session_id)
        return bool(entry and entry.process is not None and entry.process.alive)

    def find_cwd_conflicts(self, cwd: str, *, exclude: str | None = None) -> list[Session]:
        """Active, non-archived sessions already working in `cwd`."""
        target = os.path.realpath(cwd)
        return [
            s
            for s in self.sessions()
            if s.session_id != exclude
            and not s.archived
            and s.status in ACTIVE_STATUSES
            and os.path.realpath(s.cwd) == target
        ]

    # ── Publishing ────────────────────────────────────────────────

    async def _publish_status(self, session: Session) -> None:
        if self.hub is not None:
            await self.hub.publish(session.session_id, EventType.STATUS.value, session.status_snapshot())

    async def _publish(self, session_id: str, type: EventType, payload: dict[str, Any]) -> None:
        if self.hub is not None:
            await self.hub.publish(session_id, type.value, payload)

    # ── State machine ─────────────────────────────────────────────

    def _transition(
        self,
        entry: _Entry,
        target: SessionStatus,
        *,
        tool: str | None = None,
        error: str | None = None,
    ) -> bool:
        """Apply one status change. Caller holds `entry.lock`."""
        session = entry.session
        current = session.status
        if target == current:
            if target is S.TOOL_CALLING and tool and tool != session.current_tool:
                session.current_tool = tool
                session.tool_started_at = time.monotonic()
                session.long_running_tool = False
                session.touch()
                return True
            return False
        if not can_transition(current, target):
            logger.debug(f"session {session.session_id}: ignoring {current.value} -> {target.value}")
            return False

        session.status = target
        if target is S.TOOL_CALLING:
            session.current_tool = tool
            session.tool_started_at = time.monotonic()
        else:
            session.current_tool = None
            session.tool_started_at = None
        session.long_running_tool = False
        if target is S.ERROR:
            session.last_error = error or session.last_error or "unknown error"
        elif target is S.STARTING:
            session.last_error = None
        session.touch()
        logger.debug(f"session {session.session_id}: {current.value} -> {target.value}")
        return True

    def _apply_output_event(self, entry: _Entry, event: OutputEvent) -> bool:
        status = entry.session.status
        if event.kind is OutputEventKind.OUTPUT:
            entry.got_output = True
            if status is S.STARTING:
                return self._transition(entry, S.RUNNING)
            return False
        if event.kind is OutputEventKind.TOOL_START:
            if status in (S.RUNNING, S.TOOL_CALLING):
                return self._transition(entry, S.TOOL_CALLING, tool=event.tool)
            return False
        if event.kind is OutputEventKind.TOOL_END:
            if status is S.TOOL_CALLING:
                return self._transition(entry, S.RUNNING)
            return False
        if event.kind is OutputEventKind.WAITING_INPUT:
            if status in (S.RUNNING, S.TOOL_CALLING):
                return self._transition(entry, S.WAITING_INPUT)
            return False
        return False

    # ── Registration / persistence ────────────────────────────────

    def _new_entry(self, session: Session, output: str = "") -> _Entry:
        buffer: deque[str] = deque(maxlen=self._buffer_max)
        if output:
            buffer.append(output)
        return _Entry(session=session, classifier=self._classifier_factory(), output=buffer)

    def persist(self, session: Session, *, position: NodePosition | None = None) -> None:
        existing = self.store.find_by_session(session.session_id)
        node = node_from_session(
            session,
            position=position or (existing.position if existing else None),
            canvas_id=(existing.canvas_id if existing else None) or session.canvas_id,
        )
        stored = self.store.upsert_node(node)
        session.canvas_id = stored.canvas_id

    def save_all(self) -> None:
        """Write every live session and its output buffer to disk."""
        for entry in list(self._entries.values()):
            session = entry.session
            existing = self.store.find_by_session(session.session_id)
            self.store.upsert_node(
                node_from_session(
                    session,
                    position=existing.position if existing else None,
                    canvas_id=(existing.canvas_id if existing else None) or session.canvas_id,
                ),
                save=False,
            )
            try:
                self.store.save_buffer(session.session_id, list(entry.output))
            except OSError as e:
                logger.warning(f"could not save buffer for {session.session_id}: {e}")
        self.store.save()

    def restore_from_state(self) -> list[Session]:
        """Register every non-archived persisted node as a `disconnected` session."""
        restored: list[Session] = []
        for node in self.store.nodes(archived=False):
            if node.session_id in self._entries:
                continue
            session = session_from_node(node)
            session.status = S.DISCONNECTED
            if not Path(session.cwd).is_dir() and session.original_cwd and Path(session.original_cwd).is_dir():
                logger.warning(
                    f"session {session.session_id}: {session.cwd} is gone, using {session.original_cwd}"
                )
                session.cwd = session.original_cwd
            self._entries[session.session_id] = self._new_entry(
                session, self.store.load_buffer(session.session_id)
            )
            restored.append(session)
        if restored:
            logger.info(f"restored {len(restored)} sessions from {self.store.path}")
        return restored

    # ── Create / launch ───────────────────────────────────────────

    async def create(self, spec: SessionSpec, *, launch: bool = True) -> Session:
        """Register and (by default) launch a session.

        Supplying an existing `session_id` returns that session unchanged.
        """
        async with self._map_lock:
            if spec.session_id and spec.session_id in self._entries:
                return self._entries[spec.session_id].session
            if spec.node_id and self.by_node(spec.node_id) is not None:
                raise ValueError(f"node {spec.node_id} is already bound to a session")
            held = self.store.get_node(spec.node_id) if spec.node_id else None
            if held is not None and held.session_id != spec.session_id:
                raise ValueError(f"node {spec.node_id} belongs to session {held.session_id}")

            session = Session(
                node_id=spec.node_id or new_node_id(),
                session_id=spec.session_id or new_session_id(),
                agent_id=spec.agent_id,
                agent_name=spec.agent_name,
                command=spec.command,
                cwd=spec.cwd,
                original_cwd=spec.original_cwd,
                git_branch=spec.git_branch,
                custom_name=spec.custom_name,
                custom_color=spec.custom_color,
                icon=spec.icon,
                notes=spec.notes,
                ticket_id=spec.ticket_id,
                ticket_title=spec.ticket_title,
                agent_session_id=spec.agent_session_id,
                canvas_id=spec.canvas_id or self.store.default_canvas_id,
            )
            tx, ty = spec.near or (0.0, 0.0)
            placed = allocate_one(tx, ty, self.store.positions_on_canvas(session.canvas_id))
            self._entries[session.session_id] = self._new_entry(session)
            self.persist(session, position=NodePosition(x=placed.x, y=placed.y))

        logger.info(f"created session {session.session_id} on node {session.node_id} ({session.agent_name})")
        await self._publish_status(session)
        if launch:
            await self.launch(session.session_id)
        return session

    async def launch(self, session_id: str, *, command: str | None = None) -> Session:
        """Start the agent process. Launch failures end in `error`, never raise."""
        entry = self._entry(session_id)
        session = entry.session
        async with entry.lock:
            if entry.launching or (entry.process is not None and entry.process.alive):
                return session
            if session.status in ACTIVE_STATUSES:
                self._transition(entry, S.DISCONNECTED)
            if not self._transition(entry, S.STARTING):
                return session
            entry.launching = True
            entry.stop_requested = False
            entry.got_output = False
            entry.classifier.reset()
        await self._publish_status(session)

        try:
            process = await self.launcher.launch(
                command or session.command,
                session.cwd,
                session_id=session.session_id,
            )
        except asyncio.CancelledError:
            entry.launching = False
            raise
        except SessionLaunchError as e:
            entry.launching = False
            await self.fail(session_id, str(e))
            return session
        except Exception as e:
            entry.launching = False
            logger.exception(f"launching session {session_id} failed")
            await self.fail(session_id, f"launch failed: {e}")
            return session

        async with entry.lock:
            entry.launching = False
            cancelled = entry.stop_requested
            if not cancelled:
                entry.process = process
                entry.pump = asyncio.create_task(self._pump(entry, process), name=f"pump:{session_id}")
        if cancelled:
            logger.info(f"session {session_id} was stopped while launching")
            await process.terminate()
        return session

    async def fail(self, session_id: str, error: str) -> None:
        entry = self._entry(session_id)
        async with entry.lock:
            changed = self._transition(entry, S.ERROR, error=error)
        logger.warning(f"session {session_id} error: {error}")
        if changed:
            await self._publish_status(entry.session)

    async def resume(self, session_id: str) -> Session:
        """Relaunch a restored session, resuming its transcript when supported."""
        session = self.get(session_id)
        command = build_resume_command(session.command, session.agent_id, session.agent_session_id)
        await self.launch(session_id, command=command)
        if session.status is not S.ERROR:
            session.is_restored = True
            session.touch()
            self.persist(session)
            await self._publish_status(session)
        return session

    # ── Output pump ───────────────────────────────────────────────

    async def _pump(self, entry: _Entry, process: AgentProcess) -> None:
        session_id = entry.session.session_id
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        fault: str | None = None
        try:
            while True:
                chunk = await process.read()
                if not chunk:
                    break
                text = decoder.decode(chunk)
                if text:
                    await self._on_output(entry, text)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"output pump for {session_id} failed")
            fault = f"output stream failed: {e}"

        try:
            returncode = await process.wait()
        except Exception:
            logger.exception(f"waiting for session {session_id} failed")
            returncode = None
        await self._on_exit(entry, process, returncode, fault)

    async def _on_output(self, entry: _Entry, text: str) -> None:
        entry.output.append(text)
        async with entry.lock:
            changed = [
                entry.session.status_snapshot()
                for event in entry.classifier.feed(text)
                if self._apply_output_event(entry, event)
            ]
        sid = entry.session.session_id
        for snapshot in changed:
            await self._publish(sid, EventType.STATUS, snapshot)
        await self._publish(sid, EventType.OUTPUT, {"data": text})

    async def _on_exit(
        self,
        entry: _Entry,
        process: AgentProcess,
        returncode: int | None,
        fault: str | None,
    ) -> None:
        session = entry.session
        async with entry.lock:
            if entry.process is not process:
                return
            entry.process = None
            if entry.stop_requested:
                changed = False
            elif fault:
                changed = self._transition(entry, S.ERROR, error=fault)
            elif session.status is S.STARTING and not entry.got_output and returncode not in (0, None):
                changed = self._transition(
                    entry, S.ERROR, error=f"agent exited with code {returncode} before producing output"
                )
            else:
                changed = self._transition(entry, S.DISCONNECTED)
        logger.info(f"session {session.session_id} exited (code={returncode}, status={session.status.value})")
        if changed:
            await self._publish_status(session)

    # ── Stop / restart ────────────────────────────────────────────

    async def _teardown(self, entry: _Entry) -> None:
        process, pump = entry.process, entry.pump
        if process is not None:
            await process.terminate()
        if pump is not None and not pump.done():
            try:
                await asyncio.wait_for(pump, timeout=5.0)
            except asyncio.TimeoutError:
                pump.cancel()
        entry.process = None
        entry.pump = None

    async def stop(self, session_id: str) -> Session:
        """Stop the agent and go `idle`. Releases the process even with no client attached."""
        entry = self._entry(session_id)
        async with entry.lock:
            entry.stop_requested = True
            changed = self._transition(entry, S.IDLE)
        await self._teardown(entry)
        if changed:
            await self._publish_status(entry.session)
        return entry.session

    async def restart(self, session_id: str) -> Session:
        """Relaunch a session; archived sessions are brought back onto the canvas first."""
        entry = self._entries.get(session_id)
        if entry is None:
            node = self.store.find_by_session(session_id)
            if node is None:
                raise SessionNotFoundError(session_id)
            self.store.set_archived(session_id, False)
            session = session_from_node(node)
            session.archived = False
            entry = self._new_entry(session, self.store.load_buffer(session_id))
            async with self._map_lock:
                self._entries[session_id] = entry
            logger.info(f"unarchived session {session_id} for restart")
        elif entry.session.status is S.STARTING and entry.process is not None and entry.process.alive:
            return entry.session
        elif entry.process is not None:
            await self.stop(session_id)

        session = entry.session
        command = build_resume_command(session.command, session.agent_id, session.agent_session_id)
        await self.launch(session_id, command=command)
        self.persist(session)
        return session

    # ── Input / output ────────────────────────────────────────────

    async def send_input(self, session_id: str, data: str) -> Session:
        entry = self._entry(session_id)
        if len(data) > MAX_INPUT_CHARS:
            raise ValueError(f"input longer than {MAX_INPUT_CHARS} characters")
        process = entry.process
        if process is None or not process.alive:
            raise SessionLaunchError("session is not running")
        await process.write(data)
        async with entry.lock:
            entry.session.last_input_at = time.time()
            changed = entry.session.status is S.WAITING_INPUT and self._transition(entry, S.RUNNING)
        if changed:
            await self._publish_status(entry.session)
        return entry.session

    def tail(self, session_id: str, *, max_chars: int = 16384, strip: bool = False) -> str:
        text = "".join(self._entry(session_id).output)
        if strip:
            text = strip_ansi(text)
        return text[-max_chars:] if max_chars > 0 else text

    # ── Metadata ──────────────────────────────────────────────────

    async def update(self, session_id: str, **changes: Any) -> Session:
        allowed = {"custom_name", "custom_color", "icon", "notes", "ticket_id", "ticket_title"}
        entry = self._entry(session_id)
        async with entry.lock:
            for key, value in changes.items():
                if key in allowed:
                    setattr(entry.session, key, value)
            entry.session.touch()
        self.persist(entry.session)
        await self._publish_status(entry.session)
        return entry.session

    async def report_hook(
        self,
        session_id: str,
        status: str,
        *,
        tool_name: str | None = None,
        agent_session_id: str | None = None,
    ) -> Session:
        """Apply a status report sent by the agent's own hooks."""
        entry = self._entry(session_id)
        session = entry.session
        async with entry.lock:
            changed = False
            if agent_session_id and agent_session_id != session.agent_session_id:
                session.agent_session_id = agent_session_id
                session.touch()
                changed = True

            if status == "pre_tool":
                if tool_name in QUESTION_TOOLS:
                    target = S.WAITING_INPUT
                else:
                    target = S.TOOL_CALLING
            elif status in ("post_tool", "running"):
                target = S.RUNNING
            elif status in ("permission_request", "waiting_input", "idle"):
                target = S.WAITING_INPUT
            else:
                raise ValueError(f"unknown hook status: {status}")

            if session.status is S.STARTING:
                changed = self._transition(entry, S.RUNNING) or changed
            # Only delivered input releases a blocked session.
            if not (target is S.RUNNING and session.status is S.WAITING_INPUT):
                changed = self._transition(entry, target, tool=tool_name) or changed

        if changed:
            if agent_session_id:
                self.persist(session)
            await self._publish_status(session)
        return session

    # ── Archive / delete / replace ────────────────────────────────

    async def _detach(self, session_id: str) -> _Entry | None:
        entry = self._entries.get(session_id)
        if entry is None:
            return None
        async with entry.lock:
            entry.stop_requested = True
        await self._teardown(entry)
        async with self._map_lock:
            self._entries.pop(session_id, None)
        return entry

    async def archive(self, session_id: str, archived: bool = True) -> dict[str, Any]:
        """Archive (stop + hide) or unarchive a session. Repeating a call changes nothing."""
        entry = self._entries.get(session_id)
        if archived:
            if entry is not None:
                entry.session.archived = True
                self.persist(entry.session)
                try:
                    await asyncio.to_thread(self.store.save_buffer, session_id, list(entry.output))
                except OSError as e:
                    logger.warning(f"could not save buffer for {session_id}: {e}")
                await self._detach(session_id)
                await self._publish(session_id, EventType.REMOVED, {"session_id": session_id, "archived": True})
                logger.info(f"archived session {session_id}")
            node = self.store.set_archived(session_id, True)
            if node is None:
                raise SessionNotFoundError(session_id)
            return {**node.model_dump(), "status": S.IDLE.value}

        if entry is not None:
            return entry.session.to_dict()
        node = self.store.set_archived(session_id, False)
        if node is None:
            raise SessionNotFoundError(session_id)
        session = session_from_node(node)
        session.status = S.DISCONNECTED
        async with self._map_lock:
            self._entries.setdefault(session_id, self._new_entry(session, self.store.load_buffer(session_id)))
        await self._publish_status(session)
        return session.to_dict()

    async def delete(self, session_id: str) -> bool:
        """Stop and forget a session. Returns False when nothing was left to delete."""
        entry = await self._detach(session_id)
        node = self.store.find_by_session(session_id)
        removed = False
        if node is not None:
            removed = self.store.remove_node(node.node_id)
        self.store.delete_buffer(session_id)
        if entry is not None or removed:
            await self._publish(session_id, EventType.REMOVED, {"session_id": session_id, "deleted": True})
            logger.info(f"deleted session {session_id}")
            return True
        return False

    async def replace(self, node_id: str, spec: SessionSpec) -> Session:
        """Tear down whatever session holds `node_id`, then bind a new one to it."""
        node = self.store.get_node(node_id)
        old = self.by_node(node_id)
        position = node.position if node else None
        canvas_id = spec.canvas_id or (node.canvas_id if node else None)

        if old is not None:
            await self._detach(old.session_id)
            self.store.delete_buffer(old.session_id)
        if node is not None:
            self.store.remove_node(node_id)

        spec.node_id = node_id
        spec.session_id = None
        spec.canvas_id = canvas_id
        if position is not None:
            spec.near = (position.x, position.y)
        return await self.create(spec)

    # ── Reconciliation / shutdown ─────────────────────────────────

    async def reconcile(self) -> int:
        """Re-derive status from process liveness and tool timers.

        Catches exits whose pump never reported (and long tool calls), so pollers
        converge even if a push was missed. Returns the number of sessions changed.
        """
        changed: list[Session] = []
        now = time.monotonic()
        for entry in list(self._entries.values()):
            session = entry.session
            async with entry.lock:
                if entry.launching:
                    continue
                process = entry.process
                pump_gone = entry.pump is None or entry.pump.done()
                dead = process is None or (process.returncode is not None and pump_gone)
                if session.status in ACTIVE_STATUSES and dead and not entry.stop_requested:
                    if process is not None:
                        entry.process = None
                    if self._transition(entry, S.DISCONNECTED):
                        changed.append(session)
                    continue
                if (
                    session.status is S.TOOL_CALLING
                    and session.tool_started_at is not None
                    and not session.long_running_tool
                    and now - session.tool_started_at >= self._long_running_tool_s
                ):
                    session.long_running_tool = True
                    session.touch()
                    changed.append(session)
        for session in changed:
            await self._publish_status(session)
        return len(changed)

    async def shutdown(self) -> None:
        """Persist everything, then stop every agent process."""
        try:
            self.save_all()
        except OSError:
            logger.exception("saving canvas state on shutdown failed")
        for entry in list(self._entries.values()):
            entry.stop_requested = True
            try:
                await self._teardown(entry)
            except Exception:
                logger.exception(f"stopping session {entry.session.session_id} failed")
        logger.info("session registry stopped")
