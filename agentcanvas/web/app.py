"""FastAPI application for agentcanvas.

Key properties:
- One `SessionRegistry` per app owns all live session state
- Status push over SSE (`GET /event`), reconciled against the registry every poll tick
- Poll endpoints (`/api/sessions/status`) read the same registry
- Canvas state persisted as one JSON document; conversation search over SQLite FTS5
- UI is served from a built dist directory or reverse-proxied (same-origin)
"""

from __future__ import annotations

import asyncio
import hmac
from typing import Any

import httpx
from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, StreamingResponse
from fastapi.staticfiles import StaticFiles
from loguru import logger
from pydantic import BaseModel, Field

from agentcanvas import __version__
from agentcanvas.canvas.positioning import allocate
from agentcanvas.canvas.state import CanvasStateStore, PersistedNode
from agentcanvas.search.index import ConversationIndex
from agentcanvas.sessions.autoresume import AutoResumeController
from agentcanvas.sessions.commands import DEFAULT_AGENTS, get_agent
from agentcanvas.sessions.errors import (
    CanvasError,
    SessionLaunchError,
    SessionNotFoundError,
    WorktreeError,
)
from agentcanvas.sessions.fork import ForkManager, ForkOptions
from agentcanvas.sessions.models import Session, SessionStatus
from agentcanvas.sessions.process import ProcessLauncher
from agentcanvas.sessions.registry import MAX_INPUT_CHARS, SessionRegistry, SessionSpec
from agentcanvas.sessions.worktree import GitWorktrees
from agentcanvas.web.events import EventHub, sse_stream
from agentcanvas.web.settings import WebSettings

APP_VERSION = __version__


class PositionModel(BaseModel):
    x: float
    y: float


class PositionUpdate(PositionModel):
    canvas_id: str | None = None


class SessionCreateRequest(BaseModel):
    agent_id: str = Field(default="claude", min_length=1, max_length=64)
    agent_name: str | None = None
    command: str | None = None
    cwd: str | None = None
    session_id: str | None = Field(default=None, min_length=1, max_length=128)
    node_id: str | None = Field(default=None, min_length=1, max_length=128)
    custom_name: str | None = Field(default=None, max_length=100)
    custom_color: str | None = Field(default=None, max_length=32)
    icon: str | None = Field(default=None, max_length=64)
    notes: str | None = None
    ticket_id: str | None = None
    ticket_title: str | None = None
    canvas_id: str | None = None
    position: PositionModel | None = None
    branch_name: str | None = None
    base_branch: str = "main"
    create_worktree: bool = False


class SessionPatchRequest(BaseModel):
    custom_name: str | None = Field(default=None, max_length=100)
    custom_color: str | None = Field(default=None, max_length=32)
    icon: str | None = Field(default=None, max_length=64)
    notes: str | None = None


class ArchiveRequest(BaseModel):
    archived: bool = True


class ForkRequest(BaseModel):
    name: str | None = Field(default=None, max_length=100)
    color: str | None = Field(default=None, max_length=32)
    icon: str | None = Field(default=None, max_length=64)
    cwd: str | None = None
    branch_name: str | None = None
    base_branch: str = "main"
    create_worktree: bool = False
    canvas_id: str | None = None
    session_id: str | None = Field(default=None, min_length=1, max_length=128)


class InputRequest(BaseModel):
    data: str = Field(min_length=1, max_length=MAX_INPUT_CHARS)


class StatusUpdateRequest(BaseModel):
    status: str = Field(min_length=1)
    session_id: str | None = None
    agent_session_id: str | None = None
    hook_event: str | None = None
    tool_name: str | None = None


class PositionsRequest(BaseModel):
    positions: dict[str, PositionUpdate]


class AllocateRequest(BaseModel):
    x: float = 0.0
    y: float = 0.0
    count: int = Field(default=1, ge=1, le=100)
    canvas_id: str | None = None


class CanvasCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    color: str | None = Field(default=None, max_length=32)


class CanvasPatchRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=100)
    color: str | None = Field(default=None, max_length=32)


class CanvasReorderRequest(BaseModel):
    canvas_ids: list[str]


def create_app(
    settings: WebSettings | None = None,
    *,
    launcher: ProcessLauncher | None = None,
    git: GitWorktrees | None = None,
) -> FastAPI:
    settings = settings or WebSettings()

    data_dir = settings.resolved_data_dir()
    data_dir.mkdir(parents=True, exist_ok=True)

    store = CanvasStateStore(settings.resolved_state_path(), buffers_dir=data_dir / "buffers")
    hub = EventHub()
    registry = SessionRegistry(
        store=store,
        launcher=launcher or ProcessLauncher(shell=settings.shell),
        hub=hub,
        output_buffer_max_chunks=settings.output_buffer_max_chunks,
        long_running_tool_s=settings.long_running_tool_s,
    )
    git = git or GitWorktrees()
    forks = ForkManager(registry=registry, git=git)
    auto_resume = AutoResumeController(
        registry=registry,
        config=settings.auto_resume_config(),
        grace_s=settings.auto_resume_grace_s,
    )
    index = ConversationIndex(
        settings.resolved_index_db_path(),
        settings.resolved_projects_dir(),
        days_back=settings.index_days_back,
        cooldown_s=settings.index_cooldown_s,
    )
    background: list[asyncio.Task[None]] = []

    app = FastAPI(title="agentcanvas api", version=APP_VERSION)
    app.state.settings = settings
    app.state.store = store
    app.state.registry = registry
    app.state.auto_resume = auto_resume
    app.state.index = index

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def _authorized(request: Request) -> bool:
        scheme, _, token = request.headers.get("authorization", "").partition(" ")
        if scheme.lower() != "bearer":
            # EventSource cannot send headers
            token = request.query_params.get("token", "") if request.url.path == "/event" else ""
        return bool(token) and hmac.compare_digest(token.strip().encode(), settings.auth_token.encode())

    @app.middleware("http")
    async def _require_token(request: Request, call_next):
        path = request.url.path
        guarded = path.startswith("/api/") or path == "/event"
        if settings.auth_token and guarded and request.method != "OPTIONS" and not _authorized(request):
            return JSONResponse({"detail": "unauthorized"}, status_code=401)
        return await call_next(request)

    @app.middleware("http")
    async def _security_headers(request: Request, call_next):
        resp = await call_next(request)
        resp.headers.setdefault("Content-Security-Policy", settings.csp)
        resp.headers.setdefault("X-Content-Type-Options", "nosniff")
        return resp

    # ── Lifecycle ────────────────────────────────────────────────

    async def _status_poller() -> None:
        while True:
            await asyncio.sleep(settings.status_poll_interval_s)
            try:
                await registry.reconcile()
            except Exception:
                logger.exception("status reconcile failed")

    async def _periodic_save() -> None:
        while True:
            await asyncio.sleep(settings.state_save_interval_s)
            try:
                await asyncio.to_thread(registry.save_all)
            except OSError:
                logger.exception("periodic state save failed")

    async def _delayed_auto_resume() -> None:
        await asyncio.sleep(settings.auto_resume_delay_s)
        await auto_resume.run()

    @app.on_event("startup")
    async def _startup() -> None:
        store.load()
        registry.restore_from_state()
        background.append(asyncio.create_task(_status_poller(), name="status-poller"))
        background.append(asyncio.create_task(_periodic_save(), name="state-saver"))
        background.append(asyncio.create_task(_delayed_auto_resume(), name="auto-resume"))
        logger.info(f"agentcanvas {APP_VERSION} started (state: {store.path})")

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        for task in background:
            task.cancel()
        await asyncio.gather(*background, return_exceptions=True)
        background.clear()
        await auto_resume.aclose()
        await registry.shutdown()
        index.close()

    # ── Helpers ──────────────────────────────────────────────────

    def _node_payload(node: PersistedNode) -> dict[str, Any]:
        d = node.model_dump()
        d["status"] = SessionStatus.IDLE.value if node.archived else SessionStatus.DISCONNECTED.value
        return d

    def _session_payload(session: Session) -> dict[str, Any]:
        d = session.to_dict()
        node = store.find_by_session(session.session_id)
        d["position"] = node.position.model_dump() if node and node.position else None
        d["canvas_id"] = node.canvas_id if node else session.canvas_id
        return d

    def _session_or_404(session_id: str) -> Session:
        try:
            return registry.get(session_id)
        except SessionNotFoundError:
            raise HTTPException(status_code=404, detail="session not found")

    # ── Health / config ──────────────────────────────────────────

    @app.get("/healthz")
    async def healthz() -> dict[str, Any]:
        return {
            "ok": True,
            "version": APP_VERSION,
            "sessions": len(registry.sessions()),
            "auto_resume": auto_resume.progress().to_dict(),
        }

    @app.get("/api/config")
    async def get_config() -> dict[str, Any]:
        return {
            "launch_cwd": settings.resolved_launch_cwd(),
            "data_dir": str(data_dir),
            "version": APP_VERSION,
            "agents": [a.to_dict() for a in DEFAULT_AGENTS],
        }

    @app.get("/api/agents")
    async def list_agents() -> list[dict[str, Any]]:
        return [a.to_dict() for a in DEFAULT_AGENTS]

    @app.get("/api/auto-resume/config")
    async def get_auto_resume_config() -> dict[str, Any]:
        candidates = auto_resume.candidates()
        return {
            "config": auto_resume.config.to_dict(),
            "sessions_to_resume_count": len(candidates),
            "sessions": [
                {
                    "session_id": n.session_id,
                    "node_id": n.node_id,
                    "agent_name": n.agent_name,
                    "canvas_id": n.canvas_id,
                }
                for n in candidates
            ],
        }

    @app.get("/api/auto-resume/progress")
    async def get_auto_resume_progress() -> dict[str, Any]:
        return auto_resume.progress().to_dict()

    # ── Sessions ─────────────────────────────────────────────────

    @app.get("/api/sessions")
    async def list_sessions(archived: bool = False) -> list[dict[str, Any]]:
        if archived:
            return [_node_payload(n) for n in store.nodes(archived=True)]
        return [_session_payload(s) for s in registry.sessions()]

    @app.get("/api/sessions/status")
    async def poll_status() -> list[dict[str, Any]]:
        return registry.snapshots()

    @app.get("/api/sessions/conflicts")
    async def check_conflicts(cwd: str) -> dict[str, Any]:
        return {"cwd": cwd, "warnings": forks.check_conflicts(cwd)}

    @app.post("/api/sessions")
    async def create_session(payload: SessionCreateRequest) -> dict[str, Any]:
        if payload.session_id:
            existing = registry.find(payload.session_id)
            if existing is not None:
                return {**_session_payload(existing), "warnings": []}

        agent = get_agent(payload.agent_id)
        command = payload.command or (agent.command if agent else "")
        if not command:
            raise HTTPException(status_code=400, detail="command is required for unknown agents")
        agent_name = payload.agent_name or (agent.name if agent else payload.agent_id)

        cwd = payload.cwd or settings.resolved_launch_cwd()
        original_cwd = None
        if payload.branch_name and payload.create_worktree:
            try:
                worktree = await git.create_worktree(cwd, payload.branch_name, payload.base_branch)
            except WorktreeError as e:
                raise HTTPException(status_code=409, detail=f"worktree: {e}")
            original_cwd, cwd, git_branch = cwd, worktree.path, worktree.branch
        else:
            git_branch = payload.branch_name or await git.current_branch(cwd)

        warnings = forks.check_conflicts(cwd)
        spec = SessionSpec(
            agent_id=payload.agent_id,
            agent_name=agent_name,
            command=command,
            cwd=cwd,
            session_id=payload.session_id,
            node_id=payload.node_id,
            original_cwd=original_cwd,
            git_branch=git_branch,
            custom_name=payload.custom_name,
            custom_color=payload.custom_color,
            icon=payload.icon,
            notes=payload.notes,
            ticket_id=payload.ticket_id,
            ticket_title=payload.ticket_title,
            canvas_id=payload.canvas_id,
            near=(payload.position.x, payload.position.y) if payload.position else None,
        )
        try:
            session = await registry.create(spec)
        except ValueError as e:
            raise HTTPException(status_code=409, detail=str(e))
        return {**_session_payload(session), "warnings": warnings}

    @app.get("/api/sessions/{session_id}")
    async def get_session(session_id: str) -> dict[str, Any]:
        session = registry.find(session_id)
        if session is not None:
            return _session_payload(session)
        node = store.find_by_session(session_id)
        if node is None:
            raise HTTPException(status_code=404, detail="session not found")
        return _node_payload(node)

    @app.get("/api/sessions/{session_id}/status")
    async def get_session_status(session_id: str) -> dict[str, Any]:
        return _session_or_404(session_id).status_snapshot()

    @app.patch("/api/sessions/{session_id}")
    async def patch_session(session_id: str, payload: SessionPatchRequest) -> dict[str, Any]:
        _session_or_404(session_id)
        session = await registry.update(session_id, **payload.model_dump(exclude_unset=True))
        return _session_payload(session)

    @app.delete("/api/sessions/{session_id}")
    async def delete_session(session_id: str) -> dict[str, Any]:
        await registry.delete(session_id)
        return {"session_id": session_id, "deleted": True}

    @app.patch("/api/sessions/{session_id}/archive")
    async def archive_session(session_id: str, payload: ArchiveRequest) -> dict[str, Any]:
        try:
            return await registry.archive(session_id, payload.archived)
        except SessionNotFoundError:
            raise HTTPException(status_code=404, detail="session not found")

    @app.post("/api/sessions/{session_id}/restart")
    async def restart_session(session_id: str) -> dict[str, Any]:
        try:
            session = await registry.restart(session_id)
        except SessionNotFoundError:
            raise HTTPException(status_code=404, detail="session not found")
        return _session_payload(session)

    @app.post("/api/sessions/{session_id}/stop")
    async def stop_session(session_id: str) -> dict[str, Any]:
        _session_or_404(session_id)
        session = await registry.stop(session_id)
        return _session_payload(session)

    @app.post("/api/sessions/{session_id}/fork")
    async def fork_session(session_id: str, payload: ForkRequest) -> dict[str, Any]:
        options = ForkOptions(**payload.model_dump())
        try:
            result = await forks.fork(session_id, options)
        except SessionNotFoundError:
            raise HTTPException(status_code=404, detail="session not found")
        except WorktreeError as e:
            raise HTTPException(status_code=409, detail=f"worktree: {e}")
        return {**_session_payload(result.session), "warnings": result.warnings}

    @app.post("/api/sessions/{session_id}/input")
    async def send_input(session_id: str, payload: InputRequest) -> dict[str, Any]:
        _session_or_404(session_id)
        try:
            session = await registry.send_input(session_id, payload.data)
        except SessionLaunchError as e:
            raise HTTPException(status_code=409, detail=str(e))
        except BrokenPipeError:
            raise HTTPException(status_code=409, detail="session is not accepting input")
        return session.status_snapshot()

    @app.get("/api/sessions/{session_id}/tail")
    async def tail_session(session_id: str, max_chars: int = 16384, strip: bool = False) -> dict[str, Any]:
        _session_or_404(session_id)
        max_chars = max(0, min(max_chars, 512 * 1024))
        return {"session_id": session_id, "output": registry.tail(session_id, max_chars=max_chars, strip=strip)}

    @app.post("/api/nodes/{node_id}/replace")
    async def replace_node(node_id: str, payload: SessionCreateRequest) -> dict[str, Any]:
        agent = get_agent(payload.agent_id)
        command = payload.command or (agent.command if agent else "")
        if not command:
            raise HTTPException(status_code=400, detail="command is required for unknown agents")
        if registry.by_node(node_id) is None and store.get_node(node_id) is None:
            raise HTTPException(status_code=404, detail="node not found")
        spec = SessionSpec(
            agent_id=payload.agent_id,
            agent_name=payload.agent_name or (agent.name if agent else payload.agent_id),
            command=command,
            cwd=payload.cwd or settings.resolved_launch_cwd(),
            custom_name=payload.custom_name,
            custom_color=payload.custom_color,
            icon=payload.icon,
            notes=payload.notes,
            canvas_id=payload.canvas_id,
        )
        session = await registry.replace(node_id, spec)
        return _session_payload(session)

    # ── Status hooks ─────────────────────────────────────────────

    @app.post("/api/status-update")
    async def status_update(payload: StatusUpdateRequest) -> dict[str, Any]:
        session = registry.find(payload.session_id) if payload.session_id else None
        if session is None and payload.agent_session_id:
            session = registry.by_agent_session(payload.agent_session_id)
        if session is None:
            raise HTTPException(status_code=404, detail="session not found")
        try:
            session = await registry.report_hook(
                session.session_id,
                payload.status,
                tool_name=payload.tool_name,
                agent_session_id=payload.agent_session_id,
            )
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return session.status_snapshot()

    # ── Canvas state ─────────────────────────────────────────────

    @app.get("/api/state")
    async def get_state(archived: bool = False) -> dict[str, Any]:
        return {
            "nodes": [n.model_dump() for n in store.nodes(archived=archived)],
            "canvases": [c.model_dump() for c in store.list_canvases()],
        }

    @app.post("/api/state/positions")
    async def save_positions(payload: PositionsRequest) -> dict[str, Any]:
        updated = store.save_positions({k: v.model_dump() for k, v in payload.positions.items()})
        return {"updated": updated}

    @app.post("/api/canvas/allocate")
    async def allocate_positions(payload: AllocateRequest) -> dict[str, Any]:
        existing = store.positions_on_canvas(payload.canvas_id)
        placed = allocate(payload.x, payload.y, existing, count=payload.count)
        return {"positions": [p.to_dict() for p in placed]}

    @app.get("/api/canvases")
    async def list_canvases() -> list[dict[str, Any]]:
        return [c.model_dump() for c in store.list_canvases()]

    @app.post("/api/canvases")
    async def create_canvas(payload: CanvasCreateRequest) -> dict[str, Any]:
        return store.create_canvas(payload.name, payload.color).model_dump()

    @app.patch("/api/canvases/{canvas_id}")
    async def patch_canvas(canvas_id: str, payload: CanvasPatchRequest) -> dict[str, Any]:
        if store.get_canvas(canvas_id) is None:
            raise HTTPException(status_code=404, detail="canvas not found")
        return store.update_canvas(canvas_id, name=payload.name, color=payload.color).model_dump()

    @app.delete("/api/canvases/{canvas_id}")
    async def delete_canvas(canvas_id: str) -> dict[str, Any]:
        if store.get_canvas(canvas_id) is None:
            raise HTTPException(status_code=404, detail="canvas not found")
        try:
            store.delete_canvas(canvas_id)
        except CanvasError as e:
            raise HTTPException(status_code=409, detail=str(e))
        return {"deleted": True}

    @app.post("/api/canvases/reorder")
    async def reorder_canvases(payload: CanvasReorderRequest) -> list[dict[str, Any]]:
        try:
            return [c.model_dump() for c in store.reorder_canvases(payload.canvas_ids)]
        except CanvasError as e:
            raise HTTPException(status_code=400, detail=str(e))

    # ── Conversation search ──────────────────────────────────────

    @app.get("/api/conversations")
    async def search_conversations(
        q: str | None = None,
        project_path: str | None = None,
        limit: int = 30,
    ) -> list[dict[str, Any]]:
        limit = max(1, min(limit, 200))
        return await asyncio.to_thread(index.search, q, project_path=project_path, limit=limit)

    @app.get("/api/conversations/projects")
    async def list_projects() -> list[dict[str, str]]:
        return await asyncio.to_thread(index.list_projects)

    # ── SSE: status + output stream ──────────────────────────────

    @app.get("/event")
    async def stream_events(request: Request, session_id: str | None = None, since: int | None = None):
        if session_id and registry.find(session_id) is None and store.find_by_session(session_id) is None:
            raise HTTPException(status_code=404, detail="session not found")

        header_last_id = request.headers.get("last-event-id")
        initial_last_id: int | None = since
        if initial_last_id is None and header_last_id:
            try:
                initial_last_id = int(header_last_id)
            except ValueError:
                initial_last_id = None

        def _current() -> list[dict[str, Any]]:
            if session_id:
                session = registry.find(session_id)
                return [session.status_snapshot()] if session else []
            return registry.snapshots()

        return StreamingResponse(
            sse_stream(
                request,
                hub,
                _current,
                session_id=session_id,
                since=initial_last_id,
                poll_s=settings.status_poll_interval_s,
                heartbeat_s=settings.sse_heartbeat_s,
            ),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache, no-transform",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )

    # ── UI serving / proxy ───────────────────────────────────────

    async def _proxy_to(target_base: str, request: Request, full_path: str) -> Response:
        url = target_base.rstrip("/") + "/" + full_path
        if request.url.query:
            url = url + "?" + request.url.query

        headers = {
            k: v
            for k, v in request.headers.items()
            if k.lower() not in ("host", "content-length", "connection", "authorization")
        }
        async with httpx.AsyncClient(follow_redirects=True, timeout=30.0) as client:
            try:
                r = await client.request(request.method, url, headers=headers)
            except httpx.HTTPError as e:
                logger.warning(f"UI proxy to {url} failed: {e}")
                raise HTTPException(status_code=502, detail="UI origin unreachable")

        excluded = {"content-encoding", "transfer-encoding", "connection", "keep-alive"}
        out_headers = {k: v for k, v in r.headers.items() if k.lower() not in excluded}
        return Response(content=r.content, status_code=r.status_code, headers=out_headers)

    dist_dir = settings.resolved_ui_static_dir()

    if settings.ui_mode == "static" and dist_dir.exists():
        if (dist_dir / "assets").exists():
            app.mount("/assets", StaticFiles(directory=str(dist_dir / "assets")), name="assets")

        @app.get("/{full_path:path}")
        async def spa_fallback(full_path: str):
            if full_path.startswith("api/"):
                raise HTTPException(status_code=404)
            candidate = dist_dir / full_path
            if full_path and candidate.is_file() and dist_dir in candidate.resolve().parents:
                return FileResponse(str(candidate))
            index_html = dist_dir / "index.html"
            if index_html.exists():
                return FileResponse(str(index_html), headers={"Cache-Control": "no-store"})
            raise HTTPException(status_code=404)

    elif settings.ui_mode in ("remote", "dev"):
        target = settings.ui_url if settings.ui_mode == "remote" else settings.ui_dev_server_url

        @app.api_route("/{full_path:path}", methods=["GET", "HEAD"])
        async def proxy_catchall(full_path: str, request: Request):
            if full_path.startswith("api/") or full_path.startswith("docs") or full_path == "openapi.json":
                raise HTTPException(status_code=404)
            return await _proxy_to(target, request, full_path)

    return app
