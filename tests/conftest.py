from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from agentcanvas.canvas.state import CanvasStateStore
from agentcanvas.sessions.errors import SessionLaunchError, WorktreeError
from agentcanvas.sessions.process import AgentProcess
from agentcanvas.sessions.worktree import Worktree


class FakeProcess(AgentProcess):
    """Scripted agent: output is pushed by the test, input is recorded."""

    def __init__(self, greeting: str = ""):
        self._chunks: asyncio.Queue[bytes] = asyncio.Queue()
        self._returncode: int | None = None
        self._exited = asyncio.Event()
        self.written: list[str] = []
        self.terminated = False
        if greeting:
            self.emit(greeting)

    @property
    def returncode(self) -> int | None:
        return self._returncode

    def emit(self, text: str) -> None:
        self._chunks.put_nowait(text.encode("utf-8"))

    def exit(self, code: int = 0) -> None:
        if self._returncode is None:
            self._returncode = code
            self._exited.set()
            self._chunks.put_nowait(b"")

    async def read(self) -> bytes:
        return await self._chunks.get()

    async def write(self, data: str) -> None:
        self.written.append(data)

    async def terminate(self, timeout_s: float = 3.0) -> int | None:
        self.terminated = True
        self.exit(-15)
        return self._returncode

    async def wait(self) -> int | None:
        await self._exited.wait()
        return self._returncode


class FakeLauncher:
    def __init__(self, *, greeting: str = "ready\n", delay_s: float = 0.0, error: str | None = None):
        self.greeting = greeting
        self.delay_s = delay_s
        self.error = error
        self.launches: list[dict[str, str]] = []
        self.processes: dict[str, FakeProcess] = {}

    async def launch(self, command: str, cwd: str, *, session_id: str, env=None) -> FakeProcess:
        self.launches.append({"session_id": session_id, "command": command, "cwd": cwd})
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        if self.error:
            raise SessionLaunchError(self.error)
        process = FakeProcess(self.greeting)
        self.processes[session_id] = process
        return process

    def commands_for(self, session_id: str) -> list[str]:
        return [item["command"] for item in self.launches if item["session_id"] == session_id]


class FakeGit:
    def __init__(self, root: Path, *, branch: str | None = "main", error: str | None = None):
        self.root = root
        self.branch = branch
        self.error = error
        self.created: list[tuple[str, str, str]] = []

    async def current_branch(self, cwd: str) -> str | None:
        return self.branch

    async def create_worktree(self, cwd: str, branch: str, base_branch: str = "main") -> Worktree:
        if self.error:
            raise WorktreeError(self.error)
        self.created.append((cwd, branch, base_branch))
        path = self.root / "repo-worktrees" / branch.replace("/", "-")
        path.mkdir(parents=True, exist_ok=True)
        return Worktree(path=str(path), branch=branch)


async def settle(seconds: float = 0.02) -> None:
    """Let pump tasks drain whatever the fake processes emitted."""
    await asyncio.sleep(seconds)


@pytest.fixture
def store(tmp_path) -> CanvasStateStore:
    return CanvasStateStore(tmp_path / "state.json")


@pytest.fixture
def workdir(tmp_path) -> Path:
    path = tmp_path / "work"
    path.mkdir()
    return path
