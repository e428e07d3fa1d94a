"""Agent process transport.

The registry only sees `AgentProcess`: an opaque duplex byte stream with a
liveness check. `ProcessLauncher` provides the default implementation on top of
asyncio subprocess pipes; tests and alternative transports supply their own.
"""

from __future__ import annotations

import asyncio
import os
import signal
from abc import ABC, abstractmethod
from pathlib import Path

from loguru import logger

from agentcanvas.sessions.errors import SessionLaunchError


class AgentProcess(ABC):
    """A running agent: read output, write input, stop it."""

    pid: int | None = None

    @property
    @abstractmethod
    def returncode(self) -> int | None:
        """Exit status, or None while the process is alive."""

    @abstractmethod
    async def read(self) -> bytes:
        """Next output chunk; b"" once the stream is closed."""

    @abstractmethod
    async def write(self, data: str) -> None:
        ...

    @abstractmethod
    async def terminate(self, timeout_s: float = 3.0) -> int | None:
        """Stop the process (and its children) and release its resources."""

    @abstractmethod
    async def wait(self) -> int | None:
        ...

    @property
    def alive(self) -> bool:
        return self.returncode is None


class SubprocessAgent(AgentProcess):
    def __init__(self, process: asyncio.subprocess.Process, *, chunk_size: int = 4096):
        self._process = process
        self._chunk_size = chunk_size
        self.pid = process.pid

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    async def read(self) -> bytes:
        if self._process.stdout is None:
            return b""
        try:
            return await self._process.stdout.read(self._chunk_size)
        except (ConnectionResetError, BrokenPipeError):
            return b""

    async def write(self, data: str) -> None:
        stdin = self._process.stdin
        if stdin is None or stdin.is_closing():
            raise BrokenPipeError("agent stdin is closed")
        stdin.write(data.encode("utf-8"))
        await stdin.drain()

    def _signal_group(self, sig: int) -> None:
        try:
            os.killpg(self._process.pid, sig)
        except ProcessLookupError:
            return
        except PermissionError:
            self._process.send_signal(sig)

    async def terminate(self, timeout_s: float = 3.0) -> int | None:
        if self._process.returncode is None:
            self._signal_group(signal.SIGTERM)
            try:
                await asyncio.wait_for(self._process.wait(), timeout=timeout_s)
            except asyncio.TimeoutError:
                logger.warning(f"agent pid={self.pid} ignored SIGTERM, killing")
                self._signal_group(signal.SIGKILL)
                await self._process.wait()
        if self._process.stdin is not None and not self._process.stdin.is_closing():
            self._process.stdin.close()
        return self._process.returncode

    async def wait(self) -> int | None:
        return await self._process.wait()


class ProcessLauncher:
    """Starts agent commands through a shell with piped stdio."""

    def __init__(
        self,
        *,
        shell: str = "/bin/bash",
        env: dict[str, str] | None = None,
        chunk_size: int = 4096,
    ):
        self.shell = shell
        self.env = dict(env or {})
        self.chunk_size = chunk_size

    async def launch(
        self,
        command: str,
        cwd: str,
        *,
        session_id: str,
        env: dict[str, str] | None = None,
    ) -> AgentProcess:
        if not command.strip():
            raise SessionLaunchError("empty command")
        if not Path(cwd).is_dir():
            raise SessionLaunchError(f"working directory does not exist: {cwd}")

        full_env = {
            **os.environ,
            "TERM": "xterm-256color",
            **self.env,
            **(env or {}),
            "AGENTCANVAS_SESSION_ID": session_id,
        }
        try:
            process = await asyncio.create_subprocess_exec(
                self.shell,
                "-c",
                command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                cwd=cwd,
                env=full_env,
                start_new_session=True,
            )
        except OSError as e:
            raise SessionLaunchError(f"failed to start {command!r}: {e}") from e

        logger.info(f"launched session {session_id} pid={process.pid}: {command}")
        return SubprocessAgent(process, chunk_size=self.chunk_size)
