"""Startup auto-resume: relaunch the sessions that were running before a restart."""

from __future__ import annotations

import asyncio
from collections.abc import Iterable, Mapping
from dataclasses import asdict, dataclass
from typing import Any

from loguru import logger

from agentcanvas.sessions.registry import SessionRegistry


@dataclass(frozen=True)
class AutoResumeConfig:
    enabled: bool = True
    skip_archived: bool = True
    startup_timeout_ms: int = 30_000

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class AutoResumeProgress:
    is_active: bool = False
    completed: int = 0
    total: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


IDLE_PROGRESS = AutoResumeProgress()


def _archived(node: Any) -> Any:
    if isinstance(node, Mapping):
        return node.get("archived")
    return getattr(node, "archived", None)


def should_auto_resume(node: Any, config: AutoResumeConfig) -> bool:
    """Nodes without an `archived` flag count as not archived."""
    return not (config.skip_archived and _archived(node) is True)


def get_sessions_to_resume(nodes: Iterable[Any], config: AutoResumeConfig) -> list[Any]:
    if not config.enabled:
        return []
    return [n for n in nodes if should_auto_resume(n, config)]


class AutoResumeController:
    """One bounded relaunch pass over the persisted canvas state.

    Sessions are relaunched one after another in persisted order. The whole pass
    shares a single `startup_timeout_ms` budget; whatever is left when it runs
    out stays un-resumed and shows up as `total - completed`.
    """

    def __init__(
        self,
        *,
        registry: SessionRegistry,
        config: AutoResumeConfig,
        grace_s: float = 3.0,
    ):
        self.registry = registry
        self.config = config
        self.grace_s = grace_s
        self._progress = IDLE_PROGRESS
        self._ran = False
        self._clear_task: asyncio.Task[None] | None = None

    def progress(self) -> AutoResumeProgress:
        return self._progress

    def candidates(self) -> list[Any]:
        return get_sessions_to_resume(self.registry.store.nodes(), self.config)

    async def run(self) -> AutoResumeProgress:
        if self._ran:
            return self._progress
        self._ran = True

        if not self.config.enabled:
            logger.info("auto-resume is disabled")
            return self._progress

        self.registry.restore_from_state()
        candidates = self.candidates()
        total = len(candidates)
        if total == 0:
            logger.info("no sessions to auto-resume")
            return self._progress

        logger.info(f"auto-resuming {total} sessions")
        self._progress = AutoResumeProgress(is_active=True, completed=0, total=total)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.startup_timeout_ms / 1000.0
        completed = 0

        for node in candidates:
            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.warning(
                    f"auto-resume budget of {self.config.startup_timeout_ms}ms exhausted, "
                    f"{total - completed} sessions left un-resumed"
                )
                break

            session_id = node.session_id
            try:
                if self.registry.find(session_id) is None:
                    logger.warning(f"auto-resume: session {session_id} is not registered, skipping")
                elif self.registry.is_alive(session_id):
                    logger.info(f"auto-resume: {session_id} already running")
                else:
                    await asyncio.wait_for(self.registry.resume(session_id), timeout=remaining)
            except asyncio.TimeoutError:
                await self.registry.fail(session_id, "auto-resume timed out")
            except Exception as e:
                logger.exception(f"auto-resume of {session_id} failed")
                if self.registry.find(session_id) is not None:
                    await self.registry.fail(session_id, f"auto-resume failed: {e}")

            completed += 1
            self._progress = AutoResumeProgress(is_active=True, completed=completed, total=total)

        self._progress = AutoResumeProgress(is_active=False, completed=completed, total=total)
        logger.info(f"auto-resume finished: {completed}/{total}")
        self._clear_task = asyncio.create_task(self._clear_after_grace())
        return self._progress

    async def _clear_after_grace(self) -> None:
        await asyncio.sleep(self.grace_s)
        self._progress = IDLE_PROGRESS

    async def aclose(self) -> None:
        if self._clear_task is not None and not self._clear_task.done():
            self._clear_task.cancel()
