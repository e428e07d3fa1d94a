"""Forking: derive a new session from an existing one."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from agentcanvas.sessions.commands import build_fork_command
from agentcanvas.sessions.models import Session
from agentcanvas.sessions.registry import SessionRegistry, SessionSpec
from agentcanvas.sessions.worktree import GitWorktrees


@dataclass
class ForkOptions:
    name: str | None = None
    color: str | None = None
    icon: str | None = None
    cwd: str | None = None
    branch_name: str | None = None
    base_branch: str = "main"
    create_worktree: bool = False
    canvas_id: str | None = None
    session_id: str | None = None


@dataclass
class ForkResult:
    session: Session
    warnings: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"session": self.session.to_dict(), "warnings": self.warnings}


def cwd_conflict_warnings(cwd: str, conflicts: list[Session]) -> list[dict[str, Any]]:
    if not conflicts:
        return []
    return [
        {
            "type": "cwd_conflict",
            "cwd": cwd,
            "session_ids": [s.session_id for s in conflicts],
            "names": [s.display_name for s in conflicts],
        }
    ]


class ForkManager:
    def __init__(self, *, registry: SessionRegistry, git: GitWorktrees):
        self.registry = registry
        self.git = git

    def check_conflicts(self, cwd: str, *, exclude: str | None = None) -> list[dict[str, Any]]:
        return cwd_conflict_warnings(cwd, self.registry.find_cwd_conflicts(cwd, exclude=exclude))

    async def fork(self, parent_session_id: str, options: ForkOptions) -> ForkResult:
        """Create a child session next to `parent_session_id`.

        The parent is only read. With `branch_name` and `create_worktree` the child
        runs in a fresh git worktree; a failing worktree raises `WorktreeError`
        before anything is registered. Sessions already using the child's cwd are
        reported as warnings, not errors.

        Raises:
            SessionNotFoundError: unknown parent.
            WorktreeError: the worktree could not be created.
        """
        if options.session_id:
            existing = self.registry.find(options.session_id)
            if existing is not None:
                return ForkResult(existing, self.check_conflicts(existing.cwd, exclude=existing.session_id))

        parent = self.registry.get(parent_session_id)
        cwd = options.cwd or parent.cwd
        original_cwd = parent.original_cwd

        if options.branch_name and options.create_worktree:
            worktree = await self.git.create_worktree(cwd, options.branch_name, options.base_branch or "main")
            original_cwd = parent.cwd
            cwd = worktree.path
            git_branch: str | None = worktree.branch
        elif options.branch_name:
            git_branch = options.branch_name
        else:
            git_branch = await self.git.current_branch(cwd) or parent.git_branch

        warnings = self.check_conflicts(cwd)

        near = None
        parent_node = self.registry.store.find_by_session(parent.session_id)
        if parent_node is not None and parent_node.position is not None:
            near = (parent_node.position.x, parent_node.position.y)

        spec = SessionSpec(
            agent_id=parent.agent_id,
            agent_name=parent.agent_name,
            command=build_fork_command(parent.command, parent.agent_id, parent.agent_session_id),
            cwd=cwd,
            session_id=options.session_id,
            original_cwd=original_cwd,
            git_branch=git_branch,
            custom_name=options.name or f"{parent.display_name} (fork)",
            custom_color=options.color or parent.custom_color,
            icon=options.icon or parent.icon,
            notes=parent.notes,
            ticket_id=parent.ticket_id,
            ticket_title=parent.ticket_title,
            canvas_id=options.canvas_id or parent.canvas_id,
            near=near,
        )
        child = await self.registry.create(spec)
        logger.info(f"forked {parent.session_id} -> {child.session_id} (cwd={cwd})")
        return ForkResult(child, warnings)
