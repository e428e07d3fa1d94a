"""Git collaborator: branch lookup and worktree creation.

All git calls run as asyncio subprocesses with a timeout so a hung remote never
blocks the event loop.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from agentcanvas.sessions.errors import WorktreeError


@dataclass(frozen=True)
class GitResult:
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


@dataclass(frozen=True)
class Worktree:
    path: str
    branch: str


def worktree_dir_name(branch: str) -> str:
    return branch.replace("/", "-")


class GitWorktrees:
    def __init__(self, *, git: str = "git", timeout_s: float = 30.0):
        self.git = git
        self.timeout_s = timeout_s

    async def run(self, args: list[str], cwd: str, *, timeout_s: float | None = None) -> GitResult:
        try:
            process = await asyncio.create_subprocess_exec(
                self.git,
                *args,
                cwd=cwd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            return GitResult(127, "", str(e))

        try:
            out, err = await asyncio.wait_for(process.communicate(), timeout=timeout_s or self.timeout_s)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return GitResult(124, "", f"git {' '.join(args)} timed out")
        return GitResult(
            process.returncode if process.returncode is not None else -1,
            out.decode("utf-8", errors="replace"),
            err.decode("utf-8", errors="replace"),
        )

    async def current_branch(self, cwd: str) -> str | None:
        if not Path(cwd).is_dir():
            return None
        result = await self.run(["rev-parse", "--abbrev-ref", "HEAD"], cwd, timeout_s=5)
        if not result.ok:
            return None
        return result.stdout.strip() or None

    async def repo_root(self, cwd: str) -> str | None:
        if not Path(cwd).is_dir():
            return None
        result = await self.run(["rev-parse", "--show-toplevel"], cwd, timeout_s=5)
        if not result.ok:
            return None
        return result.stdout.strip() or None

    async def resolve_base_ref(self, base_branch: str, root: str) -> str:
        """`origin/<base>` if it exists, else the remote's default branch, else local `<base>`."""
        await self.run(["fetch", "origin", base_branch], root, timeout_s=15)
        remote_ref = f"origin/{base_branch}"
        if (await self.run(["rev-parse", "--verify", remote_ref], root, timeout_s=5)).ok:
            return remote_ref
        head = await self.run(["symbolic-ref", "refs/remotes/origin/HEAD"], root, timeout_s=5)
        if head.ok and head.stdout.strip():
            ref = head.stdout.strip().replace("refs/remotes/", "", 1)
            logger.info(f"{remote_ref} not found, using remote default {ref}")
            return ref
        logger.info(f"no remote HEAD, using local {base_branch}")
        return base_branch

    async def create_worktree(self, cwd: str, branch: str, base_branch: str = "main") -> Worktree:
        """Create `<repo>-worktrees/<branch>` beside the repository.

        Raises:
            WorktreeError: `cwd` is not inside a git repository or git refused.
        """
        root = await self.repo_root(cwd)
        if not root:
            raise WorktreeError(f"not a git repository: {cwd}")

        root_path = Path(root)
        worktrees = root_path.parent / f"{root_path.name}-worktrees"
        worktrees.mkdir(parents=True, exist_ok=True)

        final_branch = branch
        path = worktrees / worktree_dir_name(branch)
        suffix = 2
        while path.exists():
            final_branch = f"{branch}-{suffix}"
            path = worktrees / f"{worktree_dir_name(branch)}-{suffix}"
            suffix += 1

        if (await self.run(["rev-parse", "--verify", final_branch], root, timeout_s=5)).ok:
            result = await self.run(["worktree", "add", str(path), final_branch], root)
        elif (await self.run(["fetch", "origin", final_branch], root, timeout_s=15)).ok:
            result = await self.run(
                ["worktree", "add", "--track", "-b", final_branch, str(path), f"origin/{final_branch}"],
                root,
            )
        else:
            base_ref = await self.resolve_base_ref(base_branch, root)
            result = await self.run(["worktree", "add", "-b", final_branch, str(path), base_ref], root)

        if not result.ok:
            raise WorktreeError(result.stderr.strip() or f"git worktree add failed ({result.returncode})")

        logger.info(f"created worktree {path} on branch {final_branch}")
        return Worktree(path=str(path), branch=final_branch)
