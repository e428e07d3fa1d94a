import asyncio

import pytest
from conftest import FakeGit, FakeLauncher, settle

from agentcanvas.canvas.positioning import Position, overlaps
from agentcanvas.sessions.errors import SessionNotFoundError, WorktreeError
from agentcanvas.sessions.fork import ForkManager, ForkOptions
from agentcanvas.sessions.registry import SessionRegistry, SessionSpec

AGENT_SID = "0f8fad5b-d9cb-469f-a165-70867728950e"


async def _parent(registry: SessionRegistry, cwd) -> str:
    parent = await registry.create(
        SessionSpec(
            agent_id="claude",
            agent_name="Claude Code",
            command="claude --model opus",
            cwd=str(cwd),
            custom_name="api",
            custom_color="#EF4444",
            agent_session_id=AGENT_SID,
        )
    )
    await settle()
    return parent.session_id


def _pos(store, session_id: str) -> Position:
    node = store.find_by_session(session_id)
    return Position(node.position.x, node.position.y)


def test_fork_next_to_parent_with_conflict_warning(store, workdir, tmp_path) -> None:
    async def main() -> None:
        launcher = FakeLauncher()
        registry = SessionRegistry(store=store, launcher=launcher)
        forks = ForkManager(registry=registry, git=FakeGit(tmp_path))
        parent_id = await _parent(registry, workdir)

        result = await forks.fork(parent_id, ForkOptions())
        child = result.session

        assert child.cwd == str(workdir)
        assert child.custom_name == "api (fork)"
        assert child.custom_color == "#EF4444"
        assert child.git_branch == "main"
        assert launcher.commands_for(child.session_id) == [
            f"claude --resume {AGENT_SID} --fork-session --model opus"
        ]
        assert not overlaps(_pos(store, child.session_id), _pos(store, parent_id))
        assert result.warnings == [
            {"type": "cwd_conflict", "cwd": str(workdir), "session_ids": [parent_id], "names": ["api"]}
        ]
        assert registry.get(parent_id).command == "claude --model opus"
        await registry.shutdown()

    asyncio.run(main())


def test_fork_into_worktree(store, workdir, tmp_path) -> None:
    async def main() -> None:
        git = FakeGit(tmp_path)
        registry = SessionRegistry(store=store, launcher=FakeLauncher())
        forks = ForkManager(registry=registry, git=git)
        parent_id = await _parent(registry, workdir)

        result = await forks.fork(
            parent_id,
            ForkOptions(name="feature", branch_name="feat/login", base_branch="develop", create_worktree=True),
        )
        child = result.session

        assert git.created == [(str(workdir), "feat/login", "develop")]
        assert child.cwd == str(tmp_path / "repo-worktrees" / "feat-login")
        assert child.original_cwd == str(workdir)
        assert child.git_branch == "feat/login"
        assert child.custom_name == "feature"
        assert result.warnings == []
        await registry.shutdown()

    asyncio.run(main())


def test_worktree_failure_registers_nothing(store, workdir, tmp_path) -> None:
    async def main() -> None:
        registry = SessionRegistry(store=store, launcher=FakeLauncher())
        forks = ForkManager(registry=registry, git=FakeGit(tmp_path, error="not a git repository"))
        parent_id = await _parent(registry, workdir)

        with pytest.raises(WorktreeError):
            await forks.fork(parent_id, ForkOptions(branch_name="x", create_worktree=True))
        assert len(registry.sessions()) == 1
        assert len(store.nodes()) == 1
        await registry.shutdown()

    asyncio.run(main())


def test_fork_unknown_parent(store, tmp_path) -> None:
    async def main() -> None:
        registry = SessionRegistry(store=store, launcher=FakeLauncher())
        forks = ForkManager(registry=registry, git=FakeGit(tmp_path))
        with pytest.raises(SessionNotFoundError):
            await forks.fork("ses_missing", ForkOptions())

    asyncio.run(main())


def test_fork_is_idempotent_by_session_id(store, workdir, tmp_path) -> None:
    async def main() -> None:
        launcher = FakeLauncher()
        registry = SessionRegistry(store=store, launcher=launcher)
        forks = ForkManager(registry=registry, git=FakeGit(tmp_path))
        parent_id = await _parent(registry, workdir)

        first = await forks.fork(parent_id, ForkOptions(session_id="ses_child"))
        second = await forks.fork(parent_id, ForkOptions(session_id="ses_child"))

        assert second.session is first.session
        assert len(launcher.launches) == 2
        await registry.shutdown()

    asyncio.run(main())
