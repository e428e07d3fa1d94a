from agentcanvas.sessions.commands import (
    build_fork_command,
    build_resume_command,
    get_agent,
    strip_resume_flags,
)

AGENT_SID = "0f8fad5b-d9cb-469f-a165-70867728950e"


def test_resume_injects_session_id() -> None:
    assert build_resume_command("claude --model opus", "claude", AGENT_SID) == (
        f"claude --resume {AGENT_SID} --model opus"
    )


def test_resume_drops_stale_flags() -> None:
    cmd = "claude --resume 1234 --fork-session --verbose"
    assert build_resume_command(cmd, "claude", None) == "claude --verbose"
    assert strip_resume_flags("claude --resume") == "claude"


def test_resume_ignores_invalid_ids() -> None:
    assert build_resume_command("claude", "claude", "not-a-uuid") == "claude"


def test_non_resumable_agents_keep_their_command() -> None:
    assert build_resume_command("codex --full-auto", "codex", AGENT_SID) == "codex --full-auto"
    assert build_fork_command("opencode", "opencode", AGENT_SID) == "opencode"


def test_fork_command() -> None:
    assert build_fork_command("claude", "claude", AGENT_SID) == f"claude --resume {AGENT_SID} --fork-session"


def test_agent_catalog() -> None:
    assert get_agent("claude").supports_resume
    assert get_agent("nope") is None


def test_bare_resume_keeps_following_flag() -> None:
    assert strip_resume_flags("claude --resume --verbose") == "claude --verbose"
