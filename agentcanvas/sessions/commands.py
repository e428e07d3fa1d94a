"""Agent catalog and launch-command construction."""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass
from typing import Any

UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)

_RESUME_WITH_ID = re.compile(r"--resume\s+(?!-)[\w-]+")
_RESUME_BARE = re.compile(r"--resume(?=\s|$)")
_FORK_FLAG = re.compile(r"--fork-session(?=\s|$)")
_CLAUDE_HEAD = re.compile(r"^claude(\s|$)")


@dataclass(frozen=True)
class AgentDefinition:
    id: str
    name: str
    command: str
    description: str = ""
    color: str = ""
    icon: str = ""
    supports_resume: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


DEFAULT_AGENTS: tuple[AgentDefinition, ...] = (
    AgentDefinition(
        id="claude",
        name="Claude Code",
        command="claude",
        description="Anthropic's official CLI for Claude",
        color="#F97316",
        icon="sparkles",
        supports_resume=True,
    ),
    AgentDefinition(
        id="opencode",
        name="OpenCode",
        command="opencode",
        description="Open source AI coding assistant",
        color="#22C55E",
        icon="code",
    ),
    AgentDefinition(
        id="codex",
        name="Codex",
        command="codex",
        description="OpenAI Codex CLI",
        color="#8B5CF6",
        icon="brain",
    ),
)


def get_agent(agent_id: str) -> AgentDefinition | None:
    for agent in DEFAULT_AGENTS:
        if agent.id == agent_id:
            return agent
    return None


def supports_resume(agent_id: str) -> bool:
    agent = get_agent(agent_id)
    return bool(agent and agent.supports_resume)


def strip_resume_flags(command: str) -> str:
    cmd = _RESUME_WITH_ID.sub("", command)
    cmd = _RESUME_BARE.sub("", cmd)
    cmd = _FORK_FLAG.sub("", cmd)
    return " ".join(cmd.split())


def _inject(command: str, extra: str) -> str:
    if _CLAUDE_HEAD.match(command):
        return _CLAUDE_HEAD.sub(lambda m: f"claude {extra}{m.group(1)}", command, count=1)
    return f"{command} {extra}"


def build_resume_command(command: str, agent_id: str, agent_session_id: str | None) -> str:
    """Command used to relaunch a session, resuming its transcript when possible.

    Stale resume flags are always dropped for resumable agents; a fresh
    `--resume <id>` is added only when the agent reported a valid session id.
    """
    if not supports_resume(agent_id):
        return command
    cmd = strip_resume_flags(command)
    if agent_session_id and UUID_RE.match(agent_session_id):
        cmd = _inject(cmd, f"--resume {agent_session_id}")
    return cmd


def build_fork_command(command: str, agent_id: str, agent_session_id: str | None) -> str:
    if not supports_resume(agent_id):
        return command
    cmd = strip_resume_flags(command)
    if agent_session_id and UUID_RE.match(agent_session_id):
        cmd = _inject(cmd, f"--resume {agent_session_id} --fork-session")
    return cmd
