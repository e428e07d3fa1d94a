"""Runtime settings for the agentcanvas server.

Everything is read from environment variables (prefix AGENTCANVAS_) or a local
.env file. Values are fixed for the lifetime of the process.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

from agentcanvas.sessions.autoresume import AutoResumeConfig

UiMode = Literal["static", "remote", "dev"]
LogLevel = Literal["TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"]


def _expand(p: str) -> Path:
    return Path(os.path.expanduser(p))


class WebSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="AGENTCANVAS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Server
    host: str = "127.0.0.1"
    port: int = 6968
    log_level: LogLevel = "INFO"

    # Data
    data_dir: str = "~/.agentcanvas"
    state_file: str = "state.json"
    index_db_path: str | None = None

    # Agents
    launch_cwd: str | None = None
    shell: str = "/bin/bash"
    projects_dir: str = "~/.claude/projects"

    # Optional bearer token for /api/*
    auth_token: str = ""

    # Auto-resume
    auto_resume_enabled: bool = True
    auto_resume_skip_archived: bool = True
    startup_timeout_ms: int = 30_000
    auto_resume_delay_s: float = 1.0
    auto_resume_grace_s: float = 3.0

    # Status tracking
    status_poll_interval_s: float = 1.0
    long_running_tool_s: float = 300.0
    output_buffer_max_chunks: int = 1000
    state_save_interval_s: float = 30.0

    # Conversation search
    index_days_back: int = 90
    index_cooldown_s: float = 10.0

    # SSE
    sse_heartbeat_s: float = 15.0

    # UI proxy/serving
    ui_mode: UiMode = "static"
    ui_url: str = ""  # required when ui_mode=remote
    ui_static_dir: str = "client/dist"
    ui_dev_server_url: str = "http://127.0.0.1:5173"

    # CSP
    csp: str = "default-src 'self'; connect-src 'self'; style-src 'self' 'unsafe-inline'"

    def resolved_data_dir(self) -> Path:
        return _expand(self.data_dir).resolve()

    def resolved_state_path(self) -> Path:
        p = _expand(self.state_file)
        return p if p.is_absolute() else self.resolved_data_dir() / p

    def resolved_index_db_path(self) -> Path:
        if self.index_db_path:
            return _expand(self.index_db_path)
        return self.resolved_data_dir() / "conversations.db"

    def resolved_projects_dir(self) -> Path:
        return _expand(self.projects_dir)

    def resolved_launch_cwd(self) -> str:
        return str(_expand(self.launch_cwd)) if self.launch_cwd else os.getcwd()

    def resolved_ui_static_dir(self) -> Path:
        return _expand(self.ui_static_dir).resolve()

    def auto_resume_config(self) -> AutoResumeConfig:
        return AutoResumeConfig(
            enabled=self.auto_resume_enabled,
            skip_archived=self.auto_resume_skip_archived,
            startup_timeout_ms=self.startup_timeout_ms,
        )
