"""Domain errors raised by the session and canvas layers.

Routes translate these into HTTP responses; background tasks convert them into a
session status instead of letting them escape.
"""

from __future__ import annotations


class SessionNotFoundError(KeyError):
    def __init__(self, session_id: str):
        super().__init__(session_id)
        self.session_id = session_id

    def __str__(self) -> str:
        return f"session not found: {self.session_id}"


class SessionLaunchError(RuntimeError):
    """The agent process could not be started."""


class WorktreeError(RuntimeError):
    """The git collaborator failed to provide a worktree."""


class CanvasError(ValueError):
    """Invalid canvas operation (unknown canvas, canvas still holds nodes, ...)."""
