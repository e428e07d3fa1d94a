"""Per-record text extraction and tool-noise detection for agent transcripts."""

from __future__ import annotations

import re
from typing import Any

LONG_TEXT_THRESHOLD = 800
LONG_TEXT_HEAD = 500
LONG_TEXT_TAIL = 200
ELLIPSIS_MARKER = "\n...\n"

NOISE_MIN_LENGTH = 50
PREAMBLE_MAX_LENGTH = 100

_TOOL_MARKER = re.compile(r"\[Tool: \w+\]")
_NOISE_PATTERNS = (
    re.compile(r"^\[Tool: \w+\]"),
    re.compile(r"^Let me (?:read|check|look|search|find)", re.IGNORECASE),
    re.compile(r"^I'll (?:read|check|look|search|find)", re.IGNORECASE),
)


def _text_blocks(blocks: list[Any]) -> list[str]:
    return [
        str(b.get("text") or "")
        for b in blocks
        if isinstance(b, dict) and b.get("type") == "text"
    ]


def extract_content(record: dict[str, Any]) -> str:
    """Return the human-readable text of one transcript record.

    User records keep string content verbatim and only the text blocks of
    block lists (tool results are dropped). Assistant records keep their text
    blocks; anything longer than LONG_TEXT_THRESHOLD is reduced to its head and
    tail. Other record types yield "".
    """
    message = record.get("message")
    if not isinstance(message, dict):
        return ""
    content = message.get("content")
    kind = record.get("type")

    if kind == "user":
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            return "\n".join(_text_blocks(content))
        return ""

    if kind == "assistant":
        if not isinstance(content, list):
            return content if isinstance(content, str) else ""
        full = "\n".join(_text_blocks(content))
        if len(full) > LONG_TEXT_THRESHOLD:
            return f"{full[:LONG_TEXT_HEAD]}{ELLIPSIS_MARKER}{full[-LONG_TEXT_TAIL:]}"
        return full

    return ""


def detect_tool_noise(content: str) -> bool:
    """True for short messages and tool-call preambles ("Let me read ...")."""
    if len(content) < NOISE_MIN_LENGTH:
        return True

    stripped = _TOOL_MARKER.sub("", content).strip()
    if len(stripped) < NOISE_MIN_LENGTH:
        return True

    if len(content) < PREAMBLE_MAX_LENGTH:
        return any(p.search(content) for p in _NOISE_PATTERNS)
    return False
