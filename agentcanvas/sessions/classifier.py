"""Output-stream classification for agent terminals.

A classifier turns raw process output into an ordered stream of `OutputEvent`s
that drive the status state machine. One classifier instance belongs to one
session and only ever sees that session's bytes, in order.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum

ANSI_RE = re.compile(
    r"\x1b\[[0-?]*[ -/]*[@-~]"  # CSI
    r"|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)"  # OSC
    r"|\x1b[@-Z\\-_]"
)
# An escape sequence cut off at the end of a chunk.
_PARTIAL_ESCAPE = re.compile(r"\x1b(?:\[[0-?]*[ -/]*|\][^\x07\x1b]*)?\Z")


def strip_ansi(text: str) -> str:
    return ANSI_RE.sub("", text)


class OutputEventKind(str, Enum):
    OUTPUT = "output"
    TOOL_START = "tool_start"
    TOOL_END = "tool_end"
    WAITING_INPUT = "waiting_input"


@dataclass(frozen=True)
class OutputEvent:
    kind: OutputEventKind
    tool: str | None = None


class OutputClassifier(ABC):
    """Per-session parser from raw output chunks to status events."""

    @abstractmethod
    def feed(self, chunk: str) -> list[OutputEvent]:
        """Consume the next chunk and return the events it completes, in order."""

    @abstractmethod
    def reset(self) -> None:
        """Forget buffered context (called when the process is relaunched)."""


TOOL_START_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"^[ \t]*[⏺●][ \t]*(?P<tool>[A-Z][A-Za-z0-9_]*)\(", re.MULTILINE),
    re.compile(r"\[Tool: (?P<tool>\w+)\]"),
)
TOOL_END_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"^[ \t]*⎿", re.MULTILINE),
)
WAITING_INPUT_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"Do you want to [^?\n]{1,120}\?"),
    re.compile(r"[(\[](?:y/n|Y/n|y/N)[)\]]"),
    re.compile(r"❯[ \t]*1\.[ \t]*Yes"),
    re.compile(r"Press Enter to continue"),
)


class PatternClassifier(OutputClassifier):
    """Regex classifier over a bounded lookback window.

    Output is ANSI-stripped and appended to the window; every pattern match is
    reported once and the window is cut after the last match so the same text
    never fires twice. The window keeps at most `max_lookback` characters, which
    lets markers split across chunk boundaries still match.
    """

    def __init__(
        self,
        *,
        max_lookback: int = 4096,
        tool_start: tuple[re.Pattern[str], ...] = TOOL_START_PATTERNS,
        tool_end: tuple[re.Pattern[str], ...] = TOOL_END_PATTERNS,
        waiting_input: tuple[re.Pattern[str], ...] = WAITING_INPUT_PATTERNS,
    ):
        self.max_lookback = max_lookback
        self._rules: list[tuple[OutputEventKind, re.Pattern[str]]] = (
            [(OutputEventKind.TOOL_START, p) for p in tool_start]
            + [(OutputEventKind.TOOL_END, p) for p in tool_end]
            + [(OutputEventKind.WAITING_INPUT, p) for p in waiting_input]
        )
        self._window = ""
        self._carry = ""

    @property
    def window(self) -> str:
        return self._window

    def reset(self) -> None:
        self._window = ""
        self._carry = ""

    def feed(self, chunk: str) -> list[OutputEvent]:
        raw = self._carry + chunk
        self._carry = ""
        partial = _PARTIAL_ESCAPE.search(raw)
        if partial:
            self._carry = raw[partial.start():]
            raw = raw[: partial.start()]

        text = strip_ansi(raw).replace("\r\n", "\n").replace("\r", "\n")
        if not text:
            return []

        events = [OutputEvent(OutputEventKind.OUTPUT)]
        self._window += text

        found: list[tuple[int, int, OutputEvent]] = []
        for kind, pattern in self._rules:
            for m in pattern.finditer(self._window):
                tool = m.groupdict().get("tool") if kind is OutputEventKind.TOOL_START else None
                found.append((m.start(), m.end(), OutputEvent(kind, tool)))

        if found:
            found.sort(key=lambda item: (item[0], item[1]))
            events.extend(evt for _start, _end, evt in found)
            self._window = self._window[max(end for _start, end, _evt in found):]

        if len(self._window) > self.max_lookback:
            self._window = self._window[-self.max_lookback:]
        return events
