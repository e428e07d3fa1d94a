"""Deterministic, collision-free placement of canvas nodes.

Nodes are laid out on a grid of SPACING units. A free cell is found by scanning
square rings of increasing radius around the (snapped) target; cells already taken
by existing nodes, or by nodes placed earlier in the same call, are skipped.
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

NODE_WIDTH = 216
NODE_HEIGHT = 120
SPACING = 24
MAX_RADIUS = 20

STEP_X = NODE_WIDTH + SPACING
STEP_Y = NODE_HEIGHT + SPACING


@dataclass(frozen=True)
class Position:
    x: float
    y: float

    def to_dict(self) -> dict[str, float]:
        return {"x": self.x, "y": self.y}


def snap_to_grid(value: float) -> int:
    return math.floor(value / SPACING + 0.5) * SPACING


def overlaps(a: Position, b: Position) -> bool:
    return abs(a.x - b.x) < STEP_X and abs(a.y - b.y) < STEP_Y


def _is_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def _coerce(item: Any) -> Position | None:
    if item is None:
        return None
    if isinstance(item, Position):
        return item
    if isinstance(item, Mapping):
        x, y = item.get("x"), item.get("y")
    else:
        x, y = getattr(item, "x", None), getattr(item, "y", None)
    if not (_is_number(x) and _is_number(y)):
        return None
    return Position(float(x), float(y))


def _ring(radius: int) -> Iterable[tuple[int, int]]:
    for dx in range(-radius, radius + 1):
        for dy in range(-radius, radius + 1):
            if radius and abs(dx) != radius and abs(dy) != radius:
                continue
            yield dx, dy


def allocate(
    target_x: float,
    target_y: float,
    existing: Iterable[Any] = (),
    count: int = 1,
) -> list[Position]:
    """Return `count` grid-aligned positions near the target that overlap nothing.

    Args:
        target_x: Desired x coordinate (snapped to the grid).
        target_y: Desired y coordinate (snapped to the grid).
        existing: Positions already on the canvas. Entries without numeric
            `x`/`y` are ignored.
        count: Number of positions to produce.

    Returns:
        Exactly `count` positions. When no free cell exists within MAX_RADIUS
        rings, the node is laid out along the x axis from the target instead.
    """
    sx = snap_to_grid(target_x)
    sy = snap_to_grid(target_y)
    obstacles = [p for p in (_coerce(e) for e in existing) if p is not None]

    placed: list[Position] = []
    for i in range(max(0, int(count))):
        chosen: Position | None = None
        for radius in range(MAX_RADIUS + 1):
            for dx, dy in _ring(radius):
                candidate = Position(sx + dx * STEP_X, sy + dy * STEP_Y)
                if any(overlaps(candidate, o) for o in obstacles):
                    continue
                if any(overlaps(candidate, p) for p in placed):
                    continue
                chosen = candidate
                break
            if chosen is not None:
                break

        if chosen is None:
            chosen = Position(sx + i * STEP_X, sy)
        placed.append(chosen)

    return placed


def allocate_one(target_x: float, target_y: float, existing: Iterable[Any] = ()) -> Position:
    return allocate(target_x, target_y, existing, count=1)[0]
