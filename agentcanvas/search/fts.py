"""Free-text to FTS5 query translation."""

from __future__ import annotations

import re

# Characters FTS5 treats as query syntax.
_SPECIAL = re.compile(r'["{}\[\]()^~*]')

EMPTY_QUERY = '""'


def sanitize(raw: str | None) -> str:
    """Turn user input into a safe prefix-matching FTS5 query.

    >>> sanitize("hello world")
    '"hello"* "world"*'
    """
    cleaned = _SPECIAL.sub(" ", raw or "")
    terms = [t for t in cleaned.split() if t]
    if not terms:
        return EMPTY_QUERY
    return " ".join(f'"{t}"*' for t in terms)
