"""SQLite FTS5 index over agent conversation transcripts.

Transcripts are JSONL files under `<projects_dir>/<project>/<uuid>.jsonl`. The
index is derived data: it is rebuilt lazily from those files and never consulted
for live session state.
"""

from __future__ import annotations

import json
import re
import sqlite3
import threading
import time
from pathlib import Path
from typing import Any

from loguru import logger

from agentcanvas.search.extract import detect_tool_noise, extract_content
from agentcanvas.search.fts import sanitize

_UUID_FILE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}\.jsonl$"
)

MIN_CONTENT_LENGTH = 5
FIRST_PROMPT_MAX = 200
MTIME_TOLERANCE_MS = 1000
DEFAULT_LIMIT = 30

_RESULT_COLUMNS = """
    c.session_id, c.slug, c.summary, c.first_prompt, c.message_count,
    c.created, c.modified, c.git_branch, c.project_path, c.full_path
"""


def _read_sessions_index(project_dir: Path) -> tuple[str, dict[str, dict[str, Any]]]:
    """Return (original_path, entries by session id) from sessions-index.json."""
    path = project_dir / "sessions-index.json"
    if not path.exists():
        return "", {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        logger.warning(f"ignoring unreadable {path}")
        return "", {}
    if not isinstance(data, dict):
        return "", {}
    entries: dict[str, dict[str, Any]] = {}
    for entry in data.get("entries") or []:
        if isinstance(entry, dict) and entry.get("sessionId"):
            entries[str(entry["sessionId"])] = entry
    return str(data.get("originalPath") or ""), entries


def decode_project_dir(dir_name: str) -> str:
    # "-home-me-repo" -> "/home/me/repo" (lossy for paths containing "-")
    return "/" + dir_name.lstrip("-").replace("-", "/")


class ConversationIndex:
    """Thread-safe SQLite DAO for the transcript search index."""

    def __init__(
        self,
        db_path: str | Path,
        projects_dir: str | Path,
        *,
        days_back: int = 90,
        cooldown_s: float = 10.0,
    ):
        self._db_path = str(db_path)
        Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._projects_dir = Path(projects_dir)
        self._days_back = days_back
        self._cooldown_s = cooldown_s
        self._last_index_at: float | None = None
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()
        self._ensure_schema()

    # ── Connection ────────────────────────────────────────────────

    def _get_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(self._db_path, check_same_thread=False, timeout=30.0)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA synchronous=NORMAL")
            self._conn.execute("PRAGMA busy_timeout=30000")
        return self._conn

    def _ensure_schema(self) -> None:
        with self._lock:
            conn = self._get_conn()
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS conversations (
                    session_id    TEXT PRIMARY KEY,
                    project_path  TEXT NOT NULL DEFAULT '',
                    slug          TEXT DEFAULT '',
                    summary       TEXT DEFAULT '',
                    first_prompt  TEXT DEFAULT '',
                    message_count INTEGER DEFAULT 0,
                    created       TEXT DEFAULT '',
                    modified      TEXT DEFAULT '',
                    git_branch    TEXT DEFAULT '',
                    is_sidechain  INTEGER DEFAULT 0,
                    file_mtime    INTEGER DEFAULT 0,
                    full_path     TEXT DEFAULT ''
                );

                CREATE TABLE IF NOT EXISTS messages (
                    uuid          TEXT PRIMARY KEY,
                    session_id    TEXT NOT NULL REFERENCES conversations(session_id),
                    message_type  TEXT NOT NULL,
                    content       TEXT NOT NULL,
                    timestamp     TEXT,
                    is_tool_noise INTEGER DEFAULT 0
                );
                CREATE INDEX IF NOT EXISTS idx_messages_session ON messages(session_id);
                CREATE INDEX IF NOT EXISTS idx_conversations_modified ON conversations(modified DESC);
                CREATE INDEX IF NOT EXISTS idx_conversations_project ON conversations(project_path);

                CREATE VIRTUAL TABLE IF NOT EXISTS message_fts USING fts5(
                    session_id UNINDEXED,
                    content
                );
                """
            )
            conn.commit()

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    # ── Indexing ──────────────────────────────────────────────────

    def ensure_index(self, *, force: bool = False) -> int:
        """Index new or changed transcripts. Returns the number of files indexed."""
        now = time.monotonic()
        with self._lock:
            if (
                not force
                and self._last_index_at is not None
                and now - self._last_index_at < self._cooldown_s
            ):
                return 0
            self._last_index_at = now

        if not self._projects_dir.is_dir():
            return 0

        cutoff_ms = (time.time() - self._days_back * 86400) * 1000
        indexed = 0
        skipped = 0

        for project_dir in sorted(self._projects_dir.iterdir()):
            if project_dir.name.startswith(".") or not project_dir.is_dir():
                continue
            original_path, entries = _read_sessions_index(project_dir)

            for path in sorted(project_dir.iterdir()):
                if not _UUID_FILE.match(path.name):
                    continue
                session_id = path.stem
                try:
                    mtime_ms = path.stat().st_mtime * 1000
                except OSError:
                    continue
                if mtime_ms < cutoff_ms:
                    skipped += 1
                    continue
                if self._is_current(session_id, mtime_ms):
                    skipped += 1
                    continue
                entry = entries.get(session_id)
                if entry and entry.get("isSidechain"):
                    continue
                try:
                    if self.index_file(path, entry=entry, original_path=original_path):
                        indexed += 1
                except (OSError, sqlite3.Error):
                    logger.exception(f"failed to index conversation {session_id}")

        if indexed:
            logger.info(f"indexed {indexed} conversations ({skipped} skipped)")
        return indexed

    def _is_current(self, session_id: str, mtime_ms: float) -> bool:
        with self._lock:
            row = self._get_conn().execute(
                "SELECT file_mtime FROM conversations WHERE session_id = ?",
                (session_id,),
            ).fetchone()
        return row is not None and abs(int(row["file_mtime"] or 0) - mtime_ms) < MTIME_TOLERANCE_MS

    def index_file(
        self,
        path: str | Path,
        *,
        entry: dict[str, Any] | None = None,
        original_path: str = "",
    ) -> bool:
        """(Re)index one transcript file. Returns False when it holds no conversation."""
        path = Path(path)
        session_id = path.stem
        mtime_ms = int(path.stat().st_mtime * 1000)

        meta: dict[str, Any] = {
            "slug": "",
            "git_branch": "",
            "project_path": original_path,
            "first_prompt": "",
            "message_count": 0,
        }
        first_ts = ""
        last_ts = ""
        sidechain = False
        messages: list[tuple[str, str, str, str, int]] = []

        with path.open(encoding="utf-8", errors="replace") as fh:
            for line in fh:
                if not line.strip():
                    continue
                try:
                    record = json.loads(line)
                except ValueError:
                    continue
                if not isinstance(record, dict):
                    continue

                if not meta["slug"] and record.get("slug"):
                    meta["slug"] = str(record["slug"])
                if not meta["git_branch"] and record.get("gitBranch"):
                    meta["git_branch"] = str(record["gitBranch"])
                if not meta["project_path"] and record.get("cwd"):
                    meta["project_path"] = str(record["cwd"])
                if record.get("isSidechain"):
                    sidechain = True
                ts = record.get("timestamp")
                if ts:
                    first_ts = first_ts or str(ts)
                    last_ts = str(ts)

                kind = record.get("type")
                if kind not in ("user", "assistant"):
                    continue
                if not record.get("uuid") or not record.get("message"):
                    continue

                meta["message_count"] += 1
                message = record["message"]
                if (
                    not meta["first_prompt"]
                    and kind == "user"
                    and isinstance(message, dict)
                    and isinstance(message.get("content"), str)
                ):
                    meta["first_prompt"] = message["content"][:FIRST_PROMPT_MAX]

                content = extract_content(record)
                if len(content) < MIN_CONTENT_LENGTH:
                    continue
                noise = 1 if detect_tool_noise(content) else 0
                messages.append((str(record["uuid"]), str(kind), content, str(ts or ""), noise))

        if not meta["message_count"] or sidechain:
            return False

        entry = entry or {}
        row = (
            session_id,
            entry.get("projectPath") or meta["project_path"] or "",
            meta["slug"],
            entry.get("summary") or "",
            entry.get("firstPrompt") or meta["first_prompt"] or "",
            entry.get("messageCount") or meta["message_count"],
            entry.get("created") or first_ts,
            entry.get("modified") or last_ts,
            entry.get("gitBranch") or meta["git_branch"] or "",
            0,
            mtime_ms,
            str(path),
        )

        with self._lock:
            conn = self._get_conn()
            with conn:
                conn.execute("DELETE FROM messages WHERE session_id = ?", (session_id,))
                conn.execute("DELETE FROM message_fts WHERE session_id = ?", (session_id,))
                conn.execute(
                    """
                    INSERT OR REPLACE INTO conversations
                        (session_id, project_path, slug, summary, first_prompt, message_count,
                         created, modified, git_branch, is_sidechain, file_mtime, full_path)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    row,
                )
                conn.executemany(
                    """
                    INSERT OR IGNORE INTO messages
                        (uuid, session_id, message_type, content, timestamp, is_tool_noise)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    [(m[0], session_id, m[1], m[2], m[3], m[4]) for m in messages],
                )
                conn.executemany(
                    "INSERT INTO message_fts (session_id, content) VALUES (?, ?)",
                    [(session_id, m[2]) for m in messages if not m[4]],
                )
        return True

    # ── Search ────────────────────────────────────────────────────

    def search(
        self,
        query: str | None = None,
        *,
        project_path: str | None = None,
        limit: int = DEFAULT_LIMIT,
        refresh: bool = True,
    ) -> list[dict[str, Any]]:
        if refresh:
            self.ensure_index()
        text = (query or "").strip()
        if not text:
            return self.list_recent(project_path=project_path, limit=limit)
        try:
            return self._search_fts(text, project_path, limit)
        except sqlite3.OperationalError as e:
            logger.warning(f"FTS search failed, falling back to LIKE: {e}")
            return self._search_like(text, project_path, limit)

    def _search_fts(self, text: str, project_path: str | None, limit: int) -> list[dict[str, Any]]:
        fts_query = sanitize(text)
        with self._lock:
            conn = self._get_conn()
            ids = [
                r["session_id"]
                for r in conn.execute(
                    "SELECT DISTINCT session_id FROM message_fts WHERE message_fts MATCH ?",
                    (fts_query,),
                ).fetchall()
            ]
            if not ids:
                return []

            placeholders = ",".join("?" for _ in ids)
            sql = (
                f"SELECT {_RESULT_COLUMNS} FROM conversations c "
                f"WHERE c.session_id IN ({placeholders}) AND c.is_sidechain = 0"
            )
            params: list[Any] = list(ids)
            if project_path:
                sql += " AND c.project_path = ?"
                params.append(project_path)
            sql += " ORDER BY c.modified DESC LIMIT ?"
            params.append(int(limit))

            results = [self._row_to_result(r) for r in conn.execute(sql, params).fetchall()]
            for result in results:
                snip = conn.execute(
                    "SELECT snippet(message_fts, 1, '>>>', '<<<', '...', 30) AS snip "
                    "FROM message_fts WHERE message_fts MATCH ? AND session_id = ? LIMIT 1",
                    (fts_query, result["session_id"]),
                ).fetchone()
                if snip and snip["snip"]:
                    result["match_snippet"] = snip["snip"]
        return results

    def _search_like(self, text: str, project_path: str | None, limit: int) -> list[dict[str, Any]]:
        pattern = f"%{text}%"
        sql = (
            f"SELECT DISTINCT {_RESULT_COLUMNS} FROM conversations c "
            "LEFT JOIN messages m ON m.session_id = c.session_id "
            "WHERE (c.summary LIKE ? OR c.first_prompt LIKE ? OR c.slug LIKE ? OR m.content LIKE ?) "
            "AND c.is_sidechain = 0"
        )
        params: list[Any] = [pattern, pattern, pattern, pattern]
        if project_path:
            sql += " AND c.project_path = ?"
            params.append(project_path)
        sql += " ORDER BY c.modified DESC LIMIT ?"
        params.append(int(limit))
        with self._lock:
            rows = self._get_conn().execute(sql, params).fetchall()
        return [self._row_to_result(r) for r in rows]

    def list_recent(self, *, project_path: str | None = None, limit: int = DEFAULT_LIMIT) -> list[dict[str, Any]]:
        sql = f"SELECT {_RESULT_COLUMNS} FROM conversations c WHERE c.is_sidechain = 0"
        params: list[Any] = []
        if project_path:
            sql += " AND c.project_path = ?"
            params.append(project_path)
        sql += " ORDER BY c.modified DESC LIMIT ?"
        params.append(int(limit))
        with self._lock:
            rows = self._get_conn().execute(sql, params).fetchall()
        return [self._row_to_result(r) for r in rows]

    @staticmethod
    def _row_to_result(row: sqlite3.Row) -> dict[str, Any]:
        d = dict(row)
        full_path = d.pop("full_path", "") or ""
        return {
            "session_id": d["session_id"],
            "slug": d.get("slug") or "",
            "summary": d.get("summary") or "",
            "first_prompt": d.get("first_prompt") or "",
            "message_count": int(d.get("message_count") or 0),
            "created": d.get("created") or "",
            "modified": d.get("modified") or "",
            "git_branch": d.get("git_branch") or "",
            "project_path": d.get("project_path") or "",
            "match_snippet": None,
            "file_exists": bool(full_path) and Path(full_path).exists(),
        }

    # ── Projects ──────────────────────────────────────────────────

    def list_projects(self) -> list[dict[str, str]]:
        if not self._projects_dir.is_dir():
            return []
        out: list[dict[str, str]] = []
        for project_dir in sorted(self._projects_dir.iterdir()):
            if project_dir.name.startswith(".") or not project_dir.is_dir():
                continue
            original_path, _entries = _read_sessions_index(project_dir)
            if original_path:
                out.append({"dir_name": project_dir.name, "original_path": original_path})
                continue
            if any(_UUID_FILE.match(p.name) for p in project_dir.iterdir()):
                out.append(
                    {"dir_name": project_dir.name, "original_path": decode_project_dir(project_dir.name)}
                )
        return out
