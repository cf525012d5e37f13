"""SQLite query cache derived from the durable log."""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field
from pathlib import Path

MEMORY = ":memory:"

_SCHEMA = """
CREATE TABLE IF NOT EXISTS issues (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    body TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL,
    assignee TEXT,
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL
);
CREATE TABLE IF NOT EXISTS issue_tags (
    issue_id TEXT NOT NULL,
    tag TEXT NOT NULL,
    PRIMARY KEY(issue_id, tag),
    FOREIGN KEY(issue_id) REFERENCES issues(id) ON DELETE CASCADE
);
CREATE TABLE IF NOT EXISTS issue_deps (
    src_id TEXT NOT NULL,
    rel_type TEXT NOT NULL,
    dst_id TEXT NOT NULL,
    created_at INTEGER NOT NULL,
    PRIMARY KEY(src_id, rel_type, dst_id),
    FOREIGN KEY(src_id) REFERENCES issues(id) ON DELETE CASCADE,
    FOREIGN KEY(dst_id) REFERENCES issues(id) ON DELETE CASCADE
);
CREATE TABLE IF NOT EXISTS log_index (
    digest TEXT PRIMARY KEY,
    record_key TEXT NOT NULL,
    prev TEXT,
    fingerprint TEXT NOT NULL,
    canonical TEXT NOT NULL,
    line_no INTEGER NOT NULL
);
CREATE TABLE IF NOT EXISTS log_heads (
    record_key TEXT PRIMARY KEY,
    digest TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS sync_state (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_issues_status_created
    ON issues(status, created_at, id);
CREATE INDEX IF NOT EXISTS idx_issue_tags_tag ON issue_tags(tag);
CREATE INDEX IF NOT EXISTS idx_issue_deps_src ON issue_deps(src_id, rel_type);
CREATE INDEX IF NOT EXISTS idx_issue_deps_dst ON issue_deps(dst_id, rel_type);
CREATE INDEX IF NOT EXISTS idx_log_index_key_prev ON log_index(record_key, prev);
"""


@dataclass(frozen=True)
class SyncState:
    """How much of the log the cache has consumed."""

    offset: int = 0
    chain: str = ""
    log_mtime_ns: int = 0
    log_size: int = 0


@dataclass
class Cache:
    db_path: Path | str
    create_on_connect: bool = True
    _conn: sqlite3.Connection | None = field(default=None, init=False, repr=False)

    @classmethod
    def in_memory(cls) -> "Cache":
        return cls(MEMORY)

    @property
    def is_memory(self) -> bool:
        return str(self.db_path) == MEMORY

    def exists(self) -> bool:
        if self.is_memory or self._conn is not None:
            return True
        return Path(self.db_path).exists()

    def _connect(self) -> sqlite3.Connection:
        if self._conn is not None:
            return self._conn
        if not self.is_memory:
            path = Path(self.db_path)
            if self.create_on_connect:
                path.parent.mkdir(parents=True, exist_ok=True)
            elif not path.exists():
                raise FileNotFoundError(str(path))
        conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON")
        conn.executescript(_SCHEMA)
        self._conn = conn
        return conn

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def reset(self, conn: sqlite3.Connection) -> None:
        """Drop every derived row; callers run this inside a transaction."""
        for table in (
            "issue_deps",
            "issue_tags",
            "issues",
            "log_index",
            "log_heads",
            "sync_state",
        ):
            conn.execute(f"DELETE FROM {table}")

    def sync_state(self) -> SyncState:
        if not self.exists():
            return SyncState()
        rows = self._connect().execute("SELECT key, value FROM sync_state").fetchall()
        values = {str(row["key"]): str(row["value"]) for row in rows}
        return SyncState(
            offset=int(values.get("offset", "0")),
            chain=values.get("chain", ""),
            log_mtime_ns=int(values.get("log_mtime_ns", "0")),
            log_size=int(values.get("log_size", "0")),
        )

    def save_sync_state(self, conn: sqlite3.Connection, state: SyncState) -> None:
        conn.executemany(
            """
            INSERT INTO sync_state(key, value) VALUES(?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value
            """,
            (
                ("offset", str(state.offset)),
                ("chain", state.chain),
                ("log_mtime_ns", str(state.log_mtime_ns)),
                ("log_size", str(state.log_size)),
            ),
        )

    # -- log index ----------------------------------------------------------

    def head(self, conn: sqlite3.Connection, record_key: str) -> str | None:
        row = conn.execute(
            "SELECT digest FROM log_heads WHERE record_key = ?",
            (record_key,),
        ).fetchone()
        return str(row["digest"]) if row is not None else None

    def canonical_digest(self, conn: sqlite3.Connection, digest: str) -> str:
        row = conn.execute(
            "SELECT canonical FROM log_index WHERE digest = ?",
            (digest,),
        ).fetchone()
        return str(row["canonical"]) if row is not None else digest

    def seen(self, conn: sqlite3.Connection, digest: str) -> bool:
        row = conn.execute(
            "SELECT 1 FROM log_index WHERE digest = ?",
            (digest,),
        ).fetchone()
        return row is not None

    def applied_successor(
        self,
        conn: sqlite3.Connection,
        record_key: str,
        prev: str | None,
    ) -> sqlite3.Row | None:
        return conn.execute(
            """
            SELECT digest, fingerprint, line_no
            FROM log_index
            WHERE record_key = ? AND prev IS ? AND canonical = digest
            """,
            (record_key, prev),
        ).fetchone()

    def index_record(
        self,
        conn: sqlite3.Connection,
        *,
        digest: str,
        record_key: str,
        prev: str | None,
        fingerprint: str,
        canonical: str,
        line_no: int,
    ) -> None:
        conn.execute(
            """
            INSERT INTO log_index(digest, record_key, prev, fingerprint, canonical, line_no)
            VALUES(?, ?, ?, ?, ?, ?)
            """,
            (digest, record_key, prev, fingerprint, canonical, line_no),
        )
        if canonical == digest:
            conn.execute(
                """
                INSERT INTO log_heads(record_key, digest) VALUES(?, ?)
                ON CONFLICT(record_key) DO UPDATE SET digest = excluded.digest
                """,
                (record_key, digest),
            )
