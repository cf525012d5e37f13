"""Reconcile the durable log with the query cache.

The log is the only authoritative state. The cache is rebuilt or extended by
replaying log records through :class:`LogReplayer`, which is also the path
live mutations take, so the cache never holds anything the log cannot
reproduce.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .errors import BeadleError, LogFormatError, MergeConflictError
from .stores.cache import Cache, SyncState
from .stores.graph import DependencyGraph
from .stores.issue import IssueStore
from .stores.log import LogEntry, MutationLog, chain_digest, parse_line, record_digest

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ImportResult:
    mode: str  # "rebuild", "incremental", "up-to-date"
    records: int
    applied: int = 0
    collapsed: int = 0


@dataclass(frozen=True)
class ExportResult:
    path: Path
    records: int
    issues: int
    edges: int


class LogReplayer:
    """Applies log entries to the cache inside the caller's transaction."""

    def __init__(self, cache: Cache, conn: sqlite3.Connection) -> None:
        self.cache = cache
        self.conn = conn
        self.store = IssueStore(cache)
        self.graph = DependencyGraph(cache)

    def replay(self, entry: LogEntry) -> bool:
        """Apply one entry. Returns False when it collapsed into an earlier one."""
        if self.cache.seen(self.conn, entry.digest):
            logger.debug("skipping duplicate record at line %d", entry.line_no)
            return False

        key = entry.key
        raw_prev = entry.record.get("prev")
        prev = self.cache.canonical_digest(self.conn, raw_prev) if raw_prev else None
        fingerprint = entry.fingerprint

        sibling = self.cache.applied_successor(self.conn, key, prev)
        if sibling is not None:
            if str(sibling["fingerprint"]) != fingerprint:
                first = int(sibling["line_no"])
                raise MergeConflictError(
                    [
                        {
                            "key": key,
                            "lines": [first, entry.line_no],
                            "message": (
                                f"divergent history for {key} "
                                f"at lines {first} and {entry.line_no}"
                            ),
                        }
                    ]
                )
            logger.info(
                "collapsing record at line %d into identical line %d",
                entry.line_no,
                int(sibling["line_no"]),
            )
            self._index(entry, key, prev, fingerprint, canonical=str(sibling["digest"]))
            return False

        head = self.cache.head(self.conn, key)
        if prev != head:
            raise MergeConflictError(
                [
                    {
                        "key": key,
                        "lines": [entry.line_no],
                        "message": (
                            f"record at line {entry.line_no} for {key} "
                            "does not follow the recorded history"
                        ),
                    }
                ]
            )

        try:
            self._apply(entry.record)
        except (BeadleError, sqlite3.IntegrityError) as exc:
            raise MergeConflictError(
                [
                    {
                        "key": key,
                        "lines": [entry.line_no],
                        "message": f"line {entry.line_no} cannot be applied: {exc}",
                    }
                ]
            ) from exc
        except ValueError as exc:
            raise LogFormatError(entry.line_no, str(exc)) from exc

        self._index(entry, key, prev, fingerprint, canonical=entry.digest)
        return True

    def _index(
        self,
        entry: LogEntry,
        key: str,
        prev: str | None,
        fingerprint: str,
        *,
        canonical: str,
    ) -> None:
        self.cache.index_record(
            self.conn,
            digest=entry.digest,
            record_key=key,
            prev=prev,
            fingerprint=fingerprint,
            canonical=canonical,
            line_no=entry.line_no,
        )

    def _apply(self, record: dict[str, Any]) -> None:
        op = record["op"]
        at = int(record["at"])
        if op == "create":
            self.store.insert(self.conn, str(record["id"]), record["issue"])
        elif op == "update":
            self.store.apply_changes(self.conn, str(record["id"]), record["changes"], at)
        elif op == "close":
            self.store.apply_changes(self.conn, str(record["id"]), {"status": "closed"}, at)
        elif op == "tag_add":
            self.store.insert_tag(self.conn, str(record["id"]), str(record["tag"]), at)
        elif op == "tag_remove":
            self.store.delete_tag(self.conn, str(record["id"]), str(record["tag"]), at)
        elif op == "dep_add":
            src_id, rel_type, dst_id = str(record["src"]), str(record["type"]), str(record["dst"])
            self.graph.check_edge(self.conn, src_id, dst_id, rel_type)
            self.graph.insert_edge(self.conn, src_id, rel_type, dst_id, at)
        elif op == "dep_remove":
            self.graph.delete_edge(
                self.conn, str(record["src"]), str(record["type"]), str(record["dst"])
            )
        else:
            raise ValueError(f"unknown op {op!r}")


def _prefix_chain(lines: list[tuple[int, str]], count: int) -> str:
    chain = ""
    for _line_no, text in lines[:count]:
        chain = chain_digest(chain, record_digest(text))
    return chain


def is_stale(log: MutationLog, cache: Cache) -> bool:
    """True when the log changed since the cache last consumed it."""
    state = cache.sync_state()
    stat = log.stat()
    if stat is None:
        return state.offset > 0
    mtime_ns, size = stat
    return mtime_ns > state.log_mtime_ns or size != state.log_size


def import_log(log: MutationLog, cache: Cache, *, full: bool = False) -> ImportResult:
    """Bring the cache up to date with the log.

    When the cache's consumed prefix still matches the log, only the new
    records are replayed; otherwise the cache is rebuilt from empty. The
    import runs in one transaction, so a conflict leaves the cache untouched.
    """
    lines = log.lines()
    stat = log.stat()
    state = cache.sync_state()

    mode = "rebuild"
    start = 0
    chain = ""
    if not full and state.offset <= len(lines):
        if _prefix_chain(lines, state.offset) == state.chain:
            mode = "incremental" if state.offset < len(lines) else "up-to-date"
            start = state.offset
            chain = state.chain

    applied = 0
    collapsed = 0
    conn = cache._connect()
    with conn:
        if mode == "rebuild":
            logger.info("rebuilding cache from %s (%d records)", log.path, len(lines))
            cache.reset(conn)
        replayer = LogReplayer(cache, conn)
        for line_no, text in lines[start:]:
            entry = parse_line(line_no, text)
            if replayer.replay(entry):
                applied += 1
            else:
                collapsed += 1
            chain = chain_digest(chain, entry.digest)
        mtime_ns, size = stat or (0, 0)
        cache.save_sync_state(
            conn,
            SyncState(
                offset=len(lines),
                chain=chain,
                log_mtime_ns=mtime_ns,
                log_size=size,
            ),
        )

    logger.debug(
        "import %s: %d applied, %d collapsed, %d records",
        mode,
        applied,
        collapsed,
        len(lines),
    )
    return ImportResult(mode=mode, records=len(lines), applied=applied, collapsed=collapsed)


def snapshot_records(cache: Cache) -> list[dict[str, Any]]:
    """Current state as log records: issues by id, then edges."""
    if not cache.exists():
        return []
    store = IssueStore(cache)
    graph = DependencyGraph(cache)
    conn = cache._connect()

    ids = store.all_ids(conn)
    issues = store.issues_for_ids(conn, ids)
    records: list[dict[str, Any]] = []
    for issue_id in ids:
        issue = issues[issue_id]
        records.append(
            {
                "op": "create",
                "id": issue_id,
                "at": issue["updated_at"],
                "prev": None,
                "issue": {
                    "title": issue["title"],
                    "body": issue["body"],
                    "status": issue["status"],
                    "tags": issue["tags"],
                    "assignee": issue["assignee"],
                    "created_at": issue["created_at"],
                    "updated_at": issue["updated_at"],
                },
            }
        )
    for src_id, rel_type, dst_id, created_at in graph.all_edges(conn):
        records.append(
            {
                "op": "dep_add",
                "src": src_id,
                "type": rel_type,
                "dst": dst_id,
                "at": created_at,
                "prev": None,
            }
        )
    return records


def export_log(
    log: MutationLog,
    cache: Cache,
    *,
    path: Path | None = None,
) -> ExportResult:
    """Write the cache state as a compacted, deterministic log.

    Exporting onto the durable log itself replaces its history with the
    snapshot and rebuilds the cache index from it.
    """
    records = snapshot_records(cache)
    target = log.rewrite(records, path)
    issues = sum(1 for record in records if record["op"] == "create")
    if target.resolve() == log.path.resolve():
        import_log(log, cache, full=True)
    logger.info("exported %d records to %s", len(records), target)
    return ExportResult(
        path=target,
        records=len(records),
        issues=issues,
        edges=len(records) - issues,
    )
