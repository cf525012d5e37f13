"""Ready-work resolution over the query cache."""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from typing import Any

from .stores.cache import Cache
from .stores.issue import IssueStore, normalize_limit

_OPEN_BLOCKER = """
    EXISTS (
        SELECT 1
        FROM issue_deps d
        JOIN issues blocker ON blocker.id = d.src_id
        WHERE d.rel_type = 'blocks'
          AND d.dst_id = i.id
          AND blocker.status != 'closed'
    )
"""


@dataclass
class ReadyResolver:
    """Answers "what can be worked on now" from the current snapshot only."""

    cache: Cache
    store: IssueStore

    def _open_ids(
        self,
        conn: sqlite3.Connection,
        *,
        blocked: bool,
        tags: list[str],
        assignee: str | None,
    ) -> list[str]:
        clauses = ["i.status = 'open'", _OPEN_BLOCKER if blocked else f"NOT {_OPEN_BLOCKER}"]
        params: list[Any] = []
        for index, tag in enumerate(tags):
            alias = f"t{index}"
            clauses.append(
                f"""
                EXISTS (
                    SELECT 1 FROM issue_tags {alias}
                    WHERE {alias}.issue_id = i.id AND {alias}.tag = ?
                )
                """
            )
            params.append(tag)
        if assignee:
            clauses.append("i.assignee = ?")
            params.append(assignee)
        rows = conn.execute(
            f"""
            SELECT i.id FROM issues i
            WHERE {' AND '.join(clauses)}
            ORDER BY i.created_at ASC, i.id ASC
            """,
            tuple(params),
        ).fetchall()
        return [str(row["id"]) for row in rows]

    def ready(
        self,
        *,
        tags: list[str] | None = None,
        assignee: str | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Open issues with no incoming ``blocks`` edge from a non-closed issue."""
        limit = normalize_limit(limit)
        if not self.cache.exists():
            return []
        required_tags = sorted({tag.strip() for tag in (tags or []) if tag.strip()})
        conn = self.cache._connect()
        ids = self._open_ids(
            conn,
            blocked=False,
            tags=required_tags,
            assignee=assignee.strip() if assignee else None,
        )
        if limit is not None:
            ids = ids[:limit]
        issues = self.store.issues_for_ids(conn, ids)
        return [issues[issue_id] for issue_id in ids]

    def blocked(self) -> list[dict[str, Any]]:
        """Open issues that are not ready, each with its unresolved blockers."""
        if not self.cache.exists():
            return []
        conn = self.cache._connect()
        ids = self._open_ids(conn, blocked=True, tags=[], assignee=None)
        if not ids:
            return []

        placeholders = ", ".join("?" for _ in ids)
        rows = conn.execute(
            f"""
            SELECT d.dst_id, d.src_id
            FROM issue_deps d
            JOIN issues blocker ON blocker.id = d.src_id
            WHERE d.rel_type = 'blocks'
              AND blocker.status != 'closed'
              AND d.dst_id IN ({placeholders})
            ORDER BY d.dst_id ASC, d.src_id ASC
            """,
            tuple(ids),
        ).fetchall()
        blockers_by_id: dict[str, list[str]] = {}
        for row in rows:
            blockers_by_id.setdefault(str(row["dst_id"]), []).append(str(row["src_id"]))

        wanted = set(ids)
        for blocker_ids in blockers_by_id.values():
            wanted.update(blocker_ids)
        issues = self.store.issues_for_ids(conn, sorted(wanted))
        return [
            {
                "issue": issues[issue_id],
                "blockers": [issues[b] for b in blockers_by_id.get(issue_id, [])],
            }
            for issue_id in ids
        ]
