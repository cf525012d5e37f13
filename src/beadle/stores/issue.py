from __future__ import annotations

import sqlite3
from collections.abc import Callable, Iterator
from contextlib import AbstractContextManager, nullcontext
from dataclasses import dataclass, field
from typing import Any

from ..errors import NotFoundError
from .cache import Cache

ISSUE_STATUSES = (
    "open",
    "in-progress",
    "closed",
)
TERMINAL_STATUSES = {"closed"}
_STATUS_ALIASES = {"in_progress": "in-progress"}

_ISSUE_COLUMNS = "i.id, i.title, i.body, i.status, i.assignee, i.created_at, i.updated_at"
_PAGE_SIZE = 200


def normalize_status(status: str) -> str:
    value = status.strip().lower()
    value = _STATUS_ALIASES.get(value, value)
    if value not in ISSUE_STATUSES:
        raise ValueError(f"invalid status: {status}")
    return value


def normalize_title(title: str) -> str:
    clean = title.strip()
    if not clean:
        raise ValueError("title cannot be empty")
    return clean


def normalize_tags(tags: list[str] | None) -> list[str]:
    return sorted({tag.strip() for tag in (tags or []) if tag.strip()})


def normalize_assignee(assignee: str | None) -> str | None:
    if assignee is None:
        return None
    return assignee.strip() or None


def normalize_limit(limit: int | None) -> int | None:
    if limit is None:
        return None
    value = int(limit)
    if value < 1:
        raise ValueError(f"limit must be a positive integer: {limit}")
    return value


def _issue_from_row(row: sqlite3.Row, tags: list[str]) -> dict[str, Any]:
    return {
        "id": str(row["id"]),
        "title": str(row["title"]),
        "body": str(row["body"]),
        "status": str(row["status"]),
        "tags": tags,
        "assignee": (str(row["assignee"]) if row["assignee"] is not None else None),
        "created_at": int(row["created_at"]),
        "updated_at": int(row["updated_at"]),
    }


@dataclass(frozen=True)
class IssueListing:
    """Lazy, restartable view over issues matching a filter.

    Every iteration re-queries the cache page by page, so iterating twice over
    an unchanged cache yields the same rows.

    ``refresh`` runs once at the start of each iteration and ``lock`` is held
    around it and around every page fetch. Rows are yielded with the lock
    released, so a consumer may mutate the tracker mid-iteration.
    """

    store: IssueStore
    status: str | None = None
    tag: str | None = None
    assignee: str | None = None
    search: str | None = None
    where: Callable[[dict[str, Any]], bool] | None = None
    limit: int | None = None
    lock: AbstractContextManager[Any] | None = field(default=None, compare=False, repr=False)
    refresh: Callable[[], None] | None = field(default=None, compare=False, repr=False)

    def __iter__(self) -> Iterator[dict[str, Any]]:
        guard = self.lock if self.lock is not None else nullcontext()
        if self.refresh is not None:
            with guard:
                self.refresh()
        emitted = 0
        for issue in self.store._iter_matching(
            status=self.status,
            tag=self.tag,
            assignee=self.assignee,
            search=self.search,
            guard=guard,
        ):
            if self.where is not None and not self.where(issue):
                continue
            if self.limit is not None and emitted >= self.limit:
                return
            emitted += 1
            yield issue


@dataclass
class IssueStore:
    """Issue rows and tags inside the query cache."""

    cache: Cache

    # -- reads --------------------------------------------------------------

    def get(self, issue_id: str) -> dict[str, Any] | None:
        issue_key = issue_id.strip()
        if not issue_key or not self.cache.exists():
            return None
        conn = self.cache._connect()
        row = conn.execute(
            f"SELECT {_ISSUE_COLUMNS} FROM issues i WHERE i.id = ?",
            (issue_key,),
        ).fetchone()
        if row is None:
            return None
        tags = self._tags_for_ids(conn, [issue_key]).get(issue_key, [])
        return _issue_from_row(row, tags)

    def require(self, issue_id: str) -> dict[str, Any]:
        issue = self.get(issue_id)
        if issue is None:
            raise NotFoundError(issue_id.strip())
        return issue

    def exists(self, conn: sqlite3.Connection, issue_id: str) -> bool:
        row = conn.execute("SELECT 1 FROM issues WHERE id = ?", (issue_id,)).fetchone()
        return row is not None

    def list(
        self,
        *,
        status: str | None = None,
        tag: str | None = None,
        assignee: str | None = None,
        search: str | None = None,
        where: Callable[[dict[str, Any]], bool] | None = None,
        limit: int | None = None,
        lock: AbstractContextManager[Any] | None = None,
        refresh: Callable[[], None] | None = None,
    ) -> IssueListing:
        return IssueListing(
            store=self,
            status=normalize_status(status) if status else None,
            tag=tag.strip() if tag and tag.strip() else None,
            assignee=assignee.strip() if assignee and assignee.strip() else None,
            search=search.strip() if search and search.strip() else None,
            where=where,
            limit=normalize_limit(limit),
            lock=lock,
            refresh=refresh,
        )

    def _iter_matching(
        self,
        *,
        status: str | None,
        tag: str | None,
        assignee: str | None,
        search: str | None,
        guard: AbstractContextManager[Any],
    ) -> Iterator[dict[str, Any]]:
        where: list[str] = []
        params: list[Any] = []
        if status:
            where.append("i.status = ?")
            params.append(status)
        if tag:
            where.append(
                "EXISTS (SELECT 1 FROM issue_tags t WHERE t.issue_id = i.id AND t.tag = ?)"
            )
            params.append(tag)
        if assignee:
            where.append("i.assignee = ?")
            params.append(assignee)
        if search:
            like = f"%{search}%"
            where.append("(i.id LIKE ? OR i.title LIKE ? OR i.body LIKE ?)")
            params.extend((like, like, like))

        cursor: tuple[int, str] | None = None
        while True:
            clauses = list(where)
            page_params = list(params)
            if cursor is not None:
                clauses.append("(i.created_at > ? OR (i.created_at = ? AND i.id > ?))")
                page_params.extend((cursor[0], cursor[0], cursor[1]))
            query = f"SELECT {_ISSUE_COLUMNS} FROM issues i"
            if clauses:
                query += " WHERE " + " AND ".join(clauses)
            query += " ORDER BY i.created_at ASC, i.id ASC LIMIT ?"
            page_params.append(_PAGE_SIZE)

            with guard:
                if not self.cache.exists():
                    return
                conn = self.cache._connect()
                rows = conn.execute(query, tuple(page_params)).fetchall()
                if not rows:
                    return
                tags = self._tags_for_ids(conn, [str(row["id"]) for row in rows])
            for row in rows:
                yield _issue_from_row(row, tags.get(str(row["id"]), []))
            if len(rows) < _PAGE_SIZE:
                return
            last = rows[-1]
            cursor = (int(last["created_at"]), str(last["id"]))

    def issues_for_ids(
        self,
        conn: sqlite3.Connection,
        issue_ids: list[str],
    ) -> dict[str, dict[str, Any]]:
        if not issue_ids:
            return {}
        placeholders = ", ".join("?" for _ in issue_ids)
        rows = conn.execute(
            f"SELECT {_ISSUE_COLUMNS} FROM issues i WHERE i.id IN ({placeholders})",
            tuple(issue_ids),
        ).fetchall()
        tags = self._tags_for_ids(conn, [str(row["id"]) for row in rows])
        return {
            str(row["id"]): _issue_from_row(row, tags.get(str(row["id"]), []))
            for row in rows
        }

    def count_by_status(self) -> dict[str, int]:
        counts = {status: 0 for status in ISSUE_STATUSES}
        if not self.cache.exists():
            return counts
        rows = self.cache._connect().execute(
            "SELECT status, COUNT(*) AS n FROM issues GROUP BY status"
        ).fetchall()
        for row in rows:
            counts[str(row["status"])] = int(row["n"])
        return counts

    def all_ids(self, conn: sqlite3.Connection) -> list[str]:
        rows = conn.execute("SELECT id FROM issues ORDER BY id ASC").fetchall()
        return [str(row["id"]) for row in rows]

    # -- writes (called while replaying log records) ------------------------

    def insert(self, conn: sqlite3.Connection, issue_id: str, issue: dict[str, Any]) -> None:
        conn.execute(
            """
            INSERT INTO issues(id, title, body, status, assignee, created_at, updated_at)
            VALUES(?, ?, ?, ?, ?, ?, ?)
            """,
            (
                issue_id,
                normalize_title(str(issue["title"])),
                str(issue.get("body") or ""),
                normalize_status(str(issue["status"])),
                normalize_assignee(issue.get("assignee")),
                int(issue["created_at"]),
                int(issue["updated_at"]),
            ),
        )
        for tag in normalize_tags(list(issue.get("tags") or [])):
            conn.execute(
                "INSERT INTO issue_tags(issue_id, tag) VALUES(?, ?)",
                (issue_id, tag),
            )

    def apply_changes(
        self,
        conn: sqlite3.Connection,
        issue_id: str,
        changes: dict[str, Any],
        at: int,
    ) -> None:
        set_parts: list[str] = []
        params: list[Any] = []
        for column in ("title", "body", "status", "assignee"):
            if column not in changes:
                continue
            value = changes[column]
            if column == "title":
                value = normalize_title(str(value))
            elif column == "status":
                value = normalize_status(str(value))
            elif column == "assignee":
                value = normalize_assignee(value)
            else:
                value = str(value or "")
            set_parts.append(f"{column} = ?")
            params.append(value)

        params.extend((at, issue_id))
        cur = conn.execute(
            f"UPDATE issues SET {', '.join(set_parts + ['updated_at = ?'])} WHERE id = ?",
            tuple(params),
        )
        if cur.rowcount == 0:
            raise NotFoundError(issue_id)

    def insert_tag(self, conn: sqlite3.Connection, issue_id: str, tag: str, at: int) -> None:
        if not self.exists(conn, issue_id):
            raise NotFoundError(issue_id)
        conn.execute(
            "INSERT OR IGNORE INTO issue_tags(issue_id, tag) VALUES(?, ?)",
            (issue_id, tag.strip()),
        )
        conn.execute("UPDATE issues SET updated_at = ? WHERE id = ?", (at, issue_id))

    def delete_tag(self, conn: sqlite3.Connection, issue_id: str, tag: str, at: int) -> None:
        if not self.exists(conn, issue_id):
            raise NotFoundError(issue_id)
        conn.execute(
            "DELETE FROM issue_tags WHERE issue_id = ? AND tag = ?",
            (issue_id, tag.strip()),
        )
        conn.execute("UPDATE issues SET updated_at = ? WHERE id = ?", (at, issue_id))

    def _tags_for_ids(
        self,
        conn: sqlite3.Connection,
        issue_ids: list[str],
    ) -> dict[str, list[str]]:
        if not issue_ids:
            return {}

        placeholders = ", ".join("?" for _ in issue_ids)
        rows = conn.execute(
            f"""
            SELECT issue_id, tag
            FROM issue_tags
            WHERE issue_id IN ({placeholders})
            ORDER BY tag ASC
            """,
            tuple(issue_ids),
        ).fetchall()

        tags: dict[str, list[str]] = {issue_id: [] for issue_id in issue_ids}
        for row in rows:
            tags[str(row["issue_id"])].append(str(row["tag"]))
        return tags
