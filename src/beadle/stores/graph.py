from __future__ import annotations

import sqlite3
from collections import deque
from dataclasses import dataclass
from typing import Any

from ..errors import CycleError, DanglingReferenceError, NotFoundError
from .cache import Cache

RELATION_TYPES = (
    "blocks",
    "parent-child",
    "related",
    "discovered-from",
)
# Loops through these are rejected; the others are plain annotations.
HIERARCHICAL_TYPES = ("blocks", "parent-child")
TREE_DIRECTIONS = ("down", "up")
_CLOSED = "closed"


def normalize_relation(rel_type: str) -> str:
    value = rel_type.strip().lower().replace("_", "-")
    if value not in RELATION_TYPES:
        raise ValueError(f"invalid relation type: {rel_type}")
    return value


def _edge_is_active(relation: str, src_status: str, dst_status: str) -> bool:
    src_active = src_status != _CLOSED
    dst_active = dst_status != _CLOSED
    if relation == "blocks":
        return src_active
    if relation == "parent-child":
        return dst_active
    return src_active and dst_active


def _normalize_cycle_nodes(cycle: list[str]) -> tuple[str, ...]:
    path = cycle[:-1]
    if not path:
        return tuple(cycle)
    rotations = [tuple(path[index:] + path[:index]) for index in range(len(path))]
    return min(rotations)


@dataclass
class DependencyGraph:
    """Typed directed edges between issues inside the query cache.

    ``src_id`` is always the upstream end: the blocker, the parent, or the
    issue a discovery came from.
    """

    cache: Cache

    # -- reads --------------------------------------------------------------

    def edges(self, issue_id: str | None = None) -> list[dict[str, Any]]:
        if not self.cache.exists():
            return []
        conn = self.cache._connect()
        query = """
            SELECT
                d.src_id,
                d.rel_type,
                d.dst_id,
                d.created_at,
                src.status AS src_status,
                dst.status AS dst_status
            FROM issue_deps d
            LEFT JOIN issues src ON src.id = d.src_id
            LEFT JOIN issues dst ON dst.id = d.dst_id
        """
        params: tuple[Any, ...] = ()
        issue_key = issue_id.strip() if issue_id is not None else None
        if issue_key is not None:
            query += " WHERE d.src_id = ? OR d.dst_id = ?"
            params = (issue_key, issue_key)
        query += " ORDER BY d.src_id ASC, d.dst_id ASC, d.rel_type ASC"
        rows = conn.execute(query, params).fetchall()

        edges: list[dict[str, Any]] = []
        for row in rows:
            src_status = str(row["src_status"] or "")
            dst_status = str(row["dst_status"] or "")
            relation = str(row["rel_type"])
            edge = {
                "src_id": str(row["src_id"]),
                "type": relation,
                "dst_id": str(row["dst_id"]),
                "created_at": int(row["created_at"]),
                "src_status": src_status,
                "dst_status": dst_status,
                "active": _edge_is_active(relation, src_status, dst_status),
            }
            if issue_key is not None:
                edge["direction"] = "out" if edge["src_id"] == issue_key else "in"
            edges.append(edge)
        return edges

    def has_edge(self, conn: sqlite3.Connection, src_id: str, rel_type: str, dst_id: str) -> bool:
        row = conn.execute(
            "SELECT 1 FROM issue_deps WHERE src_id = ? AND rel_type = ? AND dst_id = ?",
            (src_id, rel_type, dst_id),
        ).fetchone()
        return row is not None

    def matching_types(self, conn: sqlite3.Connection, src_id: str, dst_id: str) -> list[str]:
        rows = conn.execute(
            """
            SELECT rel_type FROM issue_deps
            WHERE src_id = ? AND dst_id = ?
            ORDER BY rel_type ASC
            """,
            (src_id, dst_id),
        ).fetchall()
        return [str(row["rel_type"]) for row in rows]

    def _adjacency(
        self,
        conn: sqlite3.Connection,
        types: tuple[str, ...],
        *,
        reverse: bool = False,
    ) -> dict[str, list[tuple[str, str]]]:
        """Map each issue to ``(neighbor, rel_type)`` pairs, sorted."""
        if not types:
            return {}
        placeholders = ", ".join("?" for _ in types)
        rows = conn.execute(
            f"""
            SELECT src_id, rel_type, dst_id
            FROM issue_deps
            WHERE rel_type IN ({placeholders})
            ORDER BY src_id ASC, dst_id ASC, rel_type ASC
            """,
            types,
        ).fetchall()
        adjacency: dict[str, list[tuple[str, str]]] = {}
        for row in rows:
            src_id, dst_id = str(row["src_id"]), str(row["dst_id"])
            if reverse:
                src_id, dst_id = dst_id, src_id
            adjacency.setdefault(src_id, []).append((dst_id, str(row["rel_type"])))
        for neighbors in adjacency.values():
            neighbors.sort()
        return adjacency

    def _shortest_path(
        self,
        adjacency: dict[str, list[tuple[str, str]]],
        start: str,
        goal: str,
    ) -> list[str] | None:
        previous: dict[str, str | None] = {start: None}
        queue: deque[str] = deque([start])
        while queue:
            node = queue.popleft()
            if node == goal:
                path: list[str] = []
                cursor: str | None = node
                while cursor is not None:
                    path.append(cursor)
                    cursor = previous[cursor]
                return list(reversed(path))
            for neighbor, _rel in adjacency.get(node, []):
                if neighbor in previous:
                    continue
                previous[neighbor] = node
                queue.append(neighbor)
        return None

    def check_edge(
        self,
        conn: sqlite3.Connection,
        src_id: str,
        dst_id: str,
        rel_type: str,
    ) -> None:
        """Raise if inserting the edge would dangle or close a same-type loop."""
        if src_id == dst_id:
            raise ValueError("dependency cannot reference the same issue")
        for issue_id in (src_id, dst_id):
            row = conn.execute("SELECT 1 FROM issues WHERE id = ?", (issue_id,)).fetchone()
            if row is None:
                raise DanglingReferenceError(issue_id)
        if rel_type not in HIERARCHICAL_TYPES:
            return
        path = self._shortest_path(self._adjacency(conn, (rel_type,)), dst_id, src_id)
        if path is not None:
            raise CycleError(rel_type, [src_id, *path])

    def tree(
        self,
        issue_id: str,
        *,
        direction: str = "down",
        types: tuple[str, ...] | None = None,
        max_depth: int | None = None,
    ) -> dict[str, Any]:
        """Breadth-first nested view rooted at ``issue_id``.

        ``down`` walks outgoing edges (what this issue holds back, its
        children, its discoveries); ``up`` walks incoming edges. Every issue
        appears once, at its shallowest depth.
        """
        if direction not in TREE_DIRECTIONS:
            raise ValueError(f"invalid tree direction: {direction}")
        issue_key = issue_id.strip()
        if not self.cache.exists():
            raise NotFoundError(issue_key)
        conn = self.cache._connect()
        rel_types = tuple(normalize_relation(t) for t in types) if types else RELATION_TYPES

        info = self._issue_summaries(conn)
        if issue_key not in info:
            raise NotFoundError(issue_key)
        adjacency = self._adjacency(conn, rel_types, reverse=direction == "up")

        root = {**info[issue_key], "type": None, "depth": 0, "children": []}
        seen = {issue_key}
        queue: deque[dict[str, Any]] = deque([root])
        while queue:
            node = queue.popleft()
            if max_depth is not None and node["depth"] >= max_depth:
                continue
            for neighbor, relation in adjacency.get(node["id"], []):
                if neighbor in seen:
                    continue
                seen.add(neighbor)
                child = {
                    **info.get(neighbor, {"id": neighbor, "title": "", "status": ""}),
                    "type": relation,
                    "depth": node["depth"] + 1,
                    "children": [],
                }
                node["children"].append(child)
                queue.append(child)
        return root

    def _issue_summaries(self, conn: sqlite3.Connection) -> dict[str, dict[str, str]]:
        rows = conn.execute("SELECT id, title, status FROM issues").fetchall()
        return {
            str(row["id"]): {
                "id": str(row["id"]),
                "title": str(row["title"]),
                "status": str(row["status"]),
            }
            for row in rows
        }

    def cycles(self, types: tuple[str, ...] = HIERARCHICAL_TYPES) -> list[dict[str, Any]]:
        """Return the shortest cycle through every edge, one entry per loop."""
        if not self.cache.exists():
            return []
        conn = self.cache._connect()
        found: list[dict[str, Any]] = []
        for rel_type in types:
            relation = normalize_relation(rel_type)
            adjacency = self._adjacency(conn, (relation,))
            seen: set[tuple[str, ...]] = set()
            for src_id in sorted(adjacency):
                for dst_id, _rel in adjacency[src_id]:
                    path = self._shortest_path(adjacency, dst_id, src_id)
                    if path is None:
                        continue
                    cycle = [src_id, *path]
                    normalized = _normalize_cycle_nodes(cycle)
                    if normalized in seen:
                        continue
                    seen.add(normalized)
                    nodes = list(normalized)
                    found.append({"type": relation, "cycle": nodes + [nodes[0]]})
        return found

    def count_by_type(self) -> dict[str, int]:
        counts = {relation: 0 for relation in RELATION_TYPES}
        if not self.cache.exists():
            return counts
        rows = self.cache._connect().execute(
            "SELECT rel_type, COUNT(*) AS n FROM issue_deps GROUP BY rel_type"
        ).fetchall()
        for row in rows:
            counts[str(row["rel_type"])] = int(row["n"])
        return counts

    def all_edges(self, conn: sqlite3.Connection) -> list[tuple[str, str, str, int]]:
        rows = conn.execute(
            """
            SELECT src_id, rel_type, dst_id, created_at
            FROM issue_deps
            ORDER BY src_id ASC, dst_id ASC, rel_type ASC
            """
        ).fetchall()
        return [
            (str(row["src_id"]), str(row["rel_type"]), str(row["dst_id"]), int(row["created_at"]))
            for row in rows
        ]

    # -- writes (called while replaying log records) ------------------------

    def insert_edge(
        self,
        conn: sqlite3.Connection,
        src_id: str,
        rel_type: str,
        dst_id: str,
        at: int,
    ) -> None:
        conn.execute(
            """
            INSERT OR IGNORE INTO issue_deps(src_id, rel_type, dst_id, created_at)
            VALUES(?, ?, ?, ?)
            """,
            (src_id, rel_type, dst_id, at),
        )

    def delete_edge(
        self,
        conn: sqlite3.Connection,
        src_id: str,
        rel_type: str,
        dst_id: str,
    ) -> bool:
        cur = conn.execute(
            "DELETE FROM issue_deps WHERE src_id = ? AND rel_type = ? AND dst_id = ?",
            (src_id, rel_type, dst_id),
        )
        return cur.rowcount > 0
