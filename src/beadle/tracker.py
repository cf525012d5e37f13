"""The tracker handle: every operation goes through an explicit instance."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .config import BeadleConfig, ConfigValidationError, load_config, resolve_state_dir
from .errors import DanglingReferenceError, NotFoundError, StaleCacheError
from .jsonl import now_ms, short_id
from .ready import ReadyResolver
from .stores.cache import Cache, SyncState
from .stores.graph import DependencyGraph, HIERARCHICAL_TYPES, normalize_relation
from .stores.issue import (
    ISSUE_STATUSES,
    IssueListing,
    IssueStore,
    normalize_assignee,
    normalize_status,
    normalize_tags,
    normalize_title,
)
from .stores.log import LogEntry, MutationLog, chain_digest, make_entry, record_key
from .sync import ExportResult, ImportResult, LogReplayer, export_log, import_log, is_stale

logger = logging.getLogger(__name__)

_ID_ATTEMPTS = 16


@dataclass
class Tracker:
    log: MutationLog
    cache: Cache
    config: BeadleConfig = field(default_factory=BeadleConfig)
    store: IssueStore = field(init=False)
    graph: DependencyGraph = field(init=False)
    resolver: ReadyResolver = field(init=False)
    _lock: threading.RLock = field(default_factory=threading.RLock, init=False, repr=False)

    def __post_init__(self) -> None:
        self.store = IssueStore(self.cache)
        self.graph = DependencyGraph(self.cache)
        self.resolver = ReadyResolver(self.cache, self.store)

    @classmethod
    def from_workdir(
        cls,
        cwd: Path | None = None,
        *,
        create: bool = True,
        config: BeadleConfig | None = None,
    ) -> "Tracker":
        state_dir = resolve_state_dir(cwd, create=create)
        if config is None:
            file_config = load_config(state_dir)
            if file_config.error:
                raise ConfigValidationError(file_config.error)
            config = file_config.config
        return cls(
            log=MutationLog(state_dir / config.log_file),
            cache=Cache(
                state_dir / config.cache_file,
                create_on_connect=create or state_dir.exists(),
            ),
            config=config,
        )

    # -- sync ---------------------------------------------------------------

    def is_stale(self) -> bool:
        return is_stale(self.log, self.cache)

    def _ensure_fresh(self) -> None:
        if not self.log.exists() and not self.cache.exists():
            return
        if not is_stale(self.log, self.cache):
            return
        if not self.config.auto_import:
            raise StaleCacheError(
                f"cache is older than {self.log.path.name}; run `beadle import`"
            )
        logger.info("cache is stale, importing %s", self.log.path)
        import_log(self.log, self.cache)

    def _commit(self, record: dict[str, Any]) -> LogEntry:
        """Append one mutation to the log, then replay it into the cache."""
        conn = self.cache._connect()
        record = {**record, "prev": self.cache.head(conn, record_key(record))}
        state = self.cache.sync_state()
        entry = make_entry(record, state.offset + 1)
        self.log.append(entry)
        mtime_ns, size = self.log.stat() or (0, 0)
        with conn:
            LogReplayer(self.cache, conn).replay(entry)
            self.cache.save_sync_state(
                conn,
                SyncState(
                    offset=state.offset + 1,
                    chain=chain_digest(state.chain, entry.digest),
                    log_mtime_ns=mtime_ns,
                    log_size=size,
                ),
            )
        logger.debug("committed %s for %s", record["op"], entry.key)
        return entry

    def import_(self, *, full: bool = False) -> ImportResult:
        with self._lock:
            return import_log(self.log, self.cache, full=full)

    def export(self, path: Path | None = None) -> ExportResult:
        with self._lock:
            import_log(self.log, self.cache)
            return export_log(self.log, self.cache, path=path)

    # -- issues -------------------------------------------------------------

    def _new_issue_id(self) -> str:
        conn = self.cache._connect()
        for _ in range(_ID_ATTEMPTS):
            candidate = f"{self.config.id_prefix}-{short_id()}"
            if not self.store.exists(conn, candidate):
                return candidate
        raise RuntimeError("could not allocate a unique issue id")

    def create(
        self,
        title: str,
        *,
        tags: list[str] | None = None,
        status: str = "open",
        body: str = "",
        assignee: str | None = None,
        deps: list[tuple[str, str]] | None = None,
    ) -> dict[str, Any]:
        """Create an issue; each ``(type, id)`` dep becomes an edge ``id -> new``."""
        issue_title = normalize_title(title)
        issue_status = normalize_status(status)
        issue_tags = normalize_tags(tags)
        dep_pairs: list[tuple[str, str]] = []
        for rel_type, target in deps or []:
            pair = (normalize_relation(rel_type), target.strip())
            if pair not in dep_pairs:
                dep_pairs.append(pair)

        with self._lock:
            self._ensure_fresh()
            conn = self.cache._connect()
            for _rel, target in dep_pairs:
                if not self.store.exists(conn, target):
                    raise DanglingReferenceError(target)

            issue_id = self._new_issue_id()
            now = now_ms()
            self._commit(
                {
                    "op": "create",
                    "id": issue_id,
                    "at": now,
                    "issue": {
                        "title": issue_title,
                        "body": body,
                        "status": issue_status,
                        "tags": issue_tags,
                        "assignee": normalize_assignee(assignee),
                        "created_at": now,
                        "updated_at": now,
                    },
                }
            )
            for rel_type, target in dep_pairs:
                self._commit(
                    {
                        "op": "dep_add",
                        "src": target,
                        "type": rel_type,
                        "dst": issue_id,
                        "at": now,
                    }
                )
            return self.store.require(issue_id)

    def get(self, issue_id: str) -> dict[str, Any] | None:
        with self._lock:
            self._ensure_fresh()
            return self.store.get(issue_id)

    def require(self, issue_id: str) -> dict[str, Any]:
        with self._lock:
            self._ensure_fresh()
            return self.store.require(issue_id)

    def update(
        self,
        issue_id: str,
        *,
        title: str | None = None,
        body: str | None = None,
        status: str | None = None,
        assignee: str | None = None,
        assignee_provided: bool = False,
    ) -> dict[str, Any]:
        with self._lock:
            self._ensure_fresh()
            current = self.store.require(issue_id)

            changes: dict[str, Any] = {}
            if title is not None:
                clean = normalize_title(title)
                if clean != current["title"]:
                    changes["title"] = clean
            if body is not None and body != current["body"]:
                changes["body"] = body
            if status is not None:
                target_status = normalize_status(status)
                if target_status != current["status"]:
                    changes["status"] = target_status
            if assignee_provided or assignee is not None:
                target_assignee = normalize_assignee(assignee)
                if target_assignee != current["assignee"]:
                    changes["assignee"] = target_assignee

            if not changes:
                return current

            self._commit(
                {
                    "op": "update",
                    "id": current["id"],
                    "at": now_ms(),
                    "changes": changes,
                }
            )
            return self.store.require(current["id"])

    def close(self, issue_id: str) -> dict[str, Any]:
        with self._lock:
            self._ensure_fresh()
            current = self.store.require(issue_id)
            if current["status"] == "closed":
                logger.debug("%s already closed", current["id"])
                return current
            self._commit({"op": "close", "id": current["id"], "at": now_ms()})
            return self.store.require(current["id"])

    def reopen(self, issue_id: str) -> dict[str, Any]:
        return self.update(issue_id, status="open")

    def add_tag(self, issue_id: str, tag: str) -> dict[str, Any]:
        value = tag.strip()
        if not value:
            raise ValueError("tag cannot be empty")
        with self._lock:
            self._ensure_fresh()
            current = self.store.require(issue_id)
            if value in current["tags"]:
                return current
            self._commit({"op": "tag_add", "id": current["id"], "tag": value, "at": now_ms()})
            return self.store.require(current["id"])

    def remove_tag(self, issue_id: str, tag: str) -> dict[str, Any]:
        value = tag.strip()
        if not value:
            raise ValueError("tag cannot be empty")
        with self._lock:
            self._ensure_fresh()
            current = self.store.require(issue_id)
            if value not in current["tags"]:
                return current
            self._commit(
                {"op": "tag_remove", "id": current["id"], "tag": value, "at": now_ms()}
            )
            return self.store.require(current["id"])

    def list(
        self,
        *,
        status: str | None = None,
        tag: str | None = None,
        assignee: str | None = None,
        search: str | None = None,
        where: Callable[[dict[str, Any]], bool] | None = None,
        limit: int | None = None,
    ) -> IssueListing:
        with self._lock:
            self._ensure_fresh()
            return self.store.list(
                status=status,
                tag=tag,
                assignee=assignee,
                search=search,
                where=where,
                limit=limit,
                lock=self._lock,
                refresh=self._ensure_fresh,
            )

    # -- dependency graph ---------------------------------------------------

    def add_edge(self, src_id: str, dst_id: str, rel_type: str) -> dict[str, Any]:
        src = src_id.strip()
        dst = dst_id.strip()
        if not src or not dst:
            raise ValueError("source and destination issue IDs are required")
        relation = normalize_relation(rel_type)

        with self._lock:
            self._ensure_fresh()
            conn = self.cache._connect()
            self.graph.check_edge(conn, src, dst, relation)
            if not self.graph.has_edge(conn, src, relation, dst):
                self._commit(
                    {"op": "dep_add", "src": src, "type": relation, "dst": dst, "at": now_ms()}
                )
            row = conn.execute(
                """
                SELECT created_at FROM issue_deps
                WHERE src_id = ? AND rel_type = ? AND dst_id = ?
                """,
                (src, relation, dst),
            ).fetchone()
        return {
            "src_id": src,
            "type": relation,
            "dst_id": dst,
            "created_at": int(row["created_at"]),
        }

    def remove_edge(
        self,
        src_id: str,
        dst_id: str,
        rel_type: str | None = None,
    ) -> list[dict[str, Any]]:
        """Remove one typed edge, or every edge between the pair when untyped."""
        src = src_id.strip()
        dst = dst_id.strip()
        with self._lock:
            self._ensure_fresh()
            conn = self.cache._connect()
            for issue_id in (src, dst):
                if not self.store.exists(conn, issue_id):
                    raise NotFoundError(issue_id)

            present = self.graph.matching_types(conn, src, dst)
            if rel_type is not None:
                relation = normalize_relation(rel_type)
                present = [value for value in present if value == relation]
            if not present:
                raise NotFoundError(f"{src} {rel_type or '*'} {dst}", kind="edge")

            removed: list[dict[str, Any]] = []
            for relation in present:
                self._commit(
                    {"op": "dep_remove", "src": src, "type": relation, "dst": dst, "at": now_ms()}
                )
                removed.append({"src_id": src, "type": relation, "dst_id": dst})
            return removed

    def edges(self, issue_id: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            self._ensure_fresh()
            if issue_id is not None:
                self.store.require(issue_id)
            return self.graph.edges(issue_id)

    def tree(
        self,
        issue_id: str,
        *,
        direction: str = "down",
        types: tuple[str, ...] | None = None,
        max_depth: int | None = None,
    ) -> dict[str, Any]:
        with self._lock:
            self._ensure_fresh()
            return self.graph.tree(
                issue_id,
                direction=direction,
                types=types,
                max_depth=max_depth,
            )

    def cycles(self, types: tuple[str, ...] = HIERARCHICAL_TYPES) -> list[dict[str, Any]]:
        with self._lock:
            self._ensure_fresh()
            return self.graph.cycles(types)

    # -- ready work ---------------------------------------------------------

    def ready(
        self,
        *,
        tags: list[str] | None = None,
        assignee: str | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        with self._lock:
            self._ensure_fresh()
            return self.resolver.ready(tags=tags, assignee=assignee, limit=limit)

    def blocked(self) -> list[dict[str, Any]]:
        with self._lock:
            self._ensure_fresh()
            return self.resolver.blocked()

    def stats(self) -> dict[str, Any]:
        with self._lock:
            self._ensure_fresh()
            by_status = self.store.count_by_status()
            return {
                "issues": sum(by_status.values()),
                "by_status": {status: by_status.get(status, 0) for status in ISSUE_STATUSES},
                "edges": self.graph.count_by_type(),
                "ready": len(self.resolver.ready()),
                "blocked": len(self.resolver.blocked()),
                "log_records": self.cache.sync_state().offset,
                "stale": self.is_stale(),
            }
