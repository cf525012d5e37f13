"""Durable mutation log stored as JSONL, one mutation per line."""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..errors import LogFormatError, MergeConflictError
from ..jsonl import append_lines, encode_line, read_lines, write_lines
from .graph import RELATION_TYPES

ISSUE_OPS = ("create", "update", "close", "tag_add", "tag_remove")
EDGE_OPS = ("dep_add", "dep_remove")
UPDATE_FIELDS = ("title", "body", "status", "assignee")
MERGE_MARKERS = ("<<<<<<<", "|||||||", "=======", ">>>>>>>")


@dataclass(frozen=True)
class LogEntry:
    line_no: int
    text: str
    record: dict[str, Any]
    digest: str

    @property
    def key(self) -> str:
        return record_key(self.record)

    @property
    def fingerprint(self) -> str:
        return record_fingerprint(self.record)


def record_digest(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:16]


def chain_digest(chain: str, digest: str) -> str:
    return hashlib.sha256(f"{chain}:{digest}".encode("utf-8")).hexdigest()


def edge_key(src_id: str, rel_type: str, dst_id: str) -> str:
    return f"{src_id} {rel_type} {dst_id}"


def record_key(record: dict[str, Any]) -> str:
    if record["op"] in EDGE_OPS:
        return edge_key(record["src"], record["type"], record["dst"])
    return str(record["id"])


def record_fingerprint(record: dict[str, Any]) -> str:
    """Encode the mutation itself, ignoring when and after what it happened."""
    return encode_line(
        {key: value for key, value in record.items() if key not in ("at", "prev")}
    )


def make_entry(record: dict[str, Any], line_no: int) -> LogEntry:
    text = encode_line(record)
    return LogEntry(line_no=line_no, text=text, record=record, digest=record_digest(text))


def _require_str(record: dict[str, Any], key: str, line_no: int) -> None:
    value = record.get(key)
    if not isinstance(value, str) or not value.strip():
        raise LogFormatError(line_no, f"missing or empty {key!r}")


def _validate_record(record: object, line_no: int) -> dict[str, Any]:
    if not isinstance(record, dict):
        raise LogFormatError(line_no, "record must be a JSON object")
    op = record.get("op")
    if op not in ISSUE_OPS and op not in EDGE_OPS:
        raise LogFormatError(line_no, f"unknown op {op!r}")
    if not isinstance(record.get("at"), int):
        raise LogFormatError(line_no, "'at' must be an integer timestamp")
    prev = record.get("prev")
    if prev is not None and not isinstance(prev, str):
        raise LogFormatError(line_no, "'prev' must be a digest or null")

    if op in EDGE_OPS:
        _require_str(record, "src", line_no)
        _require_str(record, "dst", line_no)
        if record.get("type") not in RELATION_TYPES:
            raise LogFormatError(line_no, f"unknown edge type {record.get('type')!r}")
        return record

    _require_str(record, "id", line_no)
    if op == "create":
        issue = record.get("issue")
        if not isinstance(issue, dict):
            raise LogFormatError(line_no, "create record needs an 'issue' object")
        for key in ("title", "status"):
            _require_str(issue, key, line_no)
        for key in ("created_at", "updated_at"):
            if not isinstance(issue.get(key), int):
                raise LogFormatError(line_no, f"issue.{key} must be an integer")
    elif op == "update":
        changes = record.get("changes")
        if not isinstance(changes, dict) or not changes:
            raise LogFormatError(line_no, "update record needs non-empty 'changes'")
        unknown = sorted(set(changes) - set(UPDATE_FIELDS))
        if unknown:
            raise LogFormatError(line_no, f"unknown update fields: {', '.join(unknown)}")
    elif op in ("tag_add", "tag_remove"):
        _require_str(record, "tag", line_no)
    return record


def parse_line(line_no: int, text: str) -> LogEntry:
    if text.startswith(MERGE_MARKERS):
        raise MergeConflictError(
            [
                {
                    "line": line_no,
                    "message": f"unresolved merge marker at line {line_no}",
                }
            ]
        )
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise LogFormatError(line_no, str(exc)) from exc
    record = _validate_record(payload, line_no)
    return LogEntry(
        line_no=line_no,
        text=text,
        record=record,
        digest=record_digest(text),
    )


@dataclass
class MutationLog:
    """Append-oriented JSONL history; the authoritative state."""

    path: Path

    def exists(self) -> bool:
        return self.path.exists()

    def stat(self) -> tuple[int, int] | None:
        """Return ``(mtime_ns, size)`` or None when the log is missing."""
        try:
            st = self.path.stat()
        except FileNotFoundError:
            return None
        return st.st_mtime_ns, st.st_size

    def lines(self) -> list[tuple[int, str]]:
        return read_lines(self.path)

    def entries(self) -> list[LogEntry]:
        return [parse_line(line_no, text) for line_no, text in self.lines()]

    def append(self, entry: LogEntry) -> None:
        append_lines(self.path, [entry.text])

    def rewrite(self, records: list[dict[str, Any]], path: Path | None = None) -> Path:
        target = path or self.path
        write_lines(target, [encode_line(record) for record in records])
        return target

    def touch(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.touch(exist_ok=True)
