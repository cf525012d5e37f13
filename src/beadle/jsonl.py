"""Low-level JSONL helpers for the durable log."""

from __future__ import annotations

import json
import os
import time
import uuid
from collections.abc import Iterable
from pathlib import Path


def short_id() -> str:
    return uuid.uuid4().hex[:8]


def now_ms() -> int:
    return int(time.time() * 1000)


def encode_line(row: dict) -> str:
    return json.dumps(row, ensure_ascii=False, sort_keys=True, separators=(",", ":"))


def read_lines(path: Path) -> list[tuple[int, str]]:
    """Return ``(line_no, text)`` for every non-blank line, 1-based."""
    if not path.exists():
        return []
    lines: list[tuple[int, str]] = []
    with open(path, encoding="utf-8") as f:
        for line_no, line in enumerate(f, start=1):
            line = line.strip()
            if line:
                lines.append((line_no, line))
    return lines


def _ends_with_newline(path: Path) -> bool:
    if not path.exists() or path.stat().st_size == 0:
        return True
    with open(path, "rb") as f:
        f.seek(-1, os.SEEK_END)
        return f.read(1) == b"\n"


def append_lines(path: Path, lines: Iterable[str]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    # Hand-edited logs may lack the trailing newline.
    missing_newline = not _ends_with_newline(path)
    with open(path, "a", encoding="utf-8") as f:
        if missing_newline:
            f.write("\n")
        for line in lines:
            f.write(line + "\n")


def write_lines(path: Path, lines: Iterable[str]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(".tmp")
    with open(tmp, "w", encoding="utf-8") as f:
        for line in lines:
            f.write(line + "\n")
    os.replace(tmp, path)
