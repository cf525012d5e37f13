"""Error taxonomy shared by the stores, the sync layer and the CLI."""

from __future__ import annotations


class BeadleError(ValueError):
    pass


class NotFoundError(BeadleError):
    def __init__(self, ref: str, *, kind: str = "issue") -> None:
        super().__init__(f"unknown {kind}: {ref}")
        self.ref = ref
        self.kind = kind


class DanglingReferenceError(BeadleError):
    def __init__(self, issue_id: str) -> None:
        super().__init__(f"edge references unknown issue: {issue_id}")
        self.issue_id = issue_id


class CycleError(BeadleError):
    """Raised when a hierarchical edge would close a loop.

    ``cycle`` is the offending path, starting and ending at the same id.
    """

    def __init__(self, rel_type: str, cycle: list[str]) -> None:
        super().__init__(f"{rel_type} cycle: {' -> '.join(cycle)}")
        self.rel_type = rel_type
        self.cycle = cycle


class StaleCacheError(BeadleError):
    pass


class LogFormatError(BeadleError):
    def __init__(self, line_no: int, reason: str) -> None:
        super().__init__(f"invalid log record at line {line_no}: {reason}")
        self.line_no = line_no


class MergeConflictError(BeadleError):
    """The log holds divergent histories that need a human decision."""

    def __init__(self, conflicts: list[dict[str, object]]) -> None:
        lines = [str(item.get("message") or "") for item in conflicts]
        super().__init__("merge conflict in log: " + "; ".join(lines))
        self.conflicts = conflicts
