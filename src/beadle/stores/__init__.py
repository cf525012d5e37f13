from __future__ import annotations

from .cache import Cache, SyncState
from .graph import DependencyGraph
from .issue import IssueStore
from .log import MutationLog

__all__ = [
    "Cache",
    "DependencyGraph",
    "IssueStore",
    "MutationLog",
    "SyncState",
]
