from __future__ import annotations

import random
from pathlib import Path

import pytest

from beadle.errors import CycleError
from beadle.stores.cache import Cache
from beadle.stores.log import MutationLog
from beadle.tracker import Tracker


def test_blocker_gates_ready_until_closed(tracker: Tracker) -> None:
    a = tracker.create("A")
    b = tracker.create("B")
    tracker.add_edge(a["id"], b["id"], "blocks")

    assert [row["id"] for row in tracker.ready()] == [a["id"]]
    blocked = tracker.blocked()
    assert [row["issue"]["id"] for row in blocked] == [b["id"]]
    assert [row["id"] for row in blocked[0]["blockers"]] == [a["id"]]

    tracker.close(a["id"])

    assert [row["id"] for row in tracker.ready()] == [b["id"]]
    assert tracker.blocked() == []


def test_non_blocking_relations_do_not_gate(tracker: Tracker) -> None:
    a = tracker.create("A")
    b = tracker.create("B")
    c = tracker.create("C")
    tracker.add_edge(a["id"], b["id"], "parent-child")
    tracker.add_edge(a["id"], c["id"], "related")
    tracker.add_edge(b["id"], c["id"], "discovered-from")

    assert [row["id"] for row in tracker.ready()] == [a["id"], b["id"], c["id"]]
    assert tracker.blocked() == []


def test_in_progress_is_neither_ready_nor_blocked(tracker: Tracker) -> None:
    a = tracker.create("A")
    b = tracker.create("B", status="in-progress")
    tracker.add_edge(a["id"], b["id"], "blocks")

    assert [row["id"] for row in tracker.ready()] == [a["id"]]
    assert tracker.blocked() == []


def test_in_progress_blocker_still_blocks(tracker: Tracker) -> None:
    a = tracker.create("A", status="in-progress")
    b = tracker.create("B")
    tracker.add_edge(a["id"], b["id"], "blocks")

    assert tracker.ready() == []
    assert [row["issue"]["id"] for row in tracker.blocked()] == [b["id"]]


def test_ready_filters_by_tags_assignee_and_limit(tracker: Tracker) -> None:
    first = tracker.create("first", tags=["cli", "p1"], assignee="sam")
    second = tracker.create("second", tags=["cli"])
    tracker.create("third", tags=["io"])

    assert [row["id"] for row in tracker.ready(tags=["cli"])] == [first["id"], second["id"]]
    assert [row["id"] for row in tracker.ready(tags=["cli", "p1"])] == [first["id"]]
    assert [row["id"] for row in tracker.ready(assignee="sam")] == [first["id"]]
    assert [row["id"] for row in tracker.ready(limit=1)] == [first["id"]]

    with pytest.raises(ValueError, match="limit must be a positive integer"):
        tracker.ready(limit=0)


def test_blocked_lists_every_open_blocker(tracker: Tracker) -> None:
    a = tracker.create("A")
    b = tracker.create("B")
    c = tracker.create("C")
    target = tracker.create("Target")
    for blocker in (a, b, c):
        tracker.add_edge(blocker["id"], target["id"], "blocks")
    tracker.close(b["id"])

    rows = tracker.blocked()
    assert len(rows) == 1
    assert sorted(row["id"] for row in rows[0]["blockers"]) == sorted([a["id"], c["id"]])


@pytest.mark.parametrize("seed", [3, 11, 29, 101])
def test_ready_never_includes_issue_with_open_blocker(
    tmp_path: Path,
    clock: list[int],
    seed: int,
) -> None:
    rng = random.Random(seed)
    tracker = Tracker(log=MutationLog(tmp_path / "issues.jsonl"), cache=Cache.in_memory())

    ids = [tracker.create(f"task {index}")["id"] for index in range(12)]
    for _ in range(24):
        src_id, dst_id = rng.sample(ids, 2)
        try:
            tracker.add_edge(src_id, dst_id, "blocks")
        except CycleError:
            continue
    for issue_id in rng.sample(ids, 4):
        tracker.close(issue_id)
    for issue_id in rng.sample(ids, 2):
        tracker.update(issue_id, status="in-progress")

    statuses = {row["id"]: row["status"] for row in tracker.list()}
    open_blockers: dict[str, set[str]] = {}
    for edge in tracker.edges():
        if edge["type"] == "blocks" and statuses[edge["src_id"]] != "closed":
            open_blockers.setdefault(edge["dst_id"], set()).add(edge["src_id"])

    ready_ids = {row["id"] for row in tracker.ready()}
    blocked = {
        row["issue"]["id"]: {blocker["id"] for blocker in row["blockers"]}
        for row in tracker.blocked()
    }

    for issue_id, status in statuses.items():
        if status != "open":
            assert issue_id not in ready_ids
            assert issue_id not in blocked
        elif issue_id in open_blockers:
            assert issue_id not in ready_ids
            assert blocked[issue_id] == open_blockers[issue_id]
        else:
            assert issue_id in ready_ids
            assert issue_id not in blocked
    assert tracker.cycles() == []
    tracker.cache.close()
