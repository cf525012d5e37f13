from __future__ import annotations

import threading

import pytest

from beadle.errors import BeadleError, DanglingReferenceError, NotFoundError
from beadle.tracker import Tracker


def test_create_returns_full_issue(tracker: Tracker) -> None:
    issue = tracker.create(
        "  Wire up auth  ",
        tags=["area:auth", "backend", "backend"],
        body="details",
        assignee="sam",
    )

    assert issue["id"].startswith("bd-")
    assert issue["title"] == "Wire up auth"
    assert issue["status"] == "open"
    assert issue["tags"] == ["area:auth", "backend"]
    assert issue["assignee"] == "sam"
    assert issue["body"] == "details"
    assert issue["created_at"] == issue["updated_at"]
    assert tracker.get(issue["id"]) == issue


def test_create_rejects_empty_title_and_bad_status(tracker: Tracker) -> None:
    with pytest.raises(ValueError, match="title cannot be empty"):
        tracker.create("   ")
    with pytest.raises(ValueError, match="invalid status"):
        tracker.create("Task", status="paused")
    assert not tracker.log.exists()


def test_status_accepts_underscore_alias(tracker: Tracker) -> None:
    issue = tracker.create("Task", status="IN_PROGRESS")
    assert issue["status"] == "in-progress"


def test_get_unknown_returns_none_and_require_raises(tracker: Tracker) -> None:
    assert tracker.get("bd-missing") is None
    with pytest.raises(NotFoundError, match="unknown issue: bd-missing") as raised:
        tracker.require("bd-missing")
    assert isinstance(raised.value, BeadleError)
    assert isinstance(raised.value, ValueError)


def test_update_drops_unchanged_fields(tracker: Tracker) -> None:
    issue = tracker.create("Task", body="same")
    lines_before = len(tracker.log.lines())

    unchanged = tracker.update(issue["id"], title="Task", body="same", status="open")
    assert unchanged == issue
    assert len(tracker.log.lines()) == lines_before

    changed = tracker.update(issue["id"], title="Renamed", body="same")
    assert changed["title"] == "Renamed"
    assert changed["updated_at"] > issue["updated_at"]
    last = tracker.log.entries()[-1].record
    assert last["op"] == "update"
    assert last["changes"] == {"title": "Renamed"}


def test_update_assignee_can_be_cleared(tracker: Tracker) -> None:
    issue = tracker.create("Task", assignee="sam")

    kept = tracker.update(issue["id"], title="Task 2")
    assert kept["assignee"] == "sam"

    cleared = tracker.update(issue["id"], assignee=None, assignee_provided=True)
    assert cleared["assignee"] is None


def test_close_is_idempotent(tracker: Tracker) -> None:
    issue = tracker.create("Task")

    closed = tracker.close(issue["id"])
    assert closed["status"] == "closed"
    lines_after_first = len(tracker.log.lines())

    again = tracker.close(issue["id"])
    assert again == closed
    assert len(tracker.log.lines()) == lines_after_first


def test_reopen_sets_status_open(tracker: Tracker) -> None:
    issue = tracker.create("Task")
    tracker.close(issue["id"])

    reopened = tracker.reopen(issue["id"])
    assert reopened["status"] == "open"


def test_mutations_on_unknown_issue_raise_not_found(tracker: Tracker) -> None:
    with pytest.raises(NotFoundError):
        tracker.update("bd-nope", title="x")
    with pytest.raises(NotFoundError):
        tracker.close("bd-nope")
    with pytest.raises(NotFoundError):
        tracker.add_tag("bd-nope", "x")
    assert not tracker.log.exists()


def test_tags_have_set_semantics(tracker: Tracker) -> None:
    issue = tracker.create("Task", tags=["b"])

    tagged = tracker.add_tag(issue["id"], "a")
    assert tagged["tags"] == ["a", "b"]
    assert tagged["updated_at"] > issue["updated_at"]

    lines = len(tracker.log.lines())
    assert tracker.add_tag(issue["id"], "a") == tagged
    assert tracker.remove_tag(issue["id"], "zzz") == tagged
    assert len(tracker.log.lines()) == lines

    untagged = tracker.remove_tag(issue["id"], "b")
    assert untagged["tags"] == ["a"]


def test_list_filters_and_orders_by_creation(tracker: Tracker) -> None:
    first = tracker.create("Alpha parser", tags=["cli"], assignee="sam")
    second = tracker.create("Beta writer", tags=["cli", "io"])
    third = tracker.create("Gamma parser", body="uses the writer")
    tracker.close(third["id"])

    assert [row["id"] for row in tracker.list()] == [first["id"], second["id"], third["id"]]
    assert [row["id"] for row in tracker.list(status="open")] == [first["id"], second["id"]]
    assert [row["id"] for row in tracker.list(tag="io")] == [second["id"]]
    assert [row["id"] for row in tracker.list(assignee="sam")] == [first["id"]]
    assert [row["id"] for row in tracker.list(search="parser")] == [first["id"], third["id"]]
    assert [row["id"] for row in tracker.list(search="writer")] == [second["id"], third["id"]]
    assert [row["id"] for row in tracker.list(limit=2)] == [first["id"], second["id"]]


def test_list_where_predicate(tracker: Tracker) -> None:
    tracker.create("short")
    long_one = tracker.create("a considerably longer title")

    rows = list(tracker.list(where=lambda issue: len(issue["title"]) > 10))
    assert [row["id"] for row in rows] == [long_one["id"]]


def test_listing_is_lazy_and_restartable(tracker: Tracker) -> None:
    tracker.create("one")
    listing = tracker.list(status="open")

    assert len(list(listing)) == 1
    assert len(list(listing)) == 1

    tracker.create("two")
    assert [row["title"] for row in listing] == ["one", "two"]


def test_list_rejects_non_positive_limit(tracker: Tracker) -> None:
    tracker.create("one")

    with pytest.raises(ValueError, match="limit must be a positive integer"):
        tracker.list(limit=0)
    with pytest.raises(ValueError, match="limit must be a positive integer"):
        tracker.list(limit=-2)


def test_listing_waits_for_the_mutation_lock(tracker: Tracker) -> None:
    tracker.create("one")
    listing = tracker.list()
    held = threading.Event()
    release = threading.Event()
    rows: list[dict] = []

    def hold_lock() -> None:
        with tracker._lock:
            held.set()
            release.wait(timeout=5)

    holder = threading.Thread(target=hold_lock)
    reader = threading.Thread(target=lambda: rows.extend(listing))
    holder.start()
    try:
        assert held.wait(timeout=5)
        reader.start()
        reader.join(timeout=0.2)
        assert reader.is_alive()
        assert rows == []
    finally:
        release.set()
        holder.join(timeout=5)

    reader.join(timeout=5)
    assert not reader.is_alive()
    assert [row["title"] for row in rows] == ["one"]


def test_list_pages_through_many_issues(tracker: Tracker) -> None:
    for index in range(230):
        tracker.create(f"task {index:03d}")

    titles = [row["title"] for row in tracker.list()]
    assert len(titles) == 230
    assert titles[0] == "task 000"
    assert titles[-1] == "task 229"


def test_create_with_deps_writes_edges_to_new_issue(tracker: Tracker) -> None:
    parent = tracker.create("Epic")
    blocker = tracker.create("Schema")

    child = tracker.create(
        "Endpoint",
        deps=[("parent_child", parent["id"]), ("blocks", blocker["id"])],
    )

    edges = {(e["src_id"], e["type"], e["dst_id"]) for e in tracker.edges(child["id"])}
    assert edges == {
        (parent["id"], "parent-child", child["id"]),
        (blocker["id"], "blocks", child["id"]),
    }
    ops = [entry.record["op"] for entry in tracker.log.entries()]
    assert ops == ["create", "create", "create", "dep_add", "dep_add"]


def test_create_with_unknown_dep_writes_nothing(tracker: Tracker) -> None:
    tracker.create("Epic")
    lines = len(tracker.log.lines())

    with pytest.raises(DanglingReferenceError, match="bd-ghost"):
        tracker.create("Orphan", deps=[("blocks", "bd-ghost")])

    assert len(tracker.log.lines()) == lines
    assert [row["title"] for row in tracker.list()] == ["Epic"]


def test_stats_counts(tracker: Tracker) -> None:
    a = tracker.create("A")
    b = tracker.create("B")
    c = tracker.create("C", status="in-progress")
    tracker.add_edge(a["id"], b["id"], "blocks")
    tracker.add_edge(a["id"], c["id"], "related")

    stats = tracker.stats()
    assert stats["issues"] == 3
    assert stats["by_status"] == {"open": 2, "in-progress": 1, "closed": 0}
    assert stats["edges"]["blocks"] == 1
    assert stats["edges"]["related"] == 1
    assert stats["ready"] == 1
    assert stats["blocked"] == 1
    assert stats["log_records"] == 5
    assert stats["stale"] is False
