from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest

from beadle.stores.cache import Cache
from beadle.stores.log import MutationLog
from beadle.tracker import Tracker


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("BEADLE_DIR", raising=False)
    monkeypatch.delenv("BEADLE_OUTPUT", raising=False)


@pytest.fixture
def clock(monkeypatch: pytest.MonkeyPatch) -> list[int]:
    """Deterministic millisecond clock; every read advances one second."""
    ticks = [1_700_000_000_000]

    def fake_now() -> int:
        ticks[0] += 1000
        return ticks[0]

    monkeypatch.setattr("beadle.tracker.now_ms", fake_now)
    return ticks


@pytest.fixture
def tracker(tmp_path: Path, clock: list[int]) -> Iterator[Tracker]:
    handle = Tracker(log=MutationLog(tmp_path / "issues.jsonl"), cache=Cache.in_memory())
    yield handle
    handle.cache.close()
