from __future__ import annotations

from pathlib import Path

import pytest

from probe_monitoring.storage.db import ProbeStore


class FakeClock:
    """Monotonic clock the scheduler tests move by hand."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = float(start)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += float(seconds)


@pytest.fixture
def store(tmp_path: Path) -> ProbeStore:
    s = ProbeStore(str(tmp_path / "probes.db"))
    s.ensure_schema()
    return s


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
