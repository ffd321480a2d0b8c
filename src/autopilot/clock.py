"""Clocks for the control plane. Everything takes a zero-arg callable returning epoch seconds."""

from __future__ import annotations


class FakeClock:
    """Manually advanced clock for tests and replays."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = float(start)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now

    def set(self, timestamp: float) -> None:
        self.now = float(timestamp)
