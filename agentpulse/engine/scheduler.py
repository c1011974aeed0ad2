"""Adaptive poll interval: fast while things change, backing off when idle."""
from __future__ import annotations


class AdaptivePollScheduler:
    def __init__(self, base_ms: int = 1000, step_ms: int = 250, max_ms: int = 2000):
        self.base_ms = base_ms
        self.step_ms = step_ms
        self.max_ms = max_ms
        self.interval_ms = base_ms
        self.last_tick_changed = False

    def record(self, changed: bool) -> int:
        """Record a tick outcome and return the next interval in ms."""
        self.last_tick_changed = changed
        if changed:
            self.interval_ms = self.base_ms
        else:
            self.interval_ms = min(self.interval_ms + self.step_ms, self.max_ms)
        return self.interval_ms

    @property
    def interval_seconds(self) -> float:
        return self.interval_ms / 1000.0

    def reset(self) -> None:
        self.interval_ms = self.base_ms
        self.last_tick_changed = False
