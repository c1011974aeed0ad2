"""Periodic pruning of per-file state for transcripts that went quiet."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

from agentpulse.engine.detail_cache import SessionDetailCache
from agentpulse.engine.tailing import FileOffsets

logger = logging.getLogger("agentpulse.retention")


@dataclass
class SweepReport:
    removed_offsets: list[str] = field(default_factory=list)
    removed_cache_entries: list[str] = field(default_factory=list)
    evicted_over_cap: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.removed_offsets) + len(self.removed_cache_entries) + len(self.evicted_over_cap)


def _current_mtime(path: str) -> float | None:
    try:
        return os.stat(path).st_mtime
    except OSError:
        return None


class RetentionSweeper:
    def __init__(
        self,
        offsets: FileOffsets,
        detail_cache: SessionDetailCache,
        *,
        interval: float = 300,
        lookback: float = 3600,
    ):
        self.offsets = offsets
        self.detail_cache = detail_cache
        self.interval = interval
        self.lookback = lookback
        self.last_sweep_at: float | None = None

    def due(self, now: float) -> bool:
        if self.last_sweep_at is None:
            self.last_sweep_at = now
            return False
        return now - self.last_sweep_at >= self.interval

    def sweep(self, now: float) -> SweepReport:
        """Drop state for files not modified within the lookback, then cap offsets."""
        self.last_sweep_at = now
        cutoff = now - self.lookback
        report = SweepReport()

        mtimes: dict[str, float | None] = {}
        for path in self.offsets.paths():
            mtime = mtimes.setdefault(path, _current_mtime(path))
            if mtime is None or mtime < cutoff:
                self.offsets.remove(path)
                report.removed_offsets.append(path)
            else:
                self.offsets.touch(path, mtime)

        for session_id, entry in self.detail_cache.items():
            if entry.path not in mtimes:
                mtimes[entry.path] = _current_mtime(entry.path)
            mtime = mtimes[entry.path]
            if mtime is None or mtime < cutoff:
                self.detail_cache.remove(session_id)
                report.removed_cache_entries.append(session_id)

        report.evicted_over_cap = self.offsets.enforce_cap()
        if report.total:
            logger.info(
                "Retention sweep removed %d offsets, %d cache entries, %d over cap",
                len(report.removed_offsets),
                len(report.removed_cache_entries),
                len(report.evicted_over_cap),
            )
        return report
