"""Per-session memoized transcript detail, invalidated by (mtime, size)."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from agentpulse.models import ActivityStatus, SessionDetail
from agentpulse.parsers.sessions import derive_session_detail

logger = logging.getLogger("agentpulse.detail_cache")

DeriveFn = Callable[[Path, ActivityStatus, int, int], SessionDetail]


@dataclass
class TranscriptCacheEntry:
    modification_time: float
    byte_size: int
    derived_detail: SessionDetail
    path: str
    status: ActivityStatus


class SessionDetailCache:
    """Serves cached detail only for completed sessions whose file is unchanged.

    Running and idle sessions are re-derived on every request since their
    transcripts are still being written. An entry derived while the session
    was live never satisfies a completed request, even on an unchanged file.
    """

    def __init__(self, derive: DeriveFn = derive_session_detail, max_recent_actions: int = 5):
        self._derive = derive
        self.max_recent_actions = max_recent_actions
        self._entries: dict[str, TranscriptCacheEntry] = {}
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def entry(self, session_id: str) -> TranscriptCacheEntry | None:
        return self._entries.get(session_id)

    def items(self) -> list[tuple[str, TranscriptCacheEntry]]:
        return list(self._entries.items())

    def remove(self, session_id: str) -> bool:
        return self._entries.pop(session_id, None) is not None

    def get(self, session_id: str, path: Path, status: ActivityStatus, now: int) -> SessionDetail:
        try:
            stat = path.stat()
        except FileNotFoundError:
            return SessionDetail()
        except OSError as exc:
            logger.warning("Cannot stat transcript %s: %s", path, exc)
            cached = self._entries.get(session_id)
            return cached.derived_detail if cached else SessionDetail()

        cached = self._entries.get(session_id)
        if (
            cached is not None
            and status == ActivityStatus.COMPLETED
            and cached.status == ActivityStatus.COMPLETED
            and cached.modification_time == stat.st_mtime
            and cached.byte_size == stat.st_size
        ):
            self.hits += 1
            return cached.derived_detail

        self.misses += 1
        try:
            detail = self._derive(path, status, now, self.max_recent_actions)
        except OSError as exc:
            logger.warning("Cannot read transcript %s: %s", path, exc)
            return cached.derived_detail if cached else SessionDetail()

        self._entries[session_id] = TranscriptCacheEntry(
            modification_time=stat.st_mtime,
            byte_size=stat.st_size,
            derived_detail=detail,
            path=str(path),
            status=status,
        )
        return detail
