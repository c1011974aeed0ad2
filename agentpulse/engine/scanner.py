"""Cached transcript-directory listing and active-candidate selection."""
from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Optional

logger = logging.getLogger("agentpulse.scanner")


@dataclass(frozen=True)
class TranscriptFile:
    path: Path
    mtime: float
    size: int

    @property
    def session_id(self) -> str:
        return self.path.stem


class TranscriptScanner:
    """Lists a transcript directory at most once per TTL window.

    Candidates are ``.jsonl`` files (never an excluded file) modified within
    the lookback window, largest first, capped at ``max_candidates``.
    """

    def __init__(
        self,
        directory: Path,
        *,
        exclude: Iterable[Path] = (),
        ttl: float = 5.0,
        lookback: float = 600,
        max_candidates: int = 5,
        clock: Callable[[], float] = time.time,
    ):
        self.directory = directory
        self.excluded = {Path(path).resolve() for path in exclude}
        self.ttl = ttl
        self.lookback = lookback
        self.max_candidates = max_candidates
        self._clock = clock
        self._listing: list[TranscriptFile] = []
        self._listed_at: Optional[float] = None
        self.list_count = 0

    def invalidate(self) -> None:
        self._listed_at = None

    def listing(self) -> list[TranscriptFile]:
        now = self._clock()
        if self._listed_at is not None and now - self._listed_at < self.ttl:
            return self._listing
        self._listing = self._list_directory()
        self._listed_at = now
        return self._listing

    def _list_directory(self) -> list[TranscriptFile]:
        self.list_count += 1
        files: list[TranscriptFile] = []
        try:
            with os.scandir(self.directory) as entries:
                for entry in entries:
                    if not entry.name.endswith(".jsonl") or Path(entry.path).resolve() in self.excluded:
                        continue
                    try:
                        if not entry.is_file():
                            continue
                        stat = entry.stat()
                    except OSError:
                        continue
                    files.append(TranscriptFile(path=Path(entry.path), mtime=stat.st_mtime, size=stat.st_size))
        except FileNotFoundError:
            logger.debug("Transcript directory %s does not exist", self.directory)
        return files

    def active_candidates(self) -> list[TranscriptFile]:
        cutoff = self._clock() - self.lookback
        recent = [item for item in self.listing() if item.mtime >= cutoff]
        recent.sort(key=lambda item: item.size, reverse=True)
        return recent[: self.max_candidates]
