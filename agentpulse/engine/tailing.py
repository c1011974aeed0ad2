"""Incremental reads of append-only files and per-file offset bookkeeping."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path

from agentpulse import config

logger = logging.getLogger("agentpulse.tailing")


@dataclass
class ReadResult:
    data: bytes
    offset: int  # offset to store after consuming ``data``
    size: int
    mtime: float
    reset: bool = False


def read_from_offset(
    path: Path,
    offset: int,
    *,
    attempts: int | None = None,
    retry_delay: float | None = None,
) -> ReadResult | None:
    """Read the complete lines appended to ``path`` since ``offset``.

    Returns None when the file does not exist. A file smaller than the stored
    offset was truncated or rotated and is read again from 0. A trailing
    partial line is left for the next read.
    """
    attempts = max(1, attempts if attempts is not None else config.FILE_RETRY_ATTEMPTS)
    retry_delay = config.FILE_RETRY_DELAY_SECONDS if retry_delay is None else retry_delay

    for attempt in range(1, attempts + 1):
        try:
            return _read_once(path, offset)
        except (FileNotFoundError, PermissionError):
            raise
        except OSError as exc:
            if attempt >= attempts:
                raise
            logger.debug("Retrying read of %s after %s (attempt %d)", path, exc, attempt)
            time.sleep(retry_delay)
    return None


def _read_once(path: Path, offset: int) -> ReadResult | None:
    try:
        stat = path.stat()
    except FileNotFoundError:
        return None

    size = stat.st_size
    reset = False
    if size < offset:
        logger.info("File %s shrank below offset %d (size %d), rereading from start", path, offset, size)
        offset = 0
        reset = True

    if size == offset:
        return ReadResult(data=b"", offset=offset, size=size, mtime=stat.st_mtime, reset=reset)

    with open(path, "rb") as fh:
        fh.seek(offset)
        chunk = fh.read(size - offset)

    cut = chunk.rfind(b"\n")
    if cut < 0:
        return ReadResult(data=b"", offset=offset, size=size, mtime=stat.st_mtime, reset=reset)
    data = chunk[: cut + 1]
    return ReadResult(data=data, offset=offset + len(data), size=size, mtime=stat.st_mtime, reset=reset)


def split_lines(data: bytes) -> list[str]:
    text = data.decode("utf-8", errors="replace")
    return [line for line in (raw.strip() for raw in text.splitlines()) if line]


@dataclass
class OffsetEntry:
    offset: int
    mtime: float


class FileOffsets:
    """Last-read byte position per tailed file, capped by recency."""

    def __init__(self, cap: int):
        self.cap = cap
        self._entries: dict[str, OffsetEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, path: object) -> bool:
        return str(path) in self._entries

    def get(self, path: Path | str) -> int:
        entry = self._entries.get(str(path))
        return entry.offset if entry else 0

    def mtime(self, path: Path | str) -> float | None:
        entry = self._entries.get(str(path))
        return entry.mtime if entry else None

    def update(self, path: Path | str, offset: int, mtime: float) -> bool:
        """Store the offset; returns True when it differs from the stored one."""
        key = str(path)
        previous = self._entries.get(key)
        self._entries[key] = OffsetEntry(offset=offset, mtime=mtime)
        return previous is None or previous.offset != offset

    def touch(self, path: Path | str, mtime: float) -> None:
        entry = self._entries.get(str(path))
        if entry:
            entry.mtime = mtime

    def remove(self, path: Path | str) -> bool:
        return self._entries.pop(str(path), None) is not None

    def paths(self) -> list[str]:
        return list(self._entries)

    def enforce_cap(self) -> list[str]:
        """Evict the least recently modified files beyond the cap."""
        if len(self._entries) <= self.cap:
            return []
        ranked = sorted(self._entries.items(), key=lambda item: item[1].mtime, reverse=True)
        evicted = [path for path, _ in ranked[self.cap:]]
        for path in evicted:
            del self._entries[path]
        return evicted

    def snapshot(self) -> dict[str, int]:
        return {path: entry.offset for path, entry in self._entries.items()}
