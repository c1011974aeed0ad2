"""Read transcript deltas from active candidates and turn them into events."""
from __future__ import annotations

import logging
from collections import OrderedDict
from pathlib import Path
from typing import Callable, Optional

from agentpulse.engine.scanner import TranscriptFile
from agentpulse.engine.tailing import FileOffsets, ReadResult, read_from_offset, split_lines
from agentpulse.models import PendingToolCall, ProgressEvent
from agentpulse.parsers.transcripts import merge_calls_and_results, parse_transcript_lines

logger = logging.getLogger("agentpulse.merger")

ReaderFn = Callable[[Path, int], Optional[ReadResult]]


class TranscriptMerger:
    def __init__(
        self,
        offsets: FileOffsets,
        *,
        reader: ReaderFn = read_from_offset,
        max_open_calls: int = 200,
    ):
        self.offsets = offsets
        self._reader = reader
        self.max_open_calls = max_open_calls
        self.open_calls: OrderedDict[str, PendingToolCall] = OrderedDict()

    def collect(
        self,
        candidates: list[TranscriptFile],
        label_for: Callable[[str], str],
        now: int,
    ) -> tuple[list[ProgressEvent], bool]:
        """Return (events, offsets_changed) for the new bytes of each candidate."""
        events: list[ProgressEvent] = []
        offsets_changed = False
        for candidate in candidates:
            path = candidate.path
            try:
                result = self._reader(path, self.offsets.get(path))
            except OSError as exc:
                logger.warning("Skipping transcript %s this tick: %s", path, exc)
                continue
            if result is None:
                continue
            if self.offsets.update(path, result.offset, result.mtime) or result.reset:
                offsets_changed = True
            if not result.data:
                continue
            calls, results = parse_transcript_lines(
                split_lines(result.data),
                label_for(candidate.session_id),
                now,
            )
            events.extend(merge_calls_and_results(calls, results, self.open_calls))

        while len(self.open_calls) > self.max_open_calls:
            self.open_calls.popitem(last=False)
        if self.offsets.enforce_cap():
            offsets_changed = True
        return events, offsets_changed
