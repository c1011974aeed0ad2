"""The activity aggregation engine.

One ``ActivityEngine`` owns all state; ``tick()`` is the only mutator and is
always run by a single worker at a time. Readers get copies of the latest
snapshot through ``get_progress()``, ``get_sessions()`` and ``get_metrics()``.
"""
from __future__ import annotations

import functools
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from agentpulse.date_utils import format_age
from agentpulse.engine.buffer import ProgressBuffer
from agentpulse.engine.detail_cache import DeriveFn, SessionDetailCache
from agentpulse.engine.merger import ReaderFn, TranscriptMerger
from agentpulse.engine.retention import RetentionSweeper
from agentpulse.engine.scanner import TranscriptScanner
from agentpulse.engine.scheduler import AdaptivePollScheduler
from agentpulse.engine.settings import EngineConfig
from agentpulse.engine.tailing import FileOffsets, read_from_offset, split_lines
from agentpulse.models import (
    ActivityStatus,
    EngineMetrics,
    ProgressEvent,
    SessionSummary,
)
from agentpulse.observability import (
    record_parser_failure,
    record_tick,
    record_token_cost,
    record_tool_result,
    start_span,
)
from agentpulse.parsers.progress import parse_progress_lines
from agentpulse.parsers.registry import (
    DASHBOARD_SESSION_KINDS,
    RegistryEntry,
    classify_session_key,
    default_label,
    extract_pr_numbers,
    extract_ticket_ids,
    parse_registry,
    session_status,
)
from agentpulse.parsers.sessions import derive_session_detail

logger = logging.getLogger("agentpulse.engine")


@dataclass
class TickResult:
    changed: bool = False
    progress: list[ProgressEvent] = field(default_factory=list)
    sessions: Optional[list[SessionSummary]] = None  # None when unchanged
    registry_changed: bool = False
    offsets_changed: bool = False
    failed_steps: list[str] = field(default_factory=list)
    skipped_steps: list[str] = field(default_factory=list)
    duration_ms: float = 0.0
    next_interval_ms: int = 0


class ActivityEngine:
    def __init__(
        self,
        settings: EngineConfig | None = None,
        *,
        clock: Callable[[], float] = time.time,
        reader: ReaderFn | None = None,
        derive: DeriveFn = derive_session_detail,
    ):
        self.settings = settings or EngineConfig()
        self._clock = clock
        s = self.settings

        self._reader: ReaderFn = reader or functools.partial(
            read_from_offset,
            attempts=s.file_retry_attempts,
            retry_delay=s.file_retry_delay,
        )
        self.buffer = ProgressBuffer(s.progress_buffer_cap)
        self.offsets = FileOffsets(s.max_tracked_files)
        self.progress_offset = 0
        self.scanner = TranscriptScanner(
            s.sessions_dir,
            exclude=(s.registry_file, s.progress_file),
            ttl=s.dir_cache_ttl,
            lookback=s.active_lookback,
            max_candidates=s.max_active_transcripts,
            clock=clock,
        )
        self.merger = TranscriptMerger(self.offsets, reader=self._reader, max_open_calls=s.max_open_calls)
        self.detail_cache = SessionDetailCache(derive, max_recent_actions=s.max_recent_actions)
        self.scheduler = AdaptivePollScheduler(s.poll_base_ms, s.poll_step_ms, s.poll_max_ms)
        self.sweeper = RetentionSweeper(
            self.offsets,
            self.detail_cache,
            interval=s.sweep_interval,
            lookback=s.retention_lookback,
        )

        self.registry_mtime: Optional[float] = None
        self.registry: dict[str, RegistryEntry] = {}
        self._labels: dict[str, str] = {}
        self._reported_sessions: set[str] = set()

        self._progress: tuple[ProgressEvent, ...] = ()
        self._sessions: tuple[SessionSummary, ...] = ()
        self._metrics = EngineMetrics(current_poll_interval=self.scheduler.interval_ms)
        self._ticks = 0

    # ── queries ──────────────────────────────────────────────────────

    def get_progress(self) -> list[ProgressEvent]:
        return list(self._progress)

    def get_sessions(self) -> list[SessionSummary]:
        return [session.model_copy(deep=True) for session in self._sessions]

    def get_metrics(self) -> EngineMetrics:
        return self._metrics.model_copy()

    @property
    def poll_interval_seconds(self) -> float:
        return self.scheduler.interval_seconds

    # ── tick ─────────────────────────────────────────────────────────

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def tick(self) -> TickResult:
        """Run one poll pass over every input and publish a new snapshot."""
        started = time.monotonic()
        now = self._now_ms()
        result = TickResult()

        with start_span("agentpulse.tick", {"agentpulse.tick": self._ticks + 1}):
            steps = []
            if self.sweeper.due(now / 1000.0):
                steps.append(("retention", self._sweep))
            steps.extend(
                (
                    ("registry", self._refresh_registry),
                    ("progress", self._tail_progress),
                    ("transcripts", self._merge_transcripts),
                    ("sessions", self._build_sessions),
                )
            )
            for index, (name, step) in enumerate(steps):
                if not self._run_step(name, step, now, result, started):
                    result.skipped_steps.extend(later for later, _ in steps[index + 1:])
                    break

        result.changed = bool(result.progress) or result.offsets_changed or result.registry_changed
        result.next_interval_ms = self.scheduler.record(result.changed)
        result.duration_ms = (time.monotonic() - started) * 1000.0
        self._ticks += 1
        self._progress = tuple(self.buffer.events())
        self._metrics = EngineMetrics(
            tracked_files=len(self.offsets),
            total_buffered_events=len(self.buffer),
            cache_size=len(self.detail_cache),
            open_calls=len(self.merger.open_calls),
            last_tick_at=now,
            last_tick_duration_ms=round(result.duration_ms, 3),
            current_poll_interval=result.next_interval_ms,
            ticks=self._ticks,
            last_sweep_at=int(self.sweeper.last_sweep_at * 1000) if self.sweeper.last_sweep_at else None,
        )
        record_tick(result.duration_ms, result.changed)
        return result

    def _run_step(self, name: str, step, now: int, result: TickResult, started: float) -> bool:
        """Run one sub-step; returns False when the tick budget is spent."""
        try:
            step(now, result)
        except Exception as exc:
            logger.warning("Tick step %s failed, retrying next tick: %s", name, exc)
            record_parser_failure(name)
            result.failed_steps.append(name)
        elapsed = time.monotonic() - started
        if elapsed > self.settings.tick_budget:
            logger.warning("Tick budget exceeded after %s (%.2fs), skipping remaining steps", name, elapsed)
            return False
        return True

    def _sweep(self, now: int, result: TickResult) -> None:
        self.sweeper.sweep(now / 1000.0)

    def _refresh_registry(self, now: int, result: TickResult) -> None:
        path = self.settings.registry_file
        try:
            mtime = path.stat().st_mtime
        except FileNotFoundError:
            if self.registry_mtime is not None:
                self.registry_mtime = None
                self.registry = {}
                self._labels = {}
                result.registry_changed = True
            return
        if mtime == self.registry_mtime:
            return
        self.registry = parse_registry(path.read_text(encoding="utf-8", errors="replace"))
        self.registry_mtime = mtime
        self._labels = {
            entry.session_id: entry.label or default_label(key, classify_session_key(key))
            for key, entry in self.registry.items()
        }
        result.registry_changed = True
        logger.debug("Session registry reloaded with %d entries", len(self.registry))

    def _tail_progress(self, now: int, result: TickResult) -> None:
        read = self._reader(self.settings.progress_file, self.progress_offset)
        if read is None:
            return
        if read.offset != self.progress_offset or read.reset:
            result.offsets_changed = True
        self.progress_offset = read.offset
        if read.data:
            events = parse_progress_lines(split_lines(read.data), now)
            result.progress.extend(self.buffer.merge(events))

    def _label_for(self, session_id: str) -> str:
        return self._labels.get(session_id) or session_id[:8]

    def _merge_transcripts(self, now: int, result: TickResult) -> None:
        candidates = self.scanner.active_candidates()
        events, offsets_changed = self.merger.collect(candidates, self._label_for, now)
        result.offsets_changed = result.offsets_changed or offsets_changed
        if events:
            added = self.buffer.merge(events)
            result.progress.extend(added)
            for event in added:
                if event.status != ActivityStatus.RUNNING:
                    duration = event.details.get("duration") if isinstance(event.details, dict) else None
                    record_tool_result(event.action, event.status.value, duration_ms=(duration or 0) * 1000)

    def _transcript_path(self, entry: RegistryEntry) -> Path:
        if entry.transcript_path:
            candidate = Path(entry.transcript_path).expanduser()
            if not candidate.is_absolute():
                candidate = self.settings.registry_file.parent / candidate
            return candidate
        return self.settings.sessions_dir / f"{entry.session_id}.jsonl"

    def _build_sessions(self, now: int, result: TickResult) -> None:
        s = self.settings
        rows = [
            (key, entry, classify_session_key(key))
            for key, entry in self.registry.items()
        ]
        rows = [row for row in rows if row[2] in DASHBOARD_SESSION_KINDS]
        rows.sort(key=lambda row: row[1].updated_at, reverse=True)

        sessions: list[SessionSummary] = []
        for key, entry, kind in rows[: s.max_sessions]:
            status = session_status(entry.updated_at, now, s.running_threshold, s.idle_threshold)
            transcript = self._transcript_path(entry)
            detail = self.detail_cache.get(entry.session_id, transcript, status, now)
            label = entry.label or default_label(key, kind)
            text = f"{label} {detail.task_summary}"
            sessions.append(
                SessionSummary(
                    id=entry.session_id,
                    session_key=key,
                    label=label,
                    kind=kind,
                    status=status,
                    channel=entry.channel,
                    model=entry.model or detail.model,
                    total_tokens=entry.total_tokens,
                    context_tokens=entry.context_tokens,
                    updated_at=entry.updated_at,
                    transcript_path=str(transcript),
                    task_summary=detail.task_summary,
                    result_snippet=detail.result_snippet,
                    runtime=detail.runtime,
                    tokens_in=detail.tokens_in,
                    tokens_out=detail.tokens_out,
                    cost=detail.cost,
                    time_marker=format_age((now - entry.updated_at) / 1000.0) if entry.updated_at else "",
                    current_action=detail.current_action,
                    recent_actions=list(detail.recent_actions),
                    files_worked=list(detail.files_worked),
                    extracted_tickets=extract_ticket_ids(text),
                    extracted_prs=extract_pr_numbers(text),
                )
            )
            if status == ActivityStatus.COMPLETED and entry.session_id not in self._reported_sessions:
                self._reported_sessions.add(entry.session_id)
                record_token_cost(
                    model=entry.model or detail.model,
                    token_input=detail.tokens_in,
                    token_output=detail.tokens_out,
                    cost_usd=detail.cost,
                )

        self._reported_sessions &= {session.id for session in sessions}
        if tuple(sessions) != self._sessions:
            self._sessions = tuple(sessions)
            result.sessions = self.get_sessions()
