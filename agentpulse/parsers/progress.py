"""Parse progress-log JSONL lines into ProgressEvent models."""
from __future__ import annotations

import json
import logging
from typing import Any

from agentpulse.date_utils import now_ms, to_epoch_ms
from agentpulse.models import ActivityStatus, ProgressEvent

logger = logging.getLogger("agentpulse.parsers.progress")

# Status mapping: progress-log statuses → event statuses
_STATUS_MAP = {
    "running": ActivityStatus.RUNNING,
    "started": ActivityStatus.RUNNING,
    "in-progress": ActivityStatus.RUNNING,
    "in_progress": ActivityStatus.RUNNING,
    "done": ActivityStatus.DONE,
    "complete": ActivityStatus.DONE,
    "completed": ActivityStatus.DONE,
    "success": ActivityStatus.DONE,
    "ok": ActivityStatus.DONE,
    "error": ActivityStatus.ERROR,
    "failed": ActivityStatus.ERROR,
    "failure": ActivityStatus.ERROR,
}


def _map_status(raw: Any) -> ActivityStatus:
    if not isinstance(raw, str):
        return ActivityStatus.RUNNING
    return _STATUS_MAP.get(raw.lower().strip(), ActivityStatus.RUNNING)


def _text(value: Any, default: str = "") -> str:
    if value is None:
        return default
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False)


def normalize_progress_event(raw: Any, default_ts: int) -> ProgressEvent | None:
    """Build a ProgressEvent from one decoded log line, filling defaults."""
    if not isinstance(raw, dict):
        return None
    details = raw.get("details")
    if not isinstance(details, (str, dict)):
        details = _text(details)
    return ProgressEvent(
        timestamp=to_epoch_ms(raw.get("ts")) or default_ts,
        agent_label=_text(raw.get("agent")) or "unknown",
        action=_text(raw.get("action")) or "unknown",
        target=_text(raw.get("target")),
        status=_map_status(raw.get("status")),
        output=_text(raw.get("output")),
        output_summary=_text(raw.get("output_summary")),
        details=details,
    )


def parse_progress_lines(lines: list[str], read_at: int | None = None) -> list[ProgressEvent]:
    """Parse decoded lines, skipping malformed ones one line at a time.

    Lines without a usable ``ts`` are stamped with the read time, shifted by
    their position so they stay distinct.
    """
    base = read_at if read_at is not None else now_ms()
    events: list[ProgressEvent] = []
    for index, line in enumerate(lines):
        try:
            raw = json.loads(line)
        except json.JSONDecodeError as exc:
            logger.debug("Skipping malformed progress line: %s", exc)
            continue
        try:
            event = normalize_progress_event(raw, base + index)
        except (TypeError, ValueError, OverflowError) as exc:
            logger.debug("Skipping unusable progress line: %s", exc)
            continue
        if event is not None:
            events.append(event)
    return events
