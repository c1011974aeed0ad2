"""Derive per-session detail (task, result, timing, usage, activity) from a transcript."""
from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any

from agentpulse.date_utils import format_duration
from agentpulse.models import ActivityStatus, SessionDetail, ToolAction
from agentpulse.parsers.transcripts import (
    content_text,
    entry_message,
    entry_results,
    entry_timestamp,
    extract_target,
    finite_number,
    tool_kind,
    truncate,
)

logger = logging.getLogger("agentpulse.parsers.sessions")

TASK_SUMMARY_MAX_LENGTH = 120
RESULT_SNIPPET_MAX_LENGTH = 200
MAX_FILES_WORKED = 10

_COMMAND_FILE_PATTERN = re.compile(r"(?:^|\s)([~/.][\w./\-]+\.\w+)")
_FILE_ARG_KEYS = ("path", "file_path")


def _normalize_text(text: str) -> str:
    return " ".join(text.split())


def _estimate_cost(tokens_in: int, tokens_out: int, model: str) -> float:
    """Rough cost estimate based on model pricing."""
    rates = {
        "claude-3-5-sonnet": (3.0, 15.0),
        "claude-3-7-sonnet": (3.0, 15.0),
        "claude-sonnet": (3.0, 15.0),
        "sonnet": (3.0, 15.0),
        "claude-3-opus": (15.0, 75.0),
        "claude-opus": (15.0, 75.0),
        "opus": (15.0, 75.0),
        "claude-3-haiku": (0.25, 1.25),
        "claude-haiku": (0.25, 1.25),
        "haiku": (0.25, 1.25),
    }
    model_lower = (model or "").lower()
    in_rate, out_rate = 3.0, 15.0
    for key, (ir, outr) in rates.items():
        if key in model_lower:
            in_rate, out_rate = ir, outr
            break
    return (tokens_in / 1_000_000 * in_rate) + (tokens_out / 1_000_000 * out_rate)


def _as_int(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    number = finite_number(value)
    return int(number) if number is not None else 0


def normalize_usage(usage: dict[str, Any]) -> tuple[int, int]:
    """Extract (input, output) token counts from any usage dict shape."""
    tokens_in = _as_int(
        usage.get("input") or usage.get("inputTokens") or usage.get("input_tokens")
        or usage.get("promptTokens") or usage.get("prompt_tokens")
    )
    tokens_out = _as_int(
        usage.get("output") or usage.get("outputTokens") or usage.get("output_tokens")
        or usage.get("completionTokens") or usage.get("completion_tokens")
    )
    return tokens_in, tokens_out


def reported_cost(usage: dict[str, Any]) -> float | None:
    cost = usage.get("cost")
    if isinstance(cost, dict):
        cost = cost.get("total")
    return finite_number(cost)


def _files_from_arguments(name: str, arguments: Any) -> list[str]:
    if not isinstance(arguments, dict):
        return []
    kind = tool_kind(name)
    if kind in {"read", "write"}:
        for key in _FILE_ARG_KEYS:
            value = arguments.get(key)
            if isinstance(value, str) and value.strip():
                return [value.strip()]
        return []
    if kind == "exec":
        command = arguments.get("command")
        if isinstance(command, str):
            return _COMMAND_FILE_PATTERN.findall(command)[:5]
    return []


class _ScanState:
    def __init__(self) -> None:
        self.task_summary = ""
        self.last_assistant_text = ""
        self.first_ts: int | None = None
        self.last_ts: int | None = None
        self.tokens_in = 0
        self.tokens_out = 0
        self.cost = 0.0
        self.model = ""
        self.calls: dict[str, ToolAction] = {}
        self.finished: dict[str, ActivityStatus] = {}
        self.files: list[str] = []

    def observe_timestamp(self, ts: int | None) -> None:
        if ts is None:
            return
        if self.first_ts is None or ts < self.first_ts:
            self.first_ts = ts
        if self.last_ts is None or ts > self.last_ts:
            self.last_ts = ts

    def add_file(self, path: str) -> None:
        if path in self.files:
            self.files.remove(path)
        self.files.append(path)


def _scan_assistant(state: _ScanState, message: dict[str, Any], ts: int | None) -> None:
    model = message.get("model")
    if isinstance(model, str) and model:
        state.model = model

    usage = message.get("usage")
    if isinstance(usage, dict):
        tokens_in, tokens_out = normalize_usage(usage)
        cost = reported_cost(usage)
        if cost is None:
            cost = _estimate_cost(tokens_in, tokens_out, state.model)
        state.tokens_in += tokens_in
        state.tokens_out += tokens_out
        state.cost += cost

    text = content_text(message.get("content")).strip()
    if text:
        state.last_assistant_text = text

    content = message.get("content")
    if not isinstance(content, list):
        return
    for block in content:
        if not isinstance(block, dict) or block.get("type") not in {"toolCall", "tool_use"}:
            continue
        call_id = block.get("id")
        name = block.get("name") if isinstance(block.get("name"), str) else "unknown"
        if not isinstance(call_id, str) or not call_id:
            continue
        arguments = block.get("arguments", block.get("input"))
        state.calls[call_id] = ToolAction(action=name, target=extract_target(arguments), timestamp=ts)
        for path in _files_from_arguments(name, arguments):
            state.add_file(path)


def _scan_results(state: _ScanState, entry: dict[str, Any], role: str, message: dict[str, Any]) -> None:
    for result in entry_results(entry, role, message, None):
        state.finished[result.call_id] = ActivityStatus.ERROR if result.is_error else ActivityStatus.DONE


def _scan_user(state: _ScanState, message: dict[str, Any]) -> None:
    if state.task_summary:
        return
    text = _normalize_text(content_text(message.get("content")))
    if text:
        state.task_summary = truncate(text, TASK_SUMMARY_MAX_LENGTH)


def _scan_entry(state: _ScanState, entry: dict[str, Any]) -> None:
    if entry.get("type") == "model_change" and isinstance(entry.get("modelId"), str):
        state.model = entry["modelId"]
    role, message = entry_message(entry)
    ts = entry_timestamp(entry, message) if message else None
    state.observe_timestamp(ts)
    if not message:
        return
    if role == "assistant":
        _scan_assistant(state, message, ts)
        return
    _scan_results(state, entry, role, message)
    if role == "user":
        _scan_user(state, message)


def _scan_lines(lines, state: _ScanState) -> None:
    for line in lines:
        line = line.strip()
        if not line:
            continue
        try:
            entry = json.loads(line)
        except json.JSONDecodeError:
            continue
        if not isinstance(entry, dict):
            continue
        try:
            _scan_entry(state, entry)
        except (TypeError, ValueError, OverflowError) as exc:
            logger.debug("Skipping unusable transcript line: %s", exc)


def derive_session_detail(
    path: Path,
    status: ActivityStatus,
    now: int,
    max_recent_actions: int = 5,
) -> SessionDetail:
    """Scan a whole transcript once and derive the session detail.

    Live sessions (running/idle) get ``current_action`` and
    ``recent_actions``; completed sessions get ``result_snippet`` instead.
    Raises OSError when the file cannot be read.
    """
    state = _ScanState()
    with open(path, "r", encoding="utf-8", errors="replace") as fh:
        _scan_lines(fh, state)

    live = status in {ActivityStatus.RUNNING, ActivityStatus.IDLE}
    runtime_seconds = 0
    if state.first_ts is not None:
        end = now if live else (state.last_ts or state.first_ts)
        runtime_seconds = max(0, (end - state.first_ts) // 1000)

    detail = SessionDetail(
        task_summary=state.task_summary,
        runtime=format_duration(runtime_seconds) if state.first_ts is not None else "",
        runtime_seconds=runtime_seconds,
        started_at=state.first_ts,
        last_event_at=state.last_ts,
        tokens_in=state.tokens_in,
        tokens_out=state.tokens_out,
        cost=round(state.cost, 6),
        model=state.model,
        files_worked=state.files[-MAX_FILES_WORKED:],
        tool_call_count=len(state.calls),
    )

    if not live:
        detail.result_snippet = truncate(_normalize_text(state.last_assistant_text), RESULT_SNIPPET_MAX_LENGTH)
        return detail

    pending = [call_id for call_id in state.calls if call_id not in state.finished]
    if pending:
        detail.current_action = state.calls[pending[-1]]
    completed = [
        state.calls[call_id].model_copy(update={"status": state.finished[call_id]})
        for call_id in state.calls
        if call_id in state.finished
    ]
    detail.recent_actions = completed[-max_recent_actions:] if max_recent_actions > 0 else []
    return detail
