"""Extract tool calls and tool results from transcript lines and pair them.

Two transcript dialects are understood:

- OpenClaw: assistant ``content`` entries of type ``toolCall`` (``arguments``)
  answered by messages with role ``toolResult`` (``toolCallId``).
- Claude Code: assistant ``content`` entries of type ``tool_use`` (``input``)
  answered by ``tool_result`` blocks inside user messages (``tool_use_id``).
"""
from __future__ import annotations

import json
import logging
import math
import re
from collections import OrderedDict
from typing import Any

from agentpulse.date_utils import to_epoch_ms
from agentpulse.models import ActivityStatus, PendingToolCall, ProgressEvent, ToolResult

logger = logging.getLogger("agentpulse.parsers.transcripts")

TARGET_MAX_LENGTH = 50
OUTPUT_MAX_LENGTH = 500

# Argument keys consulted, in order, for the display target of a call.
_TARGET_KEYS = ("path", "file_path", "command", "query", "url", "pattern")

_CALL_BLOCK_TYPES = {"toolCall", "tool_use"}
_RESULT_ROLES = {"toolResult", "tool_result", "tool"}

_EXEC_TOOLS = {"exec", "bash", "shell", "process", "run_command", "command"}
_READ_TOOLS = {"read", "readfile", "read_file", "view"}
_WRITE_TOOLS = {"write", "writefile", "write_file", "edit", "multiedit", "edit_file", "apply_patch", "notebookedit"}

WRITE_SUCCESS_MARKER = "saved"

_EXIT_CODE_PATTERN = re.compile(r"(?:exit(?:ed)?(?: with)?(?: code)?|exit status)[:\s]+(-?\d+)", re.IGNORECASE)


def truncate(text: Any, max_length: int) -> str:
    if not isinstance(text, str):
        return ""
    if len(text) > max_length:
        return text[: max_length - 3] + "..."
    return text


def extract_target(arguments: Any) -> str:
    if not isinstance(arguments, dict):
        return ""
    for key in _TARGET_KEYS:
        value = arguments.get(key)
        if isinstance(value, str) and value.strip():
            return truncate(value.strip(), TARGET_MAX_LENGTH)
        if isinstance(value, list) and value and isinstance(value[0], str):
            return truncate(value[0].strip(), TARGET_MAX_LENGTH)
    return ""


def tool_kind(name: str) -> str:
    lowered = (name or "").strip().lower()
    if lowered in _EXEC_TOOLS:
        return "exec"
    if lowered in _READ_TOOLS:
        return "read"
    if lowered in _WRITE_TOOLS:
        return "write"
    return "other"


def content_text(content: Any) -> str:
    """Flatten message content (string or list of blocks) into plain text."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and block.get("type") in {"text", "output_text", "input_text"}:
                text = block.get("text")
                if isinstance(text, str):
                    parts.append(text)
        return "\n".join(parts)
    return ""


def entry_message(entry: Any) -> tuple[str, dict[str, Any]]:
    """Return (role, message) for one decoded transcript line."""
    if not isinstance(entry, dict):
        return "", {}
    message = entry.get("message")
    if not isinstance(message, dict):
        return "", {}
    role = message.get("role")
    if not isinstance(role, str):
        role = entry.get("type") if isinstance(entry.get("type"), str) else ""
    return role, message


def entry_timestamp(entry: dict[str, Any], message: dict[str, Any]) -> int | None:
    return to_epoch_ms(entry.get("timestamp")) or to_epoch_ms(message.get("timestamp"))


def _coerce_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return None


def finite_number(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    try:
        number = float(value)
    except OverflowError:
        return None
    return number if math.isfinite(number) else None


def _duration_seconds(details: dict[str, Any]) -> float | None:
    for key in ("durationMs", "duration_ms"):
        value = finite_number(details.get(key))
        if value is not None:
            return max(0.0, value / 1000.0)
    value = finite_number(details.get("duration"))
    if value is not None:
        return max(0.0, value)
    return None


def _exit_code(details: dict[str, Any], output: str) -> int | None:
    for key in ("exitCode", "exit_code", "code"):
        code = _coerce_int(details.get(key))
        if code is not None:
            return code
    match = _EXIT_CODE_PATTERN.search(output or "")
    if match:
        return _coerce_int(match.group(1))
    return None


def _parse_calls(message: dict[str, Any], timestamp: int, agent_label: str) -> list[PendingToolCall]:
    content = message.get("content")
    if not isinstance(content, list):
        return []
    calls: list[PendingToolCall] = []
    for block in content:
        if not isinstance(block, dict) or block.get("type") not in _CALL_BLOCK_TYPES:
            continue
        call_id = block.get("id")
        name = block.get("name")
        if not isinstance(call_id, str) or not call_id:
            continue
        arguments = block.get("arguments", block.get("input"))
        if isinstance(arguments, str):
            try:
                arguments = json.loads(arguments)
            except json.JSONDecodeError:
                arguments = {"command": arguments}
        calls.append(
            PendingToolCall(
                id=call_id,
                name=name if isinstance(name, str) and name else "unknown",
                target=extract_target(arguments),
                timestamp=timestamp,
                agent_label=agent_label,
            )
        )
    return calls


def _parse_role_result(message: dict[str, Any], timestamp: int | None) -> ToolResult | None:
    call_id = message.get("toolCallId") or message.get("tool_call_id") or message.get("toolUseId")
    if not isinstance(call_id, str) or not call_id:
        return None
    details = message.get("details") if isinstance(message.get("details"), dict) else {}
    output = content_text(message.get("content"))
    return ToolResult(
        call_id=call_id,
        output=output,
        is_error=bool(message.get("isError") or message.get("is_error")),
        exit_code=_exit_code(details, output),
        duration=_duration_seconds(details),
        timestamp=timestamp,
    )


def _parse_block_results(entry: dict[str, Any], message: dict[str, Any], timestamp: int | None) -> list[ToolResult]:
    content = message.get("content")
    if not isinstance(content, list):
        return []
    extra = entry.get("toolUseResult") if isinstance(entry.get("toolUseResult"), dict) else {}
    results: list[ToolResult] = []
    for block in content:
        if not isinstance(block, dict) or block.get("type") != "tool_result":
            continue
        call_id = block.get("tool_use_id")
        if not isinstance(call_id, str) or not call_id:
            continue
        output = content_text(block.get("content"))
        results.append(
            ToolResult(
                call_id=call_id,
                output=output,
                is_error=bool(block.get("is_error")),
                exit_code=_exit_code(extra, output),
                duration=_duration_seconds(extra),
                timestamp=timestamp,
            )
        )
    return results


def entry_results(
    entry: dict[str, Any],
    role: str,
    message: dict[str, Any],
    timestamp: int | None,
) -> list[ToolResult]:
    """Tool results carried by one transcript entry, in either dialect."""
    if role in _RESULT_ROLES:
        result = _parse_role_result(message, timestamp)
        return [result] if result else []
    if role == "user":
        return _parse_block_results(entry, message, timestamp)
    return []


def _parse_entry(
    entry: Any,
    agent_label: str,
    default_ts: int,
) -> tuple[list[PendingToolCall], list[ToolResult]]:
    role, message = entry_message(entry)
    if not message:
        return [], []
    timestamp = entry_timestamp(entry, message)
    if role == "assistant":
        return _parse_calls(message, timestamp or default_ts, agent_label), []
    return [], entry_results(entry, role, message, timestamp)


def parse_transcript_lines(
    lines: list[str],
    agent_label: str,
    default_ts: int,
) -> tuple[list[PendingToolCall], dict[str, ToolResult]]:
    """Split transcript lines into pending calls and results keyed by call id.

    A line that fails to decode or holds unusable values is skipped on its own.
    """
    calls: list[PendingToolCall] = []
    results: dict[str, ToolResult] = {}
    for line in lines:
        try:
            entry = json.loads(line)
        except json.JSONDecodeError as exc:
            logger.debug("Skipping malformed transcript line: %s", exc)
            continue
        try:
            line_calls, line_results = _parse_entry(entry, agent_label, default_ts)
        except (TypeError, ValueError, OverflowError) as exc:
            logger.debug("Skipping unusable transcript line: %s", exc)
            continue
        calls.extend(line_calls)
        for result in line_results:
            results[result.call_id] = result
    return calls, results


def summarize_output(tool_name: str, result: ToolResult) -> str:
    """One-line summary of a tool result, chosen by tool kind."""
    output = result.output or ""
    line_count = len(output.splitlines())
    kind = tool_kind(tool_name)

    if kind == "exec":
        parts: list[str] = []
        if result.exit_code is not None:
            parts.append(f"exit {result.exit_code}")
        elif result.is_error:
            parts.append("failed")
        parts.append(f"{line_count} lines")
        if result.duration is not None:
            parts.append(f"{result.duration:.1f}s")
        return " · ".join(parts)
    if result.is_error:
        first_line = output.strip().splitlines()[0] if output.strip() else ""
        return truncate(f"error: {first_line}".strip(), 80) if first_line else "error"
    if kind == "read":
        return f"{line_count} lines"
    if kind == "write":
        return WRITE_SUCCESS_MARKER
    if output:
        return f"{len(output.encode('utf-8'))} bytes"
    return "done"


def running_event(call: PendingToolCall) -> ProgressEvent:
    return ProgressEvent(
        timestamp=call.timestamp,
        agent_label=call.agent_label,
        action=call.name,
        target=call.target,
        status=ActivityStatus.RUNNING,
        call_id=call.id,
    )


def finalized_event(call: PendingToolCall, result: ToolResult) -> ProgressEvent:
    duration = result.duration
    if duration is None and result.timestamp and call.timestamp and result.timestamp >= call.timestamp:
        duration = (result.timestamp - call.timestamp) / 1000.0
        result.duration = duration
    result.summary = summarize_output(call.name, result)
    details: dict[str, Any] = {}
    if result.exit_code is not None:
        details["exit_code"] = result.exit_code
    if duration is not None:
        details["duration"] = round(duration, 3)
    return ProgressEvent(
        timestamp=call.timestamp,
        agent_label=call.agent_label,
        action=call.name,
        target=call.target,
        status=ActivityStatus.ERROR if result.is_error else ActivityStatus.DONE,
        output=truncate(result.output, OUTPUT_MAX_LENGTH),
        output_summary=result.summary,
        details=details,
        call_id=call.id,
    )


def merge_calls_and_results(
    calls: list[PendingToolCall],
    results: dict[str, ToolResult],
    open_calls: OrderedDict[str, PendingToolCall],
) -> list[ProgressEvent]:
    """Pair calls with results; unmatched calls are emitted as running.

    ``open_calls`` carries calls emitted as running in earlier passes so that
    a result arriving later still finalizes them. It is updated in place.
    Results answering no known call (or a call already finalized) are dropped.
    """
    remaining = dict(results)
    events: list[ProgressEvent] = []
    for call in calls:
        result = remaining.pop(call.id, None)
        if result is not None:
            open_calls.pop(call.id, None)
            events.append(finalized_event(call, result))
        else:
            open_calls[call.id] = call
            open_calls.move_to_end(call.id)
            events.append(running_event(call))

    for call_id, result in remaining.items():
        call = open_calls.pop(call_id, None)
        if call is None:
            logger.debug("Ignoring result for unknown or finished call %s", call_id)
            continue
        events.append(finalized_event(call, result))
    return events
