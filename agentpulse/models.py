"""Pydantic models shared by the engine, the parsers and the API."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ActivityStatus(str, Enum):
    RUNNING = "running"
    IDLE = "idle"
    COMPLETED = "completed"
    DONE = "done"
    ERROR = "error"


# Statuses a progress event may carry; session statuses are the other three.
EVENT_STATUSES = frozenset({ActivityStatus.RUNNING, ActivityStatus.DONE, ActivityStatus.ERROR})
SESSION_STATUSES = frozenset({ActivityStatus.RUNNING, ActivityStatus.IDLE, ActivityStatus.COMPLETED})


# ── Progress events ─────────────────────────────────────────────────

class ProgressEvent(BaseModel):
    """One unit of observed agent activity.

    ``timestamp`` is epoch milliseconds. ``call_id`` is set for events
    derived from transcript tool calls and is the buffer identity for them,
    so a finalized call replaces its earlier ``running`` entry.
    """

    model_config = ConfigDict(frozen=True)

    timestamp: int
    agent_label: str = "unknown"
    action: str = "unknown"
    target: str = ""
    status: ActivityStatus = ActivityStatus.RUNNING
    output: str = ""
    output_summary: str = ""
    details: Union[str, dict[str, Any]] = ""
    call_id: Optional[str] = None

    @field_validator("status")
    @classmethod
    def _event_status_only(cls, value: ActivityStatus) -> ActivityStatus:
        if value not in EVENT_STATUSES:
            raise ValueError(f"progress events cannot be {value.value}")
        return value

    @property
    def identity(self) -> str:
        if self.call_id:
            return f"call:{self.call_id}"
        return f"ts:{self.timestamp}"


@dataclass
class PendingToolCall:
    id: str
    name: str
    target: str
    timestamp: int
    agent_label: str = "unknown"


@dataclass
class ToolResult:
    call_id: str
    output: str = ""
    summary: str = ""
    is_error: bool = False
    exit_code: Optional[int] = None
    duration: Optional[float] = None  # seconds
    timestamp: Optional[int] = None


# ── Sessions ────────────────────────────────────────────────────────

class ToolAction(BaseModel):
    action: str
    target: str = ""
    timestamp: Optional[int] = None
    status: ActivityStatus = ActivityStatus.RUNNING


class SessionDetail(BaseModel):
    """Everything derived from one transcript scan."""

    task_summary: str = ""
    result_snippet: str = ""
    runtime: str = ""
    runtime_seconds: int = 0
    started_at: Optional[int] = None
    last_event_at: Optional[int] = None
    tokens_in: int = 0
    tokens_out: int = 0
    cost: float = 0.0
    model: str = ""
    current_action: Optional[ToolAction] = None
    recent_actions: list[ToolAction] = Field(default_factory=list)
    files_worked: list[str] = Field(default_factory=list)
    tool_call_count: int = 0


class SessionSummary(BaseModel):
    id: str
    session_key: str
    label: str = ""
    kind: str = "main"
    status: ActivityStatus = ActivityStatus.COMPLETED
    channel: str = ""
    model: str = ""
    total_tokens: int = 0
    context_tokens: int = 0
    updated_at: int = 0
    transcript_path: str = ""
    task_summary: str = ""
    result_snippet: str = ""
    runtime: str = ""
    tokens_in: int = 0
    tokens_out: int = 0
    cost: float = 0.0
    time_marker: str = ""
    current_action: Optional[ToolAction] = None
    recent_actions: list[ToolAction] = Field(default_factory=list)
    files_worked: list[str] = Field(default_factory=list)
    extracted_tickets: list[str] = Field(default_factory=list)
    extracted_prs: list[int] = Field(default_factory=list)


class EngineMetrics(BaseModel):
    tracked_files: int = 0
    total_buffered_events: int = 0
    cache_size: int = 0
    open_calls: int = 0
    last_tick_at: Optional[int] = None
    last_tick_duration_ms: float = 0.0
    current_poll_interval: int = 0
    ticks: int = 0
    last_sweep_at: Optional[int] = None
