"""Validated engine settings, defaulting to the environment-driven config."""
from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, Field, model_validator

from agentpulse import config


class EngineConfig(BaseModel):
    progress_file: Path = Field(default_factory=lambda: config.PROGRESS_FILE)
    sessions_dir: Path = Field(default_factory=lambda: config.SESSIONS_DIR)
    registry_file: Path = Field(default_factory=lambda: config.REGISTRY_FILE)

    progress_buffer_cap: int = Field(default_factory=lambda: config.PROGRESS_BUFFER_CAP, gt=0)
    max_tracked_files: int = Field(default_factory=lambda: config.MAX_TRACKED_FILES, gt=0)
    max_open_calls: int = Field(default_factory=lambda: config.MAX_OPEN_CALLS, gt=0)
    max_sessions: int = Field(default_factory=lambda: config.MAX_SESSIONS, gt=0)
    max_recent_actions: int = Field(default_factory=lambda: config.MAX_RECENT_ACTIONS, ge=0)

    dir_cache_ttl: float = Field(default_factory=lambda: config.DIR_CACHE_TTL_SECONDS, ge=0)
    active_lookback: int = Field(default_factory=lambda: config.ACTIVE_LOOKBACK_SECONDS, gt=0)
    max_active_transcripts: int = Field(default_factory=lambda: config.MAX_ACTIVE_TRANSCRIPTS, gt=0)

    running_threshold: int = Field(default_factory=lambda: config.RUNNING_THRESHOLD_SECONDS, gt=0)
    idle_threshold: int = Field(default_factory=lambda: config.IDLE_THRESHOLD_SECONDS, gt=0)

    poll_base_ms: int = Field(default_factory=lambda: config.POLL_BASE_MS, gt=0)
    poll_step_ms: int = Field(default_factory=lambda: config.POLL_STEP_MS, ge=0)
    poll_max_ms: int = Field(default_factory=lambda: config.POLL_MAX_MS, gt=0)
    tick_budget: float = Field(default_factory=lambda: config.TICK_BUDGET_SECONDS, gt=0)

    sweep_interval: int = Field(default_factory=lambda: config.SWEEP_INTERVAL_SECONDS, gt=0)
    retention_lookback: int = Field(default_factory=lambda: config.RETENTION_LOOKBACK_SECONDS, gt=0)

    file_retry_attempts: int = Field(default_factory=lambda: config.FILE_RETRY_ATTEMPTS, ge=1)
    file_retry_delay: float = Field(default_factory=lambda: config.FILE_RETRY_DELAY_SECONDS, ge=0)

    @model_validator(mode="after")
    def _check_ordering(self) -> "EngineConfig":
        if self.poll_base_ms > self.poll_max_ms:
            raise ValueError("poll_base_ms must not exceed poll_max_ms")
        if self.running_threshold > self.idle_threshold:
            raise ValueError("running_threshold must not exceed idle_threshold")
        return self

    @classmethod
    def for_directory(cls, sessions_dir: Path, **overrides) -> "EngineConfig":
        """Settings rooted at one sessions directory (registry and log inside it)."""
        values = {
            "sessions_dir": sessions_dir,
            "registry_file": sessions_dir / "sessions.json",
            "progress_file": sessions_dir / "progress.jsonl",
        }
        values.update(overrides)
        return cls(**values)
