"""Parse and validate the session-registry file."""
from __future__ import annotations

import json
import logging
import math
import re
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from agentpulse.models import ActivityStatus

logger = logging.getLogger("agentpulse.parsers.registry")

_TICKET_PATTERN = re.compile(r"\b([A-Z]{2,5}-\d+)\b", re.IGNORECASE)
_PR_PATTERN = re.compile(r"(?:#(\d+)|(?:PR[-#]?)(\d+)|(?:fix|review|update|work-on)[-_]?pr[-_]?(\d+))", re.IGNORECASE)

SESSION_KIND_MAIN = "main"
SESSION_KIND_SUBAGENT = "subagent"
SESSION_KIND_CRON = "cron"
SESSION_KIND_OTHER = "other"
DASHBOARD_SESSION_KINDS = frozenset({SESSION_KIND_MAIN, SESSION_KIND_SUBAGENT})


class RegistryEntry(BaseModel):
    """One ``session_key → metadata`` record of the registry file."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    session_id: str = Field("", alias="sessionId")
    label: str = ""
    channel: str = ""
    model: str = ""
    total_tokens: int = Field(0, alias="totalTokens")
    context_tokens: int = Field(0, alias="contextTokens")
    updated_at: int = Field(0, alias="updatedAt")
    transcript_path: Optional[str] = Field(None, alias="transcriptPath")

    @field_validator("session_id", "label", "channel", mode="before")
    @classmethod
    def _blank_if_missing(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("model", mode="before")
    @classmethod
    def _model_name(cls, value: Any) -> Any:
        if value is None:
            return ""
        if isinstance(value, dict):
            for key in ("primary", "id", "name"):
                if isinstance(value.get(key), str):
                    return value[key]
            return ""
        return value

    @field_validator("total_tokens", "context_tokens", "updated_at", mode="before")
    @classmethod
    def _zero_if_missing(cls, value: Any) -> Any:
        if value is None:
            return 0
        if isinstance(value, float):
            return int(value) if math.isfinite(value) else 0
        return value


def parse_registry(text: str) -> dict[str, RegistryEntry]:
    """Decode registry JSON; invalid entries are skipped, invalid files yield {}."""
    try:
        raw = json.loads(text)
    except json.JSONDecodeError as exc:
        logger.warning("Session registry is not valid JSON: %s", exc)
        return {}
    if not isinstance(raw, dict):
        logger.warning("Session registry is not a JSON object (got %s)", type(raw).__name__)
        return {}

    entries: dict[str, RegistryEntry] = {}
    for key, value in raw.items():
        if not isinstance(value, dict):
            continue
        try:
            entry = RegistryEntry.model_validate(value)
        except ValidationError as exc:
            logger.debug("Skipping invalid registry entry %s: %s", key, exc.errors()[:1])
            continue
        except (TypeError, ValueError, OverflowError) as exc:
            logger.debug("Skipping unusable registry entry %s: %s", key, exc)
            continue
        if not entry.session_id:
            logger.debug("Skipping registry entry %s without sessionId", key)
            continue
        entries[str(key)] = entry
    return entries


def classify_session_key(key: str) -> str:
    """Classify a registry key such as ``agent:main:subagent:<uuid>``."""
    parts = [part for part in (key or "").lower().split(":") if part]
    if not parts:
        return SESSION_KIND_OTHER
    if "subagent" in parts:
        return SESSION_KIND_SUBAGENT
    if "cron" in parts:
        return SESSION_KIND_CRON
    if parts[-1] == "main":
        return SESSION_KIND_MAIN
    return SESSION_KIND_OTHER


def session_status(
    updated_at: int,
    now: int,
    running_threshold: int = 60,
    idle_threshold: int = 300,
) -> ActivityStatus:
    """Map the age of ``updated_at`` (epoch ms) to running/idle/completed."""
    if updated_at <= 0:
        return ActivityStatus.COMPLETED
    age_seconds = (now - updated_at) / 1000.0
    if age_seconds < running_threshold:
        return ActivityStatus.RUNNING
    if age_seconds < idle_threshold:
        return ActivityStatus.IDLE
    return ActivityStatus.COMPLETED


def default_label(key: str, kind: str) -> str:
    if kind == SESSION_KIND_MAIN:
        return "main"
    parts = [part for part in key.split(":") if part]
    return parts[-1][:8] if parts else key


def extract_ticket_ids(text: str) -> list[str]:
    seen: list[str] = []
    for match in _TICKET_PATTERN.findall(text or ""):
        ticket = match.upper()
        # PR-45 is a pull request, reported by extract_pr_numbers
        if ticket.startswith("PR-"):
            continue
        if ticket not in seen:
            seen.append(ticket)
    return seen


def extract_pr_numbers(text: str) -> list[int]:
    numbers: list[int] = []
    for groups in _PR_PATTERN.findall(text or ""):
        value = next((group for group in groups if group), "")
        if value and int(value) not in numbers:
            numbers.append(int(value))
    return numbers
