"""Shared timestamp normalization and duration formatting helpers."""
from __future__ import annotations

import math
import time
from datetime import datetime, timezone
from typing import Any

# Epoch values at or above this are milliseconds (1e11 ms is 1973, 1e11 s is year 5138).
_MS_THRESHOLD = 100_000_000_000


def now_ms() -> int:
    return int(time.time() * 1000)


def _parse_datetime_token(token: str) -> datetime | None:
    cleaned = token.strip()
    if not cleaned:
        return None
    try:
        return datetime.fromisoformat(cleaned.replace("Z", "+00:00"))
    except ValueError:
        pass
    for fmt in ("%Y/%m/%d %H:%M:%S", "%Y-%m-%d %H:%M:%S"):
        try:
            return datetime.strptime(cleaned, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    return None


def to_epoch_ms(value: Any) -> int | None:
    """Convert mixed timestamp inputs (epoch s/ms, ISO strings) to epoch ms.

    Returns None when the value cannot be interpreted.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            return None
        if value <= 0:
            return None
        return int(value) if value >= _MS_THRESHOLD else int(value * 1000)
    if isinstance(value, datetime):
        dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        return int(dt.timestamp() * 1000)
    if isinstance(value, str):
        token = value.strip()
        if not token:
            return None
        if token.isdigit():
            return to_epoch_ms(int(token))
        parsed = _parse_datetime_token(token)
        if parsed is None:
            return None
        dt = parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
        return int(dt.timestamp() * 1000)
    return None


def format_duration(seconds: float) -> str:
    """Render a span as ``1h 2m``, ``3m 4s`` or ``12s``."""
    total = max(0, int(seconds))
    hours, rem = divmod(total, 3600)
    minutes, secs = divmod(rem, 60)
    if hours:
        return f"{hours}h {minutes}m"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def format_age(seconds: float) -> str:
    total = max(0, int(seconds))
    if total < 60:
        return f"{total}s ago"
    if total < 3600:
        return f"{total // 60}m ago"
    if total < 86400:
        return f"{total // 3600}h ago"
    return f"{total // 86400}d ago"
