"""Bounded, time-ordered progress event buffer."""
from __future__ import annotations

from typing import Iterable

from agentpulse.models import ProgressEvent


class ProgressBuffer:
    """Keeps the newest ``cap`` events ordered by timestamp.

    Events are keyed by ``ProgressEvent.identity``: a later event with the
    same identity replaces the earlier one (a finalized tool call replaces
    its running entry, a repeated log timestamp replaces the older line).
    """

    def __init__(self, cap: int = 100):
        self.cap = cap
        self._events: list[ProgressEvent] = []

    def __len__(self) -> int:
        return len(self._events)

    def events(self) -> list[ProgressEvent]:
        return list(self._events)

    def merge(self, incoming: Iterable[ProgressEvent]) -> list[ProgressEvent]:
        """Merge events; returns those that were new or changed and retained."""
        index = {event.identity: event for event in self._events}
        changed: list[ProgressEvent] = []
        for event in incoming:
            if index.get(event.identity) == event:
                continue
            index[event.identity] = event
            changed.append(event)
        if not changed:
            return []

        ordered = sorted(index.values(), key=lambda event: (event.timestamp, event.identity))
        self._events = ordered[-self.cap:]
        kept = {event.identity: event for event in self._events}
        return [event for event in changed if kept.get(event.identity) is event]
