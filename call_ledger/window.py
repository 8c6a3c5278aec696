"""Per-number bounded history of recent calls."""

from __future__ import annotations

import bisect
import logging
from datetime import datetime, timedelta
from typing import Any

from .const import (
    ANSWER_MATCH_WINDOW_MINUTES,
    RECENT_WINDOW_HORIZON_HOURS,
    RECENT_WINDOW_MAX_ENTRIES,
    CallKind,
)
from .models import WindowEntry, to_epoch_ms

_LOGGER = logging.getLogger(__name__)


class RecentCallWindow:
    """Answer "was this number answered around then?" without scanning records."""

    def __init__(
        self,
        *,
        horizon: timedelta = timedelta(hours=RECENT_WINDOW_HORIZON_HOURS),
        max_entries: int = RECENT_WINDOW_MAX_ENTRIES,
        match_window: timedelta = timedelta(minutes=ANSWER_MATCH_WINDOW_MINUTES),
    ) -> None:
        """Initialize the window."""
        self.horizon = horizon
        self.max_entries = max_entries
        self.match_window = match_window
        self._entries: dict[str, list[WindowEntry]] = {}

    def __len__(self) -> int:
        return sum(len(entries) for entries in self._entries.values())

    def __contains__(self, phone_key: object) -> bool:
        return phone_key in self._entries

    def entries(self, phone_key: str) -> list[WindowEntry]:
        """Return a copy of the entries kept for *phone_key*."""
        return list(self._entries.get(phone_key, ()))

    def record(
        self, phone_key: str, time: datetime, kind: CallKind, now: datetime
    ) -> None:
        """Add an observation, then prune by age and count."""
        entries = self._entries.setdefault(phone_key, [])
        bisect.insort(entries, WindowEntry(time, kind), key=lambda entry: entry.time)
        self._prune_key(phone_key, now - self.horizon)

    def has_answered_near(self, phone_key: str, time: datetime) -> bool:
        """True iff an answered call lies within the match window of *time*."""
        lower = time - self.match_window
        upper = time + self.match_window
        return any(
            entry.kind is CallKind.ANSWERED and lower <= entry.time <= upper
            for entry in self._entries.get(phone_key, ())
        )

    def prune(self, now: datetime) -> int:
        """Drop expired entries for every number. Returns the number removed."""
        before = len(self)
        cutoff = now - self.horizon
        for phone_key in list(self._entries):
            self._prune_key(phone_key, cutoff)
        removed = before - len(self)
        if removed:
            _LOGGER.debug("Pruned %d recent-call window entries", removed)
        return removed

    def _prune_key(self, phone_key: str, cutoff: datetime) -> None:
        kept = [
            entry for entry in self._entries.get(phone_key, ()) if entry.time >= cutoff
        ][-self.max_entries :]
        if kept:
            self._entries[phone_key] = kept
        else:
            self._entries.pop(phone_key, None)

    def clear(self) -> None:
        """Forget every entry."""
        self._entries.clear()

    def to_dict(self) -> dict[str, list[dict[str, Any]]]:
        """Convert to dictionary for storage."""
        return {
            phone_key: [
                {"time": to_epoch_ms(entry.time), "kind": entry.kind.value}
                for entry in entries
            ]
            for phone_key, entries in self._entries.items()
        }

    def load(self, data: dict[str, list[dict[str, Any]]], now: datetime) -> None:
        """Restore entries from storage, dropping anything already expired."""
        self._entries.clear()
        for phone_key, raw_entries in data.items():
            for raw in raw_entries:
                self.record(
                    phone_key,
                    datetime.fromtimestamp(raw["time"] / 1000),
                    CallKind(raw["kind"]),
                    now,
                )
