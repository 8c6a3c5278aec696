"""Dedup ledger and processed-answer set."""

from __future__ import annotations

import logging
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Any

from .const import (
    ANSWER_MATCH_WINDOW_MINUTES,
    MAX_PROCESSED_ANSWERS,
    MAX_PROCESSED_INDEXES,
    MAX_SENT_RECORDS,
    PROCESSED_ANSWER_RETENTION_HOURS,
)
from .models import AnswerKey, RecordKey, to_epoch_ms

_LOGGER = logging.getLogger(__name__)


class DedupLedger:
    """Track processed source indexes and records already sent to the sink.

    Both maps are kept in insertion order so eviction drops the oldest
    entries first. Entries whose call lies inside the answer-matching
    horizon are never evicted: a later answer may still need them.
    """

    def __init__(
        self,
        *,
        index_capacity: int = MAX_PROCESSED_INDEXES,
        sent_capacity: int = MAX_SENT_RECORDS,
        protect_horizon: timedelta = timedelta(minutes=ANSWER_MATCH_WINDOW_MINUTES),
    ) -> None:
        """Initialize the ledger."""
        self.index_capacity = index_capacity
        self.sent_capacity = sent_capacity
        self.protect_horizon = protect_horizon
        self._indexes: OrderedDict[str, int | None] = OrderedDict()
        self._sent: OrderedDict[RecordKey, str] = OrderedDict()

    @property
    def index_count(self) -> int:
        return len(self._indexes)

    @property
    def sent_count(self) -> int:
        return len(self._sent)

    def is_new_index(self, source_index: str) -> bool:
        """True when *source_index* has not been processed this session."""
        return source_index not in self._indexes

    def mark_index(self, source_index: str, timestamp: datetime | None = None) -> None:
        """Record *source_index* as processed, with its call time when known."""
        self._indexes[source_index] = (
            to_epoch_ms(timestamp) if timestamp is not None else None
        )

    def sent_record_status(self, record_key: RecordKey) -> str | None:
        """Return the last status sent for *record_key*, if any."""
        return self._sent.get(record_key)

    def mark_sent(self, record_key: RecordKey, status: str) -> None:
        """Remember that *record_key* was sent with *status*."""
        self._sent[record_key] = status
        self._sent.move_to_end(record_key)

    def evict(self, now: datetime) -> int:
        """Trim both maps to capacity. Returns the number of entries removed."""
        protect_from = to_epoch_ms(now - self.protect_horizon)

        removed = _evict_oldest(
            self._indexes,
            self.index_capacity,
            lambda _key, ts: ts is not None and ts >= protect_from,
        )
        removed += _evict_oldest(
            self._sent,
            self.sent_capacity,
            lambda key, _status: key[1] >= protect_from,
        )

        if len(self._indexes) > self.index_capacity:
            _LOGGER.warning(
                "Dedup ledger holds %d indexes above capacity %d (all reconcilable)",
                len(self._indexes),
                self.index_capacity,
            )
        return removed

    def clear(self) -> None:
        """Forget every entry."""
        self._indexes.clear()
        self._sent.clear()

    def to_dict(
        self, *, max_indexes: int | None = None, max_sent: int | None = None
    ) -> dict[str, Any]:
        """Convert the newest entries to a dictionary for storage."""
        indexes = list(self._indexes.items())
        sent = list(self._sent.items())
        if max_indexes is not None:
            indexes = indexes[-max_indexes:] if max_indexes else []
        if max_sent is not None:
            sent = sent[-max_sent:] if max_sent else []
        return {
            "processed_indexes": [[index, ts] for index, ts in indexes],
            "sent_records": [[key[0], key[1], status] for key, status in sent],
        }

    def load(self, data: dict[str, Any]) -> None:
        """Restore entries from storage."""
        self.clear()
        for index, ts in data.get("processed_indexes", []):
            self._indexes[str(index)] = ts
        for phone_key, epoch_ms, status in data.get("sent_records", []):
            self._sent[(phone_key, int(epoch_ms))] = status


class ProcessedAnswerSet:
    """Answer events that already triggered a reconciliation pass."""

    def __init__(
        self,
        *,
        capacity: int = MAX_PROCESSED_ANSWERS,
        max_age: timedelta = timedelta(hours=PROCESSED_ANSWER_RETENTION_HOURS),
    ) -> None:
        """Initialize the set."""
        self.capacity = capacity
        self.max_age = max_age
        self._keys: OrderedDict[AnswerKey, None] = OrderedDict()

    def __contains__(self, answer_key: object) -> bool:
        return answer_key in self._keys

    def __len__(self) -> int:
        return len(self._keys)

    def add(self, answer_key: AnswerKey) -> None:
        self._keys[answer_key] = None

    def evict(self, now: datetime) -> int:
        """Drop keys older than the age limit, then trim to capacity."""
        cutoff = to_epoch_ms(now - self.max_age)
        stale = [key for key in self._keys if key[1] < cutoff]
        for key in stale:
            del self._keys[key]
        return len(stale) + _evict_oldest(self._keys, self.capacity, lambda *_: False)

    def clear(self) -> None:
        self._keys.clear()

    def to_list(self, limit: int | None = None) -> list[list[Any]]:
        """Convert the newest keys to a list for storage."""
        keys = list(self._keys)
        if limit is not None:
            keys = keys[-limit:] if limit else []
        return [[phone_key, bucket] for phone_key, bucket in keys]

    def load(self, data: list[list[Any]]) -> None:
        self.clear()
        for phone_key, bucket in data:
            self._keys[(phone_key, int(bucket))] = None


def _evict_oldest(entries: OrderedDict, capacity: int, is_protected) -> int:
    """Remove the oldest unprotected entries until *entries* fits *capacity*."""
    excess = len(entries) - capacity
    if excess <= 0:
        return 0

    victims = []
    for key, value in entries.items():
        if len(victims) >= excess:
            break
        if not is_protected(key, value):
            victims.append(key)

    for key in victims:
        del entries[key]
    return len(victims)
