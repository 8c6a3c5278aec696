"""Bounded, persistent store for call records and engine state."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from collections.abc import Callable, Iterator
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from .const import (
    ANSWER_MATCH_WINDOW_MINUTES,
    MAX_ACTIVE_RECORDS,
    PERSIST_MAX_RECORDS,
    STORAGE_KEY,
    STORAGE_VERSION,
)
from .models import CallRecord, to_epoch_ms

_LOGGER = logging.getLogger(__name__)


class StateCorruptionError(Exception):
    """Persisted state could not be read back."""


class JsonStore:
    """Versioned JSON document on local disk."""

    def __init__(self, path: str | Path, key: str = STORAGE_KEY, version: int = STORAGE_VERSION) -> None:
        """Initialize the store."""
        self.path = Path(path)
        self.key = key
        self.version = version

    def load(self) -> dict[str, Any] | None:
        """Return the stored data, None when nothing was saved yet."""
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as err:
            raise StateCorruptionError(f"Unable to read {self.path}: {err}") from err

        try:
            document = json.loads(raw)
        except json.JSONDecodeError as err:
            raise StateCorruptionError(f"Invalid JSON in {self.path}: {err}") from err

        if not isinstance(document, dict) or not isinstance(document.get("data"), dict):
            raise StateCorruptionError(f"Unexpected document layout in {self.path}")

        if document.get("version") != self.version:
            _LOGGER.warning(
                "Storage version mismatch in %s: expected %d, got %s",
                self.path,
                self.version,
                document.get("version"),
            )
        return document["data"]

    def save(self, data: dict[str, Any]) -> None:
        """Write *data* atomically. Raises OSError on failure."""
        document = {"version": self.version, "key": self.key, "data": data}
        payload = json.dumps(document)

        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
            os.replace(tmp_name, self.path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise

    def remove(self) -> None:
        """Delete the stored document if present."""
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass


class BoundedStateStore:
    """Durable call records plus the persisted engine state.

    Records are keyed by ``(contact, timestamp)`` which makes duplicate
    observations of the same missed call impossible to store twice.
    """

    def __init__(
        self,
        store: JsonStore | None = None,
        *,
        max_records: int = MAX_ACTIVE_RECORDS,
        persist_max_records: int = PERSIST_MAX_RECORDS,
        protect_horizon: timedelta = timedelta(minutes=ANSWER_MATCH_WINDOW_MINUTES),
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        """Initialize the store. Without a backing store nothing is persisted."""
        self._store = store
        self.max_records = max_records
        self.persist_max_records = persist_max_records
        self.protect_horizon = protect_horizon
        self._clock = clock
        self._records: dict[tuple[str, int], CallRecord] = {}
        self.save_failures = 0
        self.corrupt_loads = 0

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[CallRecord]:
        return iter(list(self._records.values()))

    @property
    def records(self) -> list[CallRecord]:
        """Records in insertion (observation) order."""
        return list(self._records.values())

    @staticmethod
    def _key(contact: str, timestamp: datetime) -> tuple[str, int]:
        return (contact, to_epoch_ms(timestamp))

    def has_record(self, contact: str, timestamp: datetime) -> bool:
        return self._key(contact, timestamp) in self._records

    def get_record(self, contact: str, timestamp: datetime) -> CallRecord | None:
        return self._records.get(self._key(contact, timestamp))

    def add_record(self, record: CallRecord) -> bool:
        """Store *record*. Returns False if an identical one already exists."""
        key = self._key(record.contact, record.timestamp)
        if key in self._records:
            return False
        self._records[key] = record
        return True

    def records_for(self, phone_key: str) -> list[CallRecord]:
        return [record for record in self._records.values() if record.phone_key == phone_key]

    def evict(self, now: datetime | None = None) -> int:
        """Drop the oldest records above capacity. Returns removed count.

        Records inside the answer-matching horizon are kept even when
        that leaves the store over capacity.
        """
        excess = len(self._records) - self.max_records
        if excess <= 0:
            return 0

        protect_from = (now or self._clock()) - self.protect_horizon
        victims = [
            key
            for key, record in self._records.items()
            if record.timestamp < protect_from
        ][:excess]
        for key in victims:
            del self._records[key]

        if victims:
            _LOGGER.debug("Evicted %d call records over capacity", len(victims))
        if len(self._records) > self.max_records:
            _LOGGER.warning(
                "Holding %d call records above capacity %d (all reconcilable)",
                len(self._records),
                self.max_records,
            )
        return len(victims)

    def clear(self) -> None:
        """Forget every record in memory."""
        self._records.clear()

    def load(self) -> dict[str, Any]:
        """Load records from the backing store and return the remaining state.

        Unreadable or malformed state falls back to empty state.
        """
        self._records.clear()
        if self._store is None:
            return {}

        try:
            data = self._store.load()
            if not data:
                return {}
            for raw in data.get("records", []):
                self.add_record(CallRecord.from_dict(raw))
        except (StateCorruptionError, KeyError, TypeError, ValueError) as err:
            self.corrupt_loads += 1
            self._records.clear()
            _LOGGER.warning("Discarding unreadable persisted state: %s", err)
            return {}

        _LOGGER.info("Loaded %d call records from storage", len(self._records))
        return data

    def save(
        self,
        extras: Callable[[], dict[str, Any]],
        *,
        on_pressure: Callable[[], Any] | None = None,
    ) -> bool:
        """Persist records plus ``extras()``.

        A failed write runs an eviction pass and is retried once.
        """
        if self._store is None:
            return True

        for attempt in (1, 2):
            try:
                data = {
                    "records": [
                        record.to_dict()
                        for record in self.records[-self.persist_max_records :]
                    ],
                    **extras(),
                }
                self._store.save(data)
                return True
            except (OSError, TypeError, ValueError) as err:
                self.save_failures += 1
                if attempt == 2:
                    _LOGGER.error("Failed to persist call ledger state: %s", err)
                    return False
                _LOGGER.warning(
                    "Failed to persist call ledger state (%s), evicting and retrying", err
                )
                self.evict()
                if on_pressure is not None:
                    on_pressure()
        return False

    def remove(self) -> None:
        """Clear memory and delete the persisted document."""
        self.clear()
        if self._store is None:
            return
        try:
            self._store.remove()
        except OSError as err:
            _LOGGER.error("Failed to remove persisted state: %s", err)

    def get_storage_stats(self) -> dict[str, Any]:
        """Return storage statistics."""
        return {
            "path": str(self._store.path) if self._store else None,
            "records": len(self._records),
            "max_records": self.max_records,
            "persist_max_records": self.persist_max_records,
            "save_failures": self.save_failures,
            "corrupt_loads": self.corrupt_loads,
        }
