"""Reconciliation engine: turn call events into a deduplicated missed-call ledger."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta
from typing import Any

from .classifier import classify_batch, classify_kind
from .config import LedgerConfig
from .const import (
    ACTUAL_MISSED_NO,
    ACTUAL_MISSED_YES,
    ANSWER_MATCH_WINDOW_MINUTES,
    MAX_RECONCILE_CANDIDATES,
    PERSIST_MAX_INDEXES,
    PERSIST_MAX_PROCESSED_ANSWERS,
    PERSIST_MAX_SENT_RECORDS,
    SINK_SOURCE_ANSWERED,
    SINK_SOURCE_MONITOR,
    CallKind,
    DeliveryKind,
)
from .delivery import DeliveryQueue
from .dialing import format_phone_number_for_display
from .ledger import DedupLedger, ProcessedAnswerSet
from .models import (
    BackfillResult,
    CallEvent,
    CallRecord,
    Delivery,
    ObservationResult,
    RowDescriptor,
)
from .resilience import MonitorResilience
from .storage_cache import BoundedStateStore
from .window import RecentCallWindow

_LOGGER = logging.getLogger(__name__)


def format_sink_datetime(value: datetime) -> str:
    """Format *value* as ``MM/DD/YYYY hh:mm AM|PM``."""
    hour = value.hour % 12 or 12
    period = "PM" if value.hour >= 12 else "AM"
    return f"{value:%m/%d/%Y} {hour:02d}:{value:%M} {period}"


def _section(data: dict[str, Any], key: str, kind: type) -> Any:
    value = data.get(key)
    if value is None:
        return kind()
    if not isinstance(value, kind):
        raise ValueError(f"{key} is not a {kind.__name__}")
    return value


class ReconciliationEngine:
    """Own the ledger, window and records of one monitoring session.

    All mutation happens synchronously inside ``on_observation`` (and the
    delivery completion callback), so callers on a single event loop need
    no locking.
    """

    def __init__(
        self,
        queue: DeliveryQueue,
        store: BoundedStateStore | None = None,
        *,
        window: RecentCallWindow | None = None,
        ledger: DedupLedger | None = None,
        answers: ProcessedAnswerSet | None = None,
        resilience: MonitorResilience | None = None,
        answer_match_window: timedelta = timedelta(minutes=ANSWER_MATCH_WINDOW_MINUTES),
        max_candidates: int = MAX_RECONCILE_CANDIDATES,
        since: datetime | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        """Initialize the engine."""
        self.queue = queue
        self.store = store if store is not None else BoundedStateStore(
            protect_horizon=answer_match_window, clock=clock
        )
        self.window = window if window is not None else RecentCallWindow(
            match_window=answer_match_window
        )
        self.ledger = ledger if ledger is not None else DedupLedger(
            protect_horizon=answer_match_window
        )
        self.answers = answers if answers is not None else ProcessedAnswerSet()
        self.resilience = resilience if resilience is not None else MonitorResilience(clock)
        self.answer_match_window = answer_match_window
        self.max_candidates = max_candidates
        self.since = since
        self._clock = clock
        self.missed_count = 0

        queue.set_completion_handler(self.handle_delivery_result)

    @classmethod
    def from_config(
        cls,
        config: LedgerConfig,
        queue: DeliveryQueue,
        store: BoundedStateStore | None = None,
        *,
        resilience: MonitorResilience | None = None,
        since: datetime | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> ReconciliationEngine:
        """Create an engine using the configured horizons and caps."""
        return cls(
            queue,
            store,
            window=RecentCallWindow(
                horizon=config.window_horizon,
                max_entries=config.window_max_entries,
                match_window=config.answer_match_window,
            ),
            ledger=DedupLedger(
                index_capacity=config.max_processed_indexes,
                protect_horizon=config.answer_match_window,
            ),
            resilience=resilience,
            answer_match_window=config.answer_match_window,
            max_candidates=config.max_reconcile_candidates,
            since=since,
            clock=clock,
        )

    @property
    def records(self) -> list[CallRecord]:
        return self.store.records

    @property
    def status_line(self) -> str:
        return f"Missed calls: {self.missed_count}"

    def on_observation(self, rows: Sequence[RowDescriptor]) -> ObservationResult:
        """Classify and reconcile one batch of rows from the live view."""
        started = time.perf_counter()
        result = ObservationResult()
        now = self._clock()
        self.resilience.stats.observations += 1

        try:
            classified = classify_batch(rows, now)
        except Exception as err:
            _LOGGER.error("Failed to classify observation batch: %s", err, exc_info=True)
            self.resilience.record_error("classify", err)
            self.resilience.stats.processing_errors += 1
            result.errors += 1
            return result

        events: list[CallEvent] = []
        for row, event in classified:
            if event is not None:
                events.append(event)
            elif classify_kind(row.text) is not None:
                result.parse_failures += 1
                self.resilience.stats.parse_failures += 1

        # Oldest first so a missed call is recorded before the answer that follows it.
        for event in sorted(events, key=lambda item: item.timestamp):
            try:
                self._process_event(event, now, result)
            except Exception as err:
                _LOGGER.error(
                    "Failed to reconcile %s event (index %s): %s",
                    event.kind.value,
                    event.source_index,
                    err,
                    exc_info=True,
                )
                self.resilience.record_error("reconcile", err)
                self.resilience.stats.processing_errors += 1
                result.errors += 1

        if result.changed:
            self.persist()

        self.resilience.record_processing_time((time.perf_counter() - started) * 1000)
        return result

    def _process_event(
        self, event: CallEvent, now: datetime, result: ObservationResult
    ) -> None:
        if self.since is not None and event.timestamp <= self.since:
            result.ignored += 1
            self.resilience.stats.events_ignored += 1
            return

        self.resilience.stats.events_processed += 1
        if event.is_missed:
            self._handle_missed(event, now, result)
        else:
            self._handle_answered(event, now, result)

    def _handle_missed(
        self, event: CallEvent, now: datetime, result: ObservationResult
    ) -> None:
        if not self.ledger.is_new_index(event.source_index):
            result.ignored += 1
            return

        if self.store.has_record(event.display_contact, event.timestamp):
            _LOGGER.debug(
                "Duplicate missed call %s at %s", event.display_contact, event.timestamp
            )
            self.ledger.mark_index(event.source_index, event.timestamp)
            result.ignored += 1
            return

        answered_near = self.window.has_answered_near(event.phone_key, event.timestamp)
        record = CallRecord(
            contact=event.display_contact,
            timestamp=event.timestamp,
            source_index=event.source_index,
            phone_key=event.phone_key,
            contact_name=event.contact_name,
        )
        self.store.add_record(record)
        self.ledger.mark_index(event.source_index, event.timestamp)
        self.window.record(event.phone_key, event.timestamp, CallKind.MISSED, now)

        actual_missed = ACTUAL_MISSED_NO if answered_near else ACTUAL_MISSED_YES
        self.ledger.mark_sent(record.record_key, actual_missed)
        self.queue.enqueue(
            Delivery(
                kind=DeliveryKind.CREATE,
                record_key=record.record_key,
                payload=self._create_payload(record, actual_missed),
            )
        )

        self.missed_count += 1
        result.missed_created += 1
        _LOGGER.info(
            "New missed call from %s at %s (index %s)",
            record.contact,
            record.timestamp,
            record.source_index,
        )

    def _handle_answered(
        self, event: CallEvent, now: datetime, result: ObservationResult
    ) -> None:
        answer_key = event.answer_key
        if answer_key in self.answers:
            _LOGGER.debug("Answer %s already reconciled", answer_key)
            result.ignored += 1
            return

        self.window.record(event.phone_key, event.timestamp, CallKind.ANSWERED, now)

        lower = event.timestamp - self.answer_match_window
        candidates = [
            record
            for record in self.store.records_for(event.phone_key)
            if lower <= record.timestamp < event.timestamp
            and not record.is_answered
            and self.ledger.sent_record_status(record.record_key) is not None
        ]

        for record in candidates[: self.max_candidates]:
            record.mark_answered()
            self.ledger.mark_sent(record.record_key, ACTUAL_MISSED_NO)
            self.queue.enqueue(
                Delivery(
                    kind=DeliveryKind.UPDATE,
                    record_key=record.record_key,
                    payload=self._update_payload(record, event.timestamp),
                )
            )
            result.updates_enqueued += 1
            _LOGGER.info(
                "Missed call from %s at %s was answered at %s",
                record.contact,
                record.timestamp,
                event.timestamp,
            )

        if len(candidates) > self.max_candidates:
            _LOGGER.debug(
                "Skipped %d reconciliation candidates over the cap",
                len(candidates) - self.max_candidates,
            )

        self.answers.add(answer_key)
        result.answers_recorded += 1
        if candidates:
            result.answered_reconciled += 1

    @staticmethod
    def _create_payload(record: CallRecord, actual_missed: str) -> dict[str, Any]:
        return {
            "dateTime": format_sink_datetime(record.timestamp),
            "number": record.contact,
            "frequency": 1,
            "actualMissedCall": actual_missed,
            "isUpdate": False,
            "phoneNumber": record.phone_key,
            "source": SINK_SOURCE_MONITOR,
            "notes": record.contact_name,
        }

    @staticmethod
    def _update_payload(record: CallRecord, answered_at: datetime) -> dict[str, Any]:
        answer_time = format_sink_datetime(answered_at)
        return {
            # The original missed time is the sink's lookup key.
            "dateTime": format_sink_datetime(record.timestamp),
            "number": record.contact,
            "phoneNumber": record.phone_key,
            "actualMissedCall": ACTUAL_MISSED_NO,
            "isUpdate": True,
            "source": SINK_SOURCE_ANSWERED.format(answer_time),
            "notes": record.contact_name,
            "answerTime": answer_time,
        }

    def handle_delivery_result(self, delivery: Delivery, success: bool) -> None:
        """Apply the outcome of a delivery dispatched in this session."""
        if not success or delivery.kind is not DeliveryKind.CREATE:
            return
        for record in self.store.records_for(delivery.record_key[0]):
            if record.record_key == delivery.record_key:
                record.delivered = True
                break

    def acknowledge(self, contact: str, timestamp: datetime) -> bool:
        """Mark a record as called back by the user.

        *contact* may be given in any formatting of the phone number.
        """
        record = self.store.get_record(format_phone_number_for_display(contact), timestamp)
        if record is None or record.called_back:
            return False
        record.called_back = True
        self.persist()
        return True

    def backfill(self, rows: Sequence[RowDescriptor]) -> BackfillResult:
        """Best-effort bulk collection of already rendered rows.

        Records and window are updated but nothing is delivered.
        """
        result = BackfillResult()
        now = self._clock()

        numeric = {int(row.source_index) for row in rows if row.source_index.isdigit()}
        if numeric:
            result.missing_indexes = [
                index
                for index in range(max(numeric) + 1)
                if index not in numeric and self.ledger.is_new_index(str(index))
            ]
            if result.missing_indexes:
                _LOGGER.debug("Missing indexes detected: %s", result.missing_indexes)

        for row, event in classify_batch(rows, now):
            if not self.ledger.is_new_index(row.source_index):
                continue
            if event is None:
                if classify_kind(row.text) is not None:
                    result.unparseable += 1
                    _LOGGER.debug("Could not parse timestamp %r", row.timestamp_text)
                self.ledger.mark_index(row.source_index)
                continue

            self.window.record(event.phone_key, event.timestamp, event.kind, now)
            if event.is_missed and self.store.add_record(
                CallRecord(
                    contact=event.display_contact,
                    timestamp=event.timestamp,
                    source_index=event.source_index,
                    phone_key=event.phone_key,
                    contact_name=event.contact_name,
                )
            ):
                result.new_records += 1
            self.ledger.mark_index(row.source_index, event.timestamp)

        if result.new_records:
            self.persist()
        _LOGGER.info(
            "Back-fill added %d records (%d unparseable)",
            result.new_records,
            result.unparseable,
        )
        return result

    def sweep(self, now: datetime | None = None) -> int:
        """Single bounded-eviction pass over every container."""
        now = now or self._clock()
        removed = (
            self.window.prune(now)
            + self.ledger.evict(now)
            + self.answers.evict(now)
            + self.store.evict(now)
        )
        self.resilience.stats.evictions += removed
        self.resilience.stats.last_sweep_time = now
        if removed:
            _LOGGER.debug("Eviction sweep removed %d entries", removed)
        return removed

    def _state_extras(self) -> dict[str, Any]:
        return {
            **self.ledger.to_dict(
                max_indexes=PERSIST_MAX_INDEXES, max_sent=PERSIST_MAX_SENT_RECORDS
            ),
            "processed_answers": self.answers.to_list(PERSIST_MAX_PROCESSED_ANSWERS),
            "recent_calls": self.window.to_dict(),
            "missed_count": self.missed_count,
            "monitor_start": self.since.timestamp() if self.since else None,
        }

    def persist(self) -> bool:
        """Write the current state through the bounded store."""
        if not self.store.save(self._state_extras, on_pressure=self.sweep):
            self.resilience.stats.storage_failures += 1
            return False
        return True

    def restore(self) -> None:
        """Reload the state persisted by an earlier session.

        Unreadable state falls back to an empty session.
        """
        data = self.store.load()
        if not data:
            return
        try:
            self.ledger.load(
                {
                    "processed_indexes": _section(data, "processed_indexes", list),
                    "sent_records": _section(data, "sent_records", list),
                }
            )
            self.answers.load(_section(data, "processed_answers", list))
            self.window.load(_section(data, "recent_calls", dict), self._clock())
            self.missed_count = int(data.get("missed_count", 0))
        except (AttributeError, KeyError, TypeError, ValueError) as err:
            _LOGGER.warning("Discarding unreadable persisted engine state: %s", err)
            self.store.corrupt_loads += 1
            self.reset()

    def reset(self) -> None:
        """Forget all session state (ledger, window, answers and records)."""
        self.ledger.clear()
        self.window.clear()
        self.answers.clear()
        self.store.clear()
        self.missed_count = 0

    def get_state_summary(self) -> dict[str, Any]:
        """Counts of every container, for diagnostics."""
        return {
            "records": len(self.store),
            "missed_count": self.missed_count,
            "answered_records": sum(1 for record in self.store if record.is_answered),
            "processed_indexes": self.ledger.index_count,
            "sent_records": self.ledger.sent_count,
            "processed_answers": len(self.answers),
            "window_entries": len(self.window),
            "monitor_start": self.since.isoformat() if self.since else None,
        }
