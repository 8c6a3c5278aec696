"""Data models for the call ledger."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from .const import CallKind, DeliveryKind, RecordState

RecordKey = tuple[str, int]
AnswerKey = tuple[str, int]


def to_epoch_ms(value: datetime) -> int:
    """Return *value* as integer milliseconds since the epoch."""
    return int(value.timestamp() * 1000)


def minute_bucket(value: datetime) -> int:
    """Round *value* down to the minute, as epoch milliseconds."""
    return to_epoch_ms(value.replace(second=0, microsecond=0))


@dataclass(frozen=True)
class RowDescriptor:
    """Single raw row as exposed by the live view."""

    text: str
    contact_text: str | None
    timestamp_text: str | None
    source_index: str

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RowDescriptor:
        """Create from a loosely shaped mapping (push payloads)."""
        return cls(
            text=str(data.get("text") or ""),
            contact_text=data.get("contact") or data.get("contact_text"),
            timestamp_text=data.get("timestamp") or data.get("timestamp_text"),
            source_index=str(data.get("index", data.get("source_index", ""))),
        )

    @property
    def fingerprint(self) -> tuple[str, str, str]:
        """Identity used to detect whether the top row changed."""
        return (
            (self.contact_text or "").strip(),
            (self.timestamp_text or "").strip(),
            self.text.strip(),
        )


@dataclass(frozen=True)
class CallEvent:
    """Classified call observation. Never persisted."""

    phone_key: str
    display_contact: str
    timestamp: datetime
    kind: CallKind
    source_index: str
    contact_name: str | None = None

    @property
    def is_missed(self) -> bool:
        """True for missed-call observations."""
        return self.kind is CallKind.MISSED

    @property
    def answer_key(self) -> AnswerKey:
        """Key used to recognise a re-observed answer within the same minute."""
        return (self.phone_key, minute_bucket(self.timestamp))


@dataclass
class CallRecord:
    """Durable missed-call record."""

    contact: str
    timestamp: datetime
    source_index: str
    phone_key: str
    called_back: bool = False
    is_answered: bool = False
    contact_name: str | None = None
    state: RecordState = RecordState.MISSED_PENDING
    delivered: bool = False

    @property
    def record_key(self) -> RecordKey:
        """Stable sink lookup key (phone + original missed timestamp)."""
        return (self.phone_key, to_epoch_ms(self.timestamp))

    def mark_answered(self) -> bool:
        """Transition to the answered state. Returns True when it changed."""
        if self.is_answered:
            return False
        self.is_answered = True
        self.state = RecordState.RECLASSIFIED_ANSWERED
        return True

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for storage."""
        return {
            "timestamp": to_epoch_ms(self.timestamp),
            "contact": self.contact,
            "source_index": self.source_index,
            "phone_key": self.phone_key,
            "called_back": self.called_back,
            "is_answered": self.is_answered,
            "contact_name": self.contact_name,
            "state": self.state.value,
            "delivered": self.delivered,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CallRecord:
        """Create from dictionary."""
        is_answered = bool(data.get("is_answered", False))
        default_state = (
            RecordState.RECLASSIFIED_ANSWERED
            if is_answered
            else RecordState.MISSED_PENDING
        )
        return cls(
            contact=data["contact"],
            timestamp=datetime.fromtimestamp(data["timestamp"] / 1000),
            source_index=str(data["source_index"]),
            phone_key=data.get("phone_key") or data["contact"],
            called_back=bool(data.get("called_back", False)),
            is_answered=is_answered,
            contact_name=data.get("contact_name"),
            state=RecordState(data.get("state", default_state.value)),
            delivered=bool(data.get("delivered", False)),
        )


@dataclass(frozen=True)
class WindowEntry:
    """Entry of the per-number recent-call window."""

    time: datetime
    kind: CallKind


@dataclass
class Delivery:
    """Outbound record or correction destined for the sink."""

    kind: DeliveryKind
    record_key: RecordKey
    payload: dict[str, Any]
    created_at: float = field(default_factory=time.time)

    @property
    def is_update(self) -> bool:
        """True for corrective updates."""
        return self.kind is DeliveryKind.UPDATE


@dataclass
class ObservationResult:
    """Outcome counters of one observation pass."""

    missed_created: int = 0
    answered_reconciled: int = 0
    updates_enqueued: int = 0
    answers_recorded: int = 0
    ignored: int = 0
    parse_failures: int = 0
    errors: int = 0

    @property
    def changed(self) -> bool:
        """True when the pass mutated durable state."""
        return bool(
            self.missed_created or self.updates_enqueued or self.answers_recorded
        )


@dataclass
class BackfillResult:
    """Outcome of a best-effort bulk collection pass."""

    new_records: int = 0
    missing_indexes: list[int] = field(default_factory=list)
    unparseable: int = 0
