"""Turn raw live-view rows into typed call events."""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Sequence
from datetime import datetime, timedelta
from typing import Final

from dateutil import parser as date_parser

from .const import (
    ANSWERED_CALL_MARKERS,
    MISSED_CALL_MARKER,
    CallKind,
)
from .dialing import separate_contact_info
from .models import CallEvent, RowDescriptor

_LOGGER = logging.getLogger(__name__)

_CLOCK_ONLY: Final = re.compile(r"^(\d{1,2}):(\d{2})\s*([AP]M)?", re.IGNORECASE)
_YESTERDAY: Final = re.compile(
    r"Yesterday\s*(\d{1,2}):(\d{2})(?:\s*([AP]M))?", re.IGNORECASE
)
_WEEKDAY: Final = re.compile(
    r"^(Monday|Tuesday|Wednesday|Thursday|Friday|Saturday|Sunday)\s+"
    r"(\d{1,2}):(\d{2})\s*([AP]M)?",
    re.IGNORECASE,
)
_US_DATE: Final = re.compile(
    r"^(\d{1,2})/(\d{1,2})/(\d{4})\s*(\d{1,2}):(\d{2})\s*([AP]M)?", re.IGNORECASE
)
_WEEKDAYS: Final = (
    "monday",
    "tuesday",
    "wednesday",
    "thursday",
    "friday",
    "saturday",
    "sunday",
)


def _to_24h(hour: int, period: str | None) -> int:
    period = (period or "").upper()
    if period == "PM" and hour != 12:
        return hour + 12
    if period == "AM" and hour == 12:
        return 0
    return hour


def _at_clock(day: datetime, hour: str, minute: str, period: str | None) -> datetime | None:
    """Return *day* at the given clock time, or None for an impossible time."""
    try:
        return day.replace(
            hour=_to_24h(int(hour), period),
            minute=int(minute),
            second=0,
            microsecond=0,
        )
    except ValueError:
        return None


def parse_clock_today(text: str, now: datetime) -> datetime | None:
    """Parse a bare ``H:MM [AM|PM]`` as a time on *now*'s date."""
    match = _CLOCK_ONLY.match(text)
    if match is None:
        return None
    return _at_clock(now, *match.groups())


def parse_yesterday(
    text: str, now: datetime, *, sibling_has_today: bool = False
) -> datetime | None:
    """Parse ``Yesterday H:MM [AM|PM]``.

    The live view keeps the "Yesterday" label for a while after midnight.
    When another row of the same batch already resolves to today the
    label is stale and today's date is used instead.
    """
    match = _YESTERDAY.search(text)
    if match is None:
        return None
    day = now if sibling_has_today else now - timedelta(days=1)
    return _at_clock(day, *match.groups())


def parse_any_datetime(text: str, now: datetime) -> datetime | None:
    """Best-effort parse of arbitrary date text (bulk back-fill fallback)."""
    match = _WEEKDAY.match(text)
    if match is not None:
        day_name, hour, minute, period = match.groups()
        days_ago = now.weekday() - _WEEKDAYS.index(day_name.lower())
        if days_ago <= 0:
            days_ago += 7
        return _at_clock(now - timedelta(days=days_ago), hour, minute, period)

    match = _US_DATE.match(text)
    if match is not None:
        month, day, year, hour, minute, period = match.groups()
        try:
            date = datetime(int(year), int(month), int(day))
        except ValueError:
            return None
        return _at_clock(date, hour, minute, period)

    try:
        parsed = date_parser.parse(
            text, default=now.replace(hour=0, minute=0, second=0, microsecond=0)
        )
    except (ValueError, OverflowError):
        return None

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone().replace(tzinfo=None)
    return parsed


def resolve_timestamp(
    text: str | None, now: datetime, *, sibling_has_today: bool = False
) -> datetime | None:
    """Resolve a row timestamp using the clock, yesterday and generic strategies."""
    if not text:
        return None
    text = text.strip()
    if not text:
        return None

    return (
        parse_clock_today(text, now)
        or parse_yesterday(text, now, sibling_has_today=sibling_has_today)
        or parse_any_datetime(text, now)
    )


def classify_kind(text: str) -> CallKind | None:
    """Return the call kind indicated by the row text."""
    if MISSED_CALL_MARKER in text:
        return CallKind.MISSED
    if any(marker in text for marker in ANSWERED_CALL_MARKERS):
        return CallKind.ANSWERED
    return None


def batch_has_today(rows: Iterable[RowDescriptor], now: datetime) -> bool:
    """True when any row of the batch resolves to *now*'s calendar date."""
    today = now.date()
    for row in rows:
        resolved = resolve_timestamp(row.timestamp_text, now)
        if resolved is not None and resolved.date() == today:
            return True
    return False


def classify_row(
    row: RowDescriptor, now: datetime, *, sibling_has_today: bool = False
) -> CallEvent | None:
    """Classify a single row. Returns None for rows that are not call events."""
    kind = classify_kind(row.text)
    if kind is None:
        return None

    contact = (row.contact_text or "").strip()
    if not contact or not row.timestamp_text:
        return None

    timestamp = resolve_timestamp(
        row.timestamp_text, now, sibling_has_today=sibling_has_today
    )
    if timestamp is None:
        _LOGGER.debug(
            "Could not parse timestamp %r (index %s)",
            row.timestamp_text,
            row.source_index,
        )
        return None

    info = separate_contact_info(contact, row.text)
    return CallEvent(
        phone_key=info.phone_key,
        display_contact=info.display_number,
        timestamp=timestamp,
        kind=kind,
        source_index=row.source_index,
        contact_name=info.contact_name,
    )


def classify_batch(
    rows: Sequence[RowDescriptor], now: datetime
) -> list[tuple[RowDescriptor, CallEvent | None]]:
    """Classify every row of one observation batch."""
    sibling_has_today = batch_has_today(rows, now)
    return [
        (row, classify_row(row, now, sibling_has_today=sibling_has_today))
        for row in rows
    ]
