"""Phone number extraction and formatting helpers for the call ledger."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Final

# North-American number with optional +1 / 1 country prefix.
_NANP_PATTERN: Final = re.compile(
    r"\+?1?\s*\(?(\d{3})\)?[-.\s]?(\d{3})[-.\s]?(\d{4})"
)
_FORMATTING_CHARS: Final = re.compile(r"[\s\-()+.]")
_BARE_NUMBER: Final = re.compile(r"^1?\d{10}$")


def _match_number(text: str | None) -> re.Match[str] | None:
    if not text:
        return None
    return _NANP_PATTERN.search(text)


def _display_from_match(match: re.Match[str]) -> str:
    area, exchange, line = match.groups()
    return f"({area}){exchange}-{line}"


def format_phone_number_for_display(raw_number: str | None) -> str:
    """Format *raw_number* as ``(NNN)NNN-NNNN`` when it holds a NANP number."""
    if raw_number is None:
        return ""

    trimmed = str(raw_number).strip()
    match = _match_number(trimmed)
    if match is None:
        return trimmed
    return _display_from_match(match)


def is_bare_number(value: str) -> bool:
    """True when *value* is only a phone number with formatting."""
    return bool(_BARE_NUMBER.match(_FORMATTING_CHARS.sub("", value.strip())))


@dataclass(frozen=True, slots=True)
class ContactInfo:
    """Contact text split into display number, optional name and key."""

    display_number: str
    contact_name: str | None
    phone_key: str


def separate_contact_info(contact: str, row_text: str | None = None) -> ContactInfo:
    """Split *contact* into display number and name.

    When the contact field carries no number the whole row text is scanned.
    If no number can be found anywhere the raw contact is used as its own key.
    """
    contact = contact.strip()
    match = _match_number(contact)
    if match is not None:
        display = _display_from_match(match)
        key = "".join(match.groups())
        if is_bare_number(contact):
            return ContactInfo(display, None, key)
        name = _NANP_PATTERN.sub("", contact, count=1).strip()
        return ContactInfo(display, name or None, key)

    row_match = _match_number(row_text)
    if row_match is not None:
        return ContactInfo(
            _display_from_match(row_match), contact or None, "".join(row_match.groups())
        )

    return ContactInfo(contact, contact or None, contact)
