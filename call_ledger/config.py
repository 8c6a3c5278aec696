"""Configuration schema for the call ledger."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

import voluptuous as vol

from .const import (
    ANSWER_MATCH_WINDOW_MINUTES,
    CLEANUP_INTERVAL,
    CONF_ANSWER_MATCH_MINUTES,
    CONF_CLEANUP_INTERVAL,
    CONF_IGNORE_BEFORE_START,
    CONF_MAX_CANDIDATES,
    CONF_MAX_INDEXES,
    CONF_MAX_RECORDS,
    CONF_POLL_INTERVAL,
    CONF_REQUEST_TIMEOUT,
    CONF_RESUME_STATE,
    CONF_SINK_URL,
    CONF_STORAGE_PATH,
    CONF_TOP_CHECK_INTERVAL,
    CONF_WINDOW_HORIZON_HOURS,
    CONF_WINDOW_MAX_ENTRIES,
    DEFAULT_REQUEST_TIMEOUT,
    DEFAULT_STORAGE_PATH,
    MAX_ACTIVE_RECORDS,
    MAX_PROCESSED_INDEXES,
    MAX_RECONCILE_CANDIDATES,
    POLLING_FALLBACK_INTERVAL,
    RECENT_WINDOW_HORIZON_HOURS,
    RECENT_WINDOW_MAX_ENTRIES,
    TOP_RECORD_CHECK_INTERVAL,
)


class ConfigError(Exception):
    """Invalid call ledger configuration."""


def _positive(kind):
    return vol.All(vol.Coerce(kind), vol.Range(min=0, min_included=False))


CONFIG_SCHEMA = vol.Schema(
    {
        vol.Required(CONF_SINK_URL): vol.Url(),
        vol.Optional(CONF_REQUEST_TIMEOUT, default=DEFAULT_REQUEST_TIMEOUT): _positive(float),
        vol.Optional(CONF_POLL_INTERVAL, default=POLLING_FALLBACK_INTERVAL): _positive(float),
        vol.Optional(CONF_TOP_CHECK_INTERVAL, default=TOP_RECORD_CHECK_INTERVAL): _positive(float),
        vol.Optional(CONF_CLEANUP_INTERVAL, default=CLEANUP_INTERVAL): _positive(float),
        vol.Optional(
            CONF_ANSWER_MATCH_MINUTES, default=ANSWER_MATCH_WINDOW_MINUTES
        ): vol.All(vol.Coerce(int), vol.Range(min=1, max=24 * 60)),
        vol.Optional(CONF_MAX_CANDIDATES, default=MAX_RECONCILE_CANDIDATES): vol.All(
            vol.Coerce(int), vol.Range(min=1, max=50)
        ),
        vol.Optional(
            CONF_WINDOW_HORIZON_HOURS, default=RECENT_WINDOW_HORIZON_HOURS
        ): _positive(float),
        vol.Optional(CONF_WINDOW_MAX_ENTRIES, default=RECENT_WINDOW_MAX_ENTRIES): vol.All(
            vol.Coerce(int), vol.Range(min=1)
        ),
        vol.Optional(CONF_MAX_RECORDS, default=MAX_ACTIVE_RECORDS): vol.All(
            vol.Coerce(int), vol.Range(min=1)
        ),
        vol.Optional(CONF_MAX_INDEXES, default=MAX_PROCESSED_INDEXES): vol.All(
            vol.Coerce(int), vol.Range(min=1)
        ),
        vol.Optional(CONF_STORAGE_PATH, default=DEFAULT_STORAGE_PATH): vol.Any(None, str),
        vol.Optional(CONF_IGNORE_BEFORE_START, default=True): vol.Boolean(),
        vol.Optional(CONF_RESUME_STATE, default=False): vol.Boolean(),
    }
)


@dataclass(frozen=True)
class LedgerConfig:
    """Validated configuration."""

    sink_url: str
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    poll_interval: float = POLLING_FALLBACK_INTERVAL
    top_check_interval: float = TOP_RECORD_CHECK_INTERVAL
    cleanup_interval: float = CLEANUP_INTERVAL
    answer_match_minutes: int = ANSWER_MATCH_WINDOW_MINUTES
    max_reconcile_candidates: int = MAX_RECONCILE_CANDIDATES
    window_horizon_hours: float = RECENT_WINDOW_HORIZON_HOURS
    window_max_entries: int = RECENT_WINDOW_MAX_ENTRIES
    max_records: int = MAX_ACTIVE_RECORDS
    max_processed_indexes: int = MAX_PROCESSED_INDEXES
    storage_path: str | None = DEFAULT_STORAGE_PATH
    ignore_calls_before_start: bool = True
    resume_state: bool = False

    @property
    def answer_match_window(self) -> timedelta:
        return timedelta(minutes=self.answer_match_minutes)

    @property
    def window_horizon(self) -> timedelta:
        return timedelta(hours=self.window_horizon_hours)


def build_config(data: Mapping[str, Any]) -> LedgerConfig:
    """Validate *data* against the schema and return a LedgerConfig."""
    try:
        validated = CONFIG_SCHEMA(dict(data))
    except vol.Invalid as err:
        raise ConfigError(f"Invalid call ledger configuration: {err}") from err
    return LedgerConfig(**validated)
