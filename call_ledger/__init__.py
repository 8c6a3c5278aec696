"""Missed-call reconciliation, dedup and delivery engine."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

import aiohttp

from .api_client import SinkClient, SinkDeliveryError
from .config import ConfigError, LedgerConfig, build_config
from .coordinator import CallLedgerCoordinator, FetchRows, Subscribe
from .diagnostics import get_diagnostics
from .engine import ReconciliationEngine
from .models import CallEvent, CallRecord, RowDescriptor
from .storage_cache import StateCorruptionError

_LOGGER = logging.getLogger(__name__)

__all__ = [
    "CallEvent",
    "CallLedgerCoordinator",
    "CallRecord",
    "ConfigError",
    "LedgerConfig",
    "ReconciliationEngine",
    "RowDescriptor",
    "SinkClient",
    "SinkDeliveryError",
    "StateCorruptionError",
    "async_setup",
    "build_config",
    "get_diagnostics",
]


async def async_setup(
    config: Mapping[str, Any] | LedgerConfig,
    fetch_rows: FetchRows,
    *,
    subscribe: Subscribe | None = None,
    session: aiohttp.ClientSession | None = None,
) -> CallLedgerCoordinator:
    """Validate *config*, create a coordinator and start monitoring."""
    if not isinstance(config, LedgerConfig):
        config = build_config(config)

    coordinator = CallLedgerCoordinator(
        config, fetch_rows, subscribe=subscribe, session=session
    )
    await coordinator.async_start()
    _LOGGER.debug("Call ledger set up for sink %s", config.sink_url)
    return coordinator
