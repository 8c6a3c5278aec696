"""Monitor scheduler funnelling push, poll and top-row triggers into the engine."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping, Sequence
from datetime import datetime
from typing import Any

import aiohttp

from .api_client import SinkClient
from .config import LedgerConfig
from .const import MonitorState
from .delivery import DeliveryQueue
from .engine import ReconciliationEngine
from .models import BackfillResult, ObservationResult, RowDescriptor
from .resilience import MonitorResilience
from .storage_cache import BoundedStateStore, JsonStore

_LOGGER = logging.getLogger(__name__)

RowLike = RowDescriptor | Mapping[str, Any]
FetchRows = Callable[[], Awaitable[Sequence[RowLike]]]
ChangeCallback = Callable[[Sequence[RowLike] | None], None]
Subscribe = Callable[[ChangeCallback], Callable[[], None]]


def _coerce_rows(rows: Sequence[RowLike]) -> list[RowDescriptor]:
    """Accept live-view rows as descriptors or loosely shaped mappings."""
    return [
        row if isinstance(row, RowDescriptor) else RowDescriptor.from_dict(row)
        for row in rows
    ]


class CallLedgerCoordinator:
    """Own one monitoring session at a time.

    Three triggers feed ``ReconciliationEngine.on_observation``: change
    notifications from ``subscribe``, a fallback poll and a cheap top-row
    check. A new engine is built on every start and discarded on stop;
    the delivery queue survives so its epoch can reject late results.
    """

    def __init__(
        self,
        config: LedgerConfig,
        fetch_rows: FetchRows,
        *,
        subscribe: Subscribe | None = None,
        client: SinkClient | None = None,
        session: aiohttp.ClientSession | None = None,
        store: BoundedStateStore | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        """Initialize the coordinator."""
        self.config = config
        self._fetch_rows = fetch_rows
        self._subscribe = subscribe
        self._clock = clock

        self.client = client or SinkClient(
            config.sink_url, session, request_timeout=config.request_timeout
        )
        self.resilience = MonitorResilience(clock)
        self.queue = DeliveryQueue(self.client, self.resilience)

        if store is None:
            backing = JsonStore(config.storage_path) if config.storage_path else None
            store = BoundedStateStore(
                backing,
                max_records=config.max_records,
                protect_horizon=config.answer_match_window,
                clock=clock,
            )
        self.store = store

        self.engine: ReconciliationEngine | None = None
        self.state = MonitorState.STOPPED
        self.started_at: datetime | None = None
        self.last_observation: datetime | None = None
        self._tasks: list[asyncio.Task] = []
        self._refresh_tasks: set[asyncio.Task] = set()
        self._unsubscribe: Callable[[], None] | None = None
        self._top_fingerprint: tuple[str, str, str] | None = None

    @property
    def is_running(self) -> bool:
        return self.state is MonitorState.RUNNING

    @property
    def status_line(self) -> str:
        """Coarse user-visible status."""
        if self.engine is None:
            return "Monitoring stopped"
        return self.engine.status_line

    @property
    def delivered_count(self) -> int:
        """Deliveries acknowledged by the sink."""
        return self.queue.delivered_count

    async def async_start(self) -> None:
        """Start monitoring: build the engine, start timers and subscribe."""
        if self.is_running:
            _LOGGER.debug("Monitoring already running")
            return

        now = self._clock()
        self.started_at = now
        self.engine = ReconciliationEngine.from_config(
            self.config,
            self.queue,
            self.store,
            resilience=self.resilience,
            since=now if self.config.ignore_calls_before_start else None,
            clock=self._clock,
        )
        if self.config.resume_state:
            self.engine.restore()
        else:
            self.store.clear()

        self.state = MonitorState.RUNNING
        self._top_fingerprint = None
        self._tasks = [
            asyncio.create_task(
                self._run_periodic("poll", self.config.poll_interval, self.async_refresh)
            ),
            asyncio.create_task(
                self._run_periodic(
                    "top_check", self.config.top_check_interval, self._async_check_top_row
                )
            ),
            asyncio.create_task(
                self._run_periodic("cleanup", self.config.cleanup_interval, self._async_sweep)
            ),
        ]

        if self._subscribe is not None:
            self._unsubscribe = self._subscribe(self.notify_changed)

        _LOGGER.info(
            "Call monitoring started (poll %ss, top-row check %ss)",
            self.config.poll_interval,
            self.config.top_check_interval,
        )
        await self._async_guarded_refresh("initial_refresh")

    async def async_stop(self) -> None:
        """Stop monitoring and discard the session state."""
        if not self.is_running:
            return
        self.state = MonitorState.STOPPED

        for task in (*self._tasks, *self._refresh_tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, *self._refresh_tasks, return_exceptions=True)
        self._tasks = []
        self._refresh_tasks.clear()

        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

        dropped = self.queue.invalidate()
        if dropped:
            _LOGGER.info("Dropped %d queued deliveries on stop", dropped)

        if self.engine is not None:
            self.engine.persist()
            self.engine.reset()
            self.engine = None
        self._top_fingerprint = None
        _LOGGER.info("Call monitoring stopped")

    async def async_close(self) -> None:
        """Stop monitoring and release the HTTP session."""
        await self.async_stop()
        await self.client.async_close()

    async def _run_periodic(
        self, name: str, interval: float, action: Callable[[], Awaitable[Any]]
    ) -> None:
        try:
            while True:
                await asyncio.sleep(interval)
                try:
                    await action()
                except Exception as err:
                    _LOGGER.error("Error in %s loop: %s", name, err, exc_info=True)
                    self.resilience.record_error(name, err)
        except asyncio.CancelledError:
            pass

    async def async_refresh(self) -> ObservationResult | None:
        """Pull the current rows and observe them."""
        if not self.is_running:
            return None
        rows = await self._fetch_rows()
        return self.observe(rows)

    async def _async_guarded_refresh(self, context: str) -> None:
        try:
            await self.async_refresh()
        except Exception as err:
            _LOGGER.error("Failed to refresh call rows (%s): %s", context, err, exc_info=True)
            self.resilience.record_error(context, err)

    async def _async_check_top_row(self) -> None:
        rows = _coerce_rows(await self._fetch_rows())
        if not rows or rows[0].fingerprint == self._top_fingerprint:
            return
        _LOGGER.debug("Top row changed, observing batch")
        self.observe(rows)

    async def _async_sweep(self) -> None:
        if self.engine is None:
            return
        self.engine.sweep()
        self.engine.persist()

    def observe(self, rows: Sequence[RowLike]) -> ObservationResult | None:
        """Feed one batch to the engine and flush any resulting deliveries."""
        if self.engine is None:
            return None

        rows = _coerce_rows(rows)
        result = self.engine.on_observation(rows)
        self.last_observation = self._clock()
        if rows:
            self._top_fingerprint = rows[0].fingerprint
        self.queue.schedule_flush()

        if result.changed:
            _LOGGER.debug(
                "Observation: %d new missed, %d updates queued",
                result.missed_created,
                result.updates_enqueued,
            )
        return result

    async def async_observe(
        self, rows: Sequence[RowLike]
    ) -> ObservationResult | None:
        """Observe *rows* and wait until the resulting deliveries finished."""
        result = self.observe(rows)
        await self.queue.async_wait_idle()
        return result

    def notify_changed(self, rows: Sequence[RowLike] | None = None) -> None:
        """Change-notification callback for the live view subscription.

        With rows (descriptors or plain mappings) the batch is observed
        directly; otherwise a pull is scheduled.
        """
        if not self.is_running:
            return
        if rows is not None:
            self.observe(rows)
            return

        task = asyncio.get_running_loop().create_task(
            self._async_guarded_refresh("push_refresh")
        )
        self._refresh_tasks.add(task)
        task.add_done_callback(self._refresh_tasks.discard)

    async def async_backfill(
        self, rows: Sequence[RowLike] | None = None
    ) -> BackfillResult | None:
        """Bulk-collect the rendered rows without delivering anything."""
        if self.engine is None:
            return None
        if rows is None:
            rows = await self._fetch_rows()
        return self.engine.backfill(_coerce_rows(rows))

    def acknowledge(self, contact: str, timestamp: datetime) -> bool:
        """Mark a missed call as called back."""
        if self.engine is None:
            return False
        return self.engine.acknowledge(contact, timestamp)

    def get_resilience_status(self) -> dict[str, Any]:
        """Get comprehensive resilience status for diagnostics."""
        return {
            "state": self.state.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "last_observation": (
                self.last_observation.isoformat() if self.last_observation else None
            ),
            "status_line": self.status_line,
            "resilience": self.resilience.get_resilience_stats(),
            "delivery": self.queue.get_stats(),
            "sink": {
                "url": self.client.url,
                "timeout": self.client.request_timeout,
            },
        }
