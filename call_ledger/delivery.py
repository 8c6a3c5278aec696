"""Outbound delivery queue for sink records and corrections."""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections import deque
from collections.abc import Callable
from typing import Any

from .api_client import SinkClient, SinkDeliveryError
from .const import DeliveryKind
from .models import Delivery
from .resilience import MonitorResilience

_LOGGER = logging.getLogger(__name__)

CompletionHandler = Callable[[Delivery, bool], None]


class DeliveryQueue:
    """Dispatch deliveries to the sink without blocking the event loop.

    Every dispatch captures the queue epoch at send time. ``invalidate``
    advances the epoch, so results of requests started before a stop are
    discarded instead of mutating the state of a new session.
    Failed deliveries are logged and never retried.
    """

    def __init__(
        self,
        client: SinkClient,
        resilience: MonitorResilience | None = None,
    ) -> None:
        """Initialize delivery queue."""
        self._client = client
        self._resilience = resilience
        self._pending: deque[Delivery] = deque()
        self._in_flight: set[int] = set()
        self._tasks: set[asyncio.Task] = set()
        self._request_ids = itertools.count(1)
        self._epoch = 0
        self._completion_handler: CompletionHandler | None = None
        self.delivered_count = 0

    @property
    def epoch(self) -> int:
        """Current monitoring epoch."""
        return self._epoch

    @property
    def pending(self) -> list[Delivery]:
        """Deliveries waiting for the next flush."""
        return list(self._pending)

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)

    def set_completion_handler(self, handler: CompletionHandler | None) -> None:
        """Register the callback receiving ``(delivery, success)`` results."""
        self._completion_handler = handler

    def enqueue(self, delivery: Delivery) -> None:
        """Queue *delivery* for the next flush."""
        self._pending.append(delivery)
        _LOGGER.debug(
            "Queued %s delivery for %s", delivery.kind.value, delivery.record_key
        )

    def invalidate(self) -> int:
        """Advance the epoch and forget queued and in-flight work."""
        dropped = len(self._pending)
        if self._in_flight:
            _LOGGER.info(
                "Abandoning %d in-flight deliveries", len(self._in_flight)
            )
        self._pending.clear()
        self._in_flight.clear()
        self._epoch += 1
        return dropped

    def schedule_flush(self) -> asyncio.Task | None:
        """Flush in a background task when called from inside the event loop."""
        if not self._pending:
            return None
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return None

        task = loop.create_task(self.async_flush())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def async_flush(self) -> int:
        """Send every queued delivery concurrently. Returns the number sent."""
        batch = list(self._pending)
        self._pending.clear()
        if not batch:
            return 0

        epoch = self._epoch
        await asyncio.gather(*(self._dispatch(delivery, epoch) for delivery in batch))
        return len(batch)

    async def async_wait_idle(self) -> None:
        """Wait for background flushes started by ``schedule_flush``."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _dispatch(self, delivery: Delivery, epoch: int) -> None:
        request_id = next(self._request_ids)
        self._in_flight.add(request_id)
        if self._resilience:
            self._resilience.stats.deliveries_sent += 1

        success = False
        try:
            await self._client.async_post(delivery.payload)
            success = True
        except SinkDeliveryError as err:
            self._log_failure(delivery, err)
        except Exception as err:
            _LOGGER.error(
                "Unexpected error delivering %s: %s",
                delivery.kind.value,
                err,
                exc_info=True,
            )
            self._log_failure(delivery, err)
        finally:
            self._in_flight.discard(request_id)

        if epoch != self._epoch:
            _LOGGER.debug(
                "Discarding %s result from stopped session (epoch %d, now %d)",
                delivery.kind.value,
                epoch,
                self._epoch,
            )
            if self._resilience:
                self._resilience.stats.stale_responses_discarded += 1
            return

        if success:
            self.delivered_count += 1
            _LOGGER.debug("Delivered %s for %s", delivery.kind.value, delivery.record_key)

        if self._completion_handler is not None:
            try:
                self._completion_handler(delivery, success)
            except Exception as err:
                _LOGGER.error("Delivery completion handler failed: %s", err, exc_info=True)
                if self._resilience:
                    self._resilience.record_error("delivery_completion", err)

    def _log_failure(self, delivery: Delivery, err: BaseException) -> None:
        if self._resilience:
            self._resilience.stats.delivery_failures += 1
            self._resilience.record_error(f"delivery_{delivery.kind.value}", err)

        if delivery.kind is DeliveryKind.CREATE:
            _LOGGER.warning(
                "Failed to send missed call %s to sink: %s", delivery.record_key, err
            )
        else:
            _LOGGER.warning(
                "Failed to send answered update for %s: %s", delivery.record_key, err
            )

    def get_stats(self) -> dict[str, Any]:
        """Return queue statistics."""
        return {
            "epoch": self._epoch,
            "pending": len(self._pending),
            "in_flight": len(self._in_flight),
            "delivered": self.delivered_count,
            "requests_sent": self._client.requests_sent,
        }
