"""Shared fixtures for call ledger tests."""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Any

import pytest

from call_ledger.api_client import SinkDeliveryError
from call_ledger.delivery import DeliveryQueue
from call_ledger.engine import ReconciliationEngine
from call_ledger.models import RowDescriptor
from call_ledger.resilience import MonitorResilience

# Tuesday afternoon
NOW = datetime(2026, 3, 10, 15, 0)

MISSED = "Missed call"
ANSWERED = "Incoming call answered by Front Desk"


class FixedClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeSinkClient:
    """In-memory stand-in for SinkClient recording every payload."""

    def __init__(self) -> None:
        self.url = "http://sink.test/records"
        self.request_timeout = 10.0
        self.requests_sent = 0
        self.payloads: list[dict[str, Any]] = []
        self.fail = False
        self.gate: asyncio.Event | None = None
        self.started: asyncio.Event | None = None
        self.closed = False

    async def async_post(self, payload: dict[str, Any]) -> dict[str, Any]:
        self.requests_sent += 1
        if self.started is not None:
            self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise SinkDeliveryError("HTTP 500", 500)
        self.payloads.append(payload)
        return {"status": "ok"}

    async def async_close(self) -> None:
        self.closed = True


def make_row(contact: str, timestamp: str, call_text: str, index: int | str) -> RowDescriptor:
    """Build a row the way the live view renders it."""
    return RowDescriptor(
        text=f"{contact} {call_text} {timestamp}",
        contact_text=contact,
        timestamp_text=timestamp,
        source_index=str(index),
    )


@pytest.fixture
def clock():
    """Fixed clock at NOW."""
    return FixedClock()


@pytest.fixture
def sink():
    """Recording sink client."""
    return FakeSinkClient()


@pytest.fixture
def resilience(clock):
    return MonitorResilience(clock)


@pytest.fixture
def queue(sink, resilience):
    """Delivery queue backed by the recording sink."""
    return DeliveryQueue(sink, resilience)


@pytest.fixture
def engine(queue, resilience, clock):
    """Engine without persistence or start cutoff."""
    return ReconciliationEngine(queue, resilience=resilience, clock=clock)
