"""Tests for the monitor scheduler and diagnostics."""
import asyncio

import pytest

from call_ledger.config import LedgerConfig
from call_ledger.const import MonitorState
from call_ledger.coordinator import CallLedgerCoordinator
from call_ledger.diagnostics import REDACTED, get_diagnostics, redact_data

from conftest import ANSWERED, MISSED, make_row

NUMBER = "(555)123-4567"


class FakeLiveView:
    """Live view exposing pull and push access to its rows."""

    def __init__(self, rows=None):
        self.rows = list(rows or [])
        self.fetches = 0
        self.callback = None
        self.unsubscribed = False

    async def fetch(self):
        self.fetches += 1
        return list(self.rows)

    def subscribe(self, callback):
        self.callback = callback

        def unsubscribe():
            self.unsubscribed = True

        return unsubscribe


def make_config(**overrides):
    values = {
        "sink_url": "http://sink.test/records",
        "storage_path": None,
        "ignore_calls_before_start": False,
        "poll_interval": 3600,
        "top_check_interval": 3600,
        "cleanup_interval": 3600,
    }
    values.update(overrides)
    return LedgerConfig(**values)


@pytest.fixture
def view():
    return FakeLiveView([make_row(NUMBER, "2:15 PM", MISSED, 7)])


@pytest.fixture
def coordinator(view, sink, clock):
    return CallLedgerCoordinator(
        make_config(), view.fetch, subscribe=view.subscribe, client=sink, clock=clock
    )


class TestCallLedgerCoordinator:
    """Test start, observation triggers and stop."""

    @pytest.mark.asyncio
    async def test_start_observes_current_rows(self, coordinator, view, sink):
        """Should build an engine, subscribe and observe immediately."""
        await coordinator.async_start()
        try:
            await coordinator.queue.async_wait_idle()

            assert coordinator.state is MonitorState.RUNNING
            assert view.callback is not None
            assert len(coordinator.engine.records) == 1
            assert sink.payloads[0]["actualMissedCall"] == "Yes"
            assert coordinator.delivered_count == 1
            assert coordinator.status_line == "Missed calls: 1"
        finally:
            await coordinator.async_stop()

    @pytest.mark.asyncio
    async def test_push_notification_with_rows(self, coordinator, view, sink):
        """Should reconcile rows pushed by the live view."""
        await coordinator.async_start()
        try:
            view.callback(
                [make_row(NUMBER, "2:40 PM", ANSWERED, 9), make_row(NUMBER, "2:15 PM", MISSED, 7)]
            )
            await coordinator.queue.async_wait_idle()

            assert [payload["isUpdate"] for payload in sink.payloads] == [False, True]
            assert coordinator.engine.records[0].is_answered is True
        finally:
            await coordinator.async_stop()

    @pytest.mark.asyncio
    async def test_async_observe_waits_for_deliveries(self, coordinator, sink):
        await coordinator.async_start()
        try:
            await coordinator.async_observe([make_row("(555)000-1111", "2:50 PM", MISSED, 11)])

            assert len(sink.payloads) == 2
        finally:
            await coordinator.async_stop()

    @pytest.mark.asyncio
    async def test_calls_before_start_are_ignored(self, view, sink, clock):
        """Should skip rows older than the monitor start by default."""
        coordinator = CallLedgerCoordinator(
            make_config(ignore_calls_before_start=True), view.fetch, client=sink, clock=clock
        )
        await coordinator.async_start()
        try:
            await coordinator.queue.async_wait_idle()

            assert coordinator.engine.records == []
            assert sink.payloads == []
        finally:
            await coordinator.async_stop()

    @pytest.mark.asyncio
    async def test_stop_discards_session(self, coordinator, view):
        """Should unsubscribe, advance the epoch and drop the engine."""
        await coordinator.async_start()
        await coordinator.async_stop()

        assert coordinator.state is MonitorState.STOPPED
        assert coordinator.engine is None
        assert view.unsubscribed is True
        assert coordinator.queue.epoch == 1
        assert coordinator.status_line == "Monitoring stopped"
        assert coordinator.observe([make_row(NUMBER, "2:15 PM", MISSED, 7)]) is None

    @pytest.mark.asyncio
    async def test_restart_builds_fresh_state(self, coordinator, view, sink):
        """Should start each session with empty state unless resuming."""
        await coordinator.async_start()
        await coordinator.queue.async_wait_idle()
        await coordinator.async_stop()

        await coordinator.async_start()
        try:
            await coordinator.queue.async_wait_idle()

            assert len(coordinator.engine.records) == 1
            assert len(sink.payloads) == 2
        finally:
            await coordinator.async_stop()

    @pytest.mark.asyncio
    async def test_resume_restores_persisted_state(self, view, sink, clock, tmp_path):
        """Should not resend calls known from the previous session."""
        config = make_config(storage_path=str(tmp_path / "calls.json"), resume_state=True)
        coordinator = CallLedgerCoordinator(config, view.fetch, client=sink, clock=clock)

        await coordinator.async_start()
        await coordinator.queue.async_wait_idle()
        await coordinator.async_stop()

        await coordinator.async_start()
        try:
            await coordinator.queue.async_wait_idle()

            assert len(coordinator.engine.records) == 1
            assert len(sink.payloads) == 1
        finally:
            await coordinator.async_stop()

    @pytest.mark.asyncio
    async def test_backfill_and_acknowledge(self, coordinator, view, sink):
        await coordinator.async_start()
        try:
            view.rows.append(make_row("(555)222-3333", "Monday 9:00 AM", MISSED, 8))

            result = await coordinator.async_backfill()

            assert result.new_records == 1
            assert coordinator.acknowledge("(555)222-3333", coordinator.engine.records[-1].timestamp)
        finally:
            await coordinator.async_stop()

    @pytest.mark.asyncio
    async def test_push_notification_with_mapping_rows(self, coordinator, sink):
        """Should accept loosely shaped row mappings from the live view."""
        await coordinator.async_start()
        try:
            coordinator.notify_changed(
                [
                    {
                        "text": f"(555)000-1111 {MISSED} 2:50 PM",
                        "contact": "(555)000-1111",
                        "timestamp": "2:50 PM",
                        "index": 11,
                    }
                ]
            )
            await coordinator.queue.async_wait_idle()

            assert "(555)000-1111" in [r.contact for r in coordinator.engine.records]
            assert coordinator.engine.ledger.is_new_index("11") is False
            assert sink.payloads[-1]["number"] == "(555)000-1111"
        finally:
            await coordinator.async_stop()

    @pytest.mark.asyncio
    async def test_failed_push_refresh_is_recorded(self, coordinator, view, monkeypatch):
        """Should log and count a failing pull instead of leaking the error."""
        await coordinator.async_start()
        try:

            async def broken_fetch():
                raise RuntimeError("view gone")

            monkeypatch.setattr(coordinator, "_fetch_rows", broken_fetch)

            view.callback(None)
            await asyncio.gather(*coordinator._refresh_tasks)

            stats = coordinator.resilience.get_resilience_stats()
            assert stats["error_counts"] == {"push_refresh": 1}
            assert coordinator.is_running
        finally:
            await coordinator.async_stop()

    @pytest.mark.asyncio
    async def test_failed_initial_refresh_still_starts(self, view, sink, clock):
        """Should keep monitoring when the first pull fails."""
        calls = []

        async def flaky_fetch():
            calls.append(True)
            if len(calls) == 1:
                raise RuntimeError("view not ready")
            return await view.fetch()

        coordinator = CallLedgerCoordinator(
            make_config(), flaky_fetch, subscribe=view.subscribe, client=sink, clock=clock
        )

        await coordinator.async_start()
        try:
            assert coordinator.state is MonitorState.RUNNING
            stats = coordinator.resilience.get_resilience_stats()
            assert stats["error_counts"] == {"initial_refresh": 1}

            await coordinator.async_refresh()
            assert len(coordinator.engine.records) == 1
        finally:
            await coordinator.async_stop()

        assert coordinator.state is MonitorState.STOPPED
        assert view.unsubscribed is True

    @pytest.mark.asyncio
    async def test_close_releases_client(self, coordinator, sink):
        await coordinator.async_start()
        await coordinator.async_close()

        assert sink.closed is True


class TestDiagnostics:
    """Test the redacted diagnostics snapshot."""

    def test_redact_nested(self):
        data = {"contact": NUMBER, "inner": [{"phoneNumber": "5551234567", "n": 1}], "x": None}

        assert redact_data(data) == {
            "contact": REDACTED,
            "inner": [{"phoneNumber": REDACTED, "n": 1}],
            "x": None,
        }

    @pytest.mark.asyncio
    async def test_diagnostics_hide_numbers(self, coordinator):
        """Should include health data but no phone numbers or URLs."""
        await coordinator.async_start()
        try:
            await coordinator.queue.async_wait_idle()

            diagnostics = get_diagnostics(coordinator)
        finally:
            await coordinator.async_stop()

        assert diagnostics["config"]["sink_url"] == REDACTED
        assert diagnostics["recent_records"][0]["contact"] == REDACTED
        assert diagnostics["engine"]["records"] == 1
        assert diagnostics["monitor"]["state"] == "running"
        assert diagnostics["summary"]["status"] == "healthy"
        assert NUMBER not in repr(diagnostics)

    def test_exported_from_package(self):
        """Should expose the diagnostics snapshot at the package level."""
        import call_ledger

        assert call_ledger.get_diagnostics is get_diagnostics
        assert "get_diagnostics" in call_ledger.__all__
