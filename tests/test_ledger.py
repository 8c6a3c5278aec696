"""Tests for the dedup ledger and processed-answer set."""
from datetime import timedelta

from call_ledger.ledger import DedupLedger, ProcessedAnswerSet
from call_ledger.models import to_epoch_ms

from conftest import NOW


class TestDedupLedger:
    """Test index and sent-record tracking."""

    def test_index_tracking(self):
        ledger = DedupLedger()
        assert ledger.is_new_index("7")

        ledger.mark_index("7", NOW)

        assert not ledger.is_new_index("7")
        assert ledger.index_count == 1

    def test_sent_status_is_overwritten(self):
        """Should keep only the last status per record."""
        ledger = DedupLedger()
        key = ("5551234567", to_epoch_ms(NOW))

        ledger.mark_sent(key, "Yes")
        ledger.mark_sent(key, "No")

        assert ledger.sent_record_status(key) == "No"
        assert ledger.sent_record_status(("5550000000", 0)) is None

    def test_evicts_oldest_above_capacity(self):
        """Should retain at most the capacity after a sweep."""
        ledger = DedupLedger(index_capacity=500)
        old = NOW - timedelta(hours=3)
        for index in range(600):
            ledger.mark_index(str(index), old)

        removed = ledger.evict(NOW)

        assert removed == 100
        assert ledger.index_count == 500
        assert ledger.is_new_index("0")
        assert not ledger.is_new_index("599")

    def test_entries_inside_match_horizon_are_protected(self):
        """Should never evict entries a later answer may still need."""
        ledger = DedupLedger(index_capacity=5, protect_horizon=timedelta(hours=1))
        for index in range(5):
            ledger.mark_index(f"old-{index}", NOW - timedelta(hours=2))
        for index in range(10):
            ledger.mark_index(f"new-{index}", NOW - timedelta(minutes=index))

        ledger.evict(NOW)

        assert ledger.index_count == 10
        assert all(not ledger.is_new_index(f"new-{index}") for index in range(10))
        assert all(ledger.is_new_index(f"old-{index}") for index in range(5))

    def test_sent_records_evicted_outside_horizon(self):
        """Should trim sent records by age-protected capacity."""
        ledger = DedupLedger(sent_capacity=2)
        stale = [("555000000%d" % i, to_epoch_ms(NOW - timedelta(hours=5 - i))) for i in range(3)]
        for key in stale:
            ledger.mark_sent(key, "Yes")
        recent = ("5559999999", to_epoch_ms(NOW))
        ledger.mark_sent(recent, "Yes")

        ledger.evict(NOW)

        assert ledger.sent_count == 2
        assert ledger.sent_record_status(recent) == "Yes"
        assert ledger.sent_record_status(stale[0]) is None

    def test_persisted_view_is_capped(self):
        """Should serialize only the newest entries."""
        ledger = DedupLedger()
        for index in range(5):
            ledger.mark_index(str(index))

        data = ledger.to_dict(max_indexes=3, max_sent=0)

        assert [entry[0] for entry in data["processed_indexes"]] == ["2", "3", "4"]
        assert data["sent_records"] == []

        restored = DedupLedger()
        restored.load(data)
        assert restored.index_count == 3
        assert restored.is_new_index("0")


class TestProcessedAnswerSet:
    """Test answer bookkeeping."""

    def test_membership(self):
        answers = ProcessedAnswerSet()
        key = ("5551234567", to_epoch_ms(NOW))

        answers.add(key)

        assert key in answers
        assert len(answers) == 1

    def test_age_and_capacity_eviction(self):
        """Should drop answers older than six hours, then the oldest over capacity."""
        answers = ProcessedAnswerSet(capacity=2, max_age=timedelta(hours=6))
        answers.add(("1", to_epoch_ms(NOW - timedelta(hours=7))))
        for minutes in (30, 20, 10):
            answers.add(("2", to_epoch_ms(NOW - timedelta(minutes=minutes))))

        removed = answers.evict(NOW)

        assert removed == 2
        assert len(answers) == 2
        assert ("2", to_epoch_ms(NOW - timedelta(minutes=10))) in answers
        assert ("2", to_epoch_ms(NOW - timedelta(minutes=30))) not in answers
