"""Unit tests for data models."""
import threading
from datetime import date

import pytest

from processor.errors import MalformedRecordError, TransientApiError
from processor.models import (
    Category,
    SlotCount,
    SyncStatus,
    SyncSummary,
    TimeWindow,
)


class TestTimeWindow:
    """Test cases for TimeWindow."""

    def test_inverted_window_rejected(self):
        """Test that start must not be after end."""
        with pytest.raises(ValueError):
            TimeWindow(date(2025, 7, 2), date(2025, 7, 1))

    def test_days_and_dates(self):
        """Test inclusive day counting."""
        window = TimeWindow(date(2025, 7, 30), date(2025, 8, 2))

        assert window.days == 4
        assert window.dates()[-1] == date(2025, 8, 2)
        assert window.contains(date(2025, 7, 31))
        assert not window.contains(date(2025, 8, 3))

    def test_split_covers_window(self):
        """Test that chunks are contiguous and non-overlapping."""
        window = TimeWindow(date(2025, 7, 1), date(2025, 7, 31))

        chunks = window.split(7)

        assert [c.days for c in chunks] == [7, 7, 7, 7, 3]
        assert chunks[0].start == window.start
        assert chunks[-1].end == window.end
        for left, right in zip(chunks, chunks[1:]):
            assert (right.start - left.end).days == 1

    def test_split_by_month(self):
        """Test month clipping across a year boundary."""
        window = TimeWindow(date(2024, 12, 15), date(2025, 2, 10))

        months = window.split_by_month()

        assert [str(m) for m in months] == [
            '2024-12-15..2024-12-31',
            '2025-01-01..2025-01-31',
            '2025-02-01..2025-02-10',
        ]
        assert window.months() == ['2024-12', '2025-01', '2025-02']

    def test_month_bounds(self):
        """Test widening to whole months."""
        assert TimeWindow(date(2024, 2, 10), date(2024, 2, 12)).month_bounds() == \
            TimeWindow(date(2024, 2, 1), date(2024, 2, 29))
        assert TimeWindow(date(2025, 11, 5), date(2025, 12, 3)).month_bounds() == \
            TimeWindow(date(2025, 11, 1), date(2025, 12, 31))


class TestSlotCount:
    """Test cases for SlotCount."""

    def test_build_floors_available(self):
        """Test available = max(0, total - booked)."""
        count = SlotCount.build(date(2025, 7, 2), '3', 'John', Category.FITTING, 4, 6)

        assert count.available_slots == 0

    def test_inconsistent_values_rejected(self):
        """Test that the available-slot invariant is enforced."""
        with pytest.raises(ValueError):
            SlotCount(date(2025, 7, 2), '3', 'John', Category.FITTING, 10, 2, 5)
        with pytest.raises(ValueError):
            SlotCount.build(date(2025, 7, 2), '3', 'John', Category.FITTING, -1, 0)


class TestSyncSummary:
    """Test cases for SyncSummary."""

    def test_happy_path_transitions(self):
        """Test PENDING -> RUNNING -> SUCCESS."""
        summary = SyncSummary(run_id='r')

        summary.transition(SyncStatus.RUNNING)
        summary.transition(SyncStatus.SUCCESS)

        assert summary.status == SyncStatus.SUCCESS
        assert summary.started_at is not None
        assert summary.completed_at is not None

    def test_pending_can_fail_directly(self):
        """Test PENDING -> FAILURE."""
        summary = SyncSummary(run_id='r')

        summary.transition(SyncStatus.FAILURE)

        assert summary.status == SyncStatus.FAILURE

    @pytest.mark.parametrize('path', [
        [SyncStatus.SUCCESS],
        [SyncStatus.RUNNING, SyncStatus.PENDING],
        [SyncStatus.RUNNING, SyncStatus.SUCCESS, SyncStatus.FAILURE],
        [SyncStatus.FAILURE, SyncStatus.RUNNING],
    ])
    def test_illegal_transitions(self, path):
        """Test that terminal states are final and PENDING cannot succeed."""
        summary = SyncSummary(run_id='r')

        with pytest.raises(ValueError):
            for status in path:
                summary.transition(status)

    def test_counters_and_samples(self):
        """Test error counting and sample capping."""
        summary = SyncSummary(run_id='r')

        for i in range(15):
            summary.record_skip(MalformedRecordError('bad', identifier=str(i)))
        summary.record_failure(TransientApiError('429', identifier='/appointments'))
        summary.record_synced('appointments', 3)
        summary.record_synced('appointments', 2)

        assert summary.skipped == 15
        assert summary.failed == 1
        assert summary.synced == 5
        assert len(summary.skipped_samples) == SyncSummary.SAMPLE_LIMIT
        assert summary.error_counts == {'MalformedRecordError': 15, 'TransientApiError': 1}

        data = summary.to_dict()
        assert data['tables'] == {'appointments': 5}
        assert data['status'] == 'pending'
        assert data['failed_samples'] == ['/appointments']

    def test_counters_are_thread_safe(self):
        """Test concurrent failure recording."""
        summary = SyncSummary(run_id='r')

        def record():
            for _ in range(500):
                summary.record_failure(TransientApiError('x'))

        threads = [threading.Thread(target=record) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert summary.failed == 4000
        assert summary.error_counts['TransientApiError'] == 4000
