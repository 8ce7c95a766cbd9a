"""Tests for the offline submission queue."""
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest

from app.models.base import QueueStatusEnum
from app.models.offline_queue_entry import OfflineQueueEntry
from app.modules.offline_queue import OfflineQueue, payload_to_reading, reading_to_payload
from app.modules.reading_validator import ReadingValidationError

T0 = datetime(2024, 6, 1, 12, 0, 0)


class FakeClock:
    def __init__(self):
        self.now = T0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def submitter():
    return MagicMock()


@pytest.fixture
def queue(session_factory, submitter, clock):
    return OfflineQueue(
        session_factory, submitter, max_size=5, batch_size=10, max_retries=3,
        retry_delays=[5, 15, 60], retention_hours=24, clock=clock,
    )


def _status(session_factory, reading_id):
    with session_factory() as db:
        entry = db.query(OfflineQueueEntry).filter_by(reading_id=reading_id).one()
        return entry.status, entry.retry_count


class TestPayload:
    def test_payload_preserves_reading(self, make_reading):
        reading = make_reading(gps_accuracy_m=4.0, measurement_method="sounder", notes="slack water")
        assert payload_to_reading(reading_to_payload(reading)) == reading


class TestEnqueue:
    def test_enqueue_is_idempotent(self, queue, make_reading):
        reading = make_reading()
        assert queue.enqueue(reading)
        assert not queue.enqueue(reading)
        assert queue.statistics()["total"] == 1

    def test_full_queue_drops_oldest_pending(self, queue, make_reading, clock, session_factory):
        readings = [make_reading() for _ in range(6)]
        for r in readings:
            queue.enqueue(r)
            clock.advance(1)
        stats = queue.statistics()
        assert stats["by_status"]["pending"] == 5
        with session_factory() as db:
            ids = {e.reading_id for e in db.query(OfflineQueueEntry)}
        assert readings[0].reading_id not in ids
        assert readings[-1].reading_id in ids

    def test_statistics(self, queue, make_reading):
        queue.enqueue(make_reading())
        stats = queue.statistics()
        assert stats["by_status"] == {"pending": 1, "syncing": 0, "failed": 0, "synced": 0}
        assert stats["oldest_pending"] == T0.isoformat()
        assert stats["is_syncing"] is False


class TestSync:
    def test_successful_sync(self, queue, submitter, make_reading, session_factory):
        reading = make_reading()
        queue.enqueue(reading)
        stats = queue.sync_once()
        assert stats == {"claimed": 1, "synced": 1, "retrying": 0, "failed": 0}
        submitter.assert_called_once_with(reading)
        assert _status(session_factory, reading.reading_id) == (QueueStatusEnum.SYNCED.value, 0)
        assert queue.sync_once()["claimed"] == 0

    def test_transient_failure_retries_after_delay(self, queue, submitter, make_reading, clock, session_factory):
        reading = make_reading()
        queue.enqueue(reading)
        submitter.side_effect = [ConnectionError("offline"), None]
        assert queue.sync_once()["retrying"] == 1
        assert _status(session_factory, reading.reading_id) == (QueueStatusEnum.FAILED.value, 1)
        clock.advance(4)
        assert queue.sync_once()["claimed"] == 0
        clock.advance(1)
        assert queue.sync_once()["synced"] == 1

    def test_retries_exhausted(self, queue, submitter, make_reading, clock, session_factory):
        reading = make_reading()
        queue.enqueue(reading)
        submitter.side_effect = ConnectionError("offline")
        outcomes = []
        for delay in (0, 5, 15, 60, 3600):
            clock.advance(delay)
            stats = queue.sync_once()
            outcomes.append(next((k for k in ("retrying", "failed") if stats[k]), None))
        assert outcomes == ["retrying", "retrying", "retrying", "failed", None]
        assert submitter.call_count == 4
        assert _status(session_factory, reading.reading_id) == (QueueStatusEnum.FAILED.value, 4)

    def test_validation_error_fails_permanently(self, queue, submitter, make_reading, clock):
        queue.enqueue(make_reading())
        submitter.side_effect = ReadingValidationError("depth must be greater than 0")
        assert queue.sync_once()["failed"] == 1
        clock.advance(3600)
        assert queue.sync_once()["claimed"] == 0

    def test_sync_all_drains_batches(self, session_factory, submitter, make_reading, clock):
        queue = OfflineQueue(session_factory, submitter, max_size=50, batch_size=2, clock=clock)
        for _ in range(5):
            queue.enqueue(make_reading())
        totals = queue.sync_all()
        assert totals["synced"] == 5
        assert submitter.call_count == 5

    def test_concurrent_pass_skipped(self, queue, make_reading):
        queue.enqueue(make_reading())
        queue._sync_lock.acquire()
        try:
            assert queue.sync_once() == {"skipped": 1}
        finally:
            queue._sync_lock.release()

    def test_claim_only_once(self, queue, make_reading, session_factory):
        queue.enqueue(make_reading())
        db = session_factory()
        try:
            ((entry_id, status, claimed_at),) = queue._due_entries(db, T0)
            assert claimed_at is None
            assert queue._claim(db, entry_id, status, claimed_at)
            assert not queue._claim(db, entry_id, status, claimed_at)
        finally:
            db.close()

    def test_abandoned_claim_reclaimed_after_timeout(self, session_factory, submitter, make_reading, clock):
        queue = OfflineQueue(session_factory, submitter, claim_timeout_seconds=300, clock=clock)
        reading = make_reading()
        queue.enqueue(reading)
        db = session_factory()
        try:
            ((entry_id, status, claimed_at),) = queue._due_entries(db, clock())
            assert queue._claim(db, entry_id, status, claimed_at)
        finally:
            db.close()

        # A fresh queue (restarted process) leaves the claim alone while it is recent
        restarted = OfflineQueue(session_factory, submitter, claim_timeout_seconds=300, clock=clock)
        clock.advance(120)
        assert restarted.sync_all()["claimed"] == 0
        assert _status(session_factory, reading.reading_id) == (QueueStatusEnum.SYNCING.value, 0)

        clock.advance(200)
        assert restarted.sync_all()["synced"] == 1
        assert _status(session_factory, reading.reading_id) == (QueueStatusEnum.SYNCED.value, 0)
        submitter.assert_called_once()


class TestPurge:
    def test_purge_after_retention(self, queue, make_reading, clock):
        queue.enqueue(make_reading())
        queue.sync_once()
        clock.advance(23 * 3600)
        assert queue.purge_synced() == 0
        clock.advance(2 * 3600)
        assert queue.purge_synced() == 1
        assert queue.statistics()["total"] == 0
