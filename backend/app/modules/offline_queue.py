"""Offline submission queue — readings captured while disconnected.

Entry states: pending → syncing → synced, or syncing → failed → (retry) syncing.

  * enqueue is idempotent by reading id; at capacity the oldest pending
    entry is dropped to make room.
  * sync_once drains due entries in bounded batches. Each entry is claimed
    with a conditional UPDATE (status must still be what we read), so two
    concurrent sync passes never submit the same entry twice.
  * A claim records claimed_at. An entry left in syncing longer than the
    claim timeout (its sync pass died) becomes due again.
  * A failed entry is retried after 5 s, 15 s, then 60 s; after the last
    retry it stays failed.
  * Synced entries are purged once older than the retention window.
"""
from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Sequence

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import parse_float_list, settings
from app.models.base import DepthSourceEnum, QueueStatusEnum
from app.models.offline_queue_entry import OfflineQueueEntry
from app.modules.marine_data import DepthReadingData, to_naive_utc, utcnow
from app.modules.reading_validator import ReadingValidationError

logger = logging.getLogger(__name__)


def reading_to_payload(reading: DepthReadingData) -> dict[str, Any]:
    return {
        "reading_id": reading.reading_id,
        "lat": reading.lat,
        "lon": reading.lon,
        "depth": reading.depth,
        "vessel_draft": reading.vessel_draft,
        "timestamp": to_naive_utc(reading.timestamp).isoformat(),
        "confidence": reading.confidence,
        "source": DepthSourceEnum(reading.source).value,
        "gps_accuracy_m": reading.gps_accuracy_m,
        "measurement_method": reading.measurement_method,
        "notes": reading.notes,
    }


def payload_to_reading(payload: dict[str, Any]) -> DepthReadingData:
    return DepthReadingData(
        reading_id=payload["reading_id"],
        lat=payload["lat"],
        lon=payload["lon"],
        depth=payload["depth"],
        vessel_draft=payload["vessel_draft"],
        timestamp=datetime.fromisoformat(payload["timestamp"]),
        confidence=payload.get("confidence", 0.8),
        source=DepthSourceEnum(payload.get("source", "crowdsource")),
        gps_accuracy_m=payload.get("gps_accuracy_m"),
        measurement_method=payload.get("measurement_method"),
        notes=payload.get("notes"),
    )


class OfflineQueue:
    """SQL-backed queue of readings awaiting submission.

    Args:
        session_factory: Zero-arg callable returning a new Session.
        submitter: Called with each DepthReadingData; must be idempotent by
            reading id. Raising ReadingValidationError fails the entry for good.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        submitter: Callable[[DepthReadingData], Any],
        max_size: int = settings.OFFLINE_QUEUE_MAX_SIZE,
        batch_size: int = settings.OFFLINE_QUEUE_BATCH_SIZE,
        max_retries: int = settings.OFFLINE_QUEUE_MAX_RETRIES,
        retry_delays: Optional[Sequence[float]] = None,
        retention_hours: float = settings.OFFLINE_QUEUE_RETENTION_HOURS,
        interval_seconds: float = settings.OFFLINE_SYNC_INTERVAL_SECONDS,
        claim_timeout_seconds: float = settings.OFFLINE_QUEUE_CLAIM_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self.submitter = submitter
        self.max_size = max_size
        self.batch_size = batch_size
        self.max_retries = max_retries
        self.retry_delays = list(retry_delays or parse_float_list(settings.OFFLINE_QUEUE_RETRY_DELAYS))
        self.retention = timedelta(hours=retention_hours)
        self.interval_seconds = interval_seconds
        self.claim_timeout = timedelta(seconds=claim_timeout_seconds)
        self._clock = clock
        self._sync_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def _retry_delay(self, retry_count: int) -> timedelta:
        index = min(max(retry_count - 1, 0), len(self.retry_delays) - 1)
        return timedelta(seconds=self.retry_delays[index])

    # ── Enqueue ──────────────────────────────────────────────────────────────

    def enqueue(self, reading: DepthReadingData) -> bool:
        """Queue a reading; False if that reading id is already queued."""
        db = self._session_factory()
        try:
            exists = db.execute(
                select(OfflineQueueEntry.entry_id).where(OfflineQueueEntry.reading_id == reading.reading_id)
            ).first()
            if exists:
                logger.debug("Reading %s already queued", reading.reading_id)
                return False

            pending = db.execute(
                select(func.count()).select_from(OfflineQueueEntry)
                .where(OfflineQueueEntry.status != QueueStatusEnum.SYNCED.value)
            ).scalar_one()
            if pending >= self.max_size:
                oldest = db.execute(
                    select(OfflineQueueEntry)
                    .where(OfflineQueueEntry.status == QueueStatusEnum.PENDING.value)
                    .order_by(OfflineQueueEntry.queued_at, OfflineQueueEntry.entry_id)
                    .limit(pending - self.max_size + 1)
                ).scalars().all()
                for entry in oldest:
                    logger.warning("Offline queue full (%d); dropping oldest reading %s", self.max_size, entry.reading_id)
                    db.delete(entry)

            db.add(OfflineQueueEntry(
                reading_id=reading.reading_id,
                payload_json=reading_to_payload(reading),
                status=QueueStatusEnum.PENDING.value,
                retry_count=0,
                queued_at=self._clock(),
            ))
            db.commit()
            return True
        except IntegrityError:
            # Another writer queued the same reading id first
            db.rollback()
            return False
        finally:
            db.close()

    # ── Sync ─────────────────────────────────────────────────────────────────

    def _due_entries(self, db: Session, now: datetime) -> list[tuple[int, str, Optional[datetime]]]:
        """(entry_id, status, claimed_at) as read, so claims compare against this snapshot."""
        stmt = (
            select(OfflineQueueEntry.entry_id, OfflineQueueEntry.status, OfflineQueueEntry.claimed_at)
            .where(or_(
                OfflineQueueEntry.status == QueueStatusEnum.PENDING.value,
                and_(
                    OfflineQueueEntry.status == QueueStatusEnum.FAILED.value,
                    OfflineQueueEntry.retry_count <= self.max_retries,
                    OfflineQueueEntry.next_attempt_at.is_not(None),
                    OfflineQueueEntry.next_attempt_at <= now,
                ),
                # Claimed by a sync pass that never finished (process died mid-submit)
                and_(
                    OfflineQueueEntry.status == QueueStatusEnum.SYNCING.value,
                    OfflineQueueEntry.claimed_at.is_not(None),
                    OfflineQueueEntry.claimed_at <= now - self.claim_timeout,
                ),
            ))
            .order_by(OfflineQueueEntry.queued_at, OfflineQueueEntry.entry_id)
            .limit(self.batch_size)
        )
        return [(row.entry_id, row.status, row.claimed_at) for row in db.execute(stmt)]

    def _claim(self, db: Session, entry_id: int, seen_status: str, seen_claimed_at: Optional[datetime] = None) -> bool:
        if seen_claimed_at is None:
            same_claim = OfflineQueueEntry.claimed_at.is_(None)
        else:
            same_claim = OfflineQueueEntry.claimed_at == seen_claimed_at
        result = db.execute(
            update(OfflineQueueEntry)
            .where(
                OfflineQueueEntry.entry_id == entry_id,
                OfflineQueueEntry.status == seen_status,
                same_claim,
            )
            .values(status=QueueStatusEnum.SYNCING.value, claimed_at=self._clock())
        )
        db.commit()
        if result.rowcount == 1 and seen_status == QueueStatusEnum.SYNCING.value:
            logger.warning("Reclaimed offline entry %d stuck in syncing since %s", entry_id, seen_claimed_at)
        return result.rowcount == 1

    def _finish(self, db: Session, entry_id: int, error: Optional[str], permanent: bool = False) -> str:
        entry = db.get(OfflineQueueEntry, entry_id)
        now = self._clock()
        if error is None:
            entry.status = QueueStatusEnum.SYNCED.value
            entry.synced_at = now
            entry.last_error = None
            entry.next_attempt_at = None
            outcome = "synced"
        else:
            entry.retry_count += 1
            entry.status = QueueStatusEnum.FAILED.value
            entry.last_error = error[:1000]
            if permanent or entry.retry_count > self.max_retries:
                entry.next_attempt_at = None
                logger.error("Offline reading %s failed permanently: %s", entry.reading_id, error)
                outcome = "failed"
            else:
                entry.next_attempt_at = now + self._retry_delay(entry.retry_count)
                logger.warning(
                    "Offline reading %s failed (retry %d/%d at %s): %s",
                    entry.reading_id, entry.retry_count, self.max_retries, entry.next_attempt_at, error,
                )
                outcome = "retrying"
        db.commit()
        return outcome

    def sync_once(self) -> dict[str, int]:
        """Submit one batch of due entries.

        Returns:
            Counts of claimed/synced/retrying/failed entries, or
            ``{"skipped": 1}`` when another sync pass is in progress.
        """
        if not self._sync_lock.acquire(blocking=False):
            logger.info("Offline sync already running; skipping")
            return {"skipped": 1}
        stats = {"claimed": 0, "synced": 0, "retrying": 0, "failed": 0}
        db = self._session_factory()
        try:
            for entry_id, seen_status, seen_claimed_at in self._due_entries(db, self._clock()):
                if not self._claim(db, entry_id, seen_status, seen_claimed_at):
                    continue
                entry = db.get(OfflineQueueEntry, entry_id)
                stats["claimed"] += 1
                error: Optional[str] = None
                permanent = False
                try:
                    self.submitter(payload_to_reading(entry.payload_json))
                except ReadingValidationError as exc:
                    error, permanent = str(exc), True
                except (KeyError, TypeError, ValueError) as exc:
                    error, permanent = f"malformed payload: {exc}", True
                except Exception as exc:
                    logger.exception("Submission of offline reading %s raised", entry.reading_id)
                    error = f"{type(exc).__name__}: {exc}"
                stats[self._finish(db, entry.entry_id, error, permanent)] += 1
        finally:
            db.close()
            self._sync_lock.release()
        if stats["claimed"]:
            logger.info("Offline sync: %s", stats)
        return stats

    def sync_all(self, max_batches: int = 100) -> dict[str, int]:
        """Run batches until nothing due remains (bounded by max_batches)."""
        totals = {"claimed": 0, "synced": 0, "retrying": 0, "failed": 0}
        for _ in range(max_batches):
            stats = self.sync_once()
            if "skipped" in stats or not stats["claimed"]:
                break
            for k in totals:
                totals[k] += stats[k]
        return totals

    def purge_synced(self) -> int:
        cutoff = self._clock() - self.retention
        db = self._session_factory()
        try:
            result = db.execute(
                delete(OfflineQueueEntry).where(
                    OfflineQueueEntry.status == QueueStatusEnum.SYNCED.value,
                    OfflineQueueEntry.synced_at < cutoff,
                )
            )
            db.commit()
            if result.rowcount:
                logger.info("Purged %d synced offline entries", result.rowcount)
            return result.rowcount
        finally:
            db.close()

    def statistics(self) -> dict[str, Any]:
        db = self._session_factory()
        try:
            rows = db.execute(
                select(OfflineQueueEntry.status, func.count()).group_by(OfflineQueueEntry.status)
            ).all()
            counts = {s.value: 0 for s in QueueStatusEnum}
            counts.update({status: n for status, n in rows})
            oldest = db.execute(
                select(func.min(OfflineQueueEntry.queued_at))
                .where(OfflineQueueEntry.status == QueueStatusEnum.PENDING.value)
            ).scalar()
            return {
                "total": sum(counts.values()),
                "by_status": counts,
                "oldest_pending": oldest.isoformat() if oldest else None,
                "is_syncing": self._sync_lock.locked(),
            }
        finally:
            db.close()

    # ── Background thread ────────────────────────────────────────────────────

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="offline-sync", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.sync_all()
                self.purge_synced()
            except Exception:
                logger.exception("Offline sync pass failed")
            self._stop.wait(self.interval_seconds)
