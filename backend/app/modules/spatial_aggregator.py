"""Spatial aggregation of depth readings into grid cells.

Each resolution keeps its own set of cells; a cell is identified by its
south-west corner, ``floor(coord / resolution) * resolution``.

Updates are atomic per cell:
  1. Under a striped in-process lock for the cell, issue ONE UPDATE whose SET
     clause computes the new statistics from the stored row (count + 1,
     running mean, Welford M2, min/max, timestamps, per-source counts). The
     database evaluates it against the current row, so no read-modify-write
     window exists even across processes.
  2. If no row matched, INSERT the cell. A concurrent writer may win that race;
     the unique constraint rejects our insert, we roll back and go back to 1.

Lock contention (SQLite "database is locked") is retried the same way.
"""
from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Sequence

from shapely.geometry import box
from sqlalchemy import DateTime, Float, case, literal, select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from app.config import parse_float_list, settings
from app.models.base import DepthSourceEnum
from app.models.depth_aggregate import DepthAggregate
from app.modules.marine_data import DepthReadingData, to_naive_utc

logger = logging.getLogger(__name__)

_LOCK_STRIPES = 64
_MAX_ATTEMPTS = 5
_RETRY_BASE_DELAY = 0.01  # seconds, doubled per attempt
_SNAP_EPSILON = 1e-9
_COORD_DECIMALS = 9


@dataclass(frozen=True)
class GridCellKey:
    resolution: float
    cell_lat: float
    cell_lon: float


def snap_to_grid(coord: float, resolution: float) -> float:
    """South/west edge of the grid cell containing coord."""
    return round(math.floor(coord / resolution + _SNAP_EPSILON) * resolution, _COORD_DECIMALS)


def cell_key(lat: float, lon: float, resolution: float) -> GridCellKey:
    return GridCellKey(resolution, snap_to_grid(lat, resolution), snap_to_grid(lon, resolution))


def cell_polygon_wkt(key: GridCellKey) -> str:
    return box(
        key.cell_lon, key.cell_lat, key.cell_lon + key.resolution, key.cell_lat + key.resolution
    ).wkt


def _source_increment(source: DepthSourceEnum, target: DepthSourceEnum) -> int:
    return 1 if source is target else 0


class SpatialAggregator:
    """Folds depth values into per-resolution grid-cell statistics.

    Args:
        session_factory: Zero-arg callable returning a new Session (e.g. SessionLocal).
            Each cell update runs in its own short transaction.
        resolutions: Grid sizes in degrees; defaults to settings.GRID_RESOLUTIONS.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        resolutions: Optional[Sequence[float]] = None,
        max_attempts: int = _MAX_ATTEMPTS,
    ) -> None:
        self._session_factory = session_factory
        self.resolutions = list(resolutions or parse_float_list(settings.GRID_RESOLUTIONS))
        self.max_attempts = max_attempts
        self._locks = [threading.Lock() for _ in range(_LOCK_STRIPES)]

    def _lock_for(self, key: GridCellKey) -> threading.Lock:
        return self._locks[hash(key) % _LOCK_STRIPES]

    def add_reading(self, reading: DepthReadingData, depth: Optional[float] = None) -> list[GridCellKey]:
        """Aggregate a reading at every resolution; ``depth`` overrides the raw value."""
        value = reading.depth if depth is None else depth
        return self.add_value(
            reading.lat, reading.lon, value, reading.confidence, reading.timestamp, DepthSourceEnum(reading.source),
        )

    def add_value(
        self,
        lat: float,
        lon: float,
        depth: float,
        confidence: float,
        timestamp: datetime,
        source: DepthSourceEnum,
    ) -> list[GridCellKey]:
        if depth is None or not math.isfinite(depth):
            logger.warning("Skipping non-finite depth at (%.5f, %.5f)", lat, lon)
            return []
        timestamp = to_naive_utc(timestamp)
        keys = []
        for resolution in self.resolutions:
            key = cell_key(lat, lon, resolution)
            with self._lock_for(key):
                self._upsert_with_retry(key, depth, confidence, timestamp, source)
            keys.append(key)
        return keys

    def _upsert_with_retry(
        self,
        key: GridCellKey,
        depth: float,
        confidence: float,
        timestamp: datetime,
        source: DepthSourceEnum,
    ) -> None:
        for attempt in range(1, self.max_attempts + 1):
            session = self._session_factory()
            try:
                if not self._apply_update(session, key, depth, confidence, timestamp, source):
                    self._insert_cell(session, key, depth, confidence, timestamp, source)
                session.commit()
                return
            except (IntegrityError, OperationalError) as exc:
                session.rollback()
                if attempt >= self.max_attempts:
                    logger.error("Aggregate update for %s failed after %d attempts: %s", key, attempt, exc)
                    raise
                logger.info("Aggregate conflict on %s (attempt %d/%d) — retrying", key, attempt, self.max_attempts)
                time.sleep(_RETRY_BASE_DELAY * 2 ** (attempt - 1))
            finally:
                session.close()

    @staticmethod
    def _apply_update(
        session: Session,
        key: GridCellKey,
        depth: float,
        confidence: float,
        timestamp: datetime,
        source: DepthSourceEnum,
    ) -> bool:
        agg = DepthAggregate
        x = literal(depth, Float)
        c = literal(confidence, Float)
        ts = literal(timestamp, DateTime)
        new_count = agg.reading_count + 1
        delta = x - agg.avg_depth
        raw_avg = agg.avg_depth + delta / new_count
        new_min = case((agg.min_depth > x, x), else_=agg.min_depth)
        new_max = case((agg.max_depth < x, x), else_=agg.max_depth)
        # Floating-point drift must never push the mean outside [min, max]
        new_avg = case((raw_avg < new_min, new_min), (raw_avg > new_max, new_max), else_=raw_avg)

        stmt = (
            update(agg)
            .where(
                agg.grid_resolution == key.resolution,
                agg.cell_lat == key.cell_lat,
                agg.cell_lon == key.cell_lon,
            )
            .values(
                reading_count=new_count,
                avg_depth=new_avg,
                min_depth=new_min,
                max_depth=new_max,
                depth_m2=agg.depth_m2 + delta * (x - raw_avg),
                avg_confidence=agg.avg_confidence + (c - agg.avg_confidence) / new_count,
                max_confidence=case((agg.max_confidence < c, c), else_=agg.max_confidence),
                earliest_reading_utc=case((agg.earliest_reading_utc > ts, ts), else_=agg.earliest_reading_utc),
                latest_reading_utc=case((agg.latest_reading_utc < ts, ts), else_=agg.latest_reading_utc),
                crowdsource_count=agg.crowdsource_count + _source_increment(source, DepthSourceEnum.CROWDSOURCE),
                official_count=agg.official_count + _source_increment(source, DepthSourceEnum.OFFICIAL),
                predicted_count=agg.predicted_count + _source_increment(source, DepthSourceEnum.PREDICTED),
            )
            .execution_options(synchronize_session=False)
        )
        return session.execute(stmt).rowcount > 0

    @staticmethod
    def _insert_cell(
        session: Session,
        key: GridCellKey,
        depth: float,
        confidence: float,
        timestamp: datetime,
        source: DepthSourceEnum,
    ) -> None:
        session.add(DepthAggregate(
            grid_resolution=key.resolution,
            cell_lat=key.cell_lat,
            cell_lon=key.cell_lon,
            grid_cell_wkt=cell_polygon_wkt(key),
            reading_count=1,
            avg_depth=depth,
            min_depth=depth,
            max_depth=depth,
            depth_m2=0.0,
            avg_confidence=confidence,
            max_confidence=confidence,
            earliest_reading_utc=timestamp,
            latest_reading_utc=timestamp,
            crowdsource_count=_source_increment(source, DepthSourceEnum.CROWDSOURCE),
            official_count=_source_increment(source, DepthSourceEnum.OFFICIAL),
            predicted_count=_source_increment(source, DepthSourceEnum.PREDICTED),
        ))
        session.flush()

    def choose_resolution(self, south: float, west: float, north: float, east: float, max_cells: int = 2500) -> float:
        """Finest resolution that keeps the bounds under max_cells cells."""
        for resolution in sorted(self.resolutions):
            cells = math.ceil((north - south) / resolution) * math.ceil((east - west) / resolution)
            if cells <= max_cells:
                return resolution
        return max(self.resolutions)

    @staticmethod
    def aggregates_in_bounds(
        db: Session,
        south: float,
        west: float,
        north: float,
        east: float,
        resolution: float,
        limit: int = settings.MAX_QUERY_LIMIT,
    ) -> list[DepthAggregate]:
        """Cells at ``resolution`` that intersect the bounds."""
        stmt = (
            select(DepthAggregate)
            .where(
                DepthAggregate.grid_resolution == resolution,
                DepthAggregate.cell_lat > south - resolution,
                DepthAggregate.cell_lat <= north,
                DepthAggregate.cell_lon > west - resolution,
                DepthAggregate.cell_lon <= east,
            )
            .order_by(DepthAggregate.cell_lat, DepthAggregate.cell_lon)
            .limit(limit)
        )
        return list(db.execute(stmt).scalars())
