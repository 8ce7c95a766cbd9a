"""Depth data service — ingest and query of crowd-sourced soundings.

submit_depth_reading      validate → store (idempotent by id) → aggregate →
                          process → raise shallow-water alert → invalidate cache
get_depth_data_for_area   readings + grid aggregates + shallow warnings for a
                          bounding box, cached for AREA_CACHE_TTL_SECONDS
get_nearest_depth_readings  bounding-box prefilter, haversine ordering, 90 days
cleanup_old_depth_data    drop stale low-confidence crowd data
"""
from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import settings
from app.models.base import DepthSourceEnum
from app.models.depth_aggregate import DepthAggregate
from app.models.depth_reading import DepthReading
from app.modules.alert_hierarchy import SafetyAlertHierarchy, condition_from_processed_reading
from app.modules.marine_data import DepthReadingData, to_naive_utc, utcnow
from app.modules.reading_validator import ReadingValidationError, assess_data_quality, validate_submission
from app.modules.safety_validation import ProcessedDepthReading, SafetyValidationEngine
from app.modules.spatial_aggregator import SpatialAggregator
from app.utils.cache import TTLCache
from app.utils.geo import bbox_around, haversine_meters

logger = logging.getLogger(__name__)

NEAREST_MAX_AGE_DAYS = 90
DEFAULT_AREA_MAX_AGE_HOURS = 24 * 30
AREA_READING_LIMIT = 1000
MIN_AGGREGATE_READINGS = 3
_NEIGHBOUR_RADIUS_M = 100.0
_FRESH_DAYS = 7
HIGH_CONFIDENCE = 0.8
LOW_CONFIDENCE = 0.5

# Minimum reading confidence per named filter level; "verified" means official
CONFIDENCE_LEVELS: dict[str, float] = {"low": 0.0, "medium": LOW_CONFIDENCE, "high": HIGH_CONFIDENCE, "verified": 0.0}


def safety_severity(depth: float, vessel_draft: float, safety_margin: float = settings.SAFETY_MARGIN_CONSTANT_M) -> int:
    """1 (note only) … 5 (grounding risk) from the clearance under the keel."""
    clearance = depth - vessel_draft
    if clearance <= 0:
        return 5
    if clearance < safety_margin:
        return 4
    if clearance < safety_margin * 2:
        return 3
    if clearance < safety_margin * 3:
        return 2
    return 1


def data_quality_score(readings: list[DepthReading], now: Optional[datetime] = None) -> int:
    """0–100: verified share × 0.4 + high-confidence share × 0.4 + fresh share × 0.2."""
    if not readings:
        return 0
    now = now or utcnow()
    n = len(readings)
    verified = sum(1 for r in readings if r.source == DepthSourceEnum.OFFICIAL.value)
    high_conf = sum(1 for r in readings if r.confidence >= HIGH_CONFIDENCE)
    fresh = sum(1 for r in readings if r.timestamp_utc > now - timedelta(days=_FRESH_DAYS))
    return round((verified / n * 0.4 + high_conf / n * 0.4 + fresh / n * 0.2) * 100)


def _reading_dict(r: DepthReading) -> dict[str, Any]:
    return {
        "id": r.reading_id,
        "lat": r.lat,
        "lon": r.lon,
        "depth": r.depth,
        "vessel_draft": r.vessel_draft,
        "confidence": r.confidence,
        "source": r.source,
        "timestamp": r.timestamp_utc.isoformat() if r.timestamp_utc else None,
        "measurement_method": r.measurement_method,
    }


def _aggregate_dict(a: DepthAggregate) -> dict[str, Any]:
    half = a.grid_resolution / 2
    return {
        "center_lat": round(a.cell_lat + half, 9),
        "center_lon": round(a.cell_lon + half, 9),
        "grid_size": a.grid_resolution,
        "reading_count": a.reading_count,
        "avg_depth": a.avg_depth,
        "min_depth": a.min_depth,
        "max_depth": a.max_depth,
        "stddev_depth": a.depth_stddev,
        "avg_confidence": a.avg_confidence,
        "latest_reading": a.latest_reading_utc.isoformat() if a.latest_reading_utc else None,
    }


class DepthService:
    """Database-backed depth operations.

    Args:
        session_factory: Used by the aggregator for its own short transactions.
        engine: Correction pipeline for newly submitted readings.
        hierarchy: Optional; receives shallow-water conditions on submit.
        area_cache: TTL cache for area queries (cleared on every submit).
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        engine: Optional[SafetyValidationEngine] = None,
        hierarchy: Optional[SafetyAlertHierarchy] = None,
        aggregator: Optional[SpatialAggregator] = None,
        area_cache: Optional[TTLCache] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.session_factory = session_factory
        self.engine = engine or SafetyValidationEngine()
        self.hierarchy = hierarchy
        self.aggregator = aggregator or SpatialAggregator(session_factory)
        self.area_cache = area_cache or TTLCache(settings.AREA_CACHE_TTL_SECONDS)
        self._clock = clock

    # ── Ingest ───────────────────────────────────────────────────────────────

    def _neighbours(self, db: Session, reading: DepthReadingData) -> list[DepthReadingData]:
        south, west, north, east = bbox_around(reading.lat, reading.lon, _NEIGHBOUR_RADIUS_M)
        rows = db.execute(
            select(DepthReading).where(
                DepthReading.lat.between(south, north),
                DepthReading.lon.between(west, east),
                DepthReading.timestamp_utc > self._clock() - timedelta(days=NEAREST_MAX_AGE_DAYS),
            ).limit(AREA_READING_LIMIT)
        ).scalars()
        return [DepthReadingData.from_model(r) for r in rows]

    def submit_depth_reading(self, db: Session, reading: DepthReadingData) -> dict[str, Any]:
        """Store a reading and feed it through aggregation and alerting.

        Resubmitting an id already stored returns the original submission time
        without storing or counting it again. The one exception is a reading
        whose aggregate update failed earlier: the resubmission re-applies it.

        Raises:
            ReadingValidationError: the reading is rejected outright.
        """
        validate_submission(reading)
        existing = db.get(DepthReading, reading.reading_id)
        if existing is not None:
            return self._resubmitted(db, existing)

        quality = assess_data_quality(reading, self._neighbours(db, reading))
        reading = replace(reading, confidence=round(quality.adjusted_confidence, 4))
        now = self._clock()
        row = DepthReading(
            reading_id=reading.reading_id,
            lat=reading.lat,
            lon=reading.lon,
            depth=reading.depth,
            vessel_draft=reading.vessel_draft,
            confidence=reading.confidence,
            source=DepthSourceEnum(reading.source).value,
            timestamp_utc=to_naive_utc(reading.timestamp),
            gps_accuracy_m=reading.gps_accuracy_m,
            measurement_method=reading.measurement_method,
            notes=reading.notes,
            created_at=now,
        )
        db.add(row)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            existing = db.get(DepthReading, reading.reading_id)
            if existing is None:
                raise
            logger.info("Reading %s stored concurrently; treating as duplicate", reading.reading_id)
            return {"id": existing.reading_id, "submitted_at": existing.created_at, "duplicate": True}

        self._aggregate(db, row, reading)
        processed = self.engine.process(reading)
        alert_id = None
        if self.hierarchy is not None:
            condition = condition_from_processed_reading(processed)
            if condition is not None:
                alert_id = self.hierarchy.raise_alert(condition).alert_id
        self.area_cache.invalidate()
        logger.info(
            "Stored depth reading %s (%.1f m at %.5f, %.5f, reliability %s)",
            reading.reading_id, reading.depth, reading.lat, reading.lon, processed.reliability.value,
        )
        return {
            "id": reading.reading_id,
            "submitted_at": now,
            "duplicate": False,
            "confidence": reading.confidence,
            "quality_warnings": quality.warnings,
            "reliability": processed.reliability.value,
            "alert_id": alert_id,
        }

    def _aggregate(self, db: Session, row: DepthReading, reading: DepthReadingData) -> None:
        self.aggregator.add_reading(reading)
        row.aggregated = True
        db.commit()

    def _resubmitted(self, db: Session, existing: DepthReading) -> dict[str, Any]:
        if existing.aggregated:
            logger.info("Reading %s already stored; ignoring resubmission", existing.reading_id)
        else:
            logger.warning("Reading %s stored but never aggregated; re-applying", existing.reading_id)
            self._aggregate(db, existing, DepthReadingData.from_model(existing))
            self.area_cache.invalidate()
        return {"id": existing.reading_id, "submitted_at": existing.created_at, "duplicate": True}

    def process_reading(self, reading: DepthReadingData) -> ProcessedDepthReading:
        """Run the correction pipeline without storing anything."""
        validate_submission(reading)
        return self.engine.process(reading)

    # ── Queries ──────────────────────────────────────────────────────────────

    def get_depth_data_for_area(
        self,
        db: Session,
        south: float,
        west: float,
        north: float,
        east: float,
        vessel_draft: Optional[float] = None,
        confidence_level: Optional[str] = None,
        max_age_hours: float = DEFAULT_AREA_MAX_AGE_HOURS,
    ) -> dict[str, Any]:
        """Readings, aggregates and shallow-water warnings inside the bounds.

        Returns:
            {"readings", "aggregated_data", "safety_warnings", "data_quality_score"}
        """
        errors = []
        if north <= south:
            errors.append("north must be greater than south")
        if not (-90 <= south <= 90 and -90 <= north <= 90):
            errors.append("latitude bounds must be within [-90, 90]")
        if not (-180 <= west <= 180 and -180 <= east <= 180):
            errors.append("longitude bounds must be within [-180, 180]")
        if vessel_draft is not None and vessel_draft <= 0:
            errors.append("vessel draft must be positive")
        if confidence_level is not None and confidence_level not in CONFIDENCE_LEVELS:
            errors.append(f"confidence level must be one of {', '.join(CONFIDENCE_LEVELS)}")
        if errors:
            raise ReadingValidationError("; ".join(errors))

        key = (round(south, 6), round(west, 6), round(north, 6), round(east, 6), vessel_draft, confidence_level, max_age_hours)
        return self.area_cache.get_or_set(
            key,
            lambda: self._query_area(db, south, west, north, east, vessel_draft, confidence_level, max_age_hours),
        )

    def _query_area(
        self,
        db: Session,
        south: float,
        west: float,
        north: float,
        east: float,
        vessel_draft: Optional[float],
        confidence_level: Optional[str],
        max_age_hours: float,
    ) -> dict[str, Any]:
        now = self._clock()
        stmt = select(DepthReading).where(
            DepthReading.lat.between(south, north),
            DepthReading.lon.between(west, east),
            DepthReading.timestamp_utc > now - timedelta(hours=max_age_hours),
        )
        if confidence_level == "verified":
            stmt = stmt.where(DepthReading.source == DepthSourceEnum.OFFICIAL.value)
        elif confidence_level is not None:
            stmt = stmt.where(DepthReading.confidence >= CONFIDENCE_LEVELS[confidence_level])
        readings = list(db.execute(stmt.order_by(DepthReading.timestamp_utc.desc()).limit(AREA_READING_LIMIT)).scalars())

        resolution = self.aggregator.choose_resolution(south, west, north, east)
        aggregates = [
            a for a in SpatialAggregator.aggregates_in_bounds(db, south, west, north, east, resolution)
            if a.reading_count >= MIN_AGGREGATE_READINGS
        ]

        warnings = []
        if vessel_draft is not None:
            limit = vessel_draft + self.engine.safety_margin_constant
            for r in readings:
                if r.depth < limit:
                    warnings.append({
                        "id": f"safety_{r.reading_id}",
                        "alert_type": "shallow_water",
                        "severity": safety_severity(r.depth, vessel_draft, self.engine.safety_margin_constant),
                        "lat": r.lat,
                        "lon": r.lon,
                        "message": f"Shallow water detected: {r.depth:.1f} m depth (vessel draft: {vessel_draft:.1f} m)",
                        "recommended_action": "Reduce speed and navigate with extreme caution. Verify with official charts.",
                    })
            warnings.sort(key=lambda w: -w["severity"])

        logger.debug("Area query: %d readings, %d cells at %.4f°", len(readings), len(aggregates), resolution)
        return {
            "readings": [_reading_dict(r) for r in readings],
            "aggregated_data": [_aggregate_dict(a) for a in aggregates],
            "safety_warnings": warnings,
            "data_quality_score": data_quality_score(readings, now),
        }

    def nearby_readings(
        self,
        db: Session,
        lat: float,
        lon: float,
        radius_m: float = 1000.0,
        max_results: int = 10,
    ) -> list[tuple[DepthReadingData, float]]:
        """(reading, distance_m) within radius_m, nearest first, newer than 90 days."""
        south, west, north, east = bbox_around(lat, lon, radius_m)
        rows = db.execute(
            select(DepthReading).where(
                DepthReading.lat.between(south, north),
                DepthReading.lon.between(west, east),
                DepthReading.timestamp_utc > self._clock() - timedelta(days=NEAREST_MAX_AGE_DAYS),
            )
        ).scalars()
        hits = []
        for r in rows:
            distance = haversine_meters(lat, lon, r.lat, r.lon)
            if distance <= radius_m:
                hits.append((DepthReadingData.from_model(r), distance))
        hits.sort(key=lambda h: h[1])
        return hits[:max_results]

    def get_nearest_depth_readings(
        self,
        db: Session,
        lat: float,
        lon: float,
        radius_m: float = 1000.0,
        max_results: int = 10,
    ) -> list[dict[str, Any]]:
        if not (-90 <= lat <= 90 and -180 <= lon <= 180):
            raise ReadingValidationError("location out of range")
        if radius_m <= 0 or max_results <= 0:
            raise ReadingValidationError("radius and max results must be positive")
        results = []
        for reading, distance in self.nearby_readings(db, lat, lon, radius_m, min(max_results, settings.MAX_QUERY_LIMIT)):
            results.append({
                "id": reading.reading_id,
                "lat": reading.lat,
                "lon": reading.lon,
                "depth": reading.depth,
                "vessel_draft": reading.vessel_draft,
                "confidence": reading.confidence,
                "source": DepthSourceEnum(reading.source).value,
                "timestamp": reading.timestamp.isoformat(),
                "distance_m": round(distance, 1),
            })
        return results

    def depth_provider(self) -> Callable[[float, float, float], list[DepthReadingData]]:
        """Adapter for the monitoring service: opens its own session per call."""
        def _provide(lat: float, lon: float, radius_m: float) -> list[DepthReadingData]:
            db = self.session_factory()
            try:
                return [r for r, _ in self.nearby_readings(db, lat, lon, radius_m, settings.MAX_QUERY_LIMIT)]
            finally:
                db.close()
        return _provide

    # ── Maintenance ──────────────────────────────────────────────────────────

    def cleanup_old_depth_data(self, db: Session, days: int = 365) -> dict[str, int]:
        """Delete stale low-confidence crowd readings and stale non-crowd aggregates."""
        if days <= 0:
            raise ValueError("days must be positive")
        cutoff = self._clock() - timedelta(days=days)
        readings = db.execute(
            delete(DepthReading).where(
                DepthReading.timestamp_utc < cutoff,
                DepthReading.source == DepthSourceEnum.CROWDSOURCE.value,
                DepthReading.confidence < LOW_CONFIDENCE,
            )
        ).rowcount
        aggregates = db.execute(
            delete(DepthAggregate).where(
                DepthAggregate.latest_reading_utc < cutoff,
                DepthAggregate.crowdsource_count == 0,
            )
        ).rowcount
        db.commit()
        self.area_cache.invalidate()
        logger.info("Cleanup older than %s: %d readings, %d aggregates removed", cutoff.date(), readings, aggregates)
        return {"readings_deleted": readings, "aggregates_deleted": aggregates}


def build_depth_service(session_factory: Callable[[], Session], online: bool = True) -> DepthService:
    """Production wiring: NOAA tides, Open-Meteo weather, alert hierarchy with
    the emergency protocol manager as its broadcast sink.

    ``online=False`` skips both network sources; tide correction then falls
    back to the estimated method and environmental factors to neutral.
    """
    from app.modules.emergency_protocol import EmergencyProtocolManager
    from app.modules.tide_client import NoaaTideClient
    from app.modules.tide_correction import TideCorrectionEngine
    from app.modules.weather_client import OpenMeteoWeatherClient

    tide_source = NoaaTideClient() if online else None
    weather_source = OpenMeteoWeatherClient() if online else None
    engine = SafetyValidationEngine(
        tide_engine=TideCorrectionEngine(tide_source),
        weather_source=weather_source,
    )
    emergency = EmergencyProtocolManager(session_factory=session_factory)
    hierarchy = SafetyAlertHierarchy(broadcast_sink=emergency)
    return DepthService(session_factory, engine=engine, hierarchy=hierarchy)
