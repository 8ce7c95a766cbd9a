"""Depth reading validation.

Two layers:
  validate_submission()  — hard rejects at ingest (raises ReadingValidationError)
  assess_data_quality()  — soft checks that lower confidence and add warnings:
      GPS accuracy     >10 m warning, >20 m severe (confidence × 0.7)
      vessel speed     >2 m/s at capture (confidence × 0.9)
      duplicate        same position within 10 m and 30 s of an existing reading
      outlier          outside mean ± 2σ of readings within 100 m (needs ≥ 3)
      method           sounder 1.0, lead_line 0.95, chart 0.8, visual 0.6
"""
from __future__ import annotations

import logging
import math
import statistics
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

from app.models.base import DepthSourceEnum
from app.modules.marine_data import DepthReadingData, to_naive_utc
from app.utils.geo import haversine_meters

logger = logging.getLogger(__name__)

MAX_DEPTH_M = 11_000.0  # Challenger Deep
MAX_DRAFT_M = 50.0

_GPS_WARN_M = 10.0
_GPS_SEVERE_M = 20.0
_SPEED_WARN_MS = 2.0
_DUPLICATE_DISTANCE_M = 10.0
_DUPLICATE_SECONDS = 30.0
_OUTLIER_RADIUS_M = 100.0
_OUTLIER_SIGMA = 2.0
_OUTLIER_MIN_NEIGHBOURS = 3

METHOD_MULTIPLIERS: dict[str, float] = {
    "sounder": 1.0,
    "lead_line": 0.95,
    "chart": 0.8,
    "visual": 0.6,
}


class ReadingValidationError(ValueError):
    """Raised when a submission must be rejected outright."""


@dataclass
class DataQualityReport:
    adjusted_confidence: float
    is_duplicate: bool = False
    is_outlier: bool = False
    warnings: list[str] = field(default_factory=list)


def _finite(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def validate_submission(reading: DepthReadingData) -> None:
    """Reject readings that must never enter the pipeline.

    Raises:
        ReadingValidationError: describing every problem found.
    """
    errors: list[str] = []
    if not reading.reading_id:
        errors.append("reading id is required")
    if not _finite(reading.lat) or not -90 <= reading.lat <= 90:
        errors.append("latitude must be between -90 and 90")
    if not _finite(reading.lon) or not -180 <= reading.lon <= 180:
        errors.append("longitude must be between -180 and 180")
    if not _finite(reading.depth) or reading.depth <= 0:
        errors.append("depth must be greater than 0")
    elif reading.depth > MAX_DEPTH_M:
        errors.append(f"depth must not exceed {MAX_DEPTH_M:.0f} m")
    if not _finite(reading.vessel_draft) or reading.vessel_draft <= 0:
        errors.append("vessel draft must be greater than 0")
    elif reading.vessel_draft > MAX_DRAFT_M:
        errors.append(f"vessel draft must not exceed {MAX_DRAFT_M:.0f} m")
    if not _finite(reading.confidence) or not 0 <= reading.confidence <= 1:
        errors.append("confidence must be between 0 and 1")
    try:
        DepthSourceEnum(reading.source)
    except ValueError:
        errors.append(f"unknown source {reading.source!r}")
    if errors:
        raise ReadingValidationError("; ".join(errors))


def assess_data_quality(
    reading: DepthReadingData,
    neighbours: Sequence[DepthReadingData] = (),
    vessel_speed_ms: Optional[float] = None,
) -> DataQualityReport:
    """Soft quality checks against nearby existing readings.

    Args:
        reading: The incoming reading (already passed validate_submission).
        neighbours: Existing readings near the same position.
        vessel_speed_ms: Speed over ground at capture, if known.

    Returns:
        DataQualityReport with the confidence after all multipliers.
    """
    confidence = reading.confidence
    warnings: list[str] = []

    if reading.gps_accuracy_m is not None:
        if reading.gps_accuracy_m > _GPS_SEVERE_M:
            confidence *= 0.7
            warnings.append(f"Poor GPS accuracy ({reading.gps_accuracy_m:.0f} m)")
        elif reading.gps_accuracy_m > _GPS_WARN_M:
            confidence *= 0.9
            warnings.append(f"Reduced GPS accuracy ({reading.gps_accuracy_m:.0f} m)")

    if vessel_speed_ms is not None and vessel_speed_ms > _SPEED_WARN_MS:
        confidence *= 0.9
        warnings.append(f"Reading taken underway at {vessel_speed_ms:.1f} m/s")

    method = (reading.measurement_method or "").lower()
    if method:
        multiplier = METHOD_MULTIPLIERS.get(method)
        if multiplier is None:
            warnings.append(f"Unknown measurement method '{method}'")
        else:
            confidence *= multiplier

    at = to_naive_utc(reading.timestamp)
    is_duplicate = False
    nearby_depths: list[float] = []
    for other in neighbours:
        if other.reading_id == reading.reading_id:
            continue
        distance = haversine_meters(reading.lat, reading.lon, other.lat, other.lon)
        if (
            distance <= _DUPLICATE_DISTANCE_M
            and abs((to_naive_utc(other.timestamp) - at).total_seconds()) <= _DUPLICATE_SECONDS
        ):
            is_duplicate = True
        if distance <= _OUTLIER_RADIUS_M:
            nearby_depths.append(other.depth)
    if is_duplicate:
        warnings.append("Possible duplicate of a recent reading at the same position")

    is_outlier = False
    if len(nearby_depths) >= _OUTLIER_MIN_NEIGHBOURS:
        mean = statistics.fmean(nearby_depths)
        sigma = statistics.pstdev(nearby_depths)
        if sigma > 0 and abs(reading.depth - mean) > _OUTLIER_SIGMA * sigma:
            is_outlier = True
            confidence *= 0.5
            warnings.append(
                f"Depth {reading.depth:.1f} m deviates from nearby mean {mean:.1f} m by more than {_OUTLIER_SIGMA:.0f}σ"
            )

    if warnings:
        logger.debug("Reading %s quality warnings: %s", reading.reading_id, warnings)
    return DataQualityReport(
        adjusted_confidence=round(max(0.0, min(1.0, confidence)), 4),
        is_duplicate=is_duplicate,
        is_outlier=is_outlier,
        warnings=warnings,
    )
