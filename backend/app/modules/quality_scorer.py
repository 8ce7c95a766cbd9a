"""Quality scoring for corrected depth readings.

Four equally weighted 0–100 sub-scores:
  data_age              — 100 up to 1 h old, linear decay to 5 at 24 h, 5 beyond
  station_distance      — 100 within 2 km, linear decay to 10 at 50 km; 20 with no station
  environmental         — 100 × sea-state stability (wind, waves, visibility)
  source_reliability    — official 100 > crowdsource 80 > predicted 60

Warnings are plain strings meant to be shown to the mariner as-is.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Optional

from app.models.base import DepthSourceEnum, TideMethodEnum
from app.modules.environmental_correction import KNOTS_TO_MS
from app.modules.marine_data import DepthReadingData, EnvironmentalSnapshot, TideStation
from app.modules.tide_correction import TideCorrection
from app.utils.geo import haversine_km

logger = logging.getLogger(__name__)

_WEIGHTS: dict[str, float] = {
    "data_age": 0.25,
    "station_distance": 0.25,
    "environmental": 0.25,
    "source_reliability": 0.25,
}

_SOURCE_SCORES: dict[DepthSourceEnum, float] = {
    DepthSourceEnum.OFFICIAL: 100.0,
    DepthSourceEnum.CROWDSOURCE: 80.0,
    DepthSourceEnum.PREDICTED: 60.0,
}

_FRESH_MS = 3_600_000            # 1 hour
_STALE_MS = 24 * 3_600_000       # 24 hours
_AGE_WARNING_MS = 6 * 3_600_000  # warn past 6 hours
_MIN_AGE_SCORE = 5.0

_STATION_FULL_KM = 2.0
_STATION_ZERO_KM = 50.0
_STATION_WARNING_KM = 20.0
_MIN_STATION_SCORE = 10.0
_NO_STATION_SCORE = 20.0

_CONFIDENCE_FLOOR = 0.7
_LOW_SUBSCORE = 40.0


@dataclass(frozen=True)
class QualityScore:
    overall: float
    factors: dict[str, float]
    warnings: list[str] = field(default_factory=list)


def age_score(age_ms: float) -> float:
    if age_ms <= _FRESH_MS:
        return 100.0
    if age_ms >= _STALE_MS:
        return _MIN_AGE_SCORE
    fraction = (age_ms - _FRESH_MS) / (_STALE_MS - _FRESH_MS)
    return 100.0 - fraction * (100.0 - _MIN_AGE_SCORE)


def station_distance_score(distance_km: Optional[float]) -> float:
    if distance_km is None:
        return _NO_STATION_SCORE
    if distance_km <= _STATION_FULL_KM:
        return 100.0
    if distance_km >= _STATION_ZERO_KM:
        return _MIN_STATION_SCORE
    fraction = (distance_km - _STATION_FULL_KM) / (_STATION_ZERO_KM - _STATION_FULL_KM)
    return 100.0 - fraction * (100.0 - _MIN_STATION_SCORE)


def sea_state_stability(snapshot: Optional[EnvironmentalSnapshot]) -> float:
    """Multiplicative stability in [0.1, 1.0]; calm or unknown conditions → 1.0."""
    if snapshot is None:
        return 1.0
    stability = 1.0
    if snapshot.wind_speed_kn is not None:
        wind_ms = snapshot.wind_speed_kn * KNOTS_TO_MS
        if wind_ms > 15:
            stability *= 0.5
        elif wind_ms > 10:
            stability *= 0.7
        elif wind_ms > 5:
            stability *= 0.9
    if snapshot.wave_height_m is not None:
        if snapshot.wave_height_m > 3:
            stability *= 0.4
        elif snapshot.wave_height_m > 2:
            stability *= 0.6
        elif snapshot.wave_height_m > 1:
            stability *= 0.8
    if snapshot.visibility_nm is not None:
        if snapshot.visibility_nm < 0.5:
            stability *= 0.5
        elif snapshot.visibility_nm < 1:
            stability *= 0.7
    return max(0.1, stability)


def source_reliability_score(source: DepthSourceEnum) -> float:
    return _SOURCE_SCORES.get(DepthSourceEnum(source), _SOURCE_SCORES[DepthSourceEnum.PREDICTED])


class QualityScorer:
    """Combines age, station distance, sea state and source into a QualityScore."""

    def __init__(self, weights: Optional[dict[str, float]] = None) -> None:
        self.weights = dict(weights or _WEIGHTS)

    def score(
        self,
        reading: DepthReadingData,
        station: Optional[TideStation],
        snapshot: Optional[EnvironmentalSnapshot],
        age_ms: float,
        tide: Optional[TideCorrection] = None,
    ) -> QualityScore:
        """Score a reading.

        Args:
            reading: The raw reading.
            station: Tide station used for correction (None if none in range).
            snapshot: Environmental snapshot, possibly partial or None.
            age_ms: Milliseconds since the reading was captured.
            tide: Tide correction result, used for corrected-depth warnings.

        Returns:
            QualityScore with overall 0–100, named sub-scores, and warnings.
        """
        distance_km = None
        if station is not None:
            distance_km = haversine_km(reading.lat, reading.lon, station.lat, station.lon)
        age_ms = max(0.0, age_ms)

        factors = {
            "data_age": round(age_score(age_ms), 2),
            "station_distance": round(station_distance_score(distance_km), 2),
            "environmental": round(100.0 * sea_state_stability(snapshot), 2),
            "source_reliability": source_reliability_score(reading.source),
        }
        total_weight = sum(self.weights.values()) or 1.0
        overall = sum(factors[name] * self.weights.get(name, 0.0) for name in factors) / total_weight

        warnings: list[str] = []
        if reading.confidence < _CONFIDENCE_FLOOR:
            warnings.append(f"Low confidence reading ({reading.confidence:.2f})")
        if age_ms > _AGE_WARNING_MS:
            warnings.append(f"Stale data: reading is {age_ms / 3_600_000:.1f} hours old")
        if tide is not None and not math.isnan(tide.corrected_depth) and tide.corrected_depth <= 0:
            warnings.append(f"Negative/invalid corrected depth ({tide.corrected_depth:.2f} m)")
        if tide is not None and tide.method is TideMethodEnum.ESTIMATED:
            warnings.append("No tide data available — depth not tide-corrected")
        if distance_km is not None and distance_km > _STATION_WARNING_KM:
            warnings.append(f"Tide station is {distance_km:.1f} km away")
        if snapshot is not None:
            if snapshot.wind_speed_kn is not None and snapshot.wind_speed_kn * KNOTS_TO_MS > 10:
                warnings.append("High wind may affect depth accuracy")
            if snapshot.wave_height_m is not None and snapshot.wave_height_m > 2:
                warnings.append("Significant wave height may affect depth accuracy")
        if DepthSourceEnum(reading.source) is DepthSourceEnum.PREDICTED:
            warnings.append("Depth is model-predicted, not measured")
        for name, value in factors.items():
            if value < _LOW_SUBSCORE:
                warnings.append(f"Low {name.replace('_', ' ')} score ({value:.0f})")

        return QualityScore(overall=round(overall, 2), factors=factors, warnings=warnings)
