"""Safety validation — fuse tide, environmental and quality results.

This is the single point where a raw reading becomes a ProcessedDepthReading,
the unit that alerting, navigation and caching consume.

  final_depth   = tide-corrected depth + environmental total
  safety_margin = final_depth − (vessel_draft + safety margin constant)
  confidence    = 0.5 × reading + 0.3 × tide + 0.2 × environmental

Reliability is forced to ``unreliable`` when the corrected depth is ≤ 0 or the
combined confidence is very low, whatever the quality score says. Malformed
input (NaN / non-positive raw depth) never raises: it yields an unreliable
result carrying a descriptive warning.

Also provides ``assess_area_safety`` — an inverse-distance-weighted depth
estimate over nearby readings for "is it safe to go here" queries.
"""
from __future__ import annotations

import logging
import math
import statistics
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Sequence

import httpx

from app.config import settings
from app.models.base import DepthSourceEnum, ReliabilityEnum, TideMethodEnum
from app.modules.environmental_correction import EnvironmentalCorrectionCalculator, EnvironmentalFactors
from app.modules.marine_data import (
    DepthReadingData,
    EnvironmentalSnapshot,
    TideStation,
    WeatherSource,
    to_naive_utc,
    utcnow,
)
from app.modules.quality_scorer import QualityScore, QualityScorer
from app.modules.tide_correction import TideCorrection, TideCorrectionEngine
from app.utils.geo import haversine_meters

logger = logging.getLogger(__name__)

# ── Fusion constants ────────────────────────────────────────────────────────
_CONFIDENCE_WEIGHTS = (0.5, 0.3, 0.2)  # reading, tide, environmental
_UNRELIABLE_CONFIDENCE = 0.3
_HIGH_CONFIDENCE = 0.75
_HIGH_QUALITY = 75.0
_MEDIUM_CONFIDENCE = 0.55
_MEDIUM_QUALITY = 50.0


@dataclass(frozen=True)
class ProcessedDepthReading:
    reading: DepthReadingData
    tide: TideCorrection
    environmental: EnvironmentalFactors
    quality: QualityScore
    final_depth: float
    safety_margin: float
    confidence: float
    reliability: ReliabilityEnum
    warnings: list[str] = field(default_factory=list)
    processed_at: Optional[datetime] = None

    @property
    def corrected_depth(self) -> float:
        return self.tide.corrected_depth

    def to_dict(self) -> dict[str, Any]:
        r = self.reading
        return {
            "reading_id": r.reading_id,
            "lat": r.lat,
            "lon": r.lon,
            "raw_depth": r.depth,
            "vessel_draft": r.vessel_draft,
            "source": DepthSourceEnum(r.source).value,
            "timestamp": r.timestamp.isoformat(),
            "tide_correction": {
                "method": self.tide.method.value,
                "tide_height": self.tide.tide_height,
                "corrected_depth": self.tide.corrected_depth,
                "confidence": self.tide.confidence,
                "station_id": self.tide.station_id,
                "station_distance_km": self.tide.station_distance_km,
            },
            "environmental_factors": {
                "wind": self.environmental.wind,
                "current": self.environmental.current,
                "pressure": self.environmental.pressure,
                "temperature": self.environmental.temperature,
                "salinity": self.environmental.salinity,
                "total": self.environmental.total,
                "confidence": self.environmental.confidence,
            },
            "quality": {
                "overall": self.quality.overall,
                "factors": self.quality.factors,
            },
            "final_depth": self.final_depth,
            "safety_margin": self.safety_margin,
            "confidence": self.confidence,
            "reliability": self.reliability.value,
            "warnings": list(self.warnings),
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
        }


def _is_malformed(reading: DepthReadingData) -> Optional[str]:
    depth = reading.depth
    if depth is None or not math.isfinite(depth):
        return "Malformed reading: raw depth is not a number"
    if depth <= 0:
        return f"Malformed reading: raw depth {depth} m is not positive"
    draft = reading.vessel_draft
    if draft is None or not math.isfinite(draft) or draft <= 0:
        return "Malformed reading: vessel draft is missing or not positive"
    return None


def combined_confidence(reading_confidence: float, tide_confidence: float, env_confidence: float) -> float:
    w_reading, w_tide, w_env = _CONFIDENCE_WEIGHTS
    value = w_reading * reading_confidence + w_tide * tide_confidence + w_env * env_confidence
    return round(max(0.0, min(1.0, value)), 4)


def classify_reliability(corrected_depth: float, final_depth: float, confidence: float, quality: float) -> ReliabilityEnum:
    if corrected_depth <= 0 or final_depth <= 0 or confidence < _UNRELIABLE_CONFIDENCE:
        return ReliabilityEnum.UNRELIABLE
    if confidence >= _HIGH_CONFIDENCE and quality >= _HIGH_QUALITY:
        return ReliabilityEnum.HIGH
    if confidence >= _MEDIUM_CONFIDENCE and quality >= _MEDIUM_QUALITY:
        return ReliabilityEnum.MEDIUM
    return ReliabilityEnum.LOW


class SafetyValidationEngine:
    """Runs the correction chain for a reading and fuses the results.

    Collaborators are constructor-injected; missing ones fall back to
    defaults that need no network (no tide source → estimated tide).
    """

    def __init__(
        self,
        tide_engine: Optional[TideCorrectionEngine] = None,
        environmental_calculator: Optional[EnvironmentalCorrectionCalculator] = None,
        quality_scorer: Optional[QualityScorer] = None,
        weather_source: Optional[WeatherSource] = None,
        safety_margin_constant: float = settings.SAFETY_MARGIN_CONSTANT_M,
        clock=utcnow,
    ) -> None:
        self.tide_engine = tide_engine or TideCorrectionEngine(None)
        self.environmental_calculator = environmental_calculator or EnvironmentalCorrectionCalculator()
        self.quality_scorer = quality_scorer or QualityScorer()
        self.weather_source = weather_source
        self.safety_margin_constant = safety_margin_constant
        self._clock = clock

    def _fetch_snapshot(self, reading: DepthReadingData) -> Optional[EnvironmentalSnapshot]:
        if self.weather_source is None:
            return None
        try:
            return self.weather_source.snapshot(reading.lat, reading.lon, reading.timestamp)
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Weather fetch failed for reading %s: %s", reading.reading_id, exc)
            return None

    def process(
        self,
        reading: DepthReadingData,
        snapshot: Optional[EnvironmentalSnapshot] = None,
        station: Optional[TideStation] = None,
    ) -> ProcessedDepthReading:
        """Run tide → environmental → quality → fusion for one reading."""
        now = self._clock()
        problem = _is_malformed(reading)
        if problem:
            logger.warning("Reading %s: %s", reading.reading_id, problem)
            return self._degraded(reading, problem, now)

        station = station or self.tide_engine.find_station(reading.lat, reading.lon)
        tide = self.tide_engine.correct(reading, station)
        if snapshot is None:
            snapshot = self._fetch_snapshot(reading)
        environmental = self.environmental_calculator.calculate(reading, snapshot)
        age_ms = (now - to_naive_utc(reading.timestamp)).total_seconds() * 1000
        quality = self.quality_scorer.score(reading, station, snapshot, age_ms, tide)
        return self.validate(reading, tide, environmental, quality)

    def validate(
        self,
        reading: DepthReadingData,
        tide: TideCorrection,
        environmental: EnvironmentalFactors,
        quality: QualityScore,
    ) -> ProcessedDepthReading:
        """Fuse already-computed correction outputs into a ProcessedDepthReading."""
        problem = _is_malformed(reading)
        if problem:
            return self._degraded(reading, problem, self._clock())

        final_depth = round(tide.corrected_depth + environmental.total, 4)
        safety_margin = round(final_depth - (reading.vessel_draft + self.safety_margin_constant), 4)
        confidence = combined_confidence(reading.confidence, tide.confidence, environmental.confidence)
        reliability = classify_reliability(tide.corrected_depth, final_depth, confidence, quality.overall)

        warnings = list(quality.warnings)
        if final_depth <= 0 < tide.corrected_depth:
            warnings.append(f"Negative/invalid corrected depth after environmental correction ({final_depth:.2f} m)")
        if safety_margin < 0:
            warnings.append(f"Insufficient clearance: safety margin {safety_margin:.2f} m")
        if reliability is ReliabilityEnum.UNRELIABLE:
            warnings.append("Depth data unreliable — verify with onboard sounder")

        return ProcessedDepthReading(
            reading=reading,
            tide=tide,
            environmental=environmental,
            quality=quality,
            final_depth=final_depth,
            safety_margin=safety_margin,
            confidence=confidence,
            reliability=reliability,
            warnings=warnings,
            processed_at=self._clock(),
        )

    def _degraded(self, reading: DepthReadingData, problem: str, now: datetime) -> ProcessedDepthReading:
        depth = reading.depth if reading.depth is not None else float("nan")
        draft = reading.vessel_draft if reading.vessel_draft is not None else float("nan")
        tide = TideCorrection(
            method=TideMethodEnum.ESTIMATED, tide_height=0.0, corrected_depth=depth, confidence=0.0,
        )
        environmental = EnvironmentalFactors(
            wind=0.0, current=0.0, pressure=0.0, temperature=0.0, salinity=0.0, total=0.0, confidence=0.0,
        )
        quality = QualityScore(overall=0.0, factors={}, warnings=[problem])
        return ProcessedDepthReading(
            reading=reading,
            tide=tide,
            environmental=environmental,
            quality=quality,
            final_depth=depth,
            safety_margin=depth - (draft + self.safety_margin_constant),
            confidence=0.0,
            reliability=ReliabilityEnum.UNRELIABLE,
            warnings=[problem],
            processed_at=now,
        )


# ── Area safety assessment ───────────────────────────────────────────────────

_AREA_SOURCE_WEIGHTS: dict[DepthSourceEnum, float] = {
    DepthSourceEnum.OFFICIAL: 2.0,
    DepthSourceEnum.CROWDSOURCE: 1.0,
    DepthSourceEnum.PREDICTED: 0.8,
}
_AREA_CONFIDENCE_CAPS: dict[DepthSourceEnum, float] = {
    DepthSourceEnum.OFFICIAL: 0.95,
    DepthSourceEnum.CROWDSOURCE: 0.9,
    DepthSourceEnum.PREDICTED: 0.7,
}
_AGE_DECAY_DAYS = 7.0
_AREA_RADIUS_M = 2000.0
_MIN_DATA_POINTS = 3


@dataclass(frozen=True)
class AreaSafetyAssessment:
    is_safe: bool
    estimated_depth: Optional[float]
    clearance: Optional[float]
    confidence: float
    data_points: int
    outliers_removed: int = 0
    warnings: list[str] = field(default_factory=list)


def _iqr_fences(depths: list[float]) -> tuple[float, float]:
    """IQR fences (low, high); values outside are outliers."""
    if len(depths) < 4:
        return -math.inf, math.inf
    q1, _, q3 = statistics.quantiles(depths, n=4)
    iqr = q3 - q1
    return q1 - 1.5 * iqr, q3 + 1.5 * iqr


def assess_area_safety(
    readings: Sequence[DepthReadingData],
    lat: float,
    lon: float,
    vessel_draft: float,
    now: Optional[datetime] = None,
    radius_m: float = _AREA_RADIUS_M,
    min_data_points: int = _MIN_DATA_POINTS,
    safety_margin_constant: float = settings.SAFETY_MARGIN_CONSTANT_M,
) -> AreaSafetyAssessment:
    """Estimate depth at (lat, lon) from nearby readings and judge clearance.

    Args:
        readings: Candidate readings; those beyond radius_m are ignored.
        lat, lon: Query position.
        vessel_draft: Draft in meters.
        now: Reference time for age decay (defaults to now, UTC).
        radius_m: Relevance radius.
        min_data_points: Fewer relevant readings → "Insufficient depth data".
        safety_margin_constant: Required clearance below the keel.

    Returns:
        AreaSafetyAssessment.
    """
    now = to_naive_utc(now or utcnow())
    nearby = [
        (r, haversine_meters(lat, lon, r.lat, r.lon))
        for r in readings
        if r.depth is not None and math.isfinite(r.depth) and r.depth > 0
    ]
    nearby = [(r, d) for r, d in nearby if d <= radius_m]

    if len(nearby) < min_data_points:
        return AreaSafetyAssessment(
            is_safe=False,
            estimated_depth=None,
            clearance=None,
            confidence=0.0,
            data_points=len(nearby),
            warnings=["Insufficient depth data"],
        )

    low, high = _iqr_fences([r.depth for r, _ in nearby])
    kept = [(r, d) for r, d in nearby if low <= r.depth <= high]
    removed = len(nearby) - len(kept)

    weighted_sum = 0.0
    weight_total = 0.0
    confidences: list[float] = []
    for r, distance in kept:
        source = DepthSourceEnum(r.source)
        age_days = max(0.0, (now - to_naive_utc(r.timestamp)).total_seconds() / 86_400)
        weight = (
            _AREA_SOURCE_WEIGHTS[source]
            * math.exp(-age_days / _AGE_DECAY_DAYS)
            / max(distance, 1.0) ** 2
        )
        weighted_sum += r.depth * weight
        weight_total += weight
        confidences.append(min(r.confidence, _AREA_CONFIDENCE_CAPS[source]))

    estimated = weighted_sum / weight_total if weight_total > 0 else statistics.fmean(r.depth for r, _ in kept)
    clearance = estimated - vessel_draft
    confidence = statistics.fmean(confidences) * min(1.0, len(kept) / 5)

    warnings: list[str] = []
    if clearance < 0.5 * vessel_draft:
        warnings.append("Shallow water - proceed with extreme caution")
    elif clearance < vessel_draft:
        warnings.append("Limited clearance")
    if removed:
        warnings.append(f"{removed} outlier reading(s) excluded")

    return AreaSafetyAssessment(
        is_safe=clearance >= safety_margin_constant,
        estimated_depth=round(estimated, 3),
        clearance=round(clearance, 3),
        confidence=round(confidence, 3),
        data_points=len(kept),
        outliers_removed=removed,
        warnings=warnings,
    )
