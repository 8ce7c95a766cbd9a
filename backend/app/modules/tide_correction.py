"""Tide correction — normalize a raw sounding to chart datum.

Fallback chain (first applicable wins):
  1. observed      — a water-level observation within the observation window
                     of the reading (default ±30 min).
  2. interpolated  — two predictions bracket the reading time; the tide height
                     is linearly interpolated by elapsed-time fraction.
  3. estimated     — nothing usable; tide height 0 with low confidence.

corrected_depth = raw_depth − tide_height, always. A corrected depth ≤ 0 is
kept as-is so downstream stages can flag it; it is never clamped.

Confidence decays linearly with station distance from 5 km to 30 km, where it
reaches a floor multiplier of 0.5. Interpolated confidence also decays with
the time gap between the bracketing predictions.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Sequence

import httpx

from app.config import settings
from app.models.base import TideMethodEnum
from app.modules.marine_data import (
    DepthReadingData,
    TidePrediction,
    TideSource,
    TideStation,
    WaterLevelObservation,
    to_naive_utc,
)
from app.utils.geo import haversine_km

logger = logging.getLogger(__name__)

# ── Confidence constants ────────────────────────────────────────────────────
_OBSERVED_VERIFIED_CONFIDENCE = 0.95
_OBSERVED_PRELIMINARY_CONFIDENCE = 0.85
_INTERPOLATED_BASE_CONFIDENCE = 0.8
_INTERPOLATED_MIN_CONFIDENCE = 0.65
_INTERPOLATED_DECAY_PER_HOUR = 0.02
_ESTIMATED_CONFIDENCE = 0.3

_DISTANCE_FULL_CONFIDENCE_KM = 5.0
_DISTANCE_FLOOR_KM = 30.0
_DISTANCE_FLOOR_FACTOR = 0.5

# Predictions fetched either side of the reading time
_PREDICTION_WINDOW = timedelta(hours=6)


@dataclass(frozen=True)
class TideCorrection:
    method: TideMethodEnum
    tide_height: float
    corrected_depth: float
    confidence: float
    station_id: Optional[str] = None
    station_distance_km: Optional[float] = None
    data_timestamp: Optional[datetime] = None


def distance_confidence_factor(distance_km: Optional[float]) -> float:
    """Multiplier in [0.5, 1.0], non-increasing with station distance."""
    if distance_km is None:
        return _DISTANCE_FLOOR_FACTOR
    if distance_km <= _DISTANCE_FULL_CONFIDENCE_KM:
        return 1.0
    if distance_km >= _DISTANCE_FLOOR_KM:
        return _DISTANCE_FLOOR_FACTOR
    span = _DISTANCE_FLOOR_KM - _DISTANCE_FULL_CONFIDENCE_KM
    fraction = (distance_km - _DISTANCE_FULL_CONFIDENCE_KM) / span
    return 1.0 - fraction * (1.0 - _DISTANCE_FLOOR_FACTOR)


def _closest_observation(
    observations: Sequence[WaterLevelObservation],
    at: datetime,
    window: timedelta,
) -> Optional[WaterLevelObservation]:
    best: Optional[WaterLevelObservation] = None
    best_gap: Optional[timedelta] = None
    for obs in observations:
        gap = abs(to_naive_utc(obs.timestamp) - at)
        if gap <= window and (best_gap is None or gap < best_gap):
            best, best_gap = obs, gap
    return best


def _bracketing_pair(
    predictions: Sequence[TidePrediction],
    at: datetime,
) -> Optional[tuple[TidePrediction, TidePrediction]]:
    ordered = sorted(predictions, key=lambda p: to_naive_utc(p.timestamp))
    for before, after in zip(ordered, ordered[1:]):
        t0, t1 = to_naive_utc(before.timestamp), to_naive_utc(after.timestamp)
        if t0 <= at <= t1:
            return before, after
    return None


def interpolate_tide_height(before: TidePrediction, after: TidePrediction, at: datetime) -> float:
    """Linear interpolation of tide height by elapsed-time fraction."""
    t0, t1 = to_naive_utc(before.timestamp), to_naive_utc(after.timestamp)
    total = (t1 - t0).total_seconds()
    if total <= 0:
        return before.height
    fraction = (at - t0).total_seconds() / total
    return before.height + (after.height - before.height) * fraction


def correct_for_tide(
    reading: DepthReadingData,
    station: Optional[TideStation],
    predictions: Sequence[TidePrediction] = (),
    observations: Sequence[WaterLevelObservation] = (),
    observation_window: timedelta = timedelta(minutes=settings.TIDE_OBSERVATION_WINDOW_MINUTES),
) -> TideCorrection:
    """Apply the observed → interpolated → estimated fallback chain.

    Args:
        reading: The raw depth reading.
        station: Nearest tide station, or None when none is in range.
        predictions: Predictions around the reading time (any order).
        observations: Observed water levels around the reading time.
        observation_window: Max time offset for an observation to count.

    Returns:
        TideCorrection with method, tide height, corrected depth and confidence.
    """
    at = to_naive_utc(reading.timestamp)
    distance_km = haversine_km(reading.lat, reading.lon, station.lat, station.lon) if station else None
    factor = distance_confidence_factor(distance_km)
    station_id = station.station_id if station else None

    if station is not None:
        obs = _closest_observation(observations, at, observation_window)
        if obs is not None:
            base = _OBSERVED_VERIFIED_CONFIDENCE if obs.verified else _OBSERVED_PRELIMINARY_CONFIDENCE
            return TideCorrection(
                method=TideMethodEnum.OBSERVED,
                tide_height=obs.height,
                corrected_depth=reading.depth - obs.height,
                confidence=round(base * factor, 4),
                station_id=station_id,
                station_distance_km=distance_km,
                data_timestamp=to_naive_utc(obs.timestamp),
            )

        pair = _bracketing_pair(predictions, at)
        if pair is not None:
            before, after = pair
            height = interpolate_tide_height(before, after, at)
            gap_h = (to_naive_utc(after.timestamp) - to_naive_utc(before.timestamp)).total_seconds() / 3600
            base = max(
                _INTERPOLATED_MIN_CONFIDENCE,
                _INTERPOLATED_BASE_CONFIDENCE - _INTERPOLATED_DECAY_PER_HOUR * gap_h,
            )
            return TideCorrection(
                method=TideMethodEnum.INTERPOLATED,
                tide_height=height,
                corrected_depth=reading.depth - height,
                confidence=round(base * factor, 4),
                station_id=station_id,
                station_distance_km=distance_km,
                data_timestamp=to_naive_utc(before.timestamp),
            )

    return TideCorrection(
        method=TideMethodEnum.ESTIMATED,
        tide_height=0.0,
        corrected_depth=reading.depth,
        confidence=_ESTIMATED_CONFIDENCE,
        station_id=station_id,
        station_distance_km=distance_km,
    )


class TideCorrectionEngine:
    """Fetches tide data through a TideSource and applies the fallback chain.

    Source failures (timeouts, 5xx after retries, malformed payloads) are
    treated as missing data, so the engine always returns a correction.
    """

    def __init__(
        self,
        tide_source: Optional[TideSource],
        observation_window: timedelta = timedelta(minutes=settings.TIDE_OBSERVATION_WINDOW_MINUTES),
        max_station_distance_km: float = settings.TIDE_MAX_STATION_DISTANCE_KM,
    ) -> None:
        self.tide_source = tide_source
        self.observation_window = observation_window
        self.max_station_distance_km = max_station_distance_km

    def find_station(self, lat: float, lon: float) -> Optional[TideStation]:
        if self.tide_source is None:
            return None
        try:
            station = self.tide_source.nearest_station(lat, lon)
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Tide station lookup failed near (%.4f, %.4f): %s", lat, lon, exc)
            return None
        if station is None:
            return None
        if haversine_km(lat, lon, station.lat, station.lon) > self.max_station_distance_km:
            logger.debug("Nearest tide station %s beyond %.0f km", station.station_id, self.max_station_distance_km)
            return None
        return station

    def correct(self, reading: DepthReadingData, station: Optional[TideStation] = None) -> TideCorrection:
        station = station or self.find_station(reading.lat, reading.lon)
        if station is None or self.tide_source is None:
            return correct_for_tide(reading, None, observation_window=self.observation_window)

        at = to_naive_utc(reading.timestamp)
        observations: list[WaterLevelObservation] = []
        predictions: list[TidePrediction] = []
        try:
            observations = self.tide_source.water_levels(
                station.station_id, at - self.observation_window, at + self.observation_window
            )
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Water level fetch failed for station %s: %s", station.station_id, exc)

        if not _closest_observation(observations, at, self.observation_window):
            try:
                predictions = self.tide_source.predictions(
                    station.station_id, at - _PREDICTION_WINDOW, at + _PREDICTION_WINDOW
                )
            except (httpx.HTTPError, ValueError) as exc:
                logger.warning("Tide prediction fetch failed for station %s: %s", station.station_id, exc)

        correction = correct_for_tide(
            reading, station, predictions, observations, observation_window=self.observation_window
        )
        if correction.method is TideMethodEnum.ESTIMATED:
            logger.info("No usable tide data for reading %s — using estimated correction", reading.reading_id)
        return correction
