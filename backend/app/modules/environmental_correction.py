"""Environmental correction terms for a depth reading.

Five independent additive terms (meters):
  wind         — 0 below 5 m/s, then −0.05 / −0.10 / −0.20 (set-down makes water shallower)
  current      — 0 below 0.5 kn, then −0.02 / −0.05 / −0.10; falls back to a
                 wave-height proxy when no current speed is reported
  pressure     — (1013.25 − p) × 0.01 (inverse barometer: low pressure raises water)
  temperature  — (t − 15) × 0.001 (cold water reads shallower)
  salinity     — −0.02 within 5 km of a known estuary/coastal reference point,
                 −0.01 within 20 km, otherwise 0

Missing snapshot fields contribute 0 and never reduce confidence.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from app.modules.marine_data import DepthReadingData, EnvironmentalSnapshot
from app.utils.geo import haversine_km

logger = logging.getLogger(__name__)

KNOTS_TO_MS = 0.514444
STANDARD_PRESSURE_HPA = 1013.25
REFERENCE_TEMPERATURE_C = 15.0

# Wind bands (m/s) → correction (m)
_WIND_BANDS: list[tuple[float, float]] = [(5.0, 0.0), (10.0, -0.05), (15.0, -0.1)]
_WIND_MAX_CORRECTION = -0.2

# Current bands (knots) → correction (m)
_CURRENT_BANDS: list[tuple[float, float]] = [(0.5, 0.0), (1.0, -0.02), (2.0, -0.05)]
_CURRENT_MAX_CORRECTION = -0.1
# Rough current proxy when only wave height is known (kn per meter of wave)
_CURRENT_WAVE_PROXY = 0.3

_PRESSURE_FACTOR = 0.01
_TEMPERATURE_FACTOR = 0.001

# Estuaries and harbours where fresh-water mixing lowers salinity
_LOW_SALINITY_POINTS: list[tuple[str, float, float]] = [
    ("San Francisco Bay", 37.8080, -122.4660),
    ("New York Harbor", 40.7000, -74.0150),
    ("Puget Sound", 47.6020, -122.3390),
    ("Chesapeake Bay", 36.9900, -76.0000),
    ("Columbia River", 46.2500, -124.0500),
    ("Key West", 24.5557, -81.8081),
]
_SALINITY_NEAR_KM = 5.0
_SALINITY_FAR_KM = 20.0

_CONFIDENCE_FLOOR = 0.3


@dataclass(frozen=True)
class EnvironmentalFactors:
    wind: float
    current: float
    pressure: float
    temperature: float
    salinity: float
    total: float
    confidence: float


def _banded(value: float, bands: list[tuple[float, float]], beyond: float) -> float:
    for upper, correction in bands:
        if value < upper:
            return correction
    return beyond


def wind_correction(wind_speed_kn: Optional[float]) -> float:
    if wind_speed_kn is None:
        return 0.0
    return _banded(wind_speed_kn * KNOTS_TO_MS, _WIND_BANDS, _WIND_MAX_CORRECTION)


def current_correction(snapshot: EnvironmentalSnapshot) -> float:
    speed = snapshot.current_speed_kn
    if speed is None and snapshot.wave_height_m is not None:
        speed = snapshot.wave_height_m * _CURRENT_WAVE_PROXY
    if speed is None:
        return 0.0
    return _banded(speed, _CURRENT_BANDS, _CURRENT_MAX_CORRECTION)


def pressure_correction(pressure_hpa: Optional[float]) -> float:
    if pressure_hpa is None:
        return 0.0
    return (STANDARD_PRESSURE_HPA - pressure_hpa) * _PRESSURE_FACTOR


def temperature_correction(temperature_c: Optional[float]) -> float:
    if temperature_c is None:
        return 0.0
    return (temperature_c - REFERENCE_TEMPERATURE_C) * _TEMPERATURE_FACTOR


def salinity_correction(lat: float, lon: float) -> float:
    nearest_km = min(haversine_km(lat, lon, p_lat, p_lon) for _, p_lat, p_lon in _LOW_SALINITY_POINTS)
    if nearest_km <= _SALINITY_NEAR_KM:
        return -0.02
    if nearest_km <= _SALINITY_FAR_KM:
        return -0.01
    return 0.0


def environmental_confidence(snapshot: EnvironmentalSnapshot) -> float:
    """Start at 1.0 and reduce multiplicatively for each abnormal condition."""
    confidence = 1.0
    if snapshot.wind_speed_kn is not None:
        wind_ms = snapshot.wind_speed_kn * KNOTS_TO_MS
        if wind_ms > 15:
            confidence *= 0.8
        elif wind_ms > 10:
            confidence *= 0.9
    if snapshot.wave_height_m is not None and snapshot.wave_height_m > 2:
        confidence *= 0.85
    if snapshot.visibility_nm is not None and snapshot.visibility_nm < 1:
        confidence *= 0.7
    if snapshot.pressure_hpa is not None and abs(snapshot.pressure_hpa - STANDARD_PRESSURE_HPA) > 30:
        confidence *= 0.9
    current = current_correction(snapshot)
    if current <= _CURRENT_MAX_CORRECTION:
        confidence *= 0.9
    return max(_CONFIDENCE_FLOOR, min(1.0, confidence))


class EnvironmentalCorrectionCalculator:
    """Computes EnvironmentalFactors for a reading and its snapshot."""

    def calculate(
        self,
        reading: DepthReadingData,
        snapshot: Optional[EnvironmentalSnapshot],
    ) -> EnvironmentalFactors:
        snapshot = snapshot or EnvironmentalSnapshot()
        wind = wind_correction(snapshot.wind_speed_kn)
        current = current_correction(snapshot)
        pressure = pressure_correction(snapshot.pressure_hpa)
        temperature = temperature_correction(snapshot.temperature_c)
        salinity = salinity_correction(reading.lat, reading.lon)
        total = wind + current + pressure + temperature + salinity
        return EnvironmentalFactors(
            wind=round(wind, 4),
            current=round(current, 4),
            pressure=round(pressure, 4),
            temperature=round(temperature, 4),
            salinity=round(salinity, 4),
            total=round(total, 4),
            confidence=round(environmental_confidence(snapshot), 4),
        )
