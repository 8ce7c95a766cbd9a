"""Open-Meteo weather client (free, no API key needed).

Two endpoints feed one EnvironmentalSnapshot:
  forecast API  — temperature, wind speed/direction (knots), MSL pressure, visibility
  marine API    — significant wave height, ocean current velocity

Readings taken within the last hour use the ``current`` block. Older (or
future-dated) readings request the ``hourly`` series for that UTC day and use
the hour nearest the reading, so corrections reflect conditions at the time of
measurement.

Either half may fail or omit fields; the snapshot simply carries None for
whatever is missing. Only a failed forecast call propagates as httpx.HTTPError.
"""
from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

import httpx

from app.config import settings
from app.modules.marine_data import EnvironmentalSnapshot, WeatherSource, to_naive_utc, utcnow
from app.utils.cache import TTLCache
from app.utils.http_retry import retry_request

logger = logging.getLogger(__name__)

_METERS_PER_NM = 1852.0
_KMH_TO_KN = 0.539957
_CURRENT_WINDOW = timedelta(hours=1)
_FORECAST_VARS = "temperature_2m,wind_speed_10m,wind_direction_10m,pressure_msl,visibility"
_MARINE_VARS = "wave_height,ocean_current_velocity"

# Douglas sea scale upper bounds (wave height, meters) → state index
_DOUGLAS_BOUNDS: list[float] = [0.0, 0.1, 0.5, 1.25, 2.5, 4.0, 6.0, 9.0, 14.0]


def sea_state_from_wave_height(wave_height_m: Optional[float]) -> Optional[int]:
    if wave_height_m is None:
        return None
    for state, upper in enumerate(_DOUGLAS_BOUNDS):
        if wave_height_m <= upper:
            return state
    return 9


def _round_coord(val: float) -> float:
    """Round to a 0.1-degree grid for cache efficiency."""
    return math.floor(val * 10) / 10


def _num(block: dict[str, Any], key: str) -> Optional[float]:
    value = block.get(key)
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def hourly_block(payload: Optional[dict[str, Any]], hour: datetime) -> dict[str, Any]:
    """Values of the ``hourly`` series nearest ``hour``, shaped like a ``current`` block."""
    hourly = (payload or {}).get("hourly") or {}
    times = hourly.get("time") or []
    best: Optional[int] = None
    best_gap = 0.0
    for i, raw in enumerate(times):
        try:
            gap = abs((datetime.fromisoformat(raw) - hour).total_seconds())
        except (TypeError, ValueError):
            continue
        if best is None or gap < best_gap:
            best, best_gap = i, gap
    if best is None:
        return {}
    block = {"time": times[best]}
    for key, values in hourly.items():
        if key != "time" and isinstance(values, list) and best < len(values):
            block[key] = values[best]
    return block


def parse_snapshot(forecast: dict[str, Any], marine: Optional[dict[str, Any]]) -> EnvironmentalSnapshot:
    current = forecast.get("current") or {}
    marine_current = (marine or {}).get("current") or {}

    visibility_m = _num(current, "visibility")
    wave_height = _num(marine_current, "wave_height")
    current_kmh = _num(marine_current, "ocean_current_velocity")
    observed_at = None
    if current.get("time"):
        try:
            observed_at = datetime.fromisoformat(current["time"])
        except ValueError:
            observed_at = None

    return EnvironmentalSnapshot(
        temperature_c=_num(current, "temperature_2m"),
        wind_speed_kn=_num(current, "wind_speed_10m"),
        wind_direction_deg=_num(current, "wind_direction_10m"),
        wave_height_m=wave_height,
        visibility_nm=visibility_m / _METERS_PER_NM if visibility_m is not None else None,
        sea_state=sea_state_from_wave_height(wave_height),
        pressure_hpa=_num(current, "pressure_msl"),
        current_speed_kn=current_kmh * _KMH_TO_KN if current_kmh is not None else None,
        observed_at=observed_at,
    )


class OpenMeteoWeatherClient(WeatherSource):
    """WeatherSource backed by Open-Meteo, cached per 0.1° cell and hour."""

    def __init__(
        self,
        forecast_url: str = settings.OPEN_METEO_API_URL,
        marine_url: str = settings.OPEN_METEO_MARINE_URL,
        timeout: float = settings.HTTP_TIMEOUT_SECONDS,
        cache: Optional[TTLCache] = None,
        client_factory: Optional[Callable[[], httpx.Client]] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.forecast_url = forecast_url
        self.marine_url = marine_url
        self.timeout = timeout
        self.cache = cache or TTLCache(ttl_seconds=settings.TIDE_CACHE_TTL_SECONDS)
        self._client_factory = client_factory or (
            lambda: httpx.Client(timeout=self.timeout, follow_redirects=True)
        )
        self._clock = clock

    def _hour_for(self, at: Optional[datetime]) -> Optional[datetime]:
        """UTC hour to look up, or None when current conditions apply."""
        if at is None:
            return None
        at = to_naive_utc(at)
        if abs(self._clock() - at) <= _CURRENT_WINDOW:
            return None
        return (at + timedelta(minutes=30)).replace(minute=0, second=0, microsecond=0)

    def snapshot(self, lat: float, lon: float, at: Optional[datetime] = None) -> EnvironmentalSnapshot:
        hour = self._hour_for(at)
        cell_lat, cell_lon = _round_coord(lat), _round_coord(lon)
        return self.cache.get_or_set((cell_lat, cell_lon, hour), lambda: self._fetch(cell_lat, cell_lon, hour))

    @staticmethod
    def _params(lat: float, lon: float, variables: str, hour: Optional[datetime]) -> dict[str, Any]:
        params: dict[str, Any] = {"latitude": lat, "longitude": lon}
        if hour is None:
            params["current"] = variables
        else:
            day = hour.date().isoformat()
            params.update({"hourly": variables, "start_date": day, "end_date": day, "timezone": "GMT"})
        return params

    def _fetch(self, lat: float, lon: float, hour: Optional[datetime] = None) -> EnvironmentalSnapshot:
        with self._client_factory() as client:
            resp = retry_request(
                client.get,
                self.forecast_url,
                params={**self._params(lat, lon, _FORECAST_VARS, hour), "wind_speed_unit": "kn"},
            )
            forecast = resp.json()

            marine: Optional[dict[str, Any]] = None
            try:
                marine_resp = retry_request(
                    client.get,
                    self.marine_url,
                    params=self._params(lat, lon, _MARINE_VARS, hour),
                )
                marine = marine_resp.json()
            except (httpx.HTTPError, ValueError) as exc:
                logger.warning("Open-Meteo marine fetch failed at (%.1f, %.1f): %s", lat, lon, exc)

        if hour is not None:
            forecast = {"current": hourly_block(forecast, hour)}
            marine = {"current": hourly_block(marine, hour)} if marine is not None else None
        snapshot = parse_snapshot(forecast, marine)
        logger.debug(
            "Weather snapshot at (%.1f, %.1f) for %s fetched %s",
            lat, lon, hour.isoformat() if hour else "now", utcnow().isoformat(),
        )
        return snapshot
