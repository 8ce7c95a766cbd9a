"""NOAA CO-OPS tide data client.

Uses the public datagetter API (no key needed):
  https://api.tidesandcurrents.noaa.gov/api/prod/datagetter

  product=predictions  → {"predictions": [{"t": "2024-06-01 00:00", "v": "1.234", "type": "H"}]}
  product=water_level  → {"data": [{"t": "...", "v": "1.20", "q": "v"|"p"}]}
  "No data" is returned as {"error": {"message": "..."}} with HTTP 200.

All times are requested and parsed as GMT. Responses are cached in a TTLCache
(15 min by default) keyed by station, product and window.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Sequence

import httpx

from app.config import settings
from app.modules.marine_data import (
    TidePrediction,
    TideSource,
    TideStation,
    WaterLevelObservation,
    to_naive_utc,
)
from app.utils.cache import TTLCache
from app.utils.geo import haversine_km
from app.utils.http_retry import retry_request

logger = logging.getLogger(__name__)

_APPLICATION = "depthsafe"
_NOAA_TIME_FORMAT = "%Y%m%d %H:%M"
_NOAA_RESPONSE_TIME_FORMAT = "%Y-%m-%d %H:%M"

# Harmonic reference stations used when no station list is supplied
KNOWN_STATIONS: list[TideStation] = [
    TideStation("9414290", "San Francisco, CA", 37.8063, -122.4659, "harmonic", "Pacific", "PST8PDT"),
    TideStation("9413450", "Monterey, CA", 36.6089, -121.8914, "harmonic", "Pacific", "PST8PDT"),
    TideStation("9447130", "Seattle, WA", 47.6026, -122.3393, "harmonic", "Pacific", "PST8PDT"),
    TideStation("8518750", "The Battery, NY", 40.7006, -74.0142, "harmonic", "Atlantic", "EST5EDT"),
    TideStation("8443970", "Boston, MA", 42.3539, -71.0503, "harmonic", "Atlantic", "EST5EDT"),
    TideStation("8638610", "Sewells Point, VA", 36.9467, -76.3300, "harmonic", "Atlantic", "EST5EDT"),
    TideStation("8724580", "Key West, FL", 24.5557, -81.8081, "harmonic", "Gulf", "EST5EDT"),
    TideStation("8771450", "Galveston Pier 21, TX", 29.3100, -94.7933, "harmonic", "Gulf", "CST6CDT"),
]


def _hour_window(start: datetime, end: datetime) -> tuple[datetime, datetime]:
    """Widen [start, end] to whole hours so nearby readings share cache entries."""
    start = to_naive_utc(start).replace(minute=0, second=0, microsecond=0)
    end = to_naive_utc(end)
    if end.minute or end.second or end.microsecond:
        end = end.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)
    return start, end


def _parse_time(raw: str) -> datetime:
    return datetime.strptime(raw, _NOAA_RESPONSE_TIME_FORMAT)


def parse_predictions(station_id: str, payload: dict[str, Any]) -> list[TidePrediction]:
    """Parse a datagetter predictions payload; malformed rows are skipped."""
    if "error" in payload:
        logger.info("NOAA predictions for %s: %s", station_id, payload["error"].get("message", "no data"))
        return []
    out: list[TidePrediction] = []
    for row in payload.get("predictions") or []:
        try:
            out.append(TidePrediction(
                station_id=station_id,
                timestamp=_parse_time(row["t"]),
                height=float(row["v"]),
                kind=row.get("type"),
            ))
        except (KeyError, ValueError, TypeError):
            logger.debug("Skipping malformed prediction row for %s: %r", station_id, row)
    out.sort(key=lambda p: p.timestamp)
    return out


def parse_water_levels(station_id: str, payload: dict[str, Any]) -> list[WaterLevelObservation]:
    if "error" in payload:
        logger.info("NOAA water levels for %s: %s", station_id, payload["error"].get("message", "no data"))
        return []
    out: list[WaterLevelObservation] = []
    for row in payload.get("data") or []:
        try:
            value = row["v"]
            if value in (None, ""):
                continue
            out.append(WaterLevelObservation(
                station_id=station_id,
                timestamp=_parse_time(row["t"]),
                height=float(value),
                verified=row.get("q") == "v",
            ))
        except (KeyError, ValueError, TypeError):
            logger.debug("Skipping malformed water level row for %s: %r", station_id, row)
    out.sort(key=lambda o: o.timestamp)
    return out


class NoaaTideClient(TideSource):
    """TideSource backed by NOAA CO-OPS.

    Args:
        base_url: datagetter endpoint.
        timeout: Per-request timeout in seconds.
        stations: Candidate stations for nearest_station (defaults to KNOWN_STATIONS).
        cache: Response cache; a 15-minute TTLCache is created when omitted.
        client_factory: Returns an httpx.Client; tests inject a mock.
    """

    def __init__(
        self,
        base_url: str = settings.NOAA_TIDES_API_URL,
        timeout: float = settings.HTTP_TIMEOUT_SECONDS,
        stations: Optional[Sequence[TideStation]] = None,
        cache: Optional[TTLCache] = None,
        client_factory: Optional[Callable[[], httpx.Client]] = None,
    ) -> None:
        self.base_url = base_url
        self.timeout = timeout
        self.stations = list(stations) if stations is not None else list(KNOWN_STATIONS)
        self.cache = cache or TTLCache(ttl_seconds=settings.TIDE_CACHE_TTL_SECONDS)
        self._client_factory = client_factory or (
            lambda: httpx.Client(timeout=self.timeout, follow_redirects=True)
        )

    def nearest_station(self, lat: float, lon: float) -> Optional[TideStation]:
        if not self.stations:
            return None
        return min(self.stations, key=lambda s: haversine_km(lat, lon, s.lat, s.lon))

    def _fetch(self, station_id: str, product: str, start: datetime, end: datetime, **extra: str) -> dict[str, Any]:
        params = {
            "product": product,
            "station": station_id,
            "begin_date": to_naive_utc(start).strftime(_NOAA_TIME_FORMAT),
            "end_date": to_naive_utc(end).strftime(_NOAA_TIME_FORMAT),
            "datum": "MLLW",
            "units": "metric",
            "time_zone": "gmt",
            "format": "json",
            "application": _APPLICATION,
            **extra,
        }
        with self._client_factory() as client:
            resp = retry_request(client.get, self.base_url, params=params)
        return resp.json()

    def predictions(self, station_id: str, start: datetime, end: datetime) -> list[TidePrediction]:
        start, end = _hour_window(start, end)
        key = ("predictions", station_id, start, end)
        return self.cache.get_or_set(
            key,
            lambda: parse_predictions(station_id, self._fetch(station_id, "predictions", start, end, interval="h")),
        )

    def water_levels(self, station_id: str, start: datetime, end: datetime) -> list[WaterLevelObservation]:
        start, end = _hour_window(start, end)
        key = ("water_level", station_id, start, end)
        return self.cache.get_or_set(
            key,
            lambda: parse_water_levels(station_id, self._fetch(station_id, "water_level", start, end)),
        )
