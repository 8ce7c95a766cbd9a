"""Value types shared by the depth pipeline plus the data-source interfaces.

The correction engines never talk to HTTP directly; they receive a
``TideSource`` / ``WeatherSource`` through their constructor so tests can hand
in fakes and production wiring can hand in the NOAA / Open-Meteo clients.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from app.models.base import DepthSourceEnum


def to_naive_utc(dt: datetime) -> datetime:
    """Normalize to naive UTC, the form stored by SQLAlchemy DateTime columns."""
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass(frozen=True)
class DepthReadingData:
    """One depth measurement as it flows through the pipeline."""
    reading_id: str
    lat: float
    lon: float
    depth: float
    vessel_draft: float
    timestamp: datetime
    confidence: float = 0.8
    source: DepthSourceEnum = DepthSourceEnum.CROWDSOURCE
    gps_accuracy_m: Optional[float] = None
    measurement_method: Optional[str] = None
    notes: Optional[str] = None

    @classmethod
    def from_model(cls, row: Any) -> "DepthReadingData":
        return cls(
            reading_id=row.reading_id,
            lat=row.lat,
            lon=row.lon,
            depth=row.depth,
            vessel_draft=row.vessel_draft,
            timestamp=row.timestamp_utc,
            confidence=row.confidence,
            source=DepthSourceEnum(row.source),
            gps_accuracy_m=row.gps_accuracy_m,
            measurement_method=row.measurement_method,
            notes=row.notes,
        )


@dataclass(frozen=True)
class TideStation:
    station_id: str
    name: str
    lat: float
    lon: float
    tide_type: str = "harmonic"  # harmonic | subordinate
    region: Optional[str] = None
    timezone: Optional[str] = None


@dataclass(frozen=True)
class TidePrediction:
    station_id: str
    timestamp: datetime
    height: float  # meters above chart datum
    kind: Optional[str] = None  # "H" / "L" extremum marker, None for hourly points


@dataclass(frozen=True)
class WaterLevelObservation:
    station_id: str
    timestamp: datetime
    height: float
    verified: bool = False


@dataclass(frozen=True)
class EnvironmentalSnapshot:
    """Weather/sea state near a reading. Any field may be missing."""
    temperature_c: Optional[float] = None
    wind_speed_kn: Optional[float] = None
    wind_direction_deg: Optional[float] = None
    wave_height_m: Optional[float] = None
    visibility_nm: Optional[float] = None
    sea_state: Optional[int] = None  # Douglas scale 0-9
    pressure_hpa: Optional[float] = None
    current_speed_kn: Optional[float] = None
    observed_at: Optional[datetime] = None
    extras: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class VesselState:
    """Position fix plus the vessel profile needed for safety decisions."""
    vessel_id: str
    lat: float
    lon: float
    speed_kn: float
    heading_deg: float
    draft_m: float
    timestamp: datetime
    vessel_name: Optional[str] = None
    call_sign: Optional[str] = None
    vessel_type: Optional[str] = None
    length_m: Optional[float] = None
    persons_on_board: int = 1

    def profile(self) -> dict[str, Any]:
        return {
            "vessel_id": self.vessel_id,
            "vessel_name": self.vessel_name,
            "call_sign": self.call_sign,
            "vessel_type": self.vessel_type,
            "length_m": self.length_m,
            "draft_m": self.draft_m,
        }


class TideSource(ABC):
    """Provider of tide stations, predictions and live water levels."""

    @abstractmethod
    def nearest_station(self, lat: float, lon: float) -> Optional[TideStation]:
        ...

    @abstractmethod
    def predictions(self, station_id: str, start: datetime, end: datetime) -> list[TidePrediction]:
        """Time-ordered predictions in [start, end]; may be empty."""

    @abstractmethod
    def water_levels(self, station_id: str, start: datetime, end: datetime) -> list[WaterLevelObservation]:
        """Time-ordered observed water levels in [start, end]; may be empty."""


class WeatherSource(ABC):
    """Provider of environmental snapshots."""

    @abstractmethod
    def snapshot(self, lat: float, lon: float, at: Optional[datetime] = None) -> EnvironmentalSnapshot:
        ...
