"""Shared declarative base and enums for all models."""
from __future__ import annotations

import enum
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


class DepthSourceEnum(str, enum.Enum):
    CROWDSOURCE = "crowdsource"
    OFFICIAL = "official"
    PREDICTED = "predicted"


class ReliabilityEnum(str, enum.Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    UNRELIABLE = "unreliable"


class TideMethodEnum(str, enum.Enum):
    OBSERVED = "observed"
    INTERPOLATED = "interpolated"
    ESTIMATED = "estimated"


class AlertSeverityEnum(str, enum.Enum):
    CAUTION = "caution"
    WARNING = "warning"
    CRITICAL = "critical"
    EMERGENCY = "emergency"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    @property
    def broadcast_required(self) -> bool:
        return self in (AlertSeverityEnum.CRITICAL, AlertSeverityEnum.EMERGENCY)


_SEVERITY_RANK = {
    AlertSeverityEnum.CAUTION: 1,
    AlertSeverityEnum.WARNING: 2,
    AlertSeverityEnum.CRITICAL: 3,
    AlertSeverityEnum.EMERGENCY: 4,
}


class AlertDomainEnum(str, enum.Enum):
    DEPTH = "depth"
    GROUNDING = "grounding"
    WEATHER = "weather"
    NAVIGATION = "navigation"
    COLLISION = "collision"
    EQUIPMENT = "equipment"
    EMERGENCY = "emergency"


class AlertStatusEnum(str, enum.Enum):
    ACTIVE = "active"
    ACKNOWLEDGED = "acknowledged"
    EXPIRED = "expired"
    SUPERSEDED = "superseded"
    DISMISSED = "dismissed"


class IncidentTypeEnum(str, enum.Enum):
    GROUNDING = "grounding"
    COLLISION = "collision"
    WEATHER = "weather"
    MANUAL = "manual"


class IncidentSeverityEnum(str, enum.Enum):
    PAN_PAN = "pan_pan"
    MAYDAY = "mayday"


class IncidentStatusEnum(str, enum.Enum):
    REPORTED = "reported"
    BROADCASTING = "broadcasting"
    ACKNOWLEDGED = "acknowledged"
    TIMED_OUT_RETRY = "timed_out_retry"
    RESOLVED = "resolved"
    FAILED = "failed"  # retries exhausted; manual escalation required


class QueueStatusEnum(str, enum.Enum):
    PENDING = "pending"
    SYNCING = "syncing"
    FAILED = "failed"
    SYNCED = "synced"


class VesselStatusEnum(str, enum.Enum):
    UNDERWAY = "underway"
    ANCHORED = "anchored"
    MOORED = "moored"
    UNKNOWN = "unknown"


class WeatherConditionEnum(str, enum.Enum):
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"
    DANGEROUS = "dangerous"
