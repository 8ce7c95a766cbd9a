"""Pydantic schemas for depth reading ingest and queries."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from app.models.base import DepthSourceEnum
from app.modules.marine_data import DepthReadingData, utcnow


class DepthReadingSubmit(BaseModel):
    """Range checks beyond basic typing live in reading_validator, so the
    API and the offline queue reject the same inputs with the same messages."""
    id: str = Field(..., min_length=1, max_length=64)
    lat: float
    lon: float
    depth: float
    vessel_draft: float
    timestamp: Optional[datetime] = None
    confidence: float = 0.8
    source: DepthSourceEnum = DepthSourceEnum.CROWDSOURCE
    gps_accuracy_m: Optional[float] = Field(None, ge=0)
    measurement_method: Optional[str] = Field(None, max_length=30)
    notes: Optional[str] = Field(None, max_length=2000)

    def to_reading(self) -> DepthReadingData:
        return DepthReadingData(
            reading_id=self.id,
            lat=self.lat,
            lon=self.lon,
            depth=self.depth,
            vessel_draft=self.vessel_draft,
            timestamp=self.timestamp or utcnow(),
            confidence=self.confidence,
            source=self.source,
            gps_accuracy_m=self.gps_accuracy_m,
            measurement_method=self.measurement_method,
            notes=self.notes,
        )


class DepthReadingSubmitResponse(BaseModel):
    id: str
    submitted_at: datetime
    duplicate: bool = False
    confidence: Optional[float] = None
    reliability: Optional[str] = None
    quality_warnings: list[str] = Field(default_factory=list)
    alert_id: Optional[str] = None


class AreaDepthResponse(BaseModel):
    readings: list[dict[str, Any]]
    aggregated_data: list[dict[str, Any]]
    safety_warnings: list[dict[str, Any]]
    data_quality_score: int
