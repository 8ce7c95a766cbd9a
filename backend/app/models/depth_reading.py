"""DepthReading entity — one raw depth sounding; only the aggregation flag changes after storing."""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, CheckConstraint, DateTime, Float, Index, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column
from app.models.base import Base


class DepthReading(Base):
    __tablename__ = "depth_readings"
    __table_args__ = (
        CheckConstraint("lat >= -90 AND lat <= 90", name="ck_depth_reading_lat"),
        CheckConstraint("lon >= -180 AND lon <= 180", name="ck_depth_reading_lon"),
        CheckConstraint("depth > 0", name="ck_depth_reading_depth"),
        CheckConstraint("vessel_draft > 0", name="ck_depth_reading_draft"),
        CheckConstraint("confidence >= 0 AND confidence <= 1", name="ck_depth_reading_confidence"),
        Index("ix_depth_readings_lat_lon", "lat", "lon"),
        Index("ix_depth_readings_timestamp", "timestamp_utc"),
    )

    # Client-generated id; doubles as the idempotency key for offline resubmission
    reading_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    lat: Mapped[float] = mapped_column(Float, nullable=False)
    lon: Mapped[float] = mapped_column(Float, nullable=False)
    depth: Mapped[float] = mapped_column(Float, nullable=False)  # meters
    vessel_draft: Mapped[float] = mapped_column(Float, nullable=False)  # meters
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.8)
    source: Mapped[str] = mapped_column(String(20), nullable=False, default="crowdsource")
    timestamp_utc: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    gps_accuracy_m: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    measurement_method: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=func.now())
    # Set once the reading has been folded into the grid aggregates
    aggregated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
