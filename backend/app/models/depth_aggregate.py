"""DepthAggregate entity — running statistics for one grid cell at one resolution."""
from __future__ import annotations

import math
from datetime import datetime

from sqlalchemy import CheckConstraint, DateTime, Float, Integer, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column
from app.models.base import Base


class DepthAggregate(Base):
    __tablename__ = "depth_aggregates"
    __table_args__ = (
        UniqueConstraint("grid_resolution", "cell_lat", "cell_lon", name="uq_depth_aggregate_cell"),
        CheckConstraint("reading_count >= 0", name="ck_depth_aggregate_count"),
        CheckConstraint(
            "crowdsource_count >= 0 AND official_count >= 0 AND predicted_count >= 0",
            name="ck_depth_aggregate_source_counts",
        ),
    )

    aggregate_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    grid_resolution: Mapped[float] = mapped_column(Float, nullable=False)
    # South-west corner of the cell, snapped to the resolution grid
    cell_lat: Mapped[float] = mapped_column(Float, nullable=False)
    cell_lon: Mapped[float] = mapped_column(Float, nullable=False)
    grid_cell_wkt: Mapped[str] = mapped_column(String(255), nullable=False)
    reading_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    avg_depth: Mapped[float] = mapped_column(Float, nullable=False)
    min_depth: Mapped[float] = mapped_column(Float, nullable=False)
    max_depth: Mapped[float] = mapped_column(Float, nullable=False)
    # Sum of squared deviations from the running mean (Welford M2)
    depth_m2: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    avg_confidence: Mapped[float] = mapped_column(Float, nullable=False)
    max_confidence: Mapped[float] = mapped_column(Float, nullable=False)
    earliest_reading_utc: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    latest_reading_utc: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    crowdsource_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    official_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    predicted_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_updated: Mapped[datetime] = mapped_column(DateTime, default=func.now(), onupdate=func.now())

    @property
    def depth_stddev(self) -> float:
        """Population standard deviation of the contributing depths."""
        if not self.reading_count:
            return 0.0
        return math.sqrt(max(self.depth_m2, 0.0) / self.reading_count)
