"""OfflineQueueEntry entity — a reading captured while disconnected, awaiting sync."""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Integer, JSON, String, Text, Index, func
from sqlalchemy.orm import Mapped, mapped_column
from app.models.base import Base


class OfflineQueueEntry(Base):
    __tablename__ = "offline_queue_entries"
    __table_args__ = (
        Index("ix_offline_queue_status_next", "status", "next_attempt_at"),
    )

    entry_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    reading_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    payload_json: Mapped[dict] = mapped_column(JSON, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    next_attempt_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    queued_at: Mapped[datetime] = mapped_column(DateTime, default=func.now())
    synced_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    # Start of the current sync attempt; a syncing entry older than the claim timeout is reclaimed
    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
