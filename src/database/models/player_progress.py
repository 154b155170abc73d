"""
PlayerProgress - denormalized progression totals, one row per player.
Pure schema only.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from src.core.database.base import Base, UTCDateTime, utc_now


class PlayerProgress(Base):
    """
    Current rank position and cumulative totals.

    (primary_tier, sub_tier) only moves forward through the catalog.
    """

    __tablename__ = "player_progress"
    __table_args__ = (
        Index("ix_player_progress_position", "primary_tier", "sub_tier"),
        Index("ix_player_progress_playtime", "playtime_minutes"),
    )

    uuid: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("identity.uuid", ondelete="RESTRICT"),
        primary_key=True,
    )

    primary_tier: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    sub_tier: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    playtime_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    achievements_completed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    last_promotion_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now
    )
