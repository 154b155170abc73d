"""
PlayerIdentity - one row per distinct player.
Pure schema only.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import Enum, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from src.core.database.base import Base, UTCDateTime, utc_now
from .enums import PlatformFlag, VerificationState


class PlayerIdentity(Base):
    """
    Stable identity of a player plus its external-platform linkage.

    Created on first sighting, refreshed on every sighting, never deleted.
    """

    __tablename__ = "identity"
    __table_args__ = (
        Index("ix_identity_verification_state", "verification_state"),
        Index("ix_identity_display_name", "display_name"),
    )

    uuid: Mapped[str] = mapped_column(String(36), primary_key=True)

    display_name: Mapped[str] = mapped_column(String(64), nullable=False)

    external_id: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
        unique=True,
        doc="Linked chat-platform account id",
    )

    external_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    verification_state: Mapped[VerificationState] = mapped_column(
        Enum(VerificationState, native_enum=False, length=16),
        nullable=False,
        default=VerificationState.UNVERIFIED,
    )

    platform_flag: Mapped[PlatformFlag] = mapped_column(
        Enum(PlatformFlag, native_enum=False, length=16),
        nullable=False,
        default=PlatformFlag.PRIMARY,
    )

    linked_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    verified_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    first_seen_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utc_now
    )

    last_seen_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utc_now
    )

    last_server: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
