"""
XPEvent - progression ledger row (immutable).
Pure schema only.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import JSON, BigInteger, Enum, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from src.core.database.base import Base, UTCDateTime, utc_now
from .enums import EventKind


class XPEvent(Base):
    """
    Append-only progression fact.

    Schema-only:
    - uuid
    - event_kind
    - source (free-text provenance, e.g. "chat", "advancement:story/root")
    - amount (signed)
    - occurred_at
    - origin_server
    - metadata (JSON)
    """

    __tablename__ = "xp_events"
    __table_args__ = (
        Index(
            "ix_xp_events_rate_window",
            "uuid",
            "event_kind",
            "source",
            "occurred_at",
        ),
        Index("ix_xp_events_recent", "uuid", "occurred_at"),
    )

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"),
        primary_key=True,
        autoincrement=True,
    )

    uuid: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("identity.uuid", ondelete="RESTRICT"),
        nullable=False,
    )

    event_kind: Mapped[EventKind] = mapped_column(
        Enum(EventKind, native_enum=False, length=24),
        nullable=False,
    )

    source: Mapped[str] = mapped_column(String(128), nullable=False)

    amount: Mapped[int] = mapped_column(Integer, nullable=False)

    occurred_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utc_now
    )

    origin_server: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # "metadata" is reserved on declarative classes
    details: Mapped[Optional[Dict[str, Any]]] = mapped_column(
        "metadata",
        JSON,
        nullable=True,
    )
