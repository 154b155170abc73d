"""
RankDefinition - the 175-row rank catalog.
Pure schema only; rows are generated by RankCatalog.ensure_seeded().
"""

from __future__ import annotations

from typing import List, Optional

from sqlalchemy import JSON, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from src.core.database.base import Base


class RankDefinition(Base):
    """
    One catalog position: thresholds, display names and optional rewards.

    Immutable after generation except for administrative reward edits.
    """

    __tablename__ = "rank_definitions"
    __table_args__ = (
        UniqueConstraint("primary_tier", "sub_tier", name="uq_rank_definitions_position"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    primary_tier: Mapped[int] = mapped_column(Integer, nullable=False)

    sub_tier: Mapped[int] = mapped_column(Integer, nullable=False)

    display_name: Mapped[str] = mapped_column(String(64), nullable=False)

    tier_name: Mapped[str] = mapped_column(String(32), nullable=False)

    sub_tier_name: Mapped[str] = mapped_column(String(32), nullable=False)

    required_minutes: Mapped[int] = mapped_column(Integer, nullable=False)

    required_achievements: Mapped[int] = mapped_column(Integer, nullable=False)

    external_role_ref: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
        doc="Chat-platform role granted at this rank",
    )

    reward_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    reward_commands: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
