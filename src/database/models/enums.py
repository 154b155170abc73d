"""
Database Model Enums
====================

Type-safe constants for the categorical columns of the ledger schema.
Stored as their string values so the tables stay readable from SQL.
"""

from __future__ import annotations

import enum


class EventKind(str, enum.Enum):
    """Kinds of rows in the append-only progression ledger."""

    XP_GAIN = "XP_GAIN"
    ACHIEVEMENT = "ACHIEVEMENT"
    RANK_PROMOTION = "RANK_PROMOTION"
    REWARD_PROCESSING = "REWARD_PROCESSING"
    PLAYTIME_SESSION = "PLAYTIME_SESSION"


class VerificationState(str, enum.Enum):
    """
    Membership state of a player identity.

    UNVERIFIED -> PURGATORY -> VERIFIED; no state may be skipped.
    """

    UNVERIFIED = "UNVERIFIED"
    PURGATORY = "PURGATORY"
    VERIFIED = "VERIFIED"


class PlatformFlag(str, enum.Enum):
    """Client family a player connects from."""

    PRIMARY = "PRIMARY"
    ALTERNATE = "ALTERNATE"
