"""
Database Models Package
========================

SQLAlchemy ORM models for the progression ledger.

All models:
- Schema-only, no business logic
- Use Mapped[] syntax with mapped_column()
- Store timestamps as UTC via UTCDateTime
- Explicit foreign keys to identity.uuid
"""

from src.core.database.base import Base

from .enums import EventKind, PlatformFlag, VerificationState
from .identity import PlayerIdentity
from .player_progress import PlayerProgress
from .rank_definition import RankDefinition
from .xp_event import XPEvent

__all__ = [
    "Base",
    "EventKind",
    "PlatformFlag",
    "VerificationState",
    "PlayerIdentity",
    "PlayerProgress",
    "RankDefinition",
    "XPEvent",
]
