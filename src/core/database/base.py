"""
Declarative base and column helpers shared by all ledger models.

All timestamps are stored in UTC. ``UTCDateTime`` converts on the way in
and re-attaches UTC on the way out, since SQLite drops tzinfo.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import DateTime
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.types import TypeDecorator


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a datetime to an aware UTC value; naive values are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timezone-aware DateTime that always round-trips as UTC."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return as_utc(value)

    def process_result_value(self, value, dialect):
        if isinstance(value, str):
            # aggregate results can come back untyped on SQLite
            value = datetime.fromisoformat(value)
        return as_utc(value)


class Base(DeclarativeBase):
    """Declarative base for every ledger table."""
