"""
Event Ledger - Append-only Progression Log
==========================================

Purpose
-------
Owns the ``xp_events`` table: appends immutable progression facts and
answers aggregate questions about them (sums, windowed counts, recent
history, per-source breakdowns, leaderboards).

Responsibilities
----------------
- Append one event per call, optionally inside a caller's transaction
- Compute every aggregate with SQL at query time; no cached counters
- Convenience writers for promotion and reward-processing audit rows

Non-Responsibilities
--------------------
- Deciding whether a gain is allowed (RateLimiter)
- Rank arithmetic (RankCatalog / ProgressionEngine)
- Retrying storage failures

Architecture Notes
------------------
- Rows are never updated or deleted.
- ``total_experience(P)`` always equals the sum of P's XP_GAIN amounts, so
  concurrent appends cannot lose or double count anything.
- Every method accepts ``session=`` to join an open gateway transaction;
  without it each call runs on its own pooled connection.

Usage Example
-------------
>>> ledger = EventLedger(gateway)
>>> await ledger.append(LedgerEvent.gain(uuid, "chat", 5))
>>> await ledger.total_experience(uuid)
5
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.database.base import as_utc, utc_now
from src.core.exceptions import InvariantViolation
from src.core.logging.logger import get_logger
from src.database.models import EventKind, PlayerIdentity, XPEvent
from src.modules.shared.base_service import BaseService

if TYPE_CHECKING:
    from logging import Logger

    from src.core.database.gateway import PersistenceGateway
    from src.core.event_bus import EventBus


# ============================================================================
# Value Types
# ============================================================================


@dataclass(frozen=True)
class LedgerEvent:
    """One progression fact, as appended to or read from the ledger."""

    player_uuid: str
    event_kind: EventKind
    source: str
    amount: int
    occurred_at: datetime = field(default_factory=utc_now)
    origin_server: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    id: Optional[int] = None

    @classmethod
    def gain(
        cls,
        player_uuid: str,
        source: str,
        amount: int,
        *,
        occurred_at: Optional[datetime] = None,
        origin_server: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> "LedgerEvent":
        return cls(
            player_uuid=player_uuid,
            event_kind=EventKind.XP_GAIN,
            source=source,
            amount=amount,
            occurred_at=occurred_at or utc_now(),
            origin_server=origin_server,
            metadata=metadata,
        )

    @classmethod
    def from_model(cls, row: XPEvent) -> "LedgerEvent":
        return cls(
            player_uuid=row.uuid,
            event_kind=EventKind(row.event_kind),
            source=row.source,
            amount=row.amount,
            occurred_at=as_utc(row.occurred_at),
            origin_server=row.origin_server,
            metadata=row.details,
            id=row.id,
        )


@dataclass(frozen=True)
class XPStatistics:
    """Summary of a player's experience history."""

    player_uuid: str
    total: int
    last_7_days: int
    last_24_hours: int
    event_count: int
    most_active_source: Optional[str]


# ============================================================================
# EventLedger
# ============================================================================


class EventLedger(BaseService):
    """
    Append-only store of progression events with SQL-computed aggregates.

    Public Methods
    --------------
    - append() -> Insert one event
    - sum_since() / total_experience() -> Amount sums
    - count_in_window() / last_event_at() -> Rate limiter inputs
    - recent() -> Newest events first
    - breakdown_by_source() / daily_breakdown() / statistics() -> Reporting
    - top_players_by_experience() / experience_position() -> Leaderboards
    - log_promotion() / log_reward_processing() -> Audit rows
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        event_bus: Optional[EventBus] = None,
        logger: Optional[Logger] = None,
    ) -> None:
        super().__init__(event_bus, logger or get_logger(__name__))
        self._gateway = gateway

    # ========================================================================
    # WRITES
    # ========================================================================

    async def append(
        self, event: LedgerEvent, *, session: Optional[AsyncSession] = None
    ) -> None:
        """
        Insert one event row.

        Raises:
            InvariantViolation: If the event is malformed
            StorageUnavailable / StorageQueryFailed: On storage failure
                (an unknown player uuid fails the identity foreign key)
        """
        self.validate_player_uuid(event.player_uuid)
        if not event.source:
            raise InvariantViolation("event_source", "ledger events require a source")

        stmt = XPEvent.__table__.insert().values(
            {
                "uuid": event.player_uuid,
                "event_kind": EventKind(event.event_kind),
                "source": event.source,
                "amount": int(event.amount),
                "occurred_at": event.occurred_at,
                "origin_server": event.origin_server,
                "metadata": event.metadata,
            }
        )
        await self._gateway.execute(stmt, session=session, operation="ledger_append")

        self.log.debug(
            "Ledger event appended",
            extra={
                "player_uuid": event.player_uuid,
                "event_kind": EventKind(event.event_kind).value,
                "source": event.source,
                "amount": event.amount,
            },
        )

    async def log_promotion(
        self,
        player_uuid: str,
        from_position: Tuple[int, int],
        to_position: Tuple[int, int],
        reason: str,
        *,
        occurred_at: Optional[datetime] = None,
        origin_server: Optional[str] = None,
        session: Optional[AsyncSession] = None,
    ) -> None:
        """Append the RANK_PROMOTION audit row for one step."""
        await self.append(
            LedgerEvent(
                player_uuid=player_uuid,
                event_kind=EventKind.RANK_PROMOTION,
                source=reason,
                amount=0,
                occurred_at=occurred_at or utc_now(),
                origin_server=origin_server,
                metadata={
                    "description": "From {}.{} to {}.{}".format(*from_position, *to_position),
                    "from": list(from_position),
                    "to": list(to_position),
                },
            ),
            session=session,
        )

    async def log_reward_processing(
        self,
        player_uuid: str,
        position: Tuple[int, int],
        economy_amount: int,
        commands_executed: int,
        *,
        occurred_at: Optional[datetime] = None,
        origin_server: Optional[str] = None,
        session: Optional[AsyncSession] = None,
    ) -> None:
        """Append the REWARD_PROCESSING audit row for a rank's rewards."""
        await self.append(
            LedgerEvent(
                player_uuid=player_uuid,
                event_kind=EventKind.REWARD_PROCESSING,
                source="Rank {}.{}".format(*position),
                amount=economy_amount,
                occurred_at=occurred_at or utc_now(),
                origin_server=origin_server,
                metadata={"description": f"Commands executed: {commands_executed}"},
            ),
            session=session,
        )

    # ========================================================================
    # AGGREGATES
    # ========================================================================

    async def sum_since(
        self,
        player_uuid: str,
        kind: EventKind,
        since: Optional[datetime] = None,
        *,
        session: Optional[AsyncSession] = None,
    ) -> int:
        """Sum of amounts for one kind, optionally from ``since`` onwards."""
        stmt = select(func.coalesce(func.sum(XPEvent.amount), 0)).where(
            XPEvent.uuid == player_uuid,
            XPEvent.event_kind == kind,
        )
        if since is not None:
            stmt = stmt.where(XPEvent.occurred_at >= since)

        total = await self._gateway.scalar(stmt, session=session, operation="ledger_sum")
        return int(total or 0)

    async def total_experience(
        self, player_uuid: str, *, session: Optional[AsyncSession] = None
    ) -> int:
        return await self.sum_since(player_uuid, EventKind.XP_GAIN, session=session)

    async def count_in_window(
        self,
        player_uuid: str,
        kind: EventKind,
        source: str,
        window_start: datetime,
        window_end: Optional[datetime] = None,
        *,
        session: Optional[AsyncSession] = None,
    ) -> int:
        """
        Number of matching events with ``window_start <= occurred_at < window_end``.

        Without ``window_end`` every row from ``window_start`` on is counted,
        including rows stamped later than the caller's clock.
        """
        stmt = select(func.count(XPEvent.id)).where(
            XPEvent.uuid == player_uuid,
            XPEvent.event_kind == kind,
            XPEvent.source == source,
            XPEvent.occurred_at >= window_start,
        )
        if window_end is not None:
            stmt = stmt.where(XPEvent.occurred_at < window_end)
        count = await self._gateway.scalar(stmt, session=session, operation="ledger_count")
        return int(count or 0)

    async def last_event_at(
        self,
        player_uuid: str,
        kind: EventKind,
        source: str,
        *,
        session: Optional[AsyncSession] = None,
    ) -> Optional[datetime]:
        """Timestamp of the newest matching event, or None."""
        stmt = select(func.max(XPEvent.occurred_at)).where(
            XPEvent.uuid == player_uuid,
            XPEvent.event_kind == kind,
            XPEvent.source == source,
        )
        value = await self._gateway.scalar(stmt, session=session, operation="ledger_last_event")
        if isinstance(value, str):
            value = datetime.fromisoformat(value)
        return as_utc(value)

    async def recent(
        self,
        player_uuid: str,
        limit: int = 10,
        *,
        session: Optional[AsyncSession] = None,
    ) -> List[LedgerEvent]:
        """Newest events first; ties on timestamp are broken by id descending."""
        self.validate_positive_int(limit, "limit")
        stmt = (
            select(XPEvent)
            .where(XPEvent.uuid == player_uuid)
            .order_by(XPEvent.occurred_at.desc(), XPEvent.id.desc())
            .limit(limit)
        )
        return await self._gateway.query(
            stmt,
            mapper=lambda row: LedgerEvent.from_model(row[0]),
            session=session,
            operation="ledger_recent",
        )

    async def breakdown_by_source(
        self,
        player_uuid: str,
        since: Optional[datetime] = None,
        kind: EventKind = EventKind.XP_GAIN,
        *,
        session: Optional[AsyncSession] = None,
    ) -> Dict[str, int]:
        """Per-source amount sums, largest first."""
        total = func.sum(XPEvent.amount).label("total")
        stmt = (
            select(XPEvent.source, total)
            .where(XPEvent.uuid == player_uuid, XPEvent.event_kind == kind)
            .group_by(XPEvent.source)
            .order_by(total.desc(), XPEvent.source)
        )
        if since is not None:
            stmt = stmt.where(XPEvent.occurred_at >= since)

        rows = await self._gateway.query(stmt, session=session, operation="ledger_breakdown")
        return {row.source: int(row.total) for row in rows}

    async def daily_breakdown(
        self,
        player_uuid: str,
        days: int = 7,
        *,
        now: Optional[datetime] = None,
        session: Optional[AsyncSession] = None,
    ) -> Dict[date, int]:
        """XP gained per UTC calendar day over the last ``days`` days."""
        self.validate_positive_int(days, "days")
        since = (now or utc_now()) - timedelta(days=days)

        day = func.date(XPEvent.occurred_at).label("day")
        total = func.sum(XPEvent.amount).label("total")
        stmt = (
            select(day, total)
            .where(
                XPEvent.uuid == player_uuid,
                XPEvent.event_kind == EventKind.XP_GAIN,
                XPEvent.occurred_at >= since,
            )
            .group_by(day)
            .order_by(day)
        )

        rows = await self._gateway.query(stmt, session=session, operation="ledger_daily")
        breakdown: Dict[date, int] = {}
        for row in rows:
            key = date.fromisoformat(row.day) if isinstance(row.day, str) else row.day
            breakdown[key] = int(row.total)
        return breakdown

    async def statistics(
        self, player_uuid: str, now: Optional[datetime] = None
    ) -> XPStatistics:
        """Total, weekly and daily XP plus the most rewarding source."""
        now = now or utc_now()

        async with self._gateway.session("ledger_statistics") as session:
            total = await self.total_experience(player_uuid, session=session)
            weekly = await self.sum_since(
                player_uuid, EventKind.XP_GAIN, now - timedelta(days=7), session=session
            )
            daily = await self.sum_since(
                player_uuid, EventKind.XP_GAIN, now - timedelta(hours=24), session=session
            )
            count = await self._gateway.scalar(
                select(func.count(XPEvent.id)).where(
                    XPEvent.uuid == player_uuid,
                    XPEvent.event_kind == EventKind.XP_GAIN,
                ),
                session=session,
            )
            breakdown = await self.breakdown_by_source(player_uuid, session=session)

        return XPStatistics(
            player_uuid=player_uuid,
            total=total,
            last_7_days=weekly,
            last_24_hours=daily,
            event_count=int(count or 0),
            most_active_source=next(iter(breakdown), None),
        )

    # ========================================================================
    # LEADERBOARDS
    # ========================================================================

    async def top_players_by_experience(
        self,
        limit: int = 10,
        days: Optional[int] = None,
        *,
        now: Optional[datetime] = None,
    ) -> List[Tuple[str, str, int]]:
        """(uuid, display_name, total) for the highest XP totals, optionally recent only."""
        self.validate_positive_int(limit, "limit")

        total = func.sum(XPEvent.amount).label("total")
        stmt = (
            select(XPEvent.uuid, PlayerIdentity.display_name, total)
            .join(PlayerIdentity, PlayerIdentity.uuid == XPEvent.uuid)
            .where(XPEvent.event_kind == EventKind.XP_GAIN)
            .group_by(XPEvent.uuid, PlayerIdentity.display_name)
            .order_by(total.desc(), XPEvent.uuid)
            .limit(limit)
        )
        if days is not None:
            self.validate_positive_int(days, "days")
            stmt = stmt.where(XPEvent.occurred_at >= (now or utc_now()) - timedelta(days=days))

        return await self._gateway.query(
            stmt,
            mapper=lambda row: (row.uuid, row.display_name, int(row.total)),
            operation="ledger_top_players",
        )

    async def experience_position(self, player_uuid: str) -> Optional[int]:
        """
        1-based leaderboard position by total XP, or None without any XP events.

        Players with equal totals share a position.
        """
        async with self._gateway.session("ledger_position") as session:
            has_events = await self._gateway.scalar(
                select(func.count(XPEvent.id)).where(
                    XPEvent.uuid == player_uuid,
                    XPEvent.event_kind == EventKind.XP_GAIN,
                ),
                session=session,
            )
            if not has_events:
                return None

            own_total = await self.total_experience(player_uuid, session=session)

            totals = (
                select(XPEvent.uuid, func.sum(XPEvent.amount).label("total"))
                .where(XPEvent.event_kind == EventKind.XP_GAIN)
                .group_by(XPEvent.uuid)
                .subquery()
            )
            ahead = await self._gateway.scalar(
                select(func.count()).select_from(totals).where(totals.c.total > own_total),
                session=session,
            )

        return int(ahead or 0) + 1
