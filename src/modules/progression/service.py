"""
Progression Engine
==================

Purpose
-------
Converts a player's accumulated playtime and achievements into a position
on the rank ladder, one step at a time, and records every promotion in
the event ledger.

Domain
------
- Playtime accrual (sightings and explicit sessions)
- Achievement completion
- Promotion evaluation with compare-and-set semantics
- Progress reporting and leaderboards

Architecture Notes
------------------
- Every promotion runs in one gateway transaction: lock the progress row,
  check the next threshold, compare-and-set the position, append the
  RANK_PROMOTION row (and REWARD_PROCESSING when the rank has rewards).
- The compare-and-set is guarded on the position that was read, so two
  racing evaluations can never both promote.
- ``rank.promoted`` is published only after the transaction commits.
- Positions only move forward; nothing in this module lowers a rank.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.database.base import as_utc, utc_now
from src.core.exceptions import InvariantViolation, PlayerNotFound
from src.core.logging.logger import LogContext, get_logger
from src.database.models import (
    EventKind,
    PlayerIdentity,
    PlayerProgress,
    RankDefinition,
    XPEvent,
)
from src.modules.ledger.service import LedgerEvent
from src.modules.ranks.catalog import FIRST_POSITION, RankPosition, Threshold
from src.modules.ranks.formulas import SUB_TIERS, TOTAL_POSITIONS, validate_position
from src.modules.shared.base_service import BaseService

if TYPE_CHECKING:
    from logging import Logger

    from src.core.config.settings import ProgressionSettings
    from src.core.database.gateway import PersistenceGateway
    from src.core.event_bus import EventBus
    from src.modules.ledger.service import EventLedger
    from src.modules.ranks.catalog import RankCatalog


RANK_PROMOTED = "rank.promoted"
DEFAULT_PROMOTION_REASON = "Requirements met"
SESSION_SOURCE = "Session"
ACHIEVEMENT_SOURCE_PREFIX = "advancement:"


# ============================================================================
# Value Types
# ============================================================================


@dataclass(frozen=True)
class Promotion:
    """One committed rank step."""

    player_uuid: str
    from_position: RankPosition
    to_position: RankPosition
    display_name: str
    reason: str
    promoted_at: datetime
    reward_amount: int = 0
    reward_commands: Tuple[str, ...] = field(default_factory=tuple)
    external_role_ref: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "player_uuid": self.player_uuid,
            "from": str(self.from_position),
            "to": str(self.to_position),
            "display_name": self.display_name,
            "reason": self.reason,
            "promoted_at": self.promoted_at.isoformat(),
            "reward_amount": self.reward_amount,
            "reward_commands": list(self.reward_commands),
            "external_role_ref": self.external_role_ref,
        }


@dataclass(frozen=True)
class ProgressSnapshot:
    """Current position, totals and the distance to the next position."""

    player_uuid: str
    position: RankPosition
    display_name: str
    playtime_minutes: int
    achievements_completed: int
    progress_label: str
    next_position: Optional[RankPosition]
    next_threshold: Optional[Threshold]
    last_promotion_at: Optional[datetime]

    @property
    def minutes_remaining(self) -> int:
        if self.next_threshold is None:
            return 0
        return max(0, self.next_threshold.minutes - self.playtime_minutes)

    @property
    def achievements_remaining(self) -> int:
        if self.next_threshold is None:
            return 0
        return max(0, self.next_threshold.achievements - self.achievements_completed)

    @property
    def is_max_rank(self) -> bool:
        return self.next_position is None


# ============================================================================
# ProgressionEngine
# ============================================================================


class ProgressionEngine(BaseService):
    """
    Rank evaluation and progression bookkeeping.

    Public Methods
    --------------
    - evaluate() -> Promote at most one step
    - evaluate_until_settled() -> Promote until requirements stop being met
    - add_playtime() / record_playtime_session() -> Accrue minutes
    - record_achievement() -> Count a completed achievement once
    - progress_snapshot() -> Position and remaining requirements
    - players_needing_update() / top_players_by_playtime() -> Batch queries
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        ledger: EventLedger,
        catalog: RankCatalog,
        settings: ProgressionSettings,
        event_bus: Optional[EventBus] = None,
        logger: Optional[Logger] = None,
    ) -> None:
        super().__init__(event_bus, logger or get_logger(__name__))
        self._gateway = gateway
        self._ledger = ledger
        self._catalog = catalog
        self._settings = settings

    # ========================================================================
    # Row helpers
    # ========================================================================

    async def ensure_progress(self, player_uuid: str, *, session: AsyncSession) -> bool:
        """Create the starting (1,1) progress row if the player has none."""
        return await self._gateway.insert_if_absent(
            PlayerProgress,
            {
                "uuid": player_uuid,
                "primary_tier": FIRST_POSITION.primary_tier,
                "sub_tier": FIRST_POSITION.sub_tier,
                "playtime_minutes": 0,
                "achievements_completed": 0,
                "updated_at": utc_now(),
            },
            session=session,
            operation="ensure_progress",
        )

    async def _read_progress(
        self, player_uuid: str, session: AsyncSession, *, for_update: bool = False
    ):
        stmt = select(
            PlayerProgress.primary_tier,
            PlayerProgress.sub_tier,
            PlayerProgress.playtime_minutes,
            PlayerProgress.achievements_completed,
            PlayerProgress.last_promotion_at,
        ).where(PlayerProgress.uuid == player_uuid)
        if for_update:
            stmt = stmt.with_for_update()

        rows = await self._gateway.query(stmt, session=session)
        if not rows:
            raise PlayerNotFound(player_uuid)
        return rows[0]

    def _stored_position(self, player_uuid: str, row) -> RankPosition:
        position = RankPosition(row.primary_tier, row.sub_tier)
        try:
            validate_position(*position)
        except InvariantViolation as exc:
            self.log.critical(
                "Stored rank position is outside the catalog",
                extra={
                    "player_uuid": player_uuid,
                    "position": str(position),
                    "invariant": exc.invariant,
                },
            )
            raise
        return position

    # ========================================================================
    # PUBLIC API - Promotion
    # ========================================================================

    async def evaluate(
        self, player_uuid: str, reason: str = DEFAULT_PROMOTION_REASON
    ) -> Optional[Promotion]:
        """
        Promote the player by one position if both next-rank thresholds are met.

        Returns:
            The committed Promotion, or None when nothing changed (requirements
            unmet, already at the top, or a concurrent evaluation won)

        Raises:
            PlayerNotFound: If the player has no progress row
            InvariantViolation: If the stored position is outside the catalog
        """
        self.validate_player_uuid(player_uuid)

        async with LogContext(player_uuid=player_uuid, operation="evaluate_promotion"):
            promotion = await self._evaluate_once(player_uuid, reason)

            if promotion is not None:
                self.log.info(
                    "Player promoted",
                    extra={
                        "from_position": str(promotion.from_position),
                        "to_position": str(promotion.to_position),
                        "reason": reason,
                    },
                )
                await self.emit_event(RANK_PROMOTED, promotion.to_payload())

        return promotion

    async def _evaluate_once(self, player_uuid: str, reason: str) -> Optional[Promotion]:
        async with self._gateway.transaction("evaluate_promotion") as session:
            row = await self._read_progress(player_uuid, session, for_update=True)
            current = self._stored_position(player_uuid, row)

            target = self._catalog.next_position(*current)
            if target is None:
                return None

            threshold = self._catalog.threshold_for(*target)
            if (
                row.playtime_minutes < threshold.minutes
                or row.achievements_completed < threshold.achievements
            ):
                return None

            now = utc_now()
            swapped = await self._gateway.execute(
                update(PlayerProgress)
                .where(
                    PlayerProgress.uuid == player_uuid,
                    PlayerProgress.primary_tier == current.primary_tier,
                    PlayerProgress.sub_tier == current.sub_tier,
                )
                .values(
                    primary_tier=target.primary_tier,
                    sub_tier=target.sub_tier,
                    last_promotion_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False),
                session=session,
                operation="promote",
            )
            if swapped != 1:
                self.log.debug(
                    "Promotion compare-and-set lost",
                    extra={"from_position": str(current), "to_position": str(target)},
                )
                return None

            await self._ledger.log_promotion(
                player_uuid,
                current,
                target,
                reason,
                occurred_at=now,
                origin_server=self._settings.server_name,
                session=session,
            )

            info = self._catalog.definition(*target)
            if info.has_rewards:
                await self._ledger.log_reward_processing(
                    player_uuid,
                    target,
                    info.reward_amount,
                    len(info.reward_commands),
                    occurred_at=now,
                    origin_server=self._settings.server_name,
                    session=session,
                )

            return Promotion(
                player_uuid=player_uuid,
                from_position=current,
                to_position=target,
                display_name=info.display_name,
                reason=reason,
                promoted_at=now,
                reward_amount=info.reward_amount,
                reward_commands=info.reward_commands,
                external_role_ref=info.external_role_ref,
            )

    async def evaluate_until_settled(
        self, player_uuid: str, reason: str = DEFAULT_PROMOTION_REASON
    ) -> List[Promotion]:
        """Repeat `evaluate` until it makes no further progress."""
        promotions: List[Promotion] = []
        # one step per position at most
        for _ in range(TOTAL_POSITIONS):
            promotion = await self.evaluate(player_uuid, reason)
            if promotion is None:
                break
            promotions.append(promotion)
        return promotions

    # ========================================================================
    # PUBLIC API - Accrual
    # ========================================================================

    async def add_playtime(
        self, player_uuid: str, minutes: int, *, session: AsyncSession
    ) -> None:
        """Add whole minutes to the player's playtime inside the caller's transaction."""
        self.validate_non_negative_int(minutes, "minutes")
        if minutes == 0:
            return

        updated = await self._gateway.execute(
            update(PlayerProgress)
            .where(PlayerProgress.uuid == player_uuid)
            .values(
                playtime_minutes=PlayerProgress.playtime_minutes + minutes,
                updated_at=utc_now(),
            )
            .execution_options(synchronize_session=False),
            session=session,
            operation="add_playtime",
        )
        if updated != 1:
            raise PlayerNotFound(player_uuid)

    async def add_achievements(
        self, player_uuid: str, count: int, *, session: AsyncSession
    ) -> None:
        """Add to the completed-achievement counter inside the caller's transaction."""
        self.validate_non_negative_int(count, "count")
        if count == 0:
            return

        updated = await self._gateway.execute(
            update(PlayerProgress)
            .where(PlayerProgress.uuid == player_uuid)
            .values(
                achievements_completed=PlayerProgress.achievements_completed + count,
                updated_at=utc_now(),
            )
            .execution_options(synchronize_session=False),
            session=session,
            operation="add_achievements",
        )
        if updated != 1:
            raise PlayerNotFound(player_uuid)

    async def record_playtime_session(
        self, player_uuid: str, start: datetime, end: datetime
    ) -> int:
        """
        Credit a finished play session.

        Whole minutes are added to playtime and a PLAYTIME_SESSION event is
        appended. Sessions shorter than one minute, or ending before they
        start, are ignored.

        Returns:
            Minutes credited
        """
        self.validate_player_uuid(player_uuid)
        start, end = as_utc(start), as_utc(end)
        minutes = int((end - start).total_seconds() // 60)
        if minutes <= 0:
            self.log.debug(
                "Ignoring empty play session",
                extra={"player_uuid": player_uuid, "start": start.isoformat()},
            )
            return 0

        async with self._gateway.transaction("record_playtime_session") as session:
            await self.add_playtime(player_uuid, minutes, session=session)
            await self._ledger.append(
                LedgerEvent(
                    player_uuid=player_uuid,
                    event_kind=EventKind.PLAYTIME_SESSION,
                    source=SESSION_SOURCE,
                    amount=minutes,
                    occurred_at=end,
                    origin_server=self._settings.server_name,
                    metadata={"start": start.isoformat(), "end": end.isoformat()},
                ),
                session=session,
            )

        self.log_operation(
            "record_playtime_session", player_uuid=player_uuid, minutes=minutes
        )
        return minutes

    async def achievement_recorded(
        self, player_uuid: str, source: str, *, session: AsyncSession
    ) -> bool:
        """
        Whether an ACHIEVEMENT row with this source already exists for the player.

        Locks the player's progress row first, so concurrent completions of the
        same achievement are decided one at a time.
        """
        await self._read_progress(player_uuid, session, for_update=True)
        seen = await self._gateway.scalar(
            select(func.count(XPEvent.id)).where(
                XPEvent.uuid == player_uuid,
                XPEvent.event_kind == EventKind.ACHIEVEMENT,
                XPEvent.source == source,
            ),
            session=session,
        )
        return bool(seen)

    async def record_achievement(
        self,
        player_uuid: str,
        name: str,
        *,
        occurred_at: Optional[datetime] = None,
    ) -> bool:
        """
        Count a completed achievement.

        Each achievement name counts once per player; repeats are ignored.

        Returns:
            True if the achievement was new
        """
        self.validate_player_uuid(player_uuid)
        if not name:
            raise InvariantViolation("achievement_name", "achievement name is required")

        source = f"{ACHIEVEMENT_SOURCE_PREFIX}{name}"

        async with self._gateway.transaction("record_achievement") as session:
            if await self.achievement_recorded(player_uuid, source, session=session):
                return False

            await self.add_achievements(player_uuid, 1, session=session)
            await self._ledger.append(
                LedgerEvent(
                    player_uuid=player_uuid,
                    event_kind=EventKind.ACHIEVEMENT,
                    source=source,
                    amount=1,
                    occurred_at=occurred_at or utc_now(),
                    origin_server=self._settings.server_name,
                ),
                session=session,
            )

        self.log_operation("record_achievement", player_uuid=player_uuid, achievement=name)
        return True

    # ========================================================================
    # PUBLIC API - Reads
    # ========================================================================

    async def progress_snapshot(self, player_uuid: str) -> ProgressSnapshot:
        """
        Raises:
            PlayerNotFound: If the player has no progress row
        """
        async with self._gateway.session("progress_snapshot") as session:
            row = await self._read_progress(player_uuid, session)

        position = self._stored_position(player_uuid, row)
        info = self._catalog.definition(*position)
        target = self._catalog.next_position(*position)

        return ProgressSnapshot(
            player_uuid=player_uuid,
            position=position,
            display_name=info.display_name,
            playtime_minutes=row.playtime_minutes,
            achievements_completed=row.achievements_completed,
            progress_label=self._catalog.progress_label(*position),
            next_position=target,
            next_threshold=self._catalog.threshold_for(*target) if target else None,
            last_promotion_at=as_utc(row.last_promotion_at),
        )

    async def players_needing_update(self, limit: int = 100) -> List[str]:
        """
        Players whose totals already satisfy their next position's thresholds.

        Joins against the seeded ``rank_definitions`` table.
        """
        self.validate_positive_int(limit, "limit")

        next_rank = or_(
            and_(
                PlayerProgress.sub_tier < SUB_TIERS,
                RankDefinition.primary_tier == PlayerProgress.primary_tier,
                RankDefinition.sub_tier == PlayerProgress.sub_tier + 1,
            ),
            and_(
                PlayerProgress.sub_tier == SUB_TIERS,
                RankDefinition.primary_tier == PlayerProgress.primary_tier + 1,
                RankDefinition.sub_tier == 1,
            ),
        )
        stmt = (
            select(PlayerProgress.uuid)
            .join(RankDefinition, next_rank)
            .where(
                PlayerProgress.playtime_minutes >= RankDefinition.required_minutes,
                PlayerProgress.achievements_completed
                >= RankDefinition.required_achievements,
            )
            .order_by(PlayerProgress.uuid)
            .limit(limit)
        )
        return await self._gateway.query(
            stmt, mapper=lambda row: row.uuid, operation="players_needing_update"
        )

    async def top_players_by_playtime(self, limit: int = 10) -> List[Tuple[str, str, int]]:
        """(uuid, display_name, playtime_minutes), most playtime first."""
        self.validate_positive_int(limit, "limit")
        stmt = (
            select(
                PlayerProgress.uuid,
                PlayerIdentity.display_name,
                PlayerProgress.playtime_minutes,
            )
            .join(PlayerIdentity, PlayerIdentity.uuid == PlayerProgress.uuid)
            .order_by(PlayerProgress.playtime_minutes.desc(), PlayerProgress.uuid)
            .limit(limit)
        )
        return await self._gateway.query(
            stmt,
            mapper=lambda row: (row.uuid, row.display_name, row.playtime_minutes),
            operation="top_players_by_playtime",
        )
