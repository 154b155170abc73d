"""
Player Ledger Service - Public Facade
====================================

Purpose
-------
The single entry point used by upstream collaborators (proxy connection
hooks, chat-bot commands, permission/economy adapters). Composes the
verification state machine, the rate limiter, the event ledger and the
progression engine.

Domain
------
- Sightings: identity refresh plus playtime accrual
- Gain requests: rate check, experience modifiers, append
- Rank and verification queries
- Verification transitions

Architecture Notes
------------------
- ``request_gain`` returns a typed GainResult instead of raising for the
  expected outcomes (rate limited, storage unavailable). Storage failures
  are reported at once and never retried inline.
- Rate check and append share one transaction that first locks the
  player's identity row, so concurrent gains for the same player cannot
  both squeeze under a cap.
- Promotions triggered by new playtime or achievements are evaluated after
  the accrual commits.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from sqlalchemy import select

from src.core.database.base import as_utc, utc_now
from src.core.exceptions import (
    InvariantViolation,
    PlayerNotFound,
    StorageUnavailable,
)
from src.core.logging.logger import LogContext, get_logger
from src.database.models import EventKind, PlayerIdentity, VerificationState
from src.modules.ledger.rate_limiter import RateDecision
from src.modules.ledger.service import LedgerEvent
from src.modules.ranks.catalog import RankPosition
from src.modules.shared.base_service import BaseService

if TYPE_CHECKING:
    from logging import Logger

    from src.core.config.settings import ProgressionSettings
    from src.core.database.gateway import PersistenceGateway
    from src.core.event_bus import EventBus
    from src.modules.ledger.rate_limiter import RateLimiter
    from src.modules.ledger.service import EventLedger
    from src.modules.progression.service import (
        ProgressionEngine,
        ProgressSnapshot,
        Promotion,
    )
    from src.modules.ranks.catalog import RankCatalog
    from src.modules.verification.service import (
        Sighting,
        VerificationRecord,
        VerificationService,
    )


GAIN_ACCEPTED = "ledger.gain_accepted"

# Written only by the progression engine
_ENGINE_OWNED_KINDS = frozenset({EventKind.RANK_PROMOTION, EventKind.REWARD_PROCESSING})


# ============================================================================
# Result Types
# ============================================================================


class GainStatus(str, Enum):
    ACCEPTED = "ACCEPTED"
    RATE_LIMITED = "RATE_LIMITED"
    STORAGE_UNAVAILABLE = "STORAGE_UNAVAILABLE"
    DUPLICATE = "DUPLICATE"


@dataclass(frozen=True)
class GainResult:
    """Outcome of a gain request."""

    status: GainStatus
    credited_amount: int = 0
    decision: Optional[RateDecision] = None
    error: Optional[str] = None

    @property
    def accepted(self) -> bool:
        return self.status is GainStatus.ACCEPTED

    @property
    def is_retryable(self) -> bool:
        return self.status is GainStatus.STORAGE_UNAVAILABLE


@dataclass(frozen=True)
class CurrentRank:
    primary_tier: int
    sub_tier: int
    display_name: str

    @property
    def position(self) -> RankPosition:
        return RankPosition(self.primary_tier, self.sub_tier)


# ============================================================================
# PlayerLedgerService
# ============================================================================


class PlayerLedgerService(BaseService):
    """
    Facade over the ledger, limiter, engine and verification state machine.

    Public Methods
    --------------
    - player_seen() -> Refresh identity and accrue playtime
    - external_link_requested() / begin_verification() / complete_verification()
    - request_gain() -> GainResult
    - evaluate_promotion() -> Promotion or None
    - is_whitelisted() / is_verified() / current_rank() / total_experience()
    - recent_events() / progress_snapshot()
    - health_check() -> bool
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        ledger: EventLedger,
        limiter: RateLimiter,
        catalog: RankCatalog,
        engine: ProgressionEngine,
        verification: VerificationService,
        settings: ProgressionSettings,
        event_bus: Optional[EventBus] = None,
        logger: Optional[Logger] = None,
    ) -> None:
        super().__init__(event_bus, logger or get_logger(__name__))
        self._gateway = gateway
        self._ledger = ledger
        self._limiter = limiter
        self._catalog = catalog
        self._engine = engine
        self._verification = verification
        self._settings = settings

    # ========================================================================
    # Sightings
    # ========================================================================

    def _accrued_minutes(
        self, previous_seen_at: Optional[datetime], seen_at: datetime
    ) -> int:
        """
        Minute boundaries crossed since the previous sighting, capped at the
        sighting gap. Frequent sightings therefore add up to real time.
        """
        if previous_seen_at is None or seen_at <= previous_seen_at:
            return 0
        crossed = int(seen_at.timestamp() // 60) - int(previous_seen_at.timestamp() // 60)
        cap = int(self._settings.sighting_gap.total_seconds() // 60)
        return max(0, min(crossed, cap))

    async def player_seen(
        self,
        player_uuid: str,
        display_name: str,
        server: Optional[str] = None,
        seen_at: Optional[datetime] = None,
    ) -> Sighting:
        """
        Record that a player is online.

        Creates identity and progress rows on first contact and credits the
        time since the previous sighting (capped) as playtime.
        """
        seen_at = as_utc(seen_at) or utc_now()
        server = server or self._settings.server_name

        async with LogContext(player_uuid=player_uuid, server=server, operation="player_seen"):
            async with self._gateway.transaction("player_seen") as session:
                sighting = await self._verification.register_sighting(
                    player_uuid, display_name, server, seen_at, session=session
                )
                await self._engine.ensure_progress(player_uuid, session=session)

                minutes = self._accrued_minutes(sighting.previous_seen_at, seen_at)
                await self._engine.add_playtime(player_uuid, minutes, session=session)

            if minutes:
                self.log.debug("Playtime accrued", extra={"minutes": minutes})
                await self._engine.evaluate_until_settled(player_uuid)

        return sighting

    # ========================================================================
    # Gains
    # ========================================================================

    def scaled_amount(self, kind: EventKind, source: str, amount: int) -> int:
        """Apply the source family's experience modifier to XP gains."""
        if kind is not EventKind.XP_GAIN or amount <= 0:
            return amount
        return max(1, round(amount * self._settings.modifier_for(source)))

    async def request_gain(
        self,
        player_uuid: str,
        kind: EventKind,
        source: str,
        amount: int,
        metadata: Optional[Dict[str, Any]] = None,
        *,
        occurred_at: Optional[datetime] = None,
    ) -> GainResult:
        """
        Rate-check and append one gain.

        Returns:
            GainResult with ACCEPTED, RATE_LIMITED, STORAGE_UNAVAILABLE, or
            DUPLICATE for an achievement source the player already completed

        Raises:
            PlayerNotFound: If the player has never been seen
            InvariantViolation: For engine-owned kinds or malformed input
        """
        kind = EventKind(kind)
        if kind in _ENGINE_OWNED_KINDS:
            raise InvariantViolation(
                "event_kind", f"{kind.value} events are written by the progression engine"
            )
        if not source:
            raise InvariantViolation("event_source", "gain requests require a source")

        now = as_utc(occurred_at) or utc_now()
        credited = self.scaled_amount(kind, source, amount)

        async with LogContext(player_uuid=player_uuid, operation="request_gain"):
            try:
                async with self._gateway.transaction("request_gain") as session:
                    locked = await self._gateway.query(
                        select(PlayerIdentity.uuid)
                        .where(PlayerIdentity.uuid == player_uuid)
                        .with_for_update(),
                        session=session,
                    )
                    if not locked:
                        raise PlayerNotFound(player_uuid)

                    if kind is EventKind.ACHIEVEMENT and await self._engine.achievement_recorded(
                        player_uuid, source, session=session
                    ):
                        return GainResult(GainStatus.DUPLICATE)

                    decision = await self._limiter.check(
                        player_uuid, kind, source, now, session=session
                    )
                    if not decision.allowed:
                        return GainResult(GainStatus.RATE_LIMITED, decision=decision)

                    await self._ledger.append(
                        LedgerEvent(
                            player_uuid=player_uuid,
                            event_kind=kind,
                            source=source,
                            amount=credited,
                            occurred_at=now,
                            origin_server=self._settings.server_name,
                            metadata=metadata,
                        ),
                        session=session,
                    )
                    if kind is EventKind.ACHIEVEMENT:
                        await self._engine.add_achievements(
                            player_uuid, max(0, credited), session=session
                        )
                    elif kind is EventKind.PLAYTIME_SESSION:
                        await self._engine.add_playtime(
                            player_uuid, max(0, credited), session=session
                        )

            except StorageUnavailable as exc:
                self.log.warning(
                    "Gain not recorded: storage unavailable",
                    extra={
                        "event_kind": kind.value,
                        "source": source,
                        "error": str(exc),
                        "error_type": type(exc).__name__,
                    },
                )
                return GainResult(GainStatus.STORAGE_UNAVAILABLE, error=str(exc))

            await self.emit_event(
                GAIN_ACCEPTED,
                {
                    "player_uuid": player_uuid,
                    "event_kind": kind.value,
                    "source": source,
                    "amount": credited,
                },
            )

            if kind in (EventKind.ACHIEVEMENT, EventKind.PLAYTIME_SESSION):
                await self._evaluate_after_gain(player_uuid)

        return GainResult(GainStatus.ACCEPTED, credited_amount=credited, decision=decision)

    async def _evaluate_after_gain(self, player_uuid: str) -> None:
        # The gain is committed; a failed evaluation is picked up by the next one
        try:
            await self._engine.evaluate_until_settled(player_uuid)
        except StorageUnavailable as exc:
            self.log.warning(
                "Promotion evaluation deferred: storage unavailable",
                extra={"error": str(exc), "error_type": type(exc).__name__},
            )

    # ========================================================================
    # Progression
    # ========================================================================

    async def evaluate_promotion(self, player_uuid: str) -> Optional[Promotion]:
        return await self._engine.evaluate(player_uuid)

    async def current_rank(self, player_uuid: str) -> CurrentRank:
        """
        Raises:
            PlayerNotFound: If the player has no progress row
        """
        snapshot = await self._engine.progress_snapshot(player_uuid)
        return CurrentRank(
            primary_tier=snapshot.position.primary_tier,
            sub_tier=snapshot.position.sub_tier,
            display_name=snapshot.display_name,
        )

    async def progress_snapshot(self, player_uuid: str) -> ProgressSnapshot:
        return await self._engine.progress_snapshot(player_uuid)

    async def total_experience(self, player_uuid: str) -> int:
        return await self._ledger.total_experience(player_uuid)

    async def recent_events(self, player_uuid: str, limit: int = 10) -> List[LedgerEvent]:
        return await self._ledger.recent(player_uuid, limit)

    # ========================================================================
    # Verification
    # ========================================================================

    async def is_whitelisted(self, player_uuid: str) -> bool:
        return await self._verification.is_whitelisted(player_uuid)

    async def is_verified(self, player_uuid: str) -> bool:
        return await self._verification.is_verified(player_uuid)

    async def begin_verification(
        self, player_uuid: str, external_id: str, external_name: Optional[str] = None
    ) -> VerificationRecord:
        return await self._verification.begin_verification(
            player_uuid, external_id, external_name
        )

    async def complete_verification(self, player_uuid: str) -> VerificationRecord:
        return await self._verification.complete_verification(player_uuid)

    async def external_link_requested(
        self,
        player_uuid: str,
        external_id: str,
        external_name: Optional[str] = None,
    ) -> VerificationRecord:
        """
        Start verification, first releasing an expired purgatory session so
        the player can request a new link.
        """
        record = await self._verification.get_record(player_uuid)
        if (
            record.state is VerificationState.PURGATORY
            and self._verification.is_expired(record)
        ):
            self.log.info(
                "Resetting expired purgatory session before relinking",
                extra={"player_uuid": player_uuid},
            )
            await self._verification.reset_to_unverified(player_uuid)

        return await self._verification.begin_verification(
            player_uuid, external_id, external_name
        )

    # ========================================================================
    # Health
    # ========================================================================

    async def health_check(self) -> bool:
        return await self._gateway.health_check()
