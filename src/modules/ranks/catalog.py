"""
Rank Catalog
============

Purpose
-------
The fixed, ordered ladder of 175 rank positions (25 primary tiers x 7 sub
tiers) with their playtime and achievement thresholds, display names and
optional rewards.

Responsibilities
----------------
- Generate every position from the rank formulas
- Seed ``rank_definitions`` once when the table is empty, then serve
  lookups from memory
- Answer threshold / next-position / display lookups
- Administrative reward edits

Non-Responsibilities
--------------------
- Deciding promotions (ProgressionEngine)
- Delivering rewards (downstream adapters listening to rank.promoted)

Architecture Notes
------------------
- ``RankPosition`` is a NamedTuple, so positions compare lexicographically
  and ``(2, 1) > (1, 7)`` holds.
- The procedural formula is authoritative; seeded rows are derived from it
  and never regenerated while the table has rows.
- Lookups outside the catalog raise InvariantViolation.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Dict, Iterator, List, NamedTuple, Optional, Sequence, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.exceptions import InvariantViolation
from src.core.logging.logger import get_logger
from src.database.models import RankDefinition
from src.modules.ranks import formulas
from src.modules.ranks.formulas import PRIMARY_TIERS, SUB_TIERS, TOTAL_POSITIONS

if TYPE_CHECKING:
    from src.core.database.gateway import PersistenceGateway


logger = get_logger(__name__)


# ============================================================================
# Value Types
# ============================================================================


class RankPosition(NamedTuple):
    primary_tier: int
    sub_tier: int

    def __str__(self) -> str:
        return f"{self.primary_tier}.{self.sub_tier}"


FIRST_POSITION = RankPosition(1, 1)
LAST_POSITION = RankPosition(PRIMARY_TIERS, SUB_TIERS)


class Threshold(NamedTuple):
    minutes: int
    achievements: int


@dataclass(frozen=True)
class RankInfo:
    """One catalog position as served to callers."""

    position: RankPosition
    display_name: str
    tier_name: str
    sub_tier_name: str
    required_minutes: int
    required_achievements: int
    external_role_ref: Optional[str] = None
    reward_amount: int = 0
    reward_commands: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def threshold(self) -> Threshold:
        return Threshold(self.required_minutes, self.required_achievements)

    @property
    def has_rewards(self) -> bool:
        return self.reward_amount > 0 or bool(self.reward_commands)

    @classmethod
    def generate(cls, primary_tier: int, sub_tier: int) -> "RankInfo":
        return cls(
            position=RankPosition(primary_tier, sub_tier),
            display_name=formulas.display_name(primary_tier, sub_tier),
            tier_name=formulas.MAIN_RANK_NAMES[primary_tier - 1],
            sub_tier_name=formulas.SUB_RANK_NAMES[sub_tier - 1],
            required_minutes=formulas.required_minutes(primary_tier, sub_tier),
            required_achievements=formulas.required_achievements(primary_tier, sub_tier),
        )

    @classmethod
    def from_model(cls, row: RankDefinition) -> "RankInfo":
        return cls(
            position=RankPosition(row.primary_tier, row.sub_tier),
            display_name=row.display_name,
            tier_name=row.tier_name,
            sub_tier_name=row.sub_tier_name,
            required_minutes=row.required_minutes,
            required_achievements=row.required_achievements,
            external_role_ref=row.external_role_ref,
            reward_amount=row.reward_amount or 0,
            reward_commands=tuple(row.reward_commands or ()),
        )


def iter_positions() -> Iterator[RankPosition]:
    """Every catalog position in ladder order."""
    for primary in range(1, PRIMARY_TIERS + 1):
        for sub in range(1, SUB_TIERS + 1):
            yield RankPosition(primary, sub)


# ============================================================================
# RankCatalog
# ============================================================================


class RankCatalog:
    """
    In-memory view of the rank ladder, optionally backed by ``rank_definitions``.

    Usable without a gateway (pure lookups over the generated ladder); with
    one, ``ensure_seeded()`` persists the ladder and loads stored rewards.
    """

    def __init__(self, gateway: Optional[PersistenceGateway] = None) -> None:
        self._gateway = gateway
        self._entries: Dict[RankPosition, RankInfo] = {
            position: RankInfo.generate(*position) for position in iter_positions()
        }

    # ========================================================================
    # Lookups
    # ========================================================================

    def __len__(self) -> int:
        return len(self._entries)

    def definition(self, primary_tier: int, sub_tier: int) -> RankInfo:
        formulas.validate_position(primary_tier, sub_tier)
        return self._entries[RankPosition(primary_tier, sub_tier)]

    def threshold_for(self, primary_tier: int, sub_tier: int) -> Threshold:
        return self.definition(primary_tier, sub_tier).threshold

    @staticmethod
    def next_position(primary_tier: int, sub_tier: int) -> Optional[RankPosition]:
        """Following position, wrapping sub tier 7 into the next primary tier; None at the top."""
        formulas.validate_position(primary_tier, sub_tier)
        if sub_tier < SUB_TIERS:
            return RankPosition(primary_tier, sub_tier + 1)
        if primary_tier < PRIMARY_TIERS:
            return RankPosition(primary_tier + 1, 1)
        return None

    @staticmethod
    def position_index(primary_tier: int, sub_tier: int) -> int:
        return formulas.position_index(primary_tier, sub_tier)

    @staticmethod
    def progress_label(primary_tier: int, sub_tier: int) -> str:
        return formulas.progress_label(primary_tier, sub_tier)

    def entries(self) -> List[RankInfo]:
        return [self._entries[position] for position in iter_positions()]

    # ========================================================================
    # Persistence
    # ========================================================================

    def _require_gateway(self) -> PersistenceGateway:
        if self._gateway is None:
            raise RuntimeError("RankCatalog was built without a gateway")
        return self._gateway

    async def ensure_seeded(self, session: Optional[AsyncSession] = None) -> int:
        """
        Insert the generated ladder when ``rank_definitions`` is empty, then
        load stored rewards into memory.

        Returns:
            Number of rows inserted (0 when the table was already seeded)
        """
        gateway = self._require_gateway()

        if session is None:
            async with gateway.transaction("rank_catalog_seed") as own:
                return await self.ensure_seeded(own)

        existing = await gateway.scalar(
            select(func.count(RankDefinition.id)), session=session
        )

        inserted = 0
        if not existing:
            rows = [
                {
                    "primary_tier": info.position.primary_tier,
                    "sub_tier": info.position.sub_tier,
                    "display_name": info.display_name,
                    "tier_name": info.tier_name,
                    "sub_tier_name": info.sub_tier_name,
                    "required_minutes": info.required_minutes,
                    "required_achievements": info.required_achievements,
                    "reward_amount": 0,
                    "reward_commands": [],
                }
                for info in self.entries()
            ]
            await gateway.execute(
                RankDefinition.__table__.insert(), rows, session=session
            )
            inserted = len(rows)
            logger.info("Rank catalog seeded", extra={"positions": inserted})
        elif existing != TOTAL_POSITIONS:
            logger.warning(
                "Rank catalog table is incomplete; missing positions use generated values",
                extra={"stored": existing, "expected": TOTAL_POSITIONS},
            )

        stored = await gateway.query(
            select(RankDefinition),
            mapper=lambda row: RankInfo.from_model(row[0]),
            session=session,
        )
        # Thresholds always come from the formula; stored rows carry rewards
        for info in stored:
            if info.position in self._entries:
                self._entries[info.position] = replace(
                    self._entries[info.position],
                    external_role_ref=info.external_role_ref,
                    reward_amount=info.reward_amount,
                    reward_commands=info.reward_commands,
                )

        return inserted

    async def set_reward(
        self,
        primary_tier: int,
        sub_tier: int,
        amount: int,
        commands: Sequence[str] = (),
        *,
        external_role_ref: Optional[str] = None,
    ) -> RankInfo:
        """Replace the rewards attached to one position."""
        formulas.validate_position(primary_tier, sub_tier)
        if amount < 0:
            raise InvariantViolation("reward_amount", "reward amount must be >= 0")

        gateway = self._require_gateway()
        values = {"reward_amount": amount, "reward_commands": list(commands)}
        if external_role_ref is not None:
            values["external_role_ref"] = external_role_ref

        await gateway.execute(
            update(RankDefinition)
            .where(
                RankDefinition.primary_tier == primary_tier,
                RankDefinition.sub_tier == sub_tier,
            )
            .values(**values),
            operation="rank_set_reward",
        )

        position = RankPosition(primary_tier, sub_tier)
        info = replace(
            self._entries[position],
            reward_amount=amount,
            reward_commands=tuple(commands),
            external_role_ref=(
                external_role_ref
                if external_role_ref is not None
                else self._entries[position].external_role_ref
            ),
        )
        self._entries[position] = info

        logger.info(
            "Rank reward updated",
            extra={
                "position": str(position),
                "reward_amount": amount,
                "reward_commands": len(info.reward_commands),
            },
        )
        return info
