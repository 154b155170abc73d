"""
Verification State Machine
==========================

Purpose
-------
Tracks whether a player identity has been linked to, and confirmed by, an
external chat-platform account:

    UNVERIFIED --begin--> PURGATORY --complete--> VERIFIED

Responsibilities
----------------
- Register sightings (create/refresh the identity row, detect the
  alternate client by its name prefix)
- Apply transitions with a conditional UPDATE guarded on the expected
  current state, so two racing calls cannot both succeed
- Answer whitelist/verification questions, including purgatory expiry

Non-Responsibilities
--------------------
- Issuing or checking verification codes (chat-bot surface)
- Kicking players whose purgatory expired (caller decides; expiry here is
  advisory only)

Architecture Notes
------------------
- No state may be skipped and VERIFIED is terminal.
- ``reset_to_unverified`` is the one administrative backwards move, allowed
  from PURGATORY only.
- ``verification.state_changed`` is published after each committed
  transition.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.database.base import as_utc, utc_now
from src.core.exceptions import InvalidStateTransition, InvariantViolation, PlayerNotFound
from src.core.logging.logger import LogContext, get_logger
from src.database.models import PlatformFlag, PlayerIdentity, VerificationState
from src.modules.shared.base_service import BaseService

if TYPE_CHECKING:
    from logging import Logger

    from src.core.config.settings import VerificationSettings
    from src.core.database.gateway import PersistenceGateway
    from src.core.event_bus import EventBus


STATE_CHANGED = "verification.state_changed"


# ============================================================================
# Value Types
# ============================================================================


@dataclass(frozen=True)
class VerificationRecord:
    player_uuid: str
    state: VerificationState
    external_id: Optional[str]
    external_name: Optional[str]
    platform: PlatformFlag
    linked_at: Optional[datetime]
    verified_at: Optional[datetime]

    @classmethod
    def from_model(cls, row: PlayerIdentity) -> "VerificationRecord":
        return cls(
            player_uuid=row.uuid,
            state=VerificationState(row.verification_state),
            external_id=row.external_id,
            external_name=row.external_name,
            platform=PlatformFlag(row.platform_flag),
            linked_at=as_utc(row.linked_at),
            verified_at=as_utc(row.verified_at),
        )


@dataclass(frozen=True)
class Sighting:
    """Result of registering that a player was seen."""

    record: VerificationRecord
    display_name: str
    is_new: bool
    previous_seen_at: Optional[datetime]
    seen_at: datetime


# ============================================================================
# VerificationService
# ============================================================================


class VerificationService(BaseService):
    """
    Three-state identity verification backed by the ``identity`` table.

    Public Methods
    --------------
    - register_sighting() -> Upsert identity on every connection
    - begin_verification() -> UNVERIFIED to PURGATORY
    - complete_verification() -> PURGATORY to VERIFIED
    - reset_to_unverified() -> PURGATORY back to UNVERIFIED
    - get_record() / is_verified() / is_whitelisted() / is_expired()
    - expired_sessions() -> PURGATORY records past their timeout
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        settings: VerificationSettings,
        event_bus: Optional[EventBus] = None,
        logger: Optional[Logger] = None,
    ) -> None:
        super().__init__(event_bus, logger or get_logger(__name__))
        self._gateway = gateway
        self._settings = settings

    # ========================================================================
    # Reads
    # ========================================================================

    async def _load(
        self,
        player_uuid: str,
        session: Optional[AsyncSession] = None,
        *,
        for_update: bool = False,
    ) -> Optional[VerificationRecord]:
        stmt = select(PlayerIdentity).where(PlayerIdentity.uuid == player_uuid)
        if for_update:
            stmt = stmt.with_for_update()
        rows = await self._gateway.query(
            stmt,
            mapper=lambda row: VerificationRecord.from_model(row[0]),
            session=session,
            operation="verification_load",
        )
        return rows[0] if rows else None

    async def get_record(
        self, player_uuid: str, *, session: Optional[AsyncSession] = None
    ) -> VerificationRecord:
        """
        Raises:
            PlayerNotFound: If the player has never been seen
        """
        record = await self._load(player_uuid, session)
        if record is None:
            raise PlayerNotFound(player_uuid)
        return record

    def is_expired(self, record: VerificationRecord, now: Optional[datetime] = None) -> bool:
        """True only for PURGATORY records whose timeout has elapsed."""
        if record.state is not VerificationState.PURGATORY or record.linked_at is None:
            return False
        now = as_utc(now) or utc_now()
        return record.linked_at + self._settings.purgatory_timeout <= now

    async def is_verified(self, player_uuid: str) -> bool:
        record = await self._load(player_uuid)
        return record is not None and record.state is VerificationState.VERIFIED

    async def is_whitelisted(self, player_uuid: str, now: Optional[datetime] = None) -> bool:
        """VERIFIED players, plus PURGATORY players whose session has not expired."""
        record = await self._load(player_uuid)
        if record is None:
            return False
        if record.state is VerificationState.VERIFIED:
            return True
        return record.state is VerificationState.PURGATORY and not self.is_expired(record, now)

    async def expired_sessions(self, now: Optional[datetime] = None) -> List[VerificationRecord]:
        now = as_utc(now) or utc_now()
        stmt = (
            select(PlayerIdentity)
            .where(
                PlayerIdentity.verification_state == VerificationState.PURGATORY,
                PlayerIdentity.linked_at <= now - self._settings.purgatory_timeout,
            )
            .order_by(PlayerIdentity.linked_at)
        )
        return await self._gateway.query(
            stmt,
            mapper=lambda row: VerificationRecord.from_model(row[0]),
            operation="expired_sessions",
        )

    # ========================================================================
    # Sightings
    # ========================================================================

    def platform_for(self, display_name: str) -> PlatformFlag:
        prefix = self._settings.alternate_client_prefix
        if prefix and display_name.startswith(prefix):
            return PlatformFlag.ALTERNATE
        return PlatformFlag.PRIMARY

    async def register_sighting(
        self,
        player_uuid: str,
        display_name: str,
        server: Optional[str] = None,
        seen_at: Optional[datetime] = None,
        *,
        session: Optional[AsyncSession] = None,
    ) -> Sighting:
        """
        Create the identity on first contact, otherwise refresh its display
        name, platform flag, server and last-seen time.

        ``last_seen_at`` never moves backwards.
        """
        self.validate_player_uuid(player_uuid)
        if not display_name:
            raise InvariantViolation("display_name", "display name is required")

        if session is None:
            async with self._gateway.transaction("register_sighting") as own:
                return await self.register_sighting(
                    player_uuid, display_name, server, seen_at, session=own
                )

        seen_at = as_utc(seen_at) or utc_now()
        platform = self.platform_for(display_name)

        previous = await self._gateway.query(
            select(PlayerIdentity.last_seen_at)
            .where(PlayerIdentity.uuid == player_uuid)
            .with_for_update(),
            session=session,
        )

        is_new = False
        previous_seen_at: Optional[datetime] = None
        if not previous:
            is_new = await self._gateway.insert_if_absent(
                PlayerIdentity,
                {
                    "uuid": player_uuid,
                    "display_name": display_name,
                    "verification_state": VerificationState.UNVERIFIED,
                    "platform_flag": platform,
                    "first_seen_at": seen_at,
                    "last_seen_at": seen_at,
                    "last_server": server,
                },
                session=session,
                operation="identity_create",
            )

        if not is_new:
            if previous:
                previous_seen_at = as_utc(previous[0].last_seen_at)
            last_seen = max(seen_at, previous_seen_at) if previous_seen_at else seen_at
            await self._gateway.execute(
                update(PlayerIdentity)
                .where(PlayerIdentity.uuid == player_uuid)
                .values(
                    display_name=display_name,
                    platform_flag=platform,
                    last_seen_at=last_seen,
                    last_server=server,
                )
                .execution_options(synchronize_session=False),
                session=session,
                operation="identity_refresh",
            )

        record = await self.get_record(player_uuid, session=session)
        if is_new:
            self.log.info(
                "New player identity registered",
                extra={"player_uuid": player_uuid, "platform": platform.value, "server": server},
            )

        return Sighting(
            record=record,
            display_name=display_name,
            is_new=is_new,
            previous_seen_at=previous_seen_at,
            seen_at=seen_at,
        )

    # ========================================================================
    # Transitions
    # ========================================================================

    async def _guarded_transition(
        self,
        player_uuid: str,
        expected: VerificationState,
        requested: str,
        values: dict,
        session: AsyncSession,
    ) -> None:
        """Apply ``values`` only if the record is still in ``expected``."""
        changed = await self._gateway.execute(
            update(PlayerIdentity)
            .where(
                PlayerIdentity.uuid == player_uuid,
                PlayerIdentity.verification_state == expected,
            )
            .values(**values)
            .execution_options(synchronize_session=False),
            session=session,
            operation=requested,
        )
        if changed == 1:
            return

        current = await self._load(player_uuid, session)
        if current is None:
            raise PlayerNotFound(player_uuid)
        raise InvalidStateTransition(player_uuid, current.state.value, requested)

    async def begin_verification(
        self,
        player_uuid: str,
        external_id: str,
        external_name: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> VerificationRecord:
        """
        Link an external account and move UNVERIFIED to PURGATORY.

        Raises:
            InvalidStateTransition: If the record is not UNVERIFIED, or the
                external account is already linked to another player
            PlayerNotFound: If the player has never been seen
        """
        if not external_id:
            raise InvariantViolation("external_id", "external account id is required")
        now = as_utc(now) or utc_now()

        async with LogContext(player_uuid=player_uuid, operation="begin_verification"):
            async with self._gateway.transaction("begin_verification") as session:
                owner = await self._gateway.scalar(
                    select(PlayerIdentity.uuid).where(
                        PlayerIdentity.external_id == external_id,
                        PlayerIdentity.uuid != player_uuid,
                    ),
                    session=session,
                )
                if owner is not None:
                    current = await self.get_record(player_uuid, session=session)
                    raise InvalidStateTransition(
                        player_uuid,
                        current.state.value,
                        "begin_verification",
                        reason="external account is linked to another player",
                    )

                await self._guarded_transition(
                    player_uuid,
                    VerificationState.UNVERIFIED,
                    "begin_verification",
                    {
                        "verification_state": VerificationState.PURGATORY,
                        "external_id": external_id,
                        "external_name": external_name,
                        "linked_at": now,
                    },
                    session,
                )
                record = await self.get_record(player_uuid, session=session)

            self.log_operation("begin_verification", external_id=external_id)
            await self._publish_change(
                player_uuid, VerificationState.UNVERIFIED, VerificationState.PURGATORY
            )
        return record

    async def complete_verification(
        self, player_uuid: str, now: Optional[datetime] = None
    ) -> VerificationRecord:
        """
        Move PURGATORY to VERIFIED.

        Raises:
            InvalidStateTransition: From UNVERIFIED or VERIFIED
            PlayerNotFound: If the player has never been seen
        """
        now = as_utc(now) or utc_now()

        async with LogContext(player_uuid=player_uuid, operation="complete_verification"):
            async with self._gateway.transaction("complete_verification") as session:
                await self._guarded_transition(
                    player_uuid,
                    VerificationState.PURGATORY,
                    "complete_verification",
                    {"verification_state": VerificationState.VERIFIED, "verified_at": now},
                    session,
                )
                record = await self.get_record(player_uuid, session=session)

            self.log_operation("complete_verification")
            await self._publish_change(
                player_uuid, VerificationState.PURGATORY, VerificationState.VERIFIED
            )
        return record

    async def reset_to_unverified(self, player_uuid: str) -> VerificationRecord:
        """
        Force an expired or abandoned PURGATORY record back to UNVERIFIED,
        clearing the external linkage.

        Raises:
            InvalidStateTransition: If the record is not in PURGATORY
        """
        async with LogContext(player_uuid=player_uuid, operation="reset_to_unverified"):
            async with self._gateway.transaction("reset_to_unverified") as session:
                await self._guarded_transition(
                    player_uuid,
                    VerificationState.PURGATORY,
                    "reset_to_unverified",
                    {
                        "verification_state": VerificationState.UNVERIFIED,
                        "external_id": None,
                        "external_name": None,
                        "linked_at": None,
                    },
                    session,
                )
                record = await self.get_record(player_uuid, session=session)

            self.log_operation("reset_to_unverified")
            await self._publish_change(
                player_uuid, VerificationState.PURGATORY, VerificationState.UNVERIFIED
            )
        return record

    async def _publish_change(
        self,
        player_uuid: str,
        previous: VerificationState,
        current: VerificationState,
    ) -> None:
        await self.emit_event(
            STATE_CHANGED,
            {"player_uuid": player_uuid, "from": previous.value, "to": current.value},
        )
