"""
Ledger Rate Limiter

Purpose
-------
Guards the event ledger against abuse by rejecting a proposed gain when
the same player has already produced too many events of the same kind
and source recently.

Responsibilities
----------------
- Expose a small async API:
  - `check` -> RateDecision (allow/deny with the violated window)
  - `enforce` -> raises `RateLimited` on deny
- Count prior events over the trailing minute, hour and day and reject
  when any count has reached its cap
- Enforce a short per-(player, kind, source) cooldown between events

Design Decisions
----------------
- Stateless: every decision is derived from ledger rows, so limits survive
  restarts and hold across processes sharing one database.
- Performs no writes. Callers that need check-then-append to be atomic run
  both inside one gateway transaction and pass its session.
- When several windows are at capacity the shortest one is reported.

Dependencies
------------
- `src.modules.ledger.service.EventLedger`
- `src.core.config.settings.RateLimitSettings`
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from src.core.database.base import as_utc, utc_now
from src.core.exceptions import RateLimited
from src.core.logging.logger import get_logger
from src.database.models import EventKind

if TYPE_CHECKING:
    from src.core.config.settings import RateLimitSettings
    from src.modules.ledger.service import EventLedger


logger = get_logger(__name__)

COOLDOWN_WINDOW = "cooldown"


@dataclass(frozen=True)
class RateDecision:
    """
    Outcome of a rate check.

    ``window``/``cap``/``count`` describe the violated window when the gain
    is rejected and are None when it is allowed.
    """

    allowed: bool
    window: Optional[str] = None
    cap: Optional[int] = None
    count: Optional[int] = None
    retry_at: Optional[datetime] = None

    @classmethod
    def allow(cls) -> "RateDecision":
        return cls(allowed=True)


class RateLimiter:
    """Sliding-window caps and cooldown evaluated against the ledger."""

    def __init__(self, ledger: EventLedger, settings: RateLimitSettings) -> None:
        self._ledger = ledger
        self._settings = settings

        logger.debug(
            "RateLimiter initialized",
            extra={
                "per_minute": settings.default_caps.per_minute,
                "per_hour": settings.default_caps.per_hour,
                "per_day": settings.default_caps.per_day,
                "overrides": len(settings.overrides),
                "cooldown_seconds": settings.cooldown_seconds,
            },
        )

    async def check(
        self,
        player_uuid: str,
        kind: EventKind,
        source: str,
        now: Optional[datetime] = None,
        *,
        session: Optional[AsyncSession] = None,
    ) -> RateDecision:
        """
        Decide whether one more event may be appended at ``now``.

        Rejects when a window's prior count is greater than or equal to its
        cap, so exactly ``cap`` events fit in any window.
        """
        now = as_utc(now) or utc_now()

        cooldown = self._settings.cooldown_seconds
        if cooldown > 0:
            last = await self._ledger.last_event_at(
                player_uuid, kind, source, session=session
            )
            if last is not None:
                ready_at = last + timedelta(seconds=cooldown)
                if now < ready_at:
                    return self._deny(
                        player_uuid, kind, source, COOLDOWN_WINDOW, 1, 1, ready_at
                    )

        caps = self._settings.caps_for(kind, source)
        for window, length, cap in caps.windows():
            # Open-ended so rows stamped at or after now still count
            count = await self._ledger.count_in_window(
                player_uuid, kind, source, now - length, session=session
            )
            if count >= cap:
                return self._deny(player_uuid, kind, source, window, cap, count)

        return RateDecision.allow()

    async def enforce(
        self,
        player_uuid: str,
        kind: EventKind,
        source: str,
        now: Optional[datetime] = None,
        *,
        session: Optional[AsyncSession] = None,
    ) -> RateDecision:
        """
        Same as `check` but raises on rejection.

        Raises:
            RateLimited: Carrying the violated window, cap and count
        """
        decision = await self.check(player_uuid, kind, source, now, session=session)
        if not decision.allowed:
            raise RateLimited(
                player_uuid=player_uuid,
                event_kind=EventKind(kind).value,
                source=source,
                window=decision.window,
                cap=decision.cap,
                count=decision.count,
                retry_at=decision.retry_at,
            )
        return decision

    @staticmethod
    def _deny(
        player_uuid: str,
        kind: EventKind,
        source: str,
        window: str,
        cap: int,
        count: int,
        retry_at: Optional[datetime] = None,
    ) -> RateDecision:
        logger.debug(
            "Gain rejected by rate limiter",
            extra={
                "player_uuid": player_uuid,
                "event_kind": EventKind(kind).value,
                "source": source,
                "window": window,
                "cap": cap,
                "count": count,
            },
        )
        return RateDecision(
            allowed=False, window=window, cap=cap, count=count, retry_at=retry_at
        )
