"""
Connection Health Monitor - Background Storage Recovery

Purpose
-------
Periodic background probing of the persistence gateway with automatic
pool recreation and capped exponential backoff while the store is down.

Responsibilities
----------------
- Probe ``gateway.health_check()`` every ``interval_seconds`` while healthy
- On failure: count a retry, recreate the pool, probe again, and back off
  ``min(interval * 2**(retries-1), cap)`` if still down
- Give up after ``max_retries`` failed attempts and ask for manual
  intervention (CRITICAL log + event), without raising
- Surface status through a snapshot (``monitor.status``) and the
  ``storage.health`` EventBus topic

Non-Responsibilities
--------------------
- Retrying business operations (request-time failures are reported to
  callers at once as StorageUnavailable)
- Calling back into services; observers subscribe to ``storage.health``

Architecture Notes
------------------
**Opt-In Design**:
- Nothing runs automatically; the application context creates the task
- Uses asyncio.Event for clean shutdown signaling; sleeping is a wait on
  that event, so stopping never waits out a backoff

**Connection use**:
- Each probe borrows one pooled connection and returns it before sleeping

Usage Example
-------------
>>> stop_event = asyncio.Event()
>>> monitor = ConnectionHealthMonitor(gateway, settings.health, event_bus)
>>> task = asyncio.create_task(monitor.run_forever(stop_event=stop_event))
>>> # ... service runs ...
>>> stop_event.set()
>>> await task

State Transitions
-----------------
**Healthy -> Degraded**: first failed probe; publishes DEGRADED.

**Degraded -> Healthy**: first successful probe after failures; retries reset
to 0 and RECOVERED is published.

**Degraded -> Manual intervention**: ``retries > max_retries``; publishes
MANUAL_INTERVENTION_REQUIRED and the loop ends.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Optional

from src.core.database.base import utc_now
from src.core.logging.logger import get_logger

if TYPE_CHECKING:
    from src.core.config.settings import HealthMonitorSettings
    from src.core.database.gateway import PersistenceGateway
    from src.core.event_bus import EventBus

logger = get_logger(__name__)

STORAGE_HEALTH = "storage.health"


# ============================================================================
# Status
# ============================================================================


class HealthState(str, Enum):
    UNKNOWN = "UNKNOWN"
    HEALTHY = "HEALTHY"
    DEGRADED = "DEGRADED"
    RECOVERED = "RECOVERED"
    MANUAL_INTERVENTION_REQUIRED = "MANUAL_INTERVENTION_REQUIRED"


@dataclass(frozen=True)
class HealthStatus:
    """Immutable snapshot of the monitor's view of storage."""

    state: HealthState = HealthState.UNKNOWN
    retries: int = 0
    checks_total: int = 0
    failures_total: int = 0
    next_delay_seconds: Optional[float] = None
    last_check_at: Optional[datetime] = None
    last_success_at: Optional[datetime] = None
    last_failure_at: Optional[datetime] = None

    @property
    def is_healthy(self) -> bool:
        return self.state in (HealthState.HEALTHY, HealthState.RECOVERED)

    @property
    def requires_intervention(self) -> bool:
        return self.state is HealthState.MANUAL_INTERVENTION_REQUIRED


def compute_backoff(retries: int, base_seconds: float, cap_seconds: float) -> float:
    """
    Delay before the next probe after ``retries`` consecutive failures.

    >>> compute_backoff(4, 5.0, 300.0)
    40.0
    """
    if retries < 1:
        return float(base_seconds)
    return float(min(base_seconds * 2 ** (retries - 1), cap_seconds))


# ============================================================================
# Monitor
# ============================================================================


class ConnectionHealthMonitor:
    """
    Background prober that repairs the gateway's pool and backs off while down.

    Public API
    ----------
    - status -> Current HealthStatus snapshot
    - check_once() -> One probe/recovery cycle; returns the next delay or None
    - run_forever(stop_event) -> Run until stopped or manual intervention
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        settings: HealthMonitorSettings,
        event_bus: Optional[EventBus] = None,
    ) -> None:
        self._gateway = gateway
        self._settings = settings
        self._events = event_bus
        self._status = HealthStatus()

    @property
    def status(self) -> HealthStatus:
        return self._status

    @property
    def settings(self) -> HealthMonitorSettings:
        return self._settings

    async def _publish(self, state: HealthState) -> None:
        if self._events is None:
            return
        await self._events.publish(
            STORAGE_HEALTH,
            {
                "state": state.value,
                "retries": self._status.retries,
                "failures_total": self._status.failures_total,
                "next_delay_seconds": self._status.next_delay_seconds,
            },
        )

    # ========================================================================
    # One cycle
    # ========================================================================

    async def check_once(self) -> Optional[float]:
        """
        Probe once, attempting recovery on failure.

        Returns
        -------
        float or None
            Seconds to wait before the next probe, or None once the monitor
            has given up and manual intervention is required.
        """
        now = utc_now()
        healthy = await self._gateway.health_check()
        self._status = replace(
            self._status, checks_total=self._status.checks_total + 1, last_check_at=now
        )

        if healthy:
            return await self._on_success(now)

        retries = self._status.retries + 1
        self._status = replace(
            self._status,
            retries=retries,
            failures_total=self._status.failures_total + 1,
            last_failure_at=now,
        )

        if retries > self._settings.max_retries:
            self._status = replace(
                self._status,
                state=HealthState.MANUAL_INTERVENTION_REQUIRED,
                next_delay_seconds=None,
            )
            logger.critical(
                "Storage unreachable; manual intervention required",
                extra={
                    "retries": retries,
                    "max_retries": self._settings.max_retries,
                    "failures_total": self._status.failures_total,
                },
            )
            await self._publish(HealthState.MANUAL_INTERVENTION_REQUIRED)
            return None

        first_failure = retries == 1
        if first_failure:
            self._status = replace(self._status, state=HealthState.DEGRADED)

        logger.warning(
            "Storage health check failed; recreating connection pool",
            extra={"retries": retries, "max_retries": self._settings.max_retries},
        )
        await self._gateway.recreate_pool()

        if await self._gateway.health_check():
            return await self._on_success(utc_now())

        delay = compute_backoff(
            retries, self._settings.interval_seconds, self._settings.backoff_cap_seconds
        )
        self._status = replace(self._status, next_delay_seconds=delay)
        logger.info(
            "Storage still unreachable; backing off",
            extra={"retries": retries, "delay_seconds": delay},
        )
        if first_failure:
            await self._publish(HealthState.DEGRADED)
        return delay

    async def _on_success(self, now: datetime) -> float:
        recovered = self._status.retries > 0
        delay = float(self._settings.interval_seconds)
        self._status = replace(
            self._status,
            state=HealthState.RECOVERED if recovered else HealthState.HEALTHY,
            retries=0,
            last_success_at=now,
            next_delay_seconds=delay,
        )
        if recovered:
            logger.info(
                "Storage connection recovered",
                extra={"failures_total": self._status.failures_total},
            )
            await self._publish(HealthState.RECOVERED)
        return delay

    # ========================================================================
    # Loop
    # ========================================================================

    async def run_forever(self, *, stop_event: asyncio.Event) -> None:
        """
        Run probe cycles until ``stop_event`` is set or recovery is abandoned.

        Never raises for storage failures; only unexpected programming errors
        propagate.
        """
        logger.info(
            "ConnectionHealthMonitor started",
            extra={
                "interval_seconds": self._settings.interval_seconds,
                "max_retries": self._settings.max_retries,
                "backoff_cap_seconds": self._settings.backoff_cap_seconds,
            },
        )

        try:
            while not stop_event.is_set():
                delay = await self.check_once()
                if delay is None:
                    break

                # Wait for the delay or the stop signal
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=delay)
                except asyncio.TimeoutError:
                    continue

        except Exception as exc:
            logger.error(
                "Unexpected error in ConnectionHealthMonitor",
                extra={"error": str(exc), "error_type": type(exc).__name__},
                exc_info=True,
            )
            raise

        finally:
            logger.info(
                "ConnectionHealthMonitor stopped",
                extra={"state": self._status.state.value},
            )
