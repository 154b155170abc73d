"""
Service Container
=================

Purpose
-------
Centralized dependency injection container for the ledger services.
Builds one instance of each component from a frozen ``LedgerSettings``
record and hands them out through guarded properties.

Responsibilities
----------------
- Construct the gateway, ledger, rate limiter, rank catalog, progression
  engine, verification state machine, facade and health monitor
- Manage service lifecycle (initialization, shutdown)
- Record per-service construction time for startup diagnostics

Non-Responsibilities
--------------------
- Application-level lifecycle orchestration (delegated to ApplicationContext)
- Opening connections or seeding tables (delegated to ApplicationContext)
- Running the health monitor loop

Architecture Notes
------------------
- ServiceContainer is instantiated and initialized by ApplicationContext
- Receives settings and the EventBus via constructor injection
- Construction order follows the dependency graph: gateway first, facade
  last, monitor beside the gateway
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional, TypeVar

from src.core.database.gateway import PersistenceGateway
from src.core.database.health_monitor import ConnectionHealthMonitor
from src.core.logging.logger import get_logger
from src.modules.ledger import EventLedger, RateLimiter
from src.modules.player import PlayerLedgerService
from src.modules.progression import ProgressionEngine
from src.modules.ranks import RankCatalog
from src.modules.verification import VerificationService

if TYPE_CHECKING:
    from logging import Logger

    from src.core.config.settings import LedgerSettings
    from src.core.event_bus import EventBus

logger = get_logger(__name__)

T = TypeVar("T")

_NOT_INITIALIZED = "ServiceContainer not initialized. Call initialize() first."


class ServiceContainer:
    """
    Dependency injection container for the ledger services.

    Usage:
        container = ServiceContainer(settings, event_bus, logger)
        await container.initialize()

        ledger = container.ledger
        facade = container.players
    """

    def __init__(
        self,
        settings: LedgerSettings,
        event_bus: Optional[EventBus] = None,
        logger: Optional[Logger] = None,
    ) -> None:
        self._settings = settings
        self._event_bus = event_bus
        self._logger = logger or get_logger(__name__)

        self._gateway: Optional[PersistenceGateway] = None
        self._ledger: Optional[EventLedger] = None
        self._rate_limiter: Optional[RateLimiter] = None
        self._catalog: Optional[RankCatalog] = None
        self._progression: Optional[ProgressionEngine] = None
        self._verification: Optional[VerificationService] = None
        self._players: Optional[PlayerLedgerService] = None
        self._health_monitor: Optional[ConnectionHealthMonitor] = None

        self._initialized = False
        self._init_start: Optional[float] = None
        self._init_end: Optional[float] = None
        self._service_init_times: Dict[str, float] = {}

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def initialize(self) -> None:
        """
        Construct every service in dependency order.

        Construction performs no I/O; the gateway connects later when the
        application context calls ``gateway.initialize()``.
        """
        if self._initialized:
            self._logger.warning("ServiceContainer already initialized")
            return

        self._logger.info("Initializing ServiceContainer...")
        self._init_start = time.perf_counter()

        try:
            settings = self._settings
            bus = self._event_bus

            self._gateway = self._create_service(
                "gateway", lambda: PersistenceGateway(settings.database)
            )
            self._ledger = self._create_service(
                "ledger",
                lambda: EventLedger(self._gateway, bus, get_logger("src.modules.ledger")),
            )
            self._rate_limiter = self._create_service(
                "rate_limiter", lambda: RateLimiter(self._ledger, settings.rate_limit)
            )
            self._catalog = self._create_service(
                "catalog", lambda: RankCatalog(self._gateway)
            )
            self._progression = self._create_service(
                "progression",
                lambda: ProgressionEngine(
                    self._gateway,
                    self._ledger,
                    self._catalog,
                    settings.progression,
                    bus,
                    get_logger("src.modules.progression"),
                ),
            )
            self._verification = self._create_service(
                "verification",
                lambda: VerificationService(
                    self._gateway,
                    settings.verification,
                    bus,
                    get_logger("src.modules.verification"),
                ),
            )
            self._players = self._create_service(
                "players",
                lambda: PlayerLedgerService(
                    self._gateway,
                    self._ledger,
                    self._rate_limiter,
                    self._catalog,
                    self._progression,
                    self._verification,
                    settings.progression,
                    bus,
                    get_logger("src.modules.player"),
                ),
            )
            self._health_monitor = self._create_service(
                "health_monitor",
                lambda: ConnectionHealthMonitor(self._gateway, settings.health, bus),
            )

            self._init_end = time.perf_counter()
            self._initialized = True

            slowest = max(self._service_init_times, key=self._service_init_times.__getitem__)
            self._logger.info(
                "ServiceContainer initialized",
                extra={
                    "service_count": len(self._service_init_times),
                    "total_init_time_ms": round((self._init_end - self._init_start) * 1000, 2),
                    "slowest_service": slowest,
                    "slowest_init_time_ms": round(self._service_init_times[slowest] * 1000, 2),
                },
            )

        except Exception as exc:
            self._logger.critical(
                "ServiceContainer initialization failed",
                extra={"error": str(exc), "error_type": type(exc).__name__},
                exc_info=True,
            )
            raise

    def _create_service(self, name: str, factory: Callable[[], T]) -> T:
        """Build one service and record how long construction took."""
        start = time.perf_counter()
        try:
            service = factory()
        except Exception as exc:
            self._logger.error(
                f"Failed to initialize {name}",
                extra={"service": name, "error": str(exc), "error_type": type(exc).__name__},
                exc_info=True,
            )
            raise
        duration = time.perf_counter() - start
        self._service_init_times[name] = duration
        self._logger.debug(
            f"{name} initialized", extra={"init_time_ms": round(duration * 1000, 2)}
        )
        return service

    async def shutdown(self) -> None:
        """Release service references. The gateway is closed by the context."""
        if not self._initialized:
            return
        self._logger.info("Shutting down ServiceContainer...")
        self._initialized = False
        self._logger.info("ServiceContainer shutdown complete")

    async def health_check(self) -> Dict[str, Any]:
        storage_ok = await self._gateway.health_check() if self._gateway else False
        monitor_state = (
            self._health_monitor.status.state.value if self._health_monitor else None
        )
        return {
            "initialized": self._initialized,
            "service_count": len(self._service_init_times),
            "storage_ok": storage_ok,
            "monitor_state": monitor_state,
            "catalog_entries": len(self._catalog) if self._catalog else 0,
            "healthy": self._initialized and storage_ok,
        }

    # ========================================================================
    # Infrastructure
    # ========================================================================

    @property
    def gateway(self) -> PersistenceGateway:
        if not self._initialized or self._gateway is None:
            raise RuntimeError(_NOT_INITIALIZED)
        return self._gateway

    @property
    def health_monitor(self) -> ConnectionHealthMonitor:
        if not self._initialized or self._health_monitor is None:
            raise RuntimeError(_NOT_INITIALIZED)
        return self._health_monitor

    # ========================================================================
    # Ledger Services
    # ========================================================================

    @property
    def ledger(self) -> EventLedger:
        if not self._initialized or self._ledger is None:
            raise RuntimeError(_NOT_INITIALIZED)
        return self._ledger

    @property
    def rate_limiter(self) -> RateLimiter:
        if not self._initialized or self._rate_limiter is None:
            raise RuntimeError(_NOT_INITIALIZED)
        return self._rate_limiter

    # ========================================================================
    # Progression Services
    # ========================================================================

    @property
    def catalog(self) -> RankCatalog:
        if not self._initialized or self._catalog is None:
            raise RuntimeError(_NOT_INITIALIZED)
        return self._catalog

    @property
    def progression(self) -> ProgressionEngine:
        if not self._initialized or self._progression is None:
            raise RuntimeError(_NOT_INITIALIZED)
        return self._progression

    @property
    def verification(self) -> VerificationService:
        if not self._initialized or self._verification is None:
            raise RuntimeError(_NOT_INITIALIZED)
        return self._verification

    @property
    def players(self) -> PlayerLedgerService:
        if not self._initialized or self._players is None:
            raise RuntimeError(_NOT_INITIALIZED)
        return self._players

    # ========================================================================
    # Utility
    # ========================================================================

    @property
    def is_initialized(self) -> bool:
        """Check if container is initialized."""
        return self._initialized

    def get_init_times(self) -> Dict[str, float]:
        """Per-service construction time in seconds."""
        return dict(self._service_init_times)
