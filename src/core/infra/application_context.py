"""
Application Context (Kernel) - Ledger Infrastructure Orchestration
==================================================================

Purpose
-------
Central kernel that orchestrates the initialization and shutdown of the
ledger's infrastructure in the correct dependency order.

Responsibilities
----------------
- Load configuration and install the logging stack
- Build frozen settings, the EventBus and the ServiceContainer
- Open the persistence gateway, create the schema, seed the rank catalog
- Start and stop the connection health monitor task
- Coordinate graceful shutdown in reverse order
- Provide structured lifecycle logging with timing

Non-Responsibilities
--------------------
- Business logic (delegated to domain services)
- Service construction (delegated to ServiceContainer)
- Process signal handling (delegated to src.main)

Architecture Notes
------------------
Initialization Order (Critical):
    1. Config + logging
    2. LedgerSettings, EventBus, ServiceContainer
    3. Gateway connect, schema, catalog seed
    4. Health monitor task

Shutdown Order (Reverse):
    1. Health monitor task
    2. ServiceContainer.shutdown()
    3. Gateway.shutdown()
    4. Logging
"""

from __future__ import annotations

import asyncio
import time
from pathlib import Path
from typing import Optional

from sqlalchemy.engine import make_url

from src.core.config.config import Config
from src.core.config.settings import LedgerSettings
from src.core.event_bus import EventBus
from src.core.logging.logger import get_logger, setup_logging, shutdown_logging
from src.core.services.container import ServiceContainer

logger = get_logger(__name__)


class ApplicationContext:
    """
    Kernel for infrastructure orchestration.

    Usage:
        context = ApplicationContext()
        await context.initialize()
        await context.run_until_stopped(stop_event)
        await context.shutdown()
    """

    def __init__(
        self,
        settings: Optional[LedgerSettings] = None,
        *,
        configure_logging: bool = True,
        start_monitor: bool = True,
    ) -> None:
        """
        Note: Does not perform actual initialization - call initialize() for that.

        Parameters
        ----------
        settings : LedgerSettings, optional
            Prebuilt settings; loaded from ``Config`` when omitted.
        configure_logging : bool
            Install (and later remove) the queue-backed logging stack.
        start_monitor : bool
            Run the connection health monitor as a background task.
        """
        self._settings = settings
        self._configure_logging = configure_logging
        self._start_monitor = start_monitor

        self._event_bus: Optional[EventBus] = None
        self._service_container: Optional[ServiceContainer] = None
        self._monitor_stop: Optional[asyncio.Event] = None
        self._monitor_task: Optional[asyncio.Task] = None
        self._initialized: bool = False

        logger.debug("ApplicationContext created")

    # ========================================================================
    # INITIALIZATION
    # ========================================================================

    async def initialize(self) -> None:
        """
        Initialize all infrastructure components in dependency order.

        Raises:
            RuntimeError: If already initialized or initialization fails
        """
        if self._initialized:
            raise RuntimeError("ApplicationContext already initialized")

        start_time = time.perf_counter()

        try:
            # Step 1: Config and logging
            if self._settings is None:
                Config.load()
            if self._configure_logging:
                setup_logging()

            logger.info("=" * 70)
            logger.info("APPLICATION CONTEXT INITIALIZATION")
            logger.info("=" * 70)

            # Step 2: Settings, bus, container
            step_start = time.perf_counter()
            if self._settings is None:
                self._settings = LedgerSettings.from_config()
            self._event_bus = EventBus()
            self._service_container = ServiceContainer(
                settings=self._settings,
                event_bus=self._event_bus,
                logger=get_logger("src.core.services.container"),
            )
            await self._service_container.initialize()
            logger.info(
                "✓ ServiceContainer initialized (%.2fms)",
                (time.perf_counter() - step_start) * 1000,
            )

            # Step 3: Storage
            step_start = time.perf_counter()
            self._ensure_sqlite_directory()
            gateway = self._service_container.gateway
            await gateway.initialize()
            await gateway.create_schema()
            seeded = await self._service_container.catalog.ensure_seeded()
            logger.info(
                "✓ Storage ready (%.2fms)",
                (time.perf_counter() - step_start) * 1000,
                extra={
                    "url_scheme": self._settings.database.url_scheme,
                    "rank_definitions_seeded": seeded,
                },
            )

            # Step 4: Health monitor
            if self._start_monitor:
                self._monitor_stop = asyncio.Event()
                self._monitor_task = asyncio.create_task(
                    self._service_container.health_monitor.run_forever(
                        stop_event=self._monitor_stop
                    ),
                    name="connection-health-monitor",
                )
                logger.info("✓ Connection health monitor started")

            self._initialized = True

            logger.info("=" * 70)
            logger.info("✓ Application context initialized successfully")
            logger.info("  Total time: %.2fms", (time.perf_counter() - start_time) * 1000)
            logger.info("=" * 70)

        except Exception as exc:
            logger.critical(
                "Application context initialization failed",
                extra={
                    "error": str(exc),
                    "error_type": type(exc).__name__,
                },
                exc_info=True,
            )
            await self._emergency_shutdown()
            raise RuntimeError("Failed to initialize application context") from exc

    def _ensure_sqlite_directory(self) -> None:
        """SQLite will not create missing parent directories for a file database."""
        if not self._settings.database.is_sqlite:
            return
        database = make_url(self._settings.database.url).database
        if database and database != ":memory:":
            Path(database).parent.mkdir(parents=True, exist_ok=True)

    # ========================================================================
    # EXECUTION
    # ========================================================================

    async def run_until_stopped(self, stop_event: asyncio.Event) -> None:
        """
        Block until ``stop_event`` is set.

        Raises:
            RuntimeError: If not initialized
        """
        if not self._initialized:
            raise RuntimeError("Cannot run: ApplicationContext not initialized")

        logger.info("Progression ledger running")
        await stop_event.wait()
        logger.info("Stop requested")

    # ========================================================================
    # GRACEFUL SHUTDOWN (Reverse Order: Monitor → Services → Gateway → Logging)
    # ========================================================================

    async def _stop_monitor(self) -> None:
        if self._monitor_task is None:
            return
        if self._monitor_stop is not None:
            self._monitor_stop.set()
        try:
            await self._monitor_task
        finally:
            self._monitor_task = None
            self._monitor_stop = None

    async def shutdown(self) -> None:
        """Gracefully shut down all services in reverse dependency order."""
        if not self._initialized:
            logger.warning("ApplicationContext not initialized, nothing to shut down")
            return

        logger.info("=" * 70)
        logger.info("APPLICATION CONTEXT SHUTDOWN")
        logger.info("=" * 70)

        # Step 1: Health monitor
        try:
            await self._stop_monitor()
            logger.info("✓ Connection health monitor stopped")
        except Exception as exc:
            logger.error(
                "Error stopping health monitor",
                extra={
                    "error": str(exc),
                    "error_type": type(exc).__name__,
                },
                exc_info=True,
            )

        # Step 2: Service container, then the gateway it built
        if self._service_container:
            gateway = self._service_container.gateway
            try:
                await self._service_container.shutdown()
                logger.info("✓ ServiceContainer shut down")
            except Exception as exc:
                logger.error(
                    "Error shutting down service container",
                    extra={
                        "error": str(exc),
                        "error_type": type(exc).__name__,
                    },
                    exc_info=True,
                )

            try:
                await gateway.shutdown()
                logger.info("✓ PersistenceGateway shut down")
            except Exception as exc:
                logger.error(
                    "Error shutting down persistence gateway",
                    extra={
                        "error": str(exc),
                        "error_type": type(exc).__name__,
                    },
                    exc_info=True,
                )

        self._initialized = False
        logger.info("=" * 70)
        logger.info("✓ Application context shutdown complete")
        logger.info("=" * 70)

        # Step 3: Logging
        if self._configure_logging:
            shutdown_logging()

    async def _emergency_shutdown(self) -> None:
        """
        Emergency shutdown - best-effort cleanup that logs instead of raising.

        Used when initialization fails partway through.
        """
        logger.warning("Performing emergency shutdown")

        try:
            await self._stop_monitor()
        except Exception as exc:
            logger.error(
                "Emergency shutdown: health monitor did not stop cleanly",
                extra={"error": str(exc), "error_type": type(exc).__name__},
            )

        container = self._service_container
        if container is not None and container.is_initialized:
            gateway = container.gateway
            try:
                await container.shutdown()
                await gateway.shutdown()
            except Exception as exc:
                logger.error(
                    "Emergency shutdown: storage did not close cleanly",
                    extra={"error": str(exc), "error_type": type(exc).__name__},
                )

    # ========================================================================
    # PROPERTIES
    # ========================================================================

    @property
    def settings(self) -> LedgerSettings:
        if not self._initialized or self._settings is None:
            raise RuntimeError("Settings not available: ApplicationContext not initialized")
        return self._settings

    @property
    def event_bus(self) -> EventBus:
        if not self._initialized or self._event_bus is None:
            raise RuntimeError("EventBus not available: ApplicationContext not initialized")
        return self._event_bus

    @property
    def service_container(self) -> ServiceContainer:
        """Get the service container instance (only after initialization)."""
        if not self._initialized or self._service_container is None:
            raise RuntimeError(
                "ServiceContainer not available: ApplicationContext not initialized"
            )
        return self._service_container

    @property
    def is_initialized(self) -> bool:
        """Check if context is fully initialized."""
        return self._initialized
