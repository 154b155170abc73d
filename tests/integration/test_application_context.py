"""
Integration Tests for ApplicationContext
========================================

Purpose
-------
Test the kernel's ordered startup and reverse shutdown against a real
SQLite file.

Test Coverage
-------------
- Initialization wires every service and seeds the rank catalog
- Double initialization and use after shutdown
- Missing SQLite directories are created
- Startup failures surface as RuntimeError
- Health monitor task lifecycle

Testing Strategy
----------------
- Integration tests (file-backed SQLite per test)
- Logging stack left untouched (configure_logging=False)
"""

from dataclasses import replace

import pytest
from sqlalchemy import func, select

from src.core.config.settings import DatabaseSettings
from src.core.infra.application_context import ApplicationContext
from src.core.services.container import ServiceContainer
from src.database.models import RankDefinition


@pytest.fixture
async def context(ledger_settings):
    ctx = ApplicationContext(ledger_settings, configure_logging=False, start_monitor=False)
    await ctx.initialize()

    yield ctx

    await ctx.shutdown()


# ============================================================================
# STARTUP TESTS
# ============================================================================


@pytest.mark.integration
@pytest.mark.database
class TestStartup:
    async def test_services_are_wired(self, context):
        # Act
        container = context.service_container

        # Assert
        assert context.is_initialized
        assert container.gateway.is_initialized
        assert len(container.catalog) == 175
        assert container.players is not None
        assert context.event_bus is not None
        assert context.settings.progression.server_name == "test-server"
        assert set(container.get_init_times()) >= {"gateway", "players", "health_monitor"}

    async def test_catalog_is_seeded(self, context):
        gateway = context.service_container.gateway

        count = await gateway.scalar(select(func.count(RankDefinition.id)))

        assert count == 175

    async def test_health_report(self, context):
        report = await context.service_container.health_check()

        assert report["healthy"] is True
        assert report["storage_ok"] is True
        assert report["catalog_entries"] == 175
        assert report["service_count"] == 8

    async def test_second_initialize_is_rejected(self, context):
        with pytest.raises(RuntimeError, match="already initialized"):
            await context.initialize()

    async def test_creates_missing_sqlite_directory(self, ledger_settings, tmp_path):
        # Arrange
        target = tmp_path / "nested" / "deeper" / "ledger.db"
        settings = replace(
            ledger_settings, database=DatabaseSettings(url=f"sqlite+aiosqlite:///{target}")
        )
        ctx = ApplicationContext(settings, configure_logging=False, start_monitor=False)

        # Act
        await ctx.initialize()
        await ctx.shutdown()

        # Assert
        assert target.exists()

    async def test_bad_driver_fails_startup(self, ledger_settings, tmp_path):
        # Arrange
        settings = replace(
            ledger_settings,
            database=DatabaseSettings(url=f"sqlite+nosuchdriver:///{tmp_path / 'x.db'}"),
        )
        ctx = ApplicationContext(settings, configure_logging=False, start_monitor=False)

        # Act / Assert
        with pytest.raises(RuntimeError, match="Failed to initialize"):
            await ctx.initialize()

        assert ctx.is_initialized is False


# ============================================================================
# SHUTDOWN TESTS
# ============================================================================


@pytest.mark.integration
@pytest.mark.database
class TestShutdown:
    async def test_properties_unavailable_after_shutdown(self, ledger_settings):
        # Arrange
        ctx = ApplicationContext(ledger_settings, configure_logging=False, start_monitor=False)
        await ctx.initialize()

        # Act
        await ctx.shutdown()

        # Assert
        with pytest.raises(RuntimeError):
            _ = ctx.service_container
        with pytest.raises(RuntimeError):
            _ = ctx.settings

    async def test_shutdown_without_initialize_is_noop(self, ledger_settings):
        ctx = ApplicationContext(ledger_settings, configure_logging=False)

        await ctx.shutdown()

        assert ctx.is_initialized is False

    async def test_monitor_task_stops_on_shutdown(self, ledger_settings):
        # Arrange
        ctx = ApplicationContext(ledger_settings, configure_logging=False, start_monitor=True)
        await ctx.initialize()
        task = ctx._monitor_task

        # Act
        await ctx.shutdown()

        # Assert
        assert task is not None
        assert task.done()

    def test_uninitialized_container_guards_properties(self, ledger_settings):
        container = ServiceContainer(ledger_settings)

        with pytest.raises(RuntimeError):
            _ = container.gateway
        with pytest.raises(RuntimeError):
            _ = container.players
