"""
Pytest Configuration and Fixtures for the Progression Ledger Tests
==================================================================

Purpose
-------
Centralized test fixtures for the ledger test suite: a real SQLite store
per test, fully wired services, and mocks for unit tests.

Responsibilities
----------------
- Per-test SQLite (aiosqlite) gateway on ``tmp_path`` with the schema
  created and the rank catalog seeded
- Service fixtures wired the same way the ServiceContainer wires them
- Event recording for post-commit notifications
- Mock fixtures for unit tests

Architecture Notes
------------------
- Unit tests use mocks (fast, isolated)
- Integration tests use a file-backed SQLite database so concurrent
  transactions exercise real locking
- Every fixture is function scoped: each test gets a clean database
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, AsyncGenerator, Callable, Dict, List

import pytest
import pytest_asyncio

from src.core.config.settings import (
    DatabaseSettings,
    HealthMonitorSettings,
    LedgerSettings,
    ProgressionSettings,
    RateLimitSettings,
    VerificationSettings,
)
from src.core.database.gateway import PersistenceGateway
from src.core.event_bus import EventBus
from src.modules.ledger import EventLedger, RateLimiter
from src.modules.player import PlayerLedgerService
from src.modules.progression import ProgressionEngine
from src.modules.ranks import RankCatalog
from src.modules.verification import VerificationService
from tests.factories import T0, new_uuid


# ============================================================================
# SETTINGS FIXTURES
# ============================================================================


@pytest.fixture
def database_settings(tmp_path) -> DatabaseSettings:
    return DatabaseSettings(url=f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")


@pytest.fixture
def rate_limit_settings() -> RateLimitSettings:
    """Default caps without the cooldown, so tests can append back to back."""
    return RateLimitSettings(cooldown_seconds=0)


@pytest.fixture
def progression_settings() -> ProgressionSettings:
    return ProgressionSettings(server_name="test-server")


@pytest.fixture
def ledger_settings(
    database_settings: DatabaseSettings,
    rate_limit_settings: RateLimitSettings,
    progression_settings: ProgressionSettings,
) -> LedgerSettings:
    return LedgerSettings(
        database=database_settings,
        rate_limit=rate_limit_settings,
        verification=VerificationSettings(),
        health=HealthMonitorSettings(),
        progression=progression_settings,
    )


# ============================================================================
# DATABASE FIXTURES (Integration Tests)
# ============================================================================


@pytest_asyncio.fixture
async def gateway(database_settings: DatabaseSettings) -> AsyncGenerator[PersistenceGateway, None]:
    """
    Initialized gateway with the ledger schema created.

    Scope: function (fresh database file per test)
    """
    gw = PersistenceGateway(database_settings)
    await gw.initialize()
    await gw.create_schema()

    yield gw

    await gw.shutdown()


@pytest_asyncio.fixture
async def catalog(gateway: PersistenceGateway) -> RankCatalog:
    rank_catalog = RankCatalog(gateway)
    await rank_catalog.ensure_seeded()
    return rank_catalog


# ============================================================================
# EVENT FIXTURES
# ============================================================================


class EventRecorder:
    """Collects published payloads per topic."""

    def __init__(self, bus: EventBus) -> None:
        self._bus = bus
        self.events: Dict[str, List[Dict[str, Any]]] = {}

    def listen(self, topic: str) -> List[Dict[str, Any]]:
        received = self.events.setdefault(topic, [])

        async def _record(payload: Dict[str, Any]) -> None:
            received.append(payload)

        self._bus.subscribe(topic, _record, identifier=f"recorder:{topic}")
        return received


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def recorder(event_bus: EventBus) -> EventRecorder:
    return EventRecorder(event_bus)


# ============================================================================
# SERVICE FIXTURES
# ============================================================================


@pytest.fixture
def ledger(gateway: PersistenceGateway, event_bus: EventBus) -> EventLedger:
    return EventLedger(gateway, event_bus)


@pytest.fixture
def limiter(ledger: EventLedger, rate_limit_settings: RateLimitSettings) -> RateLimiter:
    return RateLimiter(ledger, rate_limit_settings)


@pytest.fixture
def engine(
    gateway: PersistenceGateway,
    ledger: EventLedger,
    catalog: RankCatalog,
    progression_settings: ProgressionSettings,
    event_bus: EventBus,
) -> ProgressionEngine:
    return ProgressionEngine(gateway, ledger, catalog, progression_settings, event_bus)


@pytest.fixture
def verification(gateway: PersistenceGateway, event_bus: EventBus) -> VerificationService:
    return VerificationService(gateway, VerificationSettings(), event_bus)


@pytest.fixture
def players(
    gateway: PersistenceGateway,
    ledger: EventLedger,
    limiter: RateLimiter,
    catalog: RankCatalog,
    engine: ProgressionEngine,
    verification: VerificationService,
    progression_settings: ProgressionSettings,
    event_bus: EventBus,
) -> PlayerLedgerService:
    return PlayerLedgerService(
        gateway,
        ledger,
        limiter,
        catalog,
        engine,
        verification,
        progression_settings,
        event_bus,
    )


@pytest.fixture
def register_player(players: PlayerLedgerService) -> Callable[..., Any]:
    """
    Factory that makes a player known to the ledger (identity + progress rows).

    Usage:
        player_uuid = await register_player("Steve")
    """

    async def _register(display_name: str = "Steve", seen_at: datetime = T0) -> str:
        player_uuid = new_uuid()
        await players.player_seen(player_uuid, display_name, seen_at=seen_at)
        return player_uuid

    return _register


# ============================================================================
# MOCK FIXTURES (Unit Tests)
# ============================================================================


@pytest.fixture
def mock_event_bus(mocker):
    """
    Mock EventBus for unit tests.

    Uses: Unit tests that need to assert on published notifications
    """
    mock_bus = mocker.MagicMock()
    mock_bus.publish = mocker.AsyncMock()
    mock_bus.subscribe = mocker.MagicMock()
    return mock_bus


@pytest.fixture
def mock_gateway(mocker):
    """
    Mock PersistenceGateway for unit tests.

    Scope: function
    Uses: Health monitor tests that script probe outcomes
    """
    mock_gw = mocker.MagicMock(spec=PersistenceGateway)
    mock_gw.health_check = mocker.AsyncMock(return_value=True)
    mock_gw.recreate_pool = mocker.AsyncMock(return_value=True)
    return mock_gw


@pytest.fixture
def mock_ledger(mocker):
    """Mock EventLedger exposing the rate limiter's two inputs."""
    mock = mocker.MagicMock(spec=EventLedger)
    mock.last_event_at = mocker.AsyncMock(return_value=None)
    mock.count_in_window = mocker.AsyncMock(return_value=0)
    return mock
