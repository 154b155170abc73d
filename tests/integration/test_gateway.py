"""
Integration Tests for PersistenceGateway
========================================

Purpose
-------
Test the gateway against a real SQLite file database: statement execution,
transaction atomicity, error translation and lifecycle.

Test Coverage
-------------
- Schema creation
- execute / query / scalar / insert_if_absent
- Commit on success, rollback on exception
- Driver errors translated to StorageQueryFailed / StorageUnavailable
- Use before initialize() and after shutdown()
- Health probe and pool recreation
- Metrics backend hooks

Testing Strategy
----------------
- Integration tests (file-backed SQLite per test via tmp_path)
- Tests actual database behavior, not mocks
"""

import pytest
from sqlalchemy import func, select, text
from sqlalchemy.exc import OperationalError

from src.core.config.settings import DatabaseSettings
from src.core.database import (
    GatewayMetrics,
    GatewayNotInitializedError,
    PersistenceGateway,
)
from src.core.exceptions import ConfigurationError, StorageQueryFailed, StorageUnavailable
from src.database.models import PlayerIdentity, XPEvent
from tests.factories import T0, new_uuid


def _identity(player_uuid: str, name: str = "Steve") -> dict:
    return {
        "uuid": player_uuid,
        "display_name": name,
        "first_seen_at": T0,
        "last_seen_at": T0,
    }


async def _identity_count(gateway: PersistenceGateway) -> int:
    return await gateway.scalar(select(func.count()).select_from(PlayerIdentity))


# ============================================================================
# STATEMENT TESTS
# ============================================================================


@pytest.mark.integration
@pytest.mark.database
class TestStatements:
    """Basic statement execution."""

    async def test_schema_created(self, gateway):
        # Act
        tables = await gateway.query(
            "SELECT name FROM sqlite_master WHERE type = 'table'",
            mapper=lambda row: row.name,
        )

        # Assert
        assert {"identity", "player_progress", "xp_events", "rank_definitions"} <= set(tables)

    async def test_create_schema_is_idempotent(self, gateway):
        await gateway.create_schema()

        assert await _identity_count(gateway) == 0

    async def test_execute_returns_rows_affected(self, gateway):
        # Arrange
        await gateway.execute(
            PlayerIdentity.__table__.insert(), [_identity(new_uuid()), _identity(new_uuid())]
        )

        # Act
        changed = await gateway.execute(
            "UPDATE identity SET last_server = :server", {"server": "lobby"}
        )

        # Assert
        assert changed == 2

    async def test_query_with_params_and_mapper(self, gateway):
        # Arrange
        player_uuid = new_uuid()
        await gateway.execute(PlayerIdentity.__table__.insert(), _identity(player_uuid, "Alex"))

        # Act
        names = await gateway.query(
            "SELECT display_name FROM identity WHERE uuid = :uuid",
            {"uuid": player_uuid},
            mapper=lambda row: row.display_name,
        )

        # Assert
        assert names == ["Alex"]

    async def test_scalar_without_rows_is_none(self, gateway):
        value = await gateway.scalar(
            select(PlayerIdentity.uuid).where(PlayerIdentity.uuid == "missing")
        )

        assert value is None

    async def test_insert_if_absent(self, gateway):
        # Arrange
        player_uuid = new_uuid()

        # Act
        first = await gateway.insert_if_absent(PlayerIdentity, _identity(player_uuid))
        second = await gateway.insert_if_absent(PlayerIdentity, _identity(player_uuid, "Other"))

        # Assert
        assert first is True
        assert second is False
        assert await gateway.scalar(
            select(PlayerIdentity.display_name).where(PlayerIdentity.uuid == player_uuid)
        ) == "Steve"


# ============================================================================
# TRANSACTION TESTS
# ============================================================================


@pytest.mark.integration
@pytest.mark.database
class TestTransactions:
    async def test_commit_on_success(self, gateway):
        # Act
        async with gateway.transaction("test_commit") as session:
            await gateway.execute(
                PlayerIdentity.__table__.insert(), _identity(new_uuid()), session=session
            )
            await gateway.execute(
                PlayerIdentity.__table__.insert(), _identity(new_uuid()), session=session
            )

        # Assert
        assert await _identity_count(gateway) == 2

    async def test_rollback_on_exception(self, gateway):
        # Act
        with pytest.raises(ValueError, match="abort"):
            async with gateway.transaction("test_rollback") as session:
                await gateway.execute(
                    PlayerIdentity.__table__.insert(), _identity(new_uuid()), session=session
                )
                raise ValueError("abort")

        # Assert
        assert await _identity_count(gateway) == 0

    async def test_constraint_violation_rolls_back_whole_scope(self, gateway):
        # Arrange
        player_uuid = new_uuid()

        # Act
        with pytest.raises(StorageQueryFailed) as exc_info:
            async with gateway.transaction("test_constraint") as session:
                await gateway.execute(
                    PlayerIdentity.__table__.insert(), _identity(player_uuid), session=session
                )
                await gateway.execute(
                    PlayerIdentity.__table__.insert(), _identity(player_uuid), session=session
                )

        # Assert
        assert exc_info.value.operation == "test_constraint"
        assert exc_info.value.is_retryable is False
        assert await _identity_count(gateway) == 0

    async def test_foreign_key_enforced(self, gateway):
        with pytest.raises(StorageQueryFailed):
            await gateway.execute(
                XPEvent.__table__.insert(),
                {
                    "uuid": new_uuid(),
                    "event_kind": "XP_GAIN",
                    "source": "chat",
                    "amount": 1,
                    "occurred_at": T0,
                },
            )

    async def test_malformed_statement_is_query_failure(self, gateway):
        with pytest.raises(StorageQueryFailed):
            await gateway.query("SELECT nope FROM no_such_table")


# ============================================================================
# ERROR TRANSLATION TESTS
# ============================================================================


@pytest.mark.integration
class TestTranslate:
    """Translation needs no open engine."""

    @pytest.fixture
    def translator(self, database_settings):
        return PersistenceGateway(database_settings)

    def test_connection_error_is_unavailable(self, translator):
        exc = OperationalError("SELECT 1", {}, Exception("unable to open database file"))

        translated = translator.translate(exc, "probe")

        assert isinstance(translated, StorageUnavailable)
        assert translated.is_retryable

    def test_statement_error_is_query_failed(self, translator):
        exc = OperationalError("SELECT x", {}, Exception("no such column: x"))

        assert isinstance(translator.translate(exc, "read"), StorageQueryFailed)

    def test_os_error_is_unavailable(self, translator):
        assert isinstance(translator.translate(ConnectionResetError(), "read"), StorageUnavailable)

    def test_ledger_and_plain_errors_pass_through(self, translator):
        ledger_error = StorageQueryFailed("x")
        plain = KeyError("k")

        assert translator.translate(ledger_error, "x") is ledger_error
        assert translator.translate(plain, "x") is plain


# ============================================================================
# LIFECYCLE TESTS
# ============================================================================


@pytest.mark.integration
@pytest.mark.database
class TestLifecycle:
    async def test_use_before_initialize_raises(self, database_settings):
        gateway = PersistenceGateway(database_settings)

        with pytest.raises(GatewayNotInitializedError):
            async with gateway.transaction():
                pass

    async def test_health_check_uninitialized_is_false(self, database_settings):
        assert await PersistenceGateway(database_settings).health_check() is False

    async def test_health_check_and_shutdown(self, gateway):
        # Assert healthy
        assert await gateway.health_check() is True

        # Act
        await gateway.shutdown()
        await gateway.shutdown()

        # Assert
        assert gateway.is_initialized is False
        assert await gateway.health_check() is False
        with pytest.raises(GatewayNotInitializedError):
            await gateway.scalar(text("SELECT 1"))

    async def test_recreate_pool_keeps_gateway_usable(self, gateway):
        # Act
        replaced = await gateway.recreate_pool()

        # Assert
        assert replaced is True
        assert await gateway.health_check() is True
        assert await gateway.scalar(text("SELECT 1")) == 1

    async def test_recreate_pool_after_shutdown_reinitializes(self, gateway):
        await gateway.shutdown()

        assert await gateway.recreate_pool() is True
        assert gateway.is_initialized is True

    async def test_pool_metrics(self, gateway):
        metrics = gateway.get_pool_metrics()

        assert set(metrics) == {"pool_size", "checked_out", "checked_in", "overflow"}
        assert metrics["checked_out"] == 0

    async def test_unknown_driver_is_configuration_error(self, tmp_path):
        gateway = PersistenceGateway(
            DatabaseSettings(url=f"sqlite+nosuchdriver:///{tmp_path / 'x.db'}")
        )

        with pytest.raises(ConfigurationError):
            await gateway.initialize()


@pytest.mark.integration
@pytest.mark.database
class TestMetricsBackend:
    async def test_backend_receives_transaction_events(self, gateway, mocker):
        # Arrange
        backend = mocker.MagicMock()
        GatewayMetrics.configure_backend(backend)

        try:
            # Act
            async with gateway.transaction("metrics_commit"):
                pass
            with pytest.raises(ValueError):
                async with gateway.transaction("metrics_rollback"):
                    raise ValueError("boom")
        finally:
            GatewayMetrics.configure_backend(None)

        # Assert
        backend.record_transaction_committed.assert_called_once()
        backend.record_transaction_rolled_back.assert_called_once()
        assert (
            backend.record_transaction_rolled_back.call_args.kwargs["error_type"] == "ValueError"
        )
