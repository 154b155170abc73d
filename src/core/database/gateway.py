"""
Persistence Gateway - Core Infrastructure Layer

Purpose
-------
The only component that talks to the relational store. Owns the async
engine and its bounded connection pool, runs parameterized statements, and
provides atomic transaction scopes for multi-statement operations.

Responsibilities
----------------
- Initialize and dispose a single AsyncEngine with connection pooling
- Provide async context managers for read sessions and atomic transactions
- Enforce transaction discipline: commit on success, rollback on exception
- Translate driver/pool failures into StorageUnavailable (retryable) or
  StorageQueryFailed (not retryable)
- Bound every wait: pool acquisition via pool_timeout, statements via
  statement_timeout (PostgreSQL) or the busy timeout (SQLite)
- Expose a never-raising health probe and a pool recreation hook for the
  health monitor

Non-Responsibilities
--------------------
- Retrying failed operations (request-time failures are reported at once;
  the health monitor handles background recovery)
- Background probing (handled by ConnectionHealthMonitor)
- Domain logic

Architecture Notes
------------------
**Instance-based**: one gateway per configured database, constructed from a
frozen DatabaseSettings record and passed to every service.

**Isolation**:
- PostgreSQL runs READ COMMITTED; writers lock rows with SELECT ... FOR UPDATE.
- SQLite transactions open with BEGIN IMMEDIATE, taking the write lock up
  front. Writers are serialized and a read inside a transaction always
  sees committed data.

**Connection lifetime**: every execute/query call and every transaction
scope holds exactly one pooled connection, returned on success, error and
cancellation by the enclosing ``async with``.

Usage Example
-------------
>>> gateway = PersistenceGateway(settings.database)
>>> await gateway.initialize()
>>>
>>> async with gateway.transaction("promotion") as session:
>>>     await gateway.execute(update_stmt, session=session)
>>>     await gateway.execute(insert_stmt, session=session)
>>>
>>> rows = await gateway.query(
>>>     "SELECT uuid FROM identity WHERE verification_state = :state",
>>>     {"state": "VERIFIED"},
>>>     mapper=lambda row: row.uuid,
>>> )
"""

from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from typing import (
    Any,
    AsyncIterator,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Sequence,
    TypeVar,
    Union,
)

from sqlalchemy import event, text
from sqlalchemy.engine import Row
from sqlalchemy.exc import (
    ArgumentError,
    DBAPIError,
    InterfaceError,
    OperationalError,
    SQLAlchemyError,
)
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool
from sqlalchemy.sql import Executable

from src.core.config.settings import DatabaseSettings
from src.core.database.base import Base
from src.core.database.metrics import GatewayMetrics
from src.core.exceptions import (
    ConfigurationError,
    LedgerException,
    StorageQueryFailed,
    StorageUnavailable,
)
from src.core.logging.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

Statement = Union[str, Executable]
Params = Optional[Union[Mapping[str, Any], Sequence[Mapping[str, Any]]]]

# SQLite reports these statement-level defects as OperationalError
_SQLITE_QUERY_ERROR_MARKERS = (
    "syntax error",
    "no such table",
    "no such column",
    "has no column",
    "incomplete input",
)


class GatewayNotInitializedError(RuntimeError):
    """Raised when the gateway is used before initialize() or after shutdown()."""


# ============================================================================
# PersistenceGateway
# ============================================================================


class PersistenceGateway:
    """
    Pooled, transactional access to the ledger database.

    Public API
    ----------
    **Lifecycle**:
    - initialize() / shutdown()
    - create_schema() -> Create all ledger tables if missing
    - recreate_pool() -> Drop pooled connections so the next checkout reconnects

    **Statements**:
    - execute(statement, params) -> rows affected
    - query(statement, params, mapper) -> list of mapped rows
    - scalar(statement, params) -> first column of first row

    **Scopes**:
    - transaction() -> atomic write scope (preferred for mutations)
    - session() -> read scope, never commits

    **Observability**:
    - health_check() -> bool, never raises
    - get_pool_metrics() -> pool statistics
    """

    def __init__(self, settings: DatabaseSettings) -> None:
        self._settings = settings
        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker[AsyncSession]] = None
        self._init_lock = asyncio.Lock()

    @property
    def settings(self) -> DatabaseSettings:
        return self._settings

    @property
    def is_initialized(self) -> bool:
        return self._engine is not None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise GatewayNotInitializedError(
                "PersistenceGateway must be initialized before use"
            )
        return self._engine

    # ========================================================================
    # Initialization & Shutdown
    # ========================================================================

    def _engine_kwargs(self) -> Dict[str, Any]:
        settings = self._settings
        kwargs: Dict[str, Any] = {"echo": settings.echo}

        if settings.is_sqlite:
            kwargs["connect_args"] = {"timeout": settings.statement_timeout_ms / 1000.0}
            if ":memory:" in settings.url:
                kwargs["poolclass"] = StaticPool
                return kwargs
        else:
            kwargs["pool_pre_ping"] = True
            kwargs["pool_recycle"] = settings.pool_recycle

        kwargs.update(
            {
                "pool_size": settings.pool_size,
                "max_overflow": settings.max_overflow,
                "pool_timeout": settings.pool_timeout,
            }
        )
        return kwargs

    @staticmethod
    def _install_sqlite_hooks(engine: AsyncEngine) -> None:
        """Let SQLAlchemy own BEGIN so every transaction takes the write lock up front."""

        @event.listens_for(engine.sync_engine, "connect")
        def _on_connect(dbapi_connection, connection_record):  # pragma: no cover - driver hook
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        @event.listens_for(engine.sync_engine, "begin")
        def _on_begin(conn):  # pragma: no cover - driver hook
            conn.exec_driver_sql("BEGIN IMMEDIATE")

    async def initialize(self) -> None:
        """
        Create the engine and session factory.

        Idempotent. The engine connects lazily, so an unreachable database
        does not fail initialization; it surfaces on the first statement or
        health probe.

        Raises
        ------
        ConfigurationError
            If the URL or pool arguments are rejected by SQLAlchemy.
        """
        async with self._init_lock:
            if self._engine is not None:
                logger.debug("PersistenceGateway already initialized; skipping")
                return

            try:
                engine = create_async_engine(self._settings.url, **self._engine_kwargs())
            except (ArgumentError, ImportError, TypeError) as exc:
                logger.error(
                    "PersistenceGateway initialization failed",
                    extra={
                        "url_scheme": self._settings.url_scheme,
                        "error_type": type(exc).__name__,
                    },
                )
                raise ConfigurationError(
                    "DATABASE_URL", f"engine creation failed ({type(exc).__name__})"
                ) from exc

            if self._settings.is_sqlite:
                self._install_sqlite_hooks(engine)

            self._engine = engine
            self._session_factory = async_sessionmaker(
                bind=engine,
                class_=AsyncSession,
                expire_on_commit=False,
            )

            GatewayMetrics.record_engine_initialized(
                url_scheme=self._settings.url_scheme,
                pool_size=self._settings.pool_size,
            )
            logger.info(
                "PersistenceGateway initialized",
                extra={
                    "url_scheme": self._settings.url_scheme,
                    "pool_size": self._settings.pool_size,
                    "pool_timeout": self._settings.pool_timeout,
                },
            )

    async def shutdown(self) -> None:
        """Dispose the engine. Safe to call multiple times."""
        async with self._init_lock:
            if self._engine is None:
                return

            try:
                await self._engine.dispose()
                GatewayMetrics.record_engine_shutdown()
                logger.info("PersistenceGateway shutdown complete")
            finally:
                self._engine = None
                self._session_factory = None

    async def create_schema(self) -> None:
        """Create every ledger table that does not exist yet."""
        # Registers the mapped tables on Base.metadata
        import src.database.models  # noqa: F401

        try:
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except SQLAlchemyError as exc:
            raise self.translate(exc, "create_schema") from exc
        logger.info("Ledger schema ensured")

    async def recreate_pool(self) -> bool:
        """
        Discard every pooled connection so the next checkout opens a fresh one.

        Returns
        -------
        bool
            True if the pool was replaced, False if disposal itself failed.
        """
        if self._engine is None:
            await self.initialize()
            return True

        try:
            await self._engine.dispose()
        except (SQLAlchemyError, OSError) as exc:
            GatewayMetrics.record_pool_recreated(success=False)
            logger.warning(
                "Connection pool recreation failed",
                extra={"error_type": type(exc).__name__},
            )
            return False

        GatewayMetrics.record_pool_recreated(success=True)
        logger.info("Connection pool recreated")
        return True

    # ========================================================================
    # Health Check
    # ========================================================================

    async def _probe(self) -> None:
        async with self.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))

    async def health_check(self) -> bool:
        """
        Run a lightweight round-trip query.

        Returns
        -------
        bool
            True if the database answered within pool_timeout, False otherwise.

        Notes
        -----
        - Never raises; suitable for readiness probes
        - The probe connection is released before returning
        """
        if self._engine is None:
            logger.warning("Health check called on uninitialized PersistenceGateway")
            GatewayMetrics.record_health_check(success=False, duration_ms=0.0)
            return False

        start = time.perf_counter()
        success = False

        try:
            await asyncio.wait_for(self._probe(), timeout=self._settings.pool_timeout)
            success = True

        except (SQLAlchemyError, OSError, asyncio.TimeoutError) as exc:
            logger.warning(
                "Storage health check failed",
                extra={"error_type": type(exc).__name__},
            )

        except Exception as exc:
            logger.error(
                "Unexpected error during storage health check",
                extra={"error": str(exc), "error_type": type(exc).__name__},
                exc_info=True,
            )

        finally:
            duration_ms = (time.perf_counter() - start) * 1000.0
            GatewayMetrics.record_health_check(success=success, duration_ms=duration_ms)

        return success

    def get_pool_metrics(self) -> Dict[str, int]:
        """
        Current connection pool statistics.

        Returns zeros when the engine is not initialized or the pool does not
        track usage (e.g., StaticPool for in-memory SQLite).
        """
        empty = {"pool_size": 0, "checked_out": 0, "checked_in": 0, "overflow": 0}
        if self._engine is None:
            return empty

        pool = self._engine.pool
        if not hasattr(pool, "checkedout"):
            return empty

        return {
            "pool_size": pool.size(),
            "checked_out": pool.checkedout(),
            "checked_in": pool.checkedin(),
            "overflow": max(0, pool.overflow()),
        }

    # ========================================================================
    # Error Translation
    # ========================================================================

    @staticmethod
    def _is_connection_failure(exc: BaseException) -> bool:
        if isinstance(exc, (PoolTimeoutError, InterfaceError)):
            return True
        if isinstance(exc, DBAPIError) and exc.connection_invalidated:
            return True
        if isinstance(exc, OperationalError):
            message = str(exc.orig if exc.orig is not None else exc).lower()
            return not any(marker in message for marker in _SQLITE_QUERY_ERROR_MARKERS)
        return isinstance(exc, (OSError, asyncio.TimeoutError))

    def translate(self, exc: BaseException, operation: str) -> BaseException:
        """
        Map a driver or pool exception onto the ledger taxonomy.

        Ledger exceptions and non-storage exceptions are returned unchanged.
        Logged context carries the operation and exception type, never the
        connection URL.
        """
        if isinstance(exc, LedgerException):
            return exc

        if self._is_connection_failure(exc):
            translated: LedgerException = StorageUnavailable(operation, exc)
            logger.warning(
                "Storage unavailable",
                extra={"operation": operation, "error_type": type(exc).__name__},
            )
        elif isinstance(exc, SQLAlchemyError):
            translated = StorageQueryFailed(operation, exc)
            logger.error(
                "Storage query failed",
                extra={
                    "operation": operation,
                    "error_type": type(exc).__name__,
                    "statement": getattr(exc, "statement", None),
                    "error": str(getattr(exc, "orig", None) or exc),
                },
                exc_info=exc,
            )
        else:
            return exc

        GatewayMetrics.record_error_translated(
            operation=operation,
            source_type=type(exc).__name__,
            translated_type=type(translated).__name__,
        )
        return translated

    def _require_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            logger.error("PersistenceGateway used before initialization")
            raise GatewayNotInitializedError(
                "PersistenceGateway must be initialized before use. "
                "Call initialize() during startup."
            )
        return self._session_factory

    @staticmethod
    async def _rollback_quietly(session: AsyncSession, operation: str) -> None:
        try:
            await session.rollback()
        except (SQLAlchemyError, OSError) as exc:
            # Connection is already gone; the pool discards it on close
            logger.warning(
                "Rollback failed",
                extra={"operation": operation, "error_type": type(exc).__name__},
            )

    async def _apply_statement_timeout(self, session: AsyncSession) -> None:
        if self._settings.is_postgres:
            await session.execute(
                text(f"SET LOCAL statement_timeout = {int(self._settings.statement_timeout_ms)}")
            )

    # ========================================================================
    # Session & Transaction Context Managers
    # ========================================================================

    @asynccontextmanager
    async def session(self, operation: str = "session") -> AsyncIterator[AsyncSession]:
        """
        Read scope. Never commits; anything written is rolled back on exit.

        Raises
        ------
        StorageUnavailable, StorageQueryFailed
            Translated from driver errors raised inside the scope.
        """
        factory = self._require_factory()

        async with factory() as session:
            try:
                await self._apply_statement_timeout(session)
                yield session
            except Exception as exc:
                await self._rollback_quietly(session, operation)
                translated = self.translate(exc, operation)
                if translated is exc:
                    raise
                raise translated from exc

    @asynccontextmanager
    async def transaction(self, operation: str = "transaction") -> AsyncIterator[AsyncSession]:
        """
        Atomic write scope: the primary interface for all state mutations.

        Behavior
        --------
        **On Success**: commits; nothing is visible to others before commit.

        **On Exception**: rolls back with no partial effect, then re-raises.
        Driver errors are translated to StorageUnavailable or
        StorageQueryFailed; other exceptions propagate unchanged.

        Usage Example
        -------------
        >>> async with gateway.transaction("evaluate_promotion") as session:
        >>>     row = await gateway.query(select_for_update, session=session)
        >>>     await gateway.execute(update_stmt, session=session)
        """
        factory = self._require_factory()
        start = time.perf_counter()

        async with factory() as session:
            try:
                await self._apply_statement_timeout(session)
                yield session
                await session.commit()

            except Exception as exc:
                await self._rollback_quietly(session, operation)
                duration_ms = (time.perf_counter() - start) * 1000.0
                GatewayMetrics.record_transaction_rolled_back(
                    duration_ms=duration_ms, error_type=type(exc).__name__
                )
                logger.debug(
                    "Transaction rolled back",
                    extra={
                        "operation": operation,
                        "error_type": type(exc).__name__,
                        "duration_ms": duration_ms,
                    },
                )
                translated = self.translate(exc, operation)
                if translated is exc:
                    raise
                raise translated from exc

            duration_ms = (time.perf_counter() - start) * 1000.0
            GatewayMetrics.record_transaction_committed(duration_ms=duration_ms)

    # ========================================================================
    # Statement Execution
    # ========================================================================

    @staticmethod
    def _as_executable(statement: Statement) -> Executable:
        return text(statement) if isinstance(statement, str) else statement

    async def execute(
        self,
        statement: Statement,
        params: Params = None,
        *,
        session: Optional[AsyncSession] = None,
        operation: str = "execute",
    ) -> int:
        """
        Run a write statement and return the number of rows affected.

        Without ``session`` the statement runs in its own transaction on one
        pooled connection; with ``session`` it joins the caller's transaction.
        """
        stmt = self._as_executable(statement)

        if session is not None:
            result = await session.execute(stmt, params)
            return result.rowcount

        async with self.transaction(operation) as own:
            result = await own.execute(stmt, params)
            return result.rowcount

    async def query(
        self,
        statement: Statement,
        params: Params = None,
        mapper: Optional[Callable[[Row], T]] = None,
        *,
        session: Optional[AsyncSession] = None,
        operation: str = "query",
    ) -> List[Any]:
        """
        Run a read statement and return every row, mapped through ``mapper``.

        Rows are fully fetched before the connection is released.
        """
        stmt = self._as_executable(statement)

        if session is not None:
            rows = (await session.execute(stmt, params)).all()
        else:
            async with self.session(operation) as own:
                rows = (await own.execute(stmt, params)).all()

        if mapper is None:
            return list(rows)
        return [mapper(row) for row in rows]

    async def insert_if_absent(
        self,
        model: Any,
        values: Mapping[str, Any],
        *,
        session: Optional[AsyncSession] = None,
        operation: str = "insert_if_absent",
    ) -> bool:
        """
        Insert one row unless its primary key or a unique column already exists.

        Returns True when a row was inserted.
        """
        if self._settings.is_postgres:
            from sqlalchemy.dialects.postgresql import insert as dialect_insert
        elif self._settings.is_sqlite:
            from sqlalchemy.dialects.sqlite import insert as dialect_insert
        else:
            raise ConfigurationError(
                "DATABASE_URL", f"unsupported backend {self._settings.url_scheme}"
            )

        stmt = dialect_insert(model.__table__).values(dict(values)).on_conflict_do_nothing()
        return await self.execute(stmt, session=session, operation=operation) == 1

    async def scalar(
        self,
        statement: Statement,
        params: Params = None,
        *,
        session: Optional[AsyncSession] = None,
        operation: str = "scalar",
    ) -> Any:
        """First column of the first row, or None when there are no rows."""
        rows = await self.query(
            statement, params, session=session, operation=operation
        )
        return rows[0][0] if rows else None
