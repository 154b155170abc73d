"""
Persistence subsystem for the progression ledger.

Provides the async SQLAlchemy gateway (sessions, transactions, error
translation), the background connection health monitor, metrics hooks,
and the ORM base shared by the ledger models.
"""

from src.core.database.base import Base, UTCDateTime, as_utc, utc_now
from src.core.database.gateway import GatewayNotInitializedError, PersistenceGateway
from src.core.database.health_monitor import (
    STORAGE_HEALTH,
    ConnectionHealthMonitor,
    HealthState,
    HealthStatus,
    compute_backoff,
)
from src.core.database.metrics import AbstractGatewayMetricsBackend, GatewayMetrics

__all__ = [
    # ORM Base
    "Base",
    "UTCDateTime",
    "as_utc",
    "utc_now",
    # Gateway
    "PersistenceGateway",
    "GatewayNotInitializedError",
    # Health monitoring
    "ConnectionHealthMonitor",
    "HealthState",
    "HealthStatus",
    "STORAGE_HEALTH",
    "compute_backoff",
    # Metrics
    "GatewayMetrics",
    "AbstractGatewayMetricsBackend",
]
