"""
Gateway Metrics - Storage Observability Facade

Purpose
-------
Backend-agnostic metrics facade for persistence gateway telemetry: engine
lifecycle, health probes, transactions, pool recreation and error
translation.

Architecture Notes
------------------
- AbstractGatewayMetricsBackend defines the contract
- GatewayMetrics facade delegates to the configured backend
- Falls back to debug logs when no backend is configured
- Backend configured once at startup via configure_backend()

Usage Example
-------------
>>> GatewayMetrics.configure_backend(PrometheusGatewayBackend())
>>> GatewayMetrics.record_transaction_committed(duration_ms=4.2)
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional

from src.core.logging.logger import get_logger

logger = get_logger(__name__)


# ============================================================================
# Abstract Backend Interface
# ============================================================================


class AbstractGatewayMetricsBackend(ABC):
    """Interface for pluggable gateway metrics backends."""

    @abstractmethod
    def record_engine_initialized(self, *, url_scheme: str, pool_size: int) -> None:
        ...

    @abstractmethod
    def record_engine_shutdown(self) -> None:
        ...

    @abstractmethod
    def record_health_check(self, *, success: bool, duration_ms: float) -> None:
        ...

    @abstractmethod
    def record_transaction_committed(self, *, duration_ms: float) -> None:
        ...

    @abstractmethod
    def record_transaction_rolled_back(
        self, *, duration_ms: float, error_type: str
    ) -> None:
        ...

    @abstractmethod
    def record_pool_recreated(self, *, success: bool) -> None:
        ...

    @abstractmethod
    def record_error_translated(
        self, *, operation: str, source_type: str, translated_type: str
    ) -> None:
        """
        Parameters
        ----------
        operation : str
            Gateway operation label (e.g., "ledger.append").
        source_type : str
            Driver or pool exception class name.
        translated_type : str
            Ledger exception class name it was mapped to.
        """
        ...


# ============================================================================
# GatewayMetrics Facade
# ============================================================================


class GatewayMetrics:
    """
    Static facade for gateway metrics.

    Every ``record_*`` call is forwarded to the backend method of the same
    name; without a backend it becomes a debug log line.
    """

    _backend: Optional[AbstractGatewayMetricsBackend] = None

    @classmethod
    def configure_backend(cls, backend: Optional[AbstractGatewayMetricsBackend]) -> None:
        cls._backend = backend
        logger.info(
            "Gateway metrics backend configured",
            extra={"backend_class": type(backend).__name__},
        )

    @classmethod
    def _emit(cls, metric: str, **fields: Any) -> None:
        if cls._backend is not None:
            getattr(cls._backend, metric)(**fields)
        else:
            logger.debug("gateway metric %s", metric, extra=fields or None)

    @classmethod
    def record_engine_initialized(cls, *, url_scheme: str, pool_size: int) -> None:
        cls._emit("record_engine_initialized", url_scheme=url_scheme, pool_size=pool_size)

    @classmethod
    def record_engine_shutdown(cls) -> None:
        cls._emit("record_engine_shutdown")

    @classmethod
    def record_health_check(cls, *, success: bool, duration_ms: float) -> None:
        cls._emit("record_health_check", success=success, duration_ms=duration_ms)

    @classmethod
    def record_transaction_committed(cls, *, duration_ms: float) -> None:
        cls._emit("record_transaction_committed", duration_ms=duration_ms)

    @classmethod
    def record_transaction_rolled_back(cls, *, duration_ms: float, error_type: str) -> None:
        cls._emit(
            "record_transaction_rolled_back", duration_ms=duration_ms, error_type=error_type
        )

    @classmethod
    def record_pool_recreated(cls, *, success: bool) -> None:
        cls._emit("record_pool_recreated", success=success)

    @classmethod
    def record_error_translated(
        cls, *, operation: str, source_type: str, translated_type: str
    ) -> None:
        cls._emit(
            "record_error_translated",
            operation=operation,
            source_type=source_type,
            translated_type=translated_type,
        )
