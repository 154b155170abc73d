"""
Structured logging for the ledger.

Import ``get_logger`` and ``LogContext`` from here; ``setup_logging`` and
``shutdown_logging`` belong to the application context.
"""

from src.core.logging.logger import (
    ContextFilter,
    LedgerFormatter,
    LogContext,
    LogOutput,
    current_log_context,
    get_logger,
    logging_stats,
    setup_logging,
    shutdown_logging,
)

__all__ = [
    "ContextFilter",
    "LedgerFormatter",
    "LogContext",
    "LogOutput",
    "current_log_context",
    "get_logger",
    "logging_stats",
    "setup_logging",
    "shutdown_logging",
]
