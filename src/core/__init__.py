"""
Core infrastructure layer for the progression ledger.

Purpose
-------
Provide a single import surface for the core infrastructure subsystems:

- Configuration (Config, LedgerSettings)
- Logging (structured logging, logger factory, LogContext)
- Domain exceptions (LedgerException hierarchy)

Non-Responsibilities
--------------------
- Implement infra logic (delegated to submodules)
- Business logic
- Any side effects beyond simple re-exports

Design Decisions
----------------
- This module is intentionally thin: no logic, no configuration, no I/O.
- The database and service layers are imported from their own packages so
  that importing ``src.core`` never pulls in SQLAlchemy.
"""

from __future__ import annotations

from src.core.config import Config, LedgerSettings
from src.core.exceptions import (
    ConfigurationError,
    ErrorSeverity,
    InvalidStateTransition,
    InvariantViolation,
    LedgerException,
    PlayerNotFound,
    RateLimited,
    StorageQueryFailed,
    StorageUnavailable,
)
from src.core.logging import LogContext, get_logger, setup_logging, shutdown_logging

__all__ = [
    # Configuration
    "Config",
    "LedgerSettings",
    # Logging
    "setup_logging",
    "shutdown_logging",
    "get_logger",
    "LogContext",
    # Exceptions
    "LedgerException",
    "ConfigurationError",
    "StorageUnavailable",
    "StorageQueryFailed",
    "RateLimited",
    "InvalidStateTransition",
    "InvariantViolation",
    "PlayerNotFound",
    "ErrorSeverity",
]
