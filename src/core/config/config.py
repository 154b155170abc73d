"""
Static configuration management for the progression ledger.

Purpose
-------
Provides centralized static configuration loaded from environment variables
with sensible defaults, type validation, and bounds checking. Values are read
once at startup and then frozen into typed settings records
(see ``src.core.config.settings``) that are passed to each component.

Responsibilities
----------------
- Load configuration from environment variables with .env support
- Provide type-safe access to all static configuration values
- Validate critical settings on startup
- Track which values came from the environment versus defaults
- Produce a sanitized summary that never includes credentials

Non-Responsibilities
--------------------
- Building per-component settings records (handled by settings.py)
- Runtime configuration changes
- Secrets management (use environment variables)

Configuration Categories
------------------------
1. Database: connection URL, pool sizing, timeouts
2. Rate limiting: per-window caps and cooldown
3. Verification: purgatory timeout, alternate-client prefix
4. Health monitor: probe interval, retry ceiling, backoff cap
5. Progression: sighting gap, origin server label
6. Environment: environment type, logging

Dependencies
------------
- python-dotenv: Environment variable loading
- pathlib: Cross-platform path handling
- logging: Basic logging (bootstrap only)
"""

import logging
import os
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# ============================================================================
# Enums and Constants
# ============================================================================


class Environment(Enum):
    """Deployment environment types."""

    DEVELOPMENT = "development"
    TESTING = "testing"
    STAGING = "staging"
    PRODUCTION = "production"

    @classmethod
    def from_string(cls, value: str) -> "Environment":
        """
        Parse environment string safely with fallback.

        Example
        -------
        >>> Environment.from_string("production") == Environment.PRODUCTION
        True
        >>> Environment.from_string("invalid") == Environment.DEVELOPMENT
        True
        """
        try:
            return cls(value.lower())
        except ValueError:
            # Structured logger is not initialized during bootstrap
            logging.warning(
                f"Unknown environment '{value}', defaulting to development"
            )
            return cls.DEVELOPMENT


# ============================================================================
# Configuration Load Tracker
# ============================================================================


class _ConfigLoadMetrics:
    """Tracks which values came from the environment and any validation errors."""

    def __init__(self) -> None:
        self.env_vars_loaded: Dict[str, bool] = {}
        self.validation_errors: Dict[str, str] = {}
        self.defaults_used: Dict[str, Any] = {}

    def record_env_load(self, key: str, from_env: bool, default: Any) -> None:
        self.env_vars_loaded[key] = from_env
        if not from_env:
            self.defaults_used[key] = default

    def record_validation_error(self, key: str, error: str) -> None:
        self.validation_errors[key] = error

    def get_summary(self) -> Dict[str, Any]:
        return {
            "total_configs": len(self.env_vars_loaded),
            "from_environment": sum(1 for v in self.env_vars_loaded.values() if v),
            "from_defaults": sum(1 for v in self.env_vars_loaded.values() if not v),
            "validation_errors": len(self.validation_errors),
            "defaults_used": list(self.defaults_used.keys()),
        }


# ============================================================================
# Main Configuration Class
# ============================================================================


class Config:
    """
    Centralized static configuration for the progression ledger.

    All values are loaded from environment variables with sensible defaults.
    Components never read this class directly at call time; they receive a
    frozen settings record built by ``LedgerSettings.from_config()``.

    Usage
    -----
    >>> Config.load()
    >>> Config.DATABASE_URL
    'sqlite+aiosqlite:///./data/ledger.db'
    >>> Config.is_production()
    False
    """

    _metrics: Optional[_ConfigLoadMetrics] = None
    _loaded: bool = False

    # =========================================================================
    # Database Configuration
    # =========================================================================

    DATABASE_URL: str = "sqlite+aiosqlite:///./data/ledger.db"
    DATABASE_POOL_SIZE: int = 5
    DATABASE_MAX_OVERFLOW: int = 10
    DATABASE_POOL_TIMEOUT: int = 10
    DATABASE_POOL_RECYCLE: int = 1800
    DATABASE_STATEMENT_TIMEOUT_MS: int = 30_000
    DATABASE_ECHO: bool = False

    # =========================================================================
    # Rate Limiting
    # =========================================================================

    RATE_LIMIT_PER_MINUTE: int = 10
    RATE_LIMIT_PER_HOUR: int = 100
    RATE_LIMIT_PER_DAY: int = 500
    RATE_LIMIT_COOLDOWN_SECONDS: int = 5

    # =========================================================================
    # Verification
    # =========================================================================

    PURGATORY_TIMEOUT_MINUTES: int = 30
    ALTERNATE_CLIENT_PREFIX: str = "."

    # =========================================================================
    # Health Monitor
    # =========================================================================

    HEALTH_CHECK_INTERVAL_SECONDS: float = 30.0
    HEALTH_MAX_RETRIES: int = 5
    HEALTH_BACKOFF_CAP_SECONDS: float = 300.0

    # =========================================================================
    # Progression
    # =========================================================================

    SIGHTING_GAP_MINUTES: int = 5
    SERVER_NAME: str = "default"

    # =========================================================================
    # Environment Configuration
    # =========================================================================

    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"
    LOG_JSON: Optional[bool] = None
    LOG_COLORS: bool = True

    PROJECT_ROOT = Path(__file__).resolve().parents[3]
    LOGS_DIR = PROJECT_ROOT / "logs"

    # =========================================================================
    # Safe Parsers
    # =========================================================================

    @classmethod
    def _init_metrics(cls) -> None:
        if cls._metrics is None:
            cls._metrics = _ConfigLoadMetrics()

    @classmethod
    def _reject(cls, key: str, error: str) -> None:
        logging.warning(error)
        if cls._metrics:
            cls._metrics.record_validation_error(key, error)

    @classmethod
    def _safe_int(
        cls,
        key: str,
        default: int,
        min_val: Optional[int] = None,
        max_val: Optional[int] = None,
    ) -> int:
        """
        Safely parse integer from environment with validation.

        Out-of-range or malformed values fall back to ``default`` and are
        recorded as validation errors.

        Example
        -------
        >>> Config._safe_int("DATABASE_POOL_SIZE", 5, min_val=1, max_val=200)
        5
        """
        cls._init_metrics()
        raw_value = os.getenv(key)

        if raw_value is None:
            if cls._metrics:
                cls._metrics.record_env_load(key, False, default)
            return default

        try:
            value = int(raw_value)
        except ValueError:
            cls._reject(
                key, f"{key}='{raw_value}' is not a valid integer, using default {default}"
            )
            return default

        if min_val is not None and value < min_val:
            cls._reject(key, f"{key}={value} is below minimum {min_val}, using default {default}")
            return default

        if max_val is not None and value > max_val:
            cls._reject(key, f"{key}={value} exceeds maximum {max_val}, using default {default}")
            return default

        if cls._metrics:
            cls._metrics.record_env_load(key, True, default)
        return value

    @classmethod
    def _safe_float(
        cls,
        key: str,
        default: float,
        min_val: Optional[float] = None,
    ) -> float:
        """Safely parse a float from environment with a lower bound."""
        cls._init_metrics()
        raw_value = os.getenv(key)

        if raw_value is None:
            if cls._metrics:
                cls._metrics.record_env_load(key, False, default)
            return default

        try:
            value = float(raw_value)
        except ValueError:
            cls._reject(
                key, f"{key}='{raw_value}' is not a valid number, using default {default}"
            )
            return default

        if min_val is not None and value < min_val:
            cls._reject(key, f"{key}={value} is below minimum {min_val}, using default {default}")
            return default

        if cls._metrics:
            cls._metrics.record_env_load(key, True, default)
        return value

    @classmethod
    def _safe_bool(cls, key: str, default: Optional[bool]) -> Optional[bool]:
        """
        Safely parse boolean from environment.

        Recognizes: true/false, yes/no, 1/0, on/off (case-insensitive).
        """
        cls._init_metrics()
        raw_value = os.getenv(key)

        if raw_value is None:
            if cls._metrics:
                cls._metrics.record_env_load(key, False, default)
            return default

        normalized = raw_value.lower().strip()
        if normalized in {"true", "yes", "1", "on"}:
            value = True
        elif normalized in {"false", "no", "0", "off"}:
            value = False
        else:
            cls._reject(
                key, f"{key}='{raw_value}' is not a valid boolean, using default {default}"
            )
            return default

        if cls._metrics:
            cls._metrics.record_env_load(key, True, default)
        return value

    @classmethod
    def _safe_str(cls, key: str, default: str, required: bool = False) -> str:
        """Safely get string from environment."""
        cls._init_metrics()
        value = os.getenv(key, default)

        if cls._metrics:
            cls._metrics.record_env_load(key, key in os.environ, default)

        if required and not value:
            error = f"Required environment variable {key} is not set"
            logging.error(error)
            if cls._metrics:
                cls._metrics.record_validation_error(key, error)

        return value

    # =========================================================================
    # Configuration Loading
    # =========================================================================

    @classmethod
    def load(cls) -> None:
        """
        Load all configuration from environment variables with validation.

        Safe to call repeatedly; tests call it after patching the environment.
        """
        cls._metrics = _ConfigLoadMetrics()

        # Database
        cls.DATABASE_URL = cls._safe_str(
            "DATABASE_URL", "sqlite+aiosqlite:///./data/ledger.db", required=True
        )
        cls.DATABASE_POOL_SIZE = cls._safe_int(
            "DATABASE_POOL_SIZE", 5, min_val=1, max_val=200
        )
        cls.DATABASE_MAX_OVERFLOW = cls._safe_int(
            "DATABASE_MAX_OVERFLOW", 10, min_val=0, max_val=200
        )
        cls.DATABASE_POOL_TIMEOUT = cls._safe_int(
            "DATABASE_POOL_TIMEOUT", 10, min_val=1, max_val=300
        )
        cls.DATABASE_POOL_RECYCLE = cls._safe_int(
            "DATABASE_POOL_RECYCLE", 1800, min_val=60
        )
        cls.DATABASE_STATEMENT_TIMEOUT_MS = cls._safe_int(
            "DATABASE_STATEMENT_TIMEOUT_MS", 30_000, min_val=100
        )
        cls.DATABASE_ECHO = bool(cls._safe_bool("DATABASE_ECHO", False))

        # Rate limiting
        cls.RATE_LIMIT_PER_MINUTE = cls._safe_int("RATE_LIMIT_PER_MINUTE", 10, min_val=1)
        cls.RATE_LIMIT_PER_HOUR = cls._safe_int("RATE_LIMIT_PER_HOUR", 100, min_val=1)
        cls.RATE_LIMIT_PER_DAY = cls._safe_int("RATE_LIMIT_PER_DAY", 500, min_val=1)
        cls.RATE_LIMIT_COOLDOWN_SECONDS = cls._safe_int(
            "RATE_LIMIT_COOLDOWN_SECONDS", 5, min_val=0, max_val=3600
        )

        # Verification
        cls.PURGATORY_TIMEOUT_MINUTES = cls._safe_int(
            "PURGATORY_TIMEOUT_MINUTES", 30, min_val=1
        )
        cls.ALTERNATE_CLIENT_PREFIX = cls._safe_str("ALTERNATE_CLIENT_PREFIX", ".")

        # Health monitor
        cls.HEALTH_CHECK_INTERVAL_SECONDS = cls._safe_float(
            "HEALTH_CHECK_INTERVAL_SECONDS", 30.0, min_val=0.1
        )
        cls.HEALTH_MAX_RETRIES = cls._safe_int("HEALTH_MAX_RETRIES", 5, min_val=1, max_val=100)
        cls.HEALTH_BACKOFF_CAP_SECONDS = cls._safe_float(
            "HEALTH_BACKOFF_CAP_SECONDS", 300.0, min_val=1.0
        )

        # Progression
        cls.SIGHTING_GAP_MINUTES = cls._safe_int("SIGHTING_GAP_MINUTES", 5, min_val=1)
        cls.SERVER_NAME = cls._safe_str("SERVER_NAME", "default")

        # Environment
        cls.ENVIRONMENT = cls._safe_str("ENVIRONMENT", "development")
        cls.LOG_LEVEL = cls._safe_str("LOG_LEVEL", "INFO")
        cls.LOG_JSON = cls._safe_bool("LOG_JSON", None)
        cls.LOG_COLORS = bool(cls._safe_bool("LOG_COLORS", True))

        valid_log_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if cls.LOG_LEVEL.upper() not in valid_log_levels:
            cls._reject("LOG_LEVEL", f"Invalid LOG_LEVEL '{cls.LOG_LEVEL}', using INFO")
            cls.LOG_LEVEL = "INFO"

        if cls.is_production() and cls.DATABASE_URL.startswith("sqlite"):
            logging.warning(
                "Production environment using a SQLite database - this may be incorrect"
            )

        cls._loaded = True

    @classmethod
    def ensure_loaded(cls) -> None:
        if not cls._loaded:
            cls.load()

    # =========================================================================
    # Environment Checks
    # =========================================================================

    @classmethod
    def environment(cls) -> Environment:
        return Environment.from_string(cls.ENVIRONMENT)

    @classmethod
    def is_production(cls) -> bool:
        """Check if running in production environment."""
        return cls.ENVIRONMENT.lower() == "production"

    @classmethod
    def is_testing(cls) -> bool:
        """Check if running in testing environment."""
        return cls.ENVIRONMENT.lower() == "testing"

    # =========================================================================
    # Metrics & Summary
    # =========================================================================

    @classmethod
    def get_metrics(cls) -> Optional[_ConfigLoadMetrics]:
        return cls._metrics

    @classmethod
    def get_config_summary(cls) -> Dict[str, Any]:
        """
        Get non-sensitive configuration summary for debugging.

        The database URL is reduced to its scheme so credentials never reach
        the logs.
        """
        return {
            "environment": cls.ENVIRONMENT,
            "log_level": cls.LOG_LEVEL,
            "database_scheme": cls.DATABASE_URL.split(":", 1)[0],
            "database_pool_size": cls.DATABASE_POOL_SIZE,
            "database_pool_timeout": cls.DATABASE_POOL_TIMEOUT,
            "rate_limits": [
                cls.RATE_LIMIT_PER_MINUTE,
                cls.RATE_LIMIT_PER_HOUR,
                cls.RATE_LIMIT_PER_DAY,
            ],
            "purgatory_timeout_minutes": cls.PURGATORY_TIMEOUT_MINUTES,
            "health_max_retries": cls.HEALTH_MAX_RETRIES,
            "server_name": cls.SERVER_NAME,
        }
