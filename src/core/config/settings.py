"""
Typed, validated settings records.

Purpose
-------
Freeze the loaded ``Config`` values into immutable dataclasses once at
startup. Each component receives the record it needs through its
constructor and never reads ``Config`` at call time.

Usage Example
-------------
>>> settings = LedgerSettings.from_config()
>>> gateway = PersistenceGateway(settings.database)
>>> limiter = RateLimiter(ledger, settings.rate_limit)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, Mapping, Optional, Tuple

from src.core.config.config import Config
from src.core.exceptions import ConfigurationError

# Per-source-family experience modifiers (family is the part before ':').
# Unlisted families use 1.0.
DEFAULT_EXPERIENCE_MODIFIERS: Dict[str, float] = {
    "advancement": 1.0,
    "playtime": 0.5,
    "kill": 0.8,
    "break_block": 0.3,
    "place_block": 0.2,
    "craft_item": 0.4,
    "enchant_item": 1.2,
    "trade": 0.6,
    "fishing": 0.4,
    "mining": 0.3,
}


# ============================================================================
# Database
# ============================================================================


@dataclass(frozen=True)
class DatabaseSettings:
    """
    Connection and pool settings for the persistence gateway.

    Attributes
    ----------
    url : str
        SQLAlchemy async URL. Never logged in full.
    pool_timeout : int
        Upper bound, in seconds, on waiting for a pooled connection.
    statement_timeout_ms : int
        Per-statement timeout applied inside every transaction.
    """

    url: str
    pool_size: int = 5
    max_overflow: int = 10
    pool_timeout: int = 10
    pool_recycle: int = 1800
    statement_timeout_ms: int = 30_000
    echo: bool = False

    def __post_init__(self) -> None:
        if not self.url or "://" not in self.url:
            raise ConfigurationError("DATABASE_URL", "must be a SQLAlchemy URL")
        if self.pool_size < 1:
            raise ConfigurationError("DATABASE_POOL_SIZE", "must be at least 1")
        if self.pool_timeout <= 0:
            raise ConfigurationError("DATABASE_POOL_TIMEOUT", "must be positive")
        if self.statement_timeout_ms <= 0:
            raise ConfigurationError(
                "DATABASE_STATEMENT_TIMEOUT_MS", "must be positive"
            )

    @property
    def is_postgres(self) -> bool:
        return self.url_scheme.split("+", 1)[0] in ("postgres", "postgresql")

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite")

    @property
    def url_scheme(self) -> str:
        return self.url.split(":", 1)[0] if ":" in self.url else "unknown"

    @classmethod
    def from_config(cls) -> DatabaseSettings:
        return cls(
            url=Config.DATABASE_URL,
            pool_size=Config.DATABASE_POOL_SIZE,
            max_overflow=Config.DATABASE_MAX_OVERFLOW,
            pool_timeout=Config.DATABASE_POOL_TIMEOUT,
            pool_recycle=Config.DATABASE_POOL_RECYCLE,
            statement_timeout_ms=Config.DATABASE_STATEMENT_TIMEOUT_MS,
            echo=Config.DATABASE_ECHO,
        )


# ============================================================================
# Rate limiting
# ============================================================================


@dataclass(frozen=True)
class RateCaps:
    """Caps applied simultaneously over the trailing minute, hour and day."""

    per_minute: int = 10
    per_hour: int = 100
    per_day: int = 500

    def __post_init__(self) -> None:
        for name in ("per_minute", "per_hour", "per_day"):
            if getattr(self, name) < 1:
                raise ConfigurationError(f"rate_caps.{name}", "must be at least 1")

    def windows(self) -> Tuple[Tuple[str, timedelta, int], ...]:
        """Windows ordered shortest first."""
        return (
            ("minute", timedelta(minutes=1), self.per_minute),
            ("hour", timedelta(hours=1), self.per_hour),
            ("day", timedelta(days=1), self.per_day),
        )


@dataclass(frozen=True)
class RateLimitSettings:
    """
    Rate limiter settings.

    ``overrides`` maps ``(event_kind, source)`` to caps for that pair; any
    pair not listed uses ``default_caps``.
    """

    default_caps: RateCaps = field(default_factory=RateCaps)
    overrides: Mapping[Tuple[str, str], RateCaps] = field(default_factory=dict)
    cooldown_seconds: int = 5

    def __post_init__(self) -> None:
        if self.cooldown_seconds < 0:
            raise ConfigurationError("RATE_LIMIT_COOLDOWN_SECONDS", "must be >= 0")

    def caps_for(self, event_kind: str, source: str) -> RateCaps:
        return self.overrides.get((event_kind, source), self.default_caps)

    @classmethod
    def from_config(cls) -> RateLimitSettings:
        return cls(
            default_caps=RateCaps(
                per_minute=Config.RATE_LIMIT_PER_MINUTE,
                per_hour=Config.RATE_LIMIT_PER_HOUR,
                per_day=Config.RATE_LIMIT_PER_DAY,
            ),
            cooldown_seconds=Config.RATE_LIMIT_COOLDOWN_SECONDS,
        )


# ============================================================================
# Verification
# ============================================================================


@dataclass(frozen=True)
class VerificationSettings:
    purgatory_timeout: timedelta = timedelta(minutes=30)
    alternate_client_prefix: str = "."

    def __post_init__(self) -> None:
        if self.purgatory_timeout <= timedelta(0):
            raise ConfigurationError("PURGATORY_TIMEOUT_MINUTES", "must be positive")

    @classmethod
    def from_config(cls) -> VerificationSettings:
        return cls(
            purgatory_timeout=timedelta(minutes=Config.PURGATORY_TIMEOUT_MINUTES),
            alternate_client_prefix=Config.ALTERNATE_CLIENT_PREFIX,
        )


# ============================================================================
# Health monitor
# ============================================================================


@dataclass(frozen=True)
class HealthMonitorSettings:
    """
    Attributes
    ----------
    interval_seconds : float
        Fixed delay between probes while healthy; also the backoff base.
    max_retries : int
        Consecutive failed recovery attempts tolerated before the monitor
        gives up and asks for manual intervention.
    backoff_cap_seconds : float
        Ceiling on the exponential backoff delay.
    """

    interval_seconds: float = 30.0
    max_retries: int = 5
    backoff_cap_seconds: float = 300.0

    def __post_init__(self) -> None:
        if self.interval_seconds <= 0:
            raise ConfigurationError("HEALTH_CHECK_INTERVAL_SECONDS", "must be positive")
        if self.max_retries < 1:
            raise ConfigurationError("HEALTH_MAX_RETRIES", "must be at least 1")
        if self.backoff_cap_seconds < self.interval_seconds:
            raise ConfigurationError(
                "HEALTH_BACKOFF_CAP_SECONDS", "must not be below the probe interval"
            )

    @classmethod
    def from_config(cls) -> HealthMonitorSettings:
        return cls(
            interval_seconds=Config.HEALTH_CHECK_INTERVAL_SECONDS,
            max_retries=Config.HEALTH_MAX_RETRIES,
            backoff_cap_seconds=Config.HEALTH_BACKOFF_CAP_SECONDS,
        )


# ============================================================================
# Progression
# ============================================================================


@dataclass(frozen=True)
class ProgressionSettings:
    server_name: str = "default"
    sighting_gap: timedelta = timedelta(minutes=5)
    experience_modifiers: Mapping[str, float] = field(
        default_factory=lambda: dict(DEFAULT_EXPERIENCE_MODIFIERS)
    )

    def modifier_for(self, source: str) -> float:
        family = source.split(":", 1)[0]
        return self.experience_modifiers.get(family, 1.0)

    @classmethod
    def from_config(cls) -> ProgressionSettings:
        return cls(
            server_name=Config.SERVER_NAME,
            sighting_gap=timedelta(minutes=Config.SIGHTING_GAP_MINUTES),
        )


# ============================================================================
# Aggregate
# ============================================================================


@dataclass(frozen=True)
class LedgerSettings:
    database: DatabaseSettings
    rate_limit: RateLimitSettings = field(default_factory=RateLimitSettings)
    verification: VerificationSettings = field(default_factory=VerificationSettings)
    health: HealthMonitorSettings = field(default_factory=HealthMonitorSettings)
    progression: ProgressionSettings = field(default_factory=ProgressionSettings)

    @classmethod
    def from_config(cls, database_url: Optional[str] = None) -> LedgerSettings:
        """
        Build every settings record from ``Config``.

        Parameters
        ----------
        database_url : str, optional
            Overrides ``Config.DATABASE_URL`` (used by tests and scripts).
        """
        Config.ensure_loaded()
        database = DatabaseSettings.from_config()
        if database_url is not None:
            database = DatabaseSettings(
                url=database_url,
                pool_size=database.pool_size,
                max_overflow=database.max_overflow,
                pool_timeout=database.pool_timeout,
                pool_recycle=database.pool_recycle,
                statement_timeout_ms=database.statement_timeout_ms,
                echo=database.echo,
            )
        return cls(
            database=database,
            rate_limit=RateLimitSettings.from_config(),
            verification=VerificationSettings.from_config(),
            health=HealthMonitorSettings.from_config(),
            progression=ProgressionSettings.from_config(),
        )
