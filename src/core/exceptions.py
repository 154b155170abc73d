"""
Exception taxonomy for the progression ledger.

Purpose
-------
Define the small, closed set of failure kinds raised by the persistence
gateway and the services built on it, each carrying structured metadata for
logging, alerting and retry decisions.

Design Notes
------------
- All exceptions inherit from `LedgerException`.
- Each exception carries:
  - `message`: human-readable description
  - `details`: additional structured context (dict), never credentials
  - `severity`: `ErrorSeverity` value for logging/alerting
  - `is_retryable`: explicit retry hint, set per instance
  - `error_code`: short, stable identifier for programmatic use
- Helper functions (`is_transient_error`, `get_error_severity`, `should_alert`)
  centralize common exception handling patterns.

Kinds
-----
- StorageUnavailable: connection-level, retryable
- StorageQueryFailed: statement/constraint-level, not retryable
- RateLimited: expected control flow, no gain applied
- InvalidStateTransition: caller sequencing error
- InvariantViolation: defensive check failure, fatal to the operation
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class ErrorSeverity(Enum):
    """Error severity levels for logging and alerting."""

    DEBUG = "debug"  # Expected, not concerning (e.g., rate limits)
    INFO = "info"
    WARNING = "warning"  # Concerning but handled (e.g., retryable errors)
    ERROR = "error"  # Unexpected errors requiring attention
    CRITICAL = "critical"  # Invariant breaks requiring immediate action


class LedgerException(Exception):
    """
    Base exception for all progression ledger errors.

    Args:
        message: Human-readable error message
        details: Additional structured data about the error
        severity: Error severity level for logging handlers
        is_retryable: Whether the operation can be retried
        error_code: Optional code for programmatic handling

    Example:
        >>> raise LedgerException(
        ...     "Ledger append failed",
        ...     {"player_uuid": "0f9c..."}
        ... )
    """

    DEFAULT_SEVERITY: ErrorSeverity = ErrorSeverity.ERROR
    DEFAULT_RETRYABLE: bool = False

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        severity: Optional[ErrorSeverity] = None,
        is_retryable: Optional[bool] = None,
        error_code: Optional[str] = None,
    ) -> None:
        self.message: str = message
        self.details: Dict[str, Any] = details or {}
        self.severity: ErrorSeverity = severity or self.DEFAULT_SEVERITY
        self.is_retryable: bool = (
            is_retryable if is_retryable is not None else self.DEFAULT_RETRYABLE
        )
        self.error_code: str = error_code or self.__class__.__name__
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
            "severity": self.severity.value,
            "is_retryable": self.is_retryable,
        }

    def __str__(self) -> str:
        details_str = f" | Details: {self.details}" if self.details else ""
        return f"[{self.error_code}] {self.message}{details_str}"

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"details={self.details!r}, "
            f"severity={self.severity.value!r}, "
            f"is_retryable={self.is_retryable!r}"
            ")"
        )


class ConfigurationError(LedgerException):
    """
    Raised when a configuration key is invalid or missing.

    Args:
        config_key: The configuration key that has issues
        message: Description of the configuration problem
    """

    DEFAULT_SEVERITY = ErrorSeverity.CRITICAL

    def __init__(self, config_key: str, message: str) -> None:
        self.config_key = config_key
        super().__init__(
            f"Configuration error for {config_key}: {message}",
            details={"config_key": config_key, "message": message},
            error_code="CONFIG_ERROR",
        )


class StorageUnavailable(LedgerException):
    """
    Raised when no usable connection could be obtained or the connection
    dropped mid-operation.

    Args:
        operation: Description of the storage operation that failed
        original_error: The underlying driver/pool exception
    """

    DEFAULT_SEVERITY = ErrorSeverity.WARNING
    DEFAULT_RETRYABLE = True

    def __init__(
        self, operation: str, original_error: Optional[Exception] = None
    ) -> None:
        self.operation = operation
        self.original_error = original_error
        reason = type(original_error).__name__ if original_error else "unavailable"
        super().__init__(
            f"Storage unavailable during {operation} ({reason})",
            details={"operation": operation, "error_type": reason},
            error_code="STORAGE_UNAVAILABLE",
        )


class StorageQueryFailed(LedgerException):
    """
    Raised for malformed statements and constraint violations.

    Indicates a programming or data-integrity defect; never retried.

    Args:
        operation: Description of the storage operation that failed
        original_error: The underlying driver exception
    """

    DEFAULT_SEVERITY = ErrorSeverity.ERROR

    def __init__(
        self, operation: str, original_error: Optional[Exception] = None
    ) -> None:
        self.operation = operation
        self.original_error = original_error
        reason = type(original_error).__name__ if original_error else "query_failed"
        super().__init__(
            f"Storage query failed during {operation} ({reason})",
            details={"operation": operation, "error_type": reason},
            error_code="STORAGE_QUERY_FAILED",
        )


class RateLimited(LedgerException):
    """
    Raised when a gain is rejected by the rate limiter.

    Not an error: the caller simply does not append the event.

    Args:
        player_uuid: Player whose gain was rejected
        event_kind: Event kind of the rejected gain
        source: Source label of the rejected gain
        window: Tightest violated window ("cooldown", "minute", "hour", "day")
        cap: Cap for that window
        count: Events already counted in that window
        retry_at: Earliest time the same gain could be accepted, if known
    """

    DEFAULT_SEVERITY = ErrorSeverity.DEBUG

    def __init__(
        self,
        player_uuid: str,
        event_kind: str,
        source: str,
        window: str,
        cap: int,
        count: int,
        retry_at: Optional[datetime] = None,
    ) -> None:
        self.player_uuid = player_uuid
        self.event_kind = event_kind
        self.source = source
        self.window = window
        self.cap = cap
        self.count = count
        self.retry_at = retry_at
        super().__init__(
            f"Rate limit reached for {event_kind}/{source} ({count}/{cap} per {window})",
            details={
                "player_uuid": player_uuid,
                "event_kind": event_kind,
                "source": source,
                "window": window,
                "cap": cap,
                "count": count,
            },
            error_code="RATE_LIMITED",
        )


class InvalidStateTransition(LedgerException):
    """
    Raised when a verification transition is requested from the wrong state.

    Args:
        player_uuid: Player whose record was targeted
        current_state: State the record is actually in
        requested: Name of the requested transition or target state
        reason: Optional extra explanation
    """

    DEFAULT_SEVERITY = ErrorSeverity.ERROR

    def __init__(
        self,
        player_uuid: str,
        current_state: str,
        requested: str,
        reason: Optional[str] = None,
    ) -> None:
        self.player_uuid = player_uuid
        self.current_state = current_state
        self.requested = requested
        message = f"Cannot {requested} from state {current_state}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(
            message,
            details={
                "player_uuid": player_uuid,
                "current_state": current_state,
                "requested": requested,
            },
            error_code="INVALID_STATE_TRANSITION",
        )


class InvariantViolation(LedgerException):
    """
    Raised when a defensive check fails, e.g. a rank position outside the
    catalog. Never auto-corrected.

    Args:
        invariant: Short name of the broken invariant
        message: Description of the violation
        details: Offending identifiers
    """

    DEFAULT_SEVERITY = ErrorSeverity.CRITICAL

    def __init__(
        self,
        invariant: str,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.invariant = invariant
        super().__init__(
            message,
            details={"invariant": invariant, **(details or {})},
            error_code="INVARIANT_VIOLATION",
        )


class PlayerNotFound(LedgerException):
    """
    Raised when a write path targets a player with no identity or progress row.

    Args:
        player_uuid: The uuid that was not found
    """

    DEFAULT_SEVERITY = ErrorSeverity.WARNING

    def __init__(self, player_uuid: str) -> None:
        self.player_uuid = player_uuid
        super().__init__(
            f"Player not found: {player_uuid}",
            details={"player_uuid": player_uuid},
            error_code="PLAYER_NOT_FOUND",
        )


# Utility functions for exception handling patterns


def is_transient_error(exc: Exception) -> bool:
    """
    Check if an exception represents a transient error that can be retried.

    Args:
        exc: Exception to check

    Returns:
        True if error is retryable, False otherwise.
    """
    if isinstance(exc, LedgerException):
        return exc.is_retryable
    return False


def get_error_severity(exc: Exception) -> ErrorSeverity:
    """Get the severity level of an exception for logging."""
    if isinstance(exc, LedgerException):
        return exc.severity
    return ErrorSeverity.ERROR


def should_alert(exc: Exception) -> bool:
    """True if severity is ERROR or CRITICAL."""
    severity = get_error_severity(exc)
    return severity in (ErrorSeverity.ERROR, ErrorSeverity.CRITICAL)
