"""
Base Service Foundation

Purpose
-------
Provides the foundational class for the ledger's domain services.
Services implement business rules on top of the PersistenceGateway and
emit notifications on the EventBus after their transactions commit.

Design Notes
------------
This base class provides:
- Structured logging with operation context
- Event emission helpers
- Validation helpers that raise InvariantViolation

What this class does NOT do:
- Manage database transactions (that's the PersistenceGateway's job)
- Retry storage failures
- Hold mutable per-player state

Usage
-----
    class VerificationService(BaseService):
        def __init__(self, gateway, settings, event_bus, logger):
            super().__init__(event_bus, logger)
            self._gateway = gateway

        async def complete_verification(self, player_uuid: str):
            # Service logic here, using self.log, self.emit_event
            pass
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, Optional

from src.core.exceptions import InvariantViolation

if TYPE_CHECKING:
    from logging import Logger

    from src.core.event_bus import EventBus


class BaseService:
    """
    Base class for all domain services.

    Args:
        event_bus: Event bus for post-commit notifications (optional)
        logger: Structured logger instance
    """

    def __init__(self, event_bus: Optional[EventBus], logger: Logger) -> None:
        self._events = event_bus
        self.log = logger

    async def emit_event(
        self,
        event_type: str,
        data: Dict[str, Any],
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Publish a notification. No-op when the service runs without a bus.

        Must only be called after the producing transaction has committed.
        """
        if self._events is None:
            return
        await self._events.publish(event_type, {**data, **(context or {})})

    def log_operation(self, operation: str, **context: Any) -> None:
        """Log a service operation with structured context."""
        self.log.info(
            f"Service operation: {operation}",
            extra={"operation": operation, **context},
        )

    @staticmethod
    def validate_positive_int(value: int, name: str) -> None:
        if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
            raise InvariantViolation(
                name, f"{name} must be a positive integer, got {value!r}"
            )

    @staticmethod
    def validate_non_negative_int(value: int, name: str) -> None:
        if not isinstance(value, int) or isinstance(value, bool) or value < 0:
            raise InvariantViolation(
                name, f"{name} must be a non-negative integer, got {value!r}"
            )

    @staticmethod
    def validate_player_uuid(player_uuid: str) -> None:
        """Reject empty or oversized identifiers before they reach storage."""
        if not isinstance(player_uuid, str) or not player_uuid or len(player_uuid) > 36:
            raise InvariantViolation(
                "player_uuid", f"invalid player uuid {player_uuid!r}"
            )
