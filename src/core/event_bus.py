"""
In-process async pub/sub for ledger notifications.

Purpose
-------
Decouples the progression engine and the health monitor from whatever
reacts to their outcomes (role sync, reward delivery, operator alerts).

Responsibilities
----------------
- Register/unregister listeners with priorities
- Publish events to all matching listeners (exact + wildcard)
- Run listeners in priority order (CRITICAL > HIGH > NORMAL > LOW)
- Error isolation (one failing listener never blocks others)
- Per-topic publish/error counters

Non-Responsibilities
--------------------
- Delivery guarantees beyond the current process
- Persistence (the ledger itself is the durable record)

Architecture Notes
------------------
- Instance-based; the ServiceContainer owns one bus per process and tests
  build their own.
- Listeners are awaited sequentially within a publish so that ordering is
  deterministic. Sync callbacks run in the default executor.
- Publishing happens after the transaction that produced the fact commits.
  Listeners must therefore treat events as notifications, not as locks.

Usage Example
-------------
>>> bus = EventBus()
>>> bus.subscribe("rank.promoted", on_promoted, priority=ListenerPriority.HIGH)
>>> bus.subscribe("storage.*", page_operator)
>>> await bus.publish("rank.promoted", {"player_uuid": uuid, "to": "2.1"})
"""

from __future__ import annotations

import asyncio
import inspect
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from src.core.logging.logger import LogContext, get_logger

logger = get_logger(__name__)


EventPayload = Dict[str, Any]

CallbackType = Union[
    Callable[[EventPayload], Any],
    Callable[[EventPayload], Awaitable[Any]],
]


class ListenerPriority(Enum):
    """Execution order of listeners; lower values run first."""

    CRITICAL = 0
    HIGH = 10
    NORMAL = 50
    LOW = 100


@dataclass(frozen=True)
class EventListener:
    """A registered listener."""

    callback: CallbackType
    priority: ListenerPriority
    identifier: str
    once: bool = False


@dataclass
class EventMetrics:
    """Counters for bus activity."""

    events_published: Dict[str, int] = field(default_factory=lambda: defaultdict(int))
    listener_errors: Dict[str, int] = field(default_factory=lambda: defaultdict(int))
    total_listeners: int = 0

    def record_publish(self, event_name: str) -> None:
        self.events_published[event_name] += 1

    def record_error(self, event_name: str) -> None:
        self.listener_errors[event_name] += 1

    def get_summary(self) -> Dict[str, Any]:
        published = sum(self.events_published.values())
        errors = sum(self.listener_errors.values())
        return {
            "total_events_published": published,
            "events_by_type": dict(self.events_published),
            "total_errors": errors,
            "errors_by_event": dict(self.listener_errors),
            "total_listeners": self.total_listeners,
            "error_rate": errors / max(1, published) * 100,
        }


class EventBus:
    """
    Async pub/sub bus with priority ordering and wildcard topics.

    Designed for single-threaded asyncio usage; all methods must be called
    from the same event loop.
    """

    def __init__(self, *, enable_metrics: bool = True) -> None:
        self._listeners: Dict[str, List[EventListener]] = {}
        self._wildcard_listeners: List[Tuple[str, EventListener]] = []
        self._metrics: Optional[EventMetrics] = EventMetrics() if enable_metrics else None

    # ========================================================================
    # SUBSCRIPTION
    # ========================================================================

    @staticmethod
    def _validate_callback_signature(callback: CallbackType) -> None:
        """Reject callbacks that cannot take exactly one payload argument."""
        try:
            sig = inspect.signature(callback)
        except (TypeError, ValueError):
            # Built-ins may not expose a signature
            return

        params = list(sig.parameters.values())
        if len(params) != 1:
            name = getattr(callback, "__qualname__", repr(callback))
            raise ValueError(
                f"Event listener must accept exactly 1 parameter (payload), "
                f"got {len(params)} for '{name}'"
            )

    def subscribe(
        self,
        event_name: str,
        callback: CallbackType,
        *,
        priority: ListenerPriority = ListenerPriority.NORMAL,
        identifier: Optional[str] = None,
        once: bool = False,
        allow_duplicates: bool = False,
    ) -> str:
        """
        Subscribe a callback to an event name or wildcard pattern.

        Returns the listener identifier for later unsubscription.
        """
        self._validate_callback_signature(callback)

        if identifier is None:
            identifier = f"{callback.__module__}.{callback.__qualname__}"

        listener = EventListener(
            callback=callback,
            priority=priority,
            identifier=identifier,
            once=once,
        )

        if not allow_duplicates and self._is_registered(event_name, identifier):
            logger.warning(
                "Duplicate listener prevented",
                extra={"event_name": event_name, "listener_id": identifier},
            )
            return identifier

        if "*" in event_name:
            self._wildcard_listeners.append((event_name, listener))
            self._wildcard_listeners.sort(key=lambda item: item[1].priority.value)
        else:
            bucket = self._listeners.setdefault(event_name, [])
            bucket.append(listener)
            bucket.sort(key=lambda l: l.priority.value)

        if self._metrics:
            self._metrics.total_listeners += 1

        logger.debug(
            "Subscribed listener",
            extra={
                "event_name": event_name,
                "listener_id": identifier,
                "priority": priority.name,
                "once": once,
            },
        )
        return identifier

    def _is_registered(self, event_name: str, identifier: str) -> bool:
        if "*" in event_name:
            return any(
                pattern == event_name and l.identifier == identifier
                for pattern, l in self._wildcard_listeners
            )
        return any(l.identifier == identifier for l in self._listeners.get(event_name, []))

    def unsubscribe(self, event_name: str, identifier: str) -> bool:
        """Remove a listener. Returns True if it was registered."""
        removed = False

        if event_name in self._listeners:
            before = len(self._listeners[event_name])
            self._listeners[event_name] = [
                l for l in self._listeners[event_name] if l.identifier != identifier
            ]
            removed = len(self._listeners[event_name]) < before

        if not removed:
            before = len(self._wildcard_listeners)
            self._wildcard_listeners = [
                (pattern, l)
                for pattern, l in self._wildcard_listeners
                if not (pattern == event_name and l.identifier == identifier)
            ]
            removed = len(self._wildcard_listeners) < before

        if removed:
            if self._metrics:
                self._metrics.total_listeners -= 1
            logger.debug(
                "Unsubscribed listener",
                extra={"event_name": event_name, "listener_id": identifier},
            )
        return removed

    def clear(self) -> None:
        """Remove all listeners."""
        self._listeners.clear()
        self._wildcard_listeners.clear()
        if self._metrics:
            self._metrics.total_listeners = 0
        logger.info("EventBus cleared")

    # ========================================================================
    # PUBLISHING
    # ========================================================================

    async def publish(self, event_name: str, data: EventPayload) -> List[Any]:
        """
        Publish an event to every matching listener.

        Returns the listeners' return values in execution order; a listener
        that raised contributes None.
        """
        if self._metrics:
            self._metrics.record_publish(event_name)

        listeners = list(self._listeners.get(event_name, []))
        listeners.extend(
            listener
            for pattern, listener in self._wildcard_listeners
            if self._matches_wildcard(event_name, pattern)
        )
        listeners.sort(key=lambda l: l.priority.value)

        if not listeners:
            logger.debug("No listeners for event", extra={"event_name": event_name})
            return []

        with LogContext(
            player_uuid=data.get("player_uuid"),
            operation=f"event:{event_name}",
        ):
            return await self._execute_listeners(event_name, data, listeners)

    async def _execute_listeners(
        self,
        event_name: str,
        data: EventPayload,
        listeners: List[EventListener],
    ) -> List[Any]:
        results: List[Any] = []
        finished_once: List[EventListener] = []

        for listener in listeners:
            try:
                if inspect.iscoroutinefunction(listener.callback):
                    result = await listener.callback(data)
                else:
                    loop = asyncio.get_running_loop()
                    result = await loop.run_in_executor(None, listener.callback, data)
                results.append(result)
            except Exception as e:
                if self._metrics:
                    self._metrics.record_error(event_name)
                logger.error(
                    "Event listener failed",
                    extra={
                        "event_name": event_name,
                        "listener_id": listener.identifier,
                        "error": str(e),
                        "error_type": type(e).__name__,
                    },
                    exc_info=True,
                )
                results.append(None)
            finally:
                if listener.once:
                    finished_once.append(listener)

        for listener in finished_once:
            self._remove_listener(listener)

        return results

    def _remove_listener(self, listener: EventListener) -> None:
        for name, bucket in self._listeners.items():
            if listener in bucket:
                self.unsubscribe(name, listener.identifier)
                return
        for pattern, registered in self._wildcard_listeners:
            if registered is listener:
                self.unsubscribe(pattern, listener.identifier)
                return

    @staticmethod
    def _matches_wildcard(event_name: str, pattern: str) -> bool:
        """Match "a.*" style patterns by prefix and suffix."""
        if pattern == "*":
            return True
        if "*" not in pattern:
            return event_name == pattern

        head, _, tail = pattern.partition("*")
        tail = tail.rsplit("*", 1)[-1]
        return (
            event_name.startswith(head)
            and event_name.endswith(tail)
            and len(event_name) >= len(head) + len(tail)
        )

    # ========================================================================
    # INTROSPECTION
    # ========================================================================

    def get_metrics_summary(self) -> Dict[str, Any]:
        """Metrics summary, or empty dict when metrics are disabled."""
        return self._metrics.get_summary() if self._metrics else {}

    def get_listener_count(self, event_name: Optional[str] = None) -> int:
        """Count listeners, optionally only those that would receive event_name."""
        if event_name is None:
            return sum(len(v) for v in self._listeners.values()) + len(
                self._wildcard_listeners
            )
        count = len(self._listeners.get(event_name, []))
        count += sum(
            1
            for pattern, _ in self._wildcard_listeners
            if self._matches_wildcard(event_name, pattern)
        )
        return count
