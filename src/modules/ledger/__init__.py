"""Append-only progression ledger and the rate limiter guarding it."""

from .rate_limiter import RateDecision, RateLimiter
from .service import EventLedger, LedgerEvent, XPStatistics

__all__ = [
    "EventLedger",
    "LedgerEvent",
    "RateDecision",
    "RateLimiter",
    "XPStatistics",
]
