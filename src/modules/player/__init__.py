"""
Player Module
=============

Public facade used by upstream collaborators (proxy hooks, chat-bot
commands, permission and economy adapters).

Services
--------
- PlayerLedgerService: sightings, gain requests, rank and verification queries
"""

from .service import (
    GAIN_ACCEPTED,
    CurrentRank,
    GainResult,
    GainStatus,
    PlayerLedgerService,
)

__all__ = [
    "GAIN_ACCEPTED",
    "CurrentRank",
    "GainResult",
    "GainStatus",
    "PlayerLedgerService",
]
