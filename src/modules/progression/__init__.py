"""Rank evaluation and playtime/achievement accrual."""

from .service import (
    RANK_PROMOTED,
    ProgressionEngine,
    ProgressSnapshot,
    Promotion,
)

__all__ = [
    "RANK_PROMOTED",
    "ProgressionEngine",
    "ProgressSnapshot",
    "Promotion",
]
