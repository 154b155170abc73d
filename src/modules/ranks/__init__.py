"""The 175-position rank ladder."""

from .catalog import (
    FIRST_POSITION,
    LAST_POSITION,
    RankCatalog,
    RankInfo,
    RankPosition,
    Threshold,
)

__all__ = [
    "FIRST_POSITION",
    "LAST_POSITION",
    "RankCatalog",
    "RankInfo",
    "RankPosition",
    "Threshold",
]
