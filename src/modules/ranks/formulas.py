"""
Rank Formulas

Purpose
-------
Pure calculation functions for the rank ladder: the playtime and
achievement requirements of each catalog position, its display names and
its index along the 175-position ladder.

Design Notes
------------
All formulas:
- Accept parameters explicitly
- Use exact integer arithmetic (no float rounding near boundaries)
- Raise InvariantViolation for positions outside the catalog

Usage
-----
    from src.modules.ranks.formulas import required_minutes

    required_minutes(1, 7)   # 683
"""

from __future__ import annotations

from typing import Tuple

from src.core.exceptions import InvariantViolation

PRIMARY_TIERS = 25
SUB_TIERS = 7
TOTAL_POSITIONS = PRIMARY_TIERS * SUB_TIERS

BASE_MINUTES = 60

MAIN_RANK_NAMES: Tuple[str, ...] = (
    "bystander",
    "wanderer",
    "adventurer",
    "explorer",
    "tracker",
    "pathfinder",
    "navigator",
    "wayfinder",
    "scout",
    "ranger",
    "guardian",
    "sentinel",
    "warden",
    "protector",
    "defender",
    "champion",
    "hero",
    "legend",
    "mythic",
    "epic",
    "divine",
    "celestial",
    "transcendent",
    "eternal",
    "immortal",
)

SUB_RANK_NAMES: Tuple[str, ...] = (
    "novice",
    "apprentice",
    "adept",
    "master",
    "heroic",
    "mythic",
    "immortal",
)


def validate_position(primary_tier: int, sub_tier: int) -> None:
    """
    Raises:
        InvariantViolation: If (primary_tier, sub_tier) is not a catalog position
    """
    if not (1 <= primary_tier <= PRIMARY_TIERS and 1 <= sub_tier <= SUB_TIERS):
        raise InvariantViolation(
            "rank_position",
            f"rank position {primary_tier}.{sub_tier} is outside the catalog",
            details={"primary_tier": primary_tier, "sub_tier": sub_tier},
        )


def required_minutes(primary_tier: int, sub_tier: int) -> int:
    """
    Playtime needed to hold a position: floor(60 * 1.5^(p+s-2)).

    Example:
        >>> required_minutes(1, 1)
        60
        >>> required_minutes(1, 2)
        90
        >>> required_minutes(1, 7)
        683
    """
    validate_position(primary_tier, sub_tier)
    n = primary_tier + sub_tier - 2
    return (3**n * BASE_MINUTES) // 2**n


def required_achievements(primary_tier: int, sub_tier: int) -> int:
    """
    Completed achievements needed to hold a position.

    Example:
        >>> required_achievements(1, 7)
        6
        >>> required_achievements(2, 1)
        7
    """
    validate_position(primary_tier, sub_tier)
    return (primary_tier - 1) * SUB_TIERS + (sub_tier - 1)


def position_index(primary_tier: int, sub_tier: int) -> int:
    """1-based index along the ladder; (1,1) is 1 and (25,7) is 175."""
    validate_position(primary_tier, sub_tier)
    return (primary_tier - 1) * SUB_TIERS + sub_tier


def display_name(primary_tier: int, sub_tier: int) -> str:
    """Sub-tier name followed by tier name, e.g. "novice bystander"."""
    validate_position(primary_tier, sub_tier)
    return f"{SUB_RANK_NAMES[sub_tier - 1]} {MAIN_RANK_NAMES[primary_tier - 1]}"


def progress_label(primary_tier: int, sub_tier: int) -> str:
    """
    Human summary of ladder progress.

    Example:
        >>> progress_label(1, 1)
        'Rank 1/175 (0.0% complete)'
        >>> progress_label(2, 1)
        'Rank 8/175 (4.0% complete)'
    """
    index = position_index(primary_tier, sub_tier)
    percent = (index - 1) / TOTAL_POSITIONS * 100
    return f"Rank {index}/{TOTAL_POSITIONS} ({percent:.1f}% complete)"
