"""
Unit Tests for the Rank Formulas and RankCatalog
================================================

Purpose
-------
Validate the 175-position rank ladder: thresholds, ordering, display names
and lookups, without touching storage.

Test Coverage
-------------
- Playtime and achievement formulas at known positions
- Tier boundaries (minutes are not monotone across them)
- Position index and progress labels
- next_position wrapping and the top of the ladder
- Out-of-range positions
- Catalog persistence guard without a gateway

Testing Strategy
----------------
- Pure functions only; RankCatalog is built without a gateway
"""

import pytest

from src.core.exceptions import InvariantViolation
from src.modules.ranks import FIRST_POSITION, LAST_POSITION, RankCatalog, RankPosition
from src.modules.ranks import formulas


# ============================================================================
# FORMULA TESTS
# ============================================================================


@pytest.mark.unit
class TestRequiredMinutes:
    """Playtime requirement: floor(60 * 1.5^(p+s-2))."""

    @pytest.mark.parametrize(
        "position, expected",
        [
            ((1, 1), 60),
            ((1, 2), 90),
            ((1, 3), 135),
            ((1, 4), 202),
            ((1, 7), 683),
            ((2, 1), 90),
            ((25, 7), 11505063),
        ],
    )
    def test_known_positions(self, position, expected):
        assert formulas.required_minutes(*position) == expected

    def test_minutes_drop_at_tier_boundary(self):
        """(2,1) needs fewer minutes than (1,7); achievements gate the step."""
        assert formulas.required_minutes(2, 1) < formulas.required_minutes(1, 7)
        assert formulas.required_achievements(2, 1) > formulas.required_achievements(1, 7)

    def test_minutes_increase_within_tier(self):
        for primary in (1, 12, 25):
            values = [formulas.required_minutes(primary, sub) for sub in range(1, 8)]
            assert values == sorted(values)
            assert len(set(values)) == 7


@pytest.mark.unit
class TestRequiredAchievements:
    """Achievement requirement: (p-1)*7 + (s-1)."""

    @pytest.mark.parametrize(
        "position, expected",
        [((1, 1), 0), ((1, 2), 1), ((1, 7), 6), ((2, 1), 7), ((25, 7), 174)],
    )
    def test_known_positions(self, position, expected):
        assert formulas.required_achievements(*position) == expected

    def test_achievements_strictly_increase_along_ladder(self):
        catalog = RankCatalog()
        values = [info.required_achievements for info in catalog.entries()]
        assert values == list(range(175))


@pytest.mark.unit
class TestLabels:
    def test_display_name_is_sub_tier_then_tier(self):
        assert formulas.display_name(1, 1) == "novice bystander"
        assert formulas.display_name(2, 3) == "adept wanderer"
        assert formulas.display_name(25, 7) == "immortal immortal"

    def test_position_index(self):
        assert formulas.position_index(1, 1) == 1
        assert formulas.position_index(2, 1) == 8
        assert formulas.position_index(25, 7) == 175

    @pytest.mark.parametrize(
        "position, expected",
        [
            ((1, 1), "Rank 1/175 (0.0% complete)"),
            ((2, 1), "Rank 8/175 (4.0% complete)"),
            ((25, 7), "Rank 175/175 (99.4% complete)"),
        ],
    )
    def test_progress_label(self, position, expected):
        assert formulas.progress_label(*position) == expected


@pytest.mark.unit
class TestPositionValidation:
    @pytest.mark.parametrize("position", [(0, 1), (1, 0), (26, 1), (1, 8), (-1, 3)])
    def test_out_of_range_positions_raise(self, position):
        with pytest.raises(InvariantViolation) as exc_info:
            formulas.required_minutes(*position)

        assert exc_info.value.invariant == "rank_position"
        assert exc_info.value.details["primary_tier"] == position[0]

    def test_catalog_lookup_outside_ladder_raises(self):
        catalog = RankCatalog()

        with pytest.raises(InvariantViolation):
            catalog.definition(26, 1)


# ============================================================================
# CATALOG TESTS
# ============================================================================


@pytest.mark.unit
class TestRankCatalog:
    """In-memory catalog behavior."""

    def test_catalog_has_every_position(self):
        catalog = RankCatalog()

        entries = catalog.entries()

        assert len(catalog) == 175
        assert entries[0].position == FIRST_POSITION
        assert entries[-1].position == LAST_POSITION

    def test_entries_are_in_ladder_order(self):
        positions = [info.position for info in RankCatalog().entries()]
        assert positions == sorted(positions)

    def test_positions_compare_lexicographically(self):
        assert RankPosition(2, 1) > RankPosition(1, 7)
        assert str(RankPosition(3, 4)) == "3.4"

    def test_threshold_for(self):
        threshold = RankCatalog().threshold_for(1, 2)

        assert threshold.minutes == 90
        assert threshold.achievements == 1

    def test_next_position_within_tier(self):
        assert RankCatalog.next_position(1, 1) == RankPosition(1, 2)

    def test_next_position_wraps_to_next_tier(self):
        assert RankCatalog.next_position(1, 7) == RankPosition(2, 1)

    def test_next_position_is_none_at_top(self):
        assert RankCatalog.next_position(25, 7) is None

    def test_generated_entries_have_no_rewards(self):
        info = RankCatalog().definition(3, 2)

        assert info.reward_amount == 0
        assert info.reward_commands == ()
        assert info.has_rewards is False
        assert info.tier_name == "adventurer"
        assert info.sub_tier_name == "apprentice"

    async def test_seeding_requires_gateway(self):
        catalog = RankCatalog()

        with pytest.raises(RuntimeError, match="without a gateway"):
            await catalog.ensure_seeded()

    async def test_set_reward_rejects_negative_amount(self):
        catalog = RankCatalog()

        with pytest.raises(InvariantViolation):
            await catalog.set_reward(1, 2, -5)
