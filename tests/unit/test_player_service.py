"""
Unit tests for PlayerLedgerService.

Covers the pure helpers (experience scaling, sighting accrual) and the
input guards of request_gain, with every collaborator mocked.
"""

from datetime import timedelta

import pytest

from src.core.config.settings import ProgressionSettings
from src.core.exceptions import InvariantViolation
from src.database.models import EventKind
from src.modules.player import GainResult, GainStatus, PlayerLedgerService
from tests.factories import T0


@pytest.fixture
def facade(mocker):
    return PlayerLedgerService(
        gateway=mocker.MagicMock(),
        ledger=mocker.MagicMock(),
        limiter=mocker.MagicMock(),
        catalog=mocker.MagicMock(),
        engine=mocker.MagicMock(),
        verification=mocker.MagicMock(),
        settings=ProgressionSettings(sighting_gap=timedelta(minutes=5)),
    )


@pytest.mark.unit
class TestScaledAmount:
    def test_kill_gains_are_scaled_down(self, facade):
        assert facade.scaled_amount(EventKind.XP_GAIN, "kill:zombie", 10) == 8

    def test_unknown_family_is_unchanged(self, facade):
        assert facade.scaled_amount(EventKind.XP_GAIN, "quest", 10) == 10

    def test_small_gain_is_at_least_one(self, facade):
        assert facade.scaled_amount(EventKind.XP_GAIN, "playtime", 1) == 1

    def test_non_xp_kinds_are_not_scaled(self, facade):
        assert facade.scaled_amount(EventKind.ACHIEVEMENT, "kill:zombie", 1) == 1
        assert facade.scaled_amount(EventKind.PLAYTIME_SESSION, "playtime", 30) == 30

    def test_negative_amounts_are_not_scaled(self, facade):
        assert facade.scaled_amount(EventKind.XP_GAIN, "kill:zombie", -10) == -10


@pytest.mark.unit
class TestAccruedMinutes:
    def test_first_sighting_accrues_nothing(self, facade):
        assert facade._accrued_minutes(None, T0) == 0

    def test_minutes_between_sightings(self, facade):
        assert facade._accrued_minutes(T0, T0 + timedelta(minutes=3)) == 3

    def test_long_gap_is_capped(self, facade):
        assert facade._accrued_minutes(T0, T0 + timedelta(minutes=20)) == 5

    def test_out_of_order_sighting_accrues_nothing(self, facade):
        assert facade._accrued_minutes(T0, T0 - timedelta(minutes=2)) == 0

    def test_frequent_sightings_add_up(self, facade):
        """Thirty-second sightings over ten minutes credit ten minutes."""
        total = 0
        previous = T0
        for step in range(1, 21):
            seen = T0 + timedelta(seconds=30 * step)
            total += facade._accrued_minutes(previous, seen)
            previous = seen

        assert total == 10


@pytest.mark.unit
class TestRequestGainGuards:
    @pytest.mark.parametrize("kind", [EventKind.RANK_PROMOTION, EventKind.REWARD_PROCESSING])
    async def test_engine_owned_kinds_are_rejected(self, facade, kind):
        with pytest.raises(InvariantViolation):
            await facade.request_gain("p-1", kind, "manual", 1)

    async def test_empty_source_is_rejected(self, facade):
        with pytest.raises(InvariantViolation):
            await facade.request_gain("p-1", EventKind.XP_GAIN, "", 1)


@pytest.mark.unit
class TestGainResult:
    def test_accepted_result(self):
        result = GainResult(GainStatus.ACCEPTED, credited_amount=8)

        assert result.accepted
        assert not result.is_retryable

    def test_storage_unavailable_is_retryable(self):
        result = GainResult(GainStatus.STORAGE_UNAVAILABLE, error="down")

        assert not result.accepted
        assert result.is_retryable
