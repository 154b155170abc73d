"""
Integration Tests for EventLedger
=================================

Purpose
-------
Test appends and every SQL aggregate against a real database.

Test Coverage
-------------
- Concurrent appends never lose or double count
- Half-open rate windows
- Newest-first history with stable tie order
- Per-source and per-day breakdowns
- Statistics summary
- Leaderboards with shared positions for ties
- Malformed events and unknown players

Testing Strategy
----------------
- Integration tests (file-backed SQLite per test)
- Players are registered through the facade so identity rows exist
"""

import asyncio
from datetime import date, timedelta

import pytest

from src.core.exceptions import InvariantViolation, StorageQueryFailed
from src.database.models import EventKind
from src.modules.ledger import LedgerEvent
from tests.factories import T0, new_uuid


def _gain(player_uuid, source, amount, at):
    return LedgerEvent.gain(player_uuid, source, amount, occurred_at=at)


# ============================================================================
# APPEND TESTS
# ============================================================================


@pytest.mark.integration
@pytest.mark.database
class TestAppend:
    async def test_total_is_sum_of_gains(self, ledger, register_player):
        # Arrange
        player_uuid = await register_player()

        # Act
        await ledger.append(_gain(player_uuid, "chat", 5, T0))
        await ledger.append(_gain(player_uuid, "kill:zombie", 8, T0))
        await ledger.append(_gain(player_uuid, "admin", -3, T0))

        # Assert
        assert await ledger.total_experience(player_uuid) == 10

    async def test_other_kinds_do_not_count_as_experience(self, ledger, register_player):
        player_uuid = await register_player()

        await ledger.append(_gain(player_uuid, "chat", 5, T0))
        await ledger.log_promotion(player_uuid, (1, 1), (1, 2), "Requirements met", occurred_at=T0)

        assert await ledger.total_experience(player_uuid) == 5
        assert await ledger.sum_since(player_uuid, EventKind.RANK_PROMOTION) == 0

    async def test_concurrent_appends_are_all_counted(self, ledger, register_player):
        # Arrange
        player_uuid = await register_player()

        # Act
        await asyncio.gather(
            *(ledger.append(_gain(player_uuid, "chat", amount, T0)) for amount in range(1, 13))
        )

        # Assert
        assert await ledger.total_experience(player_uuid) == sum(range(1, 13))
        assert len(await ledger.recent(player_uuid, limit=50)) == 12

    async def test_unknown_player_fails_foreign_key(self, ledger):
        with pytest.raises(StorageQueryFailed):
            await ledger.append(_gain(new_uuid(), "chat", 5, T0))

    async def test_empty_source_is_rejected(self, ledger, register_player):
        player_uuid = await register_player()

        with pytest.raises(InvariantViolation):
            await ledger.append(_gain(player_uuid, "", 5, T0))

        assert await ledger.recent(player_uuid) == []

    async def test_audit_rows(self, ledger, register_player):
        # Arrange
        player_uuid = await register_player()

        # Act
        await ledger.log_promotion(player_uuid, (1, 7), (2, 1), "Requirements met", occurred_at=T0)
        await ledger.log_reward_processing(player_uuid, (2, 1), 250, 2, occurred_at=T0)

        # Assert
        reward, promotion = await ledger.recent(player_uuid)
        assert promotion.event_kind is EventKind.RANK_PROMOTION
        assert promotion.metadata["description"] == "From 1.7 to 2.1"
        assert reward.event_kind is EventKind.REWARD_PROCESSING
        assert reward.source == "Rank 2.1"
        assert reward.amount == 250
        assert reward.metadata == {"description": "Commands executed: 2"}


# ============================================================================
# WINDOW TESTS
# ============================================================================


@pytest.mark.integration
@pytest.mark.database
class TestWindows:
    async def test_count_in_window_is_half_open(self, ledger, register_player):
        # Arrange
        player_uuid = await register_player()
        for offset in (-60, -30, 0):
            await ledger.append(_gain(player_uuid, "chat", 1, T0 + timedelta(seconds=offset)))

        # Act
        count = await ledger.count_in_window(
            player_uuid, EventKind.XP_GAIN, "chat", T0 - timedelta(seconds=60), T0
        )

        # Assert: start included, end excluded
        assert count == 2

    async def test_count_without_end_is_open_ended(self, ledger, register_player):
        player_uuid = await register_player()
        for offset in (-60, 0, 3600):
            await ledger.append(_gain(player_uuid, "chat", 1, T0 + timedelta(seconds=offset)))

        count = await ledger.count_in_window(
            player_uuid, EventKind.XP_GAIN, "chat", T0 - timedelta(seconds=30)
        )

        assert count == 2

    async def test_count_filters_kind_and_source(self, ledger, register_player):
        player_uuid = await register_player()
        await ledger.append(_gain(player_uuid, "chat", 1, T0))
        await ledger.append(_gain(player_uuid, "kill", 1, T0))

        count = await ledger.count_in_window(
            player_uuid, EventKind.XP_GAIN, "chat", T0, T0 + timedelta(seconds=1)
        )

        assert count == 1

    async def test_last_event_at(self, ledger, register_player):
        # Arrange
        player_uuid = await register_player()
        await ledger.append(_gain(player_uuid, "chat", 1, T0))
        await ledger.append(_gain(player_uuid, "chat", 1, T0 + timedelta(seconds=40)))

        # Act
        last = await ledger.last_event_at(player_uuid, EventKind.XP_GAIN, "chat")
        missing = await ledger.last_event_at(player_uuid, EventKind.XP_GAIN, "kill")

        # Assert
        assert last == T0 + timedelta(seconds=40)
        assert last.tzinfo is not None
        assert missing is None

    async def test_sum_since(self, ledger, register_player):
        player_uuid = await register_player()
        await ledger.append(_gain(player_uuid, "chat", 4, T0 - timedelta(days=2)))
        await ledger.append(_gain(player_uuid, "chat", 6, T0))

        assert await ledger.sum_since(player_uuid, EventKind.XP_GAIN, T0 - timedelta(days=1)) == 6


# ============================================================================
# REPORTING TESTS
# ============================================================================


@pytest.mark.integration
@pytest.mark.database
class TestReporting:
    async def test_recent_is_newest_first_with_id_tiebreak(self, ledger, register_player):
        # Arrange
        player_uuid = await register_player()
        await ledger.append(_gain(player_uuid, "first", 1, T0))
        await ledger.append(_gain(player_uuid, "tie-a", 1, T0 + timedelta(minutes=1)))
        await ledger.append(_gain(player_uuid, "tie-b", 1, T0 + timedelta(minutes=1)))

        # Act
        events = await ledger.recent(player_uuid, limit=2)

        # Assert
        assert [event.source for event in events] == ["tie-b", "tie-a"]
        assert events[0].id > events[1].id

    async def test_recent_rejects_non_positive_limit(self, ledger, register_player):
        player_uuid = await register_player()

        with pytest.raises(InvariantViolation):
            await ledger.recent(player_uuid, limit=0)

    async def test_breakdown_by_source(self, ledger, register_player):
        # Arrange
        player_uuid = await register_player()
        await ledger.append(_gain(player_uuid, "chat", 5, T0))
        await ledger.append(_gain(player_uuid, "kill", 20, T0))
        await ledger.append(_gain(player_uuid, "chat", 3, T0 - timedelta(days=10)))

        # Act
        all_time = await ledger.breakdown_by_source(player_uuid)
        recent = await ledger.breakdown_by_source(player_uuid, since=T0 - timedelta(days=1))

        # Assert
        assert list(all_time.items()) == [("kill", 20), ("chat", 8)]
        assert recent == {"kill": 20, "chat": 5}

    async def test_daily_breakdown(self, ledger, register_player):
        # Arrange
        player_uuid = await register_player()
        await ledger.append(_gain(player_uuid, "chat", 5, T0))
        await ledger.append(_gain(player_uuid, "kill", 20, T0 - timedelta(days=2)))
        await ledger.append(_gain(player_uuid, "chat", 3, T0 - timedelta(days=10)))

        # Act
        daily = await ledger.daily_breakdown(player_uuid, days=7, now=T0 + timedelta(hours=1))

        # Assert
        assert daily == {date(2026, 2, 27): 20, date(2026, 3, 1): 5}

    async def test_statistics(self, ledger, register_player):
        # Arrange
        player_uuid = await register_player()
        await ledger.append(_gain(player_uuid, "chat", 5, T0))
        await ledger.append(_gain(player_uuid, "kill", 20, T0 - timedelta(days=2)))
        await ledger.append(_gain(player_uuid, "chat", 3, T0 - timedelta(days=10)))

        # Act
        stats = await ledger.statistics(player_uuid, now=T0 + timedelta(hours=1))

        # Assert
        assert stats.total == 28
        assert stats.last_7_days == 25
        assert stats.last_24_hours == 5
        assert stats.event_count == 3
        assert stats.most_active_source == "kill"

    async def test_statistics_without_events(self, ledger, register_player):
        player_uuid = await register_player()

        stats = await ledger.statistics(player_uuid, now=T0)

        assert stats.total == 0
        assert stats.event_count == 0
        assert stats.most_active_source is None


# ============================================================================
# LEADERBOARD TESTS
# ============================================================================


@pytest.mark.integration
@pytest.mark.database
class TestLeaderboards:
    async def test_top_players_and_shared_positions(self, ledger, register_player):
        # Arrange
        alex = await register_player("Alex")
        blair = await register_player("Blair")
        casey = await register_player("Casey")
        idle = await register_player("Idle")
        await ledger.append(_gain(alex, "chat", 50, T0))
        await ledger.append(_gain(blair, "chat", 30, T0))
        await ledger.append(_gain(blair, "kill", 20, T0))
        await ledger.append(_gain(casey, "chat", 10, T0))

        # Act
        top = await ledger.top_players_by_experience(limit=10)

        # Assert
        assert [total for _, _, total in top] == [50, 50, 10]
        assert top[2] == (casey, "Casey", 10)
        assert {name for _, name, _ in top[:2]} == {"Alex", "Blair"}
        assert await ledger.experience_position(alex) == 1
        assert await ledger.experience_position(blair) == 1
        assert await ledger.experience_position(casey) == 3
        assert await ledger.experience_position(idle) is None

    async def test_top_players_recent_window(self, ledger, register_player):
        # Arrange
        veteran = await register_player("Veteran")
        newcomer = await register_player("Newcomer")
        await ledger.append(_gain(veteran, "chat", 500, T0 - timedelta(days=30)))
        await ledger.append(_gain(newcomer, "chat", 5, T0))

        # Act
        top = await ledger.top_players_by_experience(limit=5, days=7, now=T0)

        # Assert
        assert top == [(newcomer, "Newcomer", 5)]

    async def test_limit_is_applied(self, ledger, register_player):
        for name in ("A", "B", "C"):
            player_uuid = await register_player(name)
            await ledger.append(_gain(player_uuid, "chat", 1, T0))

        assert len(await ledger.top_players_by_experience(limit=2)) == 2
