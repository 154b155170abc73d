"""
Unit Tests for RateLimiter
==========================

Purpose
-------
Validate the allow/deny decision logic against scripted ledger counts.

Test Coverage
-------------
- Allow when every window is under its cap
- Deny at exactly the cap (>= comparison)
- Shortest violated window reported first
- Cooldown checked before the windows, with retry_at
- Per-(kind, source) overrides
- enforce() raising RateLimited

Testing Strategy
----------------
- EventLedger is a mock; windowed counts are scripted per call
"""

from datetime import timedelta

import pytest

from src.core.config.settings import RateCaps, RateLimitSettings
from src.core.exceptions import RateLimited
from src.database.models import EventKind
from src.modules.ledger import RateLimiter
from tests.factories import T0


@pytest.mark.unit
class TestRateDecision:
    async def test_allows_under_caps(self, mock_ledger):
        # Arrange
        limiter = RateLimiter(mock_ledger, RateLimitSettings(cooldown_seconds=0))

        # Act
        decision = await limiter.check("p-1", EventKind.XP_GAIN, "chat", T0)

        # Assert
        assert decision.allowed
        assert decision.window is None
        assert mock_ledger.count_in_window.await_count == 3
        mock_ledger.last_event_at.assert_not_awaited()

    async def test_window_bounds_are_trailing_and_open_ended(self, mock_ledger):
        limiter = RateLimiter(mock_ledger, RateLimitSettings(cooldown_seconds=0))

        await limiter.check("p-1", EventKind.XP_GAIN, "chat", T0)

        starts = [call.args[3] for call in mock_ledger.count_in_window.await_args_list]
        assert starts == [T0 - timedelta(minutes=1), T0 - timedelta(hours=1), T0 - timedelta(days=1)]
        assert all(len(call.args) == 4 for call in mock_ledger.count_in_window.await_args_list)

    async def test_denies_at_exact_cap(self, mock_ledger):
        # Arrange
        mock_ledger.count_in_window.return_value = 10
        limiter = RateLimiter(mock_ledger, RateLimitSettings(cooldown_seconds=0))

        # Act
        decision = await limiter.check("p-1", EventKind.XP_GAIN, "chat", T0)

        # Assert
        assert not decision.allowed
        assert (decision.window, decision.cap, decision.count) == ("minute", 10, 10)

    async def test_one_below_cap_is_allowed(self, mock_ledger):
        mock_ledger.count_in_window.side_effect = [9, 9, 9]
        limiter = RateLimiter(mock_ledger, RateLimitSettings(cooldown_seconds=0))

        decision = await limiter.check("p-1", EventKind.XP_GAIN, "chat", T0)

        assert decision.allowed

    async def test_reports_first_violated_window(self, mock_ledger):
        # Arrange: minute is fine, hour is full
        mock_ledger.count_in_window.side_effect = [2, 100, 100]
        limiter = RateLimiter(mock_ledger, RateLimitSettings(cooldown_seconds=0))

        # Act
        decision = await limiter.check("p-1", EventKind.XP_GAIN, "chat", T0)

        # Assert
        assert decision.window == "hour"
        assert decision.cap == 100
        # day window is never consulted once hour denies
        assert mock_ledger.count_in_window.await_count == 2


@pytest.mark.unit
class TestCooldown:
    async def test_cooldown_denies_before_windows(self, mock_ledger):
        # Arrange
        mock_ledger.last_event_at.return_value = T0 - timedelta(seconds=2)
        limiter = RateLimiter(mock_ledger, RateLimitSettings(cooldown_seconds=5))

        # Act
        decision = await limiter.check("p-1", EventKind.XP_GAIN, "chat", T0)

        # Assert
        assert not decision.allowed
        assert decision.window == "cooldown"
        assert decision.retry_at == T0 + timedelta(seconds=3)
        mock_ledger.count_in_window.assert_not_awaited()

    async def test_cooldown_elapsed_allows(self, mock_ledger):
        mock_ledger.last_event_at.return_value = T0 - timedelta(seconds=5)
        limiter = RateLimiter(mock_ledger, RateLimitSettings(cooldown_seconds=5))

        decision = await limiter.check("p-1", EventKind.XP_GAIN, "chat", T0)

        assert decision.allowed


@pytest.mark.unit
class TestOverridesAndEnforce:
    async def test_override_caps_apply_to_pair(self, mock_ledger):
        # Arrange
        mock_ledger.count_in_window.return_value = 1
        settings = RateLimitSettings(
            overrides={("XP_GAIN", "chat"): RateCaps(per_minute=1, per_hour=5, per_day=5)},
            cooldown_seconds=0,
        )
        limiter = RateLimiter(mock_ledger, settings)

        # Act
        chat = await limiter.check("p-1", EventKind.XP_GAIN, "chat", T0)
        kill = await limiter.check("p-1", EventKind.XP_GAIN, "kill:zombie", T0)

        # Assert
        assert not chat.allowed and chat.cap == 1
        assert kill.allowed

    async def test_enforce_raises_rate_limited(self, mock_ledger):
        # Arrange
        mock_ledger.count_in_window.return_value = 10
        limiter = RateLimiter(mock_ledger, RateLimitSettings(cooldown_seconds=0))

        # Act
        with pytest.raises(RateLimited) as exc_info:
            await limiter.enforce("p-1", EventKind.XP_GAIN, "chat", T0)

        # Assert
        assert exc_info.value.window == "minute"
        assert exc_info.value.event_kind == "XP_GAIN"
        assert exc_info.value.source == "chat"

    async def test_enforce_returns_decision_when_allowed(self, mock_ledger):
        limiter = RateLimiter(mock_ledger, RateLimitSettings(cooldown_seconds=0))

        decision = await limiter.enforce("p-1", EventKind.XP_GAIN, "chat", T0)

        assert decision.allowed
