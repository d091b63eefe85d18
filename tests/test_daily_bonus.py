"""Tests for calendar-day bonus rules."""

from datetime import datetime, timedelta, timezone

from app.services.daily_bonus import (
    EPOCH,
    calendar_day,
    is_bonus_due,
    next_streak,
    reference_timezone,
)

UTC = reference_timezone("UTC")
NOW = datetime(2024, 3, 10, 12, 0, tzinfo=timezone.utc)


class TestIsBonusDue:

    def test_never_logged_in(self):
        assert is_bonus_due(EPOCH, NOW, UTC)
        assert is_bonus_due(None, NOW, UTC)

    def test_same_day(self):
        assert not is_bonus_due(NOW.replace(hour=0, minute=1), NOW, UTC)

    def test_previous_day(self):
        assert is_bonus_due(NOW - timedelta(days=1), NOW, UTC)

    def test_just_after_midnight(self):
        last = datetime(2024, 3, 9, 23, 59, tzinfo=timezone.utc)
        assert is_bonus_due(last, datetime(2024, 3, 10, 0, 0, tzinfo=timezone.utc), UTC)

    def test_naive_timestamps_are_utc(self):
        assert not is_bonus_due(datetime(2024, 3, 10, 1, 0), NOW, UTC)

    def test_reference_timezone_moves_the_boundary(self):
        tokyo = reference_timezone("Asia/Tokyo")
        last = datetime(2024, 3, 9, 14, 0, tzinfo=timezone.utc)   # 23:00 in Tokyo
        now = datetime(2024, 3, 9, 16, 0, tzinfo=timezone.utc)    # 01:00 next day in Tokyo
        assert is_bonus_due(last, now, tokyo)
        assert not is_bonus_due(last, now, UTC)
        assert calendar_day(now, tokyo) == calendar_day(last, tokyo) + timedelta(days=1)


class TestNextStreak:

    def test_first_login_starts_at_one(self):
        assert next_streak(EPOCH, 0, NOW, UTC) == 1

    def test_consecutive_day_extends(self):
        assert next_streak(NOW - timedelta(days=1), 4, NOW, UTC) == 5

    def test_gap_restarts(self):
        assert next_streak(NOW - timedelta(days=3), 9, NOW, UTC) == 1
