"""Tests for the XP to level formula."""

import pytest

from app.models.progress import ProgressRecord
from app.services.daily_bonus import EPOCH
from app.services.level_service import (
    XP_PER_LEVEL,
    level_for_xp,
    level_progress,
    xp_into_level,
    xp_to_next_level,
)


class TestLevelForXp:

    @pytest.mark.parametrize(
        "xp,level",
        [(0, 1), (99, 1), (100, 2), (199, 2), (500, 6), (999, 10), (1000, 11)],
    )
    def test_formula(self, xp, level):
        assert level_for_xp(xp) == level

    def test_monotonic(self):
        levels = [level_for_xp(xp) for xp in range(0, 2001)]
        assert levels == sorted(levels)
        assert all(b - a in (0, 1) for a, b in zip(levels, levels[1:]))

    def test_negative_xp_rejected(self):
        with pytest.raises(ValueError):
            level_for_xp(-1)


class TestLevelProgress:

    def test_fresh_user(self):
        assert xp_into_level(0) == 0
        assert xp_to_next_level(0) == XP_PER_LEVEL
        assert level_progress(0) == 0.0

    def test_mid_level(self):
        assert xp_into_level(250) == 50
        assert xp_to_next_level(250) == 50
        assert level_progress(250) == pytest.approx(0.5)

    def test_exact_boundary_starts_new_level(self):
        assert xp_into_level(300) == 0
        assert xp_to_next_level(300) == XP_PER_LEVEL


class TestProgressRecordLevel:

    def test_level_is_derived_from_xp(self):
        record = ProgressRecord(user_id="u1", xp=500, coins=10, last_login_date=EPOCH)
        assert record.level == 6
        body = record.model_dump(by_alias=True)
        assert body["level"] == 6
        assert body["xpToNextLevel"] == 100
        assert body["userId"] == "u1"
