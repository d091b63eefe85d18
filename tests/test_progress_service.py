"""Tests for the progress engine: rewards, daily bonus, idempotency and reset."""

from concurrent.futures import ThreadPoolExecutor

import pytest

from app.db.progress_store import InMemoryProgressStore
from app.errors import (
    IdempotencyConflictError,
    InsufficientCoinsError,
    InvalidRequestError,
    StorageUnavailableError,
)
from app.models.progress import ActionType
from app.services.progress_service import ACTION_REWARDS, ProgressEngine, parse_action, reward_for


def _claim(engine, store, clock, key):
    return store.claim_idempotency_key(
        "u1", key, clock(), engine.idempotency_ttl, engine.idempotency_pending_timeout,
    )


class FlakyStore(InMemoryProgressStore):
    """Raises ``StorageUnavailableError`` from chosen calls, before or after they write."""

    def __init__(self) -> None:
        super().__init__()
        self.fail_before: dict[str, int] = {}
        self.fail_after: dict[str, int] = {}

    def _maybe_fail(self, failures: dict[str, int], name: str) -> None:
        if failures.get(name, 0) > 0:
            failures[name] -= 1
            raise StorageUnavailableError("Progress storage is temporarily unavailable")

    def apply_action_reward(self, *args, **kwargs):
        self._maybe_fail(self.fail_before, "apply_action_reward")
        record = super().apply_action_reward(*args, **kwargs)
        self._maybe_fail(self.fail_after, "apply_action_reward")
        return record

    def spend_coins(self, *args, **kwargs):
        record = super().spend_coins(*args, **kwargs)
        self._maybe_fail(self.fail_after, "spend_coins")
        return record

    def complete_idempotency_key(self, *args, **kwargs):
        self._maybe_fail(self.fail_before, "complete_idempotency_key")
        self._maybe_fail(self.fail_after, "complete_idempotency_key")
        super().complete_idempotency_key(*args, **kwargs)


class TestRewardTable:

    def test_every_action_has_a_reward(self):
        for action in ActionType:
            assert reward_for(action) == ACTION_REWARDS.get(action, 0)
        assert reward_for(ActionType.CUSTOM) == 0
        assert reward_for(ActionType.CREATE_NOTE) == 10

    def test_explicit_amount_wins(self):
        assert reward_for(ActionType.CREATE_NOTE, 3) == 3
        assert reward_for(ActionType.CUSTOM, 0) == 0

    def test_negative_amount_rejected(self):
        with pytest.raises(InvalidRequestError):
            reward_for(ActionType.CUSTOM, -1)

    def test_unknown_action_rejected(self):
        with pytest.raises(InvalidRequestError):
            parse_action("WRITE_POEM")
        assert parse_action("LOG_PRAYER") is ActionType.LOG_PRAYER


class TestScenarios:

    def test_three_notes(self, engine):
        start = engine.get_progress("u1")
        assert (start.xp, start.coins, start.level) == (0, 0, 1)

        for _ in range(3):
            engine.apply_action_reward("u1", ActionType.CREATE_NOTE)
        progress = engine.get_progress("u1")
        assert progress.coins == 30
        assert progress.xp == 30
        assert progress.level == 1
        assert progress.total_actions == 3

    def test_level_six_at_500_xp(self, engine):
        for _ in range(5):
            engine.apply_action_reward("u1", ActionType.CUSTOM, 100)
        progress = engine.get_progress("u1")
        assert progress.xp == 500
        assert progress.level == 6

    def test_daily_bonus_once_per_day(self, engine, clock):
        engine.query_progress("u1")
        clock.advance(days=1)

        first = engine.query_progress("u1")
        assert first.daily_bonus_awarded is True
        assert first.progress.coins == 40
        assert first.progress.xp == 40
        assert first.progress.daily_streak == 2

        clock.advance(hours=3)
        second = engine.query_progress("u1")
        assert second.daily_bonus_awarded is False
        assert second.progress.coins == 40
        assert second.progress.daily_streak == 2

    def test_first_note_unlocks_once(self, engine):
        first = engine.apply_action("u1", ActionType.CREATE_NOTE)
        assert [a.code for a in first.new_achievements] == ["first_note"]
        assert first.coins_awarded == 10
        assert first.progress.coins == 15

        second = engine.apply_action("u1", ActionType.CREATE_NOTE)
        assert second.new_achievements == []
        assert second.progress.coins == 25
        assert [u.achievement_code for u in engine.list_unlocks("u1")] == ["first_note"]

    def test_hundred_coins_not_reunlocked(self, engine):
        response = engine.apply_action("u1", ActionType.CUSTOM, 100)
        assert [a.code for a in response.new_achievements] == ["100_coins"]
        assert response.progress.coins == 110

        engine.spend_coins("u1", 50)
        again = engine.apply_action("u1", ActionType.CUSTOM, 50)
        assert again.new_achievements == []
        assert again.progress.coins == 110


class TestGetProgress:

    def test_read_without_bonus_has_no_side_effects(self, engine):
        response = engine.query_progress("u1", daily_bonus=False)
        assert response.daily_bonus_awarded is False
        assert response.progress.coins == 0
        assert response.achievements == []

    def test_first_query_grants_bonus(self, engine):
        response = engine.query_progress("u1")
        assert response.daily_bonus_awarded is True
        assert response.progress.coins == 20
        assert response.progress.daily_streak == 1

    def test_gap_resets_streak(self, engine, clock):
        engine.query_progress("u1")
        clock.advance(days=1)
        engine.query_progress("u1")
        clock.advance(days=3)
        assert engine.query_progress("u1").progress.daily_streak == 1


class TestDailyBonus:

    def test_claim(self, engine):
        response = engine.claim_daily_bonus("u1")
        assert response.bonus_awarded is True
        assert response.bonus_coins == 20
        assert response.progress.coins == 20

        again = engine.claim_daily_bonus("u1")
        assert again.bonus_awarded is False
        assert again.bonus_coins == 0
        assert again.progress.coins == 20

    def test_seven_day_streak_unlocks(self, engine, clock):
        for _ in range(6):
            response = engine.claim_daily_bonus("u1")
            assert "7_day_streak" not in [a.code for a in response.new_achievements]
            clock.advance(days=1)
        response = engine.claim_daily_bonus("u1")
        assert response.progress.daily_streak == 7
        assert [a.code for a in response.new_achievements] == ["7_day_streak"]
        assert "7_day_streak" in [u.achievement_code for u in engine.list_unlocks("u1")]

    def test_concurrent_claims(self, engine):
        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda _: engine.claim_daily_bonus("u1"), range(16)))
        assert sum(1 for r in results if r.bonus_awarded) == 1
        assert engine.get_progress("u1").coins == 20


class TestSpendCoins:

    def test_spend(self, engine):
        engine.apply_action_reward("u1", ActionType.CUSTOM, 40)
        response = engine.spend_coins("u1", 15)
        assert response.coins_spent == 15
        assert response.progress.coins == 25
        assert response.progress.xp == 40

    def test_insufficient(self, engine):
        with pytest.raises(InsufficientCoinsError):
            engine.spend_coins("u1", 1)

    def test_non_positive_amount(self, engine):
        with pytest.raises(InvalidRequestError):
            engine.spend_coins("u1", 0)


class TestIdempotency:

    def test_replay_returns_first_response(self, engine):
        first = engine.apply_action("u1", ActionType.CREATE_NOTE, idempotency_key="req-1")
        replay = engine.apply_action("u1", ActionType.CREATE_NOTE, idempotency_key="req-1")
        assert replay.model_dump() == first.model_dump()
        assert engine.get_progress("u1").total_actions == 1

    def test_distinct_keys_both_apply(self, engine):
        engine.apply_action("u1", ActionType.CREATE_NOTE, idempotency_key="req-1")
        engine.apply_action("u1", ActionType.CREATE_NOTE, idempotency_key="req-2")
        assert engine.get_progress("u1").total_actions == 2

    def test_scopes_do_not_collide(self, engine):
        engine.apply_action("u1", ActionType.CUSTOM, 30, idempotency_key="same")
        engine.spend_coins("u1", 10, idempotency_key="same")
        assert engine.get_progress("u1").coins == 20

    def test_pending_key_conflicts(self, engine, store, clock):
        _claim(engine, store, clock, "action:busy")
        with pytest.raises(IdempotencyConflictError):
            engine.apply_action("u1", ActionType.CREATE_NOTE, idempotency_key="busy")

    def test_stale_pending_key_is_taken_over(self, engine, store, clock):
        _claim(engine, store, clock, "action:busy")
        clock.advance(seconds=59)
        with pytest.raises(IdempotencyConflictError):
            engine.apply_action("u1", ActionType.CUSTOM, 10, idempotency_key="busy")

        clock.advance(seconds=1)
        response = engine.apply_action("u1", ActionType.CUSTOM, 10, idempotency_key="busy")
        assert response.progress.total_actions == 1
        replay = engine.apply_action("u1", ActionType.CUSTOM, 10, idempotency_key="busy")
        assert replay.model_dump() == response.model_dump()

    def test_key_is_reusable_after_expiry(self, engine, clock):
        engine.apply_action("u1", ActionType.CUSTOM, 10, idempotency_key="daily")
        clock.advance(hours=23)
        engine.apply_action("u1", ActionType.CUSTOM, 10, idempotency_key="daily")
        assert engine.get_progress("u1").total_actions == 1

        clock.advance(hours=1)
        engine.apply_action("u1", ActionType.CUSTOM, 10, idempotency_key="daily")
        assert engine.get_progress("u1").total_actions == 2

    def test_failed_request_releases_key(self, engine):
        with pytest.raises(InsufficientCoinsError):
            engine.spend_coins("u1", 5, idempotency_key="buy-1")
        engine.apply_action_reward("u1", ActionType.CUSTOM, 5)
        assert engine.spend_coins("u1", 5, idempotency_key="buy-1").progress.coins == 0

    @pytest.mark.parametrize("key", ["", "a/b", "x" * 129])
    def test_invalid_key(self, engine, key):
        with pytest.raises(InvalidRequestError):
            engine.apply_action("u1", ActionType.CREATE_NOTE, idempotency_key=key)
        assert engine.get_progress("u1").total_actions == 0

    def test_concurrent_retries_apply_once(self, engine):
        def attempt(_):
            try:
                return engine.apply_action("u1", ActionType.CREATE_NOTE, idempotency_key="retry")
            except IdempotencyConflictError:
                return None

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(attempt, range(16)))
        assert engine.get_progress("u1").total_actions == 1


class TestFailureAfterCommit:

    @pytest.fixture
    def flaky(self, clock):
        store = FlakyStore()
        return store, ProgressEngine(store, clock=clock, daily_bonus_coins=20, day_boundary_timezone="UTC")

    def test_action_retry_does_not_credit_twice(self, flaky):
        store, engine = flaky
        store.fail_after["apply_action_reward"] = 1
        with pytest.raises(StorageUnavailableError):
            engine.apply_action("u", ActionType.CUSTOM, 10, idempotency_key="k1")

        retry = engine.apply_action("u", ActionType.CUSTOM, 10, idempotency_key="k1")
        assert retry.coins_awarded == 10
        assert (retry.progress.total_actions, retry.progress.coins) == (1, 10)
        replay = engine.apply_action("u", ActionType.CUSTOM, 10, idempotency_key="k1")
        assert replay.model_dump() == retry.model_dump()
        progress = engine.get_progress("u")
        assert (progress.total_actions, progress.coins) == (1, 10)

    def test_spend_retry_does_not_debit_twice(self, flaky):
        store, engine = flaky
        engine.apply_action_reward("u", ActionType.CUSTOM, 30)
        store.fail_after["spend_coins"] = 1
        with pytest.raises(StorageUnavailableError):
            engine.spend_coins("u", 10, idempotency_key="buy")

        retry = engine.spend_coins("u", 10, idempotency_key="buy")
        assert retry.coins_spent == 10
        assert retry.progress.coins == 20
        assert engine.get_progress("u").coins == 20

    def test_lost_response_is_rebuilt(self, flaky):
        store, engine = flaky
        store.fail_after["complete_idempotency_key"] = 1
        first = engine.apply_action("u", ActionType.CUSTOM, 10, idempotency_key="k1")
        assert first.progress.total_actions == 1

        retry = engine.apply_action("u", ActionType.CUSTOM, 10, idempotency_key="k1")
        assert retry.progress.total_actions == 1
        assert engine.get_progress("u").coins == 10

    def test_failure_before_commit_allows_retry(self, flaky):
        store, engine = flaky
        store.fail_before["apply_action_reward"] = 1
        with pytest.raises(StorageUnavailableError):
            engine.apply_action("u", ActionType.CUSTOM, 10, idempotency_key="k1")
        assert engine.get_progress("u").total_actions == 0

        engine.apply_action("u", ActionType.CUSTOM, 10, idempotency_key="k1")
        assert engine.get_progress("u").total_actions == 1


class TestReset:

    def test_reset_clears_record_and_ledger(self, engine):
        engine.apply_action("u1", ActionType.CREATE_NOTE)
        assert engine.reset_progress("u1") is True
        assert engine.list_unlocks("u1") == []
        assert engine.get_progress("u1").coins == 0

        response = engine.apply_action("u1", ActionType.CREATE_NOTE)
        assert [a.code for a in response.new_achievements] == ["first_note"]
