"""Business logic for coins, XP, daily bonus and achievement unlocks."""

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import TypeVar

from pydantic import BaseModel

from app.config import settings
from app.db.progress_store import IDEMPOTENCY_APPLIED, IDEMPOTENCY_COMPLETED, ProgressStore
from app.errors import IdempotencyConflictError, InvalidRequestError, StorageUnavailableError
from app.models.progress import (
    AchievementDefinition,
    AchievementStatus,
    AchievementUnlock,
    ActionResponse,
    ActionType,
    DailyBonusResponse,
    Metric,
    ProgressRecord,
    ProgressResponse,
    SpendCoinsResponse,
)
from app.services.achievement_service import (
    REGISTRY,
    AchievementEvaluator,
    AchievementRegistry,
    Clock,
    RewardDispatcher,
)
from app.services.daily_bonus import reference_timezone
from app.services.metrics import MetricProvider, MetricRegistry

logger = logging.getLogger(__name__)

ACTION_REWARDS: dict[ActionType, int] = {
    ActionType.CREATE_NOTE: 10,
    ActionType.COMPLETE_TASK: 15,
    ActionType.ADD_EVENT: 5,
    ActionType.DAILY_LOGIN: 20,
    ActionType.WEEKLY_STREAK: 50,
    ActionType.MOOD_TRACK: 3,
    ActionType.SPACE_VISIT: 2,
    ActionType.LOG_PRAYER: 5,
    ActionType.COMPLETE_PRACTICE: 10,
}

MAX_IDEMPOTENCY_KEY_LENGTH = 128

ResponseT = TypeVar("ResponseT", bound=BaseModel)

# (scoped key, claim id) a mutation is applied under
IdempotencyClaim = tuple[str, str]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_action(action: ActionType | str) -> ActionType:
    """Return *action* as an ``ActionType``. Raises ``InvalidRequestError``."""
    try:
        return ActionType(action)
    except ValueError:
        raise InvalidRequestError(f"Unknown action type '{action}'") from None


def reward_for(action: ActionType, amount: int | None = None) -> int:
    """Return the reward for *action*: *amount* if given, else the table value (0 if absent)."""
    if amount is not None:
        if amount < 0:
            raise InvalidRequestError("amount must be non-negative")
        return amount
    return ACTION_REWARDS.get(action, 0)


class ProgressEngine:
    """Entry point for every progress query and command.

    Holds the store and its collaborators explicitly; the web layer builds
    one through ``app.dependencies.get_engine``.
    """

    def __init__(
        self,
        store: ProgressStore,
        registry: AchievementRegistry = REGISTRY,
        metrics: MetricRegistry | None = None,
        clock: Clock = _utcnow,
        daily_bonus_coins: int | None = None,
        day_boundary_timezone: str | None = None,
        idempotency_ttl: timedelta | None = None,
        idempotency_pending_timeout: timedelta | None = None,
    ) -> None:
        self.store = store
        self.registry = registry
        self.metrics = metrics or MetricRegistry(store)
        self._clock = clock
        self.daily_bonus_coins = (
            settings.DAILY_BONUS_COINS if daily_bonus_coins is None else daily_bonus_coins
        )
        self._tz = reference_timezone(day_boundary_timezone)
        self.idempotency_ttl = idempotency_ttl or timedelta(hours=settings.IDEMPOTENCY_KEY_TTL_HOURS)
        self.idempotency_pending_timeout = idempotency_pending_timeout or timedelta(
            seconds=settings.IDEMPOTENCY_PENDING_TIMEOUT_SECONDS,
        )
        self.dispatcher = RewardDispatcher(store, registry, clock)
        self.evaluator = AchievementEvaluator(store, self.metrics, self.dispatcher, clock, registry)

    # -- queries --

    def get_progress(self, uid: str) -> ProgressRecord:
        """Return the user's progress, creating an empty record on first access."""
        return ProgressRecord.model_validate(self.store.get_or_create(uid))

    def list_unlocks(self, uid: str) -> list[AchievementUnlock]:
        return [AchievementUnlock.model_validate(u) for u in self.store.list_unlocks(uid)]

    def achievement_statuses(self, uid: str) -> list[AchievementStatus]:
        return self.evaluator.statuses(uid)

    def query_progress(self, uid: str, daily_bonus: bool = True) -> ProgressResponse:
        """Return progress and unlocks, granting the daily bonus first when *daily_bonus*."""
        awarded = False
        if daily_bonus:
            _, awarded = self.evaluate_daily_bonus(uid)
            if awarded:
                self._evaluate_after_commit(uid)
        return ProgressResponse(
            progress=self.get_progress(uid),
            achievements=self.list_unlocks(uid),
            daily_bonus_awarded=awarded,
        )

    # -- commands --

    def evaluate_daily_bonus(self, uid: str) -> tuple[ProgressRecord, bool]:
        """Grant the login bonus if today's has not been granted yet.

        Idempotent within one calendar day of the reference timezone.
        """
        record, awarded = self.store.claim_daily_bonus(
            uid, self._clock(), self.daily_bonus_coins, self._tz,
        )
        if awarded:
            logger.info(
                "Daily bonus granted to %s (+%d, streak=%d)",
                uid, self.daily_bonus_coins, record["daily_streak"],
            )
        return ProgressRecord.model_validate(record), awarded

    def claim_daily_bonus(self, uid: str) -> DailyBonusResponse:
        """Evaluate the daily bonus and any streak achievements it unlocks."""
        record, awarded = self.evaluate_daily_bonus(uid)
        new_achievements: list[AchievementDefinition] = []
        if awarded:
            new_achievements = self._evaluate_after_commit(uid)
            if new_achievements:
                record = self.get_progress(uid)
        return DailyBonusResponse(
            progress=record,
            bonus_awarded=awarded,
            bonus_coins=self.daily_bonus_coins if awarded else 0,
            new_achievements=new_achievements,
        )

    def apply_action_reward(
        self, uid: str, action: ActionType | str, amount: int | None = None,
    ) -> ProgressRecord:
        """Credit the reward for one action without evaluating achievements."""
        action = parse_action(action)
        reward = reward_for(action, amount)
        record = self.store.apply_action_reward(uid, action.value, reward, self._clock())
        return ProgressRecord.model_validate(record)

    def apply_action(
        self,
        uid: str,
        action: ActionType | str,
        amount: int | None = None,
        idempotency_key: str | None = None,
    ) -> ActionResponse:
        """Credit an action, then unlock any achievement it completes."""
        action = parse_action(action)
        reward = reward_for(action, amount)

        def run(claim: IdempotencyClaim | None) -> ActionResponse:
            key, claim_id = claim or (None, None)
            record = self.store.apply_action_reward(
                uid, action.value, reward, self._clock(), idempotency_key=key, claim_id=claim_id,
            )
            logger.info("Action %s by %s (+%d coins)", action.value, uid, reward)
            return self._action_response(uid, reward, record)

        def resume() -> ActionResponse:
            return self._action_response(uid, reward, None)

        return self._idempotent(uid, "action", idempotency_key, ActionResponse, run, resume)

    def spend_coins(
        self, uid: str, amount: int, idempotency_key: str | None = None,
    ) -> SpendCoinsResponse:
        """Deduct coins. Raises ``InsufficientCoinsError`` if the balance is too low."""
        if amount <= 0:
            raise InvalidRequestError("amount must be positive")

        def run(claim: IdempotencyClaim | None) -> SpendCoinsResponse:
            key, claim_id = claim or (None, None)
            record = self.store.spend_coins(
                uid, amount, self._clock(), idempotency_key=key, claim_id=claim_id,
            )
            logger.info("User %s spent %d coins", uid, amount)
            return SpendCoinsResponse(progress=ProgressRecord.model_validate(record), coins_spent=amount)

        def resume() -> SpendCoinsResponse:
            return SpendCoinsResponse(progress=self.get_progress(uid), coins_spent=amount)

        return self._idempotent(uid, "spend", idempotency_key, SpendCoinsResponse, run, resume)

    def evaluate_achievements(self, uid: str) -> list[AchievementDefinition]:
        return self.evaluator.evaluate(uid)

    def recover_rewards(self, uid: str) -> list[str]:
        """Credit rewards of unlocks interrupted between ledger insert and dispatch."""
        credited = self.dispatcher.recover(uid)
        if credited:
            logger.warning("Recovered %d undelivered rewards for %s: %s", len(credited), uid, credited)
        return credited

    def reset_progress(self, uid: str) -> bool:
        """Delete the user's progress together with their unlock ledger."""
        existed = self.store.reset(uid)
        logger.info("Progress reset for %s (existed=%s)", uid, existed)
        return existed

    def register_metric_provider(self, metric: Metric, provider: MetricProvider) -> None:
        self.metrics.register(metric, provider)

    # -- helpers --

    def _evaluate_after_commit(self, uid: str) -> list[AchievementDefinition]:
        """Evaluate achievements once the triggering write has committed.

        A storage failure here does not undo the committed write: the
        unlocks are picked up by the next evaluation instead.
        """
        try:
            return self.evaluator.evaluate(uid)
        except StorageUnavailableError:
            logger.warning("Achievement evaluation for %s deferred, storage unavailable", uid)
            return []

    def _action_response(self, uid: str, reward: int, record: dict | None) -> ActionResponse:
        new_achievements = self._evaluate_after_commit(uid)
        if record is None or new_achievements:
            record = self.store.get_or_create(uid)
        return ActionResponse(
            progress=ProgressRecord.model_validate(record),
            new_achievements=new_achievements,
            coins_awarded=reward,
        )

    def _idempotent(
        self,
        uid: str,
        scope: str,
        key: str | None,
        response_model: type[ResponseT],
        run: Callable[[IdempotencyClaim | None], ResponseT],
        resume: Callable[[], ResponseT],
    ) -> ResponseT:
        """Apply a command at most once per ``(uid, scope, key)``.

        *run* performs the mutation under the claim. *resume* rebuilds the
        response without mutating, for a key whose mutation committed but
        whose response was never stored.
        """
        if key is None:
            return run(None)
        if not key or len(key) > MAX_IDEMPOTENCY_KEY_LENGTH or "/" in key:
            raise InvalidRequestError("Idempotency-Key must be 1-128 characters without '/'")

        scoped_key = f"{scope}:{key}"
        entry, claimed = self.store.claim_idempotency_key(
            uid, scoped_key, self._clock(), self.idempotency_ttl, self.idempotency_pending_timeout,
        )
        if not claimed:
            status = entry.get("status")
            if status == IDEMPOTENCY_COMPLETED and entry.get("response") is not None:
                logger.info("Replaying %s request %s for %s", scope, key, uid)
                return response_model.model_validate(entry["response"])
            if status == IDEMPOTENCY_APPLIED:
                logger.warning("Rebuilding response of %s request %s for %s", scope, key, uid)
                return self._complete(uid, scoped_key, resume())
            raise IdempotencyConflictError("A request with this Idempotency-Key is still in progress")

        claim_id = entry["claim_id"]
        try:
            response = run((scoped_key, claim_id))
        except Exception:
            # The store refuses the release once the mutation has committed.
            try:
                self.store.release_idempotency_key(uid, scoped_key, claim_id)
            except StorageUnavailableError:
                logger.warning("Could not release %s for %s, it stays pending until it times out", scoped_key, uid)
            raise
        return self._complete(uid, scoped_key, response)

    def _complete(self, uid: str, scoped_key: str, response: ResponseT) -> ResponseT:
        try:
            self.store.complete_idempotency_key(uid, scoped_key, response.model_dump(mode="json"))
        except StorageUnavailableError:
            logger.warning("Response for %s of %s not stored, a retry rebuilds it", scoped_key, uid)
        return response
