"""Achievement definitions and server-side evaluation logic.

Unlock state lives only in the store's unlock ledger. An achievement is
unlocked once the ledger holds ``(user_id, code)``, and stays unlocked even if
the metric later drops below the target.
"""

import logging
from collections.abc import Callable, Iterator
from datetime import datetime
from types import MappingProxyType

from app.db.progress_store import ProgressStore
from app.errors import AchievementNotFoundError
from app.models.progress import (
    AchievementDefinition,
    AchievementReward,
    AchievementState,
    AchievementStatus,
    Metric,
    Rarity,
)
from app.services.metrics import MetricRegistry

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _achievement(
    code: str,
    title: str,
    description: str,
    icon: str,
    rarity: Rarity,
    metric: Metric,
    target: float,
    coins: int | None = None,
    reward_title: str | None = None,
) -> AchievementDefinition:
    return AchievementDefinition(
        code=code,
        title=title,
        description=description,
        icon=icon,
        rarity=rarity,
        metric=metric,
        target=target,
        reward=AchievementReward(coins=coins, title=reward_title),
    )


ACHIEVEMENTS: tuple[AchievementDefinition, ...] = (
    # Notes
    _achievement("first_note", "First Step", "Created your first note", "📝",
                 Rarity.COMMON, Metric.NOTES_CREATED, 1, coins=5),
    _achievement("prolific_writer", "Prolific Writer", "Created 50 notes", "✍️",
                 Rarity.RARE, Metric.NOTES_CREATED, 50, coins=100, reward_title="Chronicler"),
    # Goals
    _achievement("first_goal", "Goal Getter", "Completed your first goal", "🎯",
                 Rarity.COMMON, Metric.GOALS_COMPLETED, 1, coins=5),
    _achievement("achiever", "Achiever", "Completed 25 goals", "🏅",
                 Rarity.RARE, Metric.GOALS_COMPLETED, 25, coins=150, reward_title="Achiever"),
    # Calendar, mood and spaces
    _achievement("first_event", "Planner", "Added your first calendar event", "📅",
                 Rarity.COMMON, Metric.EVENTS_ADDED, 1, coins=5),
    _achievement("mood_tracker", "In Tune", "Tracked your mood 30 times", "🙂",
                 Rarity.RARE, Metric.MOODS_TRACKED, 30, coins=50),
    _achievement("all_spaces", "Life Explorer", "Visited your life spaces 25 times", "🌟",
                 Rarity.RARE, Metric.SPACES_VISITED, 25, coins=50),
    # Prayer
    _achievement("first_prayer", "First Prayer", "Logged your first prayer", "🕌",
                 Rarity.COMMON, Metric.PRAYERS_LOGGED, 1, coins=5),
    _achievement("steadfast", "Steadfast", "Logged 35 prayers, a full week", "🌙",
                 Rarity.RARE, Metric.PRAYERS_LOGGED, 35, coins=100, reward_title="Steadfast"),
    # Sports practice
    _achievement("first_practice", "First Steps", "Complete your first practice session", "🏃",
                 Rarity.COMMON, Metric.PRACTICES_COMPLETED, 1, coins=50, reward_title="Beginner"),
    _achievement("committed", "Committed", "Complete 25 practice sessions", "💪",
                 Rarity.RARE, Metric.PRACTICES_COMPLETED, 25, coins=250, reward_title="Dedicated Athlete"),
    _achievement("century_club", "Century Club", "Complete 100 practice sessions", "💯",
                 Rarity.EPIC, Metric.PRACTICES_COMPLETED, 100, coins=500, reward_title="Century Achiever"),
    _achievement("first_hour", "First Hour", "Practice for a total of 1 hour", "⏰",
                 Rarity.COMMON, Metric.PRACTICE_MINUTES, 60, coins=75),
    _achievement("master_of_time", "Master of Time", "Practice for a total of 50 hours", "⏳",
                 Rarity.EPIC, Metric.PRACTICE_MINUTES, 3000, coins=750, reward_title="Time Master"),
    # Progress
    _achievement("level_5", "Rising Star", "Reached level 5", "⭐",
                 Rarity.RARE, Metric.LEVEL, 5, coins=25),
    _achievement("level_10", "Dedicated", "Reached level 10", "🏆",
                 Rarity.EPIC, Metric.LEVEL, 10, reward_title="Dedicated"),
    _achievement("xp_1000", "Seasoned", "Earned 1000 XP", "📈",
                 Rarity.EPIC, Metric.XP, 1000, coins=100),
    _achievement("busy_bee", "Busy Bee", "Recorded 100 actions", "🐝",
                 Rarity.RARE, Metric.TOTAL_ACTIONS, 100, coins=50),
    _achievement("100_coins", "Coin Collector", "Earned 100 coins", "💰",
                 Rarity.COMMON, Metric.COINS, 100, coins=10),
    _achievement("1000_coins", "Treasure Keeper", "Hold 1000 coins", "💎",
                 Rarity.EPIC, Metric.COINS, 1000, reward_title="Treasurer"),
    # Daily login streak
    _achievement("7_day_streak", "Week Warrior", "7 day activity streak", "🔥",
                 Rarity.RARE, Metric.DAILY_STREAK, 7, coins=50),
    _achievement("30_day_streak", "Unstoppable", "30 day activity streak", "⚡",
                 Rarity.EPIC, Metric.DAILY_STREAK, 30, coins=300, reward_title="Unstoppable Force"),
    _achievement("100_day_streak", "Living Legend", "100 day activity streak", "👑",
                 Rarity.LEGENDARY, Metric.DAILY_STREAK, 100, coins=1000, reward_title="Living Legend"),
)


class AchievementRegistry:
    """Immutable catalogue of achievement definitions."""

    def __init__(self, definitions: tuple[AchievementDefinition, ...]) -> None:
        by_code: dict[str, AchievementDefinition] = {}
        for definition in definitions:
            if definition.code in by_code:
                raise ValueError(f"duplicate achievement code: {definition.code}")
            by_code[definition.code] = definition
        self._definitions = tuple(definitions)
        self._by_code = MappingProxyType(by_code)

    def __iter__(self) -> Iterator[AchievementDefinition]:
        return iter(self._definitions)

    def __len__(self) -> int:
        return len(self._definitions)

    def __contains__(self, code: object) -> bool:
        return code in self._by_code

    def all(self) -> list[AchievementDefinition]:
        return list(self._definitions)

    def by_code(self, code: str) -> AchievementDefinition:
        """Return the definition for *code*. Raises ``AchievementNotFoundError``."""
        try:
            return self._by_code[code]
        except KeyError:
            raise AchievementNotFoundError(f"Unknown achievement '{code}'") from None

    def by_rarity(self) -> list[AchievementDefinition]:
        """Return definitions sorted rarest first, registry order within a tier."""
        return sorted(self._definitions, key=lambda d: d.rarity.rank, reverse=True)


REGISTRY = AchievementRegistry(ACHIEVEMENTS)


class RewardDispatcher:
    """Credits achievement rewards, at most once per ledger entry."""

    def __init__(self, store: ProgressStore, registry: AchievementRegistry, clock: Clock) -> None:
        self._store = store
        self._registry = registry
        self._clock = clock

    def dispatch(self, uid: str, definition: AchievementDefinition) -> bool:
        """Apply *definition*'s reward. Returns *False* if it was already applied.

        Must only be called after the unlock was inserted into the ledger.
        """
        reward = definition.reward
        applied = self._store.apply_unlock_reward(
            uid, definition.code, reward.coins or 0, reward.title, self._clock(),
        )
        if applied:
            logger.info(
                "Reward for %s credited to %s (+%d coins, title=%s)",
                definition.code, uid, reward.coins or 0, reward.title,
            )
        return applied

    def recover(self, uid: str) -> list[str]:
        """Re-dispatch every unlock whose reward was never credited.

        Returns the codes credited by this call.
        """
        credited: list[str] = []
        for unlock in self._store.list_unrewarded_unlocks(uid):
            code = unlock["achievement_code"]
            if code not in self._registry:
                logger.warning("Unlock %s for %s has no definition, skipping", code, uid)
                continue
            if self.dispatch(uid, self._registry.by_code(code)):
                credited.append(code)
        return credited


class AchievementEvaluator:
    """Compares metric values with targets and unlocks crossed achievements."""

    def __init__(
        self,
        store: ProgressStore,
        metrics: MetricRegistry,
        dispatcher: RewardDispatcher,
        clock: Clock,
        registry: AchievementRegistry = REGISTRY,
    ) -> None:
        self._store = store
        self._metrics = metrics
        self._dispatcher = dispatcher
        self._clock = clock
        self._registry = registry

    def _current_value(self, definition: AchievementDefinition, uid: str) -> float | None:
        """Return the metric value, or *None* when it cannot be read right now."""
        provider = self._metrics.provider(definition.metric)
        if provider is None:
            logger.debug("No provider for metric %s, skipping %s", definition.metric.value, definition.code)
            return None
        try:
            return float(provider(uid))
        except Exception:
            # Provider belongs to another feature area; retry on the next evaluation.
            logger.warning(
                "Metric %s unavailable for %s, skipping %s",
                definition.metric.value, uid, definition.code, exc_info=True,
            )
            return None

    def evaluate(self, uid: str) -> list[AchievementDefinition]:
        """Unlock every achievement whose target is now met.

        Returns the achievements newly unlocked by this call. An achievement
        already in the ledger, including one a concurrent call inserted first,
        is never returned and never rewarded twice.
        """
        unlocks = self._store.list_unlocks(uid)
        for unlock in unlocks:
            if not unlock.get("reward_applied") and unlock["achievement_code"] in self._registry:
                self._dispatcher.dispatch(uid, self._registry.by_code(unlock["achievement_code"]))
        unlocked_codes = {u["achievement_code"] for u in unlocks}

        newly_unlocked: list[AchievementDefinition] = []
        for definition in self._registry:
            if definition.code in unlocked_codes:
                continue
            # Fresh read per definition so rewards credited earlier in this pass count.
            current = self._current_value(definition, uid)
            if current is None or current < definition.target:
                continue
            if not self._store.insert_unlock_if_absent(uid, definition.code, self._clock()):
                logger.debug("Achievement %s for %s was unlocked concurrently", definition.code, uid)
                continue
            logger.info("Achievement unlocked: %s -> %s", uid, definition.code)
            self._dispatcher.dispatch(uid, definition)
            newly_unlocked.append(definition)
        return newly_unlocked

    def statuses(self, uid: str) -> list[AchievementStatus]:
        """Return every achievement with the user's state and progress fraction."""
        unlocks = {u["achievement_code"]: u for u in self._store.list_unlocks(uid)}
        values: dict[Metric, float | None] = {}
        result: list[AchievementStatus] = []
        for definition in self._registry:
            if definition.metric not in values:
                values[definition.metric] = self._current_value(definition, uid)
            current = values[definition.metric]
            unlock = unlocks.get(definition.code)
            if unlock is not None:
                result.append(AchievementStatus(
                    achievement=definition,
                    state=AchievementState.UNLOCKED,
                    current=current,
                    progress=1.0,
                    unlocked_at=unlock["unlocked_at"],
                ))
                continue
            reached = max(0.0, current or 0.0)
            result.append(AchievementStatus(
                achievement=definition,
                state=AchievementState.IN_PROGRESS if reached > 0 else AchievementState.NOT_STARTED,
                current=current,
                progress=min(1.0, reached / definition.target),
            ))
        return result
