"""Metric providers: where achievement thresholds get their current values.

Each ``Metric`` maps to a callable ``provider(user_id) -> number``. The
registry starts with providers backed by the progress record (coins, XP,
level, streak, action counters). Feature areas that own an authoritative
count, e.g. the notes service knowing how many notes still exist, replace
the default with ``register()``.
"""

import logging
from collections.abc import Callable

from app.db.progress_store import ProgressStore
from app.models.progress import ActionType, Metric
from app.services.level_service import level_for_xp

logger = logging.getLogger(__name__)

MetricProvider = Callable[[str], float]

# Metrics counted from rewarded actions until a feature area registers its own source.
ACTION_METRICS: dict[Metric, ActionType] = {
    Metric.NOTES_CREATED: ActionType.CREATE_NOTE,
    Metric.GOALS_COMPLETED: ActionType.COMPLETE_TASK,
    Metric.EVENTS_ADDED: ActionType.ADD_EVENT,
    Metric.MOODS_TRACKED: ActionType.MOOD_TRACK,
    Metric.SPACES_VISITED: ActionType.SPACE_VISIT,
    Metric.PRAYERS_LOGGED: ActionType.LOG_PRAYER,
    Metric.PRACTICES_COMPLETED: ActionType.COMPLETE_PRACTICE,
}

RECORD_FIELDS: dict[Metric, str] = {
    Metric.COINS: "coins",
    Metric.XP: "xp",
    Metric.DAILY_STREAK: "daily_streak",
    Metric.TOTAL_ACTIONS: "total_actions",
}


class MetricRegistry:
    """Maps metrics to providers for one progress store."""

    def __init__(self, store: ProgressStore) -> None:
        self._store = store
        self._providers: dict[Metric, MetricProvider] = {}
        self._install_defaults()

    def _install_defaults(self) -> None:
        for metric, field in RECORD_FIELDS.items():
            self._providers[metric] = self._record_field(field)
        for metric, action in ACTION_METRICS.items():
            self._providers[metric] = self._action_count(action)
        self._providers[Metric.LEVEL] = self._level

    def _record(self, uid: str) -> dict:
        return self._store.get(uid) or {}

    def _record_field(self, field: str) -> MetricProvider:
        def provider(uid: str) -> float:
            return self._record(uid).get(field, 0)
        return provider

    def _action_count(self, action: ActionType) -> MetricProvider:
        def provider(uid: str) -> float:
            return self._record(uid).get("action_counts", {}).get(action.value, 0)
        return provider

    def _level(self, uid: str) -> float:
        return level_for_xp(self._record(uid).get("xp", 0))

    def register(self, metric: Metric, provider: MetricProvider) -> None:
        """Use *provider* as the source of *metric*, replacing any previous one."""
        self._providers[metric] = provider
        logger.info("Registered metric provider for %s", metric.value)

    def unregister(self, metric: Metric) -> None:
        self._providers.pop(metric, None)

    def provider(self, metric: Metric) -> MetricProvider | None:
        """Return the provider for *metric*, or *None* if nobody supplies it."""
        return self._providers.get(metric)
