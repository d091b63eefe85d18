"""Pydantic models for progress, rewards and achievements."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field
from pydantic.alias_generators import to_camel

from app.services.level_service import level_for_xp, level_progress, xp_to_next_level


class ActionType(str, Enum):
    """User actions that earn coins and XP."""

    CREATE_NOTE = "CREATE_NOTE"
    COMPLETE_TASK = "COMPLETE_TASK"
    ADD_EVENT = "ADD_EVENT"
    DAILY_LOGIN = "DAILY_LOGIN"
    WEEKLY_STREAK = "WEEKLY_STREAK"
    MOOD_TRACK = "MOOD_TRACK"
    SPACE_VISIT = "SPACE_VISIT"
    LOG_PRAYER = "LOG_PRAYER"
    COMPLETE_PRACTICE = "COMPLETE_PRACTICE"
    CUSTOM = "CUSTOM"


class Metric(str, Enum):
    """Named values an achievement can be measured against."""

    NOTES_CREATED = "notes_created"
    GOALS_COMPLETED = "goals_completed"
    EVENTS_ADDED = "events_added"
    MOODS_TRACKED = "moods_tracked"
    SPACES_VISITED = "spaces_visited"
    PRAYERS_LOGGED = "prayers_logged"
    PRACTICES_COMPLETED = "practices_completed"
    PRACTICE_MINUTES = "practice_minutes"
    COINS = "coins"
    XP = "xp"
    LEVEL = "level"
    DAILY_STREAK = "daily_streak"
    TOTAL_ACTIONS = "total_actions"


class Rarity(str, Enum):
    """Achievement rarity, ordered common < rare < epic < legendary."""

    COMMON = "common"
    RARE = "rare"
    EPIC = "epic"
    LEGENDARY = "legendary"

    @property
    def rank(self) -> int:
        return _RARITY_ORDER.index(self)

    # str's alphabetical comparisons would otherwise apply to >, <= and >=.
    def __lt__(self, other: object) -> bool:
        if not isinstance(other, Rarity):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: object) -> bool:
        if not isinstance(other, Rarity):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, Rarity):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, Rarity):
            return NotImplemented
        return self.rank >= other.rank


_RARITY_ORDER = [Rarity.COMMON, Rarity.RARE, Rarity.EPIC, Rarity.LEGENDARY]


class AchievementState(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    UNLOCKED = "unlocked"


# ---------------------------------------------------------------------------
# Achievements
# ---------------------------------------------------------------------------

class AchievementReward(BaseModel):
    """Reward granted once when an achievement unlocks."""

    model_config = ConfigDict(frozen=True)

    coins: Optional[int] = Field(None, ge=0, description="Coins (and equal XP) granted")
    title: Optional[str] = Field(None, description="Cosmetic title granted")


class AchievementDefinition(BaseModel):
    """Static definition of an achievement."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, alias_generator=to_camel)

    code: str = Field(..., description="Stable unique key, e.g. first_note")
    title: str = Field(..., description="Display name")
    description: str = Field(..., description="What the user has to do")
    icon: str = Field(..., description="Emoji icon")
    rarity: Rarity = Field(..., description="Rarity tier")
    metric: Metric = Field(..., description="Metric compared against the target")
    target: float = Field(..., gt=0, description="Threshold that unlocks the achievement")
    reward: AchievementReward = Field(default_factory=AchievementReward)


class AchievementUnlock(BaseModel):
    """A ledger entry: one user unlocked one achievement."""

    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    user_id: str = Field(..., description="User ID")
    achievement_code: str = Field(..., description="Unlocked achievement code")
    unlocked_at: datetime = Field(..., description="When the achievement unlocked")
    reward_applied: bool = Field(False, description="Whether the reward has been credited")


class AchievementStatus(BaseModel):
    """An achievement with the user's progress towards it."""

    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    achievement: AchievementDefinition
    state: AchievementState
    current: Optional[float] = Field(None, description="Current metric value (null when unavailable)")
    progress: float = Field(0.0, ge=0.0, le=1.0, description="Fraction of the target reached")
    unlocked_at: Optional[datetime] = Field(None, description="Unlock timestamp")


# ---------------------------------------------------------------------------
# Progress
# ---------------------------------------------------------------------------

class ProgressRecord(BaseModel):
    """A user's coins, XP and activity counters. ``level`` is derived from ``xp``."""

    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    user_id: str = Field(..., description="User ID")
    coins: int = Field(0, ge=0, description="Coin balance")
    xp: int = Field(0, ge=0, description="Accumulated experience points")
    total_actions: int = Field(0, ge=0, description="Number of rewarded actions")
    action_counts: dict[str, int] = Field(default_factory=dict, description="Rewarded actions per type")
    daily_streak: int = Field(0, ge=0, description="Consecutive days with a login bonus")
    titles: list[str] = Field(default_factory=list, description="Cosmetic titles earned")
    last_login_date: datetime = Field(..., description="When the last daily bonus was granted")
    last_activity: Optional[datetime] = Field(None, description="Last rewarded activity")
    created_at: Optional[datetime] = Field(None, description="When the record was created")

    @computed_field(alias="level")
    @property
    def level(self) -> int:
        return level_for_xp(self.xp)

    @computed_field(alias="xpToNextLevel")
    @property
    def xp_to_next_level(self) -> int:
        return xp_to_next_level(self.xp)

    @computed_field(alias="levelProgress")
    @property
    def level_progress(self) -> float:
        return level_progress(self.xp)


# ---------------------------------------------------------------------------
# Requests / responses
# ---------------------------------------------------------------------------

class ActionRequest(BaseModel):
    """Request schema for recording a rewarded action."""

    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    action: ActionType = Field(..., description="Action type")
    amount: Optional[int] = Field(None, ge=0, description="Explicit reward overriding the action table")


class ActionResponse(BaseModel):
    """Response schema for a recorded action."""

    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    progress: ProgressRecord
    new_achievements: list[AchievementDefinition] = Field(
        default_factory=list, description="Achievements unlocked by this action",
    )
    coins_awarded: int = Field(..., description="Coins earned for the action itself")


class ProgressResponse(BaseModel):
    """Response schema for a progress query."""

    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    progress: ProgressRecord
    achievements: list[AchievementUnlock] = Field(default_factory=list)
    daily_bonus_awarded: bool = Field(False, description="Whether this query granted the daily bonus")


class DailyBonusResponse(BaseModel):
    """Response schema for an explicit daily bonus evaluation."""

    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    progress: ProgressRecord
    bonus_awarded: bool
    bonus_coins: int = Field(0, description="Coins granted by this call")
    new_achievements: list[AchievementDefinition] = Field(
        default_factory=list, description="Streak achievements unlocked by the bonus",
    )


class SpendCoinsRequest(BaseModel):
    """Request schema for spending coins."""

    amount: int = Field(..., gt=0, description="Number of coins to deduct")


class SpendCoinsResponse(BaseModel):
    """Response schema for a coin spend."""

    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    progress: ProgressRecord
    coins_spent: int


class RecoverRewardsResponse(BaseModel):
    """Response schema for the reward recovery admin command."""

    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    user_id: str
    rewards_applied: list[str] = Field(default_factory=list, description="Codes whose reward was credited now")
