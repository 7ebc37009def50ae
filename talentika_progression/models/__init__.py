"""Domain models for the progression engine"""
from talentika_progression.models.progression import (
    BadgeGrant,
    Challenge,
    Difficulty,
    LeaderboardEntry,
    Quest,
    QuestStatus,
    RewardItem,
    StreakRecord,
    UserChallenge,
    UserProgression,
    UserQuest,
    UserReward,
    UserState,
    XPTransaction,
)
from talentika_progression.models.events import (
    BadgeUnlockedEvent,
    LevelUpEvent,
    NewLongestStreakEvent,
    RewardPurchasedEvent,
)
from talentika_progression.models.results import (
    AwardResult,
    PurchaseResult,
    QuestResult,
    StreakResult,
)

__all__ = [
    "BadgeGrant",
    "Challenge",
    "Difficulty",
    "LeaderboardEntry",
    "Quest",
    "QuestStatus",
    "RewardItem",
    "StreakRecord",
    "UserChallenge",
    "UserProgression",
    "UserQuest",
    "UserReward",
    "UserState",
    "XPTransaction",
    "BadgeUnlockedEvent",
    "LevelUpEvent",
    "NewLongestStreakEvent",
    "RewardPurchasedEvent",
    "AwardResult",
    "PurchaseResult",
    "QuestResult",
    "StreakResult",
]
