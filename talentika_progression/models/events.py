"""Notifications emitted after a command commits"""
from dataclasses import dataclass


@dataclass(frozen=True)
class LevelUpEvent:
    user_id: str
    old_level: int
    new_level: int
    total_xp_earned: int


@dataclass(frozen=True)
class NewLongestStreakEvent:
    user_id: str
    streak_type: str
    longest_streak: int


@dataclass(frozen=True)
class RewardPurchasedEvent:
    user_id: str
    item_id: str
    reward_id: str
    redemption_code: str
    xp_spent: int


@dataclass(frozen=True)
class BadgeUnlockedEvent:
    user_id: str
    badge: str
    source: str
