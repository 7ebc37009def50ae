"""Progression domain records"""
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Optional


class Difficulty(Enum):
    """Quest and challenge difficulty"""
    EASY = "easy"
    MEDIUM = "medium"
    HARD = "hard"


class QuestStatus(Enum):
    """
    User quest/challenge status

    not_started -> in_progress -> completed
    in_progress -> abandoned
    """
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ABANDONED = "abandoned"

    @property
    def is_terminal(self) -> bool:
        return self in (QuestStatus.COMPLETED, QuestStatus.ABANDONED)


@dataclass
class UserProgression:
    """Per-user XP aggregate"""
    user_id: str
    total_xp_earned: int = 0
    spendable_xp: int = 0
    current_level: int = 1
    version: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_persisted(self) -> bool:
        return self.version > 0


@dataclass
class StreakRecord:
    """Consecutive-day counter for one streak type"""
    user_id: str
    streak_type: str
    current_streak: int = 0
    longest_streak: int = 0
    last_activity_date: Optional[date] = None


@dataclass
class Quest:
    """Quest definition (catalog content)"""
    quest_id: str
    title: str
    xp_reward: int
    difficulty: Difficulty = Difficulty.EASY
    quest_type: str = "general"
    badge_reward: Optional[str] = None
    requirements: Optional[Dict[str, Any]] = None
    description: Optional[str] = None
    is_active: bool = True


@dataclass
class Challenge:
    """Time-boxed challenge definition with optional capacity"""
    challenge_id: str
    title: str
    xp_reward: int
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    max_participants: Optional[int] = None    # None = unlimited
    current_participants: int = 0
    difficulty: Difficulty = Difficulty.MEDIUM
    challenge_type: str = "general"
    badge_reward: Optional[str] = None
    requirements: Optional[Dict[str, Any]] = None
    description: Optional[str] = None
    is_active: bool = True


@dataclass
class UserQuest:
    """User's quest state"""
    user_id: str
    quest_id: str
    status: QuestStatus
    started_at: datetime
    xp_earned: Optional[int] = None
    completed_at: Optional[datetime] = None
    abandoned_at: Optional[datetime] = None
    progress_data: Optional[Dict[str, Any]] = None


@dataclass
class UserChallenge:
    """User's challenge participation"""
    user_id: str
    challenge_id: str
    status: QuestStatus
    joined_at: datetime
    xp_earned: Optional[int] = None
    completed_at: Optional[datetime] = None
    abandoned_at: Optional[datetime] = None
    score: Optional[int] = None
    submission_data: Optional[Dict[str, Any]] = None


@dataclass
class RewardItem:
    """Redeemable catalog item"""
    item_id: str
    title: str
    xp_cost: int
    item_type: str = "voucher"
    stock_quantity: Optional[int] = None    # None = unlimited
    description: Optional[str] = None
    is_available: bool = True

    @property
    def tracks_stock(self) -> bool:
        return self.stock_quantity is not None


@dataclass(frozen=True)
class UserReward:
    """Redemption record (append-only)"""
    reward_id: str
    user_id: str
    item_id: str
    xp_spent: int
    redemption_code: str
    purchased_at: datetime
    idempotency_key: Optional[str] = None


@dataclass(frozen=True)
class XPTransaction:
    """Ledger entry for one XP award"""
    user_id: str
    amount: int
    reason: str
    idempotency_key: str
    awarded_at: datetime


@dataclass(frozen=True)
class BadgeGrant:
    """Badge unlocked for a user (at most once per badge)"""
    user_id: str
    badge: str
    source: str
    granted_at: datetime


@dataclass
class UserState:
    """
    Everything a command may read or write for one user

    Loaded as a detached copy; writes go back through ProgressionStore.commit.
    """
    progression: UserProgression
    streaks: Dict[str, StreakRecord] = field(default_factory=dict)
    quests: Dict[str, UserQuest] = field(default_factory=dict)
    challenges: Dict[str, UserChallenge] = field(default_factory=dict)
    badges: set = field(default_factory=set)


@dataclass(frozen=True)
class LeaderboardEntry:
    """One ranked row"""
    position: int
    user_id: str
    total_xp_earned: int
    level: int
