"""Pydantic models for API request/response validation"""
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from talentika_progression.models import (
    AwardResult,
    LeaderboardEntry,
    PurchaseResult,
    QuestResult,
    RewardItem,
    StreakRecord,
    UserChallenge,
    UserQuest,
    UserReward,
    XPTransaction,
)


# ==========================================
# Requests
# ==========================================

class AwardXPRequest(BaseModel):
    """Request to award XP"""
    amount: int = Field(..., description="XP to award (must be positive)")
    reason: str = Field(..., min_length=1, description="Why the XP is awarded")
    idempotency_key: str = Field(..., min_length=1, description="Unique per user; replays are no-ops")


class ActivityRequest(BaseModel):
    """Request to record a streak activity"""
    activity_date: Optional[date] = Field(default=None, description="Calendar day of the activity")
    occurred_at: Optional[datetime] = Field(
        default=None,
        description="Timestamp of the activity (naive = UTC); used when activity_date is absent"
    )


class CompletionRequest(BaseModel):
    """Evidence submitted when completing a quest or challenge"""
    evidence: Optional[Dict[str, Any]] = Field(default=None, description="Checked against requirements")
    score: Optional[int] = Field(default=None, description="Challenge score")


class PurchaseRequest(BaseModel):
    """Request to purchase a reward item"""
    idempotency_key: Optional[str] = Field(default=None, description="Optional client retry key")


# ==========================================
# Responses
# ==========================================

class ProgressionResponse(BaseModel):
    """XP totals and level progress"""
    user_id: str
    total_xp_earned: int
    spendable_xp: int
    current_level: int
    xp_in_current_level: int
    xp_to_next_level: int
    total_xp_for_next_level: int
    progress_percent: float
    version: int


class AwardXPResponse(BaseModel):
    user_id: str
    xp_awarded: int
    total_xp_earned: int
    spendable_xp: int
    old_level: int
    new_level: int
    leveled_up: bool
    already_applied: bool

    @classmethod
    def from_result(cls, result: AwardResult) -> "AwardXPResponse":
        return cls(
            user_id=result.progression.user_id,
            xp_awarded=result.xp_awarded,
            total_xp_earned=result.progression.total_xp_earned,
            spendable_xp=result.progression.spendable_xp,
            old_level=result.old_level,
            new_level=result.new_level,
            leveled_up=result.leveled_up,
            already_applied=result.already_applied,
        )


class XPTransactionModel(BaseModel):
    amount: int
    reason: str
    idempotency_key: str
    awarded_at: datetime

    @classmethod
    def from_record(cls, record: XPTransaction) -> "XPTransactionModel":
        return cls(
            amount=record.amount,
            reason=record.reason,
            idempotency_key=record.idempotency_key,
            awarded_at=record.awarded_at,
        )


class XPHistoryResponse(BaseModel):
    user_id: str
    transactions: List[XPTransactionModel]


class StreakModel(BaseModel):
    streak_type: str
    current_streak: int
    longest_streak: int
    last_activity_date: Optional[date] = None

    @classmethod
    def from_record(cls, record: StreakRecord) -> "StreakModel":
        return cls(
            streak_type=record.streak_type,
            current_streak=record.current_streak,
            longest_streak=record.longest_streak,
            last_activity_date=record.last_activity_date,
        )


class StreakResponse(BaseModel):
    """Response with streak info"""
    user_id: str
    streaks: List[StreakModel]


class ActivityResponse(BaseModel):
    user_id: str
    streak: StreakModel
    is_new_longest: bool
    milestone_reached: bool
    milestone_xp: int = 0


class UserQuestModel(BaseModel):
    quest_id: str
    status: str
    started_at: datetime
    xp_earned: Optional[int] = None
    completed_at: Optional[datetime] = None
    abandoned_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record: UserQuest) -> "UserQuestModel":
        return cls(
            quest_id=record.quest_id,
            status=record.status.value,
            started_at=record.started_at,
            xp_earned=record.xp_earned,
            completed_at=record.completed_at,
            abandoned_at=record.abandoned_at,
        )


class UserChallengeModel(BaseModel):
    challenge_id: str
    status: str
    joined_at: datetime
    xp_earned: Optional[int] = None
    completed_at: Optional[datetime] = None
    abandoned_at: Optional[datetime] = None
    score: Optional[int] = None

    @classmethod
    def from_record(cls, record: UserChallenge) -> "UserChallengeModel":
        return cls(
            challenge_id=record.challenge_id,
            status=record.status.value,
            joined_at=record.joined_at,
            xp_earned=record.xp_earned,
            completed_at=record.completed_at,
            abandoned_at=record.abandoned_at,
            score=record.score,
        )


class QuestListResponse(BaseModel):
    user_id: str
    quests: List[UserQuestModel]


class ChallengeListResponse(BaseModel):
    user_id: str
    challenges: List[UserChallengeModel]


class QuestActionResponse(BaseModel):
    """Result of a quest or challenge transition"""
    user_id: str
    quest: Optional[UserQuestModel] = None
    challenge: Optional[UserChallengeModel] = None
    xp_awarded: int = 0
    leveled_up: bool = False
    new_level: Optional[int] = None
    badges_unlocked: List[str] = Field(default_factory=list)
    already_applied: bool = False

    @classmethod
    def from_result(cls, user_id: str, result: QuestResult) -> "QuestActionResponse":
        record = result.record
        return cls(
            user_id=user_id,
            quest=UserQuestModel.from_record(record) if isinstance(record, UserQuest) else None,
            challenge=UserChallengeModel.from_record(record) if isinstance(record, UserChallenge) else None,
            xp_awarded=result.award.xp_awarded if result.award else 0,
            leveled_up=result.leveled_up,
            new_level=result.award.new_level if result.award else None,
            badges_unlocked=list(result.badges_unlocked),
            already_applied=result.already_applied,
        )


class RewardItemModel(BaseModel):
    item_id: str
    title: str
    item_type: str
    xp_cost: int
    stock_quantity: Optional[int] = None
    description: Optional[str] = None
    is_available: bool

    @classmethod
    def from_record(cls, item: RewardItem) -> "RewardItemModel":
        return cls(
            item_id=item.item_id,
            title=item.title,
            item_type=item.item_type,
            xp_cost=item.xp_cost,
            stock_quantity=item.stock_quantity,
            description=item.description,
            is_available=item.is_available,
        )


class RewardCatalogResponse(BaseModel):
    items: List[RewardItemModel]


class UserRewardModel(BaseModel):
    reward_id: str
    item_id: str
    xp_spent: int
    redemption_code: str
    purchased_at: datetime

    @classmethod
    def from_record(cls, reward: UserReward) -> "UserRewardModel":
        return cls(
            reward_id=reward.reward_id,
            item_id=reward.item_id,
            xp_spent=reward.xp_spent,
            redemption_code=reward.redemption_code,
            purchased_at=reward.purchased_at,
        )


class UserRewardsResponse(BaseModel):
    user_id: str
    rewards: List[UserRewardModel]


class PurchaseResponse(BaseModel):
    user_id: str
    reward: UserRewardModel
    spendable_xp: int
    already_applied: bool

    @classmethod
    def from_result(cls, user_id: str, result: PurchaseResult) -> "PurchaseResponse":
        return cls(
            user_id=user_id,
            reward=UserRewardModel.from_record(result.reward),
            spendable_xp=result.progression.spendable_xp if result.progression else 0,
            already_applied=result.already_applied,
        )


class LeaderboardEntryModel(BaseModel):
    position: int
    user_id: str
    total_xp_earned: int
    level: int

    @classmethod
    def from_entry(cls, entry: LeaderboardEntry) -> "LeaderboardEntryModel":
        return cls(
            position=entry.position,
            user_id=entry.user_id,
            total_xp_earned=entry.total_xp_earned,
            level=entry.level,
        )


class LeaderboardResponse(BaseModel):
    entries: List[LeaderboardEntryModel]


class HealthCheckResponse(BaseModel):
    """Health check response"""
    status: str = Field(..., description="Service status")
    database: str = Field(..., description="Database connection status")
    timestamp: datetime = Field(..., description="Check timestamp")
