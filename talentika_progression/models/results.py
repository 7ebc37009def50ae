"""Command results returned by the engine"""
from dataclasses import dataclass, field
from typing import Any, List, Optional

from talentika_progression.models.progression import (
    RewardItem,
    StreakRecord,
    UserProgression,
    UserReward,
)


@dataclass
class AwardResult:
    """Outcome of an XP award"""
    progression: UserProgression
    xp_awarded: int
    old_level: int
    new_level: int
    already_applied: bool = False

    @property
    def leveled_up(self) -> bool:
        return self.new_level > self.old_level


@dataclass
class StreakResult:
    """Outcome of recording an activity"""
    streak: StreakRecord
    is_new_longest: bool
    milestone_reached: bool = False
    milestone_award: Optional[AwardResult] = None


@dataclass
class QuestResult:
    """Outcome of a quest or challenge transition"""
    record: Any  # UserQuest or UserChallenge
    award: Optional[AwardResult] = None
    badges_unlocked: List[str] = field(default_factory=list)
    already_applied: bool = False

    @property
    def leveled_up(self) -> bool:
        return bool(self.award and self.award.leveled_up)


@dataclass
class PurchaseResult:
    """Outcome of a reward purchase"""
    reward: UserReward
    item: RewardItem
    progression: Optional[UserProgression]
    already_applied: bool = False

