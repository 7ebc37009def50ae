"""
Progression & rewards engine

- Level curve
- XP ledger
- Streak tracking with milestone awards
- Quests and community challenges
- Reward store
- Leaderboard
"""

from talentika_progression.gamification.levels import LevelCurve, calculate_level_from_xp, default_curve
from talentika_progression.gamification.transaction import ChangeSet, Outcome, TransactionRunner, as_utc, utc_now
from talentika_progression.gamification.xp_ledger import XPLedger, apply_award
from talentika_progression.gamification.streaks import StreakTracker
from talentika_progression.gamification.quests import QuestEngine
from talentika_progression.gamification.challenges import ChallengeEngine
from talentika_progression.gamification.reward_store import RewardStore, generate_redemption_code
from talentika_progression.gamification.leaderboard import Leaderboard

__all__ = [
    "LevelCurve",
    "calculate_level_from_xp",
    "default_curve",
    "ChangeSet",
    "Outcome",
    "TransactionRunner",
    "as_utc",
    "utc_now",
    "XPLedger",
    "apply_award",
    "StreakTracker",
    "QuestEngine",
    "ChallengeEngine",
    "RewardStore",
    "generate_redemption_code",
    "Leaderboard",
]
