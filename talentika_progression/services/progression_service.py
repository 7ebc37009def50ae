"""
ProgressionService - Engine facade

Single entry point for callers (the HTTP API, background consumers).
Wires the engine components over one store, turns benign repeats
(duplicate events, already started/completed) into successful results
flagged already_applied, and delivers side effects after commit.

Side-effect delivery (badges, notifications) is best effort: failures are
logged and never fail a command that has already committed.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

from talentika_progression.collaborators import (
    BadgeUnlocker,
    DefaultRequirementEvaluator,
    LoggingBadgeUnlocker,
    LoggingNotifier,
    Notifier,
    RequirementEvaluator,
)
from talentika_progression.db.store import CatalogProvider, ProgressionStore
from talentika_progression.exceptions import (
    AlreadyCompletedError,
    AlreadyStartedError,
    DuplicateEventError,
)
from talentika_progression.gamification import (
    ChallengeEngine,
    Leaderboard,
    LevelCurve,
    QuestEngine,
    RewardStore,
    StreakTracker,
    TransactionRunner,
    XPLedger,
    utc_now,
)
from talentika_progression.models import (
    AwardResult,
    BadgeUnlockedEvent,
    LeaderboardEntry,
    LevelUpEvent,
    NewLongestStreakEvent,
    PurchaseResult,
    QuestResult,
    QuestStatus,
    RewardItem,
    RewardPurchasedEvent,
    StreakRecord,
    StreakResult,
    UserChallenge,
    UserQuest,
    UserReward,
    XPTransaction,
)
from talentika_progression.monitoring import record_xp_awarded, record_xp_spent

logger = logging.getLogger(__name__)


class ProgressionService:
    """
    Service for progression and rewards.

    Responsibilities:
    - XP awards and level tracking
    - Streak tracking
    - Quest and challenge lifecycle
    - Reward purchases
    - Leaderboards
    - Badge and notification delivery after commit
    """

    def __init__(
        self,
        store: ProgressionStore,
        catalog: CatalogProvider,
        curve: Optional[LevelCurve] = None,
        evaluator: Optional[RequirementEvaluator] = None,
        badge_unlocker: Optional[BadgeUnlocker] = None,
        notifier: Optional[Notifier] = None,
        clock: Callable[[], datetime] = utc_now,
        max_retries: Optional[int] = None,
        timeout: Optional[float] = None,
        **tracker_options: Any
    ):
        """
        Initialize ProgressionService.

        Args:
            store: Versioned per-user aggregate storage
            catalog: Quest, challenge and reward item definitions
            curve: Level curve (defaults to configuration)
            evaluator: Requirement evaluator for quest/challenge completion
            badge_unlocker: Badge delivery collaborator
            notifier: Event notification collaborator
            clock: Source of "now" (aware UTC)
            max_retries: Conflict retries per command
            timeout: Deadline for each external call, in seconds
            tracker_options: zone / milestone_days / milestone_xp for StreakTracker
        """
        self.store = store
        self.catalog = catalog
        self.curve = curve or LevelCurve.from_config()
        self.badge_unlocker = badge_unlocker or LoggingBadgeUnlocker()
        self.notifier = notifier or LoggingNotifier()

        self.runner = TransactionRunner(store, self.curve, clock=clock, max_retries=max_retries, timeout=timeout)
        evaluator = evaluator or DefaultRequirementEvaluator()

        self.ledger = XPLedger(store, self.runner)
        self.streaks = StreakTracker(store, self.runner, **tracker_options)
        self.quests = QuestEngine(store, catalog, self.runner, evaluator)
        self.challenges = ChallengeEngine(store, catalog, self.runner, evaluator)
        self.rewards = RewardStore(store, catalog, self.runner)
        self.leaderboard = Leaderboard(store, self.runner, self.curve)
        logger.debug("ProgressionService initialized")

    # ==========================================
    # Side effects
    # ==========================================

    async def _notify(self, event: Any) -> None:
        try:
            await self.runner.call(self.notifier.notify(event), "notify", getattr(event, "user_id", None))
        except Exception as e:
            logger.warning(f"Failed to deliver {type(event).__name__}: {e}")

    async def _after_award(self, award: Optional[AwardResult]) -> None:
        if award is None or award.already_applied:
            return
        record_xp_awarded(award.xp_awarded, award.leveled_up)
        if award.leveled_up:
            await self._notify(
                LevelUpEvent(
                    user_id=award.progression.user_id,
                    old_level=award.old_level,
                    new_level=award.new_level,
                    total_xp_earned=award.progression.total_xp_earned,
                )
            )

    async def _unlock_badges(self, user_id: str, badges: List[str], source: str) -> None:
        for badge in badges:
            try:
                await self.runner.call(self.badge_unlocker.unlock_badge(user_id, badge, source), "unlock_badge", user_id)
            except Exception as e:
                logger.warning(f"Badge {badge!r} recorded for user {user_id} but delivery failed: {e}")
            await self._notify(BadgeUnlockedEvent(user_id=user_id, badge=badge, source=source))

    async def _after_completion(self, user_id: str, result: QuestResult, source: str) -> None:
        await self._after_award(result.award)
        await self._unlock_badges(user_id, result.badges_unlocked, source)

    # ==========================================
    # XP
    # ==========================================

    async def get_progression(self, user_id: str) -> Dict[str, Any]:
        """
        Progression snapshot with level progress

        Returns:
            {
                'user_id': str,
                'total_xp_earned': int,
                'spendable_xp': int,
                'current_level': int,
                'xp_in_current_level': int,
                'xp_to_next_level': int,
                'total_xp_for_next_level': int,
                'progress_percent': float,
                'version': int
            }
        """
        state = await self.runner.call(self.store.load_state(user_id), "get_progression", user_id)
        progression = state.progression
        info = self.curve.level_info(progression.total_xp_earned)
        return {
            'user_id': user_id,
            'total_xp_earned': progression.total_xp_earned,
            'spendable_xp': progression.spendable_xp,
            'version': progression.version,
            **info,
        }

    async def award_xp(self, user_id: str, amount: int, reason: str, idempotency_key: str) -> AwardResult:
        try:
            result = await self.ledger.award_xp(user_id, amount, reason, idempotency_key)
        except DuplicateEventError:
            state = await self.runner.call(self.store.load_state(user_id), "award_xp", user_id)
            level = self.curve.level_of(state.progression.total_xp_earned)
            state.progression.current_level = level
            return AwardResult(
                progression=state.progression,
                xp_awarded=0,
                old_level=level,
                new_level=level,
                already_applied=True,
            )

        await self._after_award(result)
        return result

    async def get_xp_history(self, user_id: str, limit: int = 50) -> List[XPTransaction]:
        return await self.ledger.get_xp_history(user_id, limit)

    # ==========================================
    # Streaks
    # ==========================================

    async def record_activity(self, user_id: str, streak_type: str, activity_date=None) -> StreakResult:
        result = await self.streaks.record_activity(user_id, streak_type, activity_date)

        if result.is_new_longest:
            await self._notify(
                NewLongestStreakEvent(
                    user_id=user_id,
                    streak_type=streak_type,
                    longest_streak=result.streak.longest_streak,
                )
            )
        await self._after_award(result.milestone_award)
        return result

    async def get_streaks(self, user_id: str) -> List[StreakRecord]:
        return await self.streaks.get_streaks(user_id)

    # ==========================================
    # Quests
    # ==========================================

    async def start_quest(self, user_id: str, quest_id: str) -> QuestResult:
        try:
            return await self.quests.start_quest(user_id, quest_id)
        except AlreadyStartedError:
            return await self._existing_quest(user_id, quest_id)

    async def complete_quest(
        self,
        user_id: str,
        quest_id: str,
        evidence: Optional[Dict[str, Any]] = None
    ) -> QuestResult:
        try:
            result = await self.quests.complete_quest(user_id, quest_id, evidence)
        except AlreadyCompletedError:
            return await self._existing_quest(user_id, quest_id)

        await self._after_completion(user_id, result, f"quest:{quest_id}")
        return result

    async def abandon_quest(self, user_id: str, quest_id: str) -> QuestResult:
        return await self.quests.abandon_quest(user_id, quest_id)

    async def get_user_quests(self, user_id: str, status: Optional[QuestStatus] = None) -> List[UserQuest]:
        return await self.quests.get_user_quests(user_id, status)

    async def _existing_quest(self, user_id: str, quest_id: str) -> QuestResult:
        state = await self.runner.call(self.store.load_state(user_id), "get_user_quests", user_id)
        return QuestResult(record=state.quests[quest_id], already_applied=True)

    # ==========================================
    # Challenges
    # ==========================================

    async def join_challenge(self, user_id: str, challenge_id: str) -> QuestResult:
        try:
            return await self.challenges.join_challenge(user_id, challenge_id)
        except AlreadyStartedError:
            return await self._existing_challenge(user_id, challenge_id)

    async def complete_challenge(
        self,
        user_id: str,
        challenge_id: str,
        evidence: Optional[Dict[str, Any]] = None,
        score: Optional[int] = None
    ) -> QuestResult:
        try:
            result = await self.challenges.complete_challenge(user_id, challenge_id, evidence, score)
        except AlreadyCompletedError:
            return await self._existing_challenge(user_id, challenge_id)

        await self._after_completion(user_id, result, f"challenge:{challenge_id}")
        return result

    async def abandon_challenge(self, user_id: str, challenge_id: str) -> QuestResult:
        return await self.challenges.abandon_challenge(user_id, challenge_id)

    async def get_user_challenges(
        self,
        user_id: str,
        status: Optional[QuestStatus] = None
    ) -> List[UserChallenge]:
        return await self.challenges.get_user_challenges(user_id, status)

    async def _existing_challenge(self, user_id: str, challenge_id: str) -> QuestResult:
        state = await self.runner.call(self.store.load_state(user_id), "get_user_challenges", user_id)
        return QuestResult(record=state.challenges[challenge_id], already_applied=True)

    # ==========================================
    # Reward store
    # ==========================================

    async def purchase(self, user_id: str, item_id: str, idempotency_key: Optional[str] = None) -> PurchaseResult:
        try:
            result = await self.rewards.purchase(user_id, item_id, idempotency_key)
        except DuplicateEventError:
            reward = await self.rewards.find_purchase(user_id, idempotency_key)
            item = await self.runner.call(self.catalog.get_reward_item(reward.item_id), "purchase", user_id)
            state = await self.runner.call(self.store.load_state(user_id), "purchase", user_id)
            state.progression.current_level = self.curve.level_of(state.progression.total_xp_earned)
            return PurchaseResult(reward=reward, item=item, progression=state.progression, already_applied=True)

        record_xp_spent(result.reward.xp_spent)
        await self._notify(
            RewardPurchasedEvent(
                user_id=user_id,
                item_id=item_id,
                reward_id=result.reward.reward_id,
                redemption_code=result.reward.redemption_code,
                xp_spent=result.reward.xp_spent,
            )
        )
        return result

    async def list_reward_items(self, available_only: bool = True) -> List[RewardItem]:
        return await self.rewards.list_items(available_only)

    async def get_user_rewards(self, user_id: str) -> List[UserReward]:
        return await self.rewards.get_user_rewards(user_id)

    # ==========================================
    # Leaderboard
    # ==========================================

    async def get_leaderboard(
        self,
        user_ids: Optional[Sequence[str]] = None,
        limit: int = 10
    ) -> List[LeaderboardEntry]:
        return await self.leaderboard.rank(user_ids, limit)

    async def get_user_rank(
        self,
        user_id: str,
        user_ids: Optional[Sequence[str]] = None
    ) -> Optional[LeaderboardEntry]:
        return await self.leaderboard.get_user_rank(user_id, user_ids)
