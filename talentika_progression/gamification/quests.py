"""
Quest Engine

Quest lifecycle per user:
    not_started -> in_progress -> completed   (terminal)
    in_progress -> abandoned                  (terminal)

Completion checks the submitted evidence against the quest's requirements,
awards the quest's XP exactly once (key quest:<quest_id>:user:<user_id>)
and grants the quest's badge exactly once, all in one commit.
"""

from dataclasses import replace
from typing import Any, Dict, List, Optional
import logging

from talentika_progression.collaborators import RequirementEvaluator
from talentika_progression.db.store import CatalogProvider, ProgressionStore
from talentika_progression.exceptions import (
    AlreadyCompletedError,
    AlreadyStartedError,
    InvalidTransitionError,
    NotStartedError,
    RecordNotFoundError,
    RequirementsNotMetError,
)
from talentika_progression.gamification.transaction import ChangeSet, Outcome, TransactionRunner
from talentika_progression.gamification.xp_ledger import apply_award
from talentika_progression.models import Quest, QuestResult, QuestStatus, UserQuest
from talentika_progression.resilience import retry_with_backoff

logger = logging.getLogger(__name__)


class RequirementCheck:
    """
    Evaluates requirements once per command.

    The verdict is cached so conflict retries don't call the evaluator again.
    """

    def __init__(
        self,
        runner: TransactionRunner,
        evaluator: RequirementEvaluator,
        requirements: Optional[Dict[str, Any]],
        evidence: Optional[Dict[str, Any]],
        operation: str,
        user_id: str
    ):
        self.runner = runner
        self.evaluator = evaluator
        self.requirements = requirements
        self.evidence = evidence
        self.operation = operation
        self.user_id = user_id
        self._verdict: Optional[bool] = None

    async def _evaluate(self) -> bool:
        return await self.runner.call(
            self.evaluator.is_satisfied(self.requirements, self.evidence),
            f"{self.operation}:requirements",
            self.user_id
        )

    async def is_satisfied(self) -> bool:
        if self._verdict is None:
            self._verdict = await retry_with_backoff(self._evaluate, max_retries=self.runner.max_retries)
        return self._verdict


def ensure_startable(kind: str, target_id: str, existing: Any, user_id: str, operation: str) -> None:
    """Raise unless the user may start (or join) the target"""
    if existing is None or existing.status == QuestStatus.NOT_STARTED:
        return
    if existing.status == QuestStatus.ABANDONED:
        raise InvalidTransitionError(
            kind, target_id,
            from_status=existing.status.value,
            to_status=QuestStatus.IN_PROGRESS.value,
            user_id=user_id,
            operation=operation
        )
    raise AlreadyStartedError(kind, target_id, status=existing.status.value, user_id=user_id, operation=operation)


def ensure_in_progress(kind: str, target_id: str, existing: Any, to_status: QuestStatus, user_id: str, operation: str) -> None:
    """Raise unless the target is in progress for the user"""
    if existing is None or existing.status == QuestStatus.NOT_STARTED:
        raise NotStartedError(kind, target_id, user_id=user_id, operation=operation)
    if existing.status == QuestStatus.COMPLETED and to_status == QuestStatus.COMPLETED:
        raise AlreadyCompletedError(kind, target_id, user_id=user_id, operation=operation)
    if existing.status != QuestStatus.IN_PROGRESS:
        raise InvalidTransitionError(
            kind, target_id,
            from_status=existing.status.value,
            to_status=to_status.value,
            user_id=user_id,
            operation=operation
        )


def quest_key(quest_id: str, user_id: str) -> str:
    return f"quest:{quest_id}:user:{user_id}"


class QuestEngine:
    """Quest start, completion and abandonment"""

    def __init__(
        self,
        store: ProgressionStore,
        catalog: CatalogProvider,
        runner: TransactionRunner,
        evaluator: RequirementEvaluator
    ):
        self.store = store
        self.catalog = catalog
        self.runner = runner
        self.evaluator = evaluator

    async def get_quest(self, quest_id: str, user_id: Optional[str] = None, require_active: bool = True) -> Quest:
        quest = await self.runner.call(self.catalog.get_quest(quest_id), "get_quest", user_id)
        if quest is None or (require_active and not quest.is_active):
            raise RecordNotFoundError(
                f"Quest {quest_id} not found or inactive",
                record_type="quest",
                record_id=quest_id,
                user_id=user_id
            )
        return quest

    async def start_quest(self, user_id: str, quest_id: str) -> QuestResult:
        """
        Start a quest

        Raises:
            RecordNotFoundError: unknown or inactive quest
            AlreadyStartedError: quest in progress or completed
            InvalidTransitionError: quest was abandoned
        """
        await self.get_quest(quest_id, user_id)

        async def command(changes: ChangeSet) -> Outcome[QuestResult]:
            existing = changes.state.quests.get(quest_id)
            ensure_startable("quest", quest_id, existing, user_id, "start_quest")

            record = UserQuest(
                user_id=user_id,
                quest_id=quest_id,
                status=QuestStatus.IN_PROGRESS,
                started_at=changes.now,
            )
            changes.quests.append(record)
            return Outcome(QuestResult(record=record))

        result = await self.runner.run("start_quest", user_id, command)
        logger.info(f"User {user_id} started quest {quest_id}")
        return result

    async def complete_quest(
        self,
        user_id: str,
        quest_id: str,
        evidence: Optional[Dict[str, Any]] = None
    ) -> QuestResult:
        """
        Complete an in-progress quest and award its XP and badge

        Args:
            user_id: User's ID
            quest_id: Quest being completed
            evidence: Data checked against the quest's requirements

        Returns:
            QuestResult with the completed record, the XP award (None for
            zero-XP quests) and newly unlocked badges

        Raises:
            NotStartedError: no in-progress record
            AlreadyCompletedError: already completed, no XP re-award
            InvalidTransitionError: quest was abandoned
            RequirementsNotMetError: evidence does not satisfy requirements
        """
        quest = await self.get_quest(quest_id, user_id, require_active=False)
        check = RequirementCheck(
            self.runner, self.evaluator, quest.requirements, evidence, "complete_quest", user_id
        )

        async def command(changes: ChangeSet) -> Outcome[QuestResult]:
            existing = changes.state.quests.get(quest_id)
            ensure_in_progress("quest", quest_id, existing, QuestStatus.COMPLETED, user_id, "complete_quest")

            if not await check.is_satisfied():
                raise RequirementsNotMetError("quest", quest_id, user_id=user_id, operation="complete_quest")

            record = replace(
                existing,
                status=QuestStatus.COMPLETED,
                completed_at=changes.now,
                xp_earned=quest.xp_reward,
                progress_data=evidence if evidence is not None else existing.progress_data,
            )
            changes.quests.append(record)

            award = None
            if quest.xp_reward > 0:
                award = apply_award(
                    changes, quest.xp_reward, f"quest_completed:{quest_id}", quest_key(quest_id, user_id)
                )

            badges = []
            if quest.badge_reward and changes.grant_badge(quest.badge_reward, source=f"quest:{quest_id}"):
                badges.append(quest.badge_reward)

            return Outcome(QuestResult(record=record, award=award, badges_unlocked=badges))

        result = await self.runner.run("complete_quest", user_id, command)
        logger.info(f"User {user_id} completed quest {quest_id} (+{quest.xp_reward} XP)")
        return result

    async def abandon_quest(self, user_id: str, quest_id: str) -> QuestResult:
        """Abandon an in-progress quest"""

        async def command(changes: ChangeSet) -> Outcome[QuestResult]:
            existing = changes.state.quests.get(quest_id)
            ensure_in_progress("quest", quest_id, existing, QuestStatus.ABANDONED, user_id, "abandon_quest")

            record = replace(existing, status=QuestStatus.ABANDONED, abandoned_at=changes.now)
            changes.quests.append(record)
            return Outcome(QuestResult(record=record))

        result = await self.runner.run("abandon_quest", user_id, command)
        logger.info(f"User {user_id} abandoned quest {quest_id}")
        return result

    async def get_user_quests(self, user_id: str, status: Optional[QuestStatus] = None) -> List[UserQuest]:
        state = await self.runner.call(self.store.load_state(user_id), "get_user_quests", user_id)
        records = [q for q in state.quests.values() if status is None or q.status == status]
        return sorted(records, key=lambda q: (q.started_at, q.quest_id))
