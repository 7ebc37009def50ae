"""
Community Challenges

Time-boxed quests with optional capacity. Joining is allowed only inside
the [start_date, end_date] window while places remain; the participant
counter is incremented by a conditional write in the joining user's commit,
so concurrent joins can never overfill a challenge.

Abandoning does not give the place back.
"""

from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, List, Optional
import logging

from talentika_progression.collaborators import RequirementEvaluator
from talentika_progression.db.store import CatalogProvider, ProgressionStore
from talentika_progression.exceptions import (
    ChallengeClosedError,
    ChallengeFullError,
    RecordNotFoundError,
    RequirementsNotMetError,
)
from talentika_progression.gamification.quests import RequirementCheck, ensure_in_progress, ensure_startable
from talentika_progression.gamification.transaction import ChangeSet, Outcome, TransactionRunner, as_utc
from talentika_progression.gamification.xp_ledger import apply_award
from talentika_progression.models import Challenge, QuestResult, QuestStatus, UserChallenge

logger = logging.getLogger(__name__)


def challenge_key(challenge_id: str, user_id: str) -> str:
    return f"challenge:{challenge_id}:user:{user_id}"


def has_started(challenge: Challenge, now: datetime) -> bool:
    return challenge.start_date is None or now >= as_utc(challenge.start_date)


def has_ended(challenge: Challenge, now: datetime) -> bool:
    return challenge.end_date is not None and now > as_utc(challenge.end_date)


class ChallengeEngine:
    """Challenge join, completion and abandonment"""

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

    async def get_challenge(
        self,
        challenge_id: str,
        user_id: Optional[str] = None,
        require_active: bool = True
    ) -> Challenge:
        challenge = await self.runner.call(self.catalog.get_challenge(challenge_id), "get_challenge", user_id)
        if challenge is None or (require_active and not challenge.is_active):
            raise RecordNotFoundError(
                f"Challenge {challenge_id} not found or inactive",
                record_type="challenge",
                record_id=challenge_id,
                user_id=user_id
            )
        return challenge

    async def join_challenge(self, user_id: str, challenge_id: str) -> QuestResult:
        """
        Join a challenge

        Raises:
            RecordNotFoundError: unknown or inactive challenge
            ChallengeClosedError: before start_date or after end_date
            ChallengeFullError: no places left
            AlreadyStartedError: already joined
            InvalidTransitionError: previously abandoned
        """

        async def command(changes: ChangeSet) -> Outcome[QuestResult]:
            # re-read each attempt for a fresh participant count
            challenge = await self.get_challenge(challenge_id, user_id)

            existing = changes.state.challenges.get(challenge_id)
            ensure_startable("challenge", challenge_id, existing, user_id, "join_challenge")

            if not has_started(challenge, changes.now):
                raise ChallengeClosedError(challenge_id, reason="not_started", user_id=user_id, operation="join_challenge")
            if has_ended(challenge, changes.now):
                raise ChallengeClosedError(challenge_id, reason="ended", user_id=user_id, operation="join_challenge")

            if (
                challenge.max_participants is not None
                and challenge.current_participants >= challenge.max_participants
            ):
                raise ChallengeFullError(
                    challenge_id,
                    max_participants=challenge.max_participants,
                    user_id=user_id,
                    operation="join_challenge"
                )

            record = UserChallenge(
                user_id=user_id,
                challenge_id=challenge_id,
                status=QuestStatus.IN_PROGRESS,
                joined_at=changes.now,
            )
            changes.challenges.append(record)
            changes.challenge_joins.append(challenge_id)
            return Outcome(QuestResult(record=record))

        result = await self.runner.run("join_challenge", user_id, command)
        logger.info(f"User {user_id} joined challenge {challenge_id}")
        return result

    async def complete_challenge(
        self,
        user_id: str,
        challenge_id: str,
        evidence: Optional[Dict[str, Any]] = None,
        score: Optional[int] = None
    ) -> QuestResult:
        """
        Complete a joined challenge

        Same rules as quest completion with key
        challenge:<challenge_id>:user:<user_id>. Completion after
        end_date raises ChallengeClosedError.
        """
        challenge = await self.get_challenge(challenge_id, user_id, require_active=False)
        check = RequirementCheck(
            self.runner, self.evaluator, challenge.requirements, evidence, "complete_challenge", user_id
        )

        async def command(changes: ChangeSet) -> Outcome[QuestResult]:
            existing = changes.state.challenges.get(challenge_id)
            ensure_in_progress(
                "challenge", challenge_id, existing, QuestStatus.COMPLETED, user_id, "complete_challenge"
            )

            if has_ended(challenge, changes.now):
                raise ChallengeClosedError(challenge_id, reason="ended", user_id=user_id, operation="complete_challenge")

            if not await check.is_satisfied():
                raise RequirementsNotMetError(
                    "challenge", challenge_id, user_id=user_id, operation="complete_challenge"
                )

            record = replace(
                existing,
                status=QuestStatus.COMPLETED,
                completed_at=changes.now,
                xp_earned=challenge.xp_reward,
                score=score,
                submission_data=evidence,
            )
            changes.challenges.append(record)

            award = None
            if challenge.xp_reward > 0:
                award = apply_award(
                    changes,
                    challenge.xp_reward,
                    f"challenge_completed:{challenge_id}",
                    challenge_key(challenge_id, user_id)
                )

            badges = []
            if challenge.badge_reward and changes.grant_badge(
                challenge.badge_reward, source=f"challenge:{challenge_id}"
            ):
                badges.append(challenge.badge_reward)

            return Outcome(QuestResult(record=record, award=award, badges_unlocked=badges))

        result = await self.runner.run("complete_challenge", user_id, command)
        logger.info(f"User {user_id} completed challenge {challenge_id} (+{challenge.xp_reward} XP)")
        return result

    async def abandon_challenge(self, user_id: str, challenge_id: str) -> QuestResult:
        """Abandon a joined challenge; the place is not released"""

        async def command(changes: ChangeSet) -> Outcome[QuestResult]:
            existing = changes.state.challenges.get(challenge_id)
            ensure_in_progress(
                "challenge", challenge_id, existing, QuestStatus.ABANDONED, user_id, "abandon_challenge"
            )

            record = replace(existing, status=QuestStatus.ABANDONED, abandoned_at=changes.now)
            changes.challenges.append(record)
            return Outcome(QuestResult(record=record))

        result = await self.runner.run("abandon_challenge", user_id, command)
        logger.info(f"User {user_id} abandoned challenge {challenge_id}")
        return result

    async def get_user_challenges(
        self,
        user_id: str,
        status: Optional[QuestStatus] = None
    ) -> List[UserChallenge]:
        state = await self.runner.call(self.store.load_state(user_id), "get_user_challenges", user_id)
        records = [c for c in state.challenges.values() if status is None or c.status == status]
        return sorted(records, key=lambda c: (c.joined_at, c.challenge_id))
