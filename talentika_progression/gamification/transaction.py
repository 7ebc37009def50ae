"""
Optimistic-concurrency command runner

Every state-changing command runs as:
    load snapshot -> compute change on a working copy -> commit if version unchanged

A ConflictError restarts the whole command from a fresh snapshot, up to
MAX_CONFLICT_RETRIES times, then surfaces to the caller.
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Awaitable, Callable, Generic, List, Optional, TypeVar

from talentika_progression import config
from talentika_progression.db.store import ProgressionStore, StateChange
from talentika_progression.exceptions import ConflictError
from talentika_progression.gamification.levels import LevelCurve
from talentika_progression.models import (
    BadgeGrant,
    StreakRecord,
    UserChallenge,
    UserProgression,
    UserQuest,
    UserReward,
    UserState,
    XPTransaction,
)
from talentika_progression.monitoring import record_conflict, track_operation
from talentika_progression.resilience import retry_with_backoff, with_timeout

logger = logging.getLogger(__name__)

T = TypeVar("T")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class ChangeSet:
    """
    Working copy of one user's aggregate for a single command attempt.

    Commands mutate `progression` and stage records; `to_state_change`
    produces what the store commits.
    """

    def __init__(self, state: UserState, curve: LevelCurve, now: datetime):
        self.state = state
        self.curve = curve
        self.now = now
        self.expected_version = state.progression.version
        self.progression: UserProgression = replace(state.progression)
        # stored level may predate a curve change
        self.progression.current_level = curve.level_of(self.progression.total_xp_earned)
        self.xp_transactions: List[XPTransaction] = []
        self.streaks: List[StreakRecord] = []
        self.quests: List[UserQuest] = []
        self.challenges: List[UserChallenge] = []
        self.rewards: List[UserReward] = []
        self.badges: List[BadgeGrant] = []
        self.stock_decrements: List[str] = []
        self.challenge_joins: List[str] = []

    @property
    def user_id(self) -> str:
        return self.progression.user_id

    def credit(self, amount: int, reason: str, idempotency_key: str) -> None:
        """Add XP to both totals and re-derive the level"""
        self.progression.total_xp_earned += amount
        self.progression.spendable_xp += amount
        self.progression.current_level = self.curve.level_of(self.progression.total_xp_earned)
        self.xp_transactions.append(
            XPTransaction(
                user_id=self.user_id,
                amount=amount,
                reason=reason,
                idempotency_key=idempotency_key,
                awarded_at=self.now,
            )
        )

    def debit(self, amount: int) -> None:
        """Spend XP; total earned is untouched"""
        self.progression.spendable_xp -= amount

    def has_pending_key(self, idempotency_key: str) -> bool:
        return any(t.idempotency_key == idempotency_key for t in self.xp_transactions)

    def grant_badge(self, badge: str, source: str) -> bool:
        """Stage a badge unless the user already holds it"""
        if badge in self.state.badges or any(b.badge == badge for b in self.badges):
            return False
        self.badges.append(BadgeGrant(user_id=self.user_id, badge=badge, source=source, granted_at=self.now))
        return True

    def to_state_change(self) -> StateChange:
        return StateChange(
            user_id=self.user_id,
            expected_version=self.expected_version,
            progression=self.progression,
            xp_transactions=self.xp_transactions,
            streaks=self.streaks,
            quests=self.quests,
            challenges=self.challenges,
            rewards=self.rewards,
            badges=self.badges,
            stock_decrements=self.stock_decrements,
            challenge_joins=self.challenge_joins,
        )


@dataclass
class Outcome(Generic[T]):
    """
    What a command attempt produced.

    `commit=False` means the command decided nothing needs writing
    (e.g. a same-day streak activity); the snapshot is returned as-is.
    """
    result: T
    commit: bool = True


class TransactionRunner:
    """Runs commands against a store with version checks, retries and timeouts"""

    def __init__(
        self,
        store: ProgressionStore,
        curve: LevelCurve,
        clock: Callable[[], datetime] = utc_now,
        max_retries: Optional[int] = None,
        timeout: Optional[float] = None,
    ):
        self.store = store
        self.curve = curve
        self.clock = clock
        self.max_retries = config.MAX_CONFLICT_RETRIES if max_retries is None else max_retries
        self.timeout = config.OPERATION_TIMEOUT_SECONDS if timeout is None else timeout

    async def call(self, awaitable: Awaitable[T], operation: str, user_id: Optional[str] = None) -> T:
        """Await a store/collaborator call with the configured deadline"""
        return await with_timeout(awaitable, self.timeout, operation=operation, user_id=user_id)

    async def run(
        self,
        operation: str,
        user_id: str,
        command: Callable[[ChangeSet], Awaitable[Outcome[T]]],
    ) -> T:
        """
        Run `command` until it commits or fails for a non-conflict reason.

        `command` receives a fresh ChangeSet on every attempt and must not
        have side effects outside it.
        """

        async def attempt() -> T:
            state = await self.call(self.store.load_state(user_id), f"{operation}:load", user_id)
            changes = ChangeSet(state, self.curve, as_utc(self.clock()))
            outcome = await command(changes)
            if outcome.commit:
                committed = await self.call(
                    self.store.commit(changes.to_state_change()),
                    f"{operation}:commit",
                    user_id
                )
                # results hold a reference to the working copy
                changes.progression.version = committed.version
                changes.progression.created_at = committed.created_at
                changes.progression.updated_at = committed.updated_at
            return outcome.result

        def on_conflict(error: Exception) -> None:
            record_conflict(operation)
            logger.info(f"Version conflict in {operation} for user {user_id}; retrying with fresh state")

        attempt.__name__ = operation

        with track_operation(operation):
            return await retry_with_backoff(
                attempt,
                max_retries=self.max_retries,
                should_retry=lambda e: isinstance(e, ConflictError),
                on_retry=on_conflict,
            )
