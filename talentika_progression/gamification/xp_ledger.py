"""
XP Ledger

Applies XP-granting events to a user's aggregate. Every award is an
append-only ledger entry keyed by an idempotency key that is unique per
user, so replayed events never double-credit.

Key conventions:
- quest:<quest_id>:user:<user_id>
- challenge:<challenge_id>:user:<user_id>
- streak:<type>:user:<user_id>:day:<n>:<date>
"""

import logging
from typing import List, Optional

from talentika_progression.db.store import ProgressionStore
from talentika_progression.exceptions import DuplicateEventError, ValidationError
from talentika_progression.gamification.transaction import ChangeSet, Outcome, TransactionRunner
from talentika_progression.models import AwardResult, XPTransaction

logger = logging.getLogger(__name__)


def validate_award(amount: int, idempotency_key: str, user_id: Optional[str] = None) -> None:
    """Reject awards that could never be applied"""
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError(
            f"XP amount must be a positive integer, got {amount!r}",
            field="amount",
            value=amount,
            user_id=user_id,
            operation="award_xp"
        )
    if not idempotency_key or not idempotency_key.strip():
        raise ValidationError(
            "Idempotency key must not be empty",
            field="idempotency_key",
            value=idempotency_key,
            user_id=user_id,
            operation="award_xp"
        )


def apply_award(changes: ChangeSet, amount: int, reason: str, idempotency_key: str) -> AwardResult:
    """
    Credit XP on a working copy.

    Shared by every command that grants XP, so the level is always
    re-derived from total_xp_earned in the same commit.
    """
    if changes.has_pending_key(idempotency_key):
        raise DuplicateEventError(idempotency_key, user_id=changes.user_id, operation="award_xp")

    old_level = changes.progression.current_level
    changes.credit(amount, reason, idempotency_key)
    new_level = changes.progression.current_level

    if new_level > old_level:
        logger.info(f"User {changes.user_id} leveled up: {old_level} -> {new_level}")

    return AwardResult(
        progression=changes.progression,
        xp_awarded=amount,
        old_level=old_level,
        new_level=new_level,
    )


class XPLedger:
    """Awards XP and exposes the ledger"""

    def __init__(self, store: ProgressionStore, runner: TransactionRunner):
        self.store = store
        self.runner = runner

    async def ensure_not_applied(self, user_id: str, idempotency_key: str) -> None:
        """Raise DuplicateEventError if the key is already in the ledger"""
        applied = await self.runner.call(
            self.store.has_xp_event(user_id, idempotency_key),
            "award_xp:dedupe",
            user_id
        )
        if applied:
            raise DuplicateEventError(idempotency_key, user_id=user_id, operation="award_xp")

    async def award_xp(
        self,
        user_id: str,
        amount: int,
        reason: str,
        idempotency_key: str
    ) -> AwardResult:
        """
        Award XP to a user

        Args:
            user_id: User receiving the XP
            amount: Positive XP amount
            reason: Human-readable source ("lesson_completed", ...)
            idempotency_key: Unique per user; replays raise DuplicateEventError

        Returns:
            AwardResult with the committed snapshot and level change

        Raises:
            ValidationError: amount <= 0 or empty key
            DuplicateEventError: key already applied
            ConflictError: retries exhausted
        """
        validate_award(amount, idempotency_key, user_id)

        async def command(changes: ChangeSet) -> Outcome[AwardResult]:
            await self.ensure_not_applied(user_id, idempotency_key)
            return Outcome(apply_award(changes, amount, reason, idempotency_key))

        result = await self.runner.run("award_xp", user_id, command)

        logger.info(
            f"Awarded {amount} XP to user {user_id} for {reason} "
            f"(total: {result.progression.total_xp_earned}, level: {result.new_level})"
        )
        return result

    async def get_xp_history(self, user_id: str, limit: int = 50) -> List[XPTransaction]:
        """Ledger entries, newest first"""
        if limit <= 0:
            raise ValidationError("limit must be positive", field="limit", value=limit, user_id=user_id)
        return await self.runner.call(
            self.store.list_xp_transactions(user_id, limit),
            "get_xp_history",
            user_id
        )
