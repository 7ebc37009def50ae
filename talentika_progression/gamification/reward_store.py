"""
Reward Store

Spends XP on catalog items. A purchase reads the item and the user's
spendable balance, then debits the balance, decrements tracked stock and
appends a redemption record in one commit.

Redemption codes look like TLK-<unix millis>-<6 chars A-Z0-9>. They are
checked for collisions before commit and protected by a unique constraint
at commit; a collision at commit is a ConflictError, so the retried
attempt draws a fresh code.
"""

import logging
import secrets
import string
from typing import List, Optional
from uuid import uuid4

from talentika_progression import config
from talentika_progression.db.store import CatalogProvider, ProgressionStore
from talentika_progression.exceptions import (
    ConflictError,
    DuplicateEventError,
    InsufficientBalanceError,
    OutOfStockError,
    RecordNotFoundError,
    ValidationError,
)
from talentika_progression.gamification.transaction import ChangeSet, Outcome, TransactionRunner
from talentika_progression.models import PurchaseResult, RewardItem, UserReward

logger = logging.getLogger(__name__)

CODE_ALPHABET = string.ascii_uppercase + string.digits
CODE_SUFFIX_LENGTH = 6
MAX_CODE_ATTEMPTS = 5


def generate_redemption_code(millis: int, prefix: Optional[str] = None) -> str:
    suffix = "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_SUFFIX_LENGTH))
    return f"{prefix or config.REDEMPTION_CODE_PREFIX}-{millis}-{suffix}"


class RewardStore:
    """Catalog browsing and XP purchases"""

    def __init__(self, store: ProgressionStore, catalog: CatalogProvider, runner: TransactionRunner):
        self.store = store
        self.catalog = catalog
        self.runner = runner

    async def get_item(self, item_id: str, user_id: Optional[str] = None) -> RewardItem:
        item = await self.runner.call(self.catalog.get_reward_item(item_id), "get_reward_item", user_id)
        if item is None or not item.is_available:
            raise RecordNotFoundError(
                f"Reward item {item_id} not found or unavailable",
                record_type="reward_item",
                record_id=item_id,
                user_id=user_id
            )
        return item

    async def find_purchase(self, user_id: str, idempotency_key: str) -> Optional[UserReward]:
        return await self.runner.call(
            self.store.find_reward_by_key(user_id, idempotency_key),
            "purchase:dedupe",
            user_id
        )

    async def _new_code(self, changes: ChangeSet) -> str:
        millis = int(changes.now.timestamp() * 1000)
        for _ in range(MAX_CODE_ATTEMPTS):
            code = generate_redemption_code(millis)
            taken = await self.runner.call(
                self.store.redemption_code_exists(code),
                "purchase:code",
                changes.user_id
            )
            if not taken:
                return code
        raise ConflictError(
            message=f"Could not generate a unique redemption code in {MAX_CODE_ATTEMPTS} attempts",
            user_id=changes.user_id,
            operation="purchase"
        )

    async def purchase(
        self,
        user_id: str,
        item_id: str,
        idempotency_key: Optional[str] = None
    ) -> PurchaseResult:
        """
        Purchase a reward item with spendable XP

        Args:
            user_id: Buyer
            item_id: Reward item
            idempotency_key: Optional; a repeated key raises DuplicateEventError

        Returns:
            PurchaseResult with the redemption record and the new balance

        Raises:
            RecordNotFoundError: unknown or unavailable item
            InsufficientBalanceError: spendable XP below the item's cost
            OutOfStockError: tracked stock exhausted
            DuplicateEventError: idempotency key already used
        """
        if idempotency_key is not None and not idempotency_key.strip():
            raise ValidationError(
                "Idempotency key must not be blank",
                field="idempotency_key",
                value=idempotency_key,
                user_id=user_id,
                operation="purchase"
            )

        async def command(changes: ChangeSet) -> Outcome[PurchaseResult]:
            if idempotency_key and await self.find_purchase(user_id, idempotency_key):
                raise DuplicateEventError(idempotency_key, user_id=user_id, operation="purchase")

            # re-read each attempt for a fresh stock count
            item = await self.get_item(item_id, user_id)

            balance = changes.progression.spendable_xp
            if balance < item.xp_cost:
                raise InsufficientBalanceError(
                    balance, item.xp_cost, item_id=item_id, user_id=user_id, operation="purchase"
                )
            if item.tracks_stock and item.stock_quantity <= 0:
                raise OutOfStockError(item_id, user_id=user_id, operation="purchase")

            reward = UserReward(
                reward_id=str(uuid4()),
                user_id=user_id,
                item_id=item_id,
                xp_spent=item.xp_cost,
                redemption_code=await self._new_code(changes),
                purchased_at=changes.now,
                idempotency_key=idempotency_key,
            )
            changes.debit(item.xp_cost)
            changes.rewards.append(reward)
            if item.tracks_stock:
                changes.stock_decrements.append(item_id)

            return Outcome(PurchaseResult(reward=reward, item=item, progression=changes.progression))

        result = await self.runner.run("purchase", user_id, command)

        logger.info(
            f"User {user_id} purchased {item_id} for {result.reward.xp_spent} XP "
            f"(code: {result.reward.redemption_code}, balance: {result.progression.spendable_xp})"
        )
        return result

    async def list_items(self, available_only: bool = True) -> List[RewardItem]:
        return await self.runner.call(self.catalog.list_reward_items(available_only), "list_reward_items")

    async def get_user_rewards(self, user_id: str) -> List[UserReward]:
        """Redemption history, newest first"""
        return await self.runner.call(self.store.list_user_rewards(user_id), "get_user_rewards", user_id)
