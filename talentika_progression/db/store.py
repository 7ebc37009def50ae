"""
Progression Store

Durable per-user aggregate plus the catalog reads the engine depends on.
Writes go through `commit`, which applies a StateChange only if the
aggregate's version is unchanged since it was loaded.

Two implementations:
- InMemoryStore (this module): tests and local runs
- PostgresStore (talentika_progression.db.postgres): production
"""

import asyncio
import copy
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Protocol, Sequence, Tuple

from talentika_progression.exceptions import (
    ChallengeFullError,
    ConflictError,
    DuplicateEventError,
    OutOfStockError,
)
from talentika_progression.models import (
    BadgeGrant,
    Challenge,
    Quest,
    RewardItem,
    StreakRecord,
    UserChallenge,
    UserProgression,
    UserQuest,
    UserReward,
    UserState,
    XPTransaction,
)

logger = logging.getLogger(__name__)


@dataclass
class StateChange:
    """
    Everything one command writes for one user.

    `progression` carries the new aggregate values; the store bumps the
    version to expected_version + 1.
    """
    user_id: str
    expected_version: int
    progression: UserProgression
    xp_transactions: List[XPTransaction] = field(default_factory=list)
    streaks: List[StreakRecord] = field(default_factory=list)
    quests: List[UserQuest] = field(default_factory=list)
    challenges: List[UserChallenge] = field(default_factory=list)
    rewards: List[UserReward] = field(default_factory=list)
    badges: List[BadgeGrant] = field(default_factory=list)
    stock_decrements: List[str] = field(default_factory=list)   # reward item ids
    challenge_joins: List[str] = field(default_factory=list)    # challenge ids


class CatalogProvider(Protocol):
    """Read-only content definitions"""

    async def get_quest(self, quest_id: str) -> Optional[Quest]: ...

    async def get_challenge(self, challenge_id: str) -> Optional[Challenge]: ...

    async def get_reward_item(self, item_id: str) -> Optional[RewardItem]: ...

    async def list_reward_items(self, available_only: bool = True) -> List[RewardItem]: ...


class ProgressionStore(Protocol):
    """Versioned per-user aggregate storage"""

    async def load_state(self, user_id: str) -> UserState: ...

    async def commit(self, change: StateChange) -> UserProgression: ...

    async def has_xp_event(self, user_id: str, idempotency_key: str) -> bool: ...

    async def find_reward_by_key(self, user_id: str, idempotency_key: str) -> Optional[UserReward]: ...

    async def redemption_code_exists(self, code: str) -> bool: ...

    async def list_xp_transactions(self, user_id: str, limit: int = 50) -> List[XPTransaction]: ...

    async def list_user_rewards(self, user_id: str) -> List[UserReward]: ...

    async def list_progressions(self, user_ids: Optional[Sequence[str]] = None) -> List[UserProgression]: ...


class InMemoryStore:
    """
    In-memory store and catalog.

    Every call yields to the event loop once, like a network round trip,
    so concurrent commands interleave the way they would against a database.
    Commits are serialized by a lock and validated before anything is written.
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._progressions: Dict[str, UserProgression] = {}
        self._streaks: Dict[Tuple[str, str], StreakRecord] = {}
        self._user_quests: Dict[Tuple[str, str], UserQuest] = {}
        self._user_challenges: Dict[Tuple[str, str], UserChallenge] = {}
        self._xp_transactions: Dict[str, List[XPTransaction]] = {}
        self._rewards: Dict[str, List[UserReward]] = {}
        self._redemption_codes: set = set()
        self._badges: Dict[Tuple[str, str], BadgeGrant] = {}

        self._quests: Dict[str, Quest] = {}
        self._challenges: Dict[str, Challenge] = {}
        self._reward_items: Dict[str, RewardItem] = {}

        self._lock = asyncio.Lock()
        logger.info("InMemoryStore initialized - progression is NOT persisted")

    # ==========================================
    # Catalog seeding
    # ==========================================

    def add_quest(self, quest: Quest) -> None:
        self._quests[quest.quest_id] = quest

    def add_challenge(self, challenge: Challenge) -> None:
        self._challenges[challenge.challenge_id] = challenge

    def add_reward_item(self, item: RewardItem) -> None:
        self._reward_items[item.item_id] = item

    # ==========================================
    # CatalogProvider
    # ==========================================

    async def get_quest(self, quest_id: str) -> Optional[Quest]:
        await asyncio.sleep(0)
        return copy.deepcopy(self._quests.get(quest_id))

    async def get_challenge(self, challenge_id: str) -> Optional[Challenge]:
        await asyncio.sleep(0)
        return copy.deepcopy(self._challenges.get(challenge_id))

    async def get_reward_item(self, item_id: str) -> Optional[RewardItem]:
        await asyncio.sleep(0)
        return copy.deepcopy(self._reward_items.get(item_id))

    async def list_reward_items(self, available_only: bool = True) -> List[RewardItem]:
        await asyncio.sleep(0)
        items = [
            copy.deepcopy(item) for item in self._reward_items.values()
            if item.is_available or not available_only
        ]
        items.sort(key=lambda i: (i.xp_cost, i.item_id))
        return items

    # ==========================================
    # ProgressionStore
    # ==========================================

    async def load_state(self, user_id: str) -> UserState:
        await asyncio.sleep(0)
        progression = self._progressions.get(user_id) or UserProgression(user_id=user_id)
        return UserState(
            progression=replace(progression),
            streaks={
                streak_type: replace(record)
                for (uid, streak_type), record in self._streaks.items() if uid == user_id
            },
            quests={
                quest_id: copy.deepcopy(record)
                for (uid, quest_id), record in self._user_quests.items() if uid == user_id
            },
            challenges={
                challenge_id: copy.deepcopy(record)
                for (uid, challenge_id), record in self._user_challenges.items() if uid == user_id
            },
            badges={badge for (uid, badge) in self._badges if uid == user_id},
        )

    async def commit(self, change: StateChange) -> UserProgression:
        await asyncio.sleep(0)
        async with self._lock:
            self._validate(change)
            return self._apply(change)

    def _validate(self, change: StateChange) -> None:
        user_id = change.user_id
        current = self._progressions.get(user_id)
        current_version = current.version if current else 0
        if current_version != change.expected_version:
            raise ConflictError(
                message=f"Version mismatch for user {user_id}: "
                        f"expected {change.expected_version}, found {current_version}",
                expected_version=change.expected_version,
                user_id=user_id,
                operation="commit"
            )

        applied = {t.idempotency_key for t in self._xp_transactions.get(user_id, [])}
        for transaction in change.xp_transactions:
            if transaction.idempotency_key in applied:
                raise DuplicateEventError(transaction.idempotency_key, user_id=user_id, operation="commit")

        for reward in change.rewards:
            if reward.redemption_code in self._redemption_codes:
                raise ConflictError(
                    message=f"Redemption code collision: {reward.redemption_code}",
                    user_id=user_id,
                    operation="commit"
                )

        for item_id in change.stock_decrements:
            item = self._reward_items.get(item_id)
            if item is not None and item.tracks_stock and item.stock_quantity <= 0:
                raise OutOfStockError(item_id, user_id=user_id, operation="commit")

        for challenge_id in change.challenge_joins:
            challenge = self._challenges.get(challenge_id)
            if (
                challenge is not None
                and challenge.max_participants is not None
                and challenge.current_participants >= challenge.max_participants
            ):
                raise ChallengeFullError(
                    challenge_id,
                    max_participants=challenge.max_participants,
                    user_id=user_id,
                    operation="commit"
                )

    def _apply(self, change: StateChange) -> UserProgression:
        user_id = change.user_id
        now = self._clock()
        existing = self._progressions.get(user_id)

        stored = replace(
            change.progression,
            version=change.expected_version + 1,
            created_at=existing.created_at if existing and existing.created_at else now,
            updated_at=now,
        )
        self._progressions[user_id] = stored

        self._xp_transactions.setdefault(user_id, []).extend(change.xp_transactions)
        for record in change.streaks:
            self._streaks[(user_id, record.streak_type)] = replace(record)
        for record in change.quests:
            self._user_quests[(user_id, record.quest_id)] = copy.deepcopy(record)
        for record in change.challenges:
            self._user_challenges[(user_id, record.challenge_id)] = copy.deepcopy(record)
        for reward in change.rewards:
            self._rewards.setdefault(user_id, []).append(reward)
            self._redemption_codes.add(reward.redemption_code)
        for grant in change.badges:
            self._badges.setdefault((user_id, grant.badge), grant)
        for item_id in change.stock_decrements:
            item = self._reward_items.get(item_id)
            if item is not None and item.tracks_stock:
                item.stock_quantity -= 1
        for challenge_id in change.challenge_joins:
            challenge = self._challenges.get(challenge_id)
            if challenge is not None:
                challenge.current_participants += 1

        return replace(stored)

    async def has_xp_event(self, user_id: str, idempotency_key: str) -> bool:
        await asyncio.sleep(0)
        return any(
            t.idempotency_key == idempotency_key
            for t in self._xp_transactions.get(user_id, [])
        )

    async def find_reward_by_key(self, user_id: str, idempotency_key: str) -> Optional[UserReward]:
        await asyncio.sleep(0)
        for reward in self._rewards.get(user_id, []):
            if reward.idempotency_key == idempotency_key:
                return reward
        return None

    async def redemption_code_exists(self, code: str) -> bool:
        await asyncio.sleep(0)
        return code in self._redemption_codes

    async def list_xp_transactions(self, user_id: str, limit: int = 50) -> List[XPTransaction]:
        await asyncio.sleep(0)
        transactions = list(reversed(self._xp_transactions.get(user_id, [])))
        return transactions[:limit]

    async def list_user_rewards(self, user_id: str) -> List[UserReward]:
        await asyncio.sleep(0)
        return sorted(self._rewards.get(user_id, []), key=lambda r: r.purchased_at, reverse=True)

    async def list_progressions(self, user_ids: Optional[Sequence[str]] = None) -> List[UserProgression]:
        await asyncio.sleep(0)
        wanted = set(user_ids) if user_ids is not None else None
        return [
            replace(p) for uid, p in self._progressions.items()
            if wanted is None or uid in wanted
        ]
