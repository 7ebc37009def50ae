"""PostgreSQL progression store and catalog"""
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, List, Optional, Sequence
from uuid import UUID

import psycopg
from psycopg.types.json import Jsonb

from talentika_progression.db.connection import Database, db as default_db
from talentika_progression.db.store import StateChange
from talentika_progression.exceptions import (
    ChallengeFullError,
    ConflictError,
    DuplicateEventError,
    OutOfStockError,
    ProgressionError,
    wrap_external_exception,
)
from talentika_progression.models import (
    Challenge,
    Difficulty,
    Quest,
    QuestStatus,
    RewardItem,
    StreakRecord,
    UserChallenge,
    UserProgression,
    UserQuest,
    UserReward,
    UserState,
    XPTransaction,
)
from talentika_progression.monitoring import track_database_query

logger = logging.getLogger(__name__)


# ==========================================
# Row mapping
# ==========================================

def _json(value: Any) -> Optional[dict]:
    if value is None or isinstance(value, dict):
        return value
    return json.loads(value)


def _progression_from_row(row: dict) -> UserProgression:
    return UserProgression(
        user_id=row["user_id"],
        total_xp_earned=row["total_xp_earned"],
        spendable_xp=row["spendable_xp"],
        current_level=row["current_level"],
        version=row["version"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _streak_from_row(row: dict) -> StreakRecord:
    return StreakRecord(
        user_id=row["user_id"],
        streak_type=row["streak_type"],
        current_streak=row["current_streak"],
        longest_streak=row["longest_streak"],
        last_activity_date=row["last_activity_date"],
    )


def _user_quest_from_row(row: dict) -> UserQuest:
    return UserQuest(
        user_id=row["user_id"],
        quest_id=row["quest_id"],
        status=QuestStatus(row["status"]),
        started_at=row["started_at"],
        xp_earned=row["xp_earned"],
        completed_at=row["completed_at"],
        abandoned_at=row["abandoned_at"],
        progress_data=_json(row["progress_data"]),
    )


def _user_challenge_from_row(row: dict) -> UserChallenge:
    return UserChallenge(
        user_id=row["user_id"],
        challenge_id=row["challenge_id"],
        status=QuestStatus(row["status"]),
        joined_at=row["joined_at"],
        xp_earned=row["xp_earned"],
        completed_at=row["completed_at"],
        abandoned_at=row["abandoned_at"],
        score=row["score"],
        submission_data=_json(row["submission_data"]),
    )


def _reward_from_row(row: dict) -> UserReward:
    return UserReward(
        reward_id=str(row["id"]),
        user_id=row["user_id"],
        item_id=row["reward_item_id"],
        xp_spent=row["xp_spent"],
        redemption_code=row["redemption_code"],
        purchased_at=row["purchase_date"],
        idempotency_key=row["idempotency_key"],
    )


def _quest_from_row(row: dict) -> Quest:
    return Quest(
        quest_id=row["id"],
        title=row["title"],
        xp_reward=row["xp_reward"],
        difficulty=Difficulty(row["difficulty"]),
        quest_type=row["quest_type"],
        badge_reward=row["badge_reward"],
        requirements=_json(row["requirements"]),
        description=row["description"],
        is_active=row["is_active"],
    )


def _challenge_from_row(row: dict) -> Challenge:
    return Challenge(
        challenge_id=row["id"],
        title=row["title"],
        xp_reward=row["xp_reward"],
        start_date=row["start_date"],
        end_date=row["end_date"],
        max_participants=row["max_participants"],
        current_participants=row["current_participants"],
        difficulty=Difficulty(row["difficulty"]),
        challenge_type=row["challenge_type"],
        badge_reward=row["badge_reward"],
        requirements=_json(row["requirements"]),
        description=row["description"],
        is_active=row["is_active"],
    )


def _reward_item_from_row(row: dict) -> RewardItem:
    return RewardItem(
        item_id=row["id"],
        title=row["title"],
        xp_cost=row["xp_cost"],
        item_type=row["item_type"],
        stock_quantity=row["stock_quantity"],
        description=row["description"],
        is_available=row["is_available"],
    )


def _optional_json(value: Optional[dict]) -> Optional[Jsonb]:
    return Jsonb(value) if value is not None else None


class PostgresStore:
    """
    Progression store backed by PostgreSQL.

    `commit` runs in one transaction: a version-guarded update of
    user_progression followed by the related inserts/upserts and the
    conditional stock/participant updates. Any failed guard rolls back
    the whole change.
    """

    def __init__(self, database: Database = default_db):
        self.db = database

    @asynccontextmanager
    async def _cursor(self, operation: str, user_id: Optional[str] = None) -> AsyncGenerator[Any, None]:
        try:
            async with self.db.connection() as conn:
                async with conn.cursor() as cur:
                    yield cur
        except ProgressionError:
            raise
        except psycopg.Error as e:
            raise wrap_external_exception(e, operation=operation, user_id=user_id)

    # ==========================================
    # CatalogProvider
    # ==========================================

    async def get_quest(self, quest_id: str) -> Optional[Quest]:
        with track_database_query("select", "quests"):
            async with self._cursor("get_quest") as cur:
                await cur.execute("SELECT * FROM quests WHERE id = %s", (quest_id,))
                row = await cur.fetchone()
        return _quest_from_row(row) if row else None

    async def get_challenge(self, challenge_id: str) -> Optional[Challenge]:
        with track_database_query("select", "challenges"):
            async with self._cursor("get_challenge") as cur:
                await cur.execute("SELECT * FROM challenges WHERE id = %s", (challenge_id,))
                row = await cur.fetchone()
        return _challenge_from_row(row) if row else None

    async def get_reward_item(self, item_id: str) -> Optional[RewardItem]:
        with track_database_query("select", "reward_items"):
            async with self._cursor("get_reward_item") as cur:
                await cur.execute("SELECT * FROM reward_items WHERE id = %s", (item_id,))
                row = await cur.fetchone()
        return _reward_item_from_row(row) if row else None

    async def list_reward_items(self, available_only: bool = True) -> List[RewardItem]:
        query = "SELECT * FROM reward_items"
        if available_only:
            query += " WHERE is_available"
        query += " ORDER BY xp_cost ASC, id ASC"
        with track_database_query("select", "reward_items"):
            async with self._cursor("list_reward_items") as cur:
                await cur.execute(query)
                rows = await cur.fetchall()
        return [_reward_item_from_row(row) for row in rows]

    # ==========================================
    # ProgressionStore
    # ==========================================

    async def load_state(self, user_id: str) -> UserState:
        with track_database_query("select", "user_progression"):
            async with self._cursor("load_state", user_id) as cur:
                await cur.execute(
                    """
                    SELECT user_id, total_xp_earned, spendable_xp, current_level, version, created_at, updated_at
                    FROM user_progression
                    WHERE user_id = %s
                    """,
                    (user_id,)
                )
                row = await cur.fetchone()
                if not row:
                    # Created lazily on first commit
                    return UserState(progression=UserProgression(user_id=user_id))

                await cur.execute(
                    """
                    SELECT user_id, streak_type, current_streak, longest_streak, last_activity_date
                    FROM user_streaks
                    WHERE user_id = %s
                    """,
                    (user_id,)
                )
                streak_rows = await cur.fetchall()

                await cur.execute("SELECT * FROM user_quests WHERE user_id = %s", (user_id,))
                quest_rows = await cur.fetchall()

                await cur.execute("SELECT * FROM user_challenges WHERE user_id = %s", (user_id,))
                challenge_rows = await cur.fetchall()

                await cur.execute("SELECT badge FROM user_badges WHERE user_id = %s", (user_id,))
                badge_rows = await cur.fetchall()

        return UserState(
            progression=_progression_from_row(row),
            streaks={r["streak_type"]: _streak_from_row(r) for r in streak_rows},
            quests={r["quest_id"]: _user_quest_from_row(r) for r in quest_rows},
            challenges={r["challenge_id"]: _user_challenge_from_row(r) for r in challenge_rows},
            badges={r["badge"] for r in badge_rows},
        )

    async def commit(self, change: StateChange) -> UserProgression:
        user_id = change.user_id
        try:
            with track_database_query("commit", "user_progression"):
                async with self.db.connection() as conn:
                    async with conn.transaction():
                        async with conn.cursor() as cur:
                            row = await self._write_progression(cur, change)
                            await self._write_transactions(cur, change)
                            await self._write_streaks(cur, change)
                            await self._write_quests(cur, change)
                            await self._write_challenges(cur, change)
                            await self._write_rewards(cur, change)
                            await self._write_badges(cur, change)
                            await self._decrement_stock(cur, change)
                            await self._join_challenges(cur, change)
        except ProgressionError:
            raise
        except psycopg.Error as e:
            raise wrap_external_exception(e, operation="commit", user_id=user_id)

        logger.debug(f"Committed progression for user {user_id} at version {row['version']}")
        return _progression_from_row(row)

    async def _write_progression(self, cur, change: StateChange) -> dict:
        p = change.progression
        if change.expected_version == 0:
            await cur.execute(
                """
                INSERT INTO user_progression (user_id, total_xp_earned, spendable_xp, current_level, version)
                VALUES (%s, %s, %s, %s, 1)
                ON CONFLICT (user_id) DO NOTHING
                RETURNING user_id, total_xp_earned, spendable_xp, current_level, version, created_at, updated_at
                """,
                (change.user_id, p.total_xp_earned, p.spendable_xp, p.current_level)
            )
        else:
            await cur.execute(
                """
                UPDATE user_progression
                SET total_xp_earned = %s,
                    spendable_xp = %s,
                    current_level = %s,
                    version = version + 1,
                    updated_at = CURRENT_TIMESTAMP
                WHERE user_id = %s AND version = %s
                RETURNING user_id, total_xp_earned, spendable_xp, current_level, version, created_at, updated_at
                """,
                (p.total_xp_earned, p.spendable_xp, p.current_level, change.user_id, change.expected_version)
            )
        row = await cur.fetchone()
        if not row:
            raise ConflictError(
                message=f"Version mismatch for user {change.user_id}: expected {change.expected_version}",
                expected_version=change.expected_version,
                user_id=change.user_id,
                operation="commit"
            )
        return row

    async def _write_transactions(self, cur, change: StateChange) -> None:
        for t in change.xp_transactions:
            await cur.execute(
                """
                INSERT INTO xp_transactions (user_id, amount, reason, idempotency_key, awarded_at)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (user_id, idempotency_key) DO NOTHING
                """,
                (t.user_id, t.amount, t.reason, t.idempotency_key, t.awarded_at)
            )
            if cur.rowcount == 0:
                raise DuplicateEventError(t.idempotency_key, user_id=change.user_id, operation="commit")

    async def _write_streaks(self, cur, change: StateChange) -> None:
        for s in change.streaks:
            await cur.execute(
                """
                INSERT INTO user_streaks (user_id, streak_type, current_streak, longest_streak, last_activity_date)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (user_id, streak_type) DO UPDATE
                SET current_streak = EXCLUDED.current_streak,
                    longest_streak = EXCLUDED.longest_streak,
                    last_activity_date = EXCLUDED.last_activity_date,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (s.user_id, s.streak_type, s.current_streak, s.longest_streak, s.last_activity_date)
            )

    async def _write_quests(self, cur, change: StateChange) -> None:
        for q in change.quests:
            await cur.execute(
                """
                INSERT INTO user_quests (user_id, quest_id, status, started_at, xp_earned,
                                         completed_at, abandoned_at, progress_data)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (user_id, quest_id) DO UPDATE
                SET status = EXCLUDED.status,
                    xp_earned = EXCLUDED.xp_earned,
                    completed_at = EXCLUDED.completed_at,
                    abandoned_at = EXCLUDED.abandoned_at,
                    progress_data = EXCLUDED.progress_data,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (
                    q.user_id, q.quest_id, q.status.value, q.started_at, q.xp_earned,
                    q.completed_at, q.abandoned_at, _optional_json(q.progress_data)
                )
            )

    async def _write_challenges(self, cur, change: StateChange) -> None:
        for c in change.challenges:
            await cur.execute(
                """
                INSERT INTO user_challenges (user_id, challenge_id, status, joined_at, xp_earned,
                                             completed_at, abandoned_at, score, submission_data)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (user_id, challenge_id) DO UPDATE
                SET status = EXCLUDED.status,
                    xp_earned = EXCLUDED.xp_earned,
                    completed_at = EXCLUDED.completed_at,
                    abandoned_at = EXCLUDED.abandoned_at,
                    score = EXCLUDED.score,
                    submission_data = EXCLUDED.submission_data,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (
                    c.user_id, c.challenge_id, c.status.value, c.joined_at, c.xp_earned,
                    c.completed_at, c.abandoned_at, c.score, _optional_json(c.submission_data)
                )
            )

    async def _write_rewards(self, cur, change: StateChange) -> None:
        for r in change.rewards:
            await cur.execute(
                """
                INSERT INTO user_rewards (id, user_id, reward_item_id, xp_spent, redemption_code,
                                          idempotency_key, purchase_date)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT DO NOTHING
                """,
                (
                    UUID(r.reward_id), r.user_id, r.item_id, r.xp_spent, r.redemption_code,
                    r.idempotency_key, r.purchased_at
                )
            )
            if cur.rowcount == 0:
                # Redemption code or idempotency key collision; a retry regenerates the code
                # or finds the earlier purchase.
                raise ConflictError(
                    message=f"Redemption record collision for code {r.redemption_code}",
                    user_id=change.user_id,
                    operation="commit"
                )

    async def _write_badges(self, cur, change: StateChange) -> None:
        for b in change.badges:
            await cur.execute(
                """
                INSERT INTO user_badges (user_id, badge, source, granted_at)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (user_id, badge) DO NOTHING
                """,
                (b.user_id, b.badge, b.source, b.granted_at)
            )

    async def _decrement_stock(self, cur, change: StateChange) -> None:
        for item_id in change.stock_decrements:
            await cur.execute(
                """
                UPDATE reward_items
                SET stock_quantity = stock_quantity - 1,
                    updated_at = CURRENT_TIMESTAMP
                WHERE id = %s AND stock_quantity IS NOT NULL AND stock_quantity > 0
                """,
                (item_id,)
            )
            if cur.rowcount == 0:
                raise OutOfStockError(item_id, user_id=change.user_id, operation="commit")

    async def _join_challenges(self, cur, change: StateChange) -> None:
        for challenge_id in change.challenge_joins:
            await cur.execute(
                """
                UPDATE challenges
                SET current_participants = current_participants + 1,
                    updated_at = CURRENT_TIMESTAMP
                WHERE id = %s
                  AND (max_participants IS NULL OR current_participants < max_participants)
                RETURNING max_participants
                """,
                (challenge_id,)
            )
            if not await cur.fetchone():
                raise ChallengeFullError(challenge_id, user_id=change.user_id, operation="commit")

    async def has_xp_event(self, user_id: str, idempotency_key: str) -> bool:
        async with self._cursor("has_xp_event", user_id) as cur:
            await cur.execute(
                "SELECT 1 FROM xp_transactions WHERE user_id = %s AND idempotency_key = %s",
                (user_id, idempotency_key)
            )
            return await cur.fetchone() is not None

    async def find_reward_by_key(self, user_id: str, idempotency_key: str) -> Optional[UserReward]:
        async with self._cursor("find_reward_by_key", user_id) as cur:
            await cur.execute(
                "SELECT * FROM user_rewards WHERE user_id = %s AND idempotency_key = %s",
                (user_id, idempotency_key)
            )
            row = await cur.fetchone()
        return _reward_from_row(row) if row else None

    async def redemption_code_exists(self, code: str) -> bool:
        async with self._cursor("redemption_code_exists") as cur:
            await cur.execute("SELECT 1 FROM user_rewards WHERE redemption_code = %s", (code,))
            return await cur.fetchone() is not None

    async def list_xp_transactions(self, user_id: str, limit: int = 50) -> List[XPTransaction]:
        with track_database_query("select", "xp_transactions"):
            async with self._cursor("list_xp_transactions", user_id) as cur:
                await cur.execute(
                    """
                    SELECT user_id, amount, reason, idempotency_key, awarded_at
                    FROM xp_transactions
                    WHERE user_id = %s
                    ORDER BY awarded_at DESC
                    LIMIT %s
                    """,
                    (user_id, limit)
                )
                rows = await cur.fetchall()
        return [XPTransaction(**row) for row in rows]

    async def list_user_rewards(self, user_id: str) -> List[UserReward]:
        with track_database_query("select", "user_rewards"):
            async with self._cursor("list_user_rewards", user_id) as cur:
                await cur.execute(
                    "SELECT * FROM user_rewards WHERE user_id = %s ORDER BY purchase_date DESC",
                    (user_id,)
                )
                rows = await cur.fetchall()
        return [_reward_from_row(row) for row in rows]

    async def list_progressions(self, user_ids: Optional[Sequence[str]] = None) -> List[UserProgression]:
        query = """
            SELECT user_id, total_xp_earned, spendable_xp, current_level, version, created_at, updated_at
            FROM user_progression
        """
        params: Dict[str, Any] = {}
        if user_ids is not None:
            query += " WHERE user_id = ANY(%(user_ids)s)"
            params["user_ids"] = list(user_ids)
        query += " ORDER BY total_xp_earned DESC, created_at ASC, user_id ASC"

        with track_database_query("select", "user_progression"):
            async with self._cursor("list_progressions") as cur:
                await cur.execute(query, params)
                rows = await cur.fetchall()
        return [_progression_from_row(row) for row in rows]
