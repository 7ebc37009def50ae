"""
Leaderboard

Read-only ranking over progression snapshots. Order: total XP earned
descending, then earliest account, then user id. Levels are
derived from the curve, never read from the stored column.
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional, Sequence

from talentika_progression.db.store import ProgressionStore
from talentika_progression.exceptions import ValidationError
from talentika_progression.gamification.levels import LevelCurve
from talentika_progression.gamification.transaction import TransactionRunner, as_utc
from talentika_progression.models import LeaderboardEntry, UserProgression

logger = logging.getLogger(__name__)

_NEVER = datetime.max.replace(tzinfo=timezone.utc)


def _ranking_key(progression: UserProgression):
    created = as_utc(progression.created_at) if progression.created_at else _NEVER
    return (-progression.total_xp_earned, created, progression.user_id)


class Leaderboard:
    def __init__(self, store: ProgressionStore, runner: TransactionRunner, curve: Optional[LevelCurve] = None):
        self.store = store
        self.runner = runner
        self.curve = curve or runner.curve

    async def _ranked(self, user_ids: Optional[Sequence[str]]) -> List[LeaderboardEntry]:
        progressions = await self.runner.call(self.store.list_progressions(user_ids), "leaderboard")
        ordered = sorted(progressions, key=_ranking_key)
        return [
            LeaderboardEntry(
                position=position,
                user_id=p.user_id,
                total_xp_earned=p.total_xp_earned,
                level=self.curve.level_of(p.total_xp_earned),
            )
            for position, p in enumerate(ordered, start=1)
        ]

    async def rank(self, user_ids: Optional[Sequence[str]] = None, limit: int = 10) -> List[LeaderboardEntry]:
        """Top `limit` entries, optionally restricted to a set of users"""
        if limit <= 0:
            raise ValidationError("limit must be positive", field="limit", value=limit)
        entries = await self._ranked(user_ids)
        return entries[:limit]

    async def get_user_rank(
        self,
        user_id: str,
        user_ids: Optional[Sequence[str]] = None
    ) -> Optional[LeaderboardEntry]:
        """A user's entry, or None if they have no progression yet"""
        for entry in await self._ranked(user_ids):
            if entry.user_id == user_id:
                return entry
        return None
