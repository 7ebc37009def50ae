"""
Streak Tracking System

Counts consecutive calendar days with qualifying activity, per user and
per streak type (login, learning, achievement, ...).

Rules:
- First activity: current = longest = 1
- Same day again: no change
- Next day: current + 1
- Gap of more than one day: current resets to 1
- Earlier than the last activity: rejected as out of order

Days are taken in one fixed reference zone (STREAK_TIMEZONE) for every
user. Every STREAK_MILESTONE_DAYS consecutive days earn STREAK_MILESTONE_XP
in the same commit.
"""

from dataclasses import replace
from datetime import date, datetime, tzinfo
from typing import List, Optional, Union
from zoneinfo import ZoneInfo
import logging

from talentika_progression import config
from talentika_progression.db.store import ProgressionStore
from talentika_progression.exceptions import OutOfOrderEventError, ValidationError
from talentika_progression.gamification.transaction import ChangeSet, Outcome, TransactionRunner, as_utc
from talentika_progression.gamification.xp_ledger import apply_award
from talentika_progression.models import StreakRecord, StreakResult

logger = logging.getLogger(__name__)

ActivityDate = Union[date, datetime, None]


def milestone_key(streak_type: str, user_id: str, day: int, activity_date: date) -> str:
    return f"streak:{streak_type}:user:{user_id}:day:{day}:{activity_date.isoformat()}"


class StreakTracker:
    """Records activities and maintains streak counters"""

    def __init__(
        self,
        store: ProgressionStore,
        runner: TransactionRunner,
        zone: Optional[tzinfo] = None,
        milestone_days: Optional[int] = None,
        milestone_xp: Optional[int] = None,
    ):
        self.store = store
        self.runner = runner
        self.zone = zone or ZoneInfo(config.STREAK_TIMEZONE)
        self.milestone_days = config.STREAK_MILESTONE_DAYS if milestone_days is None else milestone_days
        if self.milestone_days <= 0:
            raise ValidationError(
                "Milestone interval must be positive",
                field="milestone_days",
                value=self.milestone_days
            )
        self.milestone_xp = config.STREAK_MILESTONE_XP if milestone_xp is None else milestone_xp

    def to_activity_day(self, activity_date: ActivityDate) -> date:
        """Calendar day of an activity in the reference zone"""
        if activity_date is None:
            activity_date = self.runner.clock()
        if isinstance(activity_date, datetime):
            return as_utc(activity_date).astimezone(self.zone).date()
        return activity_date

    async def record_activity(
        self,
        user_id: str,
        streak_type: str,
        activity_date: ActivityDate = None
    ) -> StreakResult:
        """
        Record a qualifying activity

        Args:
            user_id: User's ID
            streak_type: login, learning, achievement, ...
            activity_date: date, datetime (naive = UTC) or None for now

        Returns:
            StreakResult with the updated record, whether it set a new
            longest streak, and the milestone award if one was reached

        Raises:
            OutOfOrderEventError: activity is before the last recorded day
        """
        if not streak_type or not streak_type.strip():
            raise ValidationError("Streak type must not be empty", field="streak_type", value=streak_type)

        day = self.to_activity_day(activity_date)

        async def command(changes: ChangeSet) -> Outcome[StreakResult]:
            existing = changes.state.streaks.get(streak_type)

            if existing is None or existing.last_activity_date is None:
                record = StreakRecord(
                    user_id=user_id,
                    streak_type=streak_type,
                    current_streak=1,
                    longest_streak=max(1, existing.longest_streak if existing else 0),
                    last_activity_date=day,
                )
            else:
                last = existing.last_activity_date
                if day == last:
                    return Outcome(StreakResult(streak=existing, is_new_longest=False), commit=False)
                if day < last:
                    raise OutOfOrderEventError(
                        streak_type,
                        activity_date=day,
                        last_activity_date=last,
                        user_id=user_id,
                        operation="record_activity"
                    )

                gap = (day - last).days
                current = existing.current_streak + 1 if gap == 1 else 1
                record = replace(
                    existing,
                    current_streak=current,
                    longest_streak=max(existing.longest_streak, current),
                    last_activity_date=day,
                )

            previous_longest = existing.longest_streak if existing else 0
            is_new_longest = record.longest_streak > previous_longest
            changes.streaks.append(record)

            result = StreakResult(streak=record, is_new_longest=is_new_longest)

            if self.milestone_xp > 0 and record.current_streak % self.milestone_days == 0:
                key = milestone_key(streak_type, user_id, record.current_streak, day)
                already = await self.runner.call(
                    self.store.has_xp_event(user_id, key),
                    "record_activity:dedupe",
                    user_id
                )
                if not already:
                    result.milestone_reached = True
                    result.milestone_award = apply_award(
                        changes,
                        self.milestone_xp,
                        f"{streak_type}_streak_{record.current_streak}_days",
                        key
                    )

            return Outcome(result)

        result = await self.runner.run("record_activity", user_id, command)

        if result.milestone_reached:
            logger.info(
                f"User {user_id} reached a {result.streak.current_streak}-day {streak_type} streak "
                f"(+{self.milestone_xp} XP)"
            )
        return result

    async def get_streaks(self, user_id: str) -> List[StreakRecord]:
        """All streak records for a user, ordered by type"""
        state = await self.runner.call(self.store.load_state(user_id), "get_streaks", user_id)
        return [state.streaks[streak_type] for streak_type in sorted(state.streaks)]
