"""Global test fixtures and utilities for progression engine tests"""
import pytest
from datetime import datetime, timedelta, timezone
from typing import Any, List

from talentika_progression.db.store import InMemoryStore
from talentika_progression.gamification.levels import LevelCurve
from talentika_progression.models import Challenge, Difficulty, Quest, RewardItem
from talentika_progression.services.progression_service import ProgressionService


class FixedClock:
    """Settable clock returning aware UTC datetimes"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class RecordingNotifier:
    def __init__(self):
        self.events: List[Any] = []

    async def notify(self, event: Any) -> None:
        self.events.append(event)

    def of_type(self, event_type) -> List[Any]:
        return [e for e in self.events if isinstance(e, event_type)]


class RecordingBadgeUnlocker:
    def __init__(self):
        self.unlocked: List[tuple] = []

    async def unlock_badge(self, user_id: str, badge: str, source: str) -> None:
        self.unlocked.append((user_id, badge, source))


# ============================================================================
# Clock & Store Fixtures
# ============================================================================

@pytest.fixture
def clock():
    """Clock fixed at 2025-03-10 12:00 UTC"""
    return FixedClock(datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def store(clock):
    """In-memory store seeded with a small catalog"""
    store = InMemoryStore(clock=clock)

    store.add_quest(Quest(quest_id="q-intro", title="Finish the intro course", xp_reward=250))
    store.add_quest(
        Quest(
            quest_id="q-quiz",
            title="Score 80% on the assessment",
            xp_reward=500,
            difficulty=Difficulty.MEDIUM,
            badge_reward="quiz-master",
            requirements={"score": 80},
        )
    )
    store.add_quest(Quest(quest_id="q-retired", title="Retired quest", xp_reward=100, is_active=False))
    store.add_quest(Quest(quest_id="q-free", title="Say hello", xp_reward=0))

    store.add_challenge(
        Challenge(
            challenge_id="c-sprint",
            title="Spring learning sprint",
            xp_reward=300,
            start_date=datetime(2025, 3, 1, tzinfo=timezone.utc),
            end_date=datetime(2025, 3, 31, tzinfo=timezone.utc),
            max_participants=2,
            badge_reward="sprinter",
        )
    )
    store.add_challenge(
        Challenge(
            challenge_id="c-future",
            title="Summer challenge",
            xp_reward=300,
            start_date=datetime(2025, 6, 1, tzinfo=timezone.utc),
            end_date=datetime(2025, 6, 30, tzinfo=timezone.utc),
        )
    )
    store.add_challenge(
        Challenge(
            challenge_id="c-open",
            title="Open challenge",
            xp_reward=150,
            requirements={"lessons": 3},
        )
    )

    store.add_reward_item(RewardItem(item_id="r-voucher", title="Course voucher", xp_cost=80))
    store.add_reward_item(RewardItem(item_id="r-mentor", title="Mentor session", xp_cost=500, stock_quantity=1))
    store.add_reward_item(RewardItem(item_id="r-hidden", title="Retired item", xp_cost=10, is_available=False))
    return store


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def badge_unlocker():
    return RecordingBadgeUnlocker()


@pytest.fixture
def service(store, clock, notifier, badge_unlocker):
    """ProgressionService over the seeded in-memory store (1000 XP per level, UTC days)"""
    return ProgressionService(
        store=store,
        catalog=store,
        curve=LevelCurve(xp_per_level=1000),
        badge_unlocker=badge_unlocker,
        notifier=notifier,
        clock=clock,
        max_retries=10,
        timeout=1.0,
        zone=timezone.utc,
        milestone_days=7,
        milestone_xp=100,
    )


# ============================================================================
# User & Auth Fixtures
# ============================================================================

@pytest.fixture
def test_user_id():
    """Standard test user ID"""
    return "user-123"


@pytest.fixture
def test_api_key():
    """Standard test API key"""
    return "test_api_key_12345"
