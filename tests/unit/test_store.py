"""Unit tests for the in-memory store's commit guards"""
from dataclasses import replace
from datetime import datetime, timezone

import pytest

from talentika_progression.db.store import InMemoryStore, StateChange
from talentika_progression.exceptions import (
    ChallengeFullError,
    ConflictError,
    DuplicateEventError,
    OutOfStockError,
)
from talentika_progression.models import (
    BadgeGrant,
    Challenge,
    RewardItem,
    UserProgression,
    UserReward,
    XPTransaction,
)

NOW = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)


def change_for(state, progression_fields=None, **kwargs):
    return StateChange(
        user_id=state.progression.user_id,
        expected_version=state.progression.version,
        progression=replace(state.progression, **(progression_fields or {})),
        **kwargs
    )


def transaction(key, amount=10):
    return XPTransaction(user_id="user-123", amount=amount, reason="test", idempotency_key=key, awarded_at=NOW)


def reward(code, reward_id="rw-1"):
    return UserReward(
        reward_id=reward_id,
        user_id="user-123",
        item_id="r-voucher",
        xp_spent=0,
        redemption_code=code,
        purchased_at=NOW,
    )


@pytest.fixture
def memory_store():
    return InMemoryStore(clock=lambda: NOW)


@pytest.mark.asyncio
async def test_new_user_loads_default_aggregate(memory_store):
    state = await memory_store.load_state("user-123")

    assert state.progression == UserProgression(user_id="user-123")
    assert state.progression.is_persisted is False


@pytest.mark.asyncio
async def test_commit_bumps_version_and_stamps_dates(memory_store):
    state = await memory_store.load_state("user-123")

    stored = await memory_store.commit(
        change_for(state, progression_fields={"total_xp_earned": 10, "spendable_xp": 10},
                   xp_transactions=[transaction("k1")])
    )

    assert stored.version == 1
    assert stored.created_at == NOW
    assert stored.updated_at == NOW
    assert await memory_store.has_xp_event("user-123", "k1") is True


@pytest.mark.asyncio
async def test_stale_version_is_rejected(memory_store):
    stale = await memory_store.load_state("user-123")
    await memory_store.commit(change_for(stale, xp_transactions=[transaction("k1")]))

    with pytest.raises(ConflictError):
        await memory_store.commit(change_for(stale, xp_transactions=[transaction("k2")]))

    assert await memory_store.has_xp_event("user-123", "k2") is False


@pytest.mark.asyncio
async def test_duplicate_key_is_rejected(memory_store):
    state = await memory_store.load_state("user-123")
    await memory_store.commit(change_for(state, xp_transactions=[transaction("k1")]))

    fresh = await memory_store.load_state("user-123")
    with pytest.raises(DuplicateEventError):
        await memory_store.commit(change_for(fresh, xp_transactions=[transaction("k1")]))


@pytest.mark.asyncio
async def test_redemption_code_collision_is_a_conflict(memory_store):
    state = await memory_store.load_state("user-123")
    await memory_store.commit(change_for(state, rewards=[reward("TLK-1-AAAAAA")]))

    fresh = await memory_store.load_state("user-123")
    with pytest.raises(ConflictError):
        await memory_store.commit(change_for(fresh, rewards=[reward("TLK-1-AAAAAA", reward_id="rw-2")]))

    assert await memory_store.redemption_code_exists("TLK-1-AAAAAA") is True


@pytest.mark.asyncio
async def test_failed_guard_writes_nothing(memory_store):
    memory_store.add_reward_item(RewardItem(item_id="r-last", title="Last one", xp_cost=0, stock_quantity=0))
    state = await memory_store.load_state("user-123")

    with pytest.raises(OutOfStockError):
        await memory_store.commit(
            change_for(state, xp_transactions=[transaction("k1")], stock_decrements=["r-last"])
        )

    assert (await memory_store.load_state("user-123")).progression.version == 0
    assert await memory_store.has_xp_event("user-123", "k1") is False


@pytest.mark.asyncio
async def test_capacity_guard(memory_store):
    memory_store.add_challenge(Challenge(challenge_id="c-solo", title="Solo", xp_reward=10, max_participants=1))

    first = await memory_store.load_state("user-a")
    await memory_store.commit(change_for(first, challenge_joins=["c-solo"]))
    assert (await memory_store.get_challenge("c-solo")).current_participants == 1

    second = await memory_store.load_state("user-b")
    with pytest.raises(ChallengeFullError):
        await memory_store.commit(change_for(second, challenge_joins=["c-solo"]))


@pytest.mark.asyncio
async def test_catalog_reads_are_copies(memory_store):
    memory_store.add_reward_item(RewardItem(item_id="r-1", title="Item", xp_cost=10, stock_quantity=3))

    item = await memory_store.get_reward_item("r-1")
    item.stock_quantity = 0

    assert (await memory_store.get_reward_item("r-1")).stock_quantity == 3


@pytest.mark.asyncio
async def test_badges_are_recorded_once(memory_store):
    grant = BadgeGrant(user_id="user-123", badge="sprinter", source="challenge:c-1", granted_at=NOW)
    state = await memory_store.load_state("user-123")
    await memory_store.commit(change_for(state, badges=[grant]))

    fresh = await memory_store.load_state("user-123")
    assert fresh.badges == {"sprinter"}
