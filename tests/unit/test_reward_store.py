"""Unit tests for the reward store (talentika_progression/gamification/reward_store.py)"""
import asyncio
import re
import pytest
from unittest.mock import patch

from talentika_progression.exceptions import (
    InsufficientBalanceError,
    OutOfStockError,
    RecordNotFoundError,
    ValidationError,
)
from talentika_progression.gamification.reward_store import generate_redemption_code
from talentika_progression.models import Quest, RewardItem, RewardPurchasedEvent

CODE_PATTERN = re.compile(r"^TLK-\d+-[A-Z0-9]{6}$")


async def fund(service, user_id, amount, key="seed"):
    await service.award_xp(user_id, amount, "seed", f"{key}:{user_id}")


# ============================================================================
# Purchases
# ============================================================================

class TestPurchase:

    @pytest.mark.asyncio
    async def test_purchase_debits_spendable_only(self, service, store, clock, test_user_id):
        await fund(service, test_user_id, 100)

        result = await service.purchase(test_user_id, "r-voucher")

        assert result.progression.spendable_xp == 20
        assert result.progression.total_xp_earned == 100
        assert result.reward.xp_spent == 80
        assert result.reward.purchased_at == clock.now
        assert CODE_PATTERN.match(result.reward.redemption_code)
        assert result.reward.redemption_code.split("-")[1] == str(int(clock.now.timestamp() * 1000))

        state = await store.load_state(test_user_id)
        assert state.progression.spendable_xp == 20

    @pytest.mark.asyncio
    async def test_insufficient_balance_states_shortfall(self, service, store, test_user_id):
        await fund(service, test_user_id, 50)

        with pytest.raises(InsufficientBalanceError) as exc_info:
            await service.purchase(test_user_id, "r-voucher")

        assert exc_info.value.shortfall == 30
        assert "30" in exc_info.value.message
        assert "30 more XP" in exc_info.value.user_message
        assert (await store.load_state(test_user_id)).progression.spendable_xp == 50
        assert await service.get_user_rewards(test_user_id) == []

    @pytest.mark.asyncio
    async def test_new_user_cannot_buy(self, service, test_user_id):
        with pytest.raises(InsufficientBalanceError):
            await service.purchase(test_user_id, "r-voucher")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("item_id", ["r-missing", "r-hidden"])
    async def test_unknown_or_unavailable_item(self, service, test_user_id, item_id):
        await fund(service, test_user_id, 100)

        with pytest.raises(RecordNotFoundError):
            await service.purchase(test_user_id, item_id)

    @pytest.mark.asyncio
    async def test_tracked_stock_runs_out(self, service, store):
        await fund(service, "user-a", 500)
        await fund(service, "user-b", 500)

        await service.purchase("user-a", "r-mentor")

        with pytest.raises(OutOfStockError):
            await service.purchase("user-b", "r-mentor")

        assert (await store.get_reward_item("r-mentor")).stock_quantity == 0
        assert (await store.load_state("user-b")).progression.spendable_xp == 500

    @pytest.mark.asyncio
    async def test_purchase_is_notified(self, service, notifier, test_user_id):
        await fund(service, test_user_id, 100)
        result = await service.purchase(test_user_id, "r-voucher")

        events = notifier.of_type(RewardPurchasedEvent)
        assert len(events) == 1
        assert events[0].redemption_code == result.reward.redemption_code
        assert events[0].xp_spent == 80

    @pytest.mark.asyncio
    async def test_balance_invariant_holds(self, service, store, test_user_id):
        await fund(service, test_user_id, 300)
        await service.purchase(test_user_id, "r-voucher")
        await service.award_xp(test_user_id, 40, "lesson_completed", "lesson:1")
        await service.purchase(test_user_id, "r-voucher")

        state = await store.load_state(test_user_id)
        rewards = await service.get_user_rewards(test_user_id)
        spent = sum(r.xp_spent for r in rewards)

        assert state.progression.total_xp_earned == 340
        assert state.progression.spendable_xp == state.progression.total_xp_earned - spent


# ============================================================================
# Concurrency
# ============================================================================

class TestConcurrentPurchases:

    @pytest.mark.asyncio
    async def test_two_purchases_one_balance(self, service, store, test_user_id):
        """Balance 100, two concurrent 80 XP purchases: exactly one succeeds"""
        await fund(service, test_user_id, 100)

        results = await asyncio.gather(
            service.purchase(test_user_id, "r-voucher"),
            service.purchase(test_user_id, "r-voucher"),
            return_exceptions=True
        )

        succeeded = [r for r in results if not isinstance(r, Exception)]
        failed = [r for r in results if isinstance(r, Exception)]
        assert len(succeeded) == 1
        assert len(failed) == 1
        assert isinstance(failed[0], InsufficientBalanceError)

        state = await store.load_state(test_user_id)
        assert state.progression.spendable_xp == 20
        assert len(await service.get_user_rewards(test_user_id)) == 1

    @pytest.mark.asyncio
    async def test_last_item_sold_once(self, service, store):
        await fund(service, "user-a", 500)
        await fund(service, "user-b", 500)

        results = await asyncio.gather(
            service.purchase("user-a", "r-mentor"),
            service.purchase("user-b", "r-mentor"),
            return_exceptions=True
        )

        assert sum(1 for r in results if isinstance(r, OutOfStockError)) == 1
        assert sum(1 for r in results if not isinstance(r, Exception)) == 1
        assert (await store.get_reward_item("r-mentor")).stock_quantity == 0


# ============================================================================
# Idempotency & Redemption Codes
# ============================================================================

class TestIdempotentPurchase:

    @pytest.mark.asyncio
    async def test_retry_returns_original_redemption(self, service, store, test_user_id):
        await fund(service, test_user_id, 200)

        first = await service.purchase(test_user_id, "r-voucher", idempotency_key="order-1")
        second = await service.purchase(test_user_id, "r-voucher", idempotency_key="order-1")

        assert second.already_applied is True
        assert second.reward.reward_id == first.reward.reward_id
        assert second.reward.redemption_code == first.reward.redemption_code
        assert (await store.load_state(test_user_id)).progression.spendable_xp == 120

    @pytest.mark.asyncio
    async def test_concurrent_retries_debit_once(self, service, store, test_user_id):
        await fund(service, test_user_id, 200)

        results = await asyncio.gather(
            service.purchase(test_user_id, "r-voucher", idempotency_key="order-1"),
            service.purchase(test_user_id, "r-voucher", idempotency_key="order-1"),
        )

        assert sorted(r.already_applied for r in results) == [False, True]
        assert (await store.load_state(test_user_id)).progression.spendable_xp == 120

    @pytest.mark.asyncio
    async def test_blank_key_rejected(self, service, test_user_id):
        with pytest.raises(ValidationError):
            await service.purchase(test_user_id, "r-voucher", idempotency_key=" ")

    @pytest.mark.asyncio
    async def test_colliding_code_is_regenerated(self, service, test_user_id):
        await fund(service, test_user_id, 200)
        codes = ["TLK-1-AAAAAA", "TLK-1-AAAAAA", "TLK-1-BBBBBB"]

        with patch(
            "talentika_progression.gamification.reward_store.generate_redemption_code",
            side_effect=codes
        ):
            first = await service.purchase(test_user_id, "r-voucher")
            second = await service.purchase(test_user_id, "r-voucher")

        assert first.reward.redemption_code == "TLK-1-AAAAAA"
        assert second.reward.redemption_code == "TLK-1-BBBBBB"


def test_generate_redemption_code_format():
    code = generate_redemption_code(1741608000000)

    assert CODE_PATTERN.match(code)
    assert code.startswith("TLK-1741608000000-")


def test_generate_redemption_code_is_random():
    codes = {generate_redemption_code(1) for _ in range(50)}
    assert len(codes) > 1


# ============================================================================
# Catalog & History
# ============================================================================

@pytest.mark.asyncio
async def test_list_items_cheapest_first(service):
    items = await service.list_reward_items()
    everything = await service.list_reward_items(available_only=False)

    assert [i.item_id for i in items] == ["r-voucher", "r-mentor"]
    assert "r-hidden" in {i.item_id for i in everything}


@pytest.mark.asyncio
async def test_user_rewards_newest_first(service, clock, test_user_id):
    await fund(service, test_user_id, 1000)
    first = await service.purchase(test_user_id, "r-voucher")
    clock.advance(minutes=10)
    second = await service.purchase(test_user_id, "r-mentor")

    rewards = await service.get_user_rewards(test_user_id)

    assert [r.reward_id for r in rewards] == [second.reward.reward_id, first.reward.reward_id]


@pytest.mark.asyncio
async def test_earn_then_spend_scenario(service, store, test_user_id):
    """Award 50, finish a 100 XP quest, buy a 120 XP item, then come up 90 short"""
    store.add_quest(Quest(quest_id="q-hundred", title="Complete a module", xp_reward=100))
    store.add_reward_item(RewardItem(item_id="r-120", title="Workshop seat", xp_cost=120))

    await service.award_xp(test_user_id, 50, "lesson_completed", "lesson:1")
    await service.start_quest(test_user_id, "q-hundred")
    completed = await service.complete_quest(test_user_id, "q-hundred")
    assert completed.award.progression.total_xp_earned == 150
    assert completed.award.progression.spendable_xp == 150

    bought = await service.purchase(test_user_id, "r-120")
    assert bought.progression.spendable_xp == 30
    assert bought.progression.total_xp_earned == 150

    with pytest.raises(InsufficientBalanceError) as exc_info:
        await service.purchase(test_user_id, "r-120")

    assert exc_info.value.shortfall == 90
    progression = await service.get_progression(test_user_id)
    assert progression["spendable_xp"] == 30
    assert progression["total_xp_earned"] == 150
