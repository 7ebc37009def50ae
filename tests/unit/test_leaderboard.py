"""Unit tests for leaderboard ranking"""
import pytest

from talentika_progression.exceptions import ValidationError


async def seed(service, clock, totals):
    """Award XP per user, one minute apart, in the given order"""
    for user_id, amount in totals:
        await service.award_xp(user_id, amount, "seed", f"seed:{user_id}")
        clock.advance(minutes=1)


class TestRanking:

    @pytest.mark.asyncio
    async def test_orders_by_total_xp(self, service, clock):
        await seed(service, clock, [("ana", 300), ("ben", 1200), ("cho", 700)])

        entries = await service.get_leaderboard()

        assert [e.user_id for e in entries] == ["ben", "cho", "ana"]
        assert [e.position for e in entries] == [1, 2, 3]
        assert entries[0].level == 2
        assert entries[0].total_xp_earned == 1200

    @pytest.mark.asyncio
    async def test_ties_favour_earliest_account(self, service, clock):
        await seed(service, clock, [("zed", 500), ("amy", 500)])

        entries = await service.get_leaderboard()

        assert [e.user_id for e in entries] == ["zed", "amy"]

    @pytest.mark.asyncio
    async def test_full_ties_fall_back_to_user_id(self, service):
        await service.award_xp("zed", 500, "seed", "seed:zed")
        await service.award_xp("amy", 500, "seed", "seed:amy")

        entries = await service.get_leaderboard()

        assert [e.user_id for e in entries] == ["amy", "zed"]

    @pytest.mark.asyncio
    async def test_spending_does_not_change_rank(self, service, clock):
        await seed(service, clock, [("ana", 600), ("ben", 500)])
        await service.purchase("ana", "r-mentor")

        entries = await service.get_leaderboard()

        assert [e.user_id for e in entries] == ["ana", "ben"]

    @pytest.mark.asyncio
    async def test_limit_and_subset(self, service, clock):
        await seed(service, clock, [("ana", 300), ("ben", 1200), ("cho", 700), ("dev", 50)])

        top_two = await service.get_leaderboard(limit=2)
        team = await service.get_leaderboard(user_ids=["ana", "dev"])

        assert [e.user_id for e in top_two] == ["ben", "cho"]
        assert [(e.position, e.user_id) for e in team] == [(1, "ana"), (2, "dev")]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("limit", [0, -5])
    async def test_non_positive_limit_rejected(self, service, limit):
        with pytest.raises(ValidationError):
            await service.get_leaderboard(limit=limit)


class TestUserRank:

    @pytest.mark.asyncio
    async def test_rank_beyond_limit(self, service, clock):
        await seed(service, clock, [(f"user-{i}", 100 * (i + 1)) for i in range(12)])

        entry = await service.get_user_rank("user-0")

        assert entry.position == 12
        assert entry.total_xp_earned == 100

    @pytest.mark.asyncio
    async def test_unknown_user_has_no_rank(self, service, clock):
        await seed(service, clock, [("ana", 300)])

        assert await service.get_user_rank("nobody") is None

    @pytest.mark.asyncio
    async def test_empty_leaderboard(self, service):
        assert await service.get_leaderboard() == []
