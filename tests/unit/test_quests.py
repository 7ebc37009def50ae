"""Unit tests for the quest engine (talentika_progression/gamification/quests.py)"""
import asyncio
import httpx
import pytest
from datetime import timezone

from talentika_progression.exceptions import (
    AlreadyCompletedError,
    AlreadyStartedError,
    InvalidTransitionError,
    NotStartedError,
    OperationTimeoutError,
    RecordNotFoundError,
    RequirementsNotMetError,
)
from talentika_progression.gamification import LevelCurve
from talentika_progression.models import BadgeUnlockedEvent, QuestStatus
from talentika_progression.services.progression_service import ProgressionService


class SlowEvaluator:
    async def is_satisfied(self, requirements, evidence):
        await asyncio.sleep(0.5)
        return True


class FlakyEvaluator:
    """Fails with a transient network error on the first call"""

    def __init__(self):
        self.calls = 0

    async def is_satisfied(self, requirements, evidence):
        self.calls += 1
        if self.calls == 1:
            raise httpx.ConnectError("evaluator unreachable")
        return True


def make_service(store, clock, evaluator, timeout=1.0, max_retries=2):
    return ProgressionService(
        store=store,
        catalog=store,
        curve=LevelCurve(),
        evaluator=evaluator,
        clock=clock,
        max_retries=max_retries,
        timeout=timeout,
        zone=timezone.utc,
    )


# ============================================================================
# Starting Quests
# ============================================================================

class TestStartQuest:

    @pytest.mark.asyncio
    async def test_start_creates_in_progress_record(self, service, clock, test_user_id):
        result = await service.start_quest(test_user_id, "q-intro")

        assert result.record.status == QuestStatus.IN_PROGRESS
        assert result.record.started_at == clock.now
        assert result.already_applied is False

    @pytest.mark.asyncio
    async def test_engine_rejects_second_start(self, service, test_user_id):
        await service.quests.start_quest(test_user_id, "q-intro")

        with pytest.raises(AlreadyStartedError):
            await service.quests.start_quest(test_user_id, "q-intro")

    @pytest.mark.asyncio
    async def test_service_treats_second_start_as_applied(self, service, test_user_id):
        await service.start_quest(test_user_id, "q-intro")
        result = await service.start_quest(test_user_id, "q-intro")

        assert result.already_applied is True
        assert result.record.status == QuestStatus.IN_PROGRESS

    @pytest.mark.asyncio
    @pytest.mark.parametrize("quest_id", ["q-missing", "q-retired"])
    async def test_unknown_or_inactive_quest(self, service, test_user_id, quest_id):
        with pytest.raises(RecordNotFoundError):
            await service.start_quest(test_user_id, quest_id)

    @pytest.mark.asyncio
    async def test_cannot_restart_abandoned_quest(self, service, test_user_id):
        await service.start_quest(test_user_id, "q-intro")
        await service.abandon_quest(test_user_id, "q-intro")

        with pytest.raises(InvalidTransitionError):
            await service.start_quest(test_user_id, "q-intro")


# ============================================================================
# Completing Quests
# ============================================================================

class TestCompleteQuest:

    @pytest.mark.asyncio
    async def test_complete_awards_xp_once(self, service, store, clock, test_user_id):
        await service.start_quest(test_user_id, "q-intro")
        result = await service.complete_quest(test_user_id, "q-intro")

        assert result.record.status == QuestStatus.COMPLETED
        assert result.record.xp_earned == 250
        assert result.record.completed_at == clock.now
        assert result.award.xp_awarded == 250

        history = await service.get_xp_history(test_user_id)
        assert [t.idempotency_key for t in history] == [f"quest:q-intro:user:{test_user_id}"]

    @pytest.mark.asyncio
    async def test_complete_without_start(self, service, test_user_id):
        with pytest.raises(NotStartedError):
            await service.complete_quest(test_user_id, "q-intro")

    @pytest.mark.asyncio
    async def test_engine_rejects_second_completion(self, service, test_user_id):
        await service.start_quest(test_user_id, "q-intro")
        await service.complete_quest(test_user_id, "q-intro")

        with pytest.raises(AlreadyCompletedError):
            await service.quests.complete_quest(test_user_id, "q-intro")

    @pytest.mark.asyncio
    async def test_service_second_completion_does_not_reaward(self, service, store, test_user_id):
        await service.start_quest(test_user_id, "q-intro")
        await service.complete_quest(test_user_id, "q-intro")
        result = await service.complete_quest(test_user_id, "q-intro")

        assert result.already_applied is True
        assert result.award is None
        state = await store.load_state(test_user_id)
        assert state.progression.total_xp_earned == 250

    @pytest.mark.asyncio
    async def test_concurrent_completions_award_once(self, service, store, test_user_id):
        await service.start_quest(test_user_id, "q-intro")

        results = await asyncio.gather(
            service.complete_quest(test_user_id, "q-intro"),
            service.complete_quest(test_user_id, "q-intro"),
        )

        assert sorted(r.already_applied for r in results) == [False, True]
        state = await store.load_state(test_user_id)
        assert state.progression.total_xp_earned == 250

    @pytest.mark.asyncio
    async def test_requirements_not_met(self, service, test_user_id):
        await service.start_quest(test_user_id, "q-quiz")

        with pytest.raises(RequirementsNotMetError):
            await service.complete_quest(test_user_id, "q-quiz", evidence={"score": 70})

        quests = await service.get_user_quests(test_user_id)
        assert quests[0].status == QuestStatus.IN_PROGRESS

    @pytest.mark.asyncio
    async def test_requirements_met_grants_badge(self, service, store, badge_unlocker, notifier, test_user_id):
        await service.start_quest(test_user_id, "q-quiz")
        result = await service.complete_quest(test_user_id, "q-quiz", evidence={"score": 85})

        assert result.badges_unlocked == ["quiz-master"]
        assert result.record.progress_data == {"score": 85}
        assert badge_unlocker.unlocked == [(test_user_id, "quiz-master", "quest:q-quiz")]
        assert [e.badge for e in notifier.of_type(BadgeUnlockedEvent)] == ["quiz-master"]

        state = await store.load_state(test_user_id)
        assert state.badges == {"quiz-master"}

    @pytest.mark.asyncio
    async def test_zero_xp_quest_has_no_award(self, service, store, test_user_id):
        await service.start_quest(test_user_id, "q-free")
        result = await service.complete_quest(test_user_id, "q-free")

        assert result.record.status == QuestStatus.COMPLETED
        assert result.award is None
        assert (await store.load_state(test_user_id)).progression.total_xp_earned == 0

    @pytest.mark.asyncio
    async def test_transient_evaluator_failure_is_retried(self, store, clock, test_user_id):
        evaluator = FlakyEvaluator()
        service = make_service(store, clock, evaluator)
        await service.start_quest(test_user_id, "q-quiz")

        result = await service.complete_quest(test_user_id, "q-quiz", evidence={"score": 90})

        assert result.record.status == QuestStatus.COMPLETED
        assert evaluator.calls == 2

    @pytest.mark.asyncio
    async def test_evaluator_timeout_leaves_quest_in_progress(self, store, clock, test_user_id):
        service = make_service(store, clock, SlowEvaluator(), timeout=0.05, max_retries=1)
        await service.start_quest(test_user_id, "q-quiz")

        with pytest.raises(OperationTimeoutError):
            await service.complete_quest(test_user_id, "q-quiz", evidence={"score": 90})

        quests = await service.get_user_quests(test_user_id)
        assert quests[0].status == QuestStatus.IN_PROGRESS


# ============================================================================
# Abandoning & Listing
# ============================================================================

class TestAbandonQuest:

    @pytest.mark.asyncio
    async def test_abandon_in_progress(self, service, clock, test_user_id):
        await service.start_quest(test_user_id, "q-intro")
        result = await service.abandon_quest(test_user_id, "q-intro")

        assert result.record.status == QuestStatus.ABANDONED
        assert result.record.abandoned_at == clock.now

    @pytest.mark.asyncio
    async def test_abandon_not_started(self, service, test_user_id):
        with pytest.raises(NotStartedError):
            await service.abandon_quest(test_user_id, "q-intro")

    @pytest.mark.asyncio
    async def test_abandoned_quest_cannot_be_completed(self, service, test_user_id):
        await service.start_quest(test_user_id, "q-intro")
        await service.abandon_quest(test_user_id, "q-intro")

        with pytest.raises(InvalidTransitionError):
            await service.complete_quest(test_user_id, "q-intro")

    @pytest.mark.asyncio
    async def test_completed_quest_cannot_be_abandoned(self, service, test_user_id):
        await service.start_quest(test_user_id, "q-intro")
        await service.complete_quest(test_user_id, "q-intro")

        with pytest.raises(InvalidTransitionError):
            await service.abandon_quest(test_user_id, "q-intro")


@pytest.mark.asyncio
async def test_get_user_quests_filters_by_status(service, clock, test_user_id):
    await service.start_quest(test_user_id, "q-intro")
    clock.advance(minutes=1)
    await service.start_quest(test_user_id, "q-free")
    await service.complete_quest(test_user_id, "q-free")

    everything = await service.get_user_quests(test_user_id)
    completed = await service.get_user_quests(test_user_id, QuestStatus.COMPLETED)

    assert [q.quest_id for q in everything] == ["q-intro", "q-free"]
    assert [q.quest_id for q in completed] == ["q-free"]
