"""API routes for the progression engine

Engine errors are not caught here; the application's ProgressionError
handler maps them to status codes.
"""
import logging
from datetime import datetime, timezone
from typing import List, Optional
from fastapi import APIRouter, Depends, Query, Request

from talentika_progression.api.auth import verify_api_key
from talentika_progression.api.middleware import limiter
from talentika_progression.api.models import (
    ActivityRequest,
    ActivityResponse,
    AwardXPRequest,
    AwardXPResponse,
    ChallengeListResponse,
    CompletionRequest,
    HealthCheckResponse,
    LeaderboardEntryModel,
    LeaderboardResponse,
    ProgressionResponse,
    PurchaseRequest,
    PurchaseResponse,
    QuestActionResponse,
    QuestListResponse,
    RewardCatalogResponse,
    RewardItemModel,
    StreakModel,
    StreakResponse,
    UserChallengeModel,
    UserQuestModel,
    UserRewardModel,
    UserRewardsResponse,
    XPHistoryResponse,
    XPTransactionModel,
)
from talentika_progression.db.connection import db
from talentika_progression.exceptions import RecordNotFoundError
from talentika_progression.models import QuestStatus
from talentika_progression.services.progression_service import ProgressionService

logger = logging.getLogger(__name__)

router = APIRouter()

READ_LIMIT = "120/minute"
WRITE_LIMIT = "60/minute"


def get_service(request: Request) -> ProgressionService:
    """Engine facade attached to the application at startup"""
    return request.app.state.progression_service


# ==========================================
# XP
# ==========================================

@router.get("/api/v1/users/{user_id}/xp", response_model=ProgressionResponse)
@limiter.limit(READ_LIMIT)
async def get_xp(
    request: Request,
    user_id: str,
    api_key: str = Depends(verify_api_key),
    service: ProgressionService = Depends(get_service)
):
    """Get user XP totals and level progress"""
    return ProgressionResponse(**await service.get_progression(user_id))


@router.post("/api/v1/users/{user_id}/xp", response_model=AwardXPResponse)
@limiter.limit(WRITE_LIMIT)
async def award_xp(
    request: Request,
    user_id: str,
    body: AwardXPRequest,
    api_key: str = Depends(verify_api_key),
    service: ProgressionService = Depends(get_service)
):
    """Award XP (replayed idempotency keys return already_applied=true)"""
    result = await service.award_xp(user_id, body.amount, body.reason, body.idempotency_key)
    return AwardXPResponse.from_result(result)


@router.get("/api/v1/users/{user_id}/xp/history", response_model=XPHistoryResponse)
@limiter.limit(READ_LIMIT)
async def get_xp_history(
    request: Request,
    user_id: str,
    limit: int = Query(50, ge=1, le=500),
    api_key: str = Depends(verify_api_key),
    service: ProgressionService = Depends(get_service)
):
    """XP ledger, newest first"""
    transactions = await service.get_xp_history(user_id, limit)
    return XPHistoryResponse(
        user_id=user_id,
        transactions=[XPTransactionModel.from_record(t) for t in transactions]
    )


# ==========================================
# Streaks
# ==========================================

@router.get("/api/v1/users/{user_id}/streaks", response_model=StreakResponse)
@limiter.limit(READ_LIMIT)
async def get_streaks(
    request: Request,
    user_id: str,
    api_key: str = Depends(verify_api_key),
    service: ProgressionService = Depends(get_service)
):
    """Get user streaks"""
    streaks = await service.get_streaks(user_id)
    return StreakResponse(user_id=user_id, streaks=[StreakModel.from_record(s) for s in streaks])


@router.post("/api/v1/users/{user_id}/streaks/{streak_type}", response_model=ActivityResponse)
@limiter.limit(WRITE_LIMIT)
async def record_activity(
    request: Request,
    user_id: str,
    streak_type: str,
    body: Optional[ActivityRequest] = None,
    api_key: str = Depends(verify_api_key),
    service: ProgressionService = Depends(get_service)
):
    """Record a qualifying activity (defaults to now)"""
    activity = None
    if body is not None:
        activity = body.activity_date or body.occurred_at

    result = await service.record_activity(user_id, streak_type, activity)
    return ActivityResponse(
        user_id=user_id,
        streak=StreakModel.from_record(result.streak),
        is_new_longest=result.is_new_longest,
        milestone_reached=result.milestone_reached,
        milestone_xp=result.milestone_award.xp_awarded if result.milestone_award else 0,
    )


# ==========================================
# Quests
# ==========================================

@router.get("/api/v1/users/{user_id}/quests", response_model=QuestListResponse)
@limiter.limit(READ_LIMIT)
async def get_user_quests(
    request: Request,
    user_id: str,
    status: Optional[QuestStatus] = None,
    api_key: str = Depends(verify_api_key),
    service: ProgressionService = Depends(get_service)
):
    """List the user's quests, optionally filtered by status"""
    quests = await service.get_user_quests(user_id, status)
    return QuestListResponse(user_id=user_id, quests=[UserQuestModel.from_record(q) for q in quests])


@router.post("/api/v1/users/{user_id}/quests/{quest_id}/start", response_model=QuestActionResponse)
@limiter.limit(WRITE_LIMIT)
async def start_quest(
    request: Request,
    user_id: str,
    quest_id: str,
    api_key: str = Depends(verify_api_key),
    service: ProgressionService = Depends(get_service)
):
    result = await service.start_quest(user_id, quest_id)
    return QuestActionResponse.from_result(user_id, result)


@router.post("/api/v1/users/{user_id}/quests/{quest_id}/complete", response_model=QuestActionResponse)
@limiter.limit(WRITE_LIMIT)
async def complete_quest(
    request: Request,
    user_id: str,
    quest_id: str,
    body: Optional[CompletionRequest] = None,
    api_key: str = Depends(verify_api_key),
    service: ProgressionService = Depends(get_service)
):
    evidence = body.evidence if body else None
    result = await service.complete_quest(user_id, quest_id, evidence)
    return QuestActionResponse.from_result(user_id, result)


@router.post("/api/v1/users/{user_id}/quests/{quest_id}/abandon", response_model=QuestActionResponse)
@limiter.limit(WRITE_LIMIT)
async def abandon_quest(
    request: Request,
    user_id: str,
    quest_id: str,
    api_key: str = Depends(verify_api_key),
    service: ProgressionService = Depends(get_service)
):
    result = await service.abandon_quest(user_id, quest_id)
    return QuestActionResponse.from_result(user_id, result)


# ==========================================
# Challenges
# ==========================================

@router.get("/api/v1/users/{user_id}/challenges", response_model=ChallengeListResponse)
@limiter.limit(READ_LIMIT)
async def get_user_challenges(
    request: Request,
    user_id: str,
    status: Optional[QuestStatus] = None,
    api_key: str = Depends(verify_api_key),
    service: ProgressionService = Depends(get_service)
):
    """List the user's challenges, optionally filtered by status"""
    challenges = await service.get_user_challenges(user_id, status)
    return ChallengeListResponse(
        user_id=user_id,
        challenges=[UserChallengeModel.from_record(c) for c in challenges]
    )


@router.post("/api/v1/users/{user_id}/challenges/{challenge_id}/join", response_model=QuestActionResponse)
@limiter.limit(WRITE_LIMIT)
async def join_challenge(
    request: Request,
    user_id: str,
    challenge_id: str,
    api_key: str = Depends(verify_api_key),
    service: ProgressionService = Depends(get_service)
):
    result = await service.join_challenge(user_id, challenge_id)
    return QuestActionResponse.from_result(user_id, result)


@router.post("/api/v1/users/{user_id}/challenges/{challenge_id}/complete", response_model=QuestActionResponse)
@limiter.limit(WRITE_LIMIT)
async def complete_challenge(
    request: Request,
    user_id: str,
    challenge_id: str,
    body: Optional[CompletionRequest] = None,
    api_key: str = Depends(verify_api_key),
    service: ProgressionService = Depends(get_service)
):
    evidence = body.evidence if body else None
    score = body.score if body else None
    result = await service.complete_challenge(user_id, challenge_id, evidence, score)
    return QuestActionResponse.from_result(user_id, result)


@router.post("/api/v1/users/{user_id}/challenges/{challenge_id}/abandon", response_model=QuestActionResponse)
@limiter.limit(WRITE_LIMIT)
async def abandon_challenge(
    request: Request,
    user_id: str,
    challenge_id: str,
    api_key: str = Depends(verify_api_key),
    service: ProgressionService = Depends(get_service)
):
    result = await service.abandon_challenge(user_id, challenge_id)
    return QuestActionResponse.from_result(user_id, result)


# ==========================================
# Reward store
# ==========================================

@router.get("/api/v1/rewards", response_model=RewardCatalogResponse)
@limiter.limit(READ_LIMIT)
async def list_rewards(
    request: Request,
    available_only: bool = True,
    api_key: str = Depends(verify_api_key),
    service: ProgressionService = Depends(get_service)
):
    """Reward catalog, cheapest first"""
    items = await service.list_reward_items(available_only)
    return RewardCatalogResponse(items=[RewardItemModel.from_record(i) for i in items])


@router.post("/api/v1/users/{user_id}/rewards/{item_id}/purchase", response_model=PurchaseResponse)
@limiter.limit(WRITE_LIMIT)
async def purchase_reward(
    request: Request,
    user_id: str,
    item_id: str,
    body: Optional[PurchaseRequest] = None,
    api_key: str = Depends(verify_api_key),
    service: ProgressionService = Depends(get_service)
):
    """Spend XP on a reward item"""
    idempotency_key = body.idempotency_key if body else None
    result = await service.purchase(user_id, item_id, idempotency_key)
    return PurchaseResponse.from_result(user_id, result)


@router.get("/api/v1/users/{user_id}/rewards", response_model=UserRewardsResponse)
@limiter.limit(READ_LIMIT)
async def get_user_rewards(
    request: Request,
    user_id: str,
    api_key: str = Depends(verify_api_key),
    service: ProgressionService = Depends(get_service)
):
    """Redemption history, newest first"""
    rewards = await service.get_user_rewards(user_id)
    return UserRewardsResponse(user_id=user_id, rewards=[UserRewardModel.from_record(r) for r in rewards])


# ==========================================
# Leaderboard
# ==========================================

@router.get("/api/v1/leaderboard", response_model=LeaderboardResponse)
@limiter.limit(READ_LIMIT)
async def get_leaderboard(
    request: Request,
    limit: int = Query(10, ge=1, le=100),
    user_ids: Optional[List[str]] = Query(default=None),
    api_key: str = Depends(verify_api_key),
    service: ProgressionService = Depends(get_service)
):
    """Top users by total XP earned, optionally within a set of users"""
    entries = await service.get_leaderboard(user_ids, limit)
    return LeaderboardResponse(entries=[LeaderboardEntryModel.from_entry(e) for e in entries])


@router.get("/api/v1/leaderboard/{user_id}", response_model=LeaderboardEntryModel)
@limiter.limit(READ_LIMIT)
async def get_user_rank(
    request: Request,
    user_id: str,
    user_ids: Optional[List[str]] = Query(default=None),
    api_key: str = Depends(verify_api_key),
    service: ProgressionService = Depends(get_service)
):
    entry = await service.get_user_rank(user_id, user_ids)
    if entry is None:
        raise RecordNotFoundError(
            f"User {user_id} has no progression yet",
            record_type="progression",
            record_id=user_id,
            user_id=user_id
        )
    return LeaderboardEntryModel.from_entry(entry)


# ==========================================
# Health
# ==========================================

@router.get("/api/health", response_model=HealthCheckResponse)
@limiter.limit("60/minute")
async def health_check(request: Request):
    """Health check endpoint (no database when running on the in-memory store)"""
    if not db.is_initialized:
        return HealthCheckResponse(
            status="healthy",
            database="not_configured",
            timestamp=datetime.now(timezone.utc)
        )

    try:
        async with db.connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute("SELECT 1")
                await cur.fetchone()

        db_status = "connected"
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        db_status = "disconnected"

    return HealthCheckResponse(
        status="healthy" if db_status == "connected" else "degraded",
        database=db_status,
        timestamp=datetime.now(timezone.utc)
    )
