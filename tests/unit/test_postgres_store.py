"""Unit tests for the PostgreSQL store (mocked connection pool)"""
from datetime import date, datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import psycopg
import pytest

from talentika_progression.db.postgres import PostgresStore
from talentika_progression.db.store import StateChange
from talentika_progression.exceptions import (
    ChallengeFullError,
    ConflictError,
    ConnectionError,
    DuplicateEventError,
    OutOfStockError,
)
from talentika_progression.models import UserProgression, XPTransaction

NOW = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)


def progression_row(version=1, total=100, spendable=100, level=1):
    return {
        "user_id": "user-123",
        "total_xp_earned": total,
        "spendable_xp": spendable,
        "current_level": level,
        "version": version,
        "created_at": NOW,
        "updated_at": NOW,
    }


def make_store(mock_cursor):
    """PostgresStore over a mocked pool: connection() -> conn.cursor() -> mock_cursor"""
    mock_conn = MagicMock()
    mock_conn.cursor.return_value.__aenter__.return_value = mock_cursor
    mock_conn.cursor.return_value.__aexit__.return_value = False
    mock_conn.transaction.return_value.__aenter__.return_value = None
    mock_conn.transaction.return_value.__aexit__.return_value = False

    database = MagicMock()
    database.connection.return_value.__aenter__.return_value = mock_conn
    database.connection.return_value.__aexit__.return_value = False
    return PostgresStore(database)


def make_cursor(fetchone=None, fetchall=None, rowcount=1):
    mock_cursor = MagicMock()
    mock_cursor.execute = AsyncMock()
    mock_cursor.fetchone = AsyncMock(side_effect=fetchone) if isinstance(fetchone, list) \
        else AsyncMock(return_value=fetchone)
    mock_cursor.fetchall = AsyncMock(side_effect=fetchall) if fetchall is not None \
        else AsyncMock(return_value=[])
    mock_cursor.rowcount = rowcount
    return mock_cursor


def award_change(expected_version=1):
    return StateChange(
        user_id="user-123",
        expected_version=expected_version,
        progression=UserProgression(user_id="user-123", total_xp_earned=150, spendable_xp=150),
        xp_transactions=[
            XPTransaction(
                user_id="user-123",
                amount=50,
                reason="lesson_completed",
                idempotency_key="lesson:1",
                awarded_at=NOW,
            )
        ],
    )


# ============================================================================
# load_state
# ============================================================================

@pytest.mark.asyncio
async def test_load_state_new_user():
    """Users without a row get a fresh version-0 aggregate"""
    mock_cursor = make_cursor(fetchone=None)
    store = make_store(mock_cursor)

    state = await store.load_state("user-123")

    assert state.progression.version == 0
    assert state.progression.total_xp_earned == 0
    assert state.streaks == {}
    mock_cursor.execute.assert_called_once()


@pytest.mark.asyncio
async def test_load_state_maps_rows():
    mock_cursor = make_cursor(
        fetchone=progression_row(version=4, total=1200, spendable=900, level=2),
        fetchall=[
            [{
                "user_id": "user-123",
                "streak_type": "login",
                "current_streak": 3,
                "longest_streak": 5,
                "last_activity_date": date(2025, 3, 9),
            }],
            [{
                "user_id": "user-123",
                "quest_id": "q-intro",
                "status": "completed",
                "started_at": NOW,
                "xp_earned": 250,
                "completed_at": NOW,
                "abandoned_at": None,
                "progress_data": '{"score": 90}',
            }],
            [],
            [{"badge": "quiz-master"}],
        ]
    )
    store = make_store(mock_cursor)

    state = await store.load_state("user-123")

    assert state.progression.version == 4
    assert state.progression.spendable_xp == 900
    assert state.streaks["login"].current_streak == 3
    assert state.quests["q-intro"].status.value == "completed"
    assert state.quests["q-intro"].progress_data == {"score": 90}
    assert state.challenges == {}
    assert state.badges == {"quiz-master"}
    assert mock_cursor.execute.call_count == 5


@pytest.mark.asyncio
async def test_connection_failure_is_wrapped():
    mock_cursor = make_cursor()
    mock_cursor.execute.side_effect = psycopg.OperationalError("connection refused")
    store = make_store(mock_cursor)

    with pytest.raises(ConnectionError):
        await store.load_state("user-123")


# ============================================================================
# commit
# ============================================================================

@pytest.mark.asyncio
async def test_commit_is_version_guarded():
    mock_cursor = make_cursor(fetchone=progression_row(version=2, total=150, spendable=150))
    store = make_store(mock_cursor)

    stored = await store.commit(award_change(expected_version=1))

    assert stored.version == 2
    assert stored.total_xp_earned == 150

    update_query, update_params = mock_cursor.execute.call_args_list[0][0]
    assert "WHERE user_id = %s AND version = %s" in update_query
    assert update_params[-2:] == ("user-123", 1)

    insert_query, insert_params = mock_cursor.execute.call_args_list[1][0]
    assert "INSERT INTO xp_transactions" in insert_query
    assert "lesson:1" in insert_params


@pytest.mark.asyncio
async def test_first_commit_inserts_row():
    mock_cursor = make_cursor(fetchone=progression_row(version=1, total=150, spendable=150))
    store = make_store(mock_cursor)

    await store.commit(award_change(expected_version=0))

    first_query = mock_cursor.execute.call_args_list[0][0][0]
    assert "INSERT INTO user_progression" in first_query
    assert "ON CONFLICT (user_id) DO NOTHING" in first_query


@pytest.mark.asyncio
async def test_commit_version_mismatch_raises_conflict():
    """No row back from the guarded update means someone else committed first"""
    mock_cursor = make_cursor(fetchone=None)
    store = make_store(mock_cursor)

    with pytest.raises(ConflictError) as exc_info:
        await store.commit(award_change(expected_version=3))

    assert exc_info.value.expected_version == 3
    mock_cursor.execute.assert_called_once()


@pytest.mark.asyncio
async def test_commit_duplicate_transaction():
    mock_cursor = make_cursor(fetchone=progression_row(version=2), rowcount=0)
    store = make_store(mock_cursor)

    with pytest.raises(DuplicateEventError):
        await store.commit(award_change())


@pytest.mark.asyncio
async def test_commit_stock_guard():
    mock_cursor = make_cursor(fetchone=progression_row(version=2), rowcount=0)
    store = make_store(mock_cursor)
    change = StateChange(
        user_id="user-123",
        expected_version=1,
        progression=UserProgression(user_id="user-123", total_xp_earned=500, spendable_xp=0),
        stock_decrements=["r-mentor"],
    )

    with pytest.raises(OutOfStockError):
        await store.commit(change)


@pytest.mark.asyncio
async def test_commit_capacity_guard():
    mock_cursor = make_cursor(fetchone=[progression_row(version=2), None])
    store = make_store(mock_cursor)
    change = StateChange(
        user_id="user-123",
        expected_version=1,
        progression=UserProgression(user_id="user-123"),
        challenge_joins=["c-sprint"],
    )

    with pytest.raises(ChallengeFullError):
        await store.commit(change)


# ============================================================================
# Reads
# ============================================================================

@pytest.mark.asyncio
async def test_has_xp_event():
    store = make_store(make_cursor(fetchone={"?column?": 1}))
    assert await store.has_xp_event("user-123", "lesson:1") is True

    store = make_store(make_cursor(fetchone=None))
    assert await store.has_xp_event("user-123", "lesson:2") is False


@pytest.mark.asyncio
async def test_list_progressions_for_subset():
    mock_cursor = make_cursor(fetchall=[[progression_row()]])
    store = make_store(mock_cursor)

    progressions = await store.list_progressions(["user-123", "user-456"])

    assert [p.user_id for p in progressions] == ["user-123"]
    query, params = mock_cursor.execute.call_args[0]
    assert "ANY(%(user_ids)s)" in query
    assert params == {"user_ids": ["user-123", "user-456"]}


@pytest.mark.asyncio
async def test_list_reward_items_available_only():
    mock_cursor = make_cursor(fetchall=[[{
        "id": "r-voucher",
        "title": "Course voucher",
        "xp_cost": 80,
        "item_type": "voucher",
        "stock_quantity": None,
        "description": None,
        "is_available": True,
    }]])
    store = make_store(mock_cursor)

    items = await store.list_reward_items()

    assert items[0].item_id == "r-voucher"
    assert items[0].tracks_stock is False
    assert "WHERE is_available" in mock_cursor.execute.call_args[0][0]
