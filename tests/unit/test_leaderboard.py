# tests/unit/test_leaderboard.py
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from app.models.xp_ledger import UserProgress
from services.leaderboard_service import LeaderboardIndex
from services.xp_store import InMemoryXPStore

T0 = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)


def _progress(user_id, total, minutes=0):
    return UserProgress(user_id=user_id, total_xp=total, version=1, total_reached_at=T0 + timedelta(minutes=minutes))


def test_orders_by_total_descending():
    board = LeaderboardIndex(level_size=100)
    board.update(_progress("ana", 120))
    board.update(_progress("ben", 340))
    board.update(_progress("cem", 45))
    top = board.top(10)
    assert [e.user_id for e in top] == ["ben", "ana", "cem"]
    assert [e.rank for e in top] == [1, 2, 3]
    assert top[0].level == 3


def test_ties_go_to_whoever_reached_the_total_first():
    board = LeaderboardIndex()
    board.update(_progress("late", 200, minutes=5))
    board.update(_progress("early", 200, minutes=1))
    assert [e.user_id for e in board.top(2)] == ["early", "late"]


def test_update_replaces_previous_position():
    board = LeaderboardIndex()
    board.update(_progress("ana", 100))
    board.update(_progress("ben", 150))
    board.update(_progress("ana", 300, minutes=2))
    assert len(board) == 2
    assert board.rank_of("ana") == 1
    assert board.rank_of("ben") == 2
    assert board.rank_of("nobody") is None


def test_top_respects_limit():
    board = LeaderboardIndex()
    for i in range(5):
        board.update(_progress(f"u{i}", i * 10))
    assert len(board.top(3)) == 3
    assert board.top(0) == []


@pytest.mark.asyncio
async def test_rebuild_from_store():
    store = InMemoryXPStore()
    store._progress["ana"] = _progress("ana", 80)
    store._progress["ben"] = _progress("ben", 90)
    board = LeaderboardIndex()
    await board.rebuild(store)
    assert [e.user_id for e in board.top(5)] == ["ben", "ana"]
