# tests/unit/test_rate_limiting.py
from __future__ import annotations

from datetime import datetime, timezone

import pytest

from app.core.rate_limiting import GamingSuspectedError, check_rate_limit, enforce_award_rate_limit
from app.core.rate_limits_config import XP_AWARD_ACTION, get_rate_limit

NOW = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)


class CountingStore:
    """Stand-in exposing only what the guard reads."""

    def __init__(self, count: int):
        self.count = count
        self.since = None

    async def count_awards_since(self, user_id, since):
        self.since = since
        return self.count


@pytest.mark.asyncio
async def test_allows_up_to_the_limit():
    assert await check_rate_limit(CountingStore(4), "u1", XP_AWARD_ACTION, 5, 60, NOW)
    assert not await check_rate_limit(CountingStore(5), "u1", XP_AWARD_ACTION, 5, 60, NOW)


@pytest.mark.asyncio
async def test_window_starts_window_seconds_ago():
    store = CountingStore(0)
    await check_rate_limit(store, "u1", XP_AWARD_ACTION, 5, 60, NOW)
    assert (NOW - store.since).total_seconds() == 60


@pytest.mark.asyncio
async def test_enforce_raises_gaming_suspected():
    with pytest.raises(GamingSuspectedError) as exc:
        await enforce_award_rate_limit(CountingStore(5), "u1", "a6", limit=5, window_seconds=60, now=NOW)
    err = exc.value
    assert err.reason == "gaming_suspected"
    assert (err.user_id, err.activity_id, err.count, err.limit) == ("u1", "a6", 5, 5)


def test_unknown_action_is_rejected():
    with pytest.raises(ValueError):
        get_rate_limit("teleport")


def test_award_limit_follows_settings(monkeypatch):
    from app.config import settings

    monkeypatch.setattr(settings, "XP_GAMING_MAX_AWARDS", 2)
    monkeypatch.setattr(settings, "XP_GAMING_WINDOW_SECONDS", 30)
    assert get_rate_limit(XP_AWARD_ACTION) == (2, 30)
