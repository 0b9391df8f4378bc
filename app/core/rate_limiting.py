# app/core/rate_limiting.py
"""
Anti-gaming guard over a sliding window of committed awards.

The count comes from the ledger store and the guard runs inside the user's
critical section, so nothing can commit between the check and the award.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

from app.core.logging import get_logger
from app.core.rate_limits_config import XP_AWARD_ACTION, RateLimit, get_rate_limit
from services.xp_store import XPAwardRejected, XPStore

logger = get_logger()


class GamingSuspectedError(XPAwardRejected):
    reason = "gaming_suspected"

    def __init__(
        self,
        msg: str,
        *,
        user_id: Optional[str] = None,
        activity_id: Optional[str] = None,
        count: int = 0,
        limit: int = 0,
        window_seconds: int = 0,
    ):
        super().__init__(msg, user_id=user_id, activity_id=activity_id)
        self.count = count
        self.limit = limit
        self.window_seconds = window_seconds


def _resolve(action: str, limit: Optional[int], window_seconds: Optional[int]) -> RateLimit:
    configured = get_rate_limit(action)
    return RateLimit(limit or configured.limit, window_seconds or configured.window_seconds)


async def _awards_in_window(store: XPStore, user_id: str, window_seconds: int, now: datetime) -> int:
    return await store.count_awards_since(user_id, now - timedelta(seconds=window_seconds))


async def check_rate_limit(
    store: XPStore,
    user_id: str,
    action: str = XP_AWARD_ACTION,
    limit: Optional[int] = None,
    window_seconds: Optional[int] = None,
    now: Optional[datetime] = None,
) -> bool:
    """True when one more award still fits inside the window."""
    rl = _resolve(action, limit, window_seconds)
    count = await _awards_in_window(store, user_id, rl.window_seconds, now or datetime.now(timezone.utc))
    return count + 1 <= rl.limit


async def enforce_award_rate_limit(
    store: XPStore,
    user_id: str,
    activity_id: str,
    *,
    limit: Optional[int] = None,
    window_seconds: Optional[int] = None,
    now: Optional[datetime] = None,
) -> None:
    rl = _resolve(XP_AWARD_ACTION, limit, window_seconds)
    count = await _awards_in_window(store, user_id, rl.window_seconds, now or datetime.now(timezone.utc))
    if count + 1 <= rl.limit:
        return

    logger.warning(
        "xp_award_rejected_gaming",
        user_id=user_id,
        activity_id=activity_id,
        awards_in_window=count,
        limit=rl.limit,
        window_seconds=rl.window_seconds,
    )
    raise GamingSuspectedError(
        f"More than {rl.limit} awards within {rl.window_seconds}s",
        user_id=user_id,
        activity_id=activity_id,
        count=count,
        limit=rl.limit,
        window_seconds=rl.window_seconds,
    )
