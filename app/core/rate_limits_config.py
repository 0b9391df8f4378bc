# app/core/rate_limits_config.py
"""
Per-user limits for ledger actions.

The award limit is read from settings at call time so a deployment (or a test)
can tune XP_GAMING_MAX_AWARDS / XP_GAMING_WINDOW_SECONDS without reimporting.
"""

from typing import Callable, Dict, NamedTuple

from app.config import settings

XP_AWARD_ACTION = "xp_award"


class RateLimit(NamedTuple):
    limit: int
    window_seconds: int


_LIMITS: Dict[str, Callable[[], RateLimit]] = {
    XP_AWARD_ACTION: lambda: RateLimit(settings.XP_GAMING_MAX_AWARDS, settings.XP_GAMING_WINDOW_SECONDS),
}


def get_rate_limit(action: str) -> RateLimit:
    """Raises ValueError for an action without a configured limit."""
    try:
        return _LIMITS[action]()
    except KeyError:
        raise ValueError(f"Rate limit not configured for action: {action}") from None
