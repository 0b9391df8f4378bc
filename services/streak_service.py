# services/streak_service.py
"""
Streak state machine.

One StreakData per (user, streak type). Every completed activity advances every
streak type exactly once: maintained -> current + 1, otherwise reset to 0.
Pure functions; the ledger applies them inside the user's critical section and
commits the result together with the award.
"""

from __future__ import annotations

from datetime import datetime
from typing import Dict, Mapping, Optional

from app.config import settings
from app.core.xp_config import (
    LEARNING_STREAK_MIN_SCORE,
    PERFECT_STREAK_MIN_SCORE,
    QUALITY_STREAK_MIN_SCORE,
)
from app.models.xp_activity import PerformanceMetrics, StreakType
from app.models.xp_ledger import StreakData, StreakEntry

STREAK_DESCRIPTIONS: Dict[str, str] = {
    StreakType.completion.value: "Completed activities in a row",
    StreakType.quality.value: f"Activities in a row scoring {QUALITY_STREAK_MIN_SCORE} or more",
    StreakType.perfect.value: f"Activities in a row scoring {PERFECT_STREAK_MIN_SCORE} or more",
    StreakType.learning.value: f"Activities in a row sharing knowledge or scoring {LEARNING_STREAK_MIN_SCORE} or more",
}


def is_streak_maintained(streak_type: StreakType, overall_score: int, metrics: PerformanceMetrics) -> bool:
    if streak_type == StreakType.completion:
        return True
    if streak_type == StreakType.quality:
        return overall_score >= QUALITY_STREAK_MIN_SCORE
    if streak_type == StreakType.perfect:
        return overall_score >= PERFECT_STREAK_MIN_SCORE
    if streak_type == StreakType.learning:
        return metrics.knowledge_sharing or overall_score >= LEARNING_STREAK_MIN_SCORE
    return False


def empty_streak(user_id: str, streak_type: StreakType) -> StreakData:
    return StreakData(user_id=user_id, streak_type=streak_type)


def empty_streaks(user_id: str) -> Dict[str, StreakData]:
    return {t.value: empty_streak(user_id, t) for t in StreakType}


def advance_streak(
    current: StreakData,
    *,
    activity_id: str,
    maintained: bool,
    score: int,
    at: datetime,
    history_limit: Optional[int] = None,
) -> StreakData:
    limit = history_limit or settings.XP_STREAK_HISTORY_LIMIT
    streak = current.current_streak + 1 if maintained else 0
    entry = StreakEntry(
        activity_id=activity_id,
        timestamp=at,
        maintained=maintained,
        streak_after=streak,
        score=score,
    )
    history = [*current.streak_history, entry][-limit:]
    return current.model_copy(
        update={
            "current_streak": streak,
            "longest_streak": max(current.longest_streak, streak),
            "last_activity": at,
            "streak_history": history,
        }
    )


def advance_streaks(
    user_id: str,
    current: Mapping[str, StreakData],
    *,
    activity_id: str,
    overall_score: int,
    metrics: PerformanceMetrics,
    at: datetime,
    history_limit: Optional[int] = None,
) -> Dict[str, StreakData]:
    """Advance every streak type for one completed activity; returns new StreakData objects."""
    updated: Dict[str, StreakData] = {}
    for streak_type in StreakType:
        existing = current.get(streak_type.value) or empty_streak(user_id, streak_type)
        updated[streak_type.value] = advance_streak(
            existing,
            activity_id=activity_id,
            maintained=is_streak_maintained(streak_type, overall_score, metrics),
            score=overall_score,
            at=at,
            history_limit=history_limit,
        )
    return updated
