# tests/unit/test_streak_service.py
from __future__ import annotations

from datetime import datetime, timedelta, timezone

from app.models.xp_activity import StreakType
from services.streak_service import advance_streak, advance_streaks, empty_streak, is_streak_maintained
from tests.fixtures import make_activity

T0 = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)


def _advance_many(scores, *, knowledge_sharing=False):
    metrics = make_activity({"knowledgeSharing": knowledge_sharing}).performance_metrics
    streaks = {}
    for i, score in enumerate(scores):
        streaks = advance_streaks(
            "u1",
            streaks,
            activity_id=f"a{i}",
            overall_score=score,
            metrics=metrics,
            at=T0 + timedelta(minutes=i),
        )
    return streaks


def test_quality_streak_counts_consecutive_activities():
    streaks = _advance_many([80, 85, 92])
    assert streaks["quality"].current_streak == 3
    assert streaks["completion"].current_streak == 3
    assert streaks["perfect"].current_streak == 0


def test_break_resets_to_zero_and_keeps_longest():
    streaks = _advance_many([81, 88, 90, 79])
    quality = streaks["quality"]
    assert quality.current_streak == 0
    assert quality.longest_streak == 3
    last = quality.streak_history[-1]
    assert last.activity_id == "a3"
    assert last.maintained is False
    assert last.streak_after == 0
    assert last.score == 79


def test_every_type_advances_once_per_activity():
    streaks = _advance_many([96])
    assert set(streaks) == {t.value for t in StreakType}
    assert all(len(s.streak_history) == 1 for s in streaks.values())
    assert all(s.last_activity == T0 for s in streaks.values())


def test_learning_streak_from_knowledge_sharing_or_high_score():
    metrics = make_activity({"knowledgeSharing": True}).performance_metrics
    assert is_streak_maintained(StreakType.learning, 50, metrics)
    plain = make_activity().performance_metrics
    assert is_streak_maintained(StreakType.learning, 85, plain)
    assert not is_streak_maintained(StreakType.learning, 84, plain)


def test_history_is_capped():
    streak = empty_streak("u1", StreakType.completion)
    for i in range(40):
        streak = advance_streak(streak, activity_id=f"a{i}", maintained=True, score=80, at=T0, history_limit=30)
    assert streak.current_streak == 40
    assert len(streak.streak_history) == 30
    assert streak.streak_history[0].activity_id == "a10"


def test_advance_does_not_mutate_input():
    before = empty_streak("u1", StreakType.quality)
    after = advance_streak(before, activity_id="a1", maintained=True, score=90, at=T0)
    assert before.current_streak == 0
    assert before.streak_history == []
    assert after.current_streak == 1
