# tests/fixtures/__init__.py
"""Shared builders for XP ledger tests."""
from __future__ import annotations

from copy import deepcopy
from datetime import datetime, timedelta, timezone
from typing import Any, Dict

from app.config import DEFAULT_RULES_FILE
from app.models.xp_activity import ActivityData, PerformanceContext
from app.models.xp_ledger import XPRecord
from services.bonus_engine import BonusEngine
from services.performance_weighting_service import PerformanceWeightingService
from services.rule_conditions import BonusFacts
from services.rules_config_service import RulesConfigService
from services.xp_calculator import XPCalculator

# Worked example: ticket completion, intermediate, balanced weights -> 43 XP
SCENARIO_METRICS: Dict[str, Any] = {
    "technicalAccuracy": 85,
    "communicationQuality": 78,
    "customerSatisfaction": 82,
    "processCompliance": 75,
    "resolutionTime": 28,
    "verificationSuccess": True,
    "firstTimeResolution": True,
    "knowledgeSharing": False,
}


def make_activity_payload(
    metrics: Dict[str, Any] | None = None,
    *,
    activity_type: str = "ticket_completion",
    difficulty: str = "intermediate",
    context: Dict[str, Any] | None = None,
) -> Dict[str, Any]:
    merged = deepcopy(SCENARIO_METRICS)
    merged.update(metrics or {})
    return {
        "type": activity_type,
        "scenarioDifficulty": difficulty,
        "performanceMetrics": merged,
        "additionalContext": context or {},
    }


def make_activity(metrics: Dict[str, Any] | None = None, **kwargs: Any) -> ActivityData:
    return ActivityData.model_validate(make_activity_payload(metrics, **kwargs))


def make_transaction(user_id: str, activity_id: str, metrics: Dict[str, Any] | None = None, **kwargs: Any) -> Dict[str, Any]:
    return {
        "userId": user_id,
        "activityId": activity_id,
        "activityData": make_activity_payload(metrics, **kwargs),
    }


def load_rules() -> RulesConfigService:
    return RulesConfigService.from_file(DEFAULT_RULES_FILE)


class FakeClock:
    """Deterministic clock for the ledger; advance() moves time forward."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


def make_record(
    activity: ActivityData | None = None,
    *,
    user_id: str = "u1",
    activity_id: str = "a1",
    record_id: str = "xp_test",
    streaks: Dict[str, int] | None = None,
    at: datetime | None = None,
    rules: RulesConfigService | None = None,
) -> XPRecord:
    """Run the scoring chain synchronously and wrap the result in a record."""
    rules = rules or load_rules()
    at = at or datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)
    activity = activity or make_activity()
    context = PerformanceContext.from_activity(activity, user_id=user_id)
    performance = PerformanceWeightingService(rules).calculate_weighted_performance(
        activity.performance_metrics, context, at=at
    )
    facts = BonusFacts(
        metrics=activity.performance_metrics,
        activity=activity,
        streaks=streaks or {"completion": 1, "quality": 1, "perfect": 0, "learning": 0},
    )
    bonus = BonusEngine(rules).evaluate(facts, at=at)
    result = XPCalculator().calculate_xp(activity, performance, bonus)
    return XPRecord(
        id=record_id,
        user_id=user_id,
        activity_id=activity_id,
        activity_data=activity,
        xp_awarded=result.total_xp,
        breakdown=result.breakdown,
        performance=result.performance,
        bonus=result.bonus,
        timestamp=at,
    )
