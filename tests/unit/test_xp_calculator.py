# tests/unit/test_xp_calculator.py
from __future__ import annotations

from datetime import datetime, timezone

import pytest

from app.models.xp_activity import PerformanceContext
from app.models.xp_results import BonusCalculationResult
from app.utils.rounding import round_half_up
from services.bonus_engine import BonusEngine
from services.performance_weighting_service import PerformanceWeightingService
from services.rule_conditions import BonusFacts
from services.xp_calculator import ActivityValidationError, XPCalculator, validate_activity_data
from tests.fixtures import load_rules, make_activity, make_activity_payload

NOW = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)


def _calculate(activity, streaks=None):
    rules = load_rules()
    context = PerformanceContext.from_activity(activity, user_id="u1")
    performance = PerformanceWeightingService(rules).calculate_weighted_performance(
        activity.performance_metrics, context, at=NOW
    )
    facts = BonusFacts(
        metrics=activity.performance_metrics,
        activity=activity,
        streaks=streaks or {"completion": 1, "quality": 1, "perfect": 0, "learning": 0},
    )
    bonus = BonusEngine(rules).evaluate(facts, at=NOW)
    return XPCalculator().calculate_xp(activity, performance, bonus)


def _no_bonus():
    return BonusCalculationResult(applications=[], rule_bonus_total=0, total_bonus=0)


def test_worked_example_totals_43():
    """20 base x 1.5 intermediate x 1.0 Good = 30, plus 13 bonus XP."""
    result = _calculate(make_activity())
    assert result.total_xp == 43
    b = result.breakdown
    assert (b.base_xp, b.difficulty_multiplier, b.performance_multiplier) == (20, 1.5, 1.0)
    assert b.pre_bonus_xp == 30
    assert b.bonus_xp == 13
    assert [s.name for s in b.steps] == ["base_xp", "difficulty_multiplier", "performance_multiplier", "round", "bonuses"]
    assert [s.output for s in b.steps] == [20, 30, 30, 30, 43]
    assert all(s.reasoning for s in b.steps)
    assert b.explanation == [s.reasoning for s in b.steps]


def test_calculation_is_deterministic():
    first = _calculate(make_activity())
    second = _calculate(make_activity())
    assert first.breakdown == second.breakdown
    assert first.total_xp == second.total_xp


def test_rounds_half_up():
    """documentation (5) x starter (1.0) x Unsatisfactory (0.5) = 2.5 -> 3."""
    activity = make_activity({
        "technicalAccuracy": 40,
        "communicationQuality": 40,
        "customerSatisfaction": 40,
        "processCompliance": 40,
        "firstTimeResolution": False,
    }, activity_type="documentation", difficulty="starter")
    result = _calculate(activity)
    assert result.performance.tier.name == "Unsatisfactory"
    assert result.breakdown.pre_bonus_xp == 3
    assert result.total_xp == 3


def test_round_half_up_helper():
    assert round_half_up(2.5) == 3
    assert round_half_up(3.5) == 4
    assert round_half_up(2.49) == 2
    assert round_half_up(0) == 0


def test_total_is_pre_bonus_plus_bonus():
    activity = make_activity()
    rules = load_rules()
    context = PerformanceContext.from_activity(activity)
    performance = PerformanceWeightingService(rules).calculate_weighted_performance(
        activity.performance_metrics, context, at=NOW
    )
    result = XPCalculator().calculate_xp(activity, performance, _no_bonus())
    assert result.total_xp == 30
    assert result.breakdown.steps[-1].reasoning == "No bonuses earned: total stays at 30 XP."


def test_xp_ranges_cover_every_type_and_difficulty():
    ranges = XPCalculator().get_xp_ranges()
    assert len(ranges) == 18
    ticket_advanced = next(r for r in ranges if r.activity_type == "ticket_completion" and r.difficulty == "advanced")
    assert (ticket_advanced.min_xp, ticket_advanced.typical_xp, ticket_advanced.max_xp) == (20, 40, 60)


def test_max_possible_xp():
    calc = XPCalculator()
    snapshot = load_rules().snapshot()
    ticket = calc.calculate_max_possible_xp("ticket_completion", "starter", snapshot, at=NOW)
    assert ticket == {"base_xp": 30, "bonus_xp": 88, "total_xp": 118}
    # speed_bonus only applies to tickets
    docs = calc.calculate_max_possible_xp("documentation", "starter", snapshot, at=NOW)
    assert docs["bonus_xp"] == 83


def test_validate_activity_data_reports_errors():
    payload = make_activity_payload({"technicalAccuracy": 120})
    with pytest.raises(ActivityValidationError) as exc:
        validate_activity_data(payload)
    assert any("technicalAccuracy" in e or "technical_accuracy" in e for e in exc.value.errors)


def test_validate_activity_data_rejects_unknown_type():
    with pytest.raises(ActivityValidationError):
        validate_activity_data(make_activity_payload(activity_type="gardening"))


@pytest.mark.parametrize(
    "metrics",
    [
        {"technicalAccuracy": True},
        {"technicalAccuracy": "85"},
        {"resolutionTime": None},
        {"verificationSuccess": "yes"},
        {"firstTimeResolution": 1},
    ],
)
def test_validate_activity_data_rejects_mistyped_metrics(metrics):
    with pytest.raises(ActivityValidationError):
        validate_activity_data(make_activity_payload(metrics))


def test_validate_activity_data_requires_boolean_metrics():
    payload = make_activity_payload()
    del payload["performanceMetrics"]["verificationSuccess"]
    with pytest.raises(ActivityValidationError) as exc:
        validate_activity_data(payload)
    assert any("verificationSuccess" in e for e in exc.value.errors)


def test_validate_activity_data_accepts_integer_scores():
    activity = validate_activity_data(make_activity_payload({"technicalAccuracy": 90, "resolutionTime": 12.5}))
    assert activity.performance_metrics.technical_accuracy == 90.0
