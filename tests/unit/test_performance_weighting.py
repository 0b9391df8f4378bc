# tests/unit/test_performance_weighting.py
from __future__ import annotations

import pytest

from app.core.xp_config import PERFORMANCE_TIERS, ConfigurationError, TierBand, validate_tier_table
from app.models.xp_activity import PerformanceContext
from services.performance_weighting_service import (
    PerformanceWeightingService,
    all_tiers,
    normalize_weights,
    tier_for_score,
)
from services.rules_config_service import RulesSnapshot
from tests.fixtures import load_rules, make_activity


def _score(activity, rules=None):
    service = PerformanceWeightingService(rules or load_rules())
    context = PerformanceContext.from_activity(activity, user_id="u1")
    return service.calculate_weighted_performance(activity.performance_metrics, context)


def test_worked_example_scores_80_good():
    """Balanced weights over 85/78/82/75 give exactly 80, which is the Good tier."""
    result = _score(make_activity())
    assert result.configuration_id == "default_balanced"
    assert result.base_score == 80
    assert result.overall_score == 80
    assert result.tier.name == "Good"
    assert result.performance_multiplier == 1.0
    assert result.adjustments == []
    assert result.fired_context_rules == []


def test_applied_weights_sum_to_one():
    result = _score(make_activity(difficulty="advanced"))
    assert sum(result.applied_weights.values()) == pytest.approx(1.0, abs=1e-3)
    assert all(w >= 0 for w in result.applied_weights.values())


def test_tier_table_is_contiguous_and_exhaustive():
    for score in range(0, 101):
        tier = tier_for_score(score)
        assert tier.min_score <= score <= tier.max_score
    assert [t.name for t in all_tiers()] == [t.name for t in PERFORMANCE_TIERS]


def test_tier_boundaries():
    assert tier_for_score(90).name == "Outstanding"
    assert tier_for_score(89).name == "Excellent"
    assert tier_for_score(85).name == "Excellent"
    assert tier_for_score(84).name == "Good"
    assert tier_for_score(70).name == "Good"
    assert tier_for_score(69).name == "Needs Improvement"
    assert tier_for_score(59).name == "Unsatisfactory"
    assert tier_for_score(0).multiplier == 0.5


def test_validate_tier_table_rejects_gap():
    broken = [
        TierBand("High", 80, 100, 1.5, ""),
        TierBand("Low", 0, 78, 0.5, ""),
    ]
    with pytest.raises(ConfigurationError):
        validate_tier_table(broken)


def test_validate_tier_table_rejects_short_range():
    with pytest.raises(ConfigurationError):
        validate_tier_table([TierBand("Only", 0, 99, 1.0, "")])


def test_advanced_scenario_uses_technical_configuration_with_context_rule():
    """Advanced difficulty selects technical_focused and fires advanced_rigor, renormalized."""
    result = _score(make_activity({
        "technicalAccuracy": 90,
        "communicationQuality": 90,
        "customerSatisfaction": 90,
        "processCompliance": 90,
    }, difficulty="advanced"))
    assert result.configuration_id == "technical_focused"
    assert [r.rule_id for r in result.fired_context_rules] == ["advanced_rigor"]
    assert result.applied_weights["technical_accuracy"] == pytest.approx(0.45 / 1.1, abs=1e-4)
    assert result.applied_weights["process_compliance"] == pytest.approx(0.25 / 1.1, abs=1e-4)
    # 90 on an advanced scenario earns the difficulty excellence adjustment
    assert result.base_score == 90
    assert [a.name for a in result.adjustments] == ["difficulty_excellence"]
    assert result.overall_score == 93
    assert result.tier.name == "Outstanding"


def test_customer_configuration_outranks_technical():
    """customer_focused (priority 3) wins over technical_focused (priority 2) when both apply."""
    result = _score(make_activity(difficulty="advanced", context={"customerType": "VIP"}))
    assert result.configuration_id == "customer_focused"


def test_ties_break_on_smallest_id():
    rules = load_rules()
    for config_id in ("beta_focus", "alpha_focus"):
        rules.create_weight_configuration({
            "id": config_id,
            "name": config_id,
            "priority": 5,
            "weights": {
                "technical_accuracy": 0.7,
                "communication_quality": 0.1,
                "customer_satisfaction": 0.1,
                "process_compliance": 0.1,
            },
        })
    result = _score(make_activity(), rules)
    assert result.configuration_id == "alpha_focus"


def test_inactive_configuration_is_ignored():
    rules = load_rules()
    rules.update_weight_configuration("technical_focused", {"active": False})
    result = _score(make_activity(difficulty="advanced"), rules)
    assert result.configuration_id == "default_balanced"


def test_novice_context_rule_shifts_weight_to_process():
    result = _score(make_activity(context={"userExperience": "novice"}))
    assert [r.rule_id for r in result.fired_context_rules] == ["novice_process_focus"]
    assert result.applied_weights["process_compliance"] == pytest.approx(0.30)
    assert result.applied_weights["technical_accuracy"] == pytest.approx(0.20)
    # 85*0.2 + 78*0.25 + 82*0.25 + 75*0.3 = 79.5, rounded half up
    assert result.overall_score == 80


def test_expert_bonus_and_slow_resolution_penalty():
    expert = _score(make_activity(context={"userExperience": "expert"}))
    assert expert.overall_score == 82

    slow = _score(make_activity({"resolutionTime": 95}))
    assert slow.overall_score == 78
    assert any("slow-resolution" in r for r in slow.recommendations)


def test_overall_score_is_clamped():
    top = _score(make_activity({
        "technicalAccuracy": 100,
        "communicationQuality": 100,
        "customerSatisfaction": 100,
        "processCompliance": 100,
    }, difficulty="advanced", context={"userExperience": "expert"}))
    assert top.overall_score == 100

    bottom = _score(make_activity({
        "technicalAccuracy": 0,
        "communicationQuality": 0,
        "customerSatisfaction": 0,
        "processCompliance": 0,
        "resolutionTime": 120,
    }))
    assert bottom.overall_score == 0
    assert bottom.tier.name == "Unsatisfactory"


def test_normalize_weights_all_zero_falls_back_to_equal():
    weights = normalize_weights({
        "technical_accuracy": -0.2,
        "communication_quality": 0,
        "customer_satisfaction": 0,
        "process_compliance": 0,
    })
    assert weights == {name: 0.25 for name in weights}


def test_recommendations_flag_low_metrics():
    result = _score(make_activity({"communicationQuality": 55}))
    assert any(r.startswith("Communication quality is 55") for r in result.recommendations)


def test_weight_configuration_must_sum_to_one():
    rules = load_rules()
    with pytest.raises(ConfigurationError):
        rules.create_weight_configuration({
            "id": "lopsided",
            "name": "Lopsided",
            "weights": {
                "technical_accuracy": 0.5,
                "communication_quality": 0.2,
                "customer_satisfaction": 0.1,
                "process_compliance": 0.1,
            },
        })


def test_snapshot_without_balanced_default_raises_configuration_error():
    rules = load_rules()
    snap = rules.snapshot()
    bare = RulesSnapshot(
        version=snap.version,
        weight_configurations=tuple(c for c in snap.weight_configurations if c.id == "technical_focused"),
        bonus_rules=snap.bonus_rules,
        special_events=snap.special_events,
    )
    context = PerformanceContext.from_activity(make_activity(), user_id="u1")
    with pytest.raises(ConfigurationError):
        PerformanceWeightingService(rules).resolve_configuration(context, snapshot=bare)
