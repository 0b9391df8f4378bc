# tests/unit/test_bonus_engine.py
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from app.core.xp_config import ConfigurationError
from app.models.xp_activity import StreakType
from app.models.xp_ledger import StreakData
from app.config import DEFAULT_RULES_FILE
from services.bonus_engine import BonusEngine, select_special_event
from services.rule_conditions import BonusFacts
from services.rules_config_service import RulesConfigService, load_rules_document
from tests.fixtures import load_rules, make_activity

NOW = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)


def _facts(metrics=None, streaks=None, total_xp=0, level=0, **kwargs):
    activity = make_activity(metrics, **kwargs)
    return BonusFacts(
        metrics=activity.performance_metrics,
        activity=activity,
        streaks=streaks or {"completion": 1, "quality": 1, "perfect": 0, "learning": 0},
        total_xp=total_xp,
        level=level,
    )


def _event(event_id, multiplier, start=NOW - timedelta(hours=1), end=NOW + timedelta(hours=1)):
    return {
        "id": event_id,
        "name": event_id.replace("_", " ").title(),
        "bonus_multiplier": multiplier,
        "start": start,
        "end": end,
    }


def test_worked_example_earns_first_try_and_speed():
    """First-Try Resolution (+8) and Speed Bonus (+5) fire; nothing else does."""
    result = BonusEngine(load_rules()).evaluate(_facts(), at=NOW)
    assert [a.rule_id for a in result.applications] == ["first_try_resolution", "speed_bonus"]
    assert result.rule_bonus_total == 13
    assert result.total_bonus == 13
    assert result.special_event is None
    assert result.applications[0].rarity == "uncommon"


def test_worked_example_near_misses():
    result = BonusEngine(load_rules()).evaluate(_facts(), at=NOW)
    missed = {n.rule_id for n in result.near_misses}
    assert {"perfect_verification", "outstanding_customer_service", "technical_excellence"} <= missed
    # Boolean and unmet context conditions are never "close"
    assert "knowledge_sharing" not in missed
    assert "innovation_bonus" not in missed
    # 100 XP is 100 away, beyond the milestone's margin of 25
    assert "first_100_xp" not in missed

    tech = next(n for n in result.near_misses if n.rule_id == "technical_excellence")
    assert "technical accuracy 5 short of 90" in tech.hint


def test_multiple_rules_stack():
    facts = _facts({
        "technicalAccuracy": 96,
        "communicationQuality": 90,
        "customerSatisfaction": 92,
        "processCompliance": 88,
        "knowledgeSharing": True,
    })
    result = BonusEngine(load_rules()).evaluate(facts, at=NOW)
    fired = [a.rule_id for a in result.applications]
    assert fired == [
        "perfect_verification",
        "outstanding_customer_service",
        "technical_excellence",
        "first_try_resolution",
        "knowledge_sharing",
        "speed_bonus",
    ]
    assert result.total_bonus == 10 + 15 + 12 + 8 + 5 + 5


def test_speed_bonus_only_for_tickets():
    result = BonusEngine(load_rules()).evaluate(_facts(activity_type="documentation"), at=NOW)
    assert "speed_bonus" not in [a.rule_id for a in result.applications]


def test_streak_and_milestone_rules():
    facts = _facts(streaks={"completion": 3, "quality": 5, "perfect": 0, "learning": 0}, total_xp=134)
    result = BonusEngine(load_rules()).evaluate(facts, at=NOW)
    fired = {a.rule_id for a in result.applications}
    assert {"consistency_streak_3", "quality_streak_5", "first_100_xp"} <= fired


def test_awarded_milestone_is_not_evaluated_again():
    facts = _facts(total_xp=250)
    result = BonusEngine(load_rules()).evaluate(facts, at=NOW, awarded_milestones=["first_100_xp"])
    assert "first_100_xp" not in [a.rule_id for a in result.applications]
    assert "first_100_xp" not in result.evaluated_rule_ids


def test_special_event_multiplies_bonus_total():
    rules = load_rules()
    rules.add_special_event(_event("double_weekend", 1.5))
    result = BonusEngine(rules).evaluate(_facts(), at=NOW)
    # 13 x 0.5 = 6.5 rounds half up to 7
    assert result.special_event is not None
    assert result.special_event.bonus_points == 7
    assert result.total_bonus == 20


def test_largest_running_event_wins_and_expired_events_are_ignored():
    rules = load_rules()
    rules.add_special_event(_event("small_boost", 1.2))
    rules.add_special_event(_event("big_boost", 2.0))
    rules.add_special_event(_event("ended", 3.0, start=NOW - timedelta(days=2), end=NOW - timedelta(days=1)))
    event = select_special_event(rules.list_special_events(), NOW)
    assert event is not None and event.id == "big_boost"
    result = BonusEngine(rules).evaluate(_facts(), at=NOW)
    assert result.total_bonus == 26


def test_event_adds_nothing_without_rule_bonuses():
    rules = load_rules()
    rules.add_special_event(_event("double_weekend", 2.0))
    facts = _facts({"firstTimeResolution": False, "resolutionTime": 45})
    result = BonusEngine(rules).evaluate(facts, at=NOW)
    assert result.total_bonus == 0
    assert result.special_event is None


def test_inactive_and_expired_rules_are_skipped():
    rules = load_rules()
    rules.update_bonus_rule("speed_bonus", {"active": False})
    rules.update_bonus_rule("first_try_resolution", {"validUntil": NOW - timedelta(days=1), "validFrom": NOW - timedelta(days=10)})
    result = BonusEngine(rules).evaluate(_facts(), at=NOW)
    assert result.applications == []


def test_invalid_rule_is_dropped_and_others_survive():
    document = load_rules_document(DEFAULT_RULES_FILE)
    document["bonus_rules"].append({
        "id": "broken_rule",
        "name": "Broken",
        "category": "performance",
        "bonus_points": 3,
        "conditions": [{"source": "metric", "field": "technical_accuracy", "operator": "contains", "value": "x"}],
    })
    rules = RulesConfigService.from_document(document)
    assert rules.snapshot().dropped_rule_ids == ("broken_rule",)
    result = BonusEngine(rules).evaluate(_facts(), at=NOW)
    assert result.total_bonus == 13


def test_add_bonus_rule_rejects_invalid_rule():
    engine = BonusEngine(load_rules())
    with pytest.raises(ConfigurationError):
        engine.add_bonus_rule({
            "id": "bad",
            "name": "Bad",
            "category": "performance",
            "bonus_points": 3,
            "conditions": [{"source": "metric", "field": "first_time_resolution", "operator": "gte", "value": 1}],
        })


def test_bonus_opportunities_grouped_by_category():
    grouped = BonusEngine(load_rules()).get_bonus_opportunities(at=NOW)
    assert set(grouped) == {"performance", "streak", "milestone", "special"}
    speed = next(o for o in grouped["performance"] if o.rule_id == "speed_bonus")
    assert speed.requirements == ["resolution time <= 30", "type == ticket_completion"]


def test_streak_bonus_summary_recommends_remaining_activities():
    streaks = {
        t.value: StreakData(user_id="u1", streak_type=t, current_streak=n)
        for t, n in ((StreakType.completion, 3), (StreakType.quality, 2), (StreakType.perfect, 0), (StreakType.learning, 0))
    }
    summary = BonusEngine(load_rules()).calculate_streak_bonuses("u1", streaks, at=NOW)
    assert [o.rule_id for o in summary.eligible] == ["consistency_streak_3"]
    assert summary.total_eligible_points == 5
    assert any(r.startswith("Complete 3 more qualifying activities") and "Quality Streak" in r for r in summary.recommendations)
