# tests/test_rules_config_service.py
from __future__ import annotations

import pytest

from app.config import DEFAULT_RULES_FILE
from app.core.xp_config import ConfigurationError
from services.rules_config_service import (
    RulesConfigService,
    UnknownRuleError,
    build_snapshot,
    load_rules_document,
)


def test_seed_file_loads_completely():
    rules = RulesConfigService.from_file(DEFAULT_RULES_FILE)
    snap = rules.snapshot()
    assert {c.id for c in snap.weight_configurations} == {"default_balanced", "technical_focused", "customer_focused"}
    assert len(snap.bonus_rules) == 12
    assert snap.dropped_rule_ids == ()
    assert snap.special_events == ()


def test_empty_document_still_has_default_configuration():
    snap = build_snapshot({})
    assert [c.id for c in snap.weight_configurations] == ["default_balanced"]
    assert snap.weight_configurations[0].weights.sums_to_one()


def test_restricted_default_configuration_is_rejected():
    document = load_rules_document(DEFAULT_RULES_FILE)
    document["weight_configurations"][0]["applicability"] = [
        {"factor": "difficulty_level", "operator": "equals", "value": "advanced"}
    ]
    with pytest.raises(ConfigurationError):
        build_snapshot(document)


def test_missing_file_raises():
    with pytest.raises(ConfigurationError):
        RulesConfigService.from_file(DEFAULT_RULES_FILE.with_name("missing.yml"))


def test_default_configuration_cannot_be_removed_or_disabled():
    rules = RulesConfigService.from_file(DEFAULT_RULES_FILE)
    with pytest.raises(ConfigurationError):
        rules.remove_weight_configuration("default_balanced")
    with pytest.raises(ConfigurationError):
        rules.update_weight_configuration("default_balanced", {"active": False})


def test_update_weights_validates_sum():
    rules = RulesConfigService.from_file(DEFAULT_RULES_FILE)
    before = rules.snapshot()
    with pytest.raises(ConfigurationError):
        rules.update_weight_configuration("technical_focused", {
            "weights": {
                "technicalAccuracy": 0.9,
                "communicationQuality": 0.2,
                "customerSatisfaction": 0.2,
                "processCompliance": 0.2,
            }
        })
    # A rejected write leaves the published snapshot untouched
    assert rules.snapshot() is before


def test_writes_publish_new_snapshot_versions():
    rules = RulesConfigService.from_file(DEFAULT_RULES_FILE)
    first = rules.snapshot()
    rules.update_bonus_rule("speed_bonus", {"bonusPoints": 7})
    second = rules.snapshot()
    assert second.version == first.version + 1
    assert first.bonus_rule("speed_bonus").bonus_points == 5
    assert second.bonus_rule("speed_bonus").bonus_points == 7


def test_remove_and_unknown_configuration():
    rules = RulesConfigService.from_file(DEFAULT_RULES_FILE)
    rules.remove_weight_configuration("customer_focused")
    with pytest.raises(UnknownRuleError):
        rules.get_weight_configuration("customer_focused")
    with pytest.raises(UnknownRuleError):
        rules.get_bonus_rule("nope")


def test_duplicate_ids_are_rejected():
    rules = RulesConfigService.from_file(DEFAULT_RULES_FILE)
    with pytest.raises(ConfigurationError):
        rules.add_bonus_rule(rules.get_bonus_rule("speed_bonus"))


def test_export_round_trips_through_build_snapshot():
    rules = RulesConfigService.from_file(DEFAULT_RULES_FILE)
    restored = RulesConfigService.from_document(rules.export_document())
    assert restored.snapshot().weight_configurations == rules.snapshot().weight_configurations
    assert restored.snapshot().bonus_rules == rules.snapshot().bonus_rules
