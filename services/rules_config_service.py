# services/rules_config_service.py
"""
Service for the XP rule documents (configs/xp_rules.yml).

Loads weight configurations, bonus rules and special events with PyYAML into
pydantic models, validates them at write time and publishes immutable snapshots.
Calculations read one snapshot for their whole duration; writes build a new
snapshot and swap it in, so a calculation never observes a half-applied change.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import yaml
from pydantic import ValidationError
from pydantic.alias_generators import to_snake

from app.config import settings
from app.core.logging import get_logger
from app.core.xp_config import DEFAULT_WEIGHT_CONFIGURATION_ID, ConfigurationError
from app.models.xp_rules import BonusRule, SpecialEvent, WeightConfiguration
from services.rule_conditions import check_bonus_rule

logger = get_logger()

BALANCED_CONFIGURATION: Dict[str, Any] = {
    "id": DEFAULT_WEIGHT_CONFIGURATION_ID,
    "name": "Balanced",
    "description": "Equal weight on every dimension.",
    "priority": 1,
    "weights": {
        "technical_accuracy": 0.25,
        "communication_quality": 0.25,
        "customer_satisfaction": 0.25,
        "process_compliance": 0.25,
    },
}


class UnknownRuleError(LookupError):
    """A configuration id that does not exist."""

    def __init__(self, kind: str, rule_id: str):
        super().__init__(f"Unknown {kind}: {rule_id}")
        self.kind = kind
        self.rule_id = rule_id


@dataclass(frozen=True)
class RulesSnapshot:
    version: int
    weight_configurations: Tuple[WeightConfiguration, ...]
    bonus_rules: Tuple[BonusRule, ...]
    special_events: Tuple[SpecialEvent, ...]
    dropped_rule_ids: Tuple[str, ...] = field(default_factory=tuple)

    def weight_configuration(self, config_id: str) -> Optional[WeightConfiguration]:
        for cfg in self.weight_configurations:
            if cfg.id == config_id:
                return cfg
        return None

    def bonus_rule(self, rule_id: str) -> Optional[BonusRule]:
        for rule in self.bonus_rules:
            if rule.id == rule_id:
                return rule
        return None


def _errors_text(exc: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg')}" for err in exc.errors()
    )


def parse_weight_configuration(raw: Union[Mapping[str, Any], WeightConfiguration]) -> WeightConfiguration:
    if isinstance(raw, WeightConfiguration):
        raw = raw.model_dump()
    try:
        return WeightConfiguration.model_validate(dict(raw))
    except ValidationError as e:
        config_id = raw.get("id") if isinstance(raw, Mapping) else None
        logger.warning("weight_configuration_rejected", config_id=config_id, errors=_errors_text(e))
        raise ConfigurationError(f"Invalid weight configuration {config_id}: {_errors_text(e)}", payload=raw) from e


def parse_bonus_rule(raw: Union[Mapping[str, Any], BonusRule]) -> BonusRule:
    """Validate a bonus rule and check that every condition can be interpreted."""
    if isinstance(raw, BonusRule):
        raw = raw.model_dump()
    rule_id = raw.get("id") if isinstance(raw, Mapping) else None
    try:
        rule = BonusRule.model_validate(dict(raw))
    except ValidationError as e:
        raise ConfigurationError(f"Invalid bonus rule {rule_id}: {_errors_text(e)}", payload=raw) from e
    problems = check_bonus_rule(rule)
    if problems:
        raise ConfigurationError(f"Invalid bonus rule {rule_id}: {'; '.join(problems)}", payload=raw)
    return rule


def parse_special_event(raw: Union[Mapping[str, Any], SpecialEvent]) -> SpecialEvent:
    if isinstance(raw, SpecialEvent):
        return raw
    try:
        return SpecialEvent.model_validate(dict(raw))
    except ValidationError as e:
        raise ConfigurationError(f"Invalid special event {raw.get('id')}: {_errors_text(e)}", payload=raw) from e


def load_rules_document(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise ConfigurationError(f"Rules file not found: {path}")
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Rules file must contain a mapping at the top level: {path}")
    return data


def build_snapshot(document: Mapping[str, Any], version: int = 1) -> RulesSnapshot:
    """
    Weight configurations and special events must all be valid (ConfigurationError
    otherwise). Invalid bonus rules are dropped with a warning so the valid ones
    keep working.
    """
    configs: List[WeightConfiguration] = []
    seen: set[str] = set()
    for raw in document.get("weight_configurations") or []:
        cfg = parse_weight_configuration(raw)
        if cfg.id in seen:
            raise ConfigurationError(f"Duplicate weight configuration id: {cfg.id}")
        seen.add(cfg.id)
        configs.append(cfg)

    if DEFAULT_WEIGHT_CONFIGURATION_ID not in seen:
        configs.insert(0, parse_weight_configuration(BALANCED_CONFIGURATION))
    else:
        default = next(c for c in configs if c.id == DEFAULT_WEIGHT_CONFIGURATION_ID)
        if not default.active or default.applicability or default.valid_until is not None:
            raise ConfigurationError(
                f"{DEFAULT_WEIGHT_CONFIGURATION_ID} must be active, unconditional and open-ended"
            )

    rules: List[BonusRule] = []
    dropped: List[str] = []
    rule_ids: set[str] = set()
    for raw in document.get("bonus_rules") or []:
        rule_id = str(raw.get("id")) if isinstance(raw, Mapping) else "?"
        try:
            rule = parse_bonus_rule(raw)
        except ConfigurationError as e:
            logger.warning("bonus_rule_invalid", rule_id=rule_id, error=str(e))
            dropped.append(rule_id)
            continue
        if rule.id in rule_ids:
            logger.warning("bonus_rule_invalid", rule_id=rule.id, error="duplicate id")
            dropped.append(rule.id)
            continue
        rule_ids.add(rule.id)
        rules.append(rule)

    events = [parse_special_event(raw) for raw in document.get("special_events") or []]

    return RulesSnapshot(
        version=version,
        weight_configurations=tuple(configs),
        bonus_rules=tuple(rules),
        special_events=tuple(events),
        dropped_rule_ids=tuple(dropped),
    )


class RulesConfigService:
    """Holds the current RulesSnapshot and applies validated writes to it."""

    def __init__(self, snapshot: Optional[RulesSnapshot] = None) -> None:
        self._snapshot = snapshot or build_snapshot({})

    @classmethod
    def from_file(cls, path: Optional[Path] = None) -> "RulesConfigService":
        path = Path(path or settings.XP_RULES_PATH)
        snap = build_snapshot(load_rules_document(path))
        logger.info(
            "xp_rules_loaded",
            path=str(path),
            weight_configurations=len(snap.weight_configurations),
            bonus_rules=len(snap.bonus_rules),
            dropped_rules=list(snap.dropped_rule_ids),
            special_events=len(snap.special_events),
        )
        return cls(snap)

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> "RulesConfigService":
        return cls(build_snapshot(document))

    def snapshot(self) -> RulesSnapshot:
        return self._snapshot

    def export_document(self) -> Dict[str, Any]:
        snap = self._snapshot
        return {
            "weight_configurations": [c.model_dump(mode="json") for c in snap.weight_configurations],
            "bonus_rules": [r.model_dump(mode="json") for r in snap.bonus_rules],
            "special_events": [e.model_dump(mode="json") for e in snap.special_events],
        }

    def replace_document(self, document: Mapping[str, Any]) -> RulesSnapshot:
        new = build_snapshot(document, version=self._snapshot.version + 1)
        self._snapshot = new
        return new

    def _publish(
        self,
        *,
        weight_configurations: Optional[List[WeightConfiguration]] = None,
        bonus_rules: Optional[List[BonusRule]] = None,
        special_events: Optional[List[SpecialEvent]] = None,
    ) -> RulesSnapshot:
        old = self._snapshot
        self._snapshot = RulesSnapshot(
            version=old.version + 1,
            weight_configurations=tuple(weight_configurations if weight_configurations is not None else old.weight_configurations),
            bonus_rules=tuple(bonus_rules if bonus_rules is not None else old.bonus_rules),
            special_events=tuple(special_events if special_events is not None else old.special_events),
            dropped_rule_ids=old.dropped_rule_ids,
        )
        return self._snapshot

    # ---- Weight configurations ------------------------------------------------

    def list_weight_configurations(self, active_only: bool = False) -> List[WeightConfiguration]:
        configs = list(self._snapshot.weight_configurations)
        if active_only:
            configs = [c for c in configs if c.active]
        return sorted(configs, key=lambda c: (-c.priority, c.id))

    def get_weight_configuration(self, config_id: str) -> WeightConfiguration:
        cfg = self._snapshot.weight_configuration(config_id)
        if cfg is None:
            raise UnknownRuleError("weight configuration", config_id)
        return cfg

    def create_weight_configuration(self, data: Union[Mapping[str, Any], WeightConfiguration]) -> WeightConfiguration:
        cfg = parse_weight_configuration(data)
        if self._snapshot.weight_configuration(cfg.id) is not None:
            raise ConfigurationError(f"Weight configuration already exists: {cfg.id}")
        self._publish(weight_configurations=[*self._snapshot.weight_configurations, cfg])
        logger.info("weight_configuration_created", config_id=cfg.id, priority=cfg.priority)
        return cfg

    def update_weight_configuration(self, config_id: str, updates: Mapping[str, Any]) -> WeightConfiguration:
        current = self.get_weight_configuration(config_id)
        merged = current.model_dump()
        merged.update({to_snake(k): v for k, v in updates.items()})
        merged["id"] = config_id
        cfg = parse_weight_configuration(merged)
        if config_id == DEFAULT_WEIGHT_CONFIGURATION_ID and (
            not cfg.active or cfg.applicability or cfg.valid_until is not None
        ):
            raise ConfigurationError(f"{DEFAULT_WEIGHT_CONFIGURATION_ID} cannot be deactivated or restricted")
        self._publish(
            weight_configurations=[cfg if c.id == config_id else c for c in self._snapshot.weight_configurations]
        )
        logger.info("weight_configuration_updated", config_id=config_id, fields=sorted(updates.keys()))
        return cfg

    def remove_weight_configuration(self, config_id: str) -> None:
        if config_id == DEFAULT_WEIGHT_CONFIGURATION_ID:
            raise ConfigurationError(f"{DEFAULT_WEIGHT_CONFIGURATION_ID} is reserved and cannot be removed")
        self.get_weight_configuration(config_id)
        self._publish(
            weight_configurations=[c for c in self._snapshot.weight_configurations if c.id != config_id]
        )
        logger.info("weight_configuration_removed", config_id=config_id)

    # ---- Bonus rules ------------------------------------------------------------

    def list_bonus_rules(self, active_only: bool = False) -> List[BonusRule]:
        rules = list(self._snapshot.bonus_rules)
        if active_only:
            rules = [r for r in rules if r.active]
        return sorted(rules, key=lambda r: (-r.priority, r.id))

    def get_bonus_rule(self, rule_id: str) -> BonusRule:
        rule = self._snapshot.bonus_rule(rule_id)
        if rule is None:
            raise UnknownRuleError("bonus rule", rule_id)
        return rule

    def add_bonus_rule(self, data: Union[Mapping[str, Any], BonusRule]) -> BonusRule:
        rule = parse_bonus_rule(data)
        if self._snapshot.bonus_rule(rule.id) is not None:
            raise ConfigurationError(f"Bonus rule already exists: {rule.id}")
        self._publish(bonus_rules=[*self._snapshot.bonus_rules, rule])
        logger.info("bonus_rule_added", rule_id=rule.id, bonus_points=rule.bonus_points)
        return rule

    def update_bonus_rule(self, rule_id: str, updates: Mapping[str, Any]) -> BonusRule:
        current = self.get_bonus_rule(rule_id)
        merged = current.model_dump()
        merged.update({to_snake(k): v for k, v in updates.items()})
        merged["id"] = rule_id
        rule = parse_bonus_rule(merged)
        self._publish(bonus_rules=[rule if r.id == rule_id else r for r in self._snapshot.bonus_rules])
        logger.info("bonus_rule_updated", rule_id=rule_id, fields=sorted(updates.keys()))
        return rule

    # ---- Special events ---------------------------------------------------------

    def list_special_events(self) -> List[SpecialEvent]:
        return list(self._snapshot.special_events)

    def add_special_event(self, data: Union[Mapping[str, Any], SpecialEvent]) -> SpecialEvent:
        event = parse_special_event(data)
        if any(e.id == event.id for e in self._snapshot.special_events):
            raise ConfigurationError(f"Special event already exists: {event.id}")
        self._publish(special_events=[*self._snapshot.special_events, event])
        logger.info("special_event_added", event_id=event.id, multiplier=event.bonus_multiplier)
        return event


_rules_service: Optional[RulesConfigService] = None


def get_rules_config_service() -> RulesConfigService:
    """Process-wide service loaded from XP_RULES_PATH on first use."""
    global _rules_service
    if _rules_service is None:
        _rules_service = RulesConfigService.from_file()
    return _rules_service
