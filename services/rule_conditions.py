# services/rule_conditions.py
"""
Interpreter for rule conditions.

Weight configurations and bonus rules carry their conditions as data
(app.models.xp_rules). This module evaluates them against a PerformanceContext
or a set of bonus facts and renders them as readable text. Evaluation is total:
a missing or mistyped fact makes a condition false, it never raises.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from app.models.xp_activity import (
    BOOLEAN_METRICS,
    NUMERIC_METRICS,
    ActivityData,
    PerformanceContext,
    PerformanceMetrics,
    ScenarioDifficulty,
    ActivityType,
)
from app.models.xp_results import ConditionCheck
from app.models.xp_rules import (
    ActivityCondition,
    BonusRule,
    ContainsCondition,
    EqualsCondition,
    GreaterThanCondition,
    InRangeCondition,
    LessThanCondition,
    MetricCondition,
    OneOfCondition,
    ProgressCondition,
    StreakCondition,
)

_OPERATOR_SYMBOLS = {"gte": ">=", "lte": "<=", "eq": "==", "ne": "!=", "contains": "contains"}
_NUMERIC_OPERATORS = {"gte", "lte", "eq", "ne"}


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _label(name: str) -> str:
    return name.replace("_", " ")


# =========================
# Context conditions
# =========================

def evaluate_context_condition(condition: Any, context: PerformanceContext) -> bool:
    actual = context.factor(condition.factor)
    if actual is None:
        return False

    if isinstance(condition, EqualsCondition):
        return _loose_equals(actual, condition.value)
    if isinstance(condition, OneOfCondition):
        return any(_loose_equals(actual, v) for v in condition.values)
    if isinstance(condition, ContainsCondition):
        return condition.value.lower() in str(actual).lower()
    if not _is_number(actual):
        return False
    if isinstance(condition, GreaterThanCondition):
        return actual > condition.value
    if isinstance(condition, LessThanCondition):
        return actual < condition.value
    if isinstance(condition, InRangeCondition):
        return condition.min <= actual <= condition.max
    return False


def evaluate_context_conditions(conditions: List[Any], context: PerformanceContext) -> bool:
    """AND over all conditions; an empty list always matches."""
    return all(evaluate_context_condition(c, context) for c in conditions)


def describe_context_condition(condition: Any) -> str:
    factor = _label(condition.factor)
    if isinstance(condition, EqualsCondition):
        return f"{factor} is {condition.value}"
    if isinstance(condition, OneOfCondition):
        return f"{factor} is one of {', '.join(str(v) for v in condition.values)}"
    if isinstance(condition, ContainsCondition):
        return f"{factor} contains '{condition.value}'"
    if isinstance(condition, GreaterThanCondition):
        return f"{factor} > {condition.value:g}"
    if isinstance(condition, LessThanCondition):
        return f"{factor} < {condition.value:g}"
    if isinstance(condition, InRangeCondition):
        return f"{factor} between {condition.min:g} and {condition.max:g}"
    return factor


def _loose_equals(actual: Any, expected: Any) -> bool:
    if isinstance(actual, str) and isinstance(expected, str):
        return actual.strip().lower() == expected.strip().lower()
    if _is_number(actual) and _is_number(expected):
        return float(actual) == float(expected)
    return actual == expected


# =========================
# Bonus conditions
# =========================

@dataclass(frozen=True)
class BonusFacts:
    """Everything a bonus condition may look at for one activity."""

    metrics: PerformanceMetrics
    activity: ActivityData
    streaks: Mapping[str, int] = field(default_factory=dict)
    total_xp: int = 0
    level: int = 0


def check_bonus_rule(rule: BonusRule) -> List[str]:
    """
    Return the reasons a rule cannot be evaluated (operator/value mismatches,
    unknown fields). An empty list means the rule is normalizable.
    """
    problems: List[str] = []
    if not rule.conditions:
        problems.append("rule has no conditions")
    for idx, cond in enumerate(rule.conditions):
        issue = _check_condition(cond)
        if issue:
            problems.append(f"condition {idx}: {issue}")
    return problems


def _check_condition(cond: Any) -> Optional[str]:
    op = cond.operator
    if isinstance(cond, MetricCondition):
        if cond.field in NUMERIC_METRICS:
            if op not in _NUMERIC_OPERATORS:
                return f"operator {op} not supported for numeric metric {cond.field}"
            if not _is_number(cond.value):
                return f"metric {cond.field} needs a numeric value"
            return None
        if cond.field in BOOLEAN_METRICS:
            if op not in {"eq", "ne"}:
                return f"operator {op} not supported for boolean metric {cond.field}"
            if not isinstance(cond.value, bool):
                return f"metric {cond.field} needs a boolean value"
            return None
        return f"unknown metric {cond.field}"

    if isinstance(cond, (StreakCondition, ProgressCondition)):
        if op not in _NUMERIC_OPERATORS:
            return f"operator {op} not supported for {cond.source} conditions"
        return None

    if isinstance(cond, ActivityCondition):
        if cond.field == "context":
            if op in {"gte", "lte"} and not _is_number(cond.value):
                return f"operator {op} needs a numeric value"
            return None
        if op in {"gte", "lte"}:
            return f"operator {op} not supported for activity {cond.field}"
        if not isinstance(cond.value, str):
            return f"activity {cond.field} needs a text value"
        allowed = {e.value for e in (ActivityType if cond.field == "type" else ScenarioDifficulty)}
        if op in {"eq", "ne"} and cond.value not in allowed:
            return f"unknown {cond.field} value {cond.value}"
        return None

    return "unknown condition source"


def _actual_value(cond: Any, facts: BonusFacts) -> Any:
    if isinstance(cond, MetricCondition):
        return facts.metrics.get(cond.field)
    if isinstance(cond, StreakCondition):
        return facts.streaks.get(cond.streak_type.value, 0)
    if isinstance(cond, ProgressCondition):
        return facts.total_xp if cond.field == "total_xp" else facts.level
    if isinstance(cond, ActivityCondition):
        if cond.field == "type":
            return facts.activity.type.value
        if cond.field == "difficulty":
            return facts.activity.scenario_difficulty.value
        return facts.activity.context_value(cond.key or "")
    return None


def _field_name(cond: Any) -> str:
    if isinstance(cond, StreakCondition):
        return f"{cond.streak_type.value}_streak"
    if isinstance(cond, ActivityCondition) and cond.field == "context":
        return f"context.{cond.key}"
    return str(cond.field)


def describe_bonus_condition(cond: Any) -> str:
    expected = cond.value
    if isinstance(expected, bool):
        expected = "true" if expected else "false"
    elif _is_number(expected):
        expected = f"{expected:g}"
    return f"{_label(_field_name(cond))} {_OPERATOR_SYMBOLS[cond.operator]} {expected}"


def _compare(actual: Any, operator: str, expected: Any) -> bool:
    if operator in {"gte", "lte"}:
        if not (_is_number(actual) and _is_number(expected)):
            return False
        return actual >= expected if operator == "gte" else actual <= expected
    if operator == "contains":
        if isinstance(actual, str):
            return str(expected).lower() in actual.lower()
        if isinstance(actual, (list, tuple, set)):
            return expected in actual
        return False
    if isinstance(expected, bool) or isinstance(actual, bool):
        same = isinstance(actual, bool) and isinstance(expected, bool) and actual is expected
    else:
        same = _loose_equals(actual, expected)
    return same if operator == "eq" else not same


def _distance(actual: Any, operator: str, expected: Any) -> Optional[float]:
    if operator not in {"gte", "lte"} or not (_is_number(actual) and _is_number(expected)):
        return None
    gap = expected - actual if operator == "gte" else actual - expected
    return float(max(gap, 0))


def evaluate_bonus_condition(cond: Any, facts: BonusFacts) -> ConditionCheck:
    actual = _actual_value(cond, facts)
    met = _compare(actual, cond.operator, cond.value)
    return ConditionCheck(
        description=describe_bonus_condition(cond),
        source=cond.source,
        field=_field_name(cond),
        operator=cond.operator,
        expected=cond.value,
        actual=actual,
        met=met,
        distance=None if met else _distance(actual, cond.operator, cond.value),
    )


def evaluate_bonus_rule(rule: BonusRule, facts: BonusFacts) -> List[ConditionCheck]:
    return [evaluate_bonus_condition(c, facts) for c in rule.conditions]


def is_near_miss(rule: BonusRule, checks: List[ConditionCheck]) -> bool:
    """
    A rule that did not fire is a near miss when every unmet condition is a numeric
    threshold no further than the rule's near_miss_margin away.
    """
    unmet = [c for c in checks if not c.met]
    if not unmet:
        return False
    return all(c.distance is not None and c.distance <= rule.near_miss_margin for c in unmet)


def streak_counts(streaks: Mapping[str, Any]) -> Dict[str, int]:
    """Flatten {type: StreakData} into {type: current_streak}."""
    return {name: getattr(data, "current_streak", 0) for name, data in streaks.items()}
