# services/xp_calculator.py
"""
XP calculator.

totalXP = round(baseXP(type) x difficultyMultiplier(difficulty) x tierMultiplier) + bonusXP

Returns the number together with its step-by-step breakdown. The breakdown is
the only thing the transparency builder reads, so the displayed number and the
displayed explanation cannot drift apart.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import ValidationError

from app.core.xp_config import (
    BASE_XP_VALUES,
    DIFFICULTY_MULTIPLIERS,
    PERFORMANCE_TIERS,
    get_base_xp,
    get_difficulty_multiplier,
)
from app.models.xp_activity import ActivityData, ActivityType, ScenarioDifficulty
from app.models.xp_results import (
    BonusCalculationResult,
    CalculationStep,
    PerformanceCalculationResult,
    PerformanceTier,
    XPBreakdown,
    XPCalculationResult,
    XPRange,
)
from app.models.xp_rules import ActivityCondition
from app.utils.rounding import round_half_up
from services.bonus_engine import active_rules, select_special_event
from services.performance_weighting_service import tier_for_score
from services.rules_config_service import RulesSnapshot


class ActivityValidationError(ValueError):
    """Malformed or out-of-range ActivityData; raised before any scoring happens."""

    def __init__(self, msg: str, errors: Optional[List[str]] = None):
        super().__init__(msg)
        self.errors = errors or []


def validate_activity_data(raw: Union[ActivityData, Mapping[str, Any]]) -> ActivityData:
    if isinstance(raw, ActivityData):
        return raw
    try:
        return ActivityData.model_validate(raw)
    except ValidationError as e:
        errors = [
            f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg')}" for err in e.errors()
        ]
        raise ActivityValidationError("Invalid activity data", errors=errors) from e


def _trim(value: float) -> float:
    return round(value, 6)


class XPCalculator:
    def calculate_xp(
        self,
        activity: ActivityData,
        performance: PerformanceCalculationResult,
        bonus: BonusCalculationResult,
    ) -> XPCalculationResult:
        activity_type = activity.type.value
        difficulty = activity.scenario_difficulty.value
        base_xp = get_base_xp(activity_type)
        difficulty_multiplier = get_difficulty_multiplier(difficulty)
        tier = performance.tier

        after_difficulty = _trim(base_xp * difficulty_multiplier)
        after_performance = _trim(after_difficulty * tier.multiplier)
        pre_bonus = round_half_up(after_performance)
        total = pre_bonus + bonus.total_bonus

        steps: List[CalculationStep] = [
            CalculationStep(
                step=1,
                name="base_xp",
                operation="lookup",
                inputs={"activity_type": activity_type},
                output=base_xp,
                reasoning=f"{_pretty(activity_type)} activities are worth {base_xp} base XP.",
            ),
            CalculationStep(
                step=2,
                name="difficulty_multiplier",
                operation="multiply",
                inputs={"base_xp": base_xp, "difficulty": difficulty, "multiplier": difficulty_multiplier},
                output=after_difficulty,
                reasoning=f"{difficulty.capitalize()} difficulty multiplies XP by {difficulty_multiplier:g}: {base_xp} x {difficulty_multiplier:g} = {after_difficulty:g}.",
            ),
            CalculationStep(
                step=3,
                name="performance_multiplier",
                operation="multiply",
                inputs={
                    "xp": after_difficulty,
                    "performance_score": performance.overall_score,
                    "tier": tier.name,
                    "multiplier": tier.multiplier,
                },
                output=after_performance,
                reasoning=f"A performance score of {performance.overall_score} is in the {tier.name} tier ({tier.min_score}-{tier.max_score}), multiplier {tier.multiplier:g}: {after_difficulty:g} x {tier.multiplier:g} = {after_performance:g}.",
            ),
            CalculationStep(
                step=4,
                name="round",
                operation="round",
                inputs={"xp": after_performance},
                output=pre_bonus,
                reasoning=f"{after_performance:g} rounds to {pre_bonus} XP before bonuses.",
            ),
            CalculationStep(
                step=5,
                name="bonuses",
                operation="add",
                inputs={
                    "xp": pre_bonus,
                    "bonuses": {a.rule_id: a.bonus_points for a in bonus.applications},
                    "special_event": bonus.special_event.bonus_points if bonus.special_event else 0,
                    "bonus_xp": bonus.total_bonus,
                },
                output=total,
                reasoning=_bonus_reasoning(pre_bonus, bonus, total),
            ),
        ]

        breakdown = XPBreakdown(
            activity_type=activity_type,
            difficulty=difficulty,
            base_xp=base_xp,
            difficulty_multiplier=difficulty_multiplier,
            performance_score=performance.overall_score,
            performance_tier=tier.name,
            performance_multiplier=tier.multiplier,
            pre_bonus_xp=pre_bonus,
            bonus_xp=bonus.total_bonus,
            total_xp=total,
            steps=steps,
            bonuses=bonus.applications,
            special_event=bonus.special_event,
            explanation=[s.reasoning for s in steps],
        )
        return XPCalculationResult(
            total_xp=total,
            breakdown=breakdown,
            performance=performance,
            bonus=bonus,
        )

    # ---- Reference data ---------------------------------------------------------

    def get_performance_tier(self, score: int) -> PerformanceTier:
        return tier_for_score(max(0, min(100, int(score))))

    def get_xp_ranges(self) -> List[XPRange]:
        """Pre-bonus XP from the lowest to the highest tier for every type and difficulty."""
        low = min(t.multiplier for t in PERFORMANCE_TIERS)
        high = max(t.multiplier for t in PERFORMANCE_TIERS)
        typical = tier_for_score(80).multiplier
        ranges: List[XPRange] = []
        for activity_type, base in BASE_XP_VALUES.items():
            for difficulty, mult in DIFFICULTY_MULTIPLIERS.items():
                ranges.append(
                    XPRange(
                        activity_type=activity_type,
                        difficulty=difficulty,
                        min_xp=round_half_up(_trim(base * mult * low)),
                        typical_xp=round_half_up(_trim(base * mult * typical)),
                        max_xp=round_half_up(_trim(base * mult * high)),
                    )
                )
        return ranges

    def calculate_max_possible_xp(
        self,
        activity_type: Union[ActivityType, str],
        difficulty: Union[ScenarioDifficulty, str],
        snapshot: RulesSnapshot,
        at: Optional[datetime] = None,
    ) -> Dict[str, int]:
        """
        Upper bound for one activity: top tier plus every active non-milestone rule
        that is not restricted to another activity type, scaled by the strongest
        running special event.
        """
        type_value = ActivityType(activity_type).value
        diff_value = ScenarioDifficulty(difficulty).value
        now = at or datetime.now(timezone.utc)
        high = max(t.multiplier for t in PERFORMANCE_TIERS)
        base = round_half_up(_trim(get_base_xp(type_value) * get_difficulty_multiplier(diff_value) * high))

        bonus = 0
        for rule in active_rules(snapshot, now):
            if rule.category == "milestone":
                continue
            if any(_excludes(c, type_value, diff_value) for c in rule.conditions):
                continue
            bonus += rule.bonus_points
        event = select_special_event(snapshot.special_events, now)
        if event is not None and bonus > 0:
            bonus += round_half_up(bonus * (event.bonus_multiplier - 1))
        return {"base_xp": base, "bonus_xp": bonus, "total_xp": base + bonus}


def _excludes(cond: Any, activity_type: str, difficulty: str) -> bool:
    if not isinstance(cond, ActivityCondition) or cond.operator != "eq":
        return False
    if cond.field == "type":
        return cond.value != activity_type
    if cond.field == "difficulty":
        return cond.value != difficulty
    return False


def _pretty(name: str) -> str:
    return name.replace("_", " ").capitalize()


def _bonus_reasoning(pre_bonus: int, bonus: BonusCalculationResult, total: int) -> str:
    if not bonus.applications:
        return f"No bonuses earned: total stays at {total} XP."
    parts = [f"{a.name} +{a.bonus_points}" for a in bonus.applications]
    if bonus.special_event:
        parts.append(f"{bonus.special_event.name} x{bonus.special_event.multiplier:g} +{bonus.special_event.bonus_points}")
    return f"{pre_bonus} + {bonus.total_bonus} bonus XP ({', '.join(parts)}) = {total} XP."
