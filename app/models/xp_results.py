# app/models/xp_results.py
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import Field

from app.models.base import FrozenCamelModel, utcnow


class PerformanceTier(FrozenCamelModel):
    name: str
    min_score: int
    max_score: int
    multiplier: float
    description: str = ""

    def contains(self, score: int) -> bool:
        return self.min_score <= score <= self.max_score


class MetricContribution(FrozenCamelModel):
    value: float
    weight: float
    contribution: float


class ContextRuleApplication(FrozenCamelModel):
    rule_id: str
    description: str
    adjustments: Dict[str, float]


class PerformanceAdjustment(FrozenCamelModel):
    name: str
    points: int
    reason: str


class PerformanceCalculationResult(FrozenCamelModel):
    overall_score: int = Field(ge=0, le=100)
    base_score: int = Field(description="Rounded weighted score before adjustments.")
    weighted_score: float
    tier: PerformanceTier
    configuration_id: str
    base_weights: Dict[str, float]
    applied_weights: Dict[str, float]
    metric_contributions: Dict[str, MetricContribution]
    fired_context_rules: List[ContextRuleApplication] = Field(default_factory=list)
    adjustments: List[PerformanceAdjustment] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)
    final_calculation: str = ""

    @property
    def performance_multiplier(self) -> float:
        return self.tier.multiplier


# =========================
# Bonuses
# =========================

class ConditionCheck(FrozenCamelModel):
    """One evaluated bonus condition, with the value it was compared against."""

    description: str
    source: str
    field: str
    operator: str
    expected: Any
    actual: Any = None
    met: bool
    distance: Optional[float] = Field(
        default=None, description="Points short of a numeric threshold; None when not numeric."
    )


class BonusApplication(FrozenCamelModel):
    rule_id: str
    name: str
    category: str
    bonus_points: int
    rarity: str
    description: str = ""
    conditions_met: List[ConditionCheck] = Field(default_factory=list)


class NearMiss(FrozenCamelModel):
    rule_id: str
    name: str
    category: str
    bonus_points: int
    rarity: str
    unmet_conditions: List[ConditionCheck]
    hint: str


class SpecialEventBonus(FrozenCamelModel):
    event_id: str
    name: str
    multiplier: float
    bonus_points: int


class BonusCalculationResult(FrozenCamelModel):
    applications: List[BonusApplication] = Field(default_factory=list)
    rule_bonus_total: int = 0
    special_event: Optional[SpecialEventBonus] = None
    total_bonus: int = 0
    near_misses: List[NearMiss] = Field(default_factory=list)
    evaluated_rule_ids: List[str] = Field(default_factory=list)


# =========================
# Calculator
# =========================

StepOperation = Literal["lookup", "multiply", "round", "add"]


class CalculationStep(FrozenCamelModel):
    step: int
    name: str
    operation: StepOperation
    inputs: Dict[str, Any]
    output: float
    reasoning: str


class XPBreakdown(FrozenCamelModel):
    activity_type: str
    difficulty: str
    base_xp: int
    difficulty_multiplier: float
    performance_score: int
    performance_tier: str
    performance_multiplier: float
    pre_bonus_xp: int
    bonus_xp: int
    total_xp: int
    steps: List[CalculationStep]
    bonuses: List[BonusApplication] = Field(default_factory=list)
    special_event: Optional[SpecialEventBonus] = None
    explanation: List[str] = Field(default_factory=list)


class XPCalculationResult(FrozenCamelModel):
    total_xp: int
    breakdown: XPBreakdown
    performance: PerformanceCalculationResult
    bonus: BonusCalculationResult
    calculated_at: datetime = Field(default_factory=utcnow)


class XPRange(FrozenCamelModel):
    activity_type: str
    difficulty: str
    min_xp: int
    typical_xp: int
    max_xp: int


class BonusOpportunity(FrozenCamelModel):
    rule_id: str
    name: str
    category: str
    bonus_points: int
    rarity: str
    description: str = ""
    requirements: List[str]


class StreakBonusSummary(FrozenCamelModel):
    user_id: str
    streaks: Dict[str, int]
    eligible: List[BonusOpportunity] = Field(default_factory=list)
    total_eligible_points: int = 0
    recommendations: List[str] = Field(default_factory=list)


class BonusRuleStats(FrozenCamelModel):
    rule_id: str
    name: str
    category: str
    times_awarded: int = 0
    total_points: int = 0
    award_rate: float = Field(default=0.0, ge=0, le=1)
