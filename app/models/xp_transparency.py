# app/models/xp_transparency.py
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import Field

from app.models.base import FrozenCamelModel, utcnow
from app.models.xp_results import CalculationStep, PerformanceAdjustment

QueryType = Literal[
    "why_this_score",
    "how_to_improve",
    "bonus_details",
    "comparison_analysis",
    "weight_rationale",
]
DetailLevel = Literal["basic", "detailed"]


class CalculationBreakdownSection(FrozenCamelModel):
    base_xp: int
    difficulty_multiplier: float
    performance_multiplier: float
    pre_bonus_xp: int
    bonus_xp: int
    total_xp: int
    steps: List[CalculationStep]
    summary: str


class MetricExplanation(FrozenCamelModel):
    metric: str
    value: float
    weight: float
    contribution: float
    assessment: Literal["strength", "adequate", "weakness"]


class PerformanceExplanationSection(FrozenCamelModel):
    overall_score: int
    tier: str
    tier_description: str
    performance_multiplier: float
    configuration_id: str
    metrics: List[MetricExplanation]
    weighting_rationale: str
    context_factors: List[str] = Field(default_factory=list)
    adjustments: List[PerformanceAdjustment] = Field(default_factory=list)


class BonusExplanation(FrozenCamelModel):
    rule_id: str
    name: str
    category: str
    bonus_points: int
    rarity: str
    criteria: List[str]
    description: str = ""


class MissedOpportunity(FrozenCamelModel):
    rule_id: str
    name: str
    bonus_points: int
    rarity: str
    requirements: List[str]
    hint: str


class BonusExplanationSection(FrozenCamelModel):
    total_bonus: int
    bonuses: List[BonusExplanation] = Field(default_factory=list)
    special_event: Optional[str] = None
    missed_opportunities: List[MissedOpportunity] = Field(default_factory=list)


class PopulationComparison(FrozenCamelModel):
    sample_size: int
    average_xp: float
    average_score: float
    percentile: float = Field(ge=0, le=100)


class HistoryComparison(FrozenCamelModel):
    sample_size: int
    previous_average_xp: float
    previous_average_score: float
    xp_change_pct: float
    trend: Literal["improving", "stable", "declining"]


class ComparativeAnalysisSection(FrozenCamelModel):
    available: bool
    message: str
    population: Optional[PopulationComparison] = None
    history: Optional[HistoryComparison] = None


class AuditTrailEntry(FrozenCamelModel):
    timestamp: datetime
    action: str
    parameters: Dict[str, Any]
    result: Dict[str, Any]
    checksum: str


class FairnessSection(FrozenCamelModel):
    bias_score: float = Field(ge=0, le=1, description="0 means balanced weights, 1 means a single dimension.")
    consistency_score: float = Field(ge=0, le=1)
    explainability_score: float = Field(ge=0, le=1)
    audit_trail: List[AuditTrailEntry] = Field(default_factory=list)


class ImprovementSuggestion(FrozenCamelModel):
    area: str
    current: float
    target: float
    suggestion: str
    potential_xp_gain: int = 0


class TransparencyReport(FrozenCamelModel):
    id: str
    user_id: str
    activity_id: str
    record_id: str
    total_xp: int
    generated_at: datetime = Field(default_factory=utcnow)
    calculation_breakdown: CalculationBreakdownSection
    performance_explanation: PerformanceExplanationSection
    bonus_explanation: BonusExplanationSection
    comparative_analysis: ComparativeAnalysisSection
    fairness_metrics: FairnessSection
    improvement_suggestions: List[ImprovementSuggestion] = Field(default_factory=list)


class ExplanationQuery(FrozenCamelModel):
    query_type: QueryType
    detail_level: DetailLevel = "basic"


class ExplanationResponse(FrozenCamelModel):
    report_id: str
    query_type: QueryType
    detail_level: DetailLevel
    answer: str
    details: List[str] = Field(default_factory=list)
    data: Dict[str, Any] = Field(default_factory=dict)


class TransparencyValidation(FrozenCamelModel):
    is_valid: bool
    checksums_valid: bool
    issues: List[str] = Field(default_factory=list)
