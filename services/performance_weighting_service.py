# services/performance_weighting_service.py
"""
Performance scorer.

Turns raw PerformanceMetrics into one weighted 0-100 score:

1. pick the applicable weight configuration (highest priority among active,
   time-valid configurations whose applicability matches the context; ties go to
   the smallest id; default_balanced when nothing else matches),
2. apply the configuration's matching context rules additively in priority order,
   clamp at zero and renormalize to 1.0,
3. weight the four scored metrics, round half up,
4. apply the bounded experience/difficulty/resolution adjustments and clamp,
5. map the score to a performance tier.

Pure and synchronous: one call reads one rules snapshot.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple

from app.core.logging import get_logger
from app.core.xp_config import (
    DEFAULT_WEIGHT_CONFIGURATION_ID,
    ConfigurationError,
    DIFFICULTY_EXCELLENCE_MIN_SCORE,
    DIFFICULTY_EXCELLENCE_POINTS,
    EXPERIENCE_BONUS_POINTS,
    MAX_TOTAL_ADJUSTMENT,
    PERFORMANCE_TIERS,
    SLOW_RESOLUTION_MINUTES,
    SLOW_RESOLUTION_PENALTY_POINTS,
    get_tier_band,
)
from app.models.xp_activity import SCORED_METRICS, PerformanceContext, PerformanceMetrics, ScenarioDifficulty
from app.models.xp_results import (
    ContextRuleApplication,
    MetricContribution,
    PerformanceAdjustment,
    PerformanceCalculationResult,
    PerformanceTier,
)
from app.models.xp_rules import WeightConfiguration
from app.utils.rounding import round_half_up
from services.rule_conditions import evaluate_context_condition, evaluate_context_conditions
from services.rules_config_service import RulesConfigService, RulesSnapshot, get_rules_config_service

logger = get_logger()

METRIC_LABELS: Dict[str, str] = {
    "technical_accuracy": "Technical accuracy",
    "communication_quality": "Communication quality",
    "customer_satisfaction": "Customer satisfaction",
    "process_compliance": "Process compliance",
}

METRIC_TIPS: Dict[str, str] = {
    "technical_accuracy": "Double-check the diagnosis and verify the fix before closing the ticket.",
    "communication_quality": "Explain each step in plain language and confirm the customer understood.",
    "customer_satisfaction": "Acknowledge the customer's problem early and set clear expectations.",
    "process_compliance": "Follow the documented procedure, including verification and ticket notes.",
}

RECOMMENDATION_THRESHOLD = 70


def tier_for_score(score: int) -> PerformanceTier:
    band = get_tier_band(score)
    return PerformanceTier(
        name=band.name,
        min_score=band.min_score,
        max_score=band.max_score,
        multiplier=band.multiplier,
        description=band.description,
    )


def all_tiers() -> List[PerformanceTier]:
    return [tier_for_score(band.min_score) for band in PERFORMANCE_TIERS]


def normalize_weights(weights: Mapping[str, float]) -> Dict[str, float]:
    """Clamp each weight at zero and scale to sum to 1.0; all-zero falls back to equal weights."""
    clamped = {name: max(0.0, float(weights.get(name, 0.0))) for name in SCORED_METRICS}
    total = sum(clamped.values())
    if total <= 0:
        equal = 1.0 / len(SCORED_METRICS)
        return {name: equal for name in SCORED_METRICS}
    return {name: value / total for name, value in clamped.items()}


class PerformanceWeightingService:
    def __init__(self, rules: Optional[RulesConfigService] = None) -> None:
        self._rules = rules

    @property
    def rules(self) -> RulesConfigService:
        if self._rules is None:
            self._rules = get_rules_config_service()
        return self._rules

    # ---- Resolution -------------------------------------------------------------

    def resolve_configuration(
        self,
        context: PerformanceContext,
        *,
        snapshot: Optional[RulesSnapshot] = None,
        at: Optional[datetime] = None,
    ) -> WeightConfiguration:
        snap = snapshot or self.rules.snapshot()
        now = at or datetime.now(timezone.utc)
        candidates = [
            cfg
            for cfg in snap.weight_configurations
            if cfg.active and cfg.is_time_valid(now) and evaluate_context_conditions(cfg.applicability, context)
        ]
        if not candidates:
            default = snap.weight_configuration(DEFAULT_WEIGHT_CONFIGURATION_ID)
            if default is None:
                raise ConfigurationError(
                    f"Rules snapshot v{snap.version} has no {DEFAULT_WEIGHT_CONFIGURATION_ID} configuration"
                )
            return default
        return min(candidates, key=lambda c: (-c.priority, c.id))

    def apply_context_rules(
        self, config: WeightConfiguration, context: PerformanceContext
    ) -> Tuple[Dict[str, float], List[ContextRuleApplication]]:
        weights = dict(config.weights.as_dict())
        fired: List[ContextRuleApplication] = []
        for rule in sorted(config.context_rules, key=lambda r: (-r.priority, r.id)):
            if not evaluate_context_condition(rule.condition, context):
                continue
            for name, delta in rule.weight_adjustments.items():
                weights[name] = weights.get(name, 0.0) + delta
            fired.append(
                ContextRuleApplication(
                    rule_id=rule.id,
                    description=rule.description or rule.id,
                    adjustments=dict(rule.weight_adjustments),
                )
            )
        return normalize_weights(weights), fired

    # ---- Scoring ----------------------------------------------------------------

    def calculate_weighted_performance(
        self,
        metrics: PerformanceMetrics,
        context: PerformanceContext,
        *,
        snapshot: Optional[RulesSnapshot] = None,
        at: Optional[datetime] = None,
    ) -> PerformanceCalculationResult:
        snap = snapshot or self.rules.snapshot()
        config = self.resolve_configuration(context, snapshot=snap, at=at)
        weights, fired = self.apply_context_rules(config, context)

        contributions: Dict[str, MetricContribution] = {}
        weighted = 0.0
        for name in SCORED_METRICS:
            value = float(metrics.get(name))
            part = value * weights[name]
            weighted += part
            contributions[name] = MetricContribution(
                value=value, weight=round(weights[name], 4), contribution=round(part, 2)
            )

        # Trim float noise from renormalization before rounding half up.
        base_score = round_half_up(round(weighted, 6))
        adjustments = self._adjustments(metrics, context, base_score)
        adjustment_total = sum(a.points for a in adjustments)
        adjustment_total = max(-MAX_TOTAL_ADJUSTMENT, min(MAX_TOTAL_ADJUSTMENT, adjustment_total))
        overall = max(0, min(100, base_score + adjustment_total))
        tier = tier_for_score(overall)

        result = PerformanceCalculationResult(
            overall_score=overall,
            base_score=base_score,
            weighted_score=round(weighted, 4),
            tier=tier,
            configuration_id=config.id,
            base_weights=config.weights.as_dict(),
            applied_weights={k: round(v, 4) for k, v in weights.items()},
            metric_contributions=contributions,
            fired_context_rules=fired,
            adjustments=adjustments,
            recommendations=self.get_performance_recommendations(metrics, overall),
            final_calculation=self._final_calculation(contributions, weighted, base_score, adjustments, overall),
        )
        logger.debug(
            "performance_scored",
            configuration_id=config.id,
            overall_score=overall,
            tier=tier.name,
            fired_rules=[f.rule_id for f in fired],
        )
        return result

    def _adjustments(
        self, metrics: PerformanceMetrics, context: PerformanceContext, base_score: int
    ) -> List[PerformanceAdjustment]:
        out: List[PerformanceAdjustment] = []
        if (context.user_experience or "").lower() == "expert":
            out.append(
                PerformanceAdjustment(
                    name="experience_bonus",
                    points=EXPERIENCE_BONUS_POINTS,
                    reason="Expert-level experience applied consistently",
                )
            )
        if context.difficulty_level == ScenarioDifficulty.advanced and base_score >= DIFFICULTY_EXCELLENCE_MIN_SCORE:
            out.append(
                PerformanceAdjustment(
                    name="difficulty_excellence",
                    points=DIFFICULTY_EXCELLENCE_POINTS,
                    reason=f"Scored {base_score} on an advanced scenario",
                )
            )
        if metrics.resolution_time > SLOW_RESOLUTION_MINUTES:
            out.append(
                PerformanceAdjustment(
                    name="slow_resolution",
                    points=SLOW_RESOLUTION_PENALTY_POINTS,
                    reason=f"Resolution took {metrics.resolution_time:g} minutes (target {SLOW_RESOLUTION_MINUTES})",
                )
            )
        return out

    @staticmethod
    def _final_calculation(
        contributions: Mapping[str, MetricContribution],
        weighted: float,
        base_score: int,
        adjustments: List[PerformanceAdjustment],
        overall: int,
    ) -> str:
        terms = " + ".join(f"{c.value:g}x{c.weight:g}" for c in contributions.values())
        line = f"{terms} = {weighted:.2f} -> {base_score}"
        for adj in adjustments:
            line += f" {adj.points:+d} ({adj.name})"
        if adjustments:
            line += f" = {overall}"
        return line

    # ---- Recommendations --------------------------------------------------------

    def get_performance_recommendations(self, metrics: PerformanceMetrics, overall_score: int) -> List[str]:
        recs: List[str] = []
        for name in SCORED_METRICS:
            value = float(metrics.get(name))
            if value < RECOMMENDATION_THRESHOLD:
                recs.append(f"{METRIC_LABELS[name]} is {value:g}: {METRIC_TIPS[name]}")
        if metrics.resolution_time > SLOW_RESOLUTION_MINUTES:
            recs.append(
                f"Resolution took {metrics.resolution_time:g} minutes; aim for under {SLOW_RESOLUTION_MINUTES} to avoid the slow-resolution penalty."
            )
        if not metrics.knowledge_sharing:
            recs.append("Share what you learned with the team to earn the knowledge sharing bonus.")
        if not recs and overall_score < 90:
            weakest = min(SCORED_METRICS, key=lambda n: float(metrics.get(n)))
            recs.append(f"Your weakest area is {METRIC_LABELS[weakest].lower()}: {METRIC_TIPS[weakest]}")
        return recs

    def get_performance_tier(self, score: int) -> PerformanceTier:
        return tier_for_score(max(0, min(100, int(score))))

    # ---- Configuration management ---------------------------------------------

    def list_weight_configurations(self, active_only: bool = False) -> List[WeightConfiguration]:
        return self.rules.list_weight_configurations(active_only=active_only)

    def create_weight_configuration(self, data: Mapping[str, Any]) -> WeightConfiguration:
        return self.rules.create_weight_configuration(data)

    def update_weight_configuration(self, config_id: str, updates: Mapping[str, Any]) -> WeightConfiguration:
        return self.rules.update_weight_configuration(config_id, updates)

    def remove_weight_configuration(self, config_id: str) -> None:
        self.rules.remove_weight_configuration(config_id)
