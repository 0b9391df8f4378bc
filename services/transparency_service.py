# services/transparency_service.py
"""
Transparency report builder.

Builds a TransparencyReport from one stored XPRecord: the calculator breakdown,
the scorer's explanation and the bonus applications recorded at award time.
Nothing is recomputed against live configuration, so a report regenerated
later explains exactly the number that was awarded. Explanation queries are
answered from the stored report alone.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from app.core.logging import get_logger
from app.core.xp_config import get_bonus_rarity, get_tier_band
from app.models.xp_activity import SCORED_METRICS
from app.models.xp_ledger import XPRecord
from app.models.xp_results import XPBreakdown
from app.models.xp_transparency import (
    AuditTrailEntry,
    BonusExplanation,
    BonusExplanationSection,
    CalculationBreakdownSection,
    ComparativeAnalysisSection,
    ExplanationQuery,
    ExplanationResponse,
    FairnessSection,
    ImprovementSuggestion,
    MetricExplanation,
    MissedOpportunity,
    PerformanceExplanationSection,
    TransparencyReport,
    TransparencyValidation,
)
from app.utils.rounding import round_half_up
from services.audit_service import make_audit_entry, verify_audit_trail
from services.comparison_service import ComparisonData
from services.performance_weighting_service import METRIC_LABELS, METRIC_TIPS

logger = get_logger()

STRENGTH_THRESHOLD = 85
ADEQUATE_THRESHOLD = 70
SUGGESTION_METRIC_CEILING = 90
SUGGESTION_STEP = 10
MAX_METRIC_SUGGESTIONS = 3
NO_COMPARISON_MESSAGE = "No comparison data available."


class ReportNotFoundError(LookupError):
    def __init__(self, report_id: str):
        super().__init__(f"Transparency report not found: {report_id}")
        self.report_id = report_id


def _close(a: float, b: float) -> bool:
    return abs(float(a) - float(b)) < 1e-6


def _fmt(value: Any) -> str:
    if isinstance(value, bool):
        return "yes" if value else "no"
    if isinstance(value, (int, float)):
        return f"{value:g}"
    return str(value)


def consistency_checks(breakdown: XPBreakdown) -> List[Tuple[str, bool]]:
    """Re-walk the step chain: every step must follow from the one before it."""
    steps = {s.name: s for s in breakdown.steps}
    checks: List[Tuple[str, bool]] = []

    base = steps.get("base_xp")
    diff = steps.get("difficulty_multiplier")
    perf = steps.get("performance_multiplier")
    rounded = steps.get("round")
    bonus = steps.get("bonuses")
    if not (base and diff and perf and rounded and bonus):
        return [("all calculation steps present", False)]

    checks.append(("base XP step matches breakdown", _close(base.output, breakdown.base_xp)))
    checks.append((
        "difficulty step follows from base XP",
        _close(diff.output, round(breakdown.base_xp * breakdown.difficulty_multiplier, 6)),
    ))
    checks.append((
        "performance step follows from difficulty step",
        _close(perf.output, round(diff.output * breakdown.performance_multiplier, 6)),
    ))
    checks.append((
        "rounding step rounds half up",
        _close(rounded.output, round_half_up(perf.output)) and _close(rounded.output, breakdown.pre_bonus_xp),
    ))
    bonus_sum = sum(a.bonus_points for a in breakdown.bonuses) + (
        breakdown.special_event.bonus_points if breakdown.special_event else 0
    )
    checks.append(("bonus lines add up to bonus XP", bonus_sum == breakdown.bonus_xp))
    checks.append((
        "total equals pre-bonus XP plus bonus XP",
        _close(bonus.output, breakdown.pre_bonus_xp + breakdown.bonus_xp) and _close(bonus.output, breakdown.total_xp),
    ))
    checks.append((
        "tier matches performance score",
        get_tier_band(breakdown.performance_score).name == breakdown.performance_tier,
    ))
    return checks


def bias_score(weights: Dict[str, float]) -> float:
    """0 for equal weights, 1 when a single dimension carries all the weight."""
    if not weights:
        return 0.0
    equal = 1.0 / len(weights)
    max_spread = 2 * (1 - equal)
    spread = sum(abs(w - equal) for w in weights.values())
    return round(min(1.0, spread / max_spread), 4)


class TransparencyService:
    # ---- Report -----------------------------------------------------------------

    def build_report(
        self,
        record: XPRecord,
        comparison: Optional[ComparisonData] = None,
        *,
        report_id: Optional[str] = None,
        generated_at: Optional[datetime] = None,
    ) -> TransparencyReport:
        report = TransparencyReport(
            id=report_id or f"rpt_{uuid.uuid4().hex}",
            user_id=record.user_id,
            activity_id=record.activity_id,
            record_id=record.id,
            total_xp=record.breakdown.total_xp,
            generated_at=generated_at or datetime.now(timezone.utc),
            calculation_breakdown=self._calculation_section(record),
            performance_explanation=self._performance_section(record),
            bonus_explanation=self._bonus_section(record),
            comparative_analysis=self._comparative_section(comparison),
            fairness_metrics=self._fairness_section(record),
            improvement_suggestions=self.improvement_suggestions(record),
        )
        logger.info(
            "transparency_report_generated",
            report_id=report.id,
            record_id=record.id,
            total_xp=report.total_xp,
            comparison_available=report.comparative_analysis.available,
        )
        return report

    def _calculation_section(self, record: XPRecord) -> CalculationBreakdownSection:
        b = record.breakdown
        summary = (
            f"{b.base_xp} base XP x {b.difficulty_multiplier:g} ({b.difficulty}) "
            f"x {b.performance_multiplier:g} ({b.performance_tier}) = {b.pre_bonus_xp} XP, "
            f"plus {b.bonus_xp} bonus XP = {b.total_xp} XP"
        )
        return CalculationBreakdownSection(
            base_xp=b.base_xp,
            difficulty_multiplier=b.difficulty_multiplier,
            performance_multiplier=b.performance_multiplier,
            pre_bonus_xp=b.pre_bonus_xp,
            bonus_xp=b.bonus_xp,
            total_xp=b.total_xp,
            steps=b.steps,
            summary=summary,
        )

    def _performance_section(self, record: XPRecord) -> PerformanceExplanationSection:
        perf = record.performance
        metrics: List[MetricExplanation] = []
        for name in SCORED_METRICS:
            contrib = perf.metric_contributions[name]
            if contrib.value >= STRENGTH_THRESHOLD:
                assessment = "strength"
            elif contrib.value >= ADEQUATE_THRESHOLD:
                assessment = "adequate"
            else:
                assessment = "weakness"
            metrics.append(
                MetricExplanation(
                    metric=name,
                    value=contrib.value,
                    weight=contrib.weight,
                    contribution=contrib.contribution,
                    assessment=assessment,
                )
            )

        return PerformanceExplanationSection(
            overall_score=perf.overall_score,
            tier=perf.tier.name,
            tier_description=perf.tier.description,
            performance_multiplier=perf.tier.multiplier,
            configuration_id=perf.configuration_id,
            metrics=metrics,
            weighting_rationale=self._weighting_rationale(record),
            context_factors=self._context_factors(record),
            adjustments=perf.adjustments,
        )

    @staticmethod
    def _weighting_rationale(record: XPRecord) -> str:
        perf = record.performance
        weights = perf.applied_weights
        top = max(weights.values()) if weights else 0
        leaders = [METRIC_LABELS[n].lower() for n, w in weights.items() if _close(w, top)]
        if len(leaders) == len(weights):
            text = f"Configuration '{perf.configuration_id}' weighs all four dimensions equally."
        else:
            text = f"Configuration '{perf.configuration_id}' puts the most weight on {' and '.join(leaders)} ({top:.0%})."
        if perf.fired_context_rules:
            text += " Adjusted by: " + "; ".join(r.description for r in perf.fired_context_rules) + "."
        return text

    @staticmethod
    def _context_factors(record: XPRecord) -> List[str]:
        activity = record.activity_data
        factors = [
            f"Activity type: {activity.type.value.replace('_', ' ')}",
            f"Difficulty: {activity.scenario_difficulty.value}",
        ]
        for key in ("user_experience", "customer_type", "scenario_category"):
            value = activity.context_value(key)
            if value is not None:
                factors.append(f"{key.replace('_', ' ').capitalize()}: {value}")
        factors.extend(f"Context rule: {r.description}" for r in record.performance.fired_context_rules)
        return factors

    def _bonus_section(self, record: XPRecord) -> BonusExplanationSection:
        b = record.breakdown
        bonuses = [
            BonusExplanation(
                rule_id=a.rule_id,
                name=a.name,
                category=a.category,
                bonus_points=a.bonus_points,
                rarity=a.rarity,
                criteria=[c.description for c in a.conditions_met],
                description=a.description,
            )
            for a in b.bonuses
        ]
        missed = [
            MissedOpportunity(
                rule_id=n.rule_id,
                name=n.name,
                bonus_points=n.bonus_points,
                rarity=n.rarity,
                requirements=[f"{c.description} (you had {_fmt(c.actual)})" for c in n.unmet_conditions],
                hint=n.hint,
            )
            for n in record.bonus.near_misses
        ]
        event = None
        if b.special_event:
            event = f"{b.special_event.name}: bonus XP x{b.special_event.multiplier:g} (+{b.special_event.bonus_points})"
        return BonusExplanationSection(
            total_bonus=b.bonus_xp,
            bonuses=bonuses,
            special_event=event,
            missed_opportunities=missed,
        )

    @staticmethod
    def _comparative_section(comparison: Optional[ComparisonData]) -> ComparativeAnalysisSection:
        if comparison is None or (comparison.population is None and comparison.history is None):
            return ComparativeAnalysisSection(available=False, message=NO_COMPARISON_MESSAGE)
        parts: List[str] = []
        if comparison.population:
            p = comparison.population
            parts.append(
                f"This award is at the {p.percentile:g}th percentile of {p.sample_size} comparable activities "
                f"(average {p.average_xp:g} XP)."
            )
        if comparison.history:
            h = comparison.history
            parts.append(
                f"Compared with your previous {h.sample_size} activities (average {h.previous_average_xp:g} XP) "
                f"this is {h.xp_change_pct:+g}% ({h.trend})."
            )
        return ComparativeAnalysisSection(
            available=True,
            message=" ".join(parts),
            population=comparison.population,
            history=comparison.history,
        )

    def _fairness_section(self, record: XPRecord) -> FairnessSection:
        b = record.breakdown
        checks = consistency_checks(b)
        consistency = sum(1 for _, ok in checks if ok) / len(checks)

        with_reasoning = sum(1 for s in b.steps if s.reasoning.strip()) / len(b.steps) if b.steps else 0.0
        explainability = 0.6 * with_reasoning
        perf = record.performance
        if perf.metric_contributions:
            explainability += 0.1
        if perf.final_calculation:
            explainability += 0.1
        if all(a.conditions_met for a in b.bonuses):
            explainability += 0.1
        if perf.configuration_id:
            explainability += 0.1

        return FairnessSection(
            bias_score=bias_score(perf.applied_weights),
            consistency_score=round(consistency, 4),
            explainability_score=round(min(1.0, explainability), 4),
            audit_trail=self.build_audit_trail(record),
        )

    @staticmethod
    def build_audit_trail(record: XPRecord) -> List[AuditTrailEntry]:
        """Entries are stamped with the award time so regenerating a report reproduces them."""
        at = record.timestamp
        perf = record.performance
        b = record.breakdown
        entries = [
            make_audit_entry(
                "performance_scored",
                {
                    "metrics": record.activity_data.performance_metrics,
                    "configuration_id": perf.configuration_id,
                    "applied_weights": perf.applied_weights,
                    "fired_context_rules": [r.rule_id for r in perf.fired_context_rules],
                },
                {"overall_score": perf.overall_score, "tier": perf.tier.name, "multiplier": perf.tier.multiplier},
                at,
            ),
            make_audit_entry(
                "bonuses_evaluated",
                {"evaluated_rule_ids": record.bonus.evaluated_rule_ids},
                {
                    "applied": {a.rule_id: a.bonus_points for a in record.bonus.applications},
                    "special_event": record.bonus.special_event,
                    "total_bonus": record.bonus.total_bonus,
                },
                at,
            ),
        ]
        for step in b.steps:
            entries.append(
                make_audit_entry(f"calculation_step:{step.name}", step.inputs, {"output": step.output}, at)
            )
        entries.append(
            make_audit_entry(
                "xp_awarded",
                {"record_id": record.id, "user_id": record.user_id, "activity_id": record.activity_id},
                {"xp_awarded": record.xp_awarded},
                at,
            )
        )
        return entries

    # ---- Improvement suggestions -------------------------------------------------

    def improvement_suggestions(self, record: XPRecord) -> List[ImprovementSuggestion]:
        perf = record.performance
        b = record.breakdown
        adjustment = perf.overall_score - perf.base_score
        suggestions: List[ImprovementSuggestion] = []
        covered_rules: set[str] = set()

        candidates = sorted(
            (n for n in SCORED_METRICS if perf.metric_contributions[n].value < SUGGESTION_METRIC_CEILING),
            key=lambda n: perf.metric_contributions[n].value,
        )[:MAX_METRIC_SUGGESTIONS]
        for name in candidates:
            contrib = perf.metric_contributions[name]
            target = min(100.0, contrib.value + SUGGESTION_STEP)
            new_weighted = perf.weighted_score + (target - contrib.value) * perf.applied_weights[name]
            new_score = max(0, min(100, round_half_up(round(new_weighted, 6)) + adjustment))
            new_mult = get_tier_band(new_score).multiplier
            new_pre = round_half_up(round(b.base_xp * b.difficulty_multiplier * new_mult, 6))
            gain = max(0, new_pre - b.pre_bonus_xp)

            for miss in record.bonus.near_misses:
                unmet = miss.unmet_conditions
                if all(c.field == name and c.operator == "gte" and target >= c.expected for c in unmet):
                    gain += miss.bonus_points
                    covered_rules.add(miss.rule_id)

            suggestions.append(
                ImprovementSuggestion(
                    area=name,
                    current=contrib.value,
                    target=target,
                    suggestion=f"Raise {METRIC_LABELS[name].lower()} from {contrib.value:g} to {target:g}. {METRIC_TIPS[name]}",
                    potential_xp_gain=gain,
                )
            )

        for miss in record.bonus.near_misses:
            if miss.rule_id in covered_rules:
                continue
            first = miss.unmet_conditions[0]
            suggestions.append(
                ImprovementSuggestion(
                    area=miss.rule_id,
                    current=float(first.actual) if isinstance(first.actual, (int, float)) else 0.0,
                    target=float(first.expected) if isinstance(first.expected, (int, float)) else 0.0,
                    suggestion=miss.hint,
                    potential_xp_gain=miss.bonus_points,
                )
            )
        return suggestions

    # ---- Queries ----------------------------------------------------------------

    def explain(self, report: TransparencyReport, query: ExplanationQuery) -> ExplanationResponse:
        detailed = query.detail_level == "detailed"
        handler = {
            "why_this_score": self._why_this_score,
            "how_to_improve": self._how_to_improve,
            "bonus_details": self._bonus_details,
            "comparison_analysis": self._comparison_analysis,
            "weight_rationale": self._weight_rationale,
        }[query.query_type]
        answer, details, data = handler(report, detailed)
        return ExplanationResponse(
            report_id=report.id,
            query_type=query.query_type,
            detail_level=query.detail_level,
            answer=answer,
            details=details if detailed else [],
            data=data if detailed else {},
        )

    def _why_this_score(self, report: TransparencyReport, detailed: bool):
        calc = report.calculation_breakdown
        perf = report.performance_explanation
        answer = (
            f"You earned {report.total_xp} XP. Your performance score was {perf.overall_score} "
            f"({perf.tier} tier, x{perf.performance_multiplier:g}), giving {calc.pre_bonus_xp} XP, "
            f"plus {calc.bonus_xp} bonus XP."
        )
        details = [s.reasoning for s in calc.steps]
        details.extend(f"{a.name}: {a.points:+d} ({a.reason})" for a in perf.adjustments)
        return answer, details, {"summary": calc.summary, "steps": [s.model_dump(mode="json") for s in calc.steps]}

    def _how_to_improve(self, report: TransparencyReport, detailed: bool):
        suggestions = sorted(report.improvement_suggestions, key=lambda s: -s.potential_xp_gain)
        if not suggestions:
            return "Every scored dimension is already at 90 or above. Keep it up.", [], {}
        best = suggestions[0]
        answer = f"The biggest opportunity: {best.suggestion}"
        if best.potential_xp_gain:
            answer += f" (worth up to {best.potential_xp_gain} more XP)"
        details = [f"{s.suggestion} (+{s.potential_xp_gain} XP)" for s in suggestions]
        return answer, details, {"suggestions": [s.model_dump(mode="json") for s in suggestions]}

    def _bonus_details(self, report: TransparencyReport, detailed: bool):
        section = report.bonus_explanation
        if section.bonuses:
            names = ", ".join(f"{b.name} (+{b.bonus_points}, {b.rarity})" for b in section.bonuses)
            answer = f"You earned {section.total_bonus} bonus XP: {names}."
        else:
            answer = "No bonuses were earned for this activity."
        if section.special_event:
            answer += f" {section.special_event}."
        details = [f"{b.name}: {', '.join(b.criteria)}" for b in section.bonuses]
        details.extend(f"Missed {m.name} (+{m.bonus_points}): {'; '.join(m.requirements)}" for m in section.missed_opportunities)
        return answer, details, {"bonus_explanation": section.model_dump(mode="json")}

    def _comparison_analysis(self, report: TransparencyReport, detailed: bool):
        section = report.comparative_analysis
        data = section.model_dump(mode="json") if section.available else {}
        return section.message, [section.message] if section.available else [], data

    def _weight_rationale(self, report: TransparencyReport, detailed: bool):
        perf = report.performance_explanation
        details = [
            f"{METRIC_LABELS[m.metric]}: {m.value:g} x {m.weight:g} = {m.contribution:g} ({m.assessment})"
            for m in perf.metrics
        ]
        details.extend(perf.context_factors)
        return perf.weighting_rationale, details, {"metrics": [m.model_dump(mode="json") for m in perf.metrics]}

    # ---- Simple views -----------------------------------------------------------

    def get_simple_explanation(self, report: TransparencyReport) -> str:
        perf = report.performance_explanation
        calc = report.calculation_breakdown
        text = (
            f"You earned {report.total_xp} XP: {calc.pre_bonus_xp} for a {perf.tier.lower()} performance "
            f"(score {perf.overall_score})"
        )
        if report.bonus_explanation.bonuses:
            names = ", ".join(b.name for b in report.bonus_explanation.bonuses)
            text += f" and {report.bonus_explanation.total_bonus} bonus XP ({names})"
        text += "."
        if report.improvement_suggestions:
            best = max(report.improvement_suggestions, key=lambda s: s.potential_xp_gain)
            text += f" Next time: {best.suggestion}"
        return text

    def get_calculation_audit_trail(self, report: TransparencyReport) -> List[AuditTrailEntry]:
        return list(report.fairness_metrics.audit_trail)

    def validate_transparency(
        self, report: TransparencyReport, record: Optional[XPRecord] = None
    ) -> TransparencyValidation:
        issues: List[str] = []
        tampered = verify_audit_trail(report.fairness_metrics.audit_trail)
        if tampered:
            issues.append(f"audit trail checksum mismatch at entries {tampered}")
        if not report.fairness_metrics.audit_trail:
            issues.append("audit trail is empty")

        calc = report.calculation_breakdown
        if calc.total_xp != report.total_xp:
            issues.append("calculation breakdown total differs from report total")
        if not calc.steps or not _close(calc.steps[-1].output, report.total_xp):
            issues.append("last calculation step does not produce the report total")
        if report.fairness_metrics.consistency_score < 1.0:
            issues.append("calculation steps are not internally consistent")
        if not report.performance_explanation.metrics:
            issues.append("performance explanation has no metrics")
        bonus_total = sum(b.bonus_points for b in report.bonus_explanation.bonuses)
        if bonus_total > report.bonus_explanation.total_bonus:
            issues.append("listed bonuses exceed the bonus total")
        for b in report.bonus_explanation.bonuses:
            if b.rarity != get_bonus_rarity(b.bonus_points):
                issues.append(f"bonus {b.rule_id} has rarity {b.rarity}, expected {get_bonus_rarity(b.bonus_points)}")
        if record is not None:
            if record.id != report.record_id:
                issues.append("report does not belong to this record")
            elif record.xp_awarded != report.total_xp:
                issues.append("report total differs from the awarded XP")

        return TransparencyValidation(is_valid=not issues, checksums_valid=not tampered, issues=issues)
