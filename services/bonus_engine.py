# services/bonus_engine.py
"""
Bonus engine.

Evaluates the active, time-valid bonus rules (highest priority first) against one
activity's facts. Every rule whose conditions all hold contributes its fixed
points; several rules may fire together. The running special event with the
largest multiplier then adds round(total * (multiplier - 1)) as its own line.
Rules that did not fire but only missed numeric thresholds by at most their
near_miss_margin are reported as near misses.
"""

from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from app.core.logging import get_logger
from app.core.xp_config import get_bonus_rarity
from app.models.xp_ledger import StreakData, XPRecord
from app.models.xp_results import (
    BonusApplication,
    BonusCalculationResult,
    BonusOpportunity,
    BonusRuleStats,
    NearMiss,
    SpecialEventBonus,
    StreakBonusSummary,
)
from app.models.xp_rules import BonusRule, SpecialEvent, StreakCondition
from app.utils.rounding import round_half_up
from services.rule_conditions import (
    BonusFacts,
    describe_bonus_condition,
    evaluate_bonus_rule,
    is_near_miss,
)
from services.rules_config_service import RulesConfigService, RulesSnapshot, get_rules_config_service

logger = get_logger()


def active_rules(snapshot: RulesSnapshot, at: datetime) -> List[BonusRule]:
    rules = [r for r in snapshot.bonus_rules if r.active and r.is_time_valid(at)]
    return sorted(rules, key=lambda r: (-r.priority, r.id))


def select_special_event(events: Iterable[SpecialEvent], at: datetime) -> Optional[SpecialEvent]:
    running = [e for e in events if e.is_running(at)]
    if not running:
        return None
    return min(running, key=lambda e: (-e.bonus_multiplier, e.id))


def _near_miss_hint(rule: BonusRule, unmet: Sequence[Any]) -> str:
    parts = []
    for check in unmet:
        parts.append(f"{check.field.replace('_', ' ')} {check.distance:g} short of {check.expected:g}")
    return f"{rule.name} (+{rule.bonus_points}) was close: " + ", ".join(parts)


class BonusEngine:
    def __init__(self, rules: Optional[RulesConfigService] = None) -> None:
        self._rules = rules

    @property
    def rules(self) -> RulesConfigService:
        if self._rules is None:
            self._rules = get_rules_config_service()
        return self._rules

    def evaluate(
        self,
        facts: BonusFacts,
        *,
        snapshot: Optional[RulesSnapshot] = None,
        at: Optional[datetime] = None,
        awarded_milestones: Sequence[str] = (),
    ) -> BonusCalculationResult:
        snap = snapshot or self.rules.snapshot()
        now = at or datetime.now(timezone.utc)

        applications: List[BonusApplication] = []
        near_misses: List[NearMiss] = []
        evaluated: List[str] = []

        for rule in active_rules(snap, now):
            if rule.category == "milestone" and rule.id in awarded_milestones:
                continue
            evaluated.append(rule.id)
            checks = evaluate_bonus_rule(rule, facts)
            if all(c.met for c in checks):
                applications.append(
                    BonusApplication(
                        rule_id=rule.id,
                        name=rule.name,
                        category=rule.category,
                        bonus_points=rule.bonus_points,
                        rarity=get_bonus_rarity(rule.bonus_points),
                        description=rule.description,
                        conditions_met=checks,
                    )
                )
            elif is_near_miss(rule, checks):
                unmet = [c for c in checks if not c.met]
                near_misses.append(
                    NearMiss(
                        rule_id=rule.id,
                        name=rule.name,
                        category=rule.category,
                        bonus_points=rule.bonus_points,
                        rarity=get_bonus_rarity(rule.bonus_points),
                        unmet_conditions=unmet,
                        hint=_near_miss_hint(rule, unmet),
                    )
                )

        rule_total = sum(a.bonus_points for a in applications)
        event_bonus: Optional[SpecialEventBonus] = None
        event = select_special_event(snap.special_events, now)
        if event is not None and rule_total > 0:
            extra = round_half_up(rule_total * (event.bonus_multiplier - 1))
            event_bonus = SpecialEventBonus(
                event_id=event.id,
                name=event.name,
                multiplier=event.bonus_multiplier,
                bonus_points=extra,
            )

        total = rule_total + (event_bonus.bonus_points if event_bonus else 0)
        logger.debug(
            "bonuses_evaluated",
            fired=[a.rule_id for a in applications],
            near_misses=[n.rule_id for n in near_misses],
            total_bonus=total,
        )
        return BonusCalculationResult(
            applications=applications,
            rule_bonus_total=rule_total,
            special_event=event_bonus,
            total_bonus=total,
            near_misses=near_misses,
            evaluated_rule_ids=evaluated,
        )

    # ---- Discovery --------------------------------------------------------------

    def get_bonus_opportunities(
        self, *, snapshot: Optional[RulesSnapshot] = None, at: Optional[datetime] = None
    ) -> Dict[str, List[BonusOpportunity]]:
        """Active bonus rules grouped by category, with readable requirements."""
        snap = snapshot or self.rules.snapshot()
        grouped: Dict[str, List[BonusOpportunity]] = defaultdict(list)
        for rule in active_rules(snap, at or datetime.now(timezone.utc)):
            grouped[rule.category].append(self._opportunity(rule))
        return dict(grouped)

    @staticmethod
    def _opportunity(rule: BonusRule) -> BonusOpportunity:
        return BonusOpportunity(
            rule_id=rule.id,
            name=rule.name,
            category=rule.category,
            bonus_points=rule.bonus_points,
            rarity=get_bonus_rarity(rule.bonus_points),
            description=rule.description,
            requirements=[describe_bonus_condition(c) for c in rule.conditions],
        )

    def calculate_streak_bonuses(
        self,
        user_id: str,
        streaks: Mapping[str, StreakData],
        *,
        snapshot: Optional[RulesSnapshot] = None,
        at: Optional[datetime] = None,
    ) -> StreakBonusSummary:
        """
        Streak rules the user currently qualifies for, plus "N more" hints for the
        ones that are still ahead.
        """
        snap = snapshot or self.rules.snapshot()
        counts = {name: data.current_streak for name, data in streaks.items()}
        eligible: List[BonusOpportunity] = []
        recommendations: List[str] = []

        for rule in active_rules(snap, at or datetime.now(timezone.utc)):
            streak_conds = [c for c in rule.conditions if isinstance(c, StreakCondition)]
            if rule.category != "streak" or not streak_conds:
                continue
            remaining = 0
            for cond in streak_conds:
                current = counts.get(cond.streak_type.value, 0)
                if cond.operator == "gte" and current < cond.value:
                    remaining = max(remaining, int(cond.value - current))
                elif cond.operator != "gte" and not _holds(current, cond.operator, cond.value):
                    remaining = -1
            if remaining == 0:
                eligible.append(self._opportunity(rule))
            elif remaining > 0:
                noun = "activity" if remaining == 1 else "activities"
                recommendations.append(f"Complete {remaining} more qualifying {noun} to earn {rule.name} (+{rule.bonus_points} XP)")

        return StreakBonusSummary(
            user_id=user_id,
            streaks=counts,
            eligible=eligible,
            total_eligible_points=sum(o.bonus_points for o in eligible),
            recommendations=recommendations,
        )

    def get_bonus_rule_stats(self, records: Iterable[XPRecord]) -> List[BonusRuleStats]:
        """How often each known rule fired across the given records."""
        records = list(records)
        awarded: Dict[str, int] = defaultdict(int)
        points: Dict[str, int] = defaultdict(int)
        for record in records:
            for app in record.bonus.applications:
                awarded[app.rule_id] += 1
                points[app.rule_id] += app.bonus_points

        stats: List[BonusRuleStats] = []
        for rule in self.rules.list_bonus_rules():
            count = awarded.get(rule.id, 0)
            stats.append(
                BonusRuleStats(
                    rule_id=rule.id,
                    name=rule.name,
                    category=rule.category,
                    times_awarded=count,
                    total_points=points.get(rule.id, 0),
                    award_rate=round(count / len(records), 4) if records else 0.0,
                )
            )
        return sorted(stats, key=lambda s: (-s.times_awarded, s.rule_id))

    # ---- Configuration management ---------------------------------------------

    def add_bonus_rule(self, data: Mapping[str, Any]) -> BonusRule:
        return self.rules.add_bonus_rule(data)

    def update_bonus_rule(self, rule_id: str, updates: Mapping[str, Any]) -> BonusRule:
        return self.rules.update_bonus_rule(rule_id, updates)


def _holds(current: int, operator: str, value: float) -> bool:
    if operator == "lte":
        return current <= value
    if operator == "eq":
        return current == value
    if operator == "ne":
        return current != value
    return current >= value
