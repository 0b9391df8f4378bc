# services/xp_service.py
"""
XP ledger service.

Entry point for awarding XP. One submission moves through:

    received -> validated -> duplicate check -> gaming check -> scored
             -> streaks advanced -> bonuses -> calculated -> committed

Everything from the duplicate check to the commit runs inside the user's lock,
so two submissions for the same user never read the same streak counter or
total. The scoring chain itself is synchronous and reads one rules snapshot.
Transparency reports are built on demand from the stored record.
"""

from __future__ import annotations

import uuid
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

from pydantic import ValidationError

from app.config import settings
from app.core.logging import get_logger
from app.core.rate_limiting import enforce_award_rate_limit
from app.core.request_id import award_scope
from app.models.xp_activity import SCORED_METRICS, PerformanceContext, StreakType, XPTransaction
from app.models.xp_ledger import (
    ActivityXPSummary,
    LeaderboardEntry,
    PerformanceTrends,
    StreakData,
    UserActivityInsights,
    UserProgress,
    UserXPSummary,
    XPHistoryPage,
    XPRecord,
    XPRecordSummary,
    XPStatistics,
)
from app.models.xp_results import (
    BonusOpportunity,
    BonusRuleStats,
    StreakBonusSummary,
    XPBreakdown,
    XPCalculationResult,
)
from app.models.xp_transparency import (
    AuditTrailEntry,
    ExplanationQuery,
    ExplanationResponse,
    TransparencyReport,
    TransparencyValidation,
)
from services.bonus_engine import BonusEngine
from services.comparison_service import ComparisonProvider, LedgerComparisonProvider, trend_for_change
from services.leaderboard_service import LeaderboardIndex
from services.performance_weighting_service import METRIC_LABELS, METRIC_TIPS, PerformanceWeightingService
from services.rule_conditions import BonusFacts, streak_counts
from services.rules_config_service import RulesConfigService, RulesSnapshot, get_rules_config_service
from services.streak_service import advance_streaks, empty_streaks
from services.transparency_service import ReportNotFoundError, TransparencyService
from services.xp_calculator import ActivityValidationError, XPCalculator
from services.xp_store import DuplicateActivityError, InMemoryXPStore, StaleWriteError, XPStore

logger = get_logger()

RULES_DOCUMENT_NAME = "xp_rules"
TOP_ACTIVITIES_LIMIT = 3
TRENDS_MIN_RECORDS = 10
TREND_MIN_SAMPLES = 4


class RecordNotFoundError(LookupError):
    def __init__(self, record_id: str):
        super().__init__(f"XP record not found: {record_id}")
        self.record_id = record_id


def _avg(values: List[float]) -> float:
    return round(sum(values) / len(values), 2) if values else 0.0


def _trend(values: List[float]) -> str:
    """values in chronological order; compares the newer half with the older half."""
    if len(values) < TREND_MIN_SAMPLES:
        return "stable"
    half = len(values) // 2
    earlier, recent = _avg(values[:half]), _avg(values[half:])
    if not earlier:
        return "stable"
    return trend_for_change(100.0 * (recent - earlier) / earlier)


def parse_transaction(raw: Union[XPTransaction, Mapping[str, Any]]) -> XPTransaction:
    if isinstance(raw, XPTransaction):
        return raw
    try:
        return XPTransaction.model_validate(raw)
    except ValidationError as e:
        errors = [
            f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg')}" for err in e.errors()
        ]
        raise ActivityValidationError("Invalid XP transaction", errors=errors) from e


class XPLedgerService:
    def __init__(
        self,
        store: Optional[XPStore] = None,
        *,
        rules: Optional[RulesConfigService] = None,
        comparison: Optional[ComparisonProvider] = None,
        leaderboard: Optional[LeaderboardIndex] = None,
        level_size: Optional[int] = None,
        gaming_max_awards: Optional[int] = None,
        gaming_window_seconds: Optional[int] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store or InMemoryXPStore()
        self.rules = rules or get_rules_config_service()
        self.scorer = PerformanceWeightingService(self.rules)
        self.bonus_engine = BonusEngine(self.rules)
        self.calculator = XPCalculator()
        self.transparency = TransparencyService()
        self.comparison = comparison if comparison is not None else LedgerComparisonProvider(self.store)
        self.level_size = level_size or settings.XP_LEVEL_SIZE
        self.leaderboard = leaderboard or LeaderboardIndex(self.level_size)
        self.gaming_max_awards = gaming_max_awards or settings.XP_GAMING_MAX_AWARDS
        self.gaming_window_seconds = gaming_window_seconds or settings.XP_GAMING_WINDOW_SECONDS
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._leaderboard_loaded = False

    # ---- Levels -----------------------------------------------------------------

    def level_for(self, total_xp: int) -> int:
        return total_xp // self.level_size

    def xp_to_next_level(self, total_xp: int) -> int:
        return self.level_size - total_xp % self.level_size

    # ---- Calculation chain ------------------------------------------------------

    def _calculate(
        self,
        tx: XPTransaction,
        progress: UserProgress,
        streaks: Mapping[str, StreakData],
        now: datetime,
        snapshot: RulesSnapshot,
    ) -> Tuple[XPCalculationResult, Dict[str, StreakData]]:
        activity = tx.activity_data
        metrics = activity.performance_metrics
        context = PerformanceContext.from_activity(activity, user_id=tx.user_id)

        performance = self.scorer.calculate_weighted_performance(metrics, context, snapshot=snapshot, at=now)
        new_streaks = advance_streaks(
            tx.user_id,
            streaks,
            activity_id=tx.activity_id,
            overall_score=performance.overall_score,
            metrics=metrics,
            at=now,
        )
        facts = BonusFacts(
            metrics=metrics,
            activity=activity,
            streaks=streak_counts(new_streaks),
            total_xp=progress.total_xp,
            level=self.level_for(progress.total_xp),
        )
        bonus = self.bonus_engine.evaluate(
            facts, snapshot=snapshot, at=now, awarded_milestones=progress.milestones
        )
        return self.calculator.calculate_xp(activity, performance, bonus), new_streaks

    async def preview_xp(self, transaction: Union[XPTransaction, Mapping[str, Any]]) -> XPCalculationResult:
        """Calculate what a submission would earn right now without persisting anything."""
        tx = parse_transaction(transaction)
        progress = await self.store.get_progress(tx.user_id)
        streaks = await self.store.get_streaks(tx.user_id)
        result, _ = self._calculate(tx, progress, streaks, self._clock(), self.rules.snapshot())
        return result

    # ---- Award ------------------------------------------------------------------

    async def award_xp(self, transaction: Union[XPTransaction, Mapping[str, Any]]) -> XPRecord:
        """
        Award XP for one completed activity.

        Raises:
            ActivityValidationError: malformed transaction or activity data
            DuplicateActivityError: (user_id, activity_id) was already awarded
            GamingSuspectedError: too many awards inside the rolling window
        """
        tx = parse_transaction(transaction)

        with award_scope(tx.user_id, tx.activity_id):
            async with self.store.user_lock(tx.user_id):
                existing = await self.store.get_record_by_activity(tx.user_id, tx.activity_id)
                if existing is not None:
                    logger.info("xp_award_rejected_duplicate", record_id=existing.id)
                    raise DuplicateActivityError(
                        f"Activity {tx.activity_id} already awarded",
                        user_id=tx.user_id,
                        activity_id=tx.activity_id,
                    )

                now = self._clock()
                await enforce_award_rate_limit(
                    self.store,
                    tx.user_id,
                    tx.activity_id,
                    limit=self.gaming_max_awards,
                    window_seconds=self.gaming_window_seconds,
                    now=now,
                )

                progress = await self.store.get_progress(tx.user_id)
                streaks = await self.store.get_streaks(tx.user_id)
                result, new_streaks = self._calculate(tx, progress, streaks, now, self.rules.snapshot())

                record = XPRecord(
                    id=f"xp_{uuid.uuid4().hex}",
                    user_id=tx.user_id,
                    activity_id=tx.activity_id,
                    activity_data=tx.activity_data,
                    xp_awarded=result.total_xp,
                    breakdown=result.breakdown,
                    performance=result.performance,
                    bonus=result.bonus,
                    timestamp=now,
                )
                fired_milestones = [a.rule_id for a in result.bonus.applications if a.category == "milestone"]
                new_total = progress.total_xp + result.total_xp
                new_progress = progress.model_copy(
                    update={
                        "total_xp": new_total,
                        "version": progress.version + 1,
                        "total_reached_at": now if result.total_xp > 0 or progress.total_reached_at is None else progress.total_reached_at,
                        "award_count": progress.award_count + 1,
                        "milestones": [*progress.milestones, *fired_milestones],
                    }
                )

                try:
                    await self.store.commit_award(record, new_streaks, new_progress, expected_version=progress.version)
                except DuplicateActivityError:
                    logger.info("xp_award_rejected_duplicate", stage="commit")
                    raise
                except StaleWriteError as e:
                    logger.error(
                        "xp_award_stale_write",
                        expected_version=e.expected_version,
                        actual_version=e.actual_version,
                    )
                    raise

            self.leaderboard.update(new_progress)
            logger.info(
                "xp_awarded",
                record_id=record.id,
                amount=record.xp_awarded,
                performance_score=result.performance.overall_score,
                tier=result.performance.tier.name,
                bonuses=[a.rule_id for a in result.bonus.applications],
                total_xp=new_total,
                level=self.level_for(new_total),
            )
        return record

    # ---- Reads ------------------------------------------------------------------

    async def get_current_xp(self, user_id: str) -> int:
        return (await self.store.get_progress(user_id)).total_xp

    async def get_user_level(self, user_id: str) -> int:
        return self.level_for(await self.get_current_xp(user_id))

    async def get_record(self, record_id: str) -> XPRecord:
        record = await self.store.get_record(record_id)
        if record is None:
            raise RecordNotFoundError(record_id)
        return record

    async def get_xp_breakdown(self, record_id: str) -> XPBreakdown:
        return (await self.get_record(record_id)).breakdown

    async def get_xp_history(self, user_id: str, limit: int = 20, offset: int = 0) -> XPHistoryPage:
        limit = max(1, min(limit, 200))
        offset = max(0, offset)
        records = await self.store.list_user_records(user_id, limit=limit, offset=offset)
        total = await self.store.count_user_records(user_id)
        return XPHistoryPage(
            user_id=user_id,
            items=[XPRecordSummary.from_record(r) for r in records],
            total=total,
            limit=limit,
            offset=offset,
        )

    async def get_user_xp_summary(self, user_id: str) -> UserXPSummary:
        progress = await self.store.get_progress(user_id)
        records = await self.store.list_user_records(user_id)  # newest first
        chronological = list(reversed(records))

        grouped: Dict[str, List[XPRecord]] = defaultdict(list)
        for record in chronological:
            grouped[record.activity_type].append(record)

        summaries: Dict[str, ActivityXPSummary] = {}
        for activity_type, items in grouped.items():
            xp = [r.xp_awarded for r in items]
            summaries[activity_type] = ActivityXPSummary(
                activity_type=activity_type,
                total_xp=sum(xp),
                count=len(items),
                average_xp=_avg(xp),
                average_score=_avg([r.performance.overall_score for r in items]),
                trend=_trend([r.performance.overall_score for r in items]),
            )
        top = sorted(summaries.values(), key=lambda s: (-s.total_xp, s.activity_type))[:TOP_ACTIVITIES_LIMIT]

        trends = None
        if len(chronological) >= TRENDS_MIN_RECORDS:
            half = len(chronological) // 2
            earlier, recent = chronological[:half], chronological[half:]
            trends = PerformanceTrends(
                sample_size=len(chronological),
                recent_average_score=_avg([r.performance.overall_score for r in recent]),
                earlier_average_score=_avg([r.performance.overall_score for r in earlier]),
                score_trend=_trend([r.performance.overall_score for r in chronological]),
                recent_average_xp=_avg([r.xp_awarded for r in recent]),
                earlier_average_xp=_avg([r.xp_awarded for r in earlier]),
                xp_trend=_trend([r.xp_awarded for r in chronological]),
            )

        return UserXPSummary(
            user_id=user_id,
            total_xp=progress.total_xp,
            level=self.level_for(progress.total_xp),
            xp_to_next_level=self.xp_to_next_level(progress.total_xp),
            recent_xp=[XPRecordSummary.from_record(r) for r in records[: settings.XP_RECENT_HISTORY_LIMIT]],
            top_activities=top,
            activity_summaries=summaries,
            performance_trends=trends,
        )

    async def get_leaderboard(self, limit: int = 10) -> List[LeaderboardEntry]:
        if not self._leaderboard_loaded:
            await self.leaderboard.rebuild(self.store)
            self._leaderboard_loaded = True
        return self.leaderboard.top(limit)

    async def get_user_streaks(self, user_id: str) -> Dict[str, StreakData]:
        streaks = empty_streaks(user_id)
        streaks.update(await self.store.get_streaks(user_id))
        return streaks

    async def calculate_streak_bonuses(self, user_id: str) -> StreakBonusSummary:
        streaks = await self.get_user_streaks(user_id)
        return self.bonus_engine.calculate_streak_bonuses(user_id, streaks, at=self._clock())

    def get_bonus_opportunities(self) -> Dict[str, List[BonusOpportunity]]:
        return self.bonus_engine.get_bonus_opportunities(at=self._clock())

    async def get_bonus_rule_stats(self) -> List[BonusRuleStats]:
        return self.bonus_engine.get_bonus_rule_stats(await self.store.list_all_records())

    async def get_xp_statistics(self) -> XPStatistics:
        records = await self.store.list_all_records()
        by_type: Dict[str, int] = defaultdict(int)
        tiers: Dict[str, int] = defaultdict(int)
        for r in records:
            by_type[r.activity_type] += r.xp_awarded
            tiers[r.performance.tier.name] += 1
        total_xp = sum(r.xp_awarded for r in records)
        return XPStatistics(
            total_users=len({r.user_id for r in records}),
            total_records=len(records),
            total_xp_awarded=total_xp,
            average_xp_per_record=_avg([r.xp_awarded for r in records]),
            average_performance_score=_avg([r.performance.overall_score for r in records]),
            by_activity_type=dict(by_type),
            tier_distribution=dict(tiers),
        )

    async def get_user_activity_insights(self, user_id: str) -> UserActivityInsights:
        records = await self.store.list_user_records(user_id)
        streaks = await self.get_user_streaks(user_id)
        active = {name: s.current_streak for name, s in streaks.items() if s.current_streak > 0}
        if not records:
            return UserActivityInsights(
                user_id=user_id,
                active_streaks=active,
                recommendations=["Complete your first activity to start earning XP."],
            )

        averages = {
            name: _avg([float(r.activity_data.performance_metrics.get(name)) for r in records])
            for name in SCORED_METRICS
        }
        strongest = max(SCORED_METRICS, key=lambda n: averages[n])
        weakest = min(SCORED_METRICS, key=lambda n: averages[n])

        counts: Dict[str, int] = defaultdict(int)
        xp_by_type: Dict[str, List[int]] = defaultdict(list)
        for r in records:
            counts[r.activity_type] += 1
            xp_by_type[r.activity_type].append(r.xp_awarded)
        most_frequent = max(counts, key=lambda t: (counts[t], t))
        best = max(xp_by_type, key=lambda t: (_avg(xp_by_type[t]), t))

        recs = [f"Work on {METRIC_LABELS[weakest].lower()} (average {averages[weakest]:g}): {METRIC_TIPS[weakest]}"]
        quality = streaks[StreakType.quality.value].current_streak
        if 0 < quality < 5:
            recs.append(f"Keep scoring 80 or more: {5 - quality} more for the quality streak bonus.")
        if not any(r.activity_data.performance_metrics.knowledge_sharing for r in records):
            recs.append("Share knowledge with the team to start a learning streak.")

        return UserActivityInsights(
            user_id=user_id,
            strongest_metric=strongest,
            weakest_metric=weakest,
            metric_averages=averages,
            most_frequent_activity=most_frequent,
            best_activity_by_xp=best,
            active_streaks=active,
            recommendations=recs,
        )

    # ---- Transparency -----------------------------------------------------------

    async def generate_transparency_report(
        self,
        record_id: Optional[str] = None,
        *,
        user_id: Optional[str] = None,
        activity_id: Optional[str] = None,
    ) -> TransparencyReport:
        """Build and store a report for a record, looked up by id or by (user_id, activity_id)."""
        if record_id is not None:
            record = await self.get_record(record_id)
        elif user_id and activity_id:
            record = await self.store.get_record_by_activity(user_id, activity_id)
            if record is None:
                raise RecordNotFoundError(f"{user_id}/{activity_id}")
        else:
            raise ValueError("record_id or user_id + activity_id is required")

        comparison = None
        try:
            comparison = await self.comparison.compare(record)
        except Exception as e:
            # Comparison is an outside collaborator; the report degrades instead of failing.
            logger.warning("comparison_unavailable", record_id=record.id, error=str(e))

        report = self.transparency.build_report(record, comparison)
        await self.store.put_report(report)
        return report

    async def get_transparency_report(self, report_id: str) -> TransparencyReport:
        report = await self.store.get_report(report_id)
        if report is None:
            raise ReportNotFoundError(report_id)
        return report

    async def explain_calculation(
        self,
        query: Union[ExplanationQuery, Mapping[str, Any], str],
        report_id: str,
        detail_level: str = "basic",
    ) -> ExplanationResponse:
        if isinstance(query, str):
            query = ExplanationQuery(query_type=query, detail_level=detail_level)
        elif not isinstance(query, ExplanationQuery):
            query = ExplanationQuery.model_validate(query)
        report = await self.get_transparency_report(report_id)
        return self.transparency.explain(report, query)

    async def get_simple_explanation(self, report_id: str) -> str:
        return self.transparency.get_simple_explanation(await self.get_transparency_report(report_id))

    async def get_calculation_audit_trail(self, report_id: str) -> List[AuditTrailEntry]:
        return self.transparency.get_calculation_audit_trail(await self.get_transparency_report(report_id))

    async def validate_transparency(self, report_id: str) -> TransparencyValidation:
        report = await self.get_transparency_report(report_id)
        record = await self.store.get_record(report.record_id)
        return self.transparency.validate_transparency(report, record)

    # ---- Rule documents ---------------------------------------------------------

    async def save_rules_to_store(self) -> None:
        await self.store.put_config_document(RULES_DOCUMENT_NAME, self.rules.export_document())
        logger.info("xp_rules_saved", version=self.rules.snapshot().version)

    async def load_rules_from_store(self) -> bool:
        """Replace the in-process rules with the stored document; False when none is stored."""
        document = await self.store.get_config_document(RULES_DOCUMENT_NAME)
        if document is None:
            return False
        snap = self.rules.replace_document(document)
        logger.info("xp_rules_loaded_from_store", version=snap.version, bonus_rules=len(snap.bonus_rules))
        return True


_ledger_service: Optional[XPLedgerService] = None


def get_xp_ledger_service() -> XPLedgerService:
    global _ledger_service
    if _ledger_service is None:
        _ledger_service = XPLedgerService()
    return _ledger_service
