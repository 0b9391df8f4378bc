# services/comparison_service.py
"""
Peer and history comparison for transparency reports.

The report builder only depends on the ComparisonProvider protocol; the default
provider derives population and personal-history aggregates from the ledger store.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Protocol

from app.core.logging import get_logger
from app.models.xp_ledger import XPRecord
from app.models.xp_transparency import HistoryComparison, PopulationComparison
from services.xp_store import XPStore

logger = get_logger()

TREND_THRESHOLD_PCT = 5.0


@dataclass(frozen=True)
class ComparisonData:
    population: Optional[PopulationComparison] = None
    history: Optional[HistoryComparison] = None


class ComparisonProvider(Protocol):
    async def compare(self, record: XPRecord) -> Optional[ComparisonData]:
        ...


def _avg(values: List[float]) -> float:
    return round(sum(values) / len(values), 2) if values else 0.0


def trend_for_change(change_pct: float) -> str:
    if change_pct > TREND_THRESHOLD_PCT:
        return "improving"
    if change_pct < -TREND_THRESHOLD_PCT:
        return "declining"
    return "stable"


def population_comparison(record: XPRecord, peers: List[XPRecord]) -> Optional[PopulationComparison]:
    """Compare against other users' records of the same activity type."""
    same = [p for p in peers if p.activity_type == record.activity_type and p.user_id != record.user_id]
    if not same:
        return None
    at_or_below = sum(1 for p in same if p.xp_awarded <= record.xp_awarded)
    return PopulationComparison(
        sample_size=len(same),
        average_xp=_avg([p.xp_awarded for p in same]),
        average_score=_avg([p.performance.overall_score for p in same]),
        percentile=round(100.0 * at_or_below / len(same), 1),
    )


def history_comparison(record: XPRecord, own: List[XPRecord]) -> Optional[HistoryComparison]:
    """Compare against the same user's earlier records."""
    earlier = [r for r in own if r.id != record.id and r.timestamp <= record.timestamp]
    if not earlier:
        return None
    prev_xp = _avg([r.xp_awarded for r in earlier])
    change = round(100.0 * (record.xp_awarded - prev_xp) / prev_xp, 1) if prev_xp else 0.0
    return HistoryComparison(
        sample_size=len(earlier),
        previous_average_xp=prev_xp,
        previous_average_score=_avg([r.performance.overall_score for r in earlier]),
        xp_change_pct=change,
        trend=trend_for_change(change),
    )


class LedgerComparisonProvider:
    def __init__(self, store: XPStore) -> None:
        self.store = store

    async def compare(self, record: XPRecord) -> Optional[ComparisonData]:
        peers = await self.store.list_records_by_activity_type(record.activity_type)
        own = await self.store.list_user_records(record.user_id)
        data = ComparisonData(
            population=population_comparison(record, peers),
            history=history_comparison(record, own),
        )
        if data.population is None and data.history is None:
            return None
        return data
