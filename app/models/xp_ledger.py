# app/models/xp_ledger.py
from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import Field

from app.models.base import FrozenCamelModel, utcnow
from app.models.xp_activity import ActivityData, StreakType
from app.models.xp_results import BonusCalculationResult, PerformanceCalculationResult, XPBreakdown


class StreakEntry(FrozenCamelModel):
    activity_id: str
    timestamp: datetime
    maintained: bool
    streak_after: int
    score: int


class StreakData(FrozenCamelModel):
    user_id: str
    streak_type: StreakType
    current_streak: int = Field(default=0, ge=0)
    longest_streak: int = Field(default=0, ge=0)
    last_activity: Optional[datetime] = None
    streak_history: List[StreakEntry] = Field(default_factory=list)


class XPRecord(FrozenCamelModel):
    id: str
    user_id: str
    activity_id: str
    activity_data: ActivityData
    xp_awarded: int
    breakdown: XPBreakdown
    performance: PerformanceCalculationResult
    bonus: BonusCalculationResult
    timestamp: datetime = Field(default_factory=utcnow)
    validated: bool = True

    @property
    def activity_type(self) -> str:
        return self.activity_data.type.value


class UserProgress(FrozenCamelModel):
    """
    Per-user running aggregate. `version` increments on every committed award and is
    the compare-and-set token for the store.
    """

    user_id: str
    total_xp: int = 0
    version: int = 0
    total_reached_at: Optional[datetime] = None
    award_count: int = 0
    milestones: List[str] = Field(default_factory=list)


class XPRecordSummary(FrozenCamelModel):
    id: str
    activity_id: str
    activity_type: str
    xp_awarded: int
    performance_score: int
    performance_tier: str
    timestamp: datetime

    @classmethod
    def from_record(cls, record: XPRecord) -> "XPRecordSummary":
        return cls(
            id=record.id,
            activity_id=record.activity_id,
            activity_type=record.activity_type,
            xp_awarded=record.xp_awarded,
            performance_score=record.performance.overall_score,
            performance_tier=record.performance.tier.name,
            timestamp=record.timestamp,
        )


Trend = Literal["improving", "stable", "declining"]


class ActivityXPSummary(FrozenCamelModel):
    activity_type: str
    total_xp: int
    count: int
    average_xp: float
    average_score: float
    trend: Trend = "stable"


class PerformanceTrends(FrozenCamelModel):
    """Only produced once a user has enough history to compare halves."""

    sample_size: int
    recent_average_score: float
    earlier_average_score: float
    score_trend: Trend
    recent_average_xp: float
    earlier_average_xp: float
    xp_trend: Trend


class UserXPSummary(FrozenCamelModel):
    user_id: str
    total_xp: int
    level: int
    xp_to_next_level: int
    recent_xp: List[XPRecordSummary] = Field(default_factory=list)
    top_activities: List[ActivityXPSummary] = Field(default_factory=list)
    activity_summaries: Dict[str, ActivityXPSummary] = Field(default_factory=dict)
    performance_trends: Optional[PerformanceTrends] = None


class LeaderboardEntry(FrozenCamelModel):
    rank: int
    user_id: str
    total_xp: int
    level: int


class XPHistoryPage(FrozenCamelModel):
    user_id: str
    items: List[XPRecordSummary]
    total: int
    limit: int
    offset: int


class XPStatistics(FrozenCamelModel):
    total_users: int
    total_records: int
    total_xp_awarded: int
    average_xp_per_record: float
    average_performance_score: float
    by_activity_type: Dict[str, int] = Field(default_factory=dict)
    tier_distribution: Dict[str, int] = Field(default_factory=dict)


class UserActivityInsights(FrozenCamelModel):
    user_id: str
    strongest_metric: Optional[str] = None
    weakest_metric: Optional[str] = None
    metric_averages: Dict[str, float] = Field(default_factory=dict)
    most_frequent_activity: Optional[str] = None
    best_activity_by_xp: Optional[str] = None
    active_streaks: Dict[str, int] = Field(default_factory=dict)
    recommendations: List[str] = Field(default_factory=list)
