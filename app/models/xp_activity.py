# app/models/xp_activity.py
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Union

from pydantic import ConfigDict, Field, StrictBool, field_validator
from pydantic.alias_generators import to_camel

from app.models.base import FrozenCamelModel, ensure_utc


# =========================
# Enums
# =========================

class ActivityType(str, Enum):
    ticket_completion = "ticket_completion"
    verification = "verification"
    documentation = "documentation"
    customer_communication = "customer_communication"
    learning_progress = "learning_progress"
    knowledge_search = "knowledge_search"


class ScenarioDifficulty(str, Enum):
    starter = "starter"
    intermediate = "intermediate"
    advanced = "advanced"


class StreakType(str, Enum):
    completion = "completion"
    quality = "quality"
    perfect = "perfect"
    learning = "learning"


SCORED_METRICS = (
    "technical_accuracy",
    "communication_quality",
    "customer_satisfaction",
    "process_compliance",
)
NUMERIC_METRICS = SCORED_METRICS + ("resolution_time",)
BOOLEAN_METRICS = ("verification_success", "first_time_resolution", "knowledge_sharing")


# =========================
# Submission payloads
# =========================

class PerformanceMetrics(FrozenCamelModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="forbid",
        allow_inf_nan=False,
    )

    technical_accuracy: float = Field(ge=0, le=100)
    communication_quality: float = Field(ge=0, le=100)
    customer_satisfaction: float = Field(ge=0, le=100)
    process_compliance: float = Field(ge=0, le=100)
    resolution_time: float = Field(ge=0, description="Minutes spent resolving the activity.")
    verification_success: StrictBool
    first_time_resolution: StrictBool
    knowledge_sharing: StrictBool

    @field_validator(*NUMERIC_METRICS, mode="before")
    @classmethod
    def _numbers_only(cls, v: Any) -> Any:
        # lax mode would turn True into 1.0 and "85" into 85.0
        if isinstance(v, bool) or not isinstance(v, (int, float)):
            raise ValueError("must be a number")
        return v

    def get(self, name: str) -> Union[float, bool]:
        return getattr(self, name)


class ActivityData(FrozenCamelModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="forbid",
        use_enum_values=False,
    )

    type: ActivityType
    scenario_difficulty: ScenarioDifficulty
    performance_metrics: PerformanceMetrics
    additional_context: Dict[str, Any] = Field(default_factory=dict)

    def context_value(self, key: str) -> Any:
        """Look up an additional_context key, accepting snake_case or camelCase spelling."""
        if key in self.additional_context:
            return self.additional_context[key]
        return self.additional_context.get(to_camel(key))


class XPTransaction(FrozenCamelModel):
    user_id: str = Field(min_length=1)
    activity_id: str = Field(min_length=1)
    activity_data: ActivityData
    submitted_at: Optional[datetime] = None

    @field_validator("submitted_at")
    @classmethod
    def _utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)


class PerformanceContext(FrozenCamelModel):
    """Facts about an activity that weight configurations and context rules can match on."""

    activity_type: ActivityType
    difficulty_level: ScenarioDifficulty
    user_id: Optional[str] = None
    user_experience: Optional[str] = None
    customer_type: Optional[str] = None
    scenario_category: Optional[str] = None
    time_of_day: Optional[int] = Field(default=None, ge=0, le=23)

    @classmethod
    def from_activity(cls, activity: ActivityData, user_id: Optional[str] = None) -> "PerformanceContext":
        hour = activity.context_value("time_of_day")
        return cls(
            activity_type=activity.type,
            difficulty_level=activity.scenario_difficulty,
            user_id=user_id,
            user_experience=_opt_str(activity.context_value("user_experience")),
            customer_type=_opt_str(activity.context_value("customer_type")),
            scenario_category=_opt_str(activity.context_value("scenario_category")),
            time_of_day=hour if isinstance(hour, int) and not isinstance(hour, bool) and 0 <= hour <= 23 else None,
        )

    def factor(self, name: str) -> Any:
        value = getattr(self, name, None)
        if isinstance(value, Enum):
            return value.value
        return value


def _opt_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value)
