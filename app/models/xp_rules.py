# app/models/xp_rules.py
"""
Rule documents: weight configurations, bonus rules and special events.

Conditions are plain data (tagged unions) interpreted by services.rule_conditions,
so configuration can change without redeploying the engine.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel, to_snake

from app.core.xp_config import WEIGHT_SUM_TOLERANCE
from app.models.base import FrozenCamelModel, ensure_utc
from app.models.xp_activity import SCORED_METRICS, StreakType


_STRICT = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True, extra="forbid")

ContextFactor = Literal[
    "activity_type",
    "difficulty_level",
    "user_experience",
    "customer_type",
    "scenario_category",
    "time_of_day",
]
WeightDimension = Literal[
    "technical_accuracy",
    "communication_quality",
    "customer_satisfaction",
    "process_compliance",
]
BonusOperator = Literal["gte", "lte", "eq", "ne", "contains"]
BonusCategory = Literal["performance", "streak", "milestone", "special"]


def _snake_factor(v: object) -> object:
    return to_snake(v) if isinstance(v, str) else v


# =========================
# Context conditions (weight configurations)
# =========================

class _ContextConditionBase(FrozenCamelModel):
    model_config = _STRICT

    factor: ContextFactor

    @field_validator("factor", mode="before")
    @classmethod
    def _factor_snake(cls, v: object) -> object:
        return _snake_factor(v)


class EqualsCondition(_ContextConditionBase):
    operator: Literal["equals"]
    value: Union[str, int]


class OneOfCondition(_ContextConditionBase):
    operator: Literal["one_of"]
    values: List[Union[str, int]] = Field(min_length=1)


class ContainsCondition(_ContextConditionBase):
    """Case-insensitive substring match on a text factor."""

    operator: Literal["contains"]
    value: str = Field(min_length=1)


class GreaterThanCondition(_ContextConditionBase):
    operator: Literal["greater_than"]
    value: float


class LessThanCondition(_ContextConditionBase):
    operator: Literal["less_than"]
    value: float


class InRangeCondition(_ContextConditionBase):
    """Inclusive on both ends."""

    operator: Literal["in_range"]
    min: float
    max: float

    @model_validator(mode="after")
    def _ordered(self) -> "InRangeCondition":
        if self.min > self.max:
            raise ValueError("in_range min must be <= max")
        return self


ContextCondition = Annotated[
    Union[
        EqualsCondition,
        OneOfCondition,
        ContainsCondition,
        GreaterThanCondition,
        LessThanCondition,
        InRangeCondition,
    ],
    Field(discriminator="operator"),
]


# =========================
# Weights
# =========================

class PerformanceWeights(FrozenCamelModel):
    model_config = _STRICT

    technical_accuracy: float = Field(ge=0, le=1)
    communication_quality: float = Field(ge=0, le=1)
    customer_satisfaction: float = Field(ge=0, le=1)
    process_compliance: float = Field(ge=0, le=1)

    def as_dict(self) -> Dict[str, float]:
        return {name: getattr(self, name) for name in SCORED_METRICS}

    def total(self) -> float:
        return sum(self.as_dict().values())

    def sums_to_one(self) -> bool:
        return abs(self.total() - 1.0) <= WEIGHT_SUM_TOLERANCE


class ContextRule(FrozenCamelModel):
    model_config = _STRICT

    id: str = Field(min_length=1)
    description: str = ""
    condition: ContextCondition
    weight_adjustments: Dict[WeightDimension, float] = Field(min_length=1)
    priority: int = 0

    @field_validator("weight_adjustments", mode="before")
    @classmethod
    def _snake_keys(cls, v: object) -> object:
        if isinstance(v, dict):
            return {_snake_factor(k): val for k, val in v.items()}
        return v

    @field_validator("weight_adjustments")
    @classmethod
    def _bounded(cls, v: Dict[str, float]) -> Dict[str, float]:
        for name, delta in v.items():
            if not -1.0 <= delta <= 1.0:
                raise ValueError(f"adjustment for {name} must be within [-1, 1]")
        return v


class WeightConfiguration(FrozenCamelModel):
    model_config = _STRICT

    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    description: str = ""
    weights: PerformanceWeights
    applicability: List[ContextCondition] = Field(
        default_factory=list,
        description="All must match for the configuration to apply. Empty means always applicable.",
    )
    context_rules: List[ContextRule] = Field(default_factory=list)
    priority: int = 1
    active: bool = True
    valid_from: Optional[datetime] = Field(default=None, description="None means valid from the start.")
    valid_until: Optional[datetime] = None
    created_by: str = "system"

    @field_validator("valid_from", "valid_until")
    @classmethod
    def _utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)

    @model_validator(mode="after")
    def _check(self) -> "WeightConfiguration":
        if not self.weights.sums_to_one():
            raise ValueError(
                f"weights must sum to 1.0 (+/- {WEIGHT_SUM_TOLERANCE}), got {self.weights.total():.4f}"
            )
        if self.valid_from is not None and self.valid_until is not None and self.valid_until <= self.valid_from:
            raise ValueError("valid_until must be after valid_from")
        return self

    def is_time_valid(self, at: datetime) -> bool:
        if self.valid_from is not None and at < self.valid_from:
            return False
        return self.valid_until is None or at < self.valid_until


# =========================
# Bonus conditions
# =========================

class _BonusConditionBase(FrozenCamelModel):
    model_config = _STRICT

    operator: BonusOperator


class MetricCondition(_BonusConditionBase):
    """Compares a PerformanceMetrics field (technical_accuracy, verification_success, ...)."""

    source: Literal["metric"]
    field: str
    value: Union[bool, float, str]

    @field_validator("field", mode="before")
    @classmethod
    def _field_snake(cls, v: object) -> object:
        return _snake_factor(v)


class StreakCondition(_BonusConditionBase):
    """Compares the current count of one streak type, after this activity's update."""

    source: Literal["streak"]
    streak_type: StreakType
    value: float


class ActivityCondition(_BonusConditionBase):
    """
    Compares a fact about the activity itself: its type, its difficulty or a key of
    additional_context (field="context", key=<name>).
    """

    source: Literal["activity"]
    field: Literal["type", "difficulty", "context"]
    key: Optional[str] = None
    value: Union[bool, float, str]

    @model_validator(mode="after")
    def _key_for_context(self) -> "ActivityCondition":
        if self.field == "context" and not self.key:
            raise ValueError("activity conditions on 'context' need a key")
        return self


class ProgressCondition(_BonusConditionBase):
    """Compares the user's standing before this award (milestones)."""

    source: Literal["progress"]
    field: Literal["total_xp", "level"]
    value: float

    @field_validator("field", mode="before")
    @classmethod
    def _field_snake(cls, v: object) -> object:
        return _snake_factor(v)


BonusCondition = Annotated[
    Union[MetricCondition, StreakCondition, ActivityCondition, ProgressCondition],
    Field(discriminator="source"),
]


class BonusRule(FrozenCamelModel):
    model_config = _STRICT

    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    description: str = ""
    category: BonusCategory
    bonus_points: int = Field(ge=0)
    conditions: List[BonusCondition] = Field(min_length=1)
    priority: int = 0
    active: bool = True
    valid_from: Optional[datetime] = Field(default=None, description="None means valid from the start.")
    valid_until: Optional[datetime] = None
    near_miss_margin: float = Field(default=10, ge=0)

    @field_validator("valid_from", "valid_until")
    @classmethod
    def _utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)

    @model_validator(mode="after")
    def _window(self) -> "BonusRule":
        if self.valid_from is not None and self.valid_until is not None and self.valid_until <= self.valid_from:
            raise ValueError("valid_until must be after valid_from")
        return self

    def is_time_valid(self, at: datetime) -> bool:
        if self.valid_from is not None and at < self.valid_from:
            return False
        return self.valid_until is None or at < self.valid_until


class SpecialEvent(FrozenCamelModel):
    model_config = _STRICT

    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    description: str = ""
    bonus_multiplier: float = Field(ge=1.0)
    start: datetime
    end: datetime
    active: bool = True

    @field_validator("start", "end")
    @classmethod
    def _utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @model_validator(mode="after")
    def _window(self) -> "SpecialEvent":
        if self.end <= self.start:
            raise ValueError("special event end must be after start")
        return self

    def is_running(self, at: datetime) -> bool:
        return self.active and self.start <= at < self.end
