# app/core/xp_config.py
"""
Static XP tables.

Base XP per activity type, difficulty multipliers and the performance tier
bands are fixed lookup tables: they are not context sensitive and are not
part of the editable rule documents in configs/xp_rules.yml.
"""

from __future__ import annotations

from typing import Dict, List, NamedTuple


class ConfigurationError(ValueError):
    """Invalid configuration detected at write/load time, never at calculation time."""

    def __init__(self, msg: str, payload: object | None = None):
        super().__init__(msg)
        self.payload = payload


# Base XP per activity type
BASE_XP_VALUES: Dict[str, int] = {
    "ticket_completion": 20,
    "verification": 8,
    "documentation": 5,
    "customer_communication": 3,
    "learning_progress": 10,
    "knowledge_search": 2,
}

# Difficulty multipliers
DIFFICULTY_MULTIPLIERS: Dict[str, float] = {
    "starter": 1.0,
    "intermediate": 1.5,
    "advanced": 2.0,
}


class TierBand(NamedTuple):
    name: str
    min_score: int
    max_score: int
    multiplier: float
    description: str


# Ordered high -> low. Bands are inclusive on both ends and must cover 0..100.
PERFORMANCE_TIERS: List[TierBand] = [
    TierBand("Outstanding", 90, 100, 1.5, "Exceptional performance across all metrics"),
    TierBand("Excellent", 85, 89, 1.25, "Strong performance with room for minor improvements"),
    TierBand("Good", 70, 84, 1.0, "Solid performance meeting expectations"),
    TierBand("Needs Improvement", 60, 69, 0.8, "Performance below expectations, improvement needed"),
    TierBand("Unsatisfactory", 0, 59, 0.5, "Significant improvement required"),
]

# Bounded additive score adjustments applied after weighting
EXPERIENCE_BONUS_POINTS = 2            # user_experience == "expert"
DIFFICULTY_EXCELLENCE_POINTS = 3       # advanced scenario and base score >= threshold
DIFFICULTY_EXCELLENCE_MIN_SCORE = 85
SLOW_RESOLUTION_PENALTY_POINTS = -2    # resolution time above target
SLOW_RESOLUTION_MINUTES = 60
MAX_TOTAL_ADJUSTMENT = 5               # |sum of adjustments| never exceeds this

# Streak maintenance thresholds (overall performance score)
QUALITY_STREAK_MIN_SCORE = 80
PERFECT_STREAK_MIN_SCORE = 95
LEARNING_STREAK_MIN_SCORE = 85

# Bonus rarity by point value: (min_points, rarity), checked high -> low
BONUS_RARITY_THRESHOLDS = [
    (15, "legendary"),
    (10, "rare"),
    (5, "uncommon"),
    (0, "common"),
]

WEIGHT_SUM_TOLERANCE = 0.01
DEFAULT_WEIGHT_CONFIGURATION_ID = "default_balanced"


def validate_tier_table(tiers: List[TierBand]) -> None:
    """
    Tiers must be contiguous and exhaustive over [0, 100]: sorted ascending,
    the first band starts at 0, the last ends at 100 and every band starts
    exactly one point above the previous band's max.
    """
    if not tiers:
        raise ConfigurationError("Performance tier table is empty")

    ordered = sorted(tiers, key=lambda t: t.min_score)
    if ordered[0].min_score != 0:
        raise ConfigurationError(f"Lowest tier must start at 0, got {ordered[0].min_score}")
    if ordered[-1].max_score != 100:
        raise ConfigurationError(f"Highest tier must end at 100, got {ordered[-1].max_score}")

    for prev, nxt in zip(ordered, ordered[1:]):
        if prev.min_score > prev.max_score:
            raise ConfigurationError(f"Tier {prev.name} has min > max")
        if nxt.min_score != prev.max_score + 1:
            raise ConfigurationError(
                f"Tier gap/overlap between {prev.name} ({prev.max_score}) and {nxt.name} ({nxt.min_score})"
            )
    for tier in tiers:
        if tier.multiplier < 0:
            raise ConfigurationError(f"Tier {tier.name} has a negative multiplier")


def get_base_xp(activity_type: str) -> int:
    return BASE_XP_VALUES[activity_type]


def get_difficulty_multiplier(difficulty: str) -> float:
    return DIFFICULTY_MULTIPLIERS[difficulty]


def get_tier_band(score: int) -> TierBand:
    """Band whose [min, max] contains score. Score must already be clamped to 0..100."""
    for tier in PERFORMANCE_TIERS:
        if tier.min_score <= score <= tier.max_score:
            return tier
    # Unreachable for a validated table and a clamped score.
    return PERFORMANCE_TIERS[-1]


def get_bonus_rarity(points: int) -> str:
    for threshold, rarity in BONUS_RARITY_THRESHOLDS:
        if points >= threshold:
            return rarity
    return "common"


validate_tier_table(PERFORMANCE_TIERS)
