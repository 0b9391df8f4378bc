# app/utils/rounding.py
from __future__ import annotations

import math


def round_half_up(value: float) -> int:
    """
    Round to the nearest integer with .5 going up.

    Python's round() uses banker's rounding (round(42.5) == 42); XP amounts
    and scores must round the same way users expect them to.
    """
    return int(math.floor(value + 0.5))
