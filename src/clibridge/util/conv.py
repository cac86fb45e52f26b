from __future__ import annotations

import math
from typing import Any


def coerce_int(value: Any, *, default: int, min_value: int, max_value: int) -> int:
    try:
        n = int(value)
    except (TypeError, ValueError):
        n = int(default)
    if n < min_value:
        n = min_value
    if n > max_value:
        n = max_value
    return int(n)


def coerce_float(value: Any, *, default: float, min_value: float, max_value: float) -> float:
    try:
        f = float(value)
    except (TypeError, ValueError):
        f = float(default)
    if math.isnan(f):
        f = float(default)
    return float(min(max(f, min_value), max_value))
