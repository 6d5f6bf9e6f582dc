"""Noisy price coercion.

Model output quotes prices as numbers, "27,900", "₩27,900" or "17,800원".
parse_price only extracts the number; range policy lives in the callers.
"""

from __future__ import annotations

import math
import re
from typing import Any

MIN_PRICE_KRW = 5_000
MAX_PRICE_KRW = 1_200_000

_NON_NUMERIC = re.compile(r"[^\d.\-]")


def parse_price(value: Any) -> float | None:
    """Parse a price-like value into a finite number, or None.

    Negative values pass through untouched.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None

    cleaned = _NON_NUMERIC.sub("", str(value).strip())
    if cleaned.startswith("."):
        cleaned = "0" + cleaned
    if cleaned in ("", "-", "."):
        return None
    try:
        number = float(cleaned)
    except ValueError:
        # e.g. "1.2.3" or "12-3" after stripping
        return None
    return number if math.isfinite(number) else None


def to_price_int(value: Any) -> int | None:
    """Rounded, non-negative integer price, or None when unusable."""
    number = parse_price(value)
    if number is None or number < 0:
        return None
    return round(number)


def clamp_price(value: Any) -> int | None:
    """Clamp a price into the range a desk accessory plausibly costs."""
    number = parse_price(value)
    if number is None:
        return None
    return round(min(MAX_PRICE_KRW, max(MIN_PRICE_KRW, number)))
