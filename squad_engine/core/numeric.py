"""
Numeric helpers shared by the initiative and morale systems.

- Rounded averages (round half away from zero, never banker's rounding)
- Modifier formatting for summaries (+2 / -1)
- Defensive coercion of host-provided modifiers with diagnostics
"""
import logging
import math
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from fractions import Fraction
from typing import Any, Iterable, Optional

logger = logging.getLogger("squad_engine.numeric")


@dataclass(frozen=True)
class CoercedNumber:
    """A numeric value read from the host, remembering whether it was substituted."""
    value: float
    coerced: bool = False
    raw: Any = None


def _to_decimal(value: float) -> Decimal:
    # str() keeps the shortest repr, so 14.5 stays exactly 14.5
    return Decimal(str(value))


def round_half_away(value: float) -> int:
    """Round to the nearest integer, halves away from zero (14.5 -> 15, -2.5 -> -3)."""
    return int(_to_decimal(value).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def exact_mean(values: Iterable[float]) -> Optional[Decimal]:
    """Arithmetic mean computed in Decimal, or None for an empty input."""
    items = [_to_decimal(v) for v in values]
    if not items:
        return None
    return sum(items, Decimal(0)) / Decimal(len(items))


def rounded_average(values: Iterable[float]) -> Optional[int]:
    """
    Average initiative for a group, rounded half away from zero.

    Args:
        values: Individual initiative values

    Returns:
        The rounded mean, or None when there are no values
    """
    mean = exact_mean(values)
    if mean is None:
        return None
    return int(mean.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def format_modifier(value: float) -> str:
    """Format a modifier with an explicit sign."""
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return f"+{value}" if value >= 0 else f"{value}"


def is_finite_number(value: Any) -> bool:
    """True for real numbers that are not NaN/inf (bools excluded)."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def coerce_number(value: Any, label: str = "value") -> CoercedNumber:
    """
    Read a modifier the host may store as a number, numeric string or fraction.

    Anything that does not resolve to a finite number becomes 0, flagged as
    coerced so callers can tell it apart from a real zero.
    """
    if is_finite_number(value):
        return CoercedNumber(value=value, raw=value)

    if isinstance(value, str):
        text = value.strip()
        try:
            parsed = float(Fraction(text))
        except (ValueError, ZeroDivisionError):
            parsed = None
        if parsed is not None and math.isfinite(parsed):
            return CoercedNumber(value=parsed, raw=value)

    logger.debug(f"Non-numeric {label} {value!r}; substituting 0")
    return CoercedNumber(value=0, coerced=True, raw=value)
