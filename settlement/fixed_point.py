"""Fixed-point arithmetic over scaled unsigned integers.

All monetary and price quantities in the settlement core are plain Python
ints carrying an implicit scale. Prices use 8 decimals (``PRICE_SCALE``),
percentages use a 1_000_000 = 100% basis (``PERCENT_SCALE``). Every division
truncates toward zero for non-negative operands, so repeated evaluation of the
same inputs always yields the same result.
"""

from __future__ import annotations

from typing import Any

from settlement.errors import InvalidParametersError

PRICE_DECIMALS = 8
PRICE_SCALE = 10**PRICE_DECIMALS
PERCENT_SCALE = 1_000_000
BASIS_POINT_SCALE = 10_000

# Exponents above this bound are rejected to keep power() bounded.
MAX_EXPONENT = 256


def require_uint(value: Any, name: str) -> int:
    """Validate that ``value`` is a non-negative int (bools are rejected)."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidParametersError(f"{name} must be an unsigned integer, got {value!r}.")
    if value < 0:
        raise InvalidParametersError(f"{name} must be >= 0, got {value}.")
    return value


def require_positive(value: Any, name: str) -> int:
    """Validate that ``value`` is an int strictly greater than zero."""
    require_uint(value, name)
    if value == 0:
        raise InvalidParametersError(f"{name} must be > 0.")
    return value


def mul_div(a: int, b: int, denominator: int) -> int:
    """Return floor(a * b / denominator) without intermediate rounding."""
    if denominator == 0:
        raise InvalidParametersError("Division by zero.")
    return (a * b) // denominator


def multiply_decimals(a: int, b: int, scale: int = PRICE_SCALE) -> int:
    """Multiply two values that share ``scale``; result keeps ``scale``."""
    return mul_div(a, b, scale)


def divide_decimals(a: int, b: int, scale: int = PRICE_SCALE) -> int:
    """Divide two values that share ``scale``; result keeps ``scale``."""
    if b == 0:
        raise InvalidParametersError("Division by zero.")
    return mul_div(a, scale, b)


def calculate_percentage(value: int, pct: int, basis: int = PERCENT_SCALE) -> int:
    """Return ``pct`` of ``value`` where ``basis`` represents 100%."""
    return mul_div(value, pct, basis)


def power(base: int, exponent: int) -> int:
    """Integer exponentiation with a bounded exponent."""
    require_uint(base, "base")
    require_uint(exponent, "exponent")
    if exponent > MAX_EXPONENT:
        raise InvalidParametersError(f"exponent must be <= {MAX_EXPONENT}.")
    result = 1
    for _ in range(exponent):
        result *= base
    return result


def deviation_pct(previous: int, current: int) -> int:
    """Relative distance |current - previous| / previous on the percent basis."""
    if previous <= 0:
        raise InvalidParametersError("previous must be > 0 to compute deviation.")
    return mul_div(abs(current - previous), PERCENT_SCALE, previous)


def within_deviation(previous: int, current: int, max_deviation_pct: int) -> bool:
    """True when ``current`` lies inside the ``max_deviation_pct`` band of ``previous``."""
    if previous <= 0:
        raise InvalidParametersError("previous must be > 0 to compute deviation.")
    # Cross-multiplied to avoid truncating the ratio before comparing.
    return abs(current - previous) * PERCENT_SCALE <= max_deviation_pct * previous


def to_fixed(units: int, scale: int = PRICE_SCALE) -> int:
    """Scale a whole-unit integer into fixed-point representation."""
    require_uint(units, "units")
    return units * scale


def format_fixed(value: int, decimals: int = PRICE_DECIMALS) -> str:
    """Render a fixed-point integer as a canonical decimal string."""
    sign = "-" if value < 0 else ""
    whole, frac = divmod(abs(value), 10**decimals)
    if decimals == 0:
        return f"{sign}{whole}"
    return f"{sign}{whole}.{frac:0{decimals}d}"
