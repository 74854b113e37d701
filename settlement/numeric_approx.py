"""Integer approximations of sqrt and ln for fixed-point volatility math.

Error bounds (checked by tests/test_numeric_approx.py):

- ``isqrt(n)`` returns exactly floor(sqrt(n)) for every n >= 0.
- ``sqrt_fixed(x, scale)`` returns exactly floor(sqrt(x / scale) * scale).
- ``ln_fixed(x, scale)`` and ``ln_ratio(n, d, scale)`` are within 2 units of
  the true logarithm at the output scale, for any output scale up to 10**12.
  The series is evaluated at 18 decimals and floored once at the output scale.
"""

from __future__ import annotations

from settlement.errors import InvalidParametersError
from settlement.fixed_point import PRICE_SCALE, require_uint

WORK_SCALE = 10**18
LN2_WORK = 693_147_180_559_945_309
LN_MAX_TERMS = 40
MAX_NEWTON_ITERATIONS = 512


def isqrt(n: int) -> int:
    """Floor square root by Newton's method."""
    require_uint(n, "n")
    if n < 2:
        return n
    x = 1 << ((n.bit_length() + 1) // 2)
    for _ in range(MAX_NEWTON_ITERATIONS):
        y = (x + n // x) // 2
        if y >= x:
            return x
        x = y
    raise ArithmeticError("isqrt did not converge.")


def sqrt_fixed(x: int, scale: int = PRICE_SCALE) -> int:
    """Square root of a fixed-point value, keeping its scale."""
    require_uint(x, "x")
    return isqrt(x * scale)


def _reduce_to_unit_interval(numerator: int, denominator: int) -> tuple[int, int]:
    """Return (k, y) with n / d = 2**k * y / WORK_SCALE and WORK_SCALE <= y < 2 * WORK_SCALE."""
    k = numerator.bit_length() - denominator.bit_length()
    while True:
        if k >= 0:
            y = (numerator * WORK_SCALE) // (denominator << k)
        else:
            y = ((numerator << -k) * WORK_SCALE) // denominator
        if y < WORK_SCALE:
            k -= 1
        elif y >= 2 * WORK_SCALE:
            k += 1
        else:
            return k, y


def _ln_work(numerator: int, denominator: int) -> int:
    """ln(numerator / denominator) at WORK_SCALE.

    ln(r) = k * ln(2) + ln(y) with y in [1, 2), and
    ln(y) = 2 * atanh(z) = 2 * sum(z**(2i+1) / (2i+1)) with z = (y-1)/(y+1) < 1/3,
    so every term shrinks by at least 9x and LN_MAX_TERMS bounds the loop.
    """
    k, y = _reduce_to_unit_interval(numerator, denominator)
    z = ((y - WORK_SCALE) * WORK_SCALE) // (y + WORK_SCALE)
    z_squared = (z * z) // WORK_SCALE

    series = 0
    term = z
    for i in range(LN_MAX_TERMS):
        if term == 0:
            break
        series += term // (2 * i + 1)
        term = (term * z_squared) // WORK_SCALE
    return k * LN2_WORK + 2 * series


def ln_ratio(numerator: int, denominator: int, scale: int = PRICE_SCALE) -> int:
    """ln(numerator / denominator) at ``scale`` without truncating the ratio first."""
    require_uint(numerator, "numerator")
    require_uint(denominator, "denominator")
    if numerator == 0 or denominator == 0:
        raise InvalidParametersError("ln is undefined for non-positive inputs.")
    if scale <= 0:
        raise InvalidParametersError("scale must be > 0.")
    return (_ln_work(numerator, denominator) * scale) // WORK_SCALE


def ln_fixed(x: int, scale: int = PRICE_SCALE) -> int:
    """Natural logarithm of the fixed-point value ``x / scale``; result at ``scale``."""
    return ln_ratio(x, scale, scale)
