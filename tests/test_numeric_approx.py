"""Error-bound and monotonicity tests for integer sqrt/ln approximations."""

from __future__ import annotations

import math

import pytest

from settlement.errors import InvalidParametersError
from settlement.fixed_point import PRICE_SCALE
from settlement.numeric_approx import isqrt, ln_fixed, ln_ratio, sqrt_fixed

LN_SAMPLES = (
    1,
    2,
    12_345,
    50_000_000,
    99_999_999,
    100_000_000,
    100_000_001,
    271_828_183,
    1_000_000_000_000,
    4_000_000_000_000,
    10**16,
    10**20,
)


def test_isqrt_is_exact_floor() -> None:
    for n in range(0, 5_000):
        assert isqrt(n) == math.isqrt(n)
    for n in (10**16 - 1, 10**16, 2**127 + 12_345, 10**40 + 7):
        assert isqrt(n) == math.isqrt(n)


def test_isqrt_rejects_negative() -> None:
    with pytest.raises(InvalidParametersError):
        isqrt(-4)


def test_sqrt_fixed_keeps_scale() -> None:
    assert sqrt_fixed(4 * PRICE_SCALE) == 2 * PRICE_SCALE
    assert sqrt_fixed(2 * PRICE_SCALE) == 141_421_356
    assert sqrt_fixed(365 * PRICE_SCALE) == math.isqrt(365 * PRICE_SCALE * PRICE_SCALE)
    assert sqrt_fixed(0) == 0


@pytest.mark.parametrize("value", LN_SAMPLES)
def test_ln_fixed_within_two_units(value: int) -> None:
    expected = math.log(value / PRICE_SCALE) * PRICE_SCALE
    assert abs(ln_fixed(value) - expected) <= 2


def test_ln_fixed_of_one_is_zero() -> None:
    assert ln_fixed(PRICE_SCALE) == 0
    assert ln_ratio(7, 7) == 0


def test_ln_ratio_at_high_precision_scale() -> None:
    scale = 10**12
    for numerator, denominator in ((3, 2), (2, 3), (40_000, 45_000), (10**9 + 1, 10**9), (1, 10**6)):
        expected = math.log(numerator / denominator) * scale
        assert abs(ln_ratio(numerator, denominator, scale) - expected) <= 2


def test_ln_fixed_is_monotonic() -> None:
    values = [ln_fixed(x) for x in range(PRICE_SCALE // 2, 2 * PRICE_SCALE, 7_654_321)]
    assert values == sorted(values)
    assert ln_fixed(PRICE_SCALE - 1) <= ln_fixed(PRICE_SCALE) <= ln_fixed(PRICE_SCALE + 1)


def test_ln_ratio_is_antisymmetric_within_bound() -> None:
    for numerator, denominator in ((101, 100), (5, 3), (123_456_789, 98_765_432)):
        forward = ln_ratio(numerator, denominator)
        backward = ln_ratio(denominator, numerator)
        assert abs(forward + backward) <= 2


@pytest.mark.parametrize("numerator,denominator", [(0, 1), (1, 0)])
def test_ln_rejects_non_positive_inputs(numerator: int, denominator: int) -> None:
    with pytest.raises(InvalidParametersError, match="non-positive"):
        ln_ratio(numerator, denominator)


def test_ln_rejects_zero_scale() -> None:
    with pytest.raises(InvalidParametersError, match="scale"):
        ln_ratio(2, 1, 0)
