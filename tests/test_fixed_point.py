"""Unit tests for fixed-point arithmetic primitives."""

from __future__ import annotations

import pytest

from settlement.errors import InvalidParametersError
from settlement.fixed_point import (
    PERCENT_SCALE,
    PRICE_SCALE,
    calculate_percentage,
    deviation_pct,
    divide_decimals,
    format_fixed,
    mul_div,
    multiply_decimals,
    power,
    require_positive,
    require_uint,
    to_fixed,
    within_deviation,
)


def test_mul_div_floors_without_intermediate_rounding() -> None:
    assert mul_div(7, 3, 2) == 10
    assert mul_div(10**30, 10**30, 10**40) == 10**20
    with pytest.raises(InvalidParametersError, match="Division by zero"):
        mul_div(1, 1, 0)


def test_decimal_multiply_and_divide_keep_scale() -> None:
    assert multiply_decimals(2 * PRICE_SCALE, 3 * PRICE_SCALE) == 6 * PRICE_SCALE
    assert multiply_decimals(PRICE_SCALE // 2, PRICE_SCALE // 2) == PRICE_SCALE // 4
    assert divide_decimals(PRICE_SCALE, 3 * PRICE_SCALE) == 33_333_333
    with pytest.raises(InvalidParametersError):
        divide_decimals(PRICE_SCALE, 0)


def test_calculate_percentage_on_million_basis() -> None:
    assert calculate_percentage(2_500, PERCENT_SCALE) == 2_500
    assert calculate_percentage(2_500, 500_000) == 1_250
    assert calculate_percentage(3, 500_000) == 1
    assert calculate_percentage(10_000, 25, basis=10_000) == 25


def test_power_is_bounded() -> None:
    assert power(2, 10) == 1024
    assert power(10, 0) == 1
    with pytest.raises(InvalidParametersError, match="exponent"):
        power(2, 257)


@pytest.mark.parametrize("value", [-1, True, 1.5, "3", None])
def test_require_uint_rejects_non_unsigned_values(value: object) -> None:
    with pytest.raises(InvalidParametersError):
        require_uint(value, "value")


def test_require_positive_rejects_zero() -> None:
    assert require_positive(1, "amount") == 1
    with pytest.raises(InvalidParametersError, match="amount must be > 0"):
        require_positive(0, "amount")


def test_deviation_band_is_inclusive_and_cross_multiplied() -> None:
    assert deviation_pct(100, 105) == 50_000
    assert deviation_pct(100, 95) == 50_000
    assert within_deviation(100, 105, 50_000)
    assert not within_deviation(100, 106, 50_000)
    assert not within_deviation(59, 62, 50_000)
    with pytest.raises(InvalidParametersError):
        within_deviation(0, 1, 50_000)


def test_to_fixed_and_format_fixed() -> None:
    assert to_fixed(45_000) == 4_500_000_000_000
    assert format_fixed(4_000_000_000_000) == "40000.00000000"
    assert format_fixed(123, decimals=2) == "1.23"
    assert format_fixed(-5, decimals=1) == "-0.5"
    assert format_fixed(42, decimals=0) == "42"
