from __future__ import annotations

from datetime import date, timedelta
import math
import statistics

import pytest

from settlement.errors import InsufficientHistoryError, InvalidParametersError, UnauthorizedError
from settlement.fixed_point import PRICE_SCALE
from settlement.protocol import ProtectionProtocol
from settlement.state_store import VOLATILITY_WINDOW_CAPACITY
from settlement.volatility import annualized_volatility, range_volatility, sample_std_dev

FIRST_DAY = date(2025, 1, 1)


def _closes(count: int) -> list[int]:
    return [int(40_000 * PRICE_SCALE * (1 + 0.03 * math.sin(day * 0.7))) for day in range(count)]


def _record(protocol: ProtectionProtocol, prices: list[int]) -> None:
    for offset, price in enumerate(prices):
        protocol.volatility.record_daily_close("backend", FIRST_DAY + timedelta(days=offset), price)


def test_constant_prices_have_zero_volatility() -> None:
    assert annualized_volatility([50_000 * PRICE_SCALE] * 31) == 0


def test_annualized_volatility_matches_float_reference() -> None:
    closes = _closes(31)
    returns = [math.log(current / previous) for previous, current in zip(closes, closes[1:])]
    expected = statistics.stdev(returns) * math.sqrt(365) * PRICE_SCALE

    assert annualized_volatility(closes) == pytest.approx(expected, rel=1e-6)


def test_sample_std_dev_requires_two_values() -> None:
    with pytest.raises(InsufficientHistoryError):
        sample_std_dev([1])
    assert sample_std_dev([2, 4, 4, 4, 5, 5, 7, 9]) == 2


def test_range_volatility() -> None:
    assert range_volatility([100, 120, 90, 100]) == 30 * PRICE_SCALE // 100
    with pytest.raises(InsufficientHistoryError):
        range_volatility([100])


def test_compute_volatility_uses_trailing_window(protocol: ProtectionProtocol) -> None:
    closes = _closes(40)
    _record(protocol, closes)

    estimate = protocol.volatility.compute_volatility(30)

    assert estimate.is_fallback is False
    assert estimate.sample_count == 31
    assert estimate.volatility == annualized_volatility(closes[-31:])
    assert protocol.volatility.compute_volatility().window_days == 30


def test_short_history_falls_back_to_range(protocol: ProtectionProtocol) -> None:
    prices = [100 * PRICE_SCALE, 110 * PRICE_SCALE, 95 * PRICE_SCALE, 100 * PRICE_SCALE]
    _record(protocol, prices)

    estimate = protocol.volatility.compute_volatility(30)
    assert estimate.is_fallback is True
    assert estimate.sample_count == 4
    assert estimate.volatility == 15 * PRICE_SCALE // 100

    with pytest.raises(InsufficientHistoryError):
        protocol.volatility.compute_volatility(30, allow_fallback=False)


def test_no_history(protocol: ProtectionProtocol) -> None:
    with pytest.raises(InsufficientHistoryError):
        protocol.volatility.compute_volatility(30)
    assert protocol.volatility.compute_standard_volatilities() == {}


@pytest.mark.parametrize("window_days", [0, 1, 361])
def test_window_bounds(protocol: ProtectionProtocol, window_days: int) -> None:
    with pytest.raises(InvalidParametersError):
        protocol.volatility.compute_volatility(window_days)


def test_standard_windows(protocol: ProtectionProtocol) -> None:
    _record(protocol, _closes(31))
    estimates = protocol.volatility.compute_standard_volatilities()

    assert sorted(estimates) == [30, 60, 90, 180, 360]
    assert estimates[30].is_fallback is False
    assert all(estimates[window].is_fallback for window in (60, 90, 180, 360))


def test_window_capacity_evicts_oldest(protocol: ProtectionProtocol) -> None:
    _record(protocol, _closes(VOLATILITY_WINDOW_CAPACITY + 4))
    closes = protocol.volatility.get_daily_closes()

    assert len(closes) == VOLATILITY_WINDOW_CAPACITY
    assert closes[0].close_date == FIRST_DAY + timedelta(days=4)
    assert protocol.volatility.compute_volatility(360).is_fallback is False


def test_close_dates_must_increase(protocol: ProtectionProtocol) -> None:
    protocol.volatility.record_daily_close("backend", FIRST_DAY, 100 * PRICE_SCALE)
    with pytest.raises(InvalidParametersError, match="not after"):
        protocol.volatility.record_daily_close("backend", FIRST_DAY, 101 * PRICE_SCALE)
    with pytest.raises(InvalidParametersError):
        protocol.volatility.record_daily_close("backend", "2025-01-02", 101 * PRICE_SCALE)
    with pytest.raises(UnauthorizedError):
        protocol.volatility.record_daily_close("alice", FIRST_DAY + timedelta(days=1), 101 * PRICE_SCALE)
    assert len(protocol.volatility.get_daily_closes()) == 1


def test_record_close_from_oracle(protocol: ProtectionProtocol) -> None:
    protocol.oracle.set_price("admin", 42_000 * PRICE_SCALE, protocol.clock.current_time())
    close = protocol.volatility.record_close_from_oracle("backend", FIRST_DAY)
    assert close.close_price == 42_000 * PRICE_SCALE
