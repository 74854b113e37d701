"""Rolling daily-close windows and annualized volatility estimates."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
import logging
from typing import Optional

from settlement import events as ev
from settlement.access_control import AccessControl
from settlement.clock import ChainClock
from settlement.errors import InsufficientHistoryError, InvalidParametersError
from settlement.fixed_point import PRICE_SCALE, require_positive, require_uint
from settlement.numeric_approx import WORK_SCALE, isqrt, ln_ratio
from settlement.oracle import PriceOracle
from settlement.state_store import VOLATILITY_WINDOW_CAPACITY, DailyClose, ProtocolStore, Role

logger = logging.getLogger(__name__)

DAYS_PER_YEAR = 365
STANDARD_WINDOWS_DAYS: tuple[int, ...] = (30, 60, 90, 180, 360)
MIN_WINDOW_DAYS = 2
MAX_WINDOW_DAYS = VOLATILITY_WINDOW_CAPACITY - 1

_ANNUALIZATION_WORK = isqrt(DAYS_PER_YEAR * WORK_SCALE * WORK_SCALE)


@dataclass(frozen=True)
class VolatilityEstimate:
    """Annualized volatility at ``PRICE_SCALE`` (10**8 = 100%)."""

    asset: str
    window_days: int
    volatility: int
    is_fallback: bool
    sample_count: int


def log_returns(closes: list[int]) -> list[int]:
    """Daily ln(p_t / p_{t-1}) at WORK_SCALE."""
    return [ln_ratio(current, previous, WORK_SCALE) for previous, current in zip(closes, closes[1:])]


def sample_std_dev(values: list[int]) -> int:
    """Sample standard deviation (n - 1 denominator), same scale as ``values``."""
    if len(values) < 2:
        raise InsufficientHistoryError("Sample standard deviation needs at least two values.")
    mean = sum(values) // len(values)
    squared = sum((value - mean) ** 2 for value in values)
    return isqrt(squared // (len(values) - 1))


def annualized_volatility(closes: list[int]) -> int:
    daily = sample_std_dev(log_returns(closes))
    annual_work = (daily * _ANNUALIZATION_WORK) // WORK_SCALE
    return (annual_work * PRICE_SCALE) // WORK_SCALE


def range_volatility(closes: list[int]) -> int:
    """(high - low) / latest close over ``closes``, at PRICE_SCALE."""
    if len(closes) < 2:
        raise InsufficientHistoryError("Range volatility needs at least two closes.")
    return ((max(closes) - min(closes)) * PRICE_SCALE) // closes[-1]


class VolatilityEngine:
    def __init__(
        self,
        store: ProtocolStore,
        clock: ChainClock,
        access: AccessControl,
        oracle: PriceOracle,
    ) -> None:
        self.store = store
        self.clock = clock
        self.access = access
        self.oracle = oracle

    def _asset(self, asset: Optional[str]) -> str:
        return asset or self.store.parameters.price_asset

    def get_daily_closes(self, asset: Optional[str] = None) -> tuple[DailyClose, ...]:
        return tuple(self.store.state.daily_closes.get(self._asset(asset), ()))

    def record_daily_close(
        self,
        caller: str,
        close_date: date,
        close_price: int,
        asset: Optional[str] = None,
    ) -> DailyClose:
        """Append a close; the oldest close is evicted once the window is full."""
        self.access.require_role(caller, Role.BACKEND)
        asset = self._asset(asset)
        if not isinstance(close_date, date):
            raise InvalidParametersError(f"close_date must be a date, got {close_date!r}.")
        require_positive(close_price, "close_price")
        closes = self.get_daily_closes(asset)
        if closes and close_date <= closes[-1].close_date:
            raise InvalidParametersError(
                f"Close date {close_date.isoformat()} is not after {closes[-1].close_date.isoformat()}."
            )

        with self.store.transaction("daily_closes"):
            close = DailyClose(close_date=close_date, close_price=close_price)
            self.store.state.daily_closes_for(asset).append(close)
            self.store.events.append(
                ev.DAILY_CLOSE_RECORDED,
                self.clock.current_height(),
                asset=asset,
                close_date=close_date,
                close_price=close_price,
            )
        return close

    def record_close_from_oracle(
        self,
        caller: str,
        close_date: date,
        asset: Optional[str] = None,
    ) -> DailyClose:
        latest = self.oracle.get_latest_price(asset)
        return self.record_daily_close(caller, close_date, latest.price, asset)

    def compute_volatility(
        self,
        window_days: Optional[int] = None,
        asset: Optional[str] = None,
        allow_fallback: bool = True,
    ) -> VolatilityEstimate:
        """Annualized std-dev of daily log returns over ``window_days``.

        With fewer than ``window_days + 1`` closes, a range-based estimate over
        the closes available is returned with ``is_fallback=True``.
        """
        asset = self._asset(asset)
        if window_days is None:
            window_days = self.store.parameters.default_volatility_window_days
        require_uint(window_days, "window_days")
        if not MIN_WINDOW_DAYS <= window_days <= MAX_WINDOW_DAYS:
            raise InvalidParametersError(f"window_days must be in [{MIN_WINDOW_DAYS}, {MAX_WINDOW_DAYS}].")

        prices = [close.close_price for close in self.get_daily_closes(asset)]
        if len(prices) >= window_days + 1:
            window = prices[-(window_days + 1):]
            return VolatilityEstimate(
                asset=asset,
                window_days=window_days,
                volatility=annualized_volatility(window),
                is_fallback=False,
                sample_count=len(window),
            )

        if not allow_fallback or len(prices) < 2:
            raise InsufficientHistoryError(
                f"{len(prices)} close(s) for {asset}, need {window_days + 1} for a {window_days}-day window."
            )
        logger.info("Range fallback volatility for %s over %d close(s).", asset, len(prices))
        return VolatilityEstimate(
            asset=asset,
            window_days=window_days,
            volatility=range_volatility(prices),
            is_fallback=True,
            sample_count=len(prices),
        )

    def compute_standard_volatilities(self, asset: Optional[str] = None) -> dict[int, VolatilityEstimate]:
        """Estimates for every standard window that has at least a fallback."""
        asset = self._asset(asset)
        estimates: dict[int, VolatilityEstimate] = {}
        for window_days in STANDARD_WINDOWS_DAYS:
            try:
                estimates[window_days] = self.compute_volatility(window_days, asset)
            except InsufficientHistoryError:
                logger.info("No %d-day volatility for %s yet.", window_days, asset)
        return estimates
