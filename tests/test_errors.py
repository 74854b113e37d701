from __future__ import annotations

import pytest

from settlement.errors import (
    ERROR_CODES,
    InsufficientBalanceError,
    InvalidStatusTransitionError,
    SettlementError,
    StalePriceError,
    UnauthorizedError,
    error_for_code,
    is_retryable,
)


def test_every_reason_code_is_registered_once() -> None:
    assert len(ERROR_CODES) == 11
    for code, cls in ERROR_CODES.items():
        assert issubclass(cls, SettlementError)
        assert cls.reason_code == code


def test_error_for_code_rebuilds_typed_error() -> None:
    error = error_for_code("STALE_PRICE", "BTC price is 7200s old")
    assert isinstance(error, StalePriceError)
    assert error.detail == "BTC price is 7200s old"
    assert str(error) == "STALE_PRICE: BTC price is 7200s old"
    with pytest.raises(KeyError, match="UNKNOWN"):
        error_for_code("UNKNOWN", "x")


@pytest.mark.parametrize(
    ("error", "retryable"),
    [
        (StalePriceError("x"), True),
        (InsufficientBalanceError("x"), True),
        (InvalidStatusTransitionError("x"), False),
        (UnauthorizedError("x"), False),
        (ValueError("x"), False),
    ],
)
def test_retryability(error: BaseException, retryable: bool) -> None:
    assert is_retryable(error) is retryable
