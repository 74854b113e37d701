"""Settlement core error taxonomy."""

from __future__ import annotations

from typing import Optional


class SettlementError(RuntimeError):
    """Base class for every domain failure raised by the settlement core."""

    reason_code = "SETTLEMENT_ERROR"
    retryable = False

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail

    def __str__(self) -> str:
        return f"{self.reason_code}: {self.detail}"


class UnauthorizedError(SettlementError):
    reason_code = "UNAUTHORIZED"


class NotFoundError(SettlementError):
    reason_code = "NOT_FOUND"


class InvalidParametersError(SettlementError):
    reason_code = "INVALID_PARAMETERS"


class InvalidStatusTransitionError(SettlementError):
    reason_code = "INVALID_STATUS_TRANSITION"


class InsufficientBalanceError(SettlementError):
    reason_code = "INSUFFICIENT_BALANCE"
    retryable = True


class InsufficientProvidersError(SettlementError):
    reason_code = "INSUFFICIENT_PROVIDERS"
    retryable = True


class PriceOutOfBoundsError(SettlementError):
    reason_code = "PRICE_OUT_OF_BOUNDS"


class StalePriceError(SettlementError):
    reason_code = "STALE_PRICE"
    retryable = True


class NoDataError(SettlementError):
    reason_code = "NO_DATA"


class InsufficientHistoryError(SettlementError):
    reason_code = "INSUFFICIENT_HISTORY"


class TransferFailedError(SettlementError):
    reason_code = "TRANSFER_FAILED"


ERROR_CODES: dict[str, type[SettlementError]] = {
    cls.reason_code: cls
    for cls in (
        UnauthorizedError,
        NotFoundError,
        InvalidParametersError,
        InvalidStatusTransitionError,
        InsufficientBalanceError,
        InsufficientProvidersError,
        PriceOutOfBoundsError,
        StalePriceError,
        NoDataError,
        InsufficientHistoryError,
        TransferFailedError,
    )
}


def error_for_code(reason_code: str, detail: str) -> SettlementError:
    """Rebuild a typed error from a persisted or reported reason code."""
    cls: Optional[type[SettlementError]] = ERROR_CODES.get(reason_code)
    if cls is None:
        raise KeyError(f"Unknown settlement reason_code={reason_code}.")
    return cls(detail)


def is_retryable(error: BaseException) -> bool:
    """Return True when the caller may retry the failed operation unchanged."""
    return isinstance(error, SettlementError) and error.retryable
