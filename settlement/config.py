"""Environment-backed configuration for the settlement core."""

from __future__ import annotations

from dataclasses import asdict, dataclass, fields, replace
import os
from typing import Any, Optional

from settlement.errors import InvalidParametersError
from settlement.fixed_point import PERCENT_SCALE


@dataclass(frozen=True)
class ProtocolParameters:
    """Admin-tunable protocol parameters. Percentages use the 1_000_000 basis."""

    max_deviation_pct: int = 50_000
    max_price_age_seconds: int = 3600
    min_providers: int = 3
    submission_freshness_seconds: int = 300
    outlier_mad_multiple: int = 3_000_000
    min_outlier_band_pct: int = 1_000
    put_collateral_pct: int = 1_000_000
    call_collateral_pct: int = 500_000
    collateral_token: str = "STX"
    price_asset: str = "BTC"
    default_volatility_window_days: int = 30

    def validate(self) -> "ProtocolParameters":
        """Reject out-of-range values; returns self for chaining."""
        for item in fields(self):
            value = getattr(self, item.name)
            if item.type in ("int", int):
                if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                    raise InvalidParametersError(f"{item.name} must be a non-negative integer.")
            elif not isinstance(value, str) or value.strip() == "":
                raise InvalidParametersError(f"{item.name} must be a non-empty string.")

        if self.max_deviation_pct == 0 or self.max_deviation_pct > PERCENT_SCALE:
            raise InvalidParametersError("max_deviation_pct must be in (0, 1_000_000].")
        if self.max_price_age_seconds == 0:
            raise InvalidParametersError("max_price_age_seconds must be > 0.")
        if self.min_providers == 0:
            raise InvalidParametersError("min_providers must be > 0.")
        if self.submission_freshness_seconds == 0:
            raise InvalidParametersError("submission_freshness_seconds must be > 0.")
        if self.outlier_mad_multiple == 0:
            raise InvalidParametersError("outlier_mad_multiple must be > 0.")
        for name in ("put_collateral_pct", "call_collateral_pct"):
            value = getattr(self, name)
            if value == 0 or value > PERCENT_SCALE:
                raise InvalidParametersError(f"{name} must be in (0, 1_000_000].")
        if self.default_volatility_window_days < 1:
            raise InvalidParametersError("default_volatility_window_days must be >= 1.")
        return self

    def with_changes(self, **changes: Any) -> "ProtocolParameters":
        """Return a validated copy with ``changes`` applied."""
        known = {item.name for item in fields(self)}
        unknown = sorted(set(changes) - known)
        if unknown:
            raise InvalidParametersError(f"Unknown protocol parameters: {unknown}.")
        return replace(self, **changes).validate()

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ProtocolConfig:
    """Process-level configuration surface."""

    admin_principal: str
    database_url: Optional[str]
    log_level: str
    parameters: ProtocolParameters


_REQUIRED_KEYS: tuple[str, ...] = ("SETTLEMENT_ADMIN_PRINCIPAL",)

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def _read_env(name: str, default: str | None = None) -> str:
    value = os.getenv(name, default)
    if value is None or value.strip() == "":
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value.strip()


def _read_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    normalized = raw.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise RuntimeError(f"Invalid boolean value for {name}: {raw}")


def _read_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw.strip())
    except ValueError as exc:
        raise RuntimeError(f"Invalid integer value for {name}: {raw}") from exc
    return value


def load_protocol_parameters() -> ProtocolParameters:
    """Load protocol parameters from ``SETTLEMENT_*`` variables over the defaults."""
    defaults = ProtocolParameters()
    parameters = ProtocolParameters(
        max_deviation_pct=_read_int("SETTLEMENT_MAX_DEVIATION_PCT", defaults.max_deviation_pct),
        max_price_age_seconds=_read_int("SETTLEMENT_MAX_PRICE_AGE_SECONDS", defaults.max_price_age_seconds),
        min_providers=_read_int("SETTLEMENT_MIN_PROVIDERS", defaults.min_providers),
        submission_freshness_seconds=_read_int(
            "SETTLEMENT_SUBMISSION_FRESHNESS_SECONDS",
            defaults.submission_freshness_seconds,
        ),
        outlier_mad_multiple=_read_int("SETTLEMENT_OUTLIER_MAD_MULTIPLE", defaults.outlier_mad_multiple),
        min_outlier_band_pct=_read_int("SETTLEMENT_MIN_OUTLIER_BAND_PCT", defaults.min_outlier_band_pct),
        put_collateral_pct=_read_int("SETTLEMENT_PUT_COLLATERAL_PCT", defaults.put_collateral_pct),
        call_collateral_pct=_read_int("SETTLEMENT_CALL_COLLATERAL_PCT", defaults.call_collateral_pct),
        collateral_token=os.getenv("SETTLEMENT_COLLATERAL_TOKEN", defaults.collateral_token).strip(),
        price_asset=os.getenv("SETTLEMENT_PRICE_ASSET", defaults.price_asset).strip(),
        default_volatility_window_days=_read_int(
            "SETTLEMENT_VOLATILITY_WINDOW_DAYS",
            defaults.default_volatility_window_days,
        ),
    )
    try:
        return parameters.validate()
    except InvalidParametersError as exc:
        raise RuntimeError(f"Invalid protocol parameters: {exc.detail}") from exc


def load_protocol_config() -> ProtocolConfig:
    """Load and validate the settlement configuration from environment."""
    for key in _REQUIRED_KEYS:
        _read_env(key)

    log_level = os.getenv("SETTLEMENT_LOG_LEVEL", "INFO").strip().upper()
    if log_level not in _LOG_LEVELS:
        raise RuntimeError(f"Invalid log level for SETTLEMENT_LOG_LEVEL: {log_level}")

    database_url = os.getenv("SETTLEMENT_DATABASE_URL", "").strip() or None
    if database_url is None and _read_bool("SETTLEMENT_REQUIRE_DATABASE", False):
        raise RuntimeError("SETTLEMENT_REQUIRE_DATABASE is set but SETTLEMENT_DATABASE_URL is missing")

    return ProtocolConfig(
        admin_principal=_read_env("SETTLEMENT_ADMIN_PRINCIPAL"),
        database_url=database_url,
        log_level=log_level,
        parameters=load_protocol_parameters(),
    )
