from __future__ import annotations

import pytest

from settlement.config import ProtocolParameters, load_protocol_config, load_protocol_parameters

_ENV_KEYS = (
    "SETTLEMENT_ADMIN_PRINCIPAL",
    "SETTLEMENT_DATABASE_URL",
    "SETTLEMENT_REQUIRE_DATABASE",
    "SETTLEMENT_LOG_LEVEL",
    "SETTLEMENT_MIN_PROVIDERS",
    "SETTLEMENT_MAX_DEVIATION_PCT",
    "SETTLEMENT_COLLATERAL_TOKEN",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


def test_defaults_when_environment_is_empty() -> None:
    assert load_protocol_parameters() == ProtocolParameters()


def test_parameters_read_from_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SETTLEMENT_MIN_PROVIDERS", "5")
    monkeypatch.setenv("SETTLEMENT_COLLATERAL_TOKEN", " sBTC ")
    parameters = load_protocol_parameters()
    assert parameters.min_providers == 5
    assert parameters.collateral_token == "sBTC"


def test_invalid_integer_is_reported(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SETTLEMENT_MIN_PROVIDERS", "three")
    with pytest.raises(RuntimeError, match="Invalid integer value for SETTLEMENT_MIN_PROVIDERS"):
        load_protocol_parameters()


def test_out_of_range_parameter_is_reported(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SETTLEMENT_MAX_DEVIATION_PCT", "0")
    with pytest.raises(RuntimeError, match="Invalid protocol parameters"):
        load_protocol_parameters()


def test_config_requires_admin() -> None:
    with pytest.raises(RuntimeError, match="SETTLEMENT_ADMIN_PRINCIPAL"):
        load_protocol_config()


def test_config_loads(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SETTLEMENT_ADMIN_PRINCIPAL", "admin")
    monkeypatch.setenv("SETTLEMENT_LOG_LEVEL", "debug")
    monkeypatch.setenv("SETTLEMENT_DATABASE_URL", "sqlite:///protocol.db")
    config = load_protocol_config()
    assert config.admin_principal == "admin"
    assert config.log_level == "DEBUG"
    assert config.database_url == "sqlite:///protocol.db"
    assert config.parameters == ProtocolParameters()


def test_config_rejects_unknown_log_level(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SETTLEMENT_ADMIN_PRINCIPAL", "admin")
    monkeypatch.setenv("SETTLEMENT_LOG_LEVEL", "chatty")
    with pytest.raises(RuntimeError, match="Invalid log level"):
        load_protocol_config()


def test_required_database(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SETTLEMENT_ADMIN_PRINCIPAL", "admin")
    monkeypatch.setenv("SETTLEMENT_REQUIRE_DATABASE", "yes")
    with pytest.raises(RuntimeError, match="SETTLEMENT_DATABASE_URL is missing"):
        load_protocol_config()

    monkeypatch.setenv("SETTLEMENT_REQUIRE_DATABASE", "maybe")
    with pytest.raises(RuntimeError, match="Invalid boolean value"):
        load_protocol_config()
