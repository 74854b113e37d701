"""Pytest fixtures shared across unit and integration tests."""

from __future__ import annotations

import os
from typing import Any

import psycopg
import pytest

from settlement.clock import ChainClock
from settlement.config import ProtocolParameters
from settlement.protocol import ProtectionProtocol
from settlement.transfer_simulator import InMemoryTokenLedger

START_HEIGHT = 100
START_TIMESTAMP = 1_700_000_000
WALLET_BALANCE = 1_000_000


@pytest.fixture(scope="session")
def pg_conn() -> Any:
    """Session-scoped psycopg connection for integration tests."""
    host = os.getenv("TEST_DB_HOST")
    port = os.getenv("TEST_DB_PORT")
    dbname = os.getenv("TEST_DB_NAME")
    user = os.getenv("TEST_DB_USER")
    password = os.getenv("TEST_DB_PASSWORD")

    if not all([host, port, dbname, user, password]):
        pytest.skip("Integration DB env vars are missing; set TEST_DB_* to run against PostgreSQL")

    conn = psycopg.connect(
        host=host,
        port=port,
        dbname=dbname,
        user=user,
        password=password,
        autocommit=False,
    )
    try:
        yield conn
    finally:
        conn.close()


@pytest.fixture
def clock() -> ChainClock:
    return ChainClock(height=START_HEIGHT, timestamp=START_TIMESTAMP)


@pytest.fixture
def ledger() -> InMemoryTokenLedger:
    """Wallets for the usual test principals, funded in the collateral token."""
    ledger = InMemoryTokenLedger()
    for holder in ("alice", "bob", "carol"):
        ledger.mint("STX", holder, WALLET_BALANCE)
    return ledger


@pytest.fixture
def protocol(clock: ChainClock, ledger: InMemoryTokenLedger) -> ProtectionProtocol:
    """Bootstrapped protocol: admin "admin", backend "backend", STX vault."""
    protocol = ProtectionProtocol.bootstrap("admin", ProtocolParameters(), clock, ledger)
    protocol.access.set_backend_principal("admin", "backend")
    return protocol


@pytest.fixture
def providers(protocol: ProtectionProtocol) -> tuple[str, ...]:
    names = ("provider-a", "provider-b", "provider-c", "provider-d")
    for name in names:
        protocol.oracle.register_provider("admin", name, weight=1)
    return names
