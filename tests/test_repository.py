"""Round-trip persistence of protocol state through the ORM schema (SQLite)."""

from __future__ import annotations

from datetime import date
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from backend.db.base import Base
from backend.db.repository import ProtocolRepository
from settlement.clock import ChainClock
from settlement.errors import TransferFailedError
from settlement.events import EventLogIntegrityError
from settlement.fixed_point import PRICE_SCALE
from settlement.protocol import ProtectionProtocol
from settlement.state_store import PolicyStatus, Role
from settlement.transfer_simulator import InMemoryTokenLedger


@pytest.fixture
def repository(tmp_path: Path) -> ProtocolRepository:
    engine = create_engine(f"sqlite:///{tmp_path / 'protocol.db'}")
    Base.metadata.create_all(engine)
    return ProtocolRepository(sessionmaker(bind=engine, expire_on_commit=False))


@pytest.fixture
def busy_protocol(protocol: ProtectionProtocol, providers: tuple[str, ...]) -> ProtectionProtocol:
    now = protocol.clock.current_time()
    protocol.access.grant_role("admin", Role.PRICE_SUBMITTER, "feeder", expires_at_height=500)
    for provider, price in zip(providers, (40_000, 40_010, 39_990, 40_005)):
        protocol.oracle.submit_price(provider, price * PRICE_SCALE, now)
    protocol.oracle.aggregate("backend")
    protocol.oracle.submit_price("provider-a", 40_020 * PRICE_SCALE, now)
    protocol.volatility.record_daily_close("backend", date(2025, 1, 1), 39_000 * PRICE_SCALE)
    protocol.volatility.record_close_from_oracle("backend", date(2025, 1, 2))
    protocol.vault.deposit("alice", 10_000)
    protocol.vault.deposit("carol", 4_000)
    exercised = protocol.registry.create_policy("bob", "bob", "PUT", 45_000 * PRICE_SCALE, 2_500, 1_000)
    protocol.registry.create_policy("carol", "carol", "CALL", 30_000 * PRICE_SCALE, 3_000, 1_000, premium=75)
    protocol.registry.activate_policy(exercised, "bob")
    return protocol


def test_load_without_state_returns_none(repository: ProtocolRepository) -> None:
    assert repository.load() is None
    assert not repository.has_state()
    assert len(repository.load_events()) == 0


def test_save_and_load_round_trip(repository: ProtocolRepository, busy_protocol: ProtectionProtocol) -> None:
    appended = repository.save(busy_protocol.store)

    assert appended == len(busy_protocol.events)
    assert repository.has_state()
    assert repository.persisted_event_count() == appended

    loaded = repository.load()
    assert loaded is not None
    assert loaded.state == busy_protocol.store.state
    assert list(loaded.events) == list(busy_protocol.events)
    assert loaded.events.tail_hash == busy_protocol.events.tail_hash


def test_loaded_state_keeps_operating(
    repository: ProtocolRepository,
    busy_protocol: ProtectionProtocol,
    clock: ChainClock,
    ledger: InMemoryTokenLedger,
) -> None:
    repository.save(busy_protocol.store)
    restored = ProtectionProtocol.assemble(
        repository.load(),
        clock=ChainClock(height=clock.height, timestamp=clock.timestamp),
        transfers=ledger,
    )

    assert restored.has_role("feeder", Role.PRICE_SUBMITTER)
    assert restored.vault.get_locked_balance() == 1_500
    restored.clock.advance(blocks=1_000)
    assert restored.registry.expire_due_policies("backend") == (2,)
    assert restored.registry.get_policy(2).status is PolicyStatus.EXPIRED

    assert repository.save(restored.store) == 2
    assert repository.persisted_event_count() == len(restored.events)
    repository.load_events().verify_continuity()


def test_save_rejects_diverged_event_log(
    repository: ProtocolRepository, busy_protocol: ProtectionProtocol
) -> None:
    repository.save(busy_protocol.store)
    other = ProtectionProtocol.bootstrap("other-admin", clock=ChainClock(height=1, timestamp=1))

    with pytest.raises(EventLogIntegrityError, match="not a prefix"):
        repository.save(other.store)

    loaded = repository.load()
    assert loaded.state.admin_principal == "admin"
    assert loaded.events.tail_hash == busy_protocol.events.tail_hash


def test_save_is_idempotent(repository: ProtocolRepository, busy_protocol: ProtectionProtocol) -> None:
    repository.save(busy_protocol.store)
    assert repository.save(busy_protocol.store) == 0
    assert repository.load().state == busy_protocol.store.state


def test_premiums_survive_round_trip(repository: ProtocolRepository, busy_protocol: ProtectionProtocol) -> None:
    repository.save(busy_protocol.store)
    loaded = repository.load()

    assert loaded is not None
    assert loaded.state.policies[2].premium == 75
    assert loaded.state.vault_accounts["STX"].premiums_collected == 75


def test_loaded_event_log_survives_failed_operation(
    repository: ProtocolRepository,
    busy_protocol: ProtectionProtocol,
    clock: ChainClock,
    ledger: InMemoryTokenLedger,
) -> None:
    repository.save(busy_protocol.store)
    store = repository.load()
    assert store is not None
    loaded_log = store.events
    restored = ProtectionProtocol.assemble(
        store,
        clock=ChainClock(height=clock.height, timestamp=clock.timestamp),
        transfers=ledger,
    )

    ledger.fail_next = "custody down"
    with pytest.raises(TransferFailedError):
        restored.vault.deposit("alice", 100)
    restored.vault.deposit("alice", 100)

    assert restored.events is loaded_log
    assert repository.save(restored.store) == 1
    repository.load_events().verify_continuity()
