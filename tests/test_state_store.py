from __future__ import annotations

import pytest

from settlement import events as ev
from settlement.config import ProtocolParameters
from settlement.errors import InvalidParametersError
from settlement.state_store import (
    VOLATILITY_WINDOW_CAPACITY,
    AggregatedPrice,
    ProtocolStore,
    Provider,
    RoleAssignment,
    Role,
)


def test_failed_transaction_restores_state_and_events() -> None:
    store = ProtocolStore.create("admin")
    with store.transaction():
        store.state.providers["p1"] = Provider(principal="p1", weight=1, reliability_score=950_000)
        store.events.append(ev.PROVIDER_REGISTERED, 1, provider="p1")

    with pytest.raises(InvalidParametersError):
        with store.transaction():
            store.state.providers["p1"].weight = 99
            store.state.providers["p2"] = Provider(principal="p2", weight=1, reliability_score=950_000)
            store.events.append(ev.PROVIDER_REGISTERED, 2, provider="p2")
            raise InvalidParametersError("boom")

    assert set(store.state.providers) == {"p1"}
    assert store.state.providers["p1"].weight == 1
    assert len(store.events) == 1
    assert not store.in_transaction


def test_nested_transaction_joins_outer() -> None:
    store = ProtocolStore.create("admin")
    with pytest.raises(RuntimeError):
        with store.transaction():
            with store.transaction():
                store.state.next_policy_id = 7
                assert store.in_transaction
            assert store.state.next_policy_id == 7
            raise RuntimeError("outer failure")
    assert store.state.next_policy_id == 1


def test_role_assignment_effectiveness() -> None:
    assignment = RoleAssignment(Role.BACKEND, "ops", "admin", granted_at_height=1, expires_at_height=10)
    assert assignment.is_effective(10)
    assert not assignment.is_effective(11)
    assignment.is_enabled = False
    assert not assignment.is_effective(5)


def test_daily_close_window_is_bounded() -> None:
    store = ProtocolStore.create("admin")
    assert store.state.daily_closes_for("BTC").maxlen == VOLATILITY_WINDOW_CAPACITY


def test_create_validates_parameters() -> None:
    with pytest.raises(InvalidParametersError):
        ProtocolStore.create("admin", ProtocolParameters(min_providers=0))


def test_rollback_keeps_object_identity() -> None:
    store = ProtocolStore.create("admin")
    with store.transaction():
        store.state.providers["p1"] = Provider(principal="p1", weight=1, reliability_score=950_000)
        store.events.append(ev.PROVIDER_REGISTERED, 1, provider="p1")
    state, events, providers = store.state, store.events, store.state.providers
    provider = providers["p1"]

    with pytest.raises(RuntimeError):
        with store.transaction("providers"):
            store.preserve(provider).weight = 5
            store.events.append(ev.PROVIDER_WEIGHT_UPDATED, 2, provider="p1", weight=5)
            raise RuntimeError("abort")

    assert store.state is state
    assert store.events is events
    assert store.state.providers is providers
    assert providers["p1"] is provider
    assert provider.weight == 1
    assert len(events) == 1
    events.verify_continuity()


def test_scoped_transaction_restores_named_tables_only() -> None:
    store = ProtocolStore.create("admin")
    price = AggregatedPrice(asset="BTC", price=100, timestamp=1, contributing_provider_count=1)
    with pytest.raises(RuntimeError):
        with store.transaction("latest_prices", "price_history", "next_policy_id"):
            store.state.latest_prices["BTC"] = price
            store.state.price_history_for("BTC").append(price)
            store.state.next_policy_id = 9
            raise RuntimeError("abort")

    assert store.state.latest_prices == {}
    assert store.state.price_history == {}
    assert store.state.next_policy_id == 1


def test_rollback_restores_existing_ring_buffer_contents() -> None:
    store = ProtocolStore.create("admin")
    first = AggregatedPrice(asset="BTC", price=100, timestamp=1, contributing_provider_count=1)
    second = AggregatedPrice(asset="BTC", price=101, timestamp=2, contributing_provider_count=1)
    with store.transaction("price_history"):
        store.state.price_history_for("BTC").append(first)
    history = store.state.price_history["BTC"]

    with pytest.raises(RuntimeError):
        with store.transaction("price_history"):
            store.state.price_history_for("BTC").append(second)
            raise RuntimeError("abort")

    assert store.state.price_history["BTC"] is history
    assert list(history) == [first]


def test_nested_transaction_extends_captured_tables() -> None:
    store = ProtocolStore.create("admin")
    with pytest.raises(RuntimeError):
        with store.transaction("next_policy_id"):
            store.state.next_policy_id = 2
            with store.transaction("next_submission_id"):
                store.state.next_submission_id = 3
            raise RuntimeError("outer failure")
    assert (store.state.next_policy_id, store.state.next_submission_id) == (1, 1)


def test_unknown_table_is_rejected() -> None:
    store = ProtocolStore.create("admin")
    with pytest.raises(ValueError, match="Unknown protocol tables: vaults"):
        with store.transaction("vaults"):
            pass
    assert not store.in_transaction


def test_preserve_outside_transaction_is_a_no_op() -> None:
    store = ProtocolStore.create("admin")
    provider = Provider(principal="p1", weight=1, reliability_score=950_000)
    assert store.preserve(provider) is provider
