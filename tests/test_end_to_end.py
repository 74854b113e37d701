"""Full protection lifecycle across vault, oracle and registry."""

from __future__ import annotations

from settlement import events as ev
from settlement.fixed_point import PRICE_SCALE
from settlement.protocol import ProtectionProtocol
from settlement.state_store import PolicyStatus
from settlement.transfer_simulator import InMemoryTokenLedger


def test_put_protection_lifecycle(protocol: ProtectionProtocol, ledger: InMemoryTokenLedger) -> None:
    protocol.vault.deposit("alice", 10_000)
    policy_id = protocol.registry.create_policy("bob", "bob", "PUT", 45_000 * PRICE_SCALE, 2_500, 1_000)
    assert protocol.vault.get_available_balance() == 7_500

    protocol.clock.advance(blocks=10, seconds=600)
    protocol.oracle.set_price("admin", 40_000 * PRICE_SCALE, protocol.clock.current_time())
    settlement = protocol.registry.activate_policy(policy_id, "bob")

    assert settlement == 277
    assert protocol.vault.get_total_balance() == 9_723
    assert protocol.vault.get_locked_balance() == 0
    assert protocol.registry.get_policy(policy_id).status is PolicyStatus.EXERCISED
    assert ledger.custody_balance("STX") == 9_723
    protocol.vault.assert_invariants()

    protocol.events.verify_continuity()
    lifecycle = [event.event_type for event in protocol.events.events(policy_id=policy_id)]
    assert lifecycle == [
        ev.COLLATERAL_LOCKED,
        ev.POLICY_CREATED,
        ev.SETTLEMENT_PAID,
        ev.POLICY_STATUS_UPDATED,
    ]


def test_consensus_priced_lifecycle(protocol: ProtectionProtocol, providers: tuple[str, ...]) -> None:
    protocol.vault.deposit("alice", 10_000)
    protocol.vault.deposit("carol", 5_000)
    put_id = protocol.registry.create_policy("bob", "bob", "PUT", 45_000 * PRICE_SCALE, 2_500, 1_000)
    call_id = protocol.registry.create_policy("backend", "carol", "CALL", 35_000 * PRICE_SCALE, 2_000, 150)

    now = protocol.clock.current_time()
    for provider, price in zip(providers, (39_990, 40_000, 40_010, 40_000)):
        protocol.oracle.submit_price(provider, price * PRICE_SCALE, now)
    assert protocol.oracle.aggregate("backend").price == 40_000 * PRICE_SCALE

    assert protocol.registry.activate_policy(put_id, "bob") == 277
    # 5_000 / 35_000 of 2_000
    assert protocol.registry.activate_policy(call_id, "carol") == 285
    assert protocol.vault.get_total_balance() == 15_000 - 277 - 285
    assert protocol.vault.get_locked_balance() == 0
