from __future__ import annotations

import pytest

from settlement import events as ev
from settlement.errors import InvalidParametersError, UnauthorizedError
from settlement.policy_registry import REGISTRY_PRINCIPAL
from settlement.protocol import ProtectionProtocol
from settlement.state_store import Role


def test_bootstrap_grants_expected_roles(protocol: ProtectionProtocol) -> None:
    access = protocol.access
    assert access.has_role("admin", Role.ADMIN)
    assert access.has_role("admin", Role.PRICE_SUBMITTER)
    assert access.holders(Role.POLICY_REGISTRY) == (REGISTRY_PRINCIPAL,)
    assert access.holders(Role.BACKEND) == ("backend",)
    assert not access.has_role("alice", Role.ADMIN)


def test_non_admin_cannot_grant(protocol: ProtectionProtocol) -> None:
    before = len(protocol.events)
    with pytest.raises(UnauthorizedError, match="lacks required role"):
        protocol.access.grant_role("alice", Role.BACKEND, "alice")
    assert len(protocol.events) == before
    assert not protocol.access.has_role("alice", Role.BACKEND)


def test_role_expires_after_height(protocol: ProtectionProtocol) -> None:
    protocol.access.grant_role("admin", Role.PRICE_SUBMITTER, "feeder", expires_at_height=105)
    protocol.clock.advance(blocks=5)
    assert protocol.access.has_role("feeder", Role.PRICE_SUBMITTER)
    protocol.clock.advance(blocks=1)
    assert not protocol.access.has_role("feeder", Role.PRICE_SUBMITTER)


def test_expiry_in_the_past_is_rejected(protocol: ProtectionProtocol) -> None:
    with pytest.raises(InvalidParametersError, match="past"):
        protocol.access.grant_role("admin", Role.BACKEND, "ops", expires_at_height=99)


def test_revoke_role(protocol: ProtectionProtocol) -> None:
    assert protocol.access.revoke_role("admin", Role.BACKEND, "backend") is True
    assert not protocol.access.has_role("backend", Role.BACKEND)
    assert protocol.access.revoke_role("admin", Role.BACKEND, "backend") is False
    assert protocol.access.revoke_role("admin", Role.BACKEND, "nobody") is False
    revoked = protocol.events.events(event_type=ev.ROLE_REVOKED)
    assert [event.get("principal") for event in revoked] == ["backend"]


def test_single_holder_setters_replace_previous_holder(protocol: ProtectionProtocol) -> None:
    protocol.access.set_backend_principal("admin", "backend-2")
    assert protocol.access.holders(Role.BACKEND) == ("backend-2",)
    assert protocol.access.get_assignment(Role.BACKEND, "backend").is_enabled is False

    protocol.access.set_authorized_submitter("admin", "feeder")
    assert protocol.access.holders(Role.PRICE_SUBMITTER) == ("feeder",)


def test_update_parameters_records_changes(protocol: ProtectionProtocol) -> None:
    updated = protocol.access.update_parameters("admin", min_providers=5, max_price_age_seconds=600)
    assert updated.min_providers == 5
    assert protocol.store.parameters.max_price_age_seconds == 600
    event = protocol.events.events(event_type=ev.PARAMETERS_UPDATED)[-1]
    assert event.get("changes") == {"max_price_age_seconds": 600, "min_providers": 5}


@pytest.mark.parametrize(
    "changes",
    [
        {"min_providers": 0},
        {"max_deviation_pct": 1_000_001},
        {"collateral_token": " "},
        {"no_such_parameter": 1},
    ],
)
def test_invalid_parameter_updates_change_nothing(protocol: ProtectionProtocol, changes: dict) -> None:
    before = protocol.store.parameters
    event_count = len(protocol.events)
    with pytest.raises(InvalidParametersError):
        protocol.access.update_parameters("admin", **changes)
    assert protocol.store.parameters == before
    assert len(protocol.events) == event_count


def test_only_admin_updates_parameters(protocol: ProtectionProtocol) -> None:
    with pytest.raises(UnauthorizedError):
        protocol.access.update_parameters("backend", min_providers=1)
