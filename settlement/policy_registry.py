"""Protection policy state machine: Active -> Exercised | Expired."""

from __future__ import annotations

import logging
from typing import Optional, Union

from settlement import events as ev
from settlement.access_control import AccessControl
from settlement.clock import ChainClock
from settlement.config import ProtocolParameters
from settlement.errors import (
    InvalidParametersError,
    InvalidStatusTransitionError,
    NotFoundError,
    UnauthorizedError,
)
from settlement.fixed_point import calculate_percentage, mul_div, require_positive, require_uint
from settlement.oracle import PriceOracle
from settlement.state_store import Policy, PolicyStatus, PolicyType, ProtocolStore, Role
from settlement.vault import CollateralVault

logger = logging.getLogger(__name__)

REGISTRY_PRINCIPAL = "policy-registry"
VAULT_COUNTERPARTY = "collateral-vault"
MAX_EXPIRATIONS_PER_CALL = 50


def coerce_policy_type(value: Union[PolicyType, str]) -> PolicyType:
    if isinstance(value, PolicyType):
        return value
    try:
        return PolicyType(str(value).strip().upper())
    except ValueError as exc:
        raise InvalidParametersError(f"Unsupported policy type {value!r}.") from exc


def compute_settlement(
    policy_type: Union[PolicyType, str],
    strike_price: int,
    spot_price: int,
    protected_amount: int,
) -> int:
    """Payout owed on exercise, never negative.

    PUT:  max(0, (strike - spot) * protected / strike)
    CALL: max(0, (spot - strike) * protected / strike)
    """
    policy_type = coerce_policy_type(policy_type)
    require_positive(strike_price, "strike_price")
    require_uint(spot_price, "spot_price")
    require_uint(protected_amount, "protected_amount")
    if policy_type is PolicyType.PUT:
        if spot_price >= strike_price:
            return 0
        return mul_div(strike_price - spot_price, protected_amount, strike_price)
    if spot_price <= strike_price:
        return 0
    return mul_div(spot_price - strike_price, protected_amount, strike_price)


def required_collateral(
    policy_type: Union[PolicyType, str],
    protected_amount: int,
    parameters: ProtocolParameters,
) -> int:
    policy_type = coerce_policy_type(policy_type)
    pct = parameters.put_collateral_pct if policy_type is PolicyType.PUT else parameters.call_collateral_pct
    return calculate_percentage(protected_amount, pct)


class PolicyRegistry:
    def __init__(
        self,
        store: ProtocolStore,
        clock: ChainClock,
        access: AccessControl,
        oracle: PriceOracle,
        vault: CollateralVault,
        principal: str = REGISTRY_PRINCIPAL,
    ) -> None:
        self.store = store
        self.clock = clock
        self.access = access
        self.oracle = oracle
        self.vault = vault
        self.principal = principal

    # Reads

    def get_policy(self, policy_id: int) -> Policy:
        policy = self.store.state.policies.get(policy_id)
        if policy is None:
            raise NotFoundError(f"Policy {policy_id} does not exist.")
        return policy

    def get_policy_count(self) -> int:
        return len(self.store.state.policies)

    def get_policies_by_owner(self, owner: str) -> tuple[Policy, ...]:
        return tuple(
            policy for _, policy in sorted(self.store.state.policies.items()) if policy.owner == owner
        )

    def find_expirable_policies(self, limit: int = MAX_EXPIRATIONS_PER_CALL) -> tuple[Policy, ...]:
        """Active policies whose expiration height has passed, oldest id first."""
        require_uint(limit, "limit")
        height = self.clock.current_height()
        due: list[Policy] = []
        for _, policy in sorted(self.store.state.policies.items()):
            if len(due) >= limit:
                break
            if policy.status is PolicyStatus.ACTIVE and height > policy.expiration_height:
                due.append(policy)
        return tuple(due)

    # Transitions

    def create_policy(
        self,
        caller: str,
        owner: str,
        policy_type: Union[PolicyType, str],
        strike_price: int,
        protected_amount: int,
        expiration_height: int,
        premium: int = 0,
    ) -> int:
        """Validate terms, lock collateral and collect the premium, then record the policy.

        Returns the new policy id. A zero ``premium`` skips premium collection.
        """
        if caller != owner:
            self.access.require_role(caller, Role.BACKEND)
        if not owner:
            raise InvalidParametersError("owner must be non-empty.")
        policy_type = coerce_policy_type(policy_type)
        require_positive(strike_price, "strike_price")
        require_positive(protected_amount, "protected_amount")
        require_uint(expiration_height, "expiration_height")
        require_uint(premium, "premium")
        height = self.clock.current_height()
        if expiration_height <= height:
            raise InvalidParametersError(
                f"expiration_height {expiration_height} must be after current height {height}."
            )
        collateral = required_collateral(policy_type, protected_amount, self.store.parameters)
        if collateral == 0:
            raise InvalidParametersError("protected_amount is too small to require any collateral.")
        token_id = self.store.parameters.collateral_token

        with self.store.transaction("policies", "next_policy_id"):
            state = self.store.state
            policy_id = state.next_policy_id
            self.vault.lock(self.principal, collateral, policy_id, token_id)
            if premium > 0:
                self.vault.record_premium(self.principal, premium, owner, policy_id, token_id)
            state.policies[policy_id] = Policy(
                policy_id=policy_id,
                owner=owner,
                counterparty=VAULT_COUNTERPARTY,
                policy_type=policy_type,
                strike_price=strike_price,
                protected_amount=protected_amount,
                expiration_height=expiration_height,
                collateral_token=token_id,
                locked_collateral=collateral,
                created_at_height=height,
                premium=premium,
            )
            state.next_policy_id += 1
            self.store.events.append(
                ev.POLICY_CREATED,
                height,
                policy_id=policy_id,
                owner=owner,
                policy_type=policy_type,
                strike_price=strike_price,
                protected_amount=protected_amount,
                expiration_height=expiration_height,
                locked_collateral=collateral,
                premium=premium,
            )
        logger.info("Policy %d created for %s (%s, strike %d).", policy_id, owner, policy_type.value, strike_price)
        return policy_id

    def _mark_terminal(
        self,
        policy_id: int,
        new_status: PolicyStatus,
        settlement_amount: Optional[int] = None,
    ) -> Policy:
        policy = self.store.preserve(self.store.state.policies[policy_id])
        previous = policy.status
        height = self.clock.current_height()
        policy.status = new_status
        policy.settlement_amount = settlement_amount
        policy.status_changed_at_height = height
        self.store.events.append(
            ev.POLICY_STATUS_UPDATED,
            height,
            policy_id=policy_id,
            previous_status=previous,
            new_status=new_status,
            settlement_amount=settlement_amount,
        )
        return policy

    def _require_active(self, policy: Policy) -> None:
        if policy.status is not PolicyStatus.ACTIVE:
            logger.warning("Policy %d is %s, transition rejected.", policy.policy_id, policy.status.value)
            raise InvalidStatusTransitionError(
                f"Policy {policy.policy_id} is {policy.status.value}, not ACTIVE."
            )

    def activate_policy(self, policy_id: int, caller: str) -> int:
        """Exercise the policy at the oracle price; returns the settlement paid."""
        policy = self.get_policy(policy_id)
        if caller != policy.owner:
            raise UnauthorizedError(f"{caller} does not own policy {policy_id}.")
        self._require_active(policy)
        height = self.clock.current_height()
        if height > policy.expiration_height:
            raise InvalidStatusTransitionError(
                f"Policy {policy_id} expired at height {policy.expiration_height} (now {height})."
            )

        spot = self.oracle.get_latest_price(self.store.parameters.price_asset)
        settlement = compute_settlement(
            policy.policy_type,
            policy.strike_price,
            spot.price,
            policy.protected_amount,
        )
        with self.store.transaction("policies"):
            self.vault.settle(
                self.principal,
                settlement,
                policy.owner,
                policy_id,
                policy.collateral_token,
                release_amount=policy.locked_collateral,
            )
            self._mark_terminal(policy_id, PolicyStatus.EXERCISED, settlement)
        logger.info("Policy %d exercised at spot %d, settlement %d.", policy_id, spot.price, settlement)
        return settlement

    def expire_policy(self, policy_id: int, caller: str) -> Policy:
        self.access.require_role(caller, Role.BACKEND)
        policy = self.get_policy(policy_id)
        self._require_active(policy)
        height = self.clock.current_height()
        if height <= policy.expiration_height:
            raise InvalidStatusTransitionError(
                f"Policy {policy_id} expires after height {policy.expiration_height} (now {height})."
            )

        with self.store.transaction("policies"):
            self.vault.release(self.principal, policy.locked_collateral, policy_id, policy.collateral_token)
            policy = self._mark_terminal(policy_id, PolicyStatus.EXPIRED)
        logger.info("Policy %d expired, %d collateral released.", policy_id, policy.locked_collateral)
        return policy

    def expire_due_policies(self, caller: str, limit: int = MAX_EXPIRATIONS_PER_CALL) -> tuple[int, ...]:
        """Expire up to ``limit`` due policies in one all-or-nothing batch."""
        self.access.require_role(caller, Role.BACKEND)
        if limit > MAX_EXPIRATIONS_PER_CALL:
            raise InvalidParametersError(f"limit must be <= {MAX_EXPIRATIONS_PER_CALL}.")
        due = self.find_expirable_policies(limit)
        with self.store.transaction("policies"):
            for policy in due:
                self.expire_policy(policy.policy_id, caller)
        return tuple(policy.policy_id for policy in due)
