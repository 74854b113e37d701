"""Pooled collateral vault: total, locked and available balances per token."""

from __future__ import annotations

import logging
from typing import Optional

from settlement import events as ev
from settlement.access_control import AccessControl
from settlement.clock import ChainClock
from settlement.errors import InsufficientBalanceError, InvalidParametersError, NotFoundError
from settlement.fixed_point import require_positive, require_uint
from settlement.state_store import DepositPosition, ProtocolStore, Role, VaultAccount
from settlement.transfers import TransferAdapter

logger = logging.getLogger(__name__)

COLLATERAL_ROLES = (Role.BACKEND, Role.POLICY_REGISTRY)


class CollateralVault:
    """Balance bookkeeping plus the paired custody transfer.

    Each mutating call updates balances first and performs the transfer last,
    inside one store transaction; a failed transfer therefore leaves balances
    exactly as they were.
    """

    def __init__(
        self,
        store: ProtocolStore,
        clock: ChainClock,
        access: AccessControl,
        transfers: Optional[TransferAdapter] = None,
    ) -> None:
        self.store = store
        self.clock = clock
        self.access = access
        self.transfers = transfers

    def _token(self, token_id: Optional[str]) -> str:
        return token_id or self.store.parameters.collateral_token

    def _account(self, token_id: str) -> VaultAccount:
        account = self.store.state.vault_accounts.get(token_id)
        if account is None:
            raise NotFoundError(f"Token {token_id} is not initialized in the vault.")
        return account

    def initialize_token(self, caller: str, token_id: str) -> VaultAccount:
        self.access.require_admin(caller)
        if not token_id:
            raise InvalidParametersError("token_id must be non-empty.")
        if token_id in self.store.state.vault_accounts:
            raise InvalidParametersError(f"Token {token_id} is already initialized.")
        with self.store.transaction("vault_accounts"):
            account = VaultAccount(token_id=token_id)
            self.store.state.vault_accounts[token_id] = account
            self.store.events.append(ev.TOKEN_INITIALIZED, self.clock.current_height(), token_id=token_id)
        logger.info("Vault token %s initialized.", token_id)
        return account

    def is_token_supported(self, token_id: str) -> bool:
        return token_id in self.store.state.vault_accounts

    # Reads

    def get_account(self, token_id: Optional[str] = None) -> VaultAccount:
        return self._account(self._token(token_id))

    def get_total_balance(self, token_id: Optional[str] = None) -> int:
        return self.get_account(token_id).total_balance

    def get_locked_balance(self, token_id: Optional[str] = None) -> int:
        return self.get_account(token_id).locked_balance

    def get_available_balance(self, token_id: Optional[str] = None) -> int:
        return self.get_account(token_id).available_balance

    def get_premiums_collected(self, token_id: Optional[str] = None) -> int:
        return self.get_account(token_id).premiums_collected

    def get_deposit_position(self, principal: str, token_id: Optional[str] = None) -> int:
        token_id = self._token(token_id)
        self._account(token_id)
        position = self.store.state.deposit_positions.get((token_id, principal))
        return position.amount if position else 0

    def assert_invariants(self) -> None:
        """Raise AssertionError when any account breaks 0 <= locked <= total."""
        for token_id, account in self.store.state.vault_accounts.items():
            if not 0 <= account.locked_balance <= account.total_balance:
                raise AssertionError(
                    f"Vault invariant broken for {token_id}: "
                    f"locked={account.locked_balance} total={account.total_balance}."
                )

    # Self-service

    def deposit(self, depositor: str, amount: int, token_id: Optional[str] = None) -> VaultAccount:
        token_id = self._token(token_id)
        require_positive(amount, "amount")
        self._account(token_id)
        if not depositor:
            raise InvalidParametersError("depositor must be non-empty.")

        with self.store.transaction("vault_accounts", "deposit_positions"):
            state = self.store.state
            account = self.store.preserve(state.vault_accounts[token_id])
            account.total_balance += amount
            position = state.deposit_positions.get((token_id, depositor))
            if position is None:
                position = DepositPosition(token_id=token_id, principal=depositor)
                state.deposit_positions[(token_id, depositor)] = position
            self.store.preserve(position).amount += amount
            self.store.events.append(
                ev.FUNDS_DEPOSITED,
                self.clock.current_height(),
                token_id=token_id,
                principal=depositor,
                amount=amount,
            )
            if self.transfers is not None:
                self.transfers.transfer_in(token_id, depositor, amount, f"deposit:{depositor}")
        logger.info("Deposited %d %s from %s.", amount, token_id, depositor)
        return account

    def withdraw(
        self,
        caller: str,
        amount: int,
        recipient: Optional[str] = None,
        depositor: Optional[str] = None,
        token_id: Optional[str] = None,
    ) -> VaultAccount:
        """Withdraw unlocked funds from a deposit position.

        A depositor may withdraw up to its own position; the backend may
        withdraw on a depositor's behalf and pay ``recipient``.
        """
        token_id = self._token(token_id)
        require_positive(amount, "amount")
        depositor = depositor or caller
        recipient = recipient or depositor
        if caller != depositor:
            self.access.require_role(caller, Role.BACKEND)
        account = self._account(token_id)

        position = self.store.state.deposit_positions.get((token_id, depositor))
        held = position.amount if position else 0
        if held < amount:
            raise InsufficientBalanceError(f"{depositor} has {held} {token_id} deposited, cannot withdraw {amount}.")
        if account.available_balance < amount:
            logger.warning("Withdrawal of %d %s exceeds available %d.", amount, token_id, account.available_balance)
            raise InsufficientBalanceError(
                f"Available {token_id} balance {account.available_balance} is below {amount}."
            )

        with self.store.transaction("vault_accounts", "deposit_positions"):
            state = self.store.state
            account = self.store.preserve(state.vault_accounts[token_id])
            account.total_balance -= amount
            self.store.preserve(state.deposit_positions[(token_id, depositor)]).amount -= amount
            self.store.events.append(
                ev.FUNDS_WITHDRAWN,
                self.clock.current_height(),
                token_id=token_id,
                principal=depositor,
                recipient=recipient,
                amount=amount,
            )
            if self.transfers is not None:
                self.transfers.transfer_out(token_id, recipient, amount, f"withdraw:{depositor}")
        logger.info("Withdrew %d %s for %s to %s.", amount, token_id, depositor, recipient)
        return account

    # Backend / registry only

    def lock(self, caller: str, amount: int, policy_id: int, token_id: Optional[str] = None) -> VaultAccount:
        self.access.require_role(caller, *COLLATERAL_ROLES)
        token_id = self._token(token_id)
        require_positive(amount, "amount")
        require_uint(policy_id, "policy_id")
        account = self._account(token_id)
        if account.available_balance < amount:
            logger.warning(
                "Lock of %d %s for policy %d exceeds available %d.",
                amount,
                token_id,
                policy_id,
                account.available_balance,
            )
            raise InsufficientBalanceError(
                f"Available {token_id} balance {account.available_balance} cannot cover lock of {amount}."
            )

        with self.store.transaction("vault_accounts"):
            account = self.store.preserve(self.store.state.vault_accounts[token_id])
            account.locked_balance += amount
            self.store.events.append(
                ev.COLLATERAL_LOCKED,
                self.clock.current_height(),
                token_id=token_id,
                policy_id=policy_id,
                amount=amount,
            )
        logger.info("Locked %d %s for policy %d.", amount, token_id, policy_id)
        return account

    def release(self, caller: str, amount: int, policy_id: int, token_id: Optional[str] = None) -> VaultAccount:
        self.access.require_role(caller, *COLLATERAL_ROLES)
        token_id = self._token(token_id)
        require_positive(amount, "amount")
        require_uint(policy_id, "policy_id")
        account = self._account(token_id)
        if account.locked_balance < amount:
            raise InsufficientBalanceError(
                f"Locked {token_id} balance {account.locked_balance} is below release of {amount}."
            )

        with self.store.transaction("vault_accounts"):
            account = self.store.preserve(self.store.state.vault_accounts[token_id])
            account.locked_balance -= amount
            self.store.events.append(
                ev.COLLATERAL_RELEASED,
                self.clock.current_height(),
                token_id=token_id,
                policy_id=policy_id,
                amount=amount,
            )
        logger.info("Released %d %s for policy %d.", amount, token_id, policy_id)
        return account

    def settle(
        self,
        caller: str,
        amount: int,
        recipient: str,
        policy_id: int,
        token_id: Optional[str] = None,
        release_amount: Optional[int] = None,
    ) -> VaultAccount:
        """Pay ``amount`` to ``recipient`` and unlock the policy's collateral.

        ``release_amount`` defaults to ``amount``; the unlock is capped at the
        locked balance. A zero payout is allowed and only unlocks.
        """
        self.access.require_role(caller, *COLLATERAL_ROLES)
        token_id = self._token(token_id)
        require_uint(amount, "amount")
        require_uint(policy_id, "policy_id")
        if not recipient:
            raise InvalidParametersError("recipient must be non-empty.")
        if release_amount is not None:
            require_uint(release_amount, "release_amount")
        account = self._account(token_id)
        if account.total_balance < amount:
            raise InsufficientBalanceError(
                f"Total {token_id} balance {account.total_balance} cannot cover settlement of {amount}."
            )
        unlock = min(amount if release_amount is None else release_amount, account.locked_balance)
        if account.locked_balance - unlock > account.total_balance - amount:
            raise InsufficientBalanceError(
                f"Settlement of {amount} {token_id} would leave locked collateral uncovered."
            )

        with self.store.transaction("vault_accounts"):
            account = self.store.preserve(self.store.state.vault_accounts[token_id])
            account.total_balance -= amount
            account.locked_balance -= unlock
            self.store.events.append(
                ev.SETTLEMENT_PAID,
                self.clock.current_height(),
                token_id=token_id,
                policy_id=policy_id,
                recipient=recipient,
                amount=amount,
                released=unlock,
            )
            if self.transfers is not None and amount > 0:
                self.transfers.transfer_out(token_id, recipient, amount, f"policy:{policy_id}")
        logger.info("Settled %d %s to %s for policy %d.", amount, token_id, recipient, policy_id)
        return account

    def record_premium(
        self,
        caller: str,
        amount: int,
        payer: str,
        policy_id: int,
        token_id: Optional[str] = None,
    ) -> VaultAccount:
        """Collect a policy premium from ``payer`` into the pool.

        The premium joins the total balance without creating a deposit
        position, so no depositor can withdraw it.
        """
        self.access.require_role(caller, *COLLATERAL_ROLES)
        token_id = self._token(token_id)
        require_positive(amount, "amount")
        require_uint(policy_id, "policy_id")
        if not payer:
            raise InvalidParametersError("payer must be non-empty.")
        self._account(token_id)

        with self.store.transaction("vault_accounts"):
            account = self.store.preserve(self.store.state.vault_accounts[token_id])
            account.total_balance += amount
            account.premiums_collected += amount
            self.store.events.append(
                ev.PREMIUM_RECORDED,
                self.clock.current_height(),
                token_id=token_id,
                policy_id=policy_id,
                payer=payer,
                amount=amount,
            )
            if self.transfers is not None:
                self.transfers.transfer_in(token_id, payer, amount, f"premium:{policy_id}")
        logger.info("Recorded premium of %d %s from %s for policy %d.", amount, token_id, payer, policy_id)
        return account
