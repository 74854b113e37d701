"""Deterministic in-memory token ledger implementing the transfer adapter."""

from __future__ import annotations

import logging
from typing import Optional

from settlement.errors import TransferFailedError
from settlement.transfers import TransferAdapter, TransferReceipt

logger = logging.getLogger(__name__)

VAULT_CUSTODY = "vault"


class InMemoryTokenLedger(TransferAdapter):
    """Balance book keyed by (token, holder) with explicit failure injection."""

    def __init__(self, balances: Optional[dict[tuple[str, str], int]] = None) -> None:
        self.balances: dict[tuple[str, str], int] = dict(balances or {})
        self.receipts: list[TransferReceipt] = []
        self.fail_next: Optional[str] = None

    def mint(self, token_id: str, holder: str, amount: int) -> None:
        key = (token_id, holder)
        self.balances[key] = self.balances.get(key, 0) + amount

    def balance_of(self, token_id: str, holder: str) -> int:
        return self.balances.get((token_id, holder), 0)

    def custody_balance(self, token_id: str) -> int:
        return self.balance_of(token_id, VAULT_CUSTODY)

    def total_supply(self, token_id: str) -> int:
        return sum(amount for (token, _), amount in self.balances.items() if token == token_id)

    def _move(self, token_id: str, sender: str, recipient: str, amount: int, reference: str) -> TransferReceipt:
        if self.fail_next is not None:
            reason, self.fail_next = self.fail_next, None
            raise TransferFailedError(reason)
        if amount < 0:
            raise TransferFailedError(f"Negative transfer amount {amount}.")
        available = self.balance_of(token_id, sender)
        if available < amount:
            raise TransferFailedError(
                f"{sender} holds {available} {token_id}, cannot transfer {amount}."
            )
        self.balances[(token_id, sender)] = available - amount
        self.mint(token_id, recipient, amount)
        receipt = TransferReceipt(
            token_id=token_id,
            sender=sender,
            recipient=recipient,
            amount=amount,
            reference=reference,
        )
        self.receipts.append(receipt)
        logger.debug("Moved %d %s from %s to %s (%s).", amount, token_id, sender, recipient, reference)
        return receipt

    def transfer_in(self, token_id: str, sender: str, amount: int, reference: str) -> TransferReceipt:
        return self._move(token_id, sender, VAULT_CUSTODY, amount, reference)

    def transfer_out(self, token_id: str, recipient: str, amount: int, reference: str) -> TransferReceipt:
        return self._move(token_id, VAULT_CUSTODY, recipient, amount, reference)
