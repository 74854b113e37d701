"""External custody contract for vault token movements."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class TransferReceipt:
    """Acknowledgement returned by a custody adapter."""

    token_id: str
    sender: str
    recipient: str
    amount: int
    reference: str


class TransferAdapter(Protocol):
    """Protocol for custody implementations backing the collateral vault.

    Implementations raise ``TransferFailedError`` when the movement cannot be
    completed; the vault then rolls back its own balance update.
    """

    def transfer_in(self, token_id: str, sender: str, amount: int, reference: str) -> TransferReceipt:
        """Move ``amount`` from ``sender`` into vault custody."""

    def transfer_out(self, token_id: str, recipient: str, amount: int, reference: str) -> TransferReceipt:
        """Move ``amount`` out of vault custody to ``recipient``."""
