"""Collateral vault model definitions."""

from __future__ import annotations

import logging

from sqlalchemy import BigInteger, CheckConstraint, PrimaryKeyConstraint, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from backend.db.base import Base

logger = logging.getLogger(__name__)


class VaultAccount(Base):
    """Pooled balances per collateral token."""

    __tablename__ = "vault_account"
    __table_args__ = (
        PrimaryKeyConstraint("token_id", name="pk_vault_account"),
        CheckConstraint("token_id <> ''", name="ck_vault_account_token_not_blank"),
        CheckConstraint("locked_balance >= 0", name="ck_vault_account_locked_nonneg"),
        CheckConstraint("locked_balance <= total_balance", name="ck_vault_account_locked_le_total"),
        CheckConstraint("premiums_collected >= 0", name="ck_vault_account_premiums_nonneg"),
    )

    token_id: Mapped[str] = mapped_column(Text, primary_key=True)
    total_balance: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        server_default=text("0"),
    )
    locked_balance: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        server_default=text("0"),
    )
    premiums_collected: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        server_default=text("0"),
    )


class DepositPosition(Base):
    """Per-depositor share of a vault token."""

    __tablename__ = "deposit_position"
    __table_args__ = (
        PrimaryKeyConstraint("token_id", "principal", name="pk_deposit_position"),
        CheckConstraint("amount >= 0", name="ck_deposit_position_amount_nonneg"),
    )

    token_id: Mapped[str] = mapped_column(Text, primary_key=True)
    principal: Mapped[str] = mapped_column(Text, primary_key=True)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
