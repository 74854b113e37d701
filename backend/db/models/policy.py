"""Protection policy model definitions."""

from __future__ import annotations

import logging

from sqlalchemy import BigInteger, CheckConstraint, Index, PrimaryKeyConstraint, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from backend.db.base import Base
from backend.db.enums import PolicyStatus, PolicyType, policy_status_enum, policy_type_enum

logger = logging.getLogger(__name__)


class ProtectionPolicy(Base):
    """PUT/CALL protection contracts and their terminal status."""

    __tablename__ = "protection_policy"
    __table_args__ = (
        PrimaryKeyConstraint("policy_id", name="pk_protection_policy"),
        CheckConstraint("owner <> ''", name="ck_protection_policy_owner_not_blank"),
        CheckConstraint("strike_price > 0", name="ck_protection_policy_strike_pos"),
        CheckConstraint("protected_amount > 0", name="ck_protection_policy_protected_pos"),
        CheckConstraint("locked_collateral > 0", name="ck_protection_policy_locked_pos"),
        CheckConstraint("premium >= 0", name="ck_protection_policy_premium_nonneg"),
        CheckConstraint(
            "expiration_height > created_at_height",
            name="ck_protection_policy_expiry_after_creation",
        ),
        CheckConstraint(
            "(status = 'ACTIVE') = (status_changed_at_height IS NULL)",
            name="ck_protection_policy_terminal_height",
        ),
        CheckConstraint(
            "settlement_amount IS NULL OR status = 'EXERCISED'",
            name="ck_protection_policy_settlement_exercised_only",
        ),
        Index("idx_protection_policy_owner", "owner"),
        Index("idx_protection_policy_status_expiry", "status", "expiration_height"),
    )

    policy_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    owner: Mapped[str] = mapped_column(Text, nullable=False)
    counterparty: Mapped[str] = mapped_column(Text, nullable=False)
    policy_type: Mapped[PolicyType] = mapped_column(policy_type_enum, nullable=False)
    strike_price: Mapped[int] = mapped_column(BigInteger, nullable=False)
    protected_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    expiration_height: Mapped[int] = mapped_column(BigInteger, nullable=False)
    collateral_token: Mapped[str] = mapped_column(Text, nullable=False)
    locked_collateral: Mapped[int] = mapped_column(BigInteger, nullable=False)
    created_at_height: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[PolicyStatus] = mapped_column(policy_status_enum, nullable=False)
    settlement_amount: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    status_changed_at_height: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    premium: Mapped[int] = mapped_column(BigInteger, nullable=False, server_default=text("0"))
