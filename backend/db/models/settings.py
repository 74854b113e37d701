"""Protocol-wide settings and role assignment model definitions."""

from __future__ import annotations

import logging

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Integer,
    PrimaryKeyConstraint,
    SmallInteger,
    Text,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from backend.db.base import Base
from backend.db.enums import Role, protocol_role_enum

logger = logging.getLogger(__name__)


class ProtocolSettings(Base):
    """Singleton row: admin, id counters and tunable parameters."""

    __tablename__ = "protocol_settings"
    __table_args__ = (
        PrimaryKeyConstraint("settings_id", name="pk_protocol_settings"),
        CheckConstraint("settings_id = 1", name="ck_protocol_settings_singleton"),
        CheckConstraint("admin_principal <> ''", name="ck_protocol_settings_admin_not_blank"),
        CheckConstraint("next_policy_id >= 1", name="ck_protocol_settings_next_policy_id_pos"),
        CheckConstraint("next_submission_id >= 1", name="ck_protocol_settings_next_submission_id_pos"),
        CheckConstraint(
            "max_deviation_pct > 0 AND max_deviation_pct <= 1000000",
            name="ck_protocol_settings_max_deviation_range",
        ),
        CheckConstraint("min_providers > 0", name="ck_protocol_settings_min_providers_pos"),
    )

    settings_id: Mapped[int] = mapped_column(SmallInteger, primary_key=True, server_default=text("1"))
    admin_principal: Mapped[str] = mapped_column(Text, nullable=False)
    next_policy_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    next_submission_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    max_deviation_pct: Mapped[int] = mapped_column(Integer, nullable=False)
    max_price_age_seconds: Mapped[int] = mapped_column(Integer, nullable=False)
    min_providers: Mapped[int] = mapped_column(Integer, nullable=False)
    submission_freshness_seconds: Mapped[int] = mapped_column(Integer, nullable=False)
    outlier_mad_multiple: Mapped[int] = mapped_column(BigInteger, nullable=False)
    min_outlier_band_pct: Mapped[int] = mapped_column(Integer, nullable=False)
    put_collateral_pct: Mapped[int] = mapped_column(Integer, nullable=False)
    call_collateral_pct: Mapped[int] = mapped_column(Integer, nullable=False)
    collateral_token: Mapped[str] = mapped_column(Text, nullable=False)
    price_asset: Mapped[str] = mapped_column(Text, nullable=False)
    default_volatility_window_days: Mapped[int] = mapped_column(Integer, nullable=False)


class RoleAssignment(Base):
    """Role grants with optional expiry height."""

    __tablename__ = "role_assignment"
    __table_args__ = (
        PrimaryKeyConstraint("role", "principal", name="pk_role_assignment"),
        CheckConstraint("principal <> ''", name="ck_role_assignment_principal_not_blank"),
        CheckConstraint(
            "expires_at_height IS NULL OR expires_at_height >= granted_at_height",
            name="ck_role_assignment_expiry_after_grant",
        ),
    )

    role: Mapped[Role] = mapped_column(protocol_role_enum, primary_key=True)
    principal: Mapped[str] = mapped_column(Text, primary_key=True)
    granted_by: Mapped[str] = mapped_column(Text, nullable=False)
    granted_at_height: Mapped[int] = mapped_column(BigInteger, nullable=False)
    expires_at_height: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    is_enabled: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        server_default=text("TRUE"),
    )
