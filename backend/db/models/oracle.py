"""Oracle provider, submission, price and daily close model definitions."""

from __future__ import annotations

import logging
from datetime import date

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    Index,
    Integer,
    PrimaryKeyConstraint,
    Text,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from backend.db.base import Base
from backend.db.enums import ProviderStatus, provider_status_enum

logger = logging.getLogger(__name__)


class OracleProvider(Base):
    """Registered price providers; disabled, never deleted."""

    __tablename__ = "oracle_provider"
    __table_args__ = (
        PrimaryKeyConstraint("principal", name="pk_oracle_provider"),
        CheckConstraint("principal <> ''", name="ck_oracle_provider_principal_not_blank"),
        CheckConstraint("weight > 0", name="ck_oracle_provider_weight_pos"),
        CheckConstraint(
            "reliability_score >= 0 AND reliability_score <= 1000000",
            name="ck_oracle_provider_reliability_range",
        ),
        CheckConstraint("submission_count >= 0", name="ck_oracle_provider_submission_count_nonneg"),
    )

    principal: Mapped[str] = mapped_column(Text, primary_key=True)
    weight: Mapped[int] = mapped_column(Integer, nullable=False)
    reliability_score: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[ProviderStatus] = mapped_column(provider_status_enum, nullable=False)
    submission_count: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        server_default=text("0"),
    )
    registered_at_height: Mapped[int] = mapped_column(BigInteger, nullable=False)


class PriceSubmission(Base):
    """Per-provider price submissions, consumed at most once."""

    __tablename__ = "price_submission"
    __table_args__ = (
        PrimaryKeyConstraint("submission_id", name="pk_price_submission"),
        CheckConstraint("price > 0", name="ck_price_submission_price_pos"),
        CheckConstraint("price_timestamp >= 0", name="ck_price_submission_timestamp_nonneg"),
        Index("idx_price_submission_asset_unused", "asset", "is_used"),
    )

    submission_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    provider: Mapped[str] = mapped_column(Text, nullable=False)
    asset: Mapped[str] = mapped_column(Text, nullable=False)
    price: Mapped[int] = mapped_column(BigInteger, nullable=False)
    price_timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)
    submitted_at_height: Mapped[int] = mapped_column(BigInteger, nullable=False)
    is_used: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        server_default=text("FALSE"),
    )


class AggregatedPrice(Base):
    """Current agreed price per asset."""

    __tablename__ = "aggregated_price"
    __table_args__ = (
        PrimaryKeyConstraint("asset", name="pk_aggregated_price"),
        CheckConstraint("price > 0", name="ck_aggregated_price_price_pos"),
        CheckConstraint(
            "contributing_provider_count > 0",
            name="ck_aggregated_price_contributors_pos",
        ),
    )

    asset: Mapped[str] = mapped_column(Text, primary_key=True)
    price: Mapped[int] = mapped_column(BigInteger, nullable=False)
    price_timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)
    contributing_provider_count: Mapped[int] = mapped_column(Integer, nullable=False)
    block_height: Mapped[int] = mapped_column(BigInteger, nullable=False)


class PriceHistory(Base):
    """Bounded history of agreed prices per asset, oldest first."""

    __tablename__ = "price_history"
    __table_args__ = (
        PrimaryKeyConstraint("asset", "history_seq", name="pk_price_history"),
        CheckConstraint("price > 0", name="ck_price_history_price_pos"),
        CheckConstraint("history_seq >= 0", name="ck_price_history_seq_nonneg"),
    )

    asset: Mapped[str] = mapped_column(Text, primary_key=True)
    history_seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    price: Mapped[int] = mapped_column(BigInteger, nullable=False)
    price_timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)
    contributing_provider_count: Mapped[int] = mapped_column(Integer, nullable=False)
    block_height: Mapped[int] = mapped_column(BigInteger, nullable=False)


class DailyClose(Base):
    """Volatility window entries."""

    __tablename__ = "daily_close"
    __table_args__ = (
        PrimaryKeyConstraint("asset", "close_date", name="pk_daily_close"),
        CheckConstraint("close_price > 0", name="ck_daily_close_price_pos"),
    )

    asset: Mapped[str] = mapped_column(Text, primary_key=True)
    close_date: Mapped[date] = mapped_column(Date, primary_key=True)
    close_price: Mapped[int] = mapped_column(BigInteger, nullable=False)
