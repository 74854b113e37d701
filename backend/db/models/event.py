"""Append-only protocol event log model definitions."""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import (
    CHAR,
    BigInteger,
    CheckConstraint,
    Index,
    PrimaryKeyConstraint,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from backend.db.base import Base, PayloadJSON

logger = logging.getLogger(__name__)


class ProtocolEventRecord(Base):
    """Hash-chained event rows; never updated or deleted."""

    __tablename__ = "protocol_event"
    __table_args__ = (
        PrimaryKeyConstraint("event_seq", name="pk_protocol_event"),
        UniqueConstraint("event_hash", name="uq_protocol_event_hash"),
        CheckConstraint("event_seq >= 1", name="ck_protocol_event_seq_pos"),
        CheckConstraint("event_type <> ''", name="ck_protocol_event_type_not_blank"),
        CheckConstraint("length(prev_event_hash) = 64", name="ck_protocol_event_prev_hash_len"),
        CheckConstraint("length(event_hash) = 64", name="ck_protocol_event_hash_len"),
        Index("idx_protocol_event_type", "event_type"),
    )

    event_seq: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    event_type: Mapped[str] = mapped_column(Text, nullable=False)
    block_height: Mapped[int] = mapped_column(BigInteger, nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(PayloadJSON, nullable=False)
    prev_event_hash: Mapped[str] = mapped_column(CHAR(64), nullable=False)
    event_hash: Mapped[str] = mapped_column(CHAR(64), nullable=False)
