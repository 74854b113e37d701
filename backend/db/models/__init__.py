"""Model module imports for SQLAlchemy metadata registration."""

from __future__ import annotations

import logging

from backend.db.models.event import ProtocolEventRecord
from backend.db.models.oracle import (
    AggregatedPrice,
    DailyClose,
    OracleProvider,
    PriceHistory,
    PriceSubmission,
)
from backend.db.models.policy import ProtectionPolicy
from backend.db.models.settings import ProtocolSettings, RoleAssignment
from backend.db.models.vault import DepositPosition, VaultAccount

logger = logging.getLogger(__name__)

__all__ = [
    "AggregatedPrice",
    "DailyClose",
    "DepositPosition",
    "OracleProvider",
    "PriceHistory",
    "PriceSubmission",
    "ProtectionPolicy",
    "ProtocolEventRecord",
    "ProtocolSettings",
    "RoleAssignment",
    "VaultAccount",
]
