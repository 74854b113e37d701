"""PostgreSQL native enum contracts for the settlement database schema."""

from __future__ import annotations

import logging

from sqlalchemy.dialects.postgresql import ENUM as PGEnum

from settlement.state_store import PolicyStatus, PolicyType, ProviderStatus, Role

logger = logging.getLogger(__name__)

policy_type_enum = PGEnum(PolicyType, name="policy_type_enum")
policy_status_enum = PGEnum(PolicyStatus, name="policy_status_enum")
provider_status_enum = PGEnum(ProviderStatus, name="provider_status_enum")
protocol_role_enum = PGEnum(Role, name="protocol_role_enum")

__all__ = [
    "PolicyStatus",
    "PolicyType",
    "ProviderStatus",
    "Role",
    "policy_status_enum",
    "policy_type_enum",
    "protocol_role_enum",
    "provider_status_enum",
]
