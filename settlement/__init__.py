"""Settlement core for the Bitcoin price-protection protocol."""

from settlement.access_control import AccessControl
from settlement.clock import ChainClock
from settlement.config import ProtocolConfig, ProtocolParameters, load_protocol_config
from settlement.errors import SettlementError
from settlement.events import EventLog, ProtocolEvent
from settlement.oracle import PriceOracle
from settlement.policy_registry import PolicyRegistry, compute_settlement
from settlement.protocol import ProtectionProtocol
from settlement.state_store import PolicyStatus, PolicyType, ProtocolStore, Role
from settlement.transfer_simulator import InMemoryTokenLedger
from settlement.vault import CollateralVault
from settlement.volatility import VolatilityEngine, VolatilityEstimate

__all__ = [
    "AccessControl",
    "ChainClock",
    "CollateralVault",
    "EventLog",
    "InMemoryTokenLedger",
    "PolicyRegistry",
    "PolicyStatus",
    "PolicyType",
    "PriceOracle",
    "ProtectionProtocol",
    "ProtocolConfig",
    "ProtocolEvent",
    "ProtocolParameters",
    "ProtocolStore",
    "Role",
    "SettlementError",
    "VolatilityEngine",
    "VolatilityEstimate",
    "compute_settlement",
    "load_protocol_config",
]
