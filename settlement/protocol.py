"""Wiring of one store into every settlement component."""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Optional

from settlement.access_control import AccessControl
from settlement.clock import ChainClock
from settlement.config import ProtocolParameters
from settlement.events import EventLog
from settlement.oracle import PriceOracle
from settlement.policy_registry import REGISTRY_PRINCIPAL, PolicyRegistry
from settlement.state_store import ProtocolStore, Role
from settlement.transfers import TransferAdapter
from settlement.vault import CollateralVault
from settlement.volatility import VolatilityEngine

logger = logging.getLogger(__name__)


@dataclass
class ProtectionProtocol:
    store: ProtocolStore
    clock: ChainClock
    access: AccessControl
    oracle: PriceOracle
    volatility: VolatilityEngine
    vault: CollateralVault
    registry: PolicyRegistry

    @classmethod
    def assemble(
        cls,
        store: ProtocolStore,
        clock: Optional[ChainClock] = None,
        transfers: Optional[TransferAdapter] = None,
        registry_principal: str = REGISTRY_PRINCIPAL,
    ) -> "ProtectionProtocol":
        """Build components over an existing store (fresh or loaded)."""
        clock = clock or ChainClock()
        access = AccessControl(store, clock)
        oracle = PriceOracle(store, clock, access)
        vault = CollateralVault(store, clock, access, transfers)
        return cls(
            store=store,
            clock=clock,
            access=access,
            oracle=oracle,
            volatility=VolatilityEngine(store, clock, access, oracle),
            vault=vault,
            registry=PolicyRegistry(store, clock, access, oracle, vault, principal=registry_principal),
        )

    @classmethod
    def bootstrap(
        cls,
        admin: str,
        parameters: Optional[ProtocolParameters] = None,
        clock: Optional[ChainClock] = None,
        transfers: Optional[TransferAdapter] = None,
    ) -> "ProtectionProtocol":
        """Fresh protocol: collateral token initialized, registry and submitter roles granted."""
        protocol = cls.assemble(ProtocolStore.create(admin, parameters), clock, transfers)
        with protocol.store.transaction():
            protocol.vault.initialize_token(admin, protocol.store.parameters.collateral_token)
            protocol.access.set_policy_registry_principal(admin, protocol.registry.principal)
            protocol.access.set_authorized_submitter(admin, admin)
        logger.info("Protection protocol bootstrapped for admin %s.", admin)
        return protocol

    @property
    def events(self) -> EventLog:
        return self.store.events

    @property
    def admin(self) -> str:
        return self.store.state.admin_principal

    def has_role(self, principal: str, role: Role) -> bool:
        return self.access.has_role(principal, role)
