"""Role-assignment table and admin operations."""

from __future__ import annotations

import logging
from typing import Any, Optional

from settlement import events as ev
from settlement.clock import ChainClock
from settlement.config import ProtocolParameters
from settlement.errors import InvalidParametersError, UnauthorizedError
from settlement.fixed_point import require_uint
from settlement.state_store import ProtocolStore, Role, RoleAssignment

logger = logging.getLogger(__name__)


class AccessControl:
    def __init__(self, store: ProtocolStore, clock: ChainClock) -> None:
        self.store = store
        self.clock = clock

    @property
    def admin_principal(self) -> str:
        return self.store.state.admin_principal

    def has_role(self, principal: str, role: Role) -> bool:
        """True when ``principal`` holds an enabled, unexpired ``role`` assignment."""
        if role is Role.ADMIN and principal == self.admin_principal:
            return True
        assignment = self.store.state.roles.get((role, principal))
        if assignment is None:
            return False
        return assignment.is_effective(self.clock.current_height())

    def require_role(self, principal: str, *roles: Role) -> None:
        if any(self.has_role(principal, role) for role in roles):
            return
        names = ", ".join(role.value for role in roles)
        logger.warning("Rejected caller %s lacking role(s) %s.", principal, names)
        raise UnauthorizedError(f"{principal} lacks required role ({names}).")

    def require_admin(self, caller: str) -> None:
        self.require_role(caller, Role.ADMIN)

    def holders(self, role: Role) -> tuple[str, ...]:
        height = self.clock.current_height()
        return tuple(
            sorted(
                assignment.principal
                for (assigned_role, _), assignment in self.store.state.roles.items()
                if assigned_role is role and assignment.is_effective(height)
            )
        )

    def get_assignment(self, role: Role, principal: str) -> Optional[RoleAssignment]:
        return self.store.state.roles.get((role, principal))

    def grant_role(
        self,
        caller: str,
        role: Role,
        principal: str,
        expires_at_height: Optional[int] = None,
    ) -> RoleAssignment:
        self.require_admin(caller)
        if not principal:
            raise InvalidParametersError("principal must be non-empty.")
        height = self.clock.current_height()
        if expires_at_height is not None:
            require_uint(expires_at_height, "expires_at_height")
            if expires_at_height < height:
                raise InvalidParametersError("expires_at_height must not be in the past.")

        with self.store.transaction("roles"):
            assignment = RoleAssignment(
                role=role,
                principal=principal,
                granted_by=caller,
                granted_at_height=height,
                expires_at_height=expires_at_height,
            )
            self.store.state.roles[(role, principal)] = assignment
            self.store.events.append(
                ev.ROLE_GRANTED,
                height,
                role=role,
                principal=principal,
                granted_by=caller,
                expires_at_height=expires_at_height,
            )
        logger.info("Granted %s to %s.", role.value, principal)
        return assignment

    def revoke_role(self, caller: str, role: Role, principal: str) -> bool:
        """Disable an assignment; returns False when none exists."""
        self.require_admin(caller)
        assignment = self.store.state.roles.get((role, principal))
        if assignment is None or not assignment.is_enabled:
            return False
        with self.store.transaction("roles"):
            self.store.preserve(assignment).is_enabled = False
            self.store.events.append(
                ev.ROLE_REVOKED,
                self.clock.current_height(),
                role=role,
                principal=principal,
                revoked_by=caller,
            )
        logger.info("Revoked %s from %s.", role.value, principal)
        return True

    def _set_single_holder(self, caller: str, role: Role, principal: str) -> RoleAssignment:
        self.require_admin(caller)
        with self.store.transaction("roles"):
            for (assigned_role, holder), assignment in list(self.store.state.roles.items()):
                if assigned_role is role and holder != principal and assignment.is_enabled:
                    self.revoke_role(caller, role, holder)
            return self.grant_role(caller, role, principal)

    def set_backend_principal(self, caller: str, principal: str) -> RoleAssignment:
        return self._set_single_holder(caller, Role.BACKEND, principal)

    def set_authorized_submitter(self, caller: str, principal: str) -> RoleAssignment:
        return self._set_single_holder(caller, Role.PRICE_SUBMITTER, principal)

    def set_policy_registry_principal(self, caller: str, principal: str) -> RoleAssignment:
        return self._set_single_holder(caller, Role.POLICY_REGISTRY, principal)

    def update_parameters(self, caller: str, **changes: Any) -> ProtocolParameters:
        self.require_admin(caller)
        updated = self.store.state.parameters.with_changes(**changes)
        with self.store.transaction("parameters"):
            self.store.state.parameters = updated
            self.store.events.append(
                ev.PARAMETERS_UPDATED,
                self.clock.current_height(),
                updated_by=caller,
                changes={key: updated.as_dict()[key] for key in sorted(changes)},
            )
        logger.info("Protocol parameters updated: %s.", ", ".join(sorted(changes)))
        return updated
