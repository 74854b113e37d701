"""In-memory protocol state with all-or-nothing transactions."""

from __future__ import annotations

from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field, fields
from datetime import date
from enum import Enum
import logging
from typing import Any, Deque, Iterator, Optional, TypeVar

from settlement.config import ProtocolParameters
from settlement.events import EventLog

logger = logging.getLogger(__name__)

VOLATILITY_WINDOW_CAPACITY = 361
MAX_PRICE_HISTORY = 100

R = TypeVar("R")


class PolicyType(str, Enum):
    PUT = "PUT"
    CALL = "CALL"


class PolicyStatus(str, Enum):
    ACTIVE = "ACTIVE"
    EXERCISED = "EXERCISED"
    EXPIRED = "EXPIRED"


class ProviderStatus(str, Enum):
    ACTIVE = "ACTIVE"
    DISABLED = "DISABLED"


class Role(str, Enum):
    ADMIN = "ADMIN"
    BACKEND = "BACKEND"
    POLICY_REGISTRY = "POLICY_REGISTRY"
    PRICE_SUBMITTER = "PRICE_SUBMITTER"


@dataclass
class RoleAssignment:
    role: Role
    principal: str
    granted_by: str
    granted_at_height: int
    expires_at_height: Optional[int] = None
    is_enabled: bool = True

    def is_effective(self, height: int) -> bool:
        if not self.is_enabled:
            return False
        return self.expires_at_height is None or height <= self.expires_at_height


@dataclass
class Provider:
    principal: str
    weight: int
    reliability_score: int
    status: ProviderStatus = ProviderStatus.ACTIVE
    submission_count: int = 0
    registered_at_height: int = 0


@dataclass
class PriceSubmission:
    submission_id: int
    provider: str
    asset: str
    price: int
    timestamp: int
    submitted_at_height: int
    used: bool = False


@dataclass(frozen=True)
class AggregatedPrice:
    asset: str
    price: int
    timestamp: int
    contributing_provider_count: int
    block_height: int = 0


@dataclass(frozen=True)
class DailyClose:
    close_date: date
    close_price: int


@dataclass
class VaultAccount:
    token_id: str
    total_balance: int = 0
    locked_balance: int = 0
    premiums_collected: int = 0

    @property
    def available_balance(self) -> int:
        return self.total_balance - self.locked_balance


@dataclass
class DepositPosition:
    token_id: str
    principal: str
    amount: int = 0


@dataclass
class Policy:
    """Protection contract; terms are fixed at creation, only ``status`` moves."""

    policy_id: int
    owner: str
    counterparty: str
    policy_type: PolicyType
    strike_price: int
    protected_amount: int
    expiration_height: int
    collateral_token: str
    locked_collateral: int
    created_at_height: int
    status: PolicyStatus = PolicyStatus.ACTIVE
    settlement_amount: Optional[int] = None
    status_changed_at_height: Optional[int] = None
    premium: int = 0


@dataclass
class ProtocolState:
    """Every mutable table of the protocol, keyed the way the ORM keys them."""

    admin_principal: str
    parameters: ProtocolParameters = field(default_factory=ProtocolParameters)
    roles: dict[tuple[Role, str], RoleAssignment] = field(default_factory=dict)
    providers: dict[str, Provider] = field(default_factory=dict)
    submissions: list[PriceSubmission] = field(default_factory=list)
    latest_prices: dict[str, AggregatedPrice] = field(default_factory=dict)
    price_history: dict[str, Deque[AggregatedPrice]] = field(default_factory=dict)
    daily_closes: dict[str, Deque[DailyClose]] = field(default_factory=dict)
    vault_accounts: dict[str, VaultAccount] = field(default_factory=dict)
    deposit_positions: dict[tuple[str, str], DepositPosition] = field(default_factory=dict)
    policies: dict[int, Policy] = field(default_factory=dict)
    next_policy_id: int = 1
    next_submission_id: int = 1

    def price_history_for(self, asset: str) -> Deque[AggregatedPrice]:
        return self.price_history.setdefault(asset, deque(maxlen=MAX_PRICE_HISTORY))

    def daily_closes_for(self, asset: str) -> Deque[DailyClose]:
        return self.daily_closes.setdefault(asset, deque(maxlen=VOLATILITY_WINDOW_CAPACITY))


TABLES = tuple(item.name for item in fields(ProtocolState))

MUTABLE_RECORDS = (RoleAssignment, Provider, PriceSubmission, VaultAccount, DepositPosition, Policy)


class _Journal:
    """Pre-images captured by the outermost transaction, restored in place."""

    def __init__(self, event_count: int) -> None:
        self.event_count = event_count
        self.tables: dict[str, tuple[Any, Any]] = {}
        self.records: dict[int, tuple[Any, dict[str, Any]]] = {}

    def capture_table(self, state: ProtocolState, name: str, with_records: bool) -> None:
        if name in self.tables:
            return
        value = getattr(state, name)
        if isinstance(value, dict):
            nested = {key: list(item) for key, item in value.items() if isinstance(item, deque)}
            contents: Any = (dict(value), nested)
            members = value.values()
        elif isinstance(value, list):
            contents = list(value)
            members = value
        else:
            contents = None
            members = ()
        self.tables[name] = (value, contents)
        if with_records:
            for record in members:
                if isinstance(record, MUTABLE_RECORDS):
                    self.capture_record(record)

    def capture_record(self, record: Any) -> None:
        if id(record) not in self.records:
            self.records[id(record)] = (record, dict(vars(record)))

    def restore(self, state: ProtocolState, events: EventLog) -> None:
        events.truncate(self.event_count)
        for name, (value, contents) in self.tables.items():
            setattr(state, name, value)
            if isinstance(value, dict):
                items, nested = contents
                value.clear()
                value.update(items)
                for key, entries in nested.items():
                    queue = items[key]
                    queue.clear()
                    queue.extend(entries)
            elif isinstance(value, list):
                value[:] = contents
        for record, saved in self.records.values():
            vars(record).update(saved)


class ProtocolStore:
    """Explicit store injected into every component.

    Mutating operations wrap their work in :meth:`transaction`, naming the
    ``ProtocolState`` tables they add to or remove from, and pass existing
    records through :meth:`preserve` before changing them. A failure anywhere
    inside restores those tables, records and the event log in place, so
    objects held by callers never observe a half-applied operation.
    ``transaction()`` with no table names captures every table and record.
    """

    def __init__(
        self,
        state: ProtocolState,
        events: Optional[EventLog] = None,
    ) -> None:
        self.state = state
        self.events = events if events is not None else EventLog()
        self._depth = 0
        self._journal: Optional[_Journal] = None

    @classmethod
    def create(cls, admin_principal: str, parameters: Optional[ProtocolParameters] = None) -> "ProtocolStore":
        state = ProtocolState(
            admin_principal=admin_principal,
            parameters=(parameters or ProtocolParameters()).validate(),
        )
        return cls(state)

    @property
    def parameters(self) -> ProtocolParameters:
        return self.state.parameters

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    def preserve(self, record: R) -> R:
        """Capture ``record``'s fields before it is mutated; returns it unchanged."""
        if self._journal is not None:
            self._journal.capture_record(record)
        return record

    def _capture(self, tables: tuple[str, ...]) -> None:
        assert self._journal is not None
        for name in tables or TABLES:
            self._journal.capture_table(self.state, name, with_records=not tables)

    @contextmanager
    def transaction(self, *tables: str) -> Iterator["ProtocolStore"]:
        unknown = [name for name in tables if name not in TABLES]
        if unknown:
            raise ValueError(f"Unknown protocol tables: {', '.join(unknown)}")
        if self._depth > 0:
            self._capture(tables)
            self._depth += 1
            try:
                yield self
            finally:
                self._depth -= 1
            return

        self._journal = _Journal(len(self.events))
        self._capture(tables)
        self._depth = 1
        try:
            yield self
        except BaseException:
            self._journal.restore(self.state, self.events)
            logger.debug("Protocol transaction rolled back.")
            raise
        finally:
            self._depth = 0
            self._journal = None
