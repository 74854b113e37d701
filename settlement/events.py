"""Append-only, hash-chained protocol event log."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
import enum
from hashlib import sha256
import json
import logging
from typing import Any, Iterable, Iterator, Mapping, Optional

logger = logging.getLogger(__name__)

PRICE_SUBMITTED = "price-submitted"
PRICE_UPDATED = "price-updated"
PROVIDER_REGISTERED = "provider-registered"
PROVIDER_DISABLED = "provider-disabled"
PROVIDER_WEIGHT_UPDATED = "provider-weight-updated"
DAILY_CLOSE_RECORDED = "daily-close-recorded"
POLICY_CREATED = "policy-created"
POLICY_STATUS_UPDATED = "policy-status-updated"
TOKEN_INITIALIZED = "token-initialized"
FUNDS_DEPOSITED = "funds-deposited"
FUNDS_WITHDRAWN = "funds-withdrawn"
COLLATERAL_LOCKED = "collateral-locked"
COLLATERAL_RELEASED = "collateral-released"
SETTLEMENT_PAID = "settlement-paid"
PREMIUM_RECORDED = "premium-recorded-for-policy"
ROLE_GRANTED = "role-granted"
ROLE_REVOKED = "role-revoked"
PARAMETERS_UPDATED = "parameters-updated"

GENESIS_HASH = "0" * 64


class EventLogIntegrityError(RuntimeError):
    """Raised when the event hash chain does not verify."""


def normalize_token(value: Any) -> str:
    """Serialize primitive values deterministically for hashing."""
    if value is None:
        return ""
    if isinstance(value, enum.Enum):
        return str(value.value)
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Mapping):
        return json.dumps(
            {str(key): normalize_token(item) for key, item in value.items()},
            sort_keys=True,
            separators=(",", ":"),
        )
    return str(value)


def stable_hash(tokens: Iterable[Any]) -> str:
    """Compute a stable SHA256 hash over canonical token serialization."""
    preimage = "|".join(normalize_token(token) for token in tokens)
    return sha256(preimage.encode("utf-8")).hexdigest()


def _payload_value(value: Any) -> Any:
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, (bool, int, str)) or value is None:
        return value
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Mapping):
        return {str(key): _payload_value(item) for key, item in value.items()}
    return str(value)


@dataclass(frozen=True)
class ProtocolEvent:
    """One append-only protocol event."""

    sequence: int
    event_type: str
    block_height: int
    payload: Mapping[str, Any]
    prev_event_hash: str
    event_hash: str

    def get(self, key: str, default: Any = None) -> Any:
        return self.payload.get(key, default)


def compute_event_hash(
    sequence: int,
    event_type: str,
    block_height: int,
    payload: Mapping[str, Any],
    prev_event_hash: str,
) -> str:
    return stable_hash((sequence, event_type, block_height, payload, prev_event_hash))


class EventLog:
    """Insert-only event sink; each event commits to its predecessor's hash."""

    def __init__(self, events: Optional[Iterable[ProtocolEvent]] = None) -> None:
        self._events: list[ProtocolEvent] = list(events or ())

    def __len__(self) -> int:
        return len(self._events)

    def __iter__(self) -> Iterator[ProtocolEvent]:
        return iter(self._events)

    @property
    def tail_hash(self) -> str:
        return self._events[-1].event_hash if self._events else GENESIS_HASH

    def append(self, event_type: str, block_height: int, **payload: Any) -> ProtocolEvent:
        sequence = len(self._events) + 1
        normalized = {key: _payload_value(value) for key, value in payload.items()}
        prev_hash = self.tail_hash
        event = ProtocolEvent(
            sequence=sequence,
            event_type=event_type,
            block_height=block_height,
            payload=normalized,
            prev_event_hash=prev_hash,
            event_hash=compute_event_hash(sequence, event_type, block_height, normalized, prev_hash),
        )
        self._events.append(event)
        logger.debug("Event %s #%d appended.", event_type, sequence)
        return event

    def truncate(self, length: int) -> None:
        """Drop events after ``length``; only an aborted transaction does this."""
        if not 0 <= length <= len(self._events):
            raise ValueError(f"Cannot truncate {len(self._events)} event(s) to {length}.")
        dropped = len(self._events) - length
        del self._events[length:]
        if dropped:
            logger.debug("Discarded %d uncommitted event(s).", dropped)

    def events(
        self,
        event_type: Optional[str] = None,
        policy_id: Optional[int] = None,
        since_sequence: int = 0,
    ) -> tuple[ProtocolEvent, ...]:
        """Filter events by type, policy id, and/or sequence lower bound (exclusive)."""
        selected = []
        for event in self._events:
            if event.sequence <= since_sequence:
                continue
            if event_type is not None and event.event_type != event_type:
                continue
            if policy_id is not None and event.payload.get("policy_id") != policy_id:
                continue
            selected.append(event)
        return tuple(selected)

    def verify_continuity(self) -> None:
        """Fail fast if any event's sequence or hash link is broken."""
        prev_hash = GENESIS_HASH
        for expected_sequence, event in enumerate(self._events, start=1):
            if event.sequence != expected_sequence:
                raise EventLogIntegrityError(
                    f"Event sequence gap: expected {expected_sequence}, found {event.sequence}."
                )
            if event.prev_event_hash != prev_hash:
                raise EventLogIntegrityError(f"Event #{event.sequence} prev_event_hash mismatch.")
            recomputed = compute_event_hash(
                event.sequence,
                event.event_type,
                event.block_height,
                event.payload,
                event.prev_event_hash,
            )
            if recomputed != event.event_hash:
                raise EventLogIntegrityError(f"Event #{event.sequence} event_hash mismatch.")
            prev_hash = event.event_hash
