"""Persist and restore a ``ProtocolStore`` through SQLAlchemy sessions."""

from __future__ import annotations

from collections import deque
import logging
from typing import Callable, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from backend.db import models
from settlement.config import ProtocolParameters
from settlement.events import EventLog, EventLogIntegrityError, ProtocolEvent
from settlement.state_store import (
    MAX_PRICE_HISTORY,
    VOLATILITY_WINDOW_CAPACITY,
    AggregatedPrice,
    DailyClose,
    DepositPosition,
    Policy,
    PriceSubmission,
    ProtocolState,
    ProtocolStore,
    Provider,
    RoleAssignment,
    VaultAccount,
)

logger = logging.getLogger(__name__)

SETTINGS_ID = 1

# Replaced wholesale on every save; protocol_event is append-only.
MUTABLE_TABLES = (
    models.ProtocolSettings,
    models.RoleAssignment,
    models.OracleProvider,
    models.PriceSubmission,
    models.AggregatedPrice,
    models.PriceHistory,
    models.DailyClose,
    models.VaultAccount,
    models.DepositPosition,
    models.ProtectionPolicy,
)

_PARAMETER_COLUMNS = tuple(ProtocolParameters().as_dict())


def _settings_row(state: ProtocolState) -> models.ProtocolSettings:
    return models.ProtocolSettings(
        settings_id=SETTINGS_ID,
        admin_principal=state.admin_principal,
        next_policy_id=state.next_policy_id,
        next_submission_id=state.next_submission_id,
        **state.parameters.as_dict(),
    )


def _state_rows(state: ProtocolState) -> list[object]:
    rows: list[object] = [_settings_row(state)]
    rows.extend(
        models.RoleAssignment(
            role=assignment.role,
            principal=assignment.principal,
            granted_by=assignment.granted_by,
            granted_at_height=assignment.granted_at_height,
            expires_at_height=assignment.expires_at_height,
            is_enabled=assignment.is_enabled,
        )
        for assignment in state.roles.values()
    )
    rows.extend(
        models.OracleProvider(
            principal=provider.principal,
            weight=provider.weight,
            reliability_score=provider.reliability_score,
            status=provider.status,
            submission_count=provider.submission_count,
            registered_at_height=provider.registered_at_height,
        )
        for provider in state.providers.values()
    )
    rows.extend(
        models.PriceSubmission(
            submission_id=submission.submission_id,
            provider=submission.provider,
            asset=submission.asset,
            price=submission.price,
            price_timestamp=submission.timestamp,
            submitted_at_height=submission.submitted_at_height,
            is_used=submission.used,
        )
        for submission in state.submissions
    )
    rows.extend(
        models.AggregatedPrice(
            asset=price.asset,
            price=price.price,
            price_timestamp=price.timestamp,
            contributing_provider_count=price.contributing_provider_count,
            block_height=price.block_height,
        )
        for price in state.latest_prices.values()
    )
    for asset, history in state.price_history.items():
        rows.extend(
            models.PriceHistory(
                asset=asset,
                history_seq=index,
                price=entry.price,
                price_timestamp=entry.timestamp,
                contributing_provider_count=entry.contributing_provider_count,
                block_height=entry.block_height,
            )
            for index, entry in enumerate(history)
        )
    for asset, closes in state.daily_closes.items():
        rows.extend(
            models.DailyClose(asset=asset, close_date=close.close_date, close_price=close.close_price)
            for close in closes
        )
    rows.extend(
        models.VaultAccount(
            token_id=account.token_id,
            total_balance=account.total_balance,
            locked_balance=account.locked_balance,
            premiums_collected=account.premiums_collected,
        )
        for account in state.vault_accounts.values()
    )
    rows.extend(
        models.DepositPosition(token_id=position.token_id, principal=position.principal, amount=position.amount)
        for position in state.deposit_positions.values()
    )
    rows.extend(
        models.ProtectionPolicy(
            policy_id=policy.policy_id,
            owner=policy.owner,
            counterparty=policy.counterparty,
            policy_type=policy.policy_type,
            strike_price=policy.strike_price,
            protected_amount=policy.protected_amount,
            expiration_height=policy.expiration_height,
            collateral_token=policy.collateral_token,
            locked_collateral=policy.locked_collateral,
            created_at_height=policy.created_at_height,
            status=policy.status,
            settlement_amount=policy.settlement_amount,
            status_changed_at_height=policy.status_changed_at_height,
            premium=policy.premium,
        )
        for policy in state.policies.values()
    )
    return rows


def _event_row(event: ProtocolEvent) -> models.ProtocolEventRecord:
    return models.ProtocolEventRecord(
        event_seq=event.sequence,
        event_type=event.event_type,
        block_height=event.block_height,
        payload=dict(event.payload),
        prev_event_hash=event.prev_event_hash,
        event_hash=event.event_hash,
    )


class ProtocolRepository:
    """Snapshot store for protocol state backed by the relational schema."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    def has_state(self) -> bool:
        with self._session_factory() as session:
            return session.get(models.ProtocolSettings, SETTINGS_ID) is not None

    def persisted_event_count(self) -> int:
        with self._session_factory() as session:
            return int(session.scalar(select(func.count()).select_from(models.ProtocolEventRecord)) or 0)

    def save(self, store: ProtocolStore) -> int:
        """Write ``store`` in one transaction; returns the number of events appended."""
        store.events.verify_continuity()
        events = list(store.events)
        with self._session_factory() as session, session.begin():
            tail = session.scalars(
                select(models.ProtocolEventRecord)
                .order_by(models.ProtocolEventRecord.event_seq.desc())
                .limit(1)
            ).first()
            persisted = 0
            if tail is not None:
                persisted = tail.event_seq
                if persisted > len(events) or events[persisted - 1].event_hash != tail.event_hash:
                    logger.error("Persisted event tail #%d does not match the in-memory log.", persisted)
                    raise EventLogIntegrityError(
                        f"Persisted event #{persisted} is not a prefix of the in-memory event log."
                    )

            for model in MUTABLE_TABLES:
                session.execute(delete(model))
            session.add_all(_state_rows(store.state))
            session.add_all(_event_row(event) for event in events[persisted:])

        appended = len(events) - persisted
        logger.info("Protocol state saved, %d event(s) appended.", appended)
        return appended

    def load(self) -> Optional[ProtocolStore]:
        """Rebuild the persisted store, or None when nothing has been saved."""
        with self._session_factory() as session:
            settings = session.get(models.ProtocolSettings, SETTINGS_ID)
            if settings is None:
                return None

            state = ProtocolState(
                admin_principal=settings.admin_principal,
                parameters=ProtocolParameters(
                    **{name: getattr(settings, name) for name in _PARAMETER_COLUMNS}
                ).validate(),
                next_policy_id=settings.next_policy_id,
                next_submission_id=settings.next_submission_id,
            )
            for row in session.scalars(select(models.RoleAssignment)):
                state.roles[(row.role, row.principal)] = RoleAssignment(
                    role=row.role,
                    principal=row.principal,
                    granted_by=row.granted_by,
                    granted_at_height=row.granted_at_height,
                    expires_at_height=row.expires_at_height,
                    is_enabled=row.is_enabled,
                )
            for row in session.scalars(select(models.OracleProvider).order_by(models.OracleProvider.principal)):
                state.providers[row.principal] = Provider(
                    principal=row.principal,
                    weight=row.weight,
                    reliability_score=row.reliability_score,
                    status=row.status,
                    submission_count=row.submission_count,
                    registered_at_height=row.registered_at_height,
                )
            state.submissions = [
                PriceSubmission(
                    submission_id=row.submission_id,
                    provider=row.provider,
                    asset=row.asset,
                    price=row.price,
                    timestamp=row.price_timestamp,
                    submitted_at_height=row.submitted_at_height,
                    used=row.is_used,
                )
                for row in session.scalars(
                    select(models.PriceSubmission).order_by(models.PriceSubmission.submission_id)
                )
            ]
            for row in session.scalars(select(models.AggregatedPrice)):
                state.latest_prices[row.asset] = AggregatedPrice(
                    asset=row.asset,
                    price=row.price,
                    timestamp=row.price_timestamp,
                    contributing_provider_count=row.contributing_provider_count,
                    block_height=row.block_height,
                )
            for row in session.scalars(
                select(models.PriceHistory).order_by(models.PriceHistory.asset, models.PriceHistory.history_seq)
            ):
                state.price_history.setdefault(row.asset, deque(maxlen=MAX_PRICE_HISTORY)).append(
                    AggregatedPrice(
                        asset=row.asset,
                        price=row.price,
                        timestamp=row.price_timestamp,
                        contributing_provider_count=row.contributing_provider_count,
                        block_height=row.block_height,
                    )
                )
            for row in session.scalars(
                select(models.DailyClose).order_by(models.DailyClose.asset, models.DailyClose.close_date)
            ):
                state.daily_closes.setdefault(row.asset, deque(maxlen=VOLATILITY_WINDOW_CAPACITY)).append(
                    DailyClose(close_date=row.close_date, close_price=row.close_price)
                )
            for row in session.scalars(select(models.VaultAccount)):
                state.vault_accounts[row.token_id] = VaultAccount(
                    token_id=row.token_id,
                    total_balance=row.total_balance,
                    locked_balance=row.locked_balance,
                    premiums_collected=row.premiums_collected,
                )
            for row in session.scalars(select(models.DepositPosition)):
                state.deposit_positions[(row.token_id, row.principal)] = DepositPosition(
                    token_id=row.token_id,
                    principal=row.principal,
                    amount=row.amount,
                )
            for row in session.scalars(select(models.ProtectionPolicy).order_by(models.ProtectionPolicy.policy_id)):
                state.policies[row.policy_id] = Policy(
                    policy_id=row.policy_id,
                    owner=row.owner,
                    counterparty=row.counterparty,
                    policy_type=row.policy_type,
                    strike_price=row.strike_price,
                    protected_amount=row.protected_amount,
                    expiration_height=row.expiration_height,
                    collateral_token=row.collateral_token,
                    locked_collateral=row.locked_collateral,
                    created_at_height=row.created_at_height,
                    status=row.status,
                    settlement_amount=row.settlement_amount,
                    status_changed_at_height=row.status_changed_at_height,
                    premium=row.premium,
                )

            events = self._read_events(session)

        events.verify_continuity()
        logger.info("Protocol state loaded with %d event(s).", len(events))
        return ProtocolStore(state, events)

    def load_events(self) -> EventLog:
        with self._session_factory() as session:
            return self._read_events(session)

    @staticmethod
    def _read_events(session: Session) -> EventLog:
        return EventLog(
            ProtocolEvent(
                sequence=row.event_seq,
                event_type=row.event_type,
                block_height=row.block_height,
                payload=dict(row.payload),
                prev_event_hash=row.prev_event_hash,
                event_hash=row.event_hash,
            )
            for row in session.scalars(
                select(models.ProtocolEventRecord).order_by(models.ProtocolEventRecord.event_seq)
            )
        )
