"""Initial schema for the settlement protocol state."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from alembic import op

logger = logging.getLogger(__name__)

# revision identifiers, used by Alembic.
revision: str = "0001_initial_schema"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


ENUM_DDL: tuple[str, ...] = (
    "CREATE TYPE policy_type_enum AS ENUM ('PUT', 'CALL');",
    "CREATE TYPE policy_status_enum AS ENUM ('ACTIVE', 'EXERCISED', 'EXPIRED');",
    "CREATE TYPE provider_status_enum AS ENUM ('ACTIVE', 'DISABLED');",
    "CREATE TYPE protocol_role_enum AS ENUM ('ADMIN', 'BACKEND', 'POLICY_REGISTRY', 'PRICE_SUBMITTER');",
)

TABLE_DDL: tuple[str, ...] = (
    """
    CREATE TABLE protocol_settings (
        settings_id SMALLINT NOT NULL DEFAULT 1,
        admin_principal TEXT NOT NULL,
        next_policy_id BIGINT NOT NULL,
        next_submission_id BIGINT NOT NULL,
        max_deviation_pct INTEGER NOT NULL,
        max_price_age_seconds INTEGER NOT NULL,
        min_providers INTEGER NOT NULL,
        submission_freshness_seconds INTEGER NOT NULL,
        outlier_mad_multiple BIGINT NOT NULL,
        min_outlier_band_pct INTEGER NOT NULL,
        put_collateral_pct INTEGER NOT NULL,
        call_collateral_pct INTEGER NOT NULL,
        collateral_token TEXT NOT NULL,
        price_asset TEXT NOT NULL,
        default_volatility_window_days INTEGER NOT NULL,
        CONSTRAINT pk_protocol_settings PRIMARY KEY (settings_id),
        CONSTRAINT ck_protocol_settings_singleton CHECK (settings_id = 1),
        CONSTRAINT ck_protocol_settings_admin_not_blank CHECK (admin_principal <> ''),
        CONSTRAINT ck_protocol_settings_next_policy_id_pos CHECK (next_policy_id >= 1),
        CONSTRAINT ck_protocol_settings_next_submission_id_pos CHECK (next_submission_id >= 1),
        CONSTRAINT ck_protocol_settings_max_deviation_range CHECK (max_deviation_pct > 0 AND max_deviation_pct <= 1000000),
        CONSTRAINT ck_protocol_settings_min_providers_pos CHECK (min_providers > 0)
    );
    """,
    """
    CREATE TABLE role_assignment (
        role protocol_role_enum NOT NULL,
        principal TEXT NOT NULL,
        granted_by TEXT NOT NULL,
        granted_at_height BIGINT NOT NULL,
        expires_at_height BIGINT,
        is_enabled BOOLEAN NOT NULL DEFAULT TRUE,
        CONSTRAINT pk_role_assignment PRIMARY KEY (role, principal),
        CONSTRAINT ck_role_assignment_principal_not_blank CHECK (principal <> ''),
        CONSTRAINT ck_role_assignment_expiry_after_grant CHECK (expires_at_height IS NULL OR expires_at_height >= granted_at_height)
    );
    """,
    """
    CREATE TABLE oracle_provider (
        principal TEXT NOT NULL,
        weight INTEGER NOT NULL,
        reliability_score INTEGER NOT NULL,
        status provider_status_enum NOT NULL,
        submission_count BIGINT NOT NULL DEFAULT 0,
        registered_at_height BIGINT NOT NULL,
        CONSTRAINT pk_oracle_provider PRIMARY KEY (principal),
        CONSTRAINT ck_oracle_provider_principal_not_blank CHECK (principal <> ''),
        CONSTRAINT ck_oracle_provider_weight_pos CHECK (weight > 0),
        CONSTRAINT ck_oracle_provider_reliability_range CHECK (reliability_score >= 0 AND reliability_score <= 1000000),
        CONSTRAINT ck_oracle_provider_submission_count_nonneg CHECK (submission_count >= 0)
    );
    """,
    """
    CREATE TABLE price_submission (
        submission_id BIGINT NOT NULL,
        provider TEXT NOT NULL,
        asset TEXT NOT NULL,
        price BIGINT NOT NULL,
        price_timestamp BIGINT NOT NULL,
        submitted_at_height BIGINT NOT NULL,
        is_used BOOLEAN NOT NULL DEFAULT FALSE,
        CONSTRAINT pk_price_submission PRIMARY KEY (submission_id),
        CONSTRAINT ck_price_submission_price_pos CHECK (price > 0),
        CONSTRAINT ck_price_submission_timestamp_nonneg CHECK (price_timestamp >= 0)
    );
    """,
    """
    CREATE TABLE aggregated_price (
        asset TEXT NOT NULL,
        price BIGINT NOT NULL,
        price_timestamp BIGINT NOT NULL,
        contributing_provider_count INTEGER NOT NULL,
        block_height BIGINT NOT NULL,
        CONSTRAINT pk_aggregated_price PRIMARY KEY (asset),
        CONSTRAINT ck_aggregated_price_price_pos CHECK (price > 0),
        CONSTRAINT ck_aggregated_price_contributors_pos CHECK (contributing_provider_count > 0)
    );
    """,
    """
    CREATE TABLE price_history (
        asset TEXT NOT NULL,
        history_seq INTEGER NOT NULL,
        price BIGINT NOT NULL,
        price_timestamp BIGINT NOT NULL,
        contributing_provider_count INTEGER NOT NULL,
        block_height BIGINT NOT NULL,
        CONSTRAINT pk_price_history PRIMARY KEY (asset, history_seq),
        CONSTRAINT ck_price_history_price_pos CHECK (price > 0),
        CONSTRAINT ck_price_history_seq_nonneg CHECK (history_seq >= 0)
    );
    """,
    """
    CREATE TABLE daily_close (
        asset TEXT NOT NULL,
        close_date DATE NOT NULL,
        close_price BIGINT NOT NULL,
        CONSTRAINT pk_daily_close PRIMARY KEY (asset, close_date),
        CONSTRAINT ck_daily_close_price_pos CHECK (close_price > 0)
    );
    """,
    """
    CREATE TABLE vault_account (
        token_id TEXT NOT NULL,
        total_balance BIGINT NOT NULL DEFAULT 0,
        locked_balance BIGINT NOT NULL DEFAULT 0,
        premiums_collected BIGINT NOT NULL DEFAULT 0,
        CONSTRAINT pk_vault_account PRIMARY KEY (token_id),
        CONSTRAINT ck_vault_account_token_not_blank CHECK (token_id <> ''),
        CONSTRAINT ck_vault_account_locked_nonneg CHECK (locked_balance >= 0),
        CONSTRAINT ck_vault_account_locked_le_total CHECK (locked_balance <= total_balance),
        CONSTRAINT ck_vault_account_premiums_nonneg CHECK (premiums_collected >= 0)
    );
    """,
    """
    CREATE TABLE deposit_position (
        token_id TEXT NOT NULL,
        principal TEXT NOT NULL,
        amount BIGINT NOT NULL,
        CONSTRAINT pk_deposit_position PRIMARY KEY (token_id, principal),
        CONSTRAINT ck_deposit_position_amount_nonneg CHECK (amount >= 0)
    );
    """,
    """
    CREATE TABLE protection_policy (
        policy_id BIGINT NOT NULL,
        owner TEXT NOT NULL,
        counterparty TEXT NOT NULL,
        policy_type policy_type_enum NOT NULL,
        strike_price BIGINT NOT NULL,
        protected_amount BIGINT NOT NULL,
        expiration_height BIGINT NOT NULL,
        collateral_token TEXT NOT NULL,
        locked_collateral BIGINT NOT NULL,
        created_at_height BIGINT NOT NULL,
        status policy_status_enum NOT NULL,
        settlement_amount BIGINT,
        status_changed_at_height BIGINT,
        premium BIGINT NOT NULL DEFAULT 0,
        CONSTRAINT pk_protection_policy PRIMARY KEY (policy_id),
        CONSTRAINT ck_protection_policy_owner_not_blank CHECK (owner <> ''),
        CONSTRAINT ck_protection_policy_strike_pos CHECK (strike_price > 0),
        CONSTRAINT ck_protection_policy_protected_pos CHECK (protected_amount > 0),
        CONSTRAINT ck_protection_policy_locked_pos CHECK (locked_collateral > 0),
        CONSTRAINT ck_protection_policy_premium_nonneg CHECK (premium >= 0),
        CONSTRAINT ck_protection_policy_expiry_after_creation CHECK (expiration_height > created_at_height),
        CONSTRAINT ck_protection_policy_terminal_height CHECK ((status = 'ACTIVE') = (status_changed_at_height IS NULL)),
        CONSTRAINT ck_protection_policy_settlement_exercised_only CHECK (settlement_amount IS NULL OR status = 'EXERCISED')
    );
    """,
    """
    CREATE TABLE protocol_event (
        event_seq BIGINT NOT NULL,
        event_type TEXT NOT NULL,
        block_height BIGINT NOT NULL,
        payload JSONB NOT NULL,
        prev_event_hash CHAR(64) NOT NULL,
        event_hash CHAR(64) NOT NULL,
        CONSTRAINT pk_protocol_event PRIMARY KEY (event_seq),
        CONSTRAINT uq_protocol_event_hash UNIQUE (event_hash),
        CONSTRAINT ck_protocol_event_seq_pos CHECK (event_seq >= 1),
        CONSTRAINT ck_protocol_event_type_not_blank CHECK (event_type <> ''),
        CONSTRAINT ck_protocol_event_prev_hash_len CHECK (length(prev_event_hash) = 64),
        CONSTRAINT ck_protocol_event_hash_len CHECK (length(event_hash) = 64)
    );
    """,
)

INDEX_DDL: tuple[str, ...] = (
    "CREATE INDEX idx_price_submission_asset_unused ON price_submission USING btree (asset, is_used);",
    "CREATE INDEX idx_protection_policy_owner ON protection_policy USING btree (owner);",
    "CREATE INDEX idx_protection_policy_status_expiry ON protection_policy USING btree (status, expiration_height);",
    "CREATE INDEX idx_protocol_event_type ON protocol_event USING btree (event_type);",
)

APPEND_ONLY_DDL: tuple[str, ...] = (
    """
    CREATE OR REPLACE FUNCTION fn_enforce_append_only()
    RETURNS TRIGGER
    LANGUAGE plpgsql
    AS $$
    BEGIN
        RAISE EXCEPTION 'append-only violation on table %, operation % is not allowed', TG_TABLE_NAME, TG_OP;
    END;
    $$;
    """,
    """
    CREATE TRIGGER trg_protocol_event_append_only
    BEFORE UPDATE OR DELETE ON protocol_event
    FOR EACH ROW EXECUTE FUNCTION fn_enforce_append_only();
    """,
)


def _execute_all(statements: Sequence[str]) -> None:
    """Execute an ordered sequence of SQL statements."""

    for statement in statements:
        try:
            op.execute(statement)
        except Exception:
            logger.exception("Migration statement failed.")
            raise


def upgrade() -> None:
    """Apply the initial schema migration."""

    logger.info("Starting initial schema migration upgrade.")
    _execute_all(ENUM_DDL)
    _execute_all(TABLE_DDL)
    _execute_all(INDEX_DDL)
    _execute_all(APPEND_ONLY_DDL)
    logger.info("Completed initial schema migration upgrade.")


def downgrade() -> None:
    """Revert the initial schema migration."""

    logger.info("Starting initial schema migration downgrade.")
    _execute_all(
        (
            "DROP TRIGGER IF EXISTS trg_protocol_event_append_only ON protocol_event;",
            "DROP FUNCTION IF EXISTS fn_enforce_append_only();",
            "DROP TABLE IF EXISTS protocol_event;",
            "DROP TABLE IF EXISTS protection_policy;",
            "DROP TABLE IF EXISTS deposit_position;",
            "DROP TABLE IF EXISTS vault_account;",
            "DROP TABLE IF EXISTS daily_close;",
            "DROP TABLE IF EXISTS price_history;",
            "DROP TABLE IF EXISTS aggregated_price;",
            "DROP TABLE IF EXISTS price_submission;",
            "DROP TABLE IF EXISTS oracle_provider;",
            "DROP TABLE IF EXISTS role_assignment;",
            "DROP TABLE IF EXISTS protocol_settings;",
            "DROP TYPE IF EXISTS protocol_role_enum;",
            "DROP TYPE IF EXISTS provider_status_enum;",
            "DROP TYPE IF EXISTS policy_status_enum;",
            "DROP TYPE IF EXISTS policy_type_enum;",
        )
    )
    logger.info("Completed initial schema migration downgrade.")
