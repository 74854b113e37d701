#!/usr/bin/env python3
"""Settlement protocol CLI: scenario replay, state inspection and event-chain checks."""

from __future__ import annotations

import argparse
from dataclasses import asdict, is_dataclass
from datetime import date
import enum
import json
import logging
import os
from pathlib import Path
import sys
from typing import Any, Callable, Mapping, Optional

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

# Ensure repository root is importable when script is executed by path.
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from backend.db.base import Base
from backend.db.repository import ProtocolRepository
from settlement.config import load_protocol_parameters
from settlement.errors import SettlementError
from settlement.events import EventLogIntegrityError
from settlement.protocol import ProtectionProtocol
from settlement.state_store import Role
from settlement.transfer_simulator import VAULT_CUSTODY, InMemoryTokenLedger

logger = logging.getLogger(__name__)

# op name -> (component attribute on ProtectionProtocol, method name)
OPERATIONS: dict[str, tuple[str, str]] = {
    "advance": ("clock", "advance"),
    "set_clock": ("clock", "set"),
    "grant_role": ("access", "grant_role"),
    "revoke_role": ("access", "revoke_role"),
    "set_backend_principal": ("access", "set_backend_principal"),
    "set_authorized_submitter": ("access", "set_authorized_submitter"),
    "set_policy_registry_principal": ("access", "set_policy_registry_principal"),
    "update_parameters": ("access", "update_parameters"),
    "register_provider": ("oracle", "register_provider"),
    "disable_provider": ("oracle", "disable_provider"),
    "set_provider_weight": ("oracle", "set_provider_weight"),
    "submit_price": ("oracle", "submit_price"),
    "aggregate": ("oracle", "aggregate"),
    "set_price": ("oracle", "set_price"),
    "get_latest_price": ("oracle", "get_latest_price"),
    "get_twap": ("oracle", "get_twap"),
    "record_daily_close": ("volatility", "record_daily_close"),
    "record_close_from_oracle": ("volatility", "record_close_from_oracle"),
    "compute_volatility": ("volatility", "compute_volatility"),
    "initialize_token": ("vault", "initialize_token"),
    "deposit": ("vault", "deposit"),
    "withdraw": ("vault", "withdraw"),
    "create_policy": ("registry", "create_policy"),
    "activate_policy": ("registry", "activate_policy"),
    "expire_policy": ("registry", "expire_policy"),
    "expire_due_policies": ("registry", "expire_due_policies"),
}


def _jsonable(value: Any) -> Any:
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, date):
        return value.isoformat()
    if is_dataclass(value) and not isinstance(value, type):
        return _jsonable(asdict(value))
    if isinstance(value, Mapping):
        return {str(_jsonable(key)): _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    return value


def _coerce_arguments(arguments: dict[str, Any]) -> dict[str, Any]:
    coerced = dict(arguments)
    if "role" in coerced:
        coerced["role"] = Role(coerced["role"])
    if "close_date" in coerced:
        coerced["close_date"] = date.fromisoformat(coerced["close_date"])
    return coerced


def _normalize_database_url(url: str) -> str:
    # Plain postgresql:// URLs go through the psycopg 3 driver.
    if url.startswith("postgresql://"):
        return "postgresql+psycopg://" + url[len("postgresql://"):]
    if url.startswith("postgres://"):
        return "postgresql+psycopg://" + url[len("postgres://"):]
    return url


def _build_repository(database_url: str, create_schema: bool = False) -> ProtocolRepository:
    engine = create_engine(_normalize_database_url(database_url))
    if create_schema:
        Base.metadata.create_all(engine)
    return ProtocolRepository(sessionmaker(bind=engine, expire_on_commit=False))


def _build_ledger(protocol: ProtectionProtocol, balances: Mapping[str, Any]) -> InMemoryTokenLedger:
    ledger = InMemoryTokenLedger()
    for token_id, account in protocol.store.state.vault_accounts.items():
        ledger.mint(token_id, VAULT_CUSTODY, account.total_balance)
    token_id = protocol.store.parameters.collateral_token
    for holder, amount in balances.items():
        ledger.mint(token_id, holder, int(amount))
    return ledger


def _resolve_operation(protocol: ProtectionProtocol, op_name: str) -> Callable[..., Any]:
    if op_name not in OPERATIONS:
        raise ValueError(f"Unknown scenario operation: {op_name}")
    component, method = OPERATIONS[op_name]
    return getattr(getattr(protocol, component), method)


def run_scenario(
    scenario: Mapping[str, Any],
    repository: Optional[ProtocolRepository] = None,
) -> tuple[dict[str, Any], bool]:
    """Apply scenario steps in order; stops at the first unexpected failure."""
    store = repository.load() if repository is not None else None
    if store is None:
        admin = scenario.get("admin") or os.getenv("SETTLEMENT_ADMIN_PRINCIPAL")
        if not admin:
            raise RuntimeError("Scenario has no admin and SETTLEMENT_ADMIN_PRINCIPAL is not set")
        parameters = load_protocol_parameters().with_changes(**scenario.get("parameters", {}))
        protocol = ProtectionProtocol.bootstrap(admin, parameters)
    else:
        protocol = ProtectionProtocol.assemble(store)

    clock_state = scenario.get("clock", {})
    protocol.clock.set(int(clock_state.get("height", 0)), int(clock_state.get("timestamp", 0)))
    ledger = _build_ledger(protocol, scenario.get("balances", {}))
    protocol.vault.transfers = ledger

    results: list[dict[str, Any]] = []
    succeeded = True
    for index, step in enumerate(scenario.get("steps", []), start=1):
        arguments = {key: value for key, value in step.items() if key not in {"op", "expect_error"}}
        expected_error = step.get("expect_error")
        entry: dict[str, Any] = {"step": index, "op": step["op"]}
        try:
            result = _resolve_operation(protocol, step["op"])(**_coerce_arguments(arguments))
        except SettlementError as exc:
            entry.update(
                {
                    "ok": False,
                    "reason_code": exc.reason_code,
                    "detail": exc.detail,
                    "retryable": exc.retryable,
                }
            )
            results.append(entry)
            if expected_error != exc.reason_code:
                logger.warning("Scenario step %d (%s) failed: %s", index, step["op"], exc)
                succeeded = False
                break
            continue
        entry.update({"ok": True, "result": _jsonable(result)})
        results.append(entry)
        if expected_error is not None:
            logger.warning("Scenario step %d (%s) expected %s but succeeded.", index, step["op"], expected_error)
            succeeded = False
            break

    protocol.vault.assert_invariants()
    if succeeded and repository is not None:
        repository.save(protocol.store)

    payload = {
        "status": "SCENARIO: PASSED" if succeeded else "SCENARIO: FAILED",
        "steps": results,
        "event_count": len(protocol.events),
        "tail_hash": protocol.events.tail_hash,
        "state": _state_summary(protocol),
    }
    return payload, succeeded


def _state_summary(protocol: ProtectionProtocol) -> dict[str, Any]:
    state = protocol.store.state
    return _jsonable(
        {
            "admin": state.admin_principal,
            "parameters": state.parameters.as_dict(),
            "vault_accounts": {
                token_id: {
                    "total_balance": account.total_balance,
                    "locked_balance": account.locked_balance,
                    "available_balance": account.available_balance,
                    "premiums_collected": account.premiums_collected,
                }
                for token_id, account in sorted(state.vault_accounts.items())
            },
            "latest_prices": {asset: price for asset, price in sorted(state.latest_prices.items())},
            "providers": [provider for _, provider in sorted(state.providers.items())],
            "policies": [policy for _, policy in sorted(state.policies.items())],
        }
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Settlement protocol CLI")
    parser.add_argument(
        "--database-url",
        default=os.getenv("SETTLEMENT_DATABASE_URL"),
        help="SQLAlchemy database URL (defaults to SETTLEMENT_DATABASE_URL)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    scenario_cmd = subparsers.add_parser("run-scenario", help="Replay a JSON scenario of protocol operations")
    scenario_cmd.add_argument("--scenario", required=True, type=Path)
    scenario_cmd.add_argument(
        "--create-schema",
        action="store_true",
        help="Create tables from ORM metadata before running (test databases)",
    )

    subparsers.add_parser("show-state", help="Print the persisted protocol state")
    subparsers.add_parser("verify-events", help="Verify the persisted event hash chain")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    logging.basicConfig(level=os.getenv("SETTLEMENT_LOG_LEVEL", "INFO").strip().upper())
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.command == "run-scenario":
        scenario = json.loads(args.scenario.read_text(encoding="utf-8"))
        repository = (
            _build_repository(args.database_url, create_schema=args.create_schema)
            if args.database_url
            else None
        )
        payload, succeeded = run_scenario(scenario, repository)
        print(json.dumps(payload, sort_keys=True))
        return 0 if succeeded else 2

    if not args.database_url:
        parser.error(f"{args.command} requires --database-url or SETTLEMENT_DATABASE_URL")
    repository = _build_repository(args.database_url)

    if args.command == "show-state":
        store = repository.load()
        if store is None:
            print(json.dumps({"status": "NO STATE"}, sort_keys=True))
            return 2
        protocol = ProtectionProtocol.assemble(store)
        payload = {
            "event_count": len(store.events),
            "tail_hash": store.events.tail_hash,
            "state": _state_summary(protocol),
        }
        print(json.dumps(payload, sort_keys=True))
        return 0

    events = repository.load_events()
    try:
        events.verify_continuity()
    except EventLogIntegrityError as exc:
        print(json.dumps({"status": "EVENT CHAIN: BROKEN", "detail": str(exc)}, sort_keys=True))
        return 2
    print(
        json.dumps(
            {
                "status": "EVENT CHAIN: VALID",
                "event_count": len(events),
                "tail_hash": events.tail_hash,
            },
            sort_keys=True,
        )
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
