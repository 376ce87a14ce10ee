from __future__ import annotations

import argparse
import json
import logging
import sys
from uuid import uuid4

from pydantic import ValidationError

from orderguard.adapters.order_ledger import SqliteOrderLedger
from orderguard.config import Settings
from orderguard.domain.identity import HostContext
from orderguard.domain.models import OrderLedgerStatus
from orderguard.logging_context import with_logging_context
from orderguard.logging_utils import setup_logging
from orderguard.services.admission_service import OrderAdmissionService
from orderguard.services.engine_factory import build_admission_service

logger = logging.getLogger(__name__)


def _print_json(payload: object) -> None:
    print(json.dumps(payload, sort_keys=True, default=str))


def _load_settings() -> Settings | None:
    try:
        return Settings()
    except ValidationError as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        return None


def _build_service(settings: Settings, args: argparse.Namespace) -> OrderAdmissionService:
    host = HostContext(telegram_user_id=args.telegram_user_id)
    return build_admission_service(settings, host_context=lambda: host)


def run_check(service: OrderAdmissionService, identity: str | None) -> int:
    resolved = service.engine.resolve_identity(identity)
    result = service.can_place_order(resolved)
    payload = {"identity": resolved, **result.as_payload()}
    if result.retry_after_seconds:
        payload["retryAfterText"] = service.engine.format_time_remaining(
            result.retry_after_seconds
        )
    _print_json(payload)
    return 0 if result.allowed else 2


def run_record(
    service: OrderAdmissionService, *, command: str, order_id: str | None, identity: str | None
) -> int:
    resolved = service.engine.resolve_identity(identity)
    if command == "record-placement":
        assert order_id is not None
        ok = service.record_order_placement(order_id, resolved)
    elif command == "record-completion":
        assert order_id is not None
        ok = service.record_order_completion(order_id, resolved)
    elif command == "grant-exemption":
        assert order_id is not None
        ok = service.grant_cancellation_exemption(order_id, resolved)
    else:
        ok = service.use_exemption_token(resolved)
    _print_json({"command": command, "identity": resolved, "orderId": order_id, "ok": ok})
    return 0 if ok else 1


def run_show_history(service: OrderAdmissionService, identity: str | None) -> int:
    resolved = service.engine.resolve_identity(identity)
    history = service.engine.history(resolved)
    _print_json({"identity": resolved, "history": history.model_dump(by_alias=True)})
    return 0


def run_ledger_set_status(
    settings: Settings,
    *,
    order_id: str,
    status: str,
    user_id: str | None,
    order_number: str | None,
) -> int:
    ledger = SqliteOrderLedger(
        settings.resolved_ledger_db_path(),
        timeout_seconds=settings.local_store_timeout_ms / 1000,
    )
    if user_id is not None:
        ledger.upsert_order(
            order_id=order_id, user_id=user_id, status=status, order_number=order_number
        )
        updated = True
    else:
        updated = ledger.set_status(order_id, status)
    _print_json({"orderId": order_id, "status": status, "updated": updated})
    return 0 if updated else 1


def main() -> int:
    parser = argparse.ArgumentParser(
        prog="orderguard",
        description="Inspect and drive order admission decisions for one identity.",
    )
    parser.add_argument(
        "--telegram-user-id",
        default=None,
        help="Verified Telegram user id reported by the host client",
    )
    parser.add_argument(
        "--identity",
        default=None,
        help="Use this identity key (tg_/local_/session_) instead of resolving one",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("check", help="Ask whether a new order may be placed now")
    for name, help_text in (
        ("record-placement", "Record a successfully placed order"),
        ("record-completion", "Record that an order reached a terminal state"),
        ("grant-exemption", "Grant a cancellation exemption for a cancelled order"),
    ):
        record_parser = subparsers.add_parser(name, help=help_text)
        record_parser.add_argument("order_id")
    subparsers.add_parser("use-exemption", help="Consume the pending cancellation exemption")
    subparsers.add_parser("show-history", help="Print the stored order history")

    ledger_parser = subparsers.add_parser(
        "ledger-set-status", help="Insert or update an order in the reference ledger"
    )
    ledger_parser.add_argument("order_id")
    ledger_parser.add_argument(
        "status", choices=[status.value for status in OrderLedgerStatus]
    )
    ledger_parser.add_argument("--user-id", default=None, help="Ledger user id (creates the order)")
    ledger_parser.add_argument("--order-number", default=None)

    args = parser.parse_args()
    settings = _load_settings()
    if settings is None:
        return 2
    setup_logging(settings.log_level)

    with with_logging_context(request_id=uuid4().hex):
        logger.debug("cli_command_started", extra={"extra": {"command": args.command}})
        if args.command == "ledger-set-status":
            return run_ledger_set_status(
                settings,
                order_id=args.order_id,
                status=args.status,
                user_id=args.user_id,
                order_number=args.order_number,
            )

        service = _build_service(settings, args)
        if args.command == "check":
            return run_check(service, args.identity)
        if args.command == "show-history":
            return run_show_history(service, args.identity)
        return run_record(
            service,
            command=args.command,
            order_id=getattr(args, "order_id", None),
            identity=args.identity,
        )


if __name__ == "__main__":
    raise SystemExit(main())
