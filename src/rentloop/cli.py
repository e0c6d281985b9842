"""rentloop CLI — operator commands for the rental and escrow engine.

Usage:
    python -m rentloop.cli serve --port 8000
    python -m rentloop.cli quote --daily-rate 100 --deposit 50 --days 5
    python -m rentloop.cli balance --user owner-1
    python -m rentloop.cli check-ledger
    python -m rentloop.cli check-invariants
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import date, timedelta
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Optional

from rentloop.collaborators import InMemoryItemCatalog
from rentloop.compensation.ledger import LedgerStore
from rentloop.compensation.payment_provider import SandboxPaymentProvider
from rentloop.compensation.pricing import quote
from rentloop.errors import EngineError
from rentloop.models.rental import Item
from rentloop.persistence.event_log import EventLog
from rentloop.policy.invariants import check
from rentloop.policy.resolver import PARAMS_FILENAME, PolicyResolver
from rentloop.service import RentalService


DEFAULT_CONFIG = Path(__file__).resolve().parents[2] / "config"
DEFAULT_DATA = Path(__file__).resolve().parents[2] / "data"
ITEMS_FILENAME = "items.json"


def _decimal(value: object) -> Optional[Decimal]:
    return Decimal(str(value)) if value is not None else None


def _load_items(path: Path) -> list[Item]:
    with path.open("r", encoding="utf-8") as handle:
        raw_items = json.load(handle)
    return [
        Item(
            item_id=raw["item_id"],
            owner_id=raw["owner_id"],
            title=raw.get("title", raw["item_id"]),
            daily_rate=Decimal(str(raw["daily_rate"])),
            security_deposit=Decimal(str(raw.get("security_deposit", "0"))),
            currency=raw.get("currency", "EGP"),
            weekly_rate=_decimal(raw.get("weekly_rate")),
            monthly_rate=_decimal(raw.get("monthly_rate")),
            delivery_fee=Decimal(str(raw.get("delivery_fee", "0"))),
            is_available=raw.get("is_available", True),
        )
        for raw in raw_items
    ]


def _open_ledger(config_dir: Path, data_dir: Path) -> LedgerStore:
    resolver = PolicyResolver.from_config_dir(config_dir)
    return LedgerStore(
        storage_path=data_dir / "ledger.jsonl",
        currency=resolver.currency(),
    )


def _make_service(config_dir: Path, data_dir: Path = DEFAULT_DATA) -> RentalService:
    """Create a RentalService with durable audit log and ledger journal.

    Rentals are replayed from ``events.jsonl`` so a restart picks up where
    the ledger journal left off.
    """
    data_dir.mkdir(parents=True, exist_ok=True)
    resolver = PolicyResolver.from_config_dir(config_dir)
    items_path = config_dir / ITEMS_FILENAME
    catalog = InMemoryItemCatalog(_load_items(items_path) if items_path.exists() else ())
    return RentalService(
        resolver,
        payment_provider=SandboxPaymentProvider(),
        catalog=catalog,
        ledger=LedgerStore(
            storage_path=data_dir / "ledger.jsonl",
            currency=resolver.currency(),
        ),
        event_log=EventLog(storage_path=data_dir / "events.jsonl"),
    )


def cmd_serve(args: argparse.Namespace) -> int:
    """Run the HTTP ingress (development server)."""
    from rentloop.api import create_app

    service = _make_service(args.config, args.data)
    app = create_app(service)
    try:
        app.run(host=args.host, port=args.port)
    finally:
        service.close()
    return 0


def cmd_quote(args: argparse.Namespace) -> int:
    """Price a hypothetical rental with the configured policy."""
    resolver = PolicyResolver.from_config_dir(args.config)
    try:
        item = Item(
            item_id="quote",
            owner_id="quote-owner",
            title="quote",
            daily_rate=Decimal(args.daily_rate),
            security_deposit=Decimal(args.deposit),
            currency=resolver.currency(),
            weekly_rate=_decimal(args.weekly_rate),
            monthly_rate=_decimal(args.monthly_rate),
            delivery_fee=Decimal(args.delivery_fee),
        )
    except InvalidOperation:
        print("Failed: amounts must be decimals", file=sys.stderr)
        return 1
    start = date.today()
    try:
        snapshot = quote(
            item, start, start + timedelta(days=args.days), args.delivery,
            args.completed_rentals, resolver,
        )
    except EngineError as e:
        print(f"Failed: {e.message}", file=sys.stderr)
        return 1
    print(json.dumps(snapshot.to_dict(), indent=2))
    return 0


def cmd_balance(args: argparse.Namespace) -> int:
    """Show a wallet balance from the ledger journal."""
    ledger = _open_ledger(args.config, args.data)
    print(json.dumps(ledger.balance(args.user).to_dict(), indent=2))
    return 0


def cmd_check_ledger(args: argparse.Namespace) -> int:
    """Replay the ledger journal and audit every posting and balance."""
    try:
        ledger = _open_ledger(args.config, args.data)
    except EngineError as e:
        print(f"Ledger check failed: {e.message}", file=sys.stderr)
        return 1
    problems = ledger.verify()
    if problems:
        print("Ledger check failed:")
        for problem in problems:
            print(f"- {problem}")
        return 1
    print(f"Ledger check passed: {len(ledger.postings())} postings, {ledger.count} entries.")
    return 0


def cmd_check_invariants(args: argparse.Namespace) -> int:
    """Validate the marketplace parameter file."""
    return check(args.config / PARAMS_FILENAME)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rentloop",
        description="rentloop — rental transaction and escrow engine CLI",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG,
        help="Path to config directory (default: config/)",
    )
    parser.add_argument(
        "--data",
        type=Path,
        default=DEFAULT_DATA,
        help="Path to data directory for journals (default: data/)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
    )
    sub = parser.add_subparsers(dest="command")

    # serve
    p_serve = sub.add_parser("serve", help="Run the HTTP ingress")
    p_serve.add_argument("--host", default="127.0.0.1")
    p_serve.add_argument("--port", type=int, default=8000)

    # quote
    p_quote = sub.add_parser("quote", help="Price a rental")
    p_quote.add_argument("--daily-rate", required=True, help="Daily rate (Decimal)")
    p_quote.add_argument("--days", type=int, required=True, help="Rental length in days")
    p_quote.add_argument("--deposit", default="0", help="Security deposit (Decimal)")
    p_quote.add_argument("--weekly-rate", help="Weekly rate (Decimal)")
    p_quote.add_argument("--monthly-rate", help="Monthly rate (Decimal)")
    p_quote.add_argument("--delivery-fee", default="0", help="Delivery fee (Decimal)")
    p_quote.add_argument("--delivery", action="store_true", help="Include delivery")
    p_quote.add_argument(
        "--completed-rentals", type=int, default=0,
        help="Owner's completed rentals, selects the commission tier",
    )

    # balance
    p_bal = sub.add_parser("balance", help="Show a wallet balance")
    p_bal.add_argument("--user", required=True, help="User ID")

    # check-ledger
    sub.add_parser("check-ledger", help="Audit the ledger journal")

    # check-invariants
    sub.add_parser("check-invariants", help="Validate marketplace parameters")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command is None:
        parser.print_help()
        return 0

    commands = {
        "serve": cmd_serve,
        "quote": cmd_quote,
        "balance": cmd_balance,
        "check-ledger": cmd_check_ledger,
        "check-invariants": cmd_check_invariants,
    }

    handler = commands.get(args.command)
    if handler is None:
        print(f"Unknown command: {args.command}", file=sys.stderr)
        return 1

    return handler(args)


if __name__ == "__main__":
    raise SystemExit(main())
