"""Tests for rentloop CLI — proves CLI dispatches correctly."""

import json
import pytest
from decimal import Decimal
from pathlib import Path

from rentloop.cli import build_parser, main
from rentloop.compensation.escrow import EscrowPlanner
from rentloop.compensation.ledger import LedgerStore
from rentloop.models.ledger import PLATFORM_PAYOUTS


class TestCLIParsing:
    def test_quote_command(self) -> None:
        parser = build_parser()
        args = parser.parse_args(["quote", "--daily-rate", "100", "--days", "5"])
        assert args.command == "quote"
        assert args.daily_rate == "100"
        assert args.days == 5
        assert args.deposit == "0"

    def test_balance_requires_user(self) -> None:
        with pytest.raises(SystemExit):
            build_parser().parse_args(["balance"])

    def test_serve_defaults(self) -> None:
        args = build_parser().parse_args(["serve"])
        assert args.host == "127.0.0.1"
        assert args.port == 8000


class TestCLIExecution:
    def test_no_command_shows_help(self, capsys) -> None:
        assert main([]) == 0
        assert "rentloop" in capsys.readouterr().out

    def test_check_invariants_runs(self, capsys) -> None:
        assert main(["check-invariants"]) == 0
        assert "passed" in capsys.readouterr().out

    def test_quote(self, capsys) -> None:
        exit_code = main(["quote", "--daily-rate", "100", "--days", "5", "--deposit", "50"])
        assert exit_code == 0
        quoted = json.loads(capsys.readouterr().out)
        assert quoted["total"] == "600.00"
        assert quoted["commission_tier"] == "Bronze"

    def test_quote_tier(self, capsys) -> None:
        main(["quote", "--daily-rate", "100", "--days", "5", "--completed-rentals", "60"])
        quoted = json.loads(capsys.readouterr().out)
        assert quoted["commission_tier"] == "Gold"
        assert quoted["owner_payout"] == "470.00"

    def test_quote_rejects_garbage(self, capsys) -> None:
        assert main(["quote", "--daily-rate", "cheap", "--days", "5"]) == 1

    def test_check_ledger_empty(self, tmp_path: Path, capsys) -> None:
        assert main(["--data", str(tmp_path), "check-ledger"]) == 0
        assert "0 postings" in capsys.readouterr().out

    def test_check_ledger_and_balance(self, tmp_path: Path, capsys) -> None:
        ledger = LedgerStore(storage_path=tmp_path / "ledger.jsonl")
        plan = EscrowPlanner().payout("owner-1", Decimal("10.00"), "EGP")
        ledger.post(plan.intents)

        assert main(["--data", str(tmp_path), "check-ledger"]) == 0
        capsys.readouterr()
        assert main(["--data", str(tmp_path), "balance", "--user", PLATFORM_PAYOUTS]) == 0
        balance = json.loads(capsys.readouterr().out)
        assert balance["available"] == "10.00"

    def test_check_ledger_detects_tampering(self, tmp_path: Path, capsys) -> None:
        path = tmp_path / "ledger.jsonl"
        ledger = LedgerStore(storage_path=path)
        ledger.post(EscrowPlanner().payout("owner-1", Decimal("10.00"), "EGP").intents)
        record = json.loads(path.read_text(encoding="utf-8"))
        record["entries"][0]["amount"] = "-11.00"
        path.write_text(json.dumps(record) + "\n", encoding="utf-8")

        assert main(["--data", str(tmp_path), "check-ledger"]) == 1
        assert "failed" in capsys.readouterr().err
