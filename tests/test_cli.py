from __future__ import annotations

import json
import logging
import sys

import pytest

from orderguard import cli


@pytest.fixture(autouse=True)
def restore_root_logging():
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


def _run(monkeypatch, capsys, *argv: str) -> tuple[int, dict[str, object]]:
    monkeypatch.setattr(sys, "argv", ["orderguard", *argv])
    exit_code = cli.main()
    out = capsys.readouterr().out.strip().splitlines()
    return exit_code, json.loads(out[-1])


def test_check_allows_fresh_identity(monkeypatch, capsys) -> None:
    code, payload = _run(monkeypatch, capsys, "--identity", "tg_7", "check")

    assert code == 0
    assert payload["identity"] == "tg_7"
    assert payload["allowed"] is True
    assert payload["remainingToday"] == 20


def test_placement_then_check_reports_cooldown(monkeypatch, capsys) -> None:
    code, payload = _run(monkeypatch, capsys, "--telegram-user-id", "7", "record-placement", "O1")
    assert code == 0
    assert payload == {"command": "record-placement", "identity": "tg_7", "orderId": "O1", "ok": True}

    code, payload = _run(monkeypatch, capsys, "--telegram-user-id", "7", "check")
    assert code == 2
    assert payload["allowed"] is False
    assert payload["cooldownType"] == "frequency"
    assert payload["retryAfterText"].endswith("minutes")

    code, payload = _run(monkeypatch, capsys, "--identity", "tg_7", "show-history")
    assert code == 0
    assert payload["history"]["dailyOrderCount"] == 1
    assert payload["history"]["activeOrderIds"] == []


def test_exemption_commands(monkeypatch, capsys) -> None:
    code, _payload = _run(monkeypatch, capsys, "--identity", "tg_8", "use-exemption")
    assert code == 1

    _run(monkeypatch, capsys, "--identity", "tg_8", "record-placement", "O1")
    code, payload = _run(monkeypatch, capsys, "--identity", "tg_8", "grant-exemption", "O1")
    assert code == 0 and payload["ok"] is True

    code, payload = _run(monkeypatch, capsys, "--identity", "tg_8", "check")
    assert code == 0
    assert payload["exemptionReason"] == "recent cancellation"

    code, payload = _run(monkeypatch, capsys, "--identity", "tg_8", "use-exemption")
    assert code == 0 and payload["ok"] is True


def test_ledger_orders_feed_active_order_ceiling(monkeypatch, capsys) -> None:
    for order_id in ("r1", "r2"):
        code, payload = _run(
            monkeypatch, capsys, "ledger-set-status", order_id, "preparing", "--user-id", "u1"
        )
        assert code == 0 and payload["updated"] is True

    code, payload = _run(monkeypatch, capsys, "--identity", "local_u1", "check")
    assert code == 2
    assert payload["cooldownType"] == "active_orders"
    assert payload["activeOrders"] == 2

    _run(monkeypatch, capsys, "ledger-set-status", "r2", "delivered")
    code, payload = _run(monkeypatch, capsys, "--identity", "local_u1", "check")
    assert code == 0
    assert payload["activeOrders"] == 1


def test_unknown_ledger_order_reports_not_updated(monkeypatch, capsys) -> None:
    code, payload = _run(monkeypatch, capsys, "ledger-set-status", "ghost", "completed")

    assert code == 1
    assert payload == {"orderId": "ghost", "status": "completed", "updated": False}


def test_invalid_configuration_exits_with_error(monkeypatch, capsys) -> None:
    monkeypatch.setenv("ORDER_MAX_ACTIVE", "0")
    monkeypatch.setattr(sys, "argv", ["orderguard", "check"])

    assert cli.main() == 2
    assert "Invalid configuration" in capsys.readouterr().err
