from datetime import timedelta

from marketplace.features.orders.lifecycle import on_order_status_changed
from marketplace.features.subscriptions.service import get_subscription, select_plan
from marketplace.features.wallet.ledger import get_balance
from marketplace.workers import ledger_sweeps


def test_run_sweeps_once(vendor, now):
    select_plan(vendor, "professional", now=now)
    select_plan(vendor, "starter", now=now + timedelta(days=1))
    on_order_status_changed("order-1", vendor, "delivered", 1000, now=now)

    summary = ledger_sweeps.run_sweeps_once(now=now + timedelta(days=31))

    assert summary == {"plan_changes": 1, "matured": 1, "failures": 0}
    assert get_subscription(vendor, now=now + timedelta(days=31)).plan_id == "starter"
    assert get_balance(vendor).available == 900

    assert ledger_sweeps.run_sweeps_once(now=now + timedelta(days=31)) == {
        "plan_changes": 0,
        "matured": 0,
        "failures": 0,
    }


def test_sweep_failure_is_reported(vendor, now, monkeypatch):
    on_order_status_changed("order-1", vendor, "delivered", 1000, now=now)

    def boom(*args, **kwargs):
        raise RuntimeError("db went away")

    monkeypatch.setattr("marketplace.features.orders.lifecycle.mature_order_earning", boom)
    summary = ledger_sweeps.run_sweeps_once(now=now + timedelta(days=8))

    assert summary["failures"] == 1
    assert get_balance(vendor).pending == 850


def test_main_once(vendor, capsys, monkeypatch):
    monkeypatch.setattr(ledger_sweeps, "configure_logging", lambda env: None)
    ledger_sweeps.main(["--once", "--limit", "10"])
    out = capsys.readouterr().out
    assert "plan changes: 0" in out
    assert "failures: 0" in out
