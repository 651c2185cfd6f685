# marketplace/conftest.py
import os
from datetime import datetime, timezone

import pytest

# Must be set before marketplace.core.config builds its settings singleton
os.environ.setdefault("ENV", "test")
os.environ.setdefault("SKIP_ENV_VALIDATION", "1")

from marketplace.core.config import settings  # noqa: E402
from marketplace.core.database import create_all_tables, dispose_engine, drop_all_tables, init_engine  # noqa: E402
from marketplace.core.locks import VENDOR_LOCKS  # noqa: E402
from marketplace.core.metrics import METRICS  # noqa: E402
from marketplace.features.plans.catalog import configure_plan_catalog  # noqa: E402

TEST_ADMIN_KEY = "test-admin-key"
NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(scope="function", autouse=True)
def ledger_db(tmp_path, monkeypatch):
    """
    Fresh SQLite database per test.

    A file database (not :memory:) so that worker threads in the concurrency
    tests get their own connections to the same data.
    """
    monkeypatch.delenv("TEST_DATABASE_URL", raising=False)
    url = f"sqlite:///{tmp_path / 'ledger.db'}"
    monkeypatch.setattr(settings, "DATABASE_URL", url)
    init_engine(url)
    create_all_tables()
    VENDOR_LOCKS.clear()
    METRICS.reset()
    configure_plan_catalog()
    yield url
    drop_all_tables()
    dispose_engine()


@pytest.fixture(scope="function", autouse=True)
def ledger_settings(monkeypatch):
    """Pin ledger configuration so tests do not depend on the host .env."""
    monkeypatch.setattr(settings, "MIN_PAYOUT_AMOUNT", 500)
    monkeypatch.setattr(settings, "EARNING_MATURATION_DAYS", 7)
    monkeypatch.setattr(settings, "MONTHLY_CYCLE_DAYS", 30)
    monkeypatch.setattr(settings, "YEARLY_CYCLE_DAYS", 365)
    monkeypatch.setattr(settings, "DEFAULT_PLAN_ID", "starter")
    monkeypatch.setattr(settings, "PLAN_CATALOG_PATH", None)
    monkeypatch.setattr(settings, "SWEEP_BATCH_SIZE", 100)
    monkeypatch.setattr(settings, "ADMIN_KEY", TEST_ADMIN_KEY)
    yield settings


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def vendor(now):
    """A registered vendor on the starter plan (15%)."""
    from marketplace.features.subscriptions.service import register_vendor

    register_vendor("vendor-1", now=now)
    return "vendor-1"


@pytest.fixture
def assert_consistent():
    """Check cached balances and balance_after snapshots against the log."""
    from marketplace.features.wallet.ledger import get_balance, iter_transactions
    from marketplace.features.wallet.reconciliation import run_reconciliation

    def _check(vendor_id: str, *, allow_flagged: bool = False):
        report = run_reconciliation(vendor_id)
        drift = {k: v for k, v in report["counts"].items() if k in ("balance_mismatch", "snapshot_mismatch", "sequence_gap", "sequence_mismatch")}
        assert drift == {}, report["issues"]
        if not allow_flagged:
            assert "flagged_transaction" not in report["counts"]

        txs = list(iter_transactions(vendor_id, page_size=7))
        balance = get_balance(vendor_id)
        assert balance.available == sum(t.amount for t in txs if t.bucket.value == "available")
        assert balance.pending == sum(t.amount for t in txs if t.bucket.value == "pending")
        if txs:
            assert txs[0].balance_after == balance.available
            assert txs[0].pending_after == balance.pending
        return balance

    return _check


@pytest.fixture
def admin_headers():
    return {"X-Admin-Key": TEST_ADMIN_KEY}


@pytest.fixture
def client():
    from fastapi.testclient import TestClient
    from marketplace.main import app

    return TestClient(app, raise_server_exceptions=False)
