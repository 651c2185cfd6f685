"""
Tests for the vendor wallet ledger.
"""
import gc
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from marketplace.core.database import get_db_session, vendor_accounts, wallet_transactions
from marketplace.core.errors import AccountNotFoundError, InsufficientFundsError, ValidationError
from marketplace.core.locks import VENDOR_LOCKS, VendorLockRegistry
from marketplace.features.wallet.ledger import (
    BalanceDelta,
    balance_effect,
    decode_page_token,
    encode_page_token,
    get_balance,
    get_wallet_summary,
    iter_transactions,
    list_transactions,
    post,
    post_adjustment,
    post_transaction,
    vendor_session,
)
from marketplace.models.wallet import BalanceBucket, Reference, ReferenceType, TransactionType


def _count_transactions(vendor_id):
    with get_db_session() as db:
        return db.execute(
            select(func.count()).select_from(wallet_transactions).where(wallet_transactions.c.vendor_id == vendor_id)
        ).scalar()


class TestBalanceEffect:
    def test_earning_credits_pending(self):
        assert balance_effect(TransactionType.ORDER_EARNING, 850) == BalanceDelta(pending=850)

    def test_commission_moves_nothing(self):
        assert balance_effect(TransactionType.COMMISSION, -150) == BalanceDelta()
        assert balance_effect(TransactionType.COMMISSION, 150) == BalanceDelta()

    def test_payout_debits_available(self):
        assert balance_effect(TransactionType.PAYOUT, -500) == BalanceDelta(available=-500)

    def test_matured_legs_need_explicit_bucket(self):
        assert balance_effect(TransactionType.EARNING_MATURED, -850, BalanceBucket.PENDING) == BalanceDelta(pending=-850)
        assert balance_effect(TransactionType.EARNING_MATURED, 850, BalanceBucket.AVAILABLE) == BalanceDelta(available=850)
        with pytest.raises(ValidationError):
            balance_effect(TransactionType.EARNING_MATURED, 850)

    def test_reversals_debit_whichever_bucket(self):
        assert balance_effect(TransactionType.REFUND_DEBIT, -10) == BalanceDelta(available=-10)
        assert balance_effect(TransactionType.PENDING_CANCELLED, -10) == BalanceDelta(pending=-10)
        assert balance_effect("refund_debit", -10, "pending") == BalanceDelta(pending=-10)

    def test_adjustment_either_sign(self):
        assert balance_effect(TransactionType.ADJUSTMENT, 10) == BalanceDelta(available=10)
        assert balance_effect(TransactionType.ADJUSTMENT, -10, "pending") == BalanceDelta(pending=-10)

    @pytest.mark.parametrize(
        "tx_type,amount,bucket",
        [
            (TransactionType.ORDER_EARNING, -1, None),
            (TransactionType.ORDER_EARNING, 1, BalanceBucket.AVAILABLE),
            (TransactionType.PAYOUT, 1, None),
            (TransactionType.PAYOUT, -1, BalanceBucket.PENDING),
            (TransactionType.REFUND_DEBIT, 1, None),
            (TransactionType.COMMISSION, -1, BalanceBucket.AVAILABLE),
            (TransactionType.ADJUSTMENT, 1, BalanceBucket.NONE),
        ],
    )
    def test_disallowed_combinations(self, tx_type, amount, bucket):
        with pytest.raises(ValidationError):
            balance_effect(tx_type, amount, bucket)

    def test_unknown_type(self):
        with pytest.raises(ValueError):
            balance_effect("bonus", 1)


class TestPosting:
    def test_credit_then_debit(self, vendor, now, assert_consistent):
        credit = post(vendor, TransactionType.ADJUSTMENT, 1000, reason="opening balance", now=now)
        debit = post(vendor, TransactionType.PAYOUT, -400, now=now)

        assert (credit.sequence, credit.balance_after) == (1, 1000)
        assert (debit.sequence, debit.balance_after) == (2, 600)
        assert get_balance(vendor).available == 600
        assert_consistent(vendor)

    def test_insufficient_funds_posts_nothing(self, vendor, now):
        post(vendor, TransactionType.ADJUSTMENT, 300, reason="seed", now=now)

        with pytest.raises(InsufficientFundsError) as exc:
            post(vendor, TransactionType.PAYOUT, -500, now=now)

        assert exc.value.code == "insufficient_funds"
        assert (exc.value.available, exc.value.requested) == (300, 500)
        assert _count_transactions(vendor) == 1
        assert get_balance(vendor).available == 300

    def test_pending_cannot_go_negative(self, vendor, now):
        with pytest.raises(InsufficientFundsError):
            post(vendor, TransactionType.PENDING_CANCELLED, -1, now=now)

    def test_adjustment_requires_reason(self, vendor, now):
        with pytest.raises(ValidationError) as exc:
            post(vendor, TransactionType.ADJUSTMENT, 10, reason="   ", now=now)
        assert exc.value.code == "reason_required"

    @pytest.mark.parametrize("amount", [0, 1.5, True])
    def test_rejects_bad_amounts(self, vendor, amount):
        with pytest.raises(ValidationError):
            post(vendor, TransactionType.ADJUSTMENT, amount, reason="x")

    def test_only_available_refund_debit_may_overdraw(self, vendor, now):
        with pytest.raises(ValidationError):
            post(vendor, TransactionType.PAYOUT, -10, allow_negative=True, now=now)
        with pytest.raises(ValidationError):
            post(vendor, TransactionType.REFUND_DEBIT, -10, bucket="pending", allow_negative=True, now=now)

        tx = post(vendor, TransactionType.REFUND_DEBIT, -10, allow_negative=True, now=now)
        assert tx.needs_reconciliation is True
        assert tx.balance_after == -10

    def test_unknown_vendor(self):
        with pytest.raises(AccountNotFoundError):
            post("ghost", TransactionType.ADJUSTMENT, 10, reason="x")
        with pytest.raises(AccountNotFoundError):
            get_balance("ghost")

    def test_failed_unit_of_work_rolls_back_everything(self, vendor, now):
        with pytest.raises(InsufficientFundsError):
            with vendor_session(vendor) as db:
                post_transaction(db, vendor, TransactionType.ADJUSTMENT, 100, reason="first", now=now)
                post_transaction(db, vendor, TransactionType.PAYOUT, -500, now=now)

        assert _count_transactions(vendor) == 0
        assert get_balance(vendor).available == 0
        with get_db_session() as db:
            assert db.execute(
                select(vendor_accounts.c.last_sequence).where(vendor_accounts.c.vendor_id == vendor)
            ).scalar() == 0

    def test_reference_and_rate_are_kept(self, vendor, now):
        ref = Reference(type=ReferenceType.ORDER, id="order-9")
        post(vendor, TransactionType.ORDER_EARNING, 90, reference=ref, commission_bps=1000, now=now)

        with get_db_session() as db:
            page = list_transactions(db, vendor)
        tx = page.items[0]
        assert tx.reference == ref
        assert str(tx.commission_rate) == "10"
        assert tx.created_at == now


class TestTransactionFeed:
    @pytest.fixture
    def busy_vendor(self, vendor, now):
        for i in range(1, 8):
            post(vendor, TransactionType.ADJUSTMENT, i * 10, reason=f"credit {i}", now=now + timedelta(minutes=i))
        post(vendor, TransactionType.PAYOUT, -50, now=now + timedelta(hours=1))
        return vendor

    def test_newest_first_pages(self, busy_vendor):
        with get_db_session() as db:
            first = list_transactions(db, busy_vendor, limit=3)
            second = list_transactions(db, busy_vendor, limit=3, page_token=first.next_page_token)
            third = list_transactions(db, busy_vendor, limit=3, page_token=second.next_page_token)

        assert [t.sequence for t in first.items] == [8, 7, 6]
        assert [t.sequence for t in second.items] == [5, 4, 3]
        assert [t.sequence for t in third.items] == [2, 1]
        assert third.next_page_token is None

    def test_token_is_stable_when_new_rows_arrive(self, busy_vendor, now):
        with get_db_session() as db:
            first = list_transactions(db, busy_vendor, limit=4)
        post(busy_vendor, TransactionType.ADJUSTMENT, 5, reason="late", now=now + timedelta(days=1))
        with get_db_session() as db:
            second = list_transactions(db, busy_vendor, limit=4, page_token=first.next_page_token)
        assert [t.sequence for t in second.items] == [4, 3, 2, 1]

    def test_type_filter(self, busy_vendor):
        with get_db_session() as db:
            page = list_transactions(db, busy_vendor, tx_type="payout")
        assert [t.type for t in page.items] == [TransactionType.PAYOUT]

        with get_db_session() as db:
            with pytest.raises(ValidationError):
                list_transactions(db, busy_vendor, tx_type="bonus")

    def test_bad_token_and_limit(self, busy_vendor):
        with get_db_session() as db:
            with pytest.raises(ValidationError):
                list_transactions(db, busy_vendor, page_token="not-a-token")
            with pytest.raises(ValidationError):
                list_transactions(db, busy_vendor, limit=0)
        with pytest.raises(ValidationError):
            decode_page_token(encode_page_token(0))

    def test_iter_walks_every_page(self, busy_vendor, assert_consistent):
        sequences = [t.sequence for t in iter_transactions(busy_vendor, page_size=3)]
        assert sequences == list(range(8, 0, -1))
        assert_consistent(busy_vendor)


def test_post_adjustment_emits_event(vendor, now):
    from marketplace.features.events.outbox import list_undelivered_events

    tx = post_adjustment(vendor, 250, "goodwill credit", actor="key:abc", now=now)
    assert tx.type == TransactionType.ADJUSTMENT
    assert tx.reason == "goodwill credit"

    with get_db_session() as db:
        events = list_undelivered_events(db, event_type="wallet.adjusted")
    assert events[0]["payload"]["amount"] == 250
    assert events[0]["payload"]["bucket"] == "available"


def test_wallet_summary_for_new_vendor(vendor):
    summary = get_wallet_summary(vendor)
    assert (summary.available, summary.pending) == (0, 0)
    assert (summary.total_earnings, summary.total_commission_paid, summary.total_payouts) == (0, 0, 0)
    assert summary.last_payout_date is None
    assert str(summary.commission_rate) == "15"


class TestVendorLocks:
    def test_same_lock_while_held(self):
        registry = VendorLockRegistry()
        with registry.hold("vendor-1"):
            assert registry.get("vendor-1") is registry.get("vendor-1")
            assert registry.get("vendor-1") is not registry.get("vendor-2")

    def test_released_locks_are_dropped(self):
        registry = VendorLockRegistry()
        for i in range(50):
            with registry.hold(f"vendor-{i}"):
                pass
        gc.collect()
        assert len(registry) == 0

    def test_vendor_sessions_leave_no_locks_behind(self, vendor, now):
        for _ in range(3):
            post_adjustment(vendor, 10, "credit", now=now)
        gc.collect()
        assert len(VENDOR_LOCKS) == 0
