"""
Tests for the payout processor.
"""
import threading
from datetime import timedelta

import pytest

from marketplace.core.errors import (
    AccountNotFoundError,
    AppError,
    BelowMinimumPayoutError,
    InsufficientFundsError,
    InvalidPayoutTransitionError,
    NotFoundError,
    PayoutInFlightError,
    ValidationError,
)
from marketplace.core.metrics import payout_requests_total
from marketplace.features.payouts.service import (
    get_payout,
    list_payouts,
    list_payouts_by_status,
    mark_completed,
    mark_processing,
    mark_rejected,
    request_payout,
)
from marketplace.features.wallet.ledger import get_balance, get_wallet_summary, iter_transactions, post_adjustment
from marketplace.models.payout import PayoutStatus
from marketplace.models.wallet import ReferenceType, TransactionType


@pytest.fixture
def funded_vendor(vendor, now):
    post_adjustment(vendor, 1000, "opening balance", now=now)
    return vendor


def test_request_debits_available(funded_vendor, now, assert_consistent):
    payout = request_payout(funded_vendor, 600, now=now)

    assert payout.status == PayoutStatus.REQUESTED
    assert payout.amount == 600
    assert payout.requested_at == now

    debit = next(iter_transactions(funded_vendor))
    assert debit.type == TransactionType.PAYOUT
    assert debit.amount == -600
    assert debit.id == payout.debit_transaction_id
    assert (debit.reference.type, debit.reference.id) == (ReferenceType.PAYOUT, payout.id)

    assert assert_consistent(funded_vendor).available == 400
    assert payout_requests_total.value(labels={"outcome": "accepted"}) == 1


def test_insufficient_funds_posts_nothing(vendor, now):
    post_adjustment(vendor, 300, "seed", now=now)

    with pytest.raises(InsufficientFundsError):
        request_payout(vendor, 500, now=now)

    assert [t.type for t in iter_transactions(vendor)] == [TransactionType.ADJUSTMENT]
    assert get_balance(vendor).available == 300
    assert list_payouts(vendor) == []
    assert payout_requests_total.value(labels={"outcome": "insufficient_funds"}) == 1


def test_below_minimum(funded_vendor, now):
    with pytest.raises(BelowMinimumPayoutError) as exc:
        request_payout(funded_vendor, 499, now=now)
    assert exc.value.minimum == 500
    assert get_balance(funded_vendor).available == 1000


def test_minimum_is_checked_before_balance(vendor, now):
    with pytest.raises(BelowMinimumPayoutError):
        request_payout(vendor, 100, now=now)


@pytest.mark.parametrize("amount", [0, -500, 500.0, "500", True])
def test_amount_must_be_positive_int(funded_vendor, amount):
    with pytest.raises(ValidationError):
        request_payout(funded_vendor, amount)


def test_unknown_vendor():
    with pytest.raises(AccountNotFoundError):
        request_payout("ghost", 600)
    with pytest.raises(AccountNotFoundError):
        list_payouts("ghost")


def test_one_payout_in_flight(funded_vendor, now):
    first = request_payout(funded_vendor, 500, now=now)

    with pytest.raises(PayoutInFlightError):
        request_payout(funded_vendor, 500, now=now)

    mark_processing(first.id, now=now)
    with pytest.raises(PayoutInFlightError):
        request_payout(funded_vendor, 500, now=now)

    mark_completed(first.id, now=now)
    second = request_payout(funded_vendor, 500, now=now + timedelta(minutes=1))
    assert second.status == PayoutStatus.REQUESTED
    assert get_balance(funded_vendor).available == 0


def test_reject_restores_balance(funded_vendor, now, assert_consistent):
    payout = request_payout(funded_vendor, 700, now=now)
    rejected = mark_rejected(payout.id, "bank details invalid", actor="key:ops", now=now + timedelta(hours=1))

    assert rejected.status == PayoutStatus.REJECTED
    assert rejected.note == "bank details invalid"
    assert rejected.rejected_at == now + timedelta(hours=1)

    credit = next(iter_transactions(funded_vendor))
    assert credit.type == TransactionType.ADJUSTMENT
    assert credit.amount == 700
    assert credit.id == rejected.reversal_transaction_id
    assert "bank details invalid" in credit.reason

    assert assert_consistent(funded_vendor).available == 1000
    assert get_wallet_summary(funded_vendor).total_payouts == 0


def test_complete_from_requested(funded_vendor, now):
    payout = request_payout(funded_vendor, 500, now=now)
    done = mark_completed(payout.id, "wire ref 42", now=now + timedelta(days=1))

    assert done.status == PayoutStatus.COMPLETED
    assert done.completed_at == now + timedelta(days=1)
    assert get_balance(funded_vendor).available == 500

    summary = get_wallet_summary(funded_vendor)
    assert summary.total_payouts == 500
    assert summary.last_payout_date == now + timedelta(days=1)


@pytest.mark.parametrize(
    "steps,target",
    [
        ([mark_completed], mark_rejected),
        ([mark_rejected], mark_completed),
        ([mark_processing], mark_processing),
        ([mark_completed], mark_processing),
    ],
)
def test_terminal_and_repeated_transitions(funded_vendor, now, steps, target):
    payout = request_payout(funded_vendor, 500, now=now)
    for step in steps:
        step(payout.id, now=now)
    balance_before = get_balance(funded_vendor)

    with pytest.raises(InvalidPayoutTransitionError):
        target(payout.id, now=now)
    assert get_balance(funded_vendor) == balance_before


def test_unknown_payout():
    with pytest.raises(NotFoundError) as exc:
        get_payout("missing")
    assert exc.value.code == "payout_not_found"
    with pytest.raises(NotFoundError):
        mark_completed("missing")


def test_operator_queue(vendor, now):
    post_adjustment(vendor, 5000, "seed", now=now)
    from marketplace.features.subscriptions.service import register_vendor

    register_vendor("vendor-2", now=now)
    post_adjustment("vendor-2", 5000, "seed", now=now)

    a = request_payout(vendor, 500, now=now)
    b = request_payout("vendor-2", 600, now=now + timedelta(minutes=1))
    mark_processing(b.id, now=now + timedelta(minutes=2))

    assert [p.id for p in list_payouts_by_status()] == [a.id, b.id]
    assert [p.id for p in list_payouts_by_status(PayoutStatus.PROCESSING)] == [b.id]

    mark_completed(a.id, now=now + timedelta(minutes=3))
    assert [p.id for p in list_payouts_by_status()] == [b.id]
    assert [p.id for p in list_payouts_by_status(PayoutStatus.COMPLETED)] == [a.id]


def test_list_payouts_newest_first(funded_vendor, now):
    first = request_payout(funded_vendor, 500, now=now)
    mark_rejected(first.id, now=now)
    second = request_payout(funded_vendor, 500, now=now + timedelta(hours=1))

    assert [p.id for p in list_payouts(funded_vendor)] == [second.id, first.id]


def test_concurrent_requests_only_one_succeeds(funded_vendor, assert_consistent):
    barrier = threading.Barrier(2)
    results = []
    lock = threading.Lock()

    def worker():
        barrier.wait()
        try:
            payout = request_payout(funded_vendor, 600)
            outcome = payout.status.value
        except AppError as exc:
            outcome = exc.code
        with lock:
            results.append(outcome)

    threads = [threading.Thread(target=worker) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert sorted(results)[1] == "requested"
    assert sorted(results)[0] in ("insufficient_funds", "payout_in_flight")
    assert assert_consistent(funded_vendor).available == 400
    assert len(list_payouts(funded_vendor)) == 1
