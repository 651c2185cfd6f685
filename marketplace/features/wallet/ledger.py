"""
Vendor wallet ledger.

Manages vendor money with:
- Append-only transaction log, totally ordered per vendor by `sequence`
- Two cached running balances (available, pending) updated in the same
  database transaction as the log append
- A single balance-effect table deciding which balance each transaction type moves
- Keyset-paginated, reverse-chronological transaction feeds
"""
from __future__ import annotations

import base64
import binascii
import json
import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, FrozenSet, Iterator, Optional, Union

from sqlalchemy import and_, func, insert, select, update
from sqlalchemy.orm import Session

from marketplace.core.database import (
    ensure_utc,
    get_db_session,
    payout_requests,
    utc_now,
    vendor_accounts,
    wallet_transactions,
)
from marketplace.core.errors import AccountNotFoundError, InsufficientFundsError, ValidationError
from marketplace.core.locks import vendor_lock
from marketplace.core.logging import log_event
from marketplace.core.metrics import ledger_postings_total
from marketplace.features.commission.engine import bps_to_rate
from marketplace.features.events.outbox import emit_event
from marketplace.models.payout import PayoutStatus
from marketplace.models.wallet import (
    Balance,
    BalanceBucket,
    Reference,
    ReferenceType,
    Transaction,
    TransactionPage,
    TransactionType,
    WalletSummary,
)

logger = logging.getLogger("marketplace.wallet")

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 200


@dataclass(frozen=True)
class _Effect:
    buckets: FrozenSet[BalanceBucket]
    sign: int  # +1 credit only, -1 debit only, 0 either
    default_bucket: Optional[BalanceBucket]


_A = BalanceBucket.AVAILABLE
_P = BalanceBucket.PENDING
_N = BalanceBucket.NONE

# The only place that knows how each transaction type moves balances.
BALANCE_EFFECTS: Dict[TransactionType, _Effect] = {
    TransactionType.ORDER_EARNING: _Effect(frozenset({_P}), +1, _P),
    # Two linked legs: -x on pending, +x on available
    TransactionType.EARNING_MATURED: _Effect(frozenset({_P, _A}), 0, None),
    # Reporting only: -fee on an earning, +fee when the earning is reversed
    TransactionType.COMMISSION: _Effect(frozenset({_N}), 0, _N),
    TransactionType.PAYOUT: _Effect(frozenset({_A}), -1, _A),
    TransactionType.REFUND_DEBIT: _Effect(frozenset({_A, _P}), -1, _A),
    TransactionType.PENDING_CANCELLED: _Effect(frozenset({_P, _A}), -1, _P),
    TransactionType.ADJUSTMENT: _Effect(frozenset({_A, _P}), 0, _A),
}


@dataclass(frozen=True)
class BalanceDelta:
    available: int = 0
    pending: int = 0


def balance_effect(
    tx_type: Union[TransactionType, str],
    amount: int,
    bucket: Optional[Union[BalanceBucket, str]] = None,
) -> BalanceDelta:
    """Pure mapping from (type, signed amount, bucket) to the change in balances.

    Raises ValidationError when the type may not touch the bucket or the sign
    is wrong for the type.
    """
    tx_type = TransactionType(tx_type)
    effect = BALANCE_EFFECTS[tx_type]
    resolved = BalanceBucket(bucket) if bucket is not None else effect.default_bucket
    if resolved is None:
        raise ValidationError(f"{tx_type.value} requires an explicit bucket")
    if resolved not in effect.buckets:
        raise ValidationError(f"{tx_type.value} cannot move the {resolved.value} balance")
    if effect.sign > 0 and amount <= 0:
        raise ValidationError(f"{tx_type.value} must be a credit")
    if effect.sign < 0 and amount >= 0:
        raise ValidationError(f"{tx_type.value} must be a debit")

    if resolved == _A:
        return BalanceDelta(available=amount)
    if resolved == _P:
        return BalanceDelta(pending=amount)
    return BalanceDelta()


def default_bucket(tx_type: Union[TransactionType, str]) -> Optional[BalanceBucket]:
    return BALANCE_EFFECTS[TransactionType(tx_type)].default_bucket


def _lock_account(db: Session, vendor_id: str):
    return db.execute(
        select(vendor_accounts)
        .where(vendor_accounts.c.vendor_id == vendor_id)
        .with_for_update()
    ).first()


def _load_account(db: Session, vendor_id: str):
    row = db.execute(
        select(vendor_accounts).where(vendor_accounts.c.vendor_id == vendor_id)
    ).first()
    if row is None:
        raise AccountNotFoundError(f"No wallet account for vendor {vendor_id}")
    return row


@contextmanager
def vendor_session(vendor_id: str, *, require_account: bool = True):
    """Serialized unit of work for one vendor.

    Holds the in-process vendor lock and a row lock on the vendor account for
    the life of one database transaction. Everything done on the yielded
    session commits together or not at all.
    """
    with vendor_lock(vendor_id):
        with get_db_session() as db:
            if _lock_account(db, vendor_id) is None and require_account:
                raise AccountNotFoundError(f"No wallet account for vendor {vendor_id}")
            yield db


def _row_to_transaction(row) -> Transaction:
    reference = None
    if row.reference_type and row.reference_id:
        reference = Reference(type=ReferenceType(row.reference_type), id=row.reference_id)
    return Transaction(
        id=row.id,
        vendor_id=row.vendor_id,
        sequence=row.sequence,
        type=TransactionType(row.type),
        bucket=BalanceBucket(row.bucket),
        amount=row.amount,
        balance_after=row.balance_after,
        pending_after=row.pending_after,
        reference=reference,
        description=row.description,
        reason=row.reason,
        commission_rate=bps_to_rate(row.commission_bps) if row.commission_bps is not None else None,
        needs_reconciliation=bool(row.needs_reconciliation),
        created_at=ensure_utc(row.created_at),
    )


def post_transaction(
    db: Session,
    vendor_id: str,
    tx_type: Union[TransactionType, str],
    amount: int,
    *,
    bucket: Optional[Union[BalanceBucket, str]] = None,
    reference: Optional[Reference] = None,
    description: Optional[str] = None,
    reason: Optional[str] = None,
    commission_bps: Optional[int] = None,
    allow_negative: bool = False,
    now: Optional[datetime] = None,
) -> Transaction:
    """
    Append one transaction and move the cached balances with it.

    Must run inside `vendor_session(vendor_id)`; nothing is committed here.

    Raises:
        ValidationError: bad amount, bucket, sign or missing adjustment reason
        AccountNotFoundError: vendor has no wallet account
        InsufficientFundsError: a debit would take a balance below zero
    """
    tx_type = TransactionType(tx_type)
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValidationError("amount must be an integer")
    if amount == 0:
        raise ValidationError("amount must not be zero")
    if tx_type == TransactionType.ADJUSTMENT and not (reason and reason.strip()):
        raise ValidationError("adjustments require an operator reason", code="reason_required")

    resolved_bucket = BalanceBucket(bucket) if bucket is not None else default_bucket(tx_type)
    if allow_negative and not (tx_type == TransactionType.REFUND_DEBIT and resolved_bucket == _A):
        raise ValidationError("only refund debits against the available balance may overdraw")

    delta = balance_effect(tx_type, amount, resolved_bucket)

    account = _lock_account(db, vendor_id)
    if account is None:
        raise AccountNotFoundError(f"No wallet account for vendor {vendor_id}")

    new_available = account.available_balance + delta.available
    new_pending = account.pending_balance + delta.pending

    if delta.available < 0 and new_available < 0 and not allow_negative:
        raise InsufficientFundsError(
            f"Insufficient available balance: {account.available_balance} available, {-delta.available} requested",
            available=account.available_balance,
            requested=-delta.available,
        )
    if delta.pending < 0 and new_pending < 0:
        raise InsufficientFundsError(
            f"Insufficient pending balance: {account.pending_balance} pending, {-delta.pending} requested",
            available=account.pending_balance,
            requested=-delta.pending,
        )

    needs_reconciliation = bool(allow_negative and new_available < 0)
    sequence = account.last_sequence + 1
    created_at = ensure_utc(now) or utc_now()
    tx_id = str(uuid.uuid4())

    db.execute(
        insert(wallet_transactions).values(
            id=tx_id,
            vendor_id=vendor_id,
            sequence=sequence,
            type=tx_type.value,
            bucket=resolved_bucket.value,
            amount=amount,
            balance_after=new_available,
            pending_after=new_pending,
            reference_type=reference.type.value if reference else None,
            reference_id=reference.id if reference else None,
            description=description,
            reason=reason,
            commission_bps=commission_bps,
            needs_reconciliation=needs_reconciliation,
            created_at=created_at,
        )
    )
    db.execute(
        update(vendor_accounts)
        .where(vendor_accounts.c.vendor_id == vendor_id)
        .values(
            available_balance=new_available,
            pending_balance=new_pending,
            last_sequence=sequence,
            updated_at=created_at,
        )
    )

    ledger_postings_total.inc(labels={"type": tx_type.value})
    log_event(
        "info",
        "wallet.posted",
        vendor_id=vendor_id,
        event_type=tx_type.value,
        extra={"amount": amount, "bucket": resolved_bucket.value, "sequence": sequence},
    )

    return Transaction(
        id=tx_id,
        vendor_id=vendor_id,
        sequence=sequence,
        type=tx_type,
        bucket=resolved_bucket,
        amount=amount,
        balance_after=new_available,
        pending_after=new_pending,
        reference=reference,
        description=description,
        reason=reason,
        commission_rate=bps_to_rate(commission_bps) if commission_bps is not None else None,
        needs_reconciliation=needs_reconciliation,
        created_at=created_at,
    )


def post(
    vendor_id: str,
    tx_type: Union[TransactionType, str],
    amount: int,
    **kwargs,
) -> Transaction:
    """Post a single transaction in its own serialized unit of work."""
    with vendor_session(vendor_id) as db:
        return post_transaction(db, vendor_id, tx_type, amount, **kwargs)


def post_adjustment(
    vendor_id: str,
    amount: int,
    reason: str,
    *,
    bucket: Union[BalanceBucket, str] = BalanceBucket.AVAILABLE,
    actor: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Transaction:
    """Operator correction. Positive credits, negative debits."""
    with vendor_session(vendor_id) as db:
        tx = post_transaction(
            db,
            vendor_id,
            TransactionType.ADJUSTMENT,
            amount,
            bucket=bucket,
            description="Manual adjustment",
            reason=reason,
            now=now,
        )
        emit_event(
            db,
            "wallet.adjusted",
            {"transaction_id": tx.id, "amount": amount, "bucket": tx.bucket, "reason": reason, "actor": actor},
            vendor_id=vendor_id,
            now=now,
        )
    return tx


def get_balance(vendor_id: str, db: Optional[Session] = None) -> Balance:
    """Current balances. One row read, so both values come from the same commit."""
    if db is not None:
        row = _load_account(db, vendor_id)
        return Balance(available=row.available_balance, pending=row.pending_balance)
    with get_db_session() as session:
        row = _load_account(session, vendor_id)
        return Balance(available=row.available_balance, pending=row.pending_balance)


def encode_page_token(before_sequence: int) -> str:
    raw = json.dumps({"before": before_sequence}).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def decode_page_token(token: str) -> int:
    try:
        padded = token + "=" * (-len(token) % 4)
        data = json.loads(base64.urlsafe_b64decode(padded.encode()))
        before = int(data["before"])
    except (binascii.Error, ValueError, KeyError, TypeError):
        raise ValidationError("Invalid page token", code="invalid_page_token")
    if before < 1:
        raise ValidationError("Invalid page token", code="invalid_page_token")
    return before


def list_transactions(
    db: Session,
    vendor_id: str,
    *,
    tx_type: Optional[Union[TransactionType, str]] = None,
    limit: int = DEFAULT_PAGE_SIZE,
    page_token: Optional[str] = None,
) -> TransactionPage:
    """Newest-first page of a vendor's transactions, optionally of one type.

    Pages are keyed on the ledger sequence, so a token keeps pointing at the
    same place when newer transactions are appended.
    """
    if limit < 1 or limit > MAX_PAGE_SIZE:
        raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
    _load_account(db, vendor_id)

    conditions = [wallet_transactions.c.vendor_id == vendor_id]
    if tx_type is not None:
        try:
            conditions.append(wallet_transactions.c.type == TransactionType(tx_type).value)
        except ValueError:
            raise ValidationError(f"Unknown transaction type: {tx_type}", code="invalid_transaction_type")
    if page_token:
        conditions.append(wallet_transactions.c.sequence < decode_page_token(page_token))

    rows = db.execute(
        select(wallet_transactions)
        .where(and_(*conditions))
        .order_by(wallet_transactions.c.sequence.desc())
        .limit(limit + 1)
    ).fetchall()

    items = [_row_to_transaction(row) for row in rows[:limit]]
    next_token = encode_page_token(items[-1].sequence) if len(rows) > limit else None
    return TransactionPage(items=items, next_page_token=next_token)


def iter_transactions(
    vendor_id: str,
    *,
    tx_type: Optional[Union[TransactionType, str]] = None,
    page_size: int = DEFAULT_PAGE_SIZE,
    page_token: Optional[str] = None,
) -> Iterator[Transaction]:
    """Lazily walk a vendor's feed newest-first, one page per query."""
    token = page_token
    while True:
        with get_db_session() as db:
            page = list_transactions(db, vendor_id, tx_type=tx_type, limit=page_size, page_token=token)
        yield from page.items
        if not page.next_page_token:
            return
        token = page.next_page_token


def _sum_amount(db: Session, vendor_id: str, *types: TransactionType) -> int:
    total = db.execute(
        select(func.coalesce(func.sum(wallet_transactions.c.amount), 0)).where(
            wallet_transactions.c.vendor_id == vendor_id,
            wallet_transactions.c.type.in_([t.value for t in types]),
        )
    ).scalar()
    return int(total or 0)


def get_wallet_summary(vendor_id: str, db: Optional[Session] = None) -> WalletSummary:
    """Balances plus lifetime totals, all derived from the ledger and payout log."""
    if db is None:
        with get_db_session() as session:
            return get_wallet_summary(vendor_id, session)

    account = _load_account(db, vendor_id)
    total_earnings = _sum_amount(
        db,
        vendor_id,
        TransactionType.ORDER_EARNING,
        TransactionType.PENDING_CANCELLED,
        TransactionType.REFUND_DEBIT,
    )
    total_commission = -_sum_amount(db, vendor_id, TransactionType.COMMISSION)

    payouts = db.execute(
        select(
            func.coalesce(func.sum(payout_requests.c.amount), 0),
            func.max(payout_requests.c.completed_at),
        ).where(
            payout_requests.c.vendor_id == vendor_id,
            payout_requests.c.status != PayoutStatus.REJECTED.value,
        )
    ).first()

    return WalletSummary(
        vendor_id=vendor_id,
        available=account.available_balance,
        pending=account.pending_balance,
        total_earnings=total_earnings,
        total_commission_paid=total_commission,
        total_payouts=int(payouts[0] or 0),
        last_payout_date=ensure_utc(payouts[1]),
        commission_rate=bps_to_rate(account.commission_bps),
    )
