# Overview: Service-layer operations for the currency ledger; encapsulates business logic and database work.

"""
Ledger Engine: per-member balances plus an append-only transaction log

WHY: Balances must stay non-negative and always equal the signed sum of the
member's transactions, even with many concurrent writers.

CONCURRENCY:
- credit is a single atomic UPDATE balance = balance + amount (insert on
  first use, savepoint fallback when a concurrent insert wins)
- debit locks the Balance row (SELECT ... FOR UPDATE) and writes through the
  version_id compare-and-swap; a lost race raises StaleDataError which the
  unit of work retries
- balance change and transaction row are written in the same unit of work

IDEMPOTENCY: A call carrying an idempotency_key that was already used in the
tenant returns the stored result without mutating anything, provided the
stored transaction is the same operation (type, member, amount). A key
recorded for anything else raises IdempotencyConflict (409).

Events are published only after the unit of work commits.
"""

from __future__ import annotations

from dataclasses import dataclass

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..errors import IdempotencyConflict, InsufficientBalance, NotFoundError
from ..extensions import db
from ..models import Balance, CurrencyTransaction, Member
from ..models.currency import TX_ADJUSTMENT, TX_CREDIT, TX_DEBIT
from ..validation import (
    require_nonzero_int,
    require_positive_int,
    require_reason,
    require_user_id,
    require_user_ids,
)
from . import webhook_service
from .concurrency import lock_for_update
from .tenant_service import require_tenant_id, run_in_tenant


REFERENCE_DISTRIBUTION = "distribution"


@dataclass(frozen=True)
class LedgerResult:
    new_balance: int
    transaction_id: int
    replayed: bool = False

    def to_dict(self) -> dict:
        return {"newBalance": self.new_balance, "transactionId": self.transaction_id}


@dataclass(frozen=True)
class DistributionResult:
    count: int
    total_distributed: int

    def to_dict(self) -> dict:
        return {"count": self.count, "totalDistributed": self.total_distributed}


def _split_reference(reference) -> tuple[str | None, str | None]:
    if reference is None:
        return None, None
    ref_type, ref_id = reference
    return ref_type, (str(ref_id) if ref_id is not None else None)


def require_member(user_id: int) -> Member:
    tenant_id = require_tenant_id()
    member = (
        db.session.query(Member)
        .filter(Member.tenant_id == tenant_id, Member.id == user_id, Member.is_active.is_(True))
        .first()
    )
    if not member:
        raise NotFoundError("Member")
    return member


def _find_by_idempotency_key(key: str | None) -> CurrencyTransaction | None:
    if not key:
        return None
    tenant_id = require_tenant_id()
    return (
        db.session.query(CurrencyTransaction)
        .filter(CurrencyTransaction.tenant_id == tenant_id, CurrencyTransaction.idempotency_key == key)
        .first()
    )


def _replay(existing: CurrencyTransaction, tx_type: str, user_id: int, amount: int) -> LedgerResult:
    if (existing.type, existing.user_id, existing.amount) != (tx_type, user_id, amount):
        current_app.logger.warning(
            "Idempotency key %r reused: stored %s user=%s amount=%s, requested %s user=%s amount=%s",
            existing.idempotency_key, existing.type, existing.user_id, existing.amount, tx_type, user_id, amount,
        )
        raise IdempotencyConflict(existing.idempotency_key)
    return LedgerResult(existing.balance_after, existing.id, replayed=True)


def _current_balance(tenant_id: int, user_id: int) -> int | None:
    return (
        db.session.query(Balance.balance)
        .filter(Balance.tenant_id == tenant_id, Balance.user_id == user_id)
        .scalar()
    )


def _increment_balance(tenant_id: int, user_id: int, amount: int) -> int:
    """Atomic balance += amount, creating the row on first credit. Returns the new balance."""
    stmt = (
        update(Balance)
        .where(Balance.tenant_id == tenant_id, Balance.user_id == user_id)
        .values(balance=Balance.balance + amount, version_id=Balance.version_id + 1)
        .execution_options(synchronize_session=False)
    )

    result = db.session.execute(stmt)
    if not result.rowcount:
        try:
            with db.session.begin_nested():
                db.session.add(Balance(tenant_id=tenant_id, user_id=user_id, balance=amount))
        except IntegrityError:
            # Concurrent first credit created the row; fall back to the update
            result = db.session.execute(stmt)
            if not result.rowcount:
                raise

    return _current_balance(tenant_id, user_id)


def _append_transaction(
    *,
    tenant_id: int,
    user_id: int,
    tx_type: str,
    amount: int,
    balance_after: int,
    reason: str,
    performed_by,
    reference=None,
    idempotency_key: str | None = None,
) -> CurrencyTransaction:
    ref_type, ref_id = _split_reference(reference)
    tx = CurrencyTransaction(
        tenant_id=tenant_id,
        user_id=user_id,
        type=tx_type,
        amount=amount,
        balance_after=balance_after,
        reason=reason,
        reference_type=ref_type,
        reference_id=ref_id,
        performed_by=str(performed_by),
        idempotency_key=idempotency_key,
    )
    db.session.add(tx)
    db.session.flush()
    return tx


def _credit_locked(user_id, amount, reason, performed_by, reference=None, idempotency_key=None) -> LedgerResult:
    """Credit inside an already bound unit of work."""
    tenant_id = require_tenant_id()

    existing = _find_by_idempotency_key(idempotency_key)
    if existing:
        return _replay(existing, TX_CREDIT, user_id, amount)

    require_member(user_id)

    new_balance = _increment_balance(tenant_id, user_id, amount)
    tx = _append_transaction(
        tenant_id=tenant_id,
        user_id=user_id,
        tx_type=TX_CREDIT,
        amount=amount,
        balance_after=new_balance,
        reason=reason,
        performed_by=performed_by,
        reference=reference,
        idempotency_key=idempotency_key,
    )
    return LedgerResult(new_balance, tx.id)


def _debit_locked(user_id, amount, reason, performed_by, reference=None, idempotency_key=None) -> LedgerResult:
    """Debit inside an already bound unit of work."""
    tenant_id = require_tenant_id()

    existing = _find_by_idempotency_key(idempotency_key)
    if existing:
        return _replay(existing, TX_DEBIT, user_id, amount)

    require_member(user_id)

    balance = (
        lock_for_update(
            db.session.query(Balance).filter(Balance.tenant_id == tenant_id, Balance.user_id == user_id),
            refresh=True,
        )
        .first()
    )
    available = balance.balance if balance else 0
    if balance is None or available < amount:
        raise InsufficientBalance(required=amount, available=available)

    # Flushed as UPDATE ... WHERE version_id = :old; StaleDataError on a lost race
    balance.balance = available - amount
    db.session.flush()

    tx = _append_transaction(
        tenant_id=tenant_id,
        user_id=user_id,
        tx_type=TX_DEBIT,
        amount=amount,
        balance_after=balance.balance,
        reason=reason,
        performed_by=performed_by,
        reference=reference,
        idempotency_key=idempotency_key,
    )
    return LedgerResult(balance.balance, tx.id)


def _replay_idempotent(tenant_id: int, idempotency_key: str, tx_type: str, user_id: int, amount: int) -> LedgerResult | None:
    def _op():
        tx = _find_by_idempotency_key(idempotency_key)
        if tx is None:
            return None
        return _replay(tx, tx_type, user_id, amount)

    return run_in_tenant(tenant_id, _op)


def credit(
    tenant_id: int,
    user_id: int,
    amount: int,
    reason: str,
    performed_by,
    reference: tuple[str, object] | None = None,
    idempotency_key: str | None = None,
) -> LedgerResult:
    """
    Add amount to the member's balance and record a credit transaction.

    Raises ValidationError for bad input and NotFoundError when the member is
    not an active member of the tenant. Publishes user.credited after commit.
    """
    user_id = require_user_id(user_id)
    amount = require_positive_int(amount)
    reason = require_reason(reason)

    try:
        result = run_in_tenant(
            tenant_id, _credit_locked, user_id, amount, reason, performed_by, reference, idempotency_key
        )
    except IntegrityError:
        # Same idempotency key committed concurrently by another caller
        replay = _replay_idempotent(tenant_id, idempotency_key, TX_CREDIT, user_id, amount) if idempotency_key else None
        if replay is None:
            raise
        return replay

    if not result.replayed:
        webhook_service.publish(tenant_id, webhook_service.USER_CREDITED, {
            "userId": user_id,
            "amount": amount,
            "reason": reason,
        })
    return result


def debit(
    tenant_id: int,
    user_id: int,
    amount: int,
    reason: str,
    performed_by,
    reference: tuple[str, object] | None = None,
    idempotency_key: str | None = None,
) -> LedgerResult:
    """
    Remove amount from the member's balance and record a debit transaction.

    Raises InsufficientBalance (with required/available) without mutating
    anything when the balance row is absent or too small. Publishes
    user.debited after commit.
    """
    user_id = require_user_id(user_id)
    amount = require_positive_int(amount)
    reason = require_reason(reason)

    try:
        result = run_in_tenant(
            tenant_id, _debit_locked, user_id, amount, reason, performed_by, reference, idempotency_key
        )
    except IntegrityError:
        replay = _replay_idempotent(tenant_id, idempotency_key, TX_DEBIT, user_id, amount) if idempotency_key else None
        if replay is None:
            raise
        return replay

    if not result.replayed:
        webhook_service.publish(tenant_id, webhook_service.USER_DEBITED, {
            "userId": user_id,
            "amount": amount,
            "reason": reason,
        })
    return result


def bulk_distribute(
    tenant_id: int,
    user_ids: list[int],
    amount: int,
    reason: str,
    performed_by,
) -> DistributionResult:
    """
    Credit amount to every listed member in one unit of work (all-or-nothing).

    Duplicate ids are credited once per occurrence. Any unknown member fails
    the whole distribution with nothing persisted.
    """
    user_ids = require_user_ids(user_ids)
    amount = require_positive_int(amount)
    reason = require_reason(reason)

    def _op():
        for user_id in user_ids:
            _credit_locked(user_id, amount, reason, performed_by, reference=(REFERENCE_DISTRIBUTION, None))
        return DistributionResult(count=len(user_ids), total_distributed=len(user_ids) * amount)

    result = run_in_tenant(tenant_id, _op)

    for user_id in user_ids:
        webhook_service.publish(tenant_id, webhook_service.USER_CREDITED, {
            "userId": user_id,
            "amount": amount,
            "reason": reason,
        })
    return result


def adjust(tenant_id: int, user_id: int, delta: int, reason: str, performed_by) -> LedgerResult:
    """
    Administrative correction by a signed delta, recorded as an adjustment.

    The resulting balance may not go below zero.
    """
    user_id = require_user_id(user_id)
    delta = require_nonzero_int(delta)
    reason = require_reason(reason)

    def _op():
        require_member(user_id)
        if delta > 0:
            new_balance = _increment_balance(tenant_id, user_id, delta)
        else:
            balance = (
                lock_for_update(
                    db.session.query(Balance).filter(Balance.tenant_id == tenant_id, Balance.user_id == user_id),
                    refresh=True,
                )
                .first()
            )
            available = balance.balance if balance else 0
            if balance is None or available < -delta:
                raise InsufficientBalance(required=-delta, available=available)
            balance.balance = available + delta
            db.session.flush()
            new_balance = balance.balance

        tx = _append_transaction(
            tenant_id=tenant_id,
            user_id=user_id,
            tx_type=TX_ADJUSTMENT,
            amount=delta,
            balance_after=new_balance,
            reason=reason,
            performed_by=performed_by,
            reference=("adjustment", None),
        )
        return LedgerResult(new_balance, tx.id)

    return run_in_tenant(tenant_id, _op)


def get_balance(tenant_id: int, user_id: int) -> int:
    """Current balance; 0 when the member has never been credited."""
    user_id = require_user_id(user_id)

    def _op():
        require_member(user_id)
        return _current_balance(tenant_id, user_id) or 0

    return run_in_tenant(tenant_id, _op)


def list_transactions(
    tenant_id: int,
    user_id: int | None = None,
    limit: int = 100,
    before_id: int | None = None,
) -> list[dict]:
    """Newest first; before_id pages backwards through the log."""
    limit = max(1, min(int(limit), 500))

    def _op():
        query = db.session.query(CurrencyTransaction).filter(CurrencyTransaction.tenant_id == tenant_id)
        if user_id is not None:
            query = query.filter(CurrencyTransaction.user_id == user_id)
        if before_id is not None:
            query = query.filter(CurrencyTransaction.id < before_id)
        rows = query.order_by(CurrencyTransaction.id.desc()).limit(limit).all()
        return [tx.to_dict() for tx in rows]

    return run_in_tenant(tenant_id, _op)
