from __future__ import annotations

from ..extensions import db
from vault.time_utils import to_utc_z
from .tenancy import TenantScoped


TX_CREDIT = "credit"
TX_DEBIT = "debit"
TX_ADJUSTMENT = "adjustment"
TRANSACTION_TYPES = {TX_CREDIT, TX_DEBIT, TX_ADJUSTMENT}


class Balance(TenantScoped, db.Model):
    """
    Cached current balance for one member within one tenant.

    INVARIANTS:
    - balance >= 0 (CHECK constraint backs up the service-level guard)
    - balance equals the signed sum of the pair's CurrencyTransactions
    - created lazily by the first credit

    version_id is bumped on every write so concurrent read-modify-write
    cycles fail with StaleDataError instead of losing an update.
    """
    __tablename__ = "balances"
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "user_id", name="uq_balances_tenant_user"),
        db.CheckConstraint("balance >= 0", name="ck_balances_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("organization_members.id"), nullable=False, index=True)
    balance = db.Column(db.Integer, nullable=False, default=0)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "tenant_id": self.tenant_id,
            "user_id": self.user_id,
            "balance": self.balance,
            "updated_at": to_utc_z(self.updated_at),
        }


class CurrencyTransaction(TenantScoped, db.Model):
    """
    Append-only ledger of balance changes.

    TRANSACTION TYPES:
    - credit: amount added (distribution, API credit, order refund)
    - debit: amount removed (order payment, API debit)
    - adjustment: manual correction, amount is the signed delta

    IMMUTABLE: Records are never updated or deleted.
    """
    __tablename__ = "currency_transactions"
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "idempotency_key", name="uq_currency_tx_idempotency"),
        db.Index("ix_currency_tx_tenant_user", "tenant_id", "user_id", "id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("organization_members.id"), nullable=False, index=True)

    type = db.Column(db.String(16), nullable=False, index=True)  # credit, debit, adjustment
    amount = db.Column(db.Integer, nullable=False)
    balance_after = db.Column(db.Integer, nullable=False)

    reason = db.Column(db.String(255), nullable=False)
    reference_type = db.Column(db.String(50), nullable=True)  # order, order_refund, distribution, api
    reference_id = db.Column(db.String(64), nullable=True)
    performed_by = db.Column(db.String(64), nullable=False)  # member id, "api" or "system"

    idempotency_key = db.Column(db.String(128), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    @property
    def signed_amount(self) -> int:
        if self.type == TX_DEBIT:
            return -self.amount
        return self.amount

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "user_id": self.user_id,
            "type": self.type,
            "amount": self.amount,
            "balance_after": self.balance_after,
            "reason": self.reason,
            "reference_type": self.reference_type,
            "reference_id": self.reference_id,
            "performed_by": self.performed_by,
            "created_at": to_utc_z(self.created_at),
        }
