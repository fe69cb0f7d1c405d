from __future__ import annotations

from ..extensions import db
from vault.time_utils import to_utc_z
from .tenancy import TenantScoped


ORDER_PENDING = "pending"
ORDER_APPROVED = "approved"
ORDER_FULFILLED = "fulfilled"
ORDER_CANCELLED = "cancelled"
ORDER_STATUSES = (ORDER_PENDING, ORDER_APPROVED, ORDER_FULFILLED, ORDER_CANCELLED)

# Status machine. fulfilled and cancelled are terminal.
ORDER_TRANSITIONS = {
    ORDER_PENDING: {ORDER_APPROVED, ORDER_CANCELLED},
    ORDER_APPROVED: {ORDER_FULFILLED, ORDER_CANCELLED},
}

# Phase-2 (ledger debit) state, tracked separately from the status machine
DEBIT_PENDING = "pending"
DEBIT_SETTLED = "settled"
DEBIT_FAILED = "failed"
DEBIT_VOIDED = "voided"


class Order(TenantScoped, db.Model):
    """
    Purchase of catalog items with the tenant currency.

    order_number is dense and increasing per tenant (allocated under a lock
    on the organization row). debit_status tracks the separately committed
    ledger debit so failed settlements can be reconciled.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "order_number", name="uq_orders_tenant_number"),
        db.Index("ix_orders_tenant_status", "tenant_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_number = db.Column(db.Integer, nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey("organization_members.id"), nullable=False, index=True)

    status = db.Column(db.String(16), nullable=False, default=ORDER_PENDING, index=True)
    total_cost = db.Column(db.Integer, nullable=False)

    debit_status = db.Column(db.String(16), nullable=False, default=DEBIT_PENDING, index=True)
    debit_transaction_id = db.Column(db.Integer, db.ForeignKey("currency_transactions.id"), nullable=True)
    refund_transaction_id = db.Column(db.Integer, db.ForeignKey("currency_transactions.id"), nullable=True)

    notes = db.Column(db.Text, nullable=True)
    status_changed_by = db.Column(db.String(64), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    lines = db.relationship("OrderLine", backref="order", lazy=True, order_by="OrderLine.id")

    def to_dict(self, include_lines: bool = False) -> dict:
        data = {
            "id": self.id,
            "order_number": self.order_number,
            "user_id": self.user_id,
            "status": self.status,
            "total_cost": self.total_cost,
            "debit_status": self.debit_status,
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
        if include_lines:
            data["lines"] = [line.to_dict() for line in self.lines]
        return data


class OrderLine(TenantScoped, db.Model):
    """
    Snapshot of one purchased item at purchase time.

    IMMUTABLE: names, price and options are copied from the catalog so later
    catalog edits never change a historical order.
    """
    __tablename__ = "order_lines"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    item_id = db.Column(db.Integer, db.ForeignKey("items.id"), nullable=False, index=True)
    variant_id = db.Column(db.Integer, db.ForeignKey("item_variants.id"), nullable=True)

    item_name = db.Column(db.String(255), nullable=False)
    variant_name = db.Column(db.String(255), nullable=True)
    unit_price = db.Column(db.Integer, nullable=False)
    options = db.Column(db.JSON, nullable=True)
    quantity = db.Column(db.Integer, nullable=False, default=1)

    @property
    def line_total(self) -> int:
        return self.unit_price * self.quantity

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "item_id": self.item_id,
            "variant_id": self.variant_id,
            "item_name": self.item_name,
            "variant_name": self.variant_name,
            "unit_price": self.unit_price,
            "options": self.options,
            "quantity": self.quantity,
            "line_total": self.line_total,
        }
