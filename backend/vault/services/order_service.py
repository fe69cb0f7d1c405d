# Overview: Service-layer operations for orders; two-phase placement, status machine and reconciliation.

"""
Order Settlement Coordinator

WHY: Placing an order touches stock, the order sequence and the buyer's
balance. The stock/order half and the ledger half commit separately, so the
debit state is tracked on the order and failed settlements can be replayed.

PLACEMENT:
- Phase 1 (one unit of work): lock items/variants, check stock per target
  (duplicate lines aggregated), lock the organization row, allocate
  order_number = max + 1, insert Order + OrderLine snapshots, decrement
  finite stock. Any failure rolls the whole phase back.
- Phase 2 (separate unit): ledger debit with idempotency key
  "order:<id>:debit". Failure marks debit_status = failed, logs an error for
  reconciliation and re-raises the ledger error. The order and its stock
  decrement stay committed.

STATUS MACHINE: pending -> approved -> fulfilled, pending/approved -> cancelled.
Cancelling restores finite stock and refunds the debit only if it settled.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

from flask import current_app
from sqlalchemy import func

from ..errors import AppError, EmptyCart, InvalidTransition, ItemNotFound, NotFoundError, OutOfStock, ValidationError
from ..extensions import db
from ..models import Item, ItemVariant, Order, OrderLine, Organization
from ..models.orders import (
    DEBIT_FAILED,
    DEBIT_PENDING,
    DEBIT_SETTLED,
    DEBIT_VOIDED,
    ORDER_APPROVED,
    ORDER_CANCELLED,
    ORDER_FULFILLED,
    ORDER_STATUSES,
    ORDER_TRANSITIONS,
)
from ..validation import require_positive_int, require_user_id
from vault.time_utils import utcnow
from . import currency_service, webhook_service
from .concurrency import lock_for_update
from .tenant_service import current_tenant_id, require_tenant_id, run_in_tenant


MAX_ORDER_LINES = 100

REFERENCE_ORDER = "order"
REFERENCE_ORDER_REFUND = "order_refund"


@dataclass(frozen=True)
class PlacedOrder:
    order_id: int
    order_number: int
    total_cost: int

    def to_dict(self) -> dict:
        return {"orderId": self.order_id, "orderNumber": self.order_number, "totalCost": self.total_cost}


def debit_key(order_id: int) -> str:
    return f"order:{order_id}:debit"


def refund_key(order_id: int) -> str:
    return f"order:{order_id}:refund"


def _normalize_lines(lines) -> list[dict]:
    if not lines:
        raise EmptyCart()
    if not isinstance(lines, list):
        raise ValidationError("lines must be a list")
    if len(lines) > MAX_ORDER_LINES:
        raise ValidationError(f"An order may have at most {MAX_ORDER_LINES} lines")

    normalized = []
    for raw in lines:
        if not isinstance(raw, dict):
            raise ValidationError("Each line must be an object")
        item_id = require_user_id(raw.get("item_id"), "item_id")
        variant_id = raw.get("variant_id")
        if variant_id is not None:
            variant_id = require_user_id(variant_id, "variant_id")
        quantity = require_positive_int(raw.get("quantity"), "quantity", maximum=10_000)
        normalized.append({"item_id": item_id, "variant_id": variant_id, "quantity": quantity})
    return normalized


# ---------------------------------------------------------------------------
# Phase 1
# ---------------------------------------------------------------------------

def _create_order_locked(buyer_id: int, lines: list[dict], notes: str | None) -> PlacedOrder:
    tenant_id = require_tenant_id()
    currency_service.require_member(buyer_id)

    items: dict[int, Item] = {}
    variants: dict[int, ItemVariant] = {}
    # target key -> [stock row, requested quantity, label]
    requested: dict[tuple[str, int], list] = {}
    resolved = []

    for line in lines:
        item = items.get(line["item_id"])
        if item is None:
            item = (
                lock_for_update(db.session.query(Item).filter(Item.tenant_id == tenant_id, Item.id == line["item_id"]), refresh=True)
                .first()
            )
            if not item or not item.is_active:
                raise ItemNotFound(line["item_id"])
            items[item.id] = item

        variant = None
        if line["variant_id"] is not None:
            variant = variants.get(line["variant_id"])
            if variant is None:
                variant = (
                    lock_for_update(
                        db.session.query(ItemVariant).filter(
                            ItemVariant.tenant_id == tenant_id,
                            ItemVariant.id == line["variant_id"],
                            ItemVariant.item_id == item.id,
                        ),
                        refresh=True,
                    )
                    .first()
                )
                if not variant or not variant.is_active:
                    raise ItemNotFound(item.id, line["variant_id"])
                variants[variant.id] = variant

        unit_price = variant.price_override if variant and variant.price_override is not None else item.price

        if variant is not None:
            key, stock_row, label = ("variant", variant.id), variant, f"{item.name} ({variant.name})"
        else:
            key, stock_row, label = ("item", item.id), item, item.name
        entry = requested.setdefault(key, [stock_row, 0, label])
        entry[1] += line["quantity"]

        resolved.append((item, variant, unit_price, line["quantity"]))

    for stock_row, quantity, label in requested.values():
        if stock_row.stock_quantity is not None and stock_row.stock_quantity < quantity:
            raise OutOfStock(label, requested=quantity, available=stock_row.stock_quantity)

    # Serializes order number allocation per tenant
    lock_for_update(db.session.query(Organization).filter(Organization.id == tenant_id)).one()
    last_number = (
        db.session.query(func.max(Order.order_number)).filter(Order.tenant_id == tenant_id).scalar()
    ) or 0

    total_cost = sum(unit_price * quantity for _, _, unit_price, quantity in resolved)
    order = Order(
        order_number=last_number + 1,
        user_id=buyer_id,
        total_cost=total_cost,
        notes=notes,
        status_changed_by=str(buyer_id),
        debit_status=DEBIT_SETTLED if total_cost == 0 else DEBIT_PENDING,
    )
    db.session.add(order)
    db.session.flush()

    for item, variant, unit_price, quantity in resolved:
        db.session.add(OrderLine(
            order_id=order.id,
            item_id=item.id,
            variant_id=variant.id if variant else None,
            item_name=item.name,
            variant_name=variant.name if variant else None,
            unit_price=unit_price,
            options=dict(variant.options or {}) if variant else None,
            quantity=quantity,
        ))

    for stock_row, quantity, _ in requested.values():
        if stock_row.stock_quantity is not None:
            stock_row.stock_quantity -= quantity

    db.session.flush()
    return PlacedOrder(order.id, order.order_number, total_cost)


# ---------------------------------------------------------------------------
# Phase 2
# ---------------------------------------------------------------------------

def _mark_debit(order_id: int, debit_status: str, transaction_id: int | None = None) -> str:
    """Record the Phase-2 outcome. Returns the order status at that moment."""
    order = lock_for_update(db.session.query(Order).filter_by(id=order_id), refresh=True).one()
    if debit_status == DEBIT_FAILED and order.debit_status in (DEBIT_SETTLED, DEBIT_VOIDED):
        return order.status
    order.debit_status = debit_status
    if transaction_id is not None:
        order.debit_transaction_id = transaction_id
    return order.status


def _settle(tenant_id: int, order_id: int, order_number: int, buyer_id: int, total_cost: int) -> None:
    try:
        result = currency_service.debit(
            tenant_id,
            buyer_id,
            total_cost,
            f"Order #{order_number}",
            performed_by=buyer_id,
            reference=(REFERENCE_ORDER, order_id),
            idempotency_key=debit_key(order_id),
        )
    except AppError as exc:
        current_app.logger.error(
            "Order settlement failed: tenant=%s order=%s number=%s amount=%s error=%s; needs reconciliation",
            tenant_id, order_id, order_number, total_cost, exc.code,
        )
        try:
            run_in_tenant(tenant_id, _mark_debit, order_id, DEBIT_FAILED)
        except AppError:
            current_app.logger.exception("Could not mark order %s debit as failed", order_id)
        raise

    status = run_in_tenant(tenant_id, _mark_debit, order_id, DEBIT_SETTLED, result.transaction_id)
    if status == ORDER_CANCELLED:
        # Cancelled while the debit was in flight; give the money back
        _refund(tenant_id, order_id, order_number, buyer_id, total_cost, performed_by="system")


def place_order(tenant_id: int, buyer_id: int, lines, notes: str | None = None) -> PlacedOrder:
    """
    Place an order for buyer_id.

    Raises EmptyCart, ValidationError, ItemNotFound or OutOfStock with nothing
    persisted. When the debit fails afterwards the order remains with
    debit_status = failed and the ledger error (e.g. InsufficientBalance)
    propagates.
    """
    buyer_id = require_user_id(buyer_id, "buyer_id")
    lines = _normalize_lines(lines)

    placed = run_in_tenant(tenant_id, _create_order_locked, buyer_id, lines, notes)

    webhook_service.publish(tenant_id, webhook_service.ORDER_CREATED, {
        "orderId": placed.order_id,
        "orderNumber": placed.order_number,
        "userId": buyer_id,
        "totalCost": placed.total_cost,
    })

    if placed.total_cost > 0:
        _settle(tenant_id, placed.order_id, placed.order_number, buyer_id, placed.total_cost)
    return placed


def settle_order_debit(tenant_id: int, order_id: int) -> dict:
    """
    Re-run Phase 2 for an unsettled order. Idempotent: a debit that already
    committed is found by its idempotency key and not repeated.
    """
    def _load():
        order = db.session.query(Order).filter_by(id=order_id).first()
        if not order:
            raise NotFoundError("Order")
        return order.status, order.debit_status, order.order_number, order.user_id, order.total_cost

    status, debit_status, order_number, buyer_id, total_cost = run_in_tenant(tenant_id, _load)
    if status == ORDER_CANCELLED:
        raise InvalidTransition(status, DEBIT_SETTLED)
    if debit_status not in (DEBIT_SETTLED, DEBIT_VOIDED):
        _settle(tenant_id, order_id, order_number, buyer_id, total_cost)
    return get_order(tenant_id, order_id)


def list_unsettled_orders(tenant_id: int | None = None) -> list[dict]:
    """
    Orders whose debit failed, or is still pending past the grace period.

    Without tenant_id the scan spans all tenants (reconciliation job).
    """
    cutoff = utcnow() - timedelta(seconds=current_app.config["ORDER_SETTLEMENT_GRACE_SECONDS"])

    def _query():
        query = db.session.query(Order).filter(
            Order.status != ORDER_CANCELLED,
            (Order.debit_status == DEBIT_FAILED)
            | ((Order.debit_status == DEBIT_PENDING) & (Order.created_at <= cutoff)),
        )
        if tenant_id is not None:
            query = query.filter(Order.tenant_id == tenant_id)
        rows = query.order_by(Order.tenant_id, Order.id).all()
        return [dict(order.to_dict(), tenant_id=order.tenant_id) for order in rows]

    if tenant_id is not None:
        return run_in_tenant(tenant_id, _query)
    if current_tenant_id() is not None:
        raise RuntimeError("Cross-tenant scan must run outside a tenant unit of work")
    try:
        return _query()
    finally:
        db.session.rollback()


# ---------------------------------------------------------------------------
# Status machine
# ---------------------------------------------------------------------------

def _transition_locked(order_id: int, target: str, by) -> Order:
    order = lock_for_update(db.session.query(Order).filter_by(id=order_id), refresh=True).first()
    if not order:
        raise NotFoundError("Order")
    if target not in ORDER_TRANSITIONS.get(order.status, set()):
        raise InvalidTransition(order.status, target)
    order.status = target
    order.status_changed_by = str(by) if by is not None else None
    return order


def _publish_status(tenant_id: int, order_id: int, status: str) -> None:
    webhook_service.publish(tenant_id, webhook_service.ORDER_STATUS_CHANGED, {
        "orderId": order_id,
        "newStatus": status,
    })


def _simple_transition(tenant_id: int, order_id: int, target: str, by) -> dict:
    def _op():
        order = _transition_locked(order_id, target, by)
        db.session.flush()
        return order.to_dict()

    data = run_in_tenant(tenant_id, _op)
    _publish_status(tenant_id, order_id, target)
    return data


def approve_order(tenant_id: int, order_id: int, by=None) -> dict:
    return _simple_transition(tenant_id, order_id, ORDER_APPROVED, by)


def fulfill_order(tenant_id: int, order_id: int, by=None) -> dict:
    return _simple_transition(tenant_id, order_id, ORDER_FULFILLED, by)


def _restore_stock(order: Order) -> None:
    for line in order.lines:
        if line.variant_id is not None:
            row = lock_for_update(db.session.query(ItemVariant).filter_by(id=line.variant_id), refresh=True).first()
        else:
            row = lock_for_update(db.session.query(Item).filter_by(id=line.item_id), refresh=True).first()
        if row is not None and row.stock_quantity is not None:
            row.stock_quantity += line.quantity


def _refund(tenant_id: int, order_id: int, order_number: int, buyer_id: int, total_cost: int, performed_by) -> None:
    try:
        result = currency_service.credit(
            tenant_id,
            buyer_id,
            total_cost,
            f"Refund for order #{order_number}",
            performed_by=performed_by if performed_by is not None else "system",
            reference=(REFERENCE_ORDER_REFUND, order_id),
            idempotency_key=refund_key(order_id),
        )
    except AppError:
        current_app.logger.error(
            "Order refund failed: tenant=%s order=%s amount=%s; needs reconciliation",
            tenant_id, order_id, total_cost,
        )
        raise

    def _link():
        order = db.session.query(Order).filter_by(id=order_id).one()
        order.refund_transaction_id = result.transaction_id

    run_in_tenant(tenant_id, _link)


def cancel_order(tenant_id: int, order_id: int, by=None) -> dict:
    """
    Cancel a pending or approved order.

    Restores finite stock in the same unit as the status change. The refund
    credit is a separate unit and only issued when the debit had settled;
    otherwise the pending/failed debit is voided.
    """
    def _op():
        order = _transition_locked(order_id, ORDER_CANCELLED, by)
        _restore_stock(order)
        settled = order.debit_status == DEBIT_SETTLED and order.total_cost > 0
        if not settled and order.debit_status != DEBIT_SETTLED:
            order.debit_status = DEBIT_VOIDED
        db.session.flush()
        return settled, order.order_number, order.user_id, order.total_cost

    settled, order_number, buyer_id, total_cost = run_in_tenant(tenant_id, _op)

    if settled:
        _refund(tenant_id, order_id, order_number, buyer_id, total_cost, performed_by=by)

    _publish_status(tenant_id, order_id, ORDER_CANCELLED)
    return get_order(tenant_id, order_id)


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

def get_order(tenant_id: int, order_id: int) -> dict:
    def _op():
        order = db.session.query(Order).filter_by(id=order_id).first()
        if not order:
            raise NotFoundError("Order")
        return order.to_dict(include_lines=True)

    return run_in_tenant(tenant_id, _op)


def list_orders(tenant_id: int, status: str | None = None, page: int = 1, page_size: int = 20) -> dict:
    if status is not None and status not in ORDER_STATUSES:
        raise ValidationError(f"status must be one of: {', '.join(ORDER_STATUSES)}")
    page = max(1, page)
    page_size = max(1, min(page_size, 100))

    def _op():
        query = db.session.query(Order)
        if status is not None:
            query = query.filter(Order.status == status)
        total = query.count()
        rows = (
            query.order_by(Order.order_number.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
            .all()
        )
        return {
            "orders": [o.to_dict() for o in rows],
            "page": page,
            "pageSize": page_size,
            "total": total,
        }

    return run_in_tenant(tenant_id, _op)
