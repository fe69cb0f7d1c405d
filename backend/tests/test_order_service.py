# Overview: Pytest coverage for order placement, settlement and the status machine.

import json
from unittest.mock import patch

import pytest

from vault.errors import (
    EmptyCart,
    InsufficientBalance,
    InvalidTransition,
    ItemNotFound,
    OutOfStock,
    ValidationError,
)
from vault.extensions import db
from vault.models import CurrencyTransaction, Item, Order
from vault.services import catalog_service, currency_service, order_service


def stock_of(item_id):
    return db.session.query(Item.stock_quantity).filter(Item.id == item_id).scalar()


class TestPlaceOrder:
    """Two-phase placement: order + stock, then the ledger debit."""

    def test_successful_order(self, app, org_a, funded_member_a, mug, sticker):
        placed = order_service.place_order(org_a, funded_member_a, [
            {"item_id": mug, "quantity": 2},
            {"item_id": sticker, "quantity": 3},
        ])

        assert placed.total_cost == 230
        assert placed.order_number == 1
        assert placed.to_dict() == {"orderId": placed.order_id, "orderNumber": 1, "totalCost": 230}

        order = order_service.get_order(org_a, placed.order_id)
        assert order["status"] == "pending"
        assert order["debit_status"] == "settled"
        assert [(line["item_name"], line["unit_price"], line["quantity"]) for line in order["lines"]] == [
            ("Coffee Mug", 100, 2),
            ("Sticker", 10, 3),
        ]

        assert stock_of(mug) == 3
        assert stock_of(sticker) is None
        assert currency_service.get_balance(org_a, funded_member_a) == 770

        debit = db.session.query(CurrencyTransaction).filter_by(type="debit").one()
        assert debit.reason == "Order #1"
        assert (debit.reference_type, debit.reference_id) == ("order", str(placed.order_id))
        assert debit.idempotency_key == order_service.debit_key(placed.order_id)

    def test_order_numbers_are_sequential_per_tenant(self, app, org_a, org_b, funded_member_a, member_b, sticker):
        first = order_service.place_order(org_a, funded_member_a, [{"item_id": sticker, "quantity": 1}])
        second = order_service.place_order(org_a, funded_member_a, [{"item_id": sticker, "quantity": 1}])

        beta_item = catalog_service.create_item(org_b, {"name": "Free Pin", "price": 0})
        other = order_service.place_order(org_b, member_b, [{"item_id": beta_item["id"], "quantity": 1}])

        assert (first.order_number, second.order_number) == (1, 2)
        assert other.order_number == 1

    def test_variant_price_override_and_snapshot(self, app, org_a, funded_member_a, mug):
        variant = catalog_service.add_variant(
            org_a, mug, "Large", options={"Size": "L"}, price_override=150, stock_quantity=2
        )
        placed = order_service.place_order(org_a, funded_member_a, [
            {"item_id": mug, "variant_id": variant["id"], "quantity": 2},
        ])
        assert placed.total_cost == 300

        # Later catalog edits never change the historical line
        catalog_service.update_item(org_a, mug, {"name": "Renamed Mug", "price": 1})
        line = order_service.get_order(org_a, placed.order_id)["lines"][0]
        assert line["item_name"] == "Coffee Mug"
        assert line["variant_name"] == "Large"
        assert line["options"] == {"Size": "L"}
        assert line["unit_price"] == 150
        assert stock_of(mug) == 5

    def test_empty_cart(self, app, org_a, funded_member_a):
        with pytest.raises(EmptyCart):
            order_service.place_order(org_a, funded_member_a, [])

    @pytest.mark.parametrize("quantity", [0, -1, 1.5, "2", None])
    def test_invalid_quantity(self, app, org_a, funded_member_a, mug, quantity):
        with pytest.raises(ValidationError):
            order_service.place_order(org_a, funded_member_a, [{"item_id": mug, "quantity": quantity}])

    def test_inactive_item_not_found(self, app, org_a, funded_member_a, mug):
        catalog_service.update_item(org_a, mug, {"is_active": False})
        with pytest.raises(ItemNotFound):
            order_service.place_order(org_a, funded_member_a, [{"item_id": mug, "quantity": 1}])

    def test_out_of_stock_persists_nothing(self, app, org_a, funded_member_a, mug):
        with pytest.raises(OutOfStock) as exc_info:
            order_service.place_order(org_a, funded_member_a, [{"item_id": mug, "quantity": 6}])

        assert exc_info.value.details == {"item": "Coffee Mug", "requested": 6, "available": 5}
        assert db.session.query(Order).count() == 0
        assert stock_of(mug) == 5

    def test_duplicate_lines_are_aggregated_for_stock(self, app, org_a, funded_member_a, mug):
        with pytest.raises(OutOfStock):
            order_service.place_order(org_a, funded_member_a, [
                {"item_id": mug, "quantity": 3},
                {"item_id": mug, "quantity": 3},
            ])
        assert stock_of(mug) == 5

    def test_insufficient_balance_leaves_failed_order(self, app, org_a, member_a, mug):
        currency_service.credit(org_a, member_a, 50, "Small budget", performed_by="test")

        with pytest.raises(InsufficientBalance):
            order_service.place_order(org_a, member_a, [{"item_id": mug, "quantity": 1}])

        order = db.session.query(Order).one()
        assert order.debit_status == "failed"
        assert order.status == "pending"
        # Phase 1 stays committed
        assert stock_of(mug) == 4
        assert currency_service.get_balance(org_a, member_a) == 50

    def test_zero_cost_order_settles_without_debit(self, app, org_a, member_a):
        freebie = catalog_service.create_item(org_a, {"name": "Free Sticker", "price": 0})
        placed = order_service.place_order(org_a, member_a, [{"item_id": freebie["id"], "quantity": 1}])

        assert order_service.get_order(org_a, placed.order_id)["debit_status"] == "settled"
        assert db.session.query(CurrencyTransaction).count() == 0

    def test_publishes_order_created(self, app, org_a, funded_member_a, sticker, endpoint_a, recorder):
        recorder.clear()
        placed = order_service.place_order(org_a, funded_member_a, [{"item_id": sticker, "quantity": 2}])

        created = [json.loads(r.content) for r in recorder.requests if r.headers["X-Event"] == "order.created"]
        assert created[0]["data"] == {
            "orderId": placed.order_id,
            "orderNumber": 1,
            "userId": funded_member_a,
            "totalCost": 20,
        }


class TestStatusMachine:
    @pytest.fixture
    def order_id(self, org_a, funded_member_a, mug):
        return order_service.place_order(org_a, funded_member_a, [{"item_id": mug, "quantity": 2}]).order_id

    def test_approve_then_fulfill(self, app, org_a, order_id):
        assert order_service.approve_order(org_a, order_id, by=1)["status"] == "approved"
        assert order_service.fulfill_order(org_a, order_id, by=1)["status"] == "fulfilled"

    def test_fulfilled_is_terminal(self, app, org_a, order_id):
        order_service.approve_order(org_a, order_id)
        order_service.fulfill_order(org_a, order_id)
        with pytest.raises(InvalidTransition):
            order_service.cancel_order(org_a, order_id)

    def test_cannot_fulfill_pending(self, app, org_a, order_id):
        with pytest.raises(InvalidTransition) as exc_info:
            order_service.fulfill_order(org_a, order_id)
        assert exc_info.value.details == {"from": "pending", "to": "fulfilled"}

    def test_cancel_restores_stock_and_refunds(self, app, org_a, funded_member_a, mug, order_id):
        assert currency_service.get_balance(org_a, funded_member_a) == 800

        order = order_service.cancel_order(org_a, order_id, by=funded_member_a)

        assert order["status"] == "cancelled"
        assert stock_of(mug) == 5
        assert currency_service.get_balance(org_a, funded_member_a) == 1000
        refund = db.session.query(CurrencyTransaction).filter_by(reference_type="order_refund").one()
        assert refund.type == "credit"
        assert refund.amount == 200
        assert db.session.query(Order).filter_by(id=order_id).one().refund_transaction_id == refund.id

    def test_cancel_twice_rejected(self, app, org_a, order_id):
        order_service.cancel_order(org_a, order_id)
        with pytest.raises(InvalidTransition):
            order_service.cancel_order(org_a, order_id)

    def test_cancel_unsettled_order_voids_debit(self, app, org_a, member_a, mug):
        with pytest.raises(InsufficientBalance):
            order_service.place_order(org_a, member_a, [{"item_id": mug, "quantity": 1}])
        order_id = db.session.query(Order.id).scalar()

        order = order_service.cancel_order(org_a, order_id)

        assert order["debit_status"] == "voided"
        assert stock_of(mug) == 5
        assert db.session.query(CurrencyTransaction).count() == 0

    def test_status_change_published(self, app, org_a, order_id, endpoint_a, recorder):
        recorder.clear()
        order_service.approve_order(org_a, order_id)
        events = [json.loads(r.content) for r in recorder.requests if r.headers["X-Event"] == "order.status_changed"]
        assert events[0]["data"] == {"orderId": order_id, "newStatus": "approved"}


class TestSettlementRecovery:
    def test_reconcile_settles_after_top_up(self, app, org_a, member_a, mug):
        with pytest.raises(InsufficientBalance):
            order_service.place_order(org_a, member_a, [{"item_id": mug, "quantity": 1}])

        unsettled = order_service.list_unsettled_orders()
        assert [o["debit_status"] for o in unsettled] == ["failed"]
        assert unsettled[0]["tenant_id"] == org_a

        currency_service.credit(org_a, member_a, 100, "Top up", performed_by="test")
        order = order_service.settle_order_debit(org_a, unsettled[0]["id"])

        assert order["debit_status"] == "settled"
        assert currency_service.get_balance(org_a, member_a) == 0
        assert order_service.list_unsettled_orders(org_a) == []

    def test_settle_is_idempotent(self, app, org_a, funded_member_a, mug):
        placed = order_service.place_order(org_a, funded_member_a, [{"item_id": mug, "quantity": 1}])
        # Debit committed but its outcome was never recorded on the order
        db.session.query(Order).filter_by(id=placed.order_id).update({"debit_status": "pending"})
        db.session.commit()

        order = order_service.settle_order_debit(org_a, placed.order_id)

        assert order["debit_status"] == "settled"

        assert db.session.query(CurrencyTransaction).filter_by(type="debit").count() == 1
        assert currency_service.get_balance(org_a, funded_member_a) == 900

    def test_cancelled_order_cannot_be_settled(self, app, org_a, member_a, mug):
        with pytest.raises(InsufficientBalance):
            order_service.place_order(org_a, member_a, [{"item_id": mug, "quantity": 1}])
        order_id = db.session.query(Order.id).scalar()
        order_service.cancel_order(org_a, order_id)

        with pytest.raises(InvalidTransition):
            order_service.settle_order_debit(org_a, order_id)
        assert order_service.get_order(org_a, order_id)["debit_status"] == "voided"
        assert db.session.query(CurrencyTransaction).count() == 0

    def test_refunded_order_is_not_settled_again(self, app, org_a, funded_member_a, mug):
        placed = order_service.place_order(org_a, funded_member_a, [{"item_id": mug, "quantity": 1}])
        order_service.cancel_order(org_a, placed.order_id)

        with pytest.raises(InvalidTransition):
            order_service.settle_order_debit(org_a, placed.order_id)
        assert db.session.query(CurrencyTransaction).filter_by(type="debit").count() == 1
        assert currency_service.get_balance(org_a, funded_member_a) == 1000

    def test_cancel_during_debit_refunds(self, app, org_a, funded_member_a, mug):
        """An order cancelled while its debit is in flight gets the money back."""
        real_debit = currency_service.debit
        state = {}

        def debit_then_cancel(tenant_id, *args, **kwargs):
            result = real_debit(tenant_id, *args, **kwargs)
            order_id = db.session.query(Order.id).scalar()
            state["cancelled"] = order_service.cancel_order(tenant_id, order_id)
            return result

        with patch.object(currency_service, "debit", side_effect=debit_then_cancel):
            placed = order_service.place_order(org_a, funded_member_a, [{"item_id": mug, "quantity": 1}])

        assert state["cancelled"]["debit_status"] == "voided"
        order = order_service.get_order(org_a, placed.order_id)
        assert order["status"] == "cancelled"
        assert order["debit_status"] == "settled"
        assert currency_service.get_balance(org_a, funded_member_a) == 1000
        assert stock_of(mug) == 5


class TestListOrders:
    def test_paged_and_filtered(self, app, org_a, funded_member_a, sticker):
        for _ in range(3):
            order_service.place_order(org_a, funded_member_a, [{"item_id": sticker, "quantity": 1}])
        first_id = db.session.query(Order.id).filter_by(order_number=1).scalar()
        order_service.cancel_order(org_a, first_id)

        page = order_service.list_orders(org_a, page=1, page_size=2)
        assert page["total"] == 3
        assert [o["order_number"] for o in page["orders"]] == [3, 2]

        cancelled = order_service.list_orders(org_a, status="cancelled")
        assert [o["order_number"] for o in cancelled["orders"]] == [1]

    def test_unknown_status_rejected(self, app, org_a):
        with pytest.raises(ValidationError):
            order_service.list_orders(org_a, status="shipped")
