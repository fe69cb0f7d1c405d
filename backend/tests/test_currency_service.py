# Overview: Pytest coverage for the currency ledger service.

"""
Currency Ledger Tests

Covers credit, debit, bulk distribution and adjustments, and checks after
each scenario that the balance equals the signed sum of the member's
transaction log.
"""

import json

import pytest

from vault.errors import IdempotencyConflict, InsufficientBalance, NotFoundError, ValidationError
from vault.extensions import db
from vault.models import Balance, CurrencyTransaction
from vault.services import currency_service, member_service


def ledger_sum(tenant_id, user_id):
    rows = db.session.query(CurrencyTransaction).filter_by(tenant_id=tenant_id, user_id=user_id).all()
    return sum(tx.signed_amount for tx in rows)


def published(recorder, event):
    return [json.loads(r.content) for r in recorder.requests if r.headers.get("X-Event") == event]


class TestCredit:
    def test_first_credit_creates_balance(self, app, org_a, member_a):
        result = currency_service.credit(org_a, member_a, 250, "Welcome", performed_by="test")

        assert result.new_balance == 250
        assert result.to_dict() == {"newBalance": 250, "transactionId": result.transaction_id}
        assert currency_service.get_balance(org_a, member_a) == 250

        tx = db.session.query(CurrencyTransaction).filter_by(id=result.transaction_id).one()
        assert tx.type == "credit"
        assert tx.amount == 250
        assert tx.balance_after == 250
        assert tx.performed_by == "test"

    def test_credits_accumulate(self, app, org_a, member_a):
        currency_service.credit(org_a, member_a, 100, "one", performed_by="test")
        result = currency_service.credit(org_a, member_a, 50, "two", performed_by="test")
        assert result.new_balance == 150
        assert ledger_sum(org_a, member_a) == 150

    def test_reference_is_recorded(self, app, org_a, member_a):
        result = currency_service.credit(
            org_a, member_a, 5, "api credit", performed_by="api", reference=("api", 42)
        )
        tx = db.session.query(CurrencyTransaction).filter_by(id=result.transaction_id).one()
        assert (tx.reference_type, tx.reference_id) == ("api", "42")

    @pytest.mark.parametrize("amount", [0, -5, 1.5, 10.0, "10", True, None, 1_000_000_001])
    def test_invalid_amount_rejected(self, app, org_a, member_a, amount):
        with pytest.raises(ValidationError):
            currency_service.credit(org_a, member_a, amount, "bad", performed_by="test")
        assert db.session.query(CurrencyTransaction).count() == 0

    @pytest.mark.parametrize("reason", ["", "   ", None, "x" * 256])
    def test_invalid_reason_rejected(self, app, org_a, member_a, reason):
        with pytest.raises(ValidationError):
            currency_service.credit(org_a, member_a, 10, reason, performed_by="test")

    def test_unknown_member(self, app, org_a):
        with pytest.raises(NotFoundError):
            currency_service.credit(org_a, 9999, 10, "nobody", performed_by="test")

    def test_inactive_member(self, app, org_a, member_a):
        member_service.deactivate_member(org_a, member_a)
        with pytest.raises(NotFoundError):
            currency_service.credit(org_a, member_a, 10, "inactive", performed_by="test")

    def test_publishes_user_credited(self, app, org_a, member_a, endpoint_a, recorder):
        currency_service.credit(org_a, member_a, 30, "Kudos", performed_by="test")
        envelopes = published(recorder, "user.credited")
        assert len(envelopes) == 1
        assert envelopes[0]["data"] == {"userId": member_a, "amount": 30, "reason": "Kudos"}


class TestDebit:
    def test_debit_reduces_balance(self, app, org_a, funded_member_a):
        result = currency_service.debit(org_a, funded_member_a, 400, "Purchase", performed_by="test")
        assert result.new_balance == 600
        assert ledger_sum(org_a, funded_member_a) == 600

    def test_debit_to_exactly_zero(self, app, org_a, funded_member_a):
        result = currency_service.debit(org_a, funded_member_a, 1000, "Everything", performed_by="test")
        assert result.new_balance == 0

    def test_insufficient_balance_mutates_nothing(self, app, org_a, funded_member_a):
        with pytest.raises(InsufficientBalance) as exc_info:
            currency_service.debit(org_a, funded_member_a, 1001, "Too much", performed_by="test")

        assert exc_info.value.required == 1001
        assert exc_info.value.available == 1000
        assert exc_info.value.details == {"required": 1001, "available": 1000}
        assert currency_service.get_balance(org_a, funded_member_a) == 1000
        assert db.session.query(CurrencyTransaction).filter_by(type="debit").count() == 0

    def test_debit_without_balance_row(self, app, org_a, member_a):
        with pytest.raises(InsufficientBalance) as exc_info:
            currency_service.debit(org_a, member_a, 1, "Nothing there", performed_by="test")
        assert exc_info.value.available == 0

    def test_publishes_user_debited(self, app, org_a, funded_member_a, endpoint_a, recorder):
        recorder.clear()
        currency_service.debit(org_a, funded_member_a, 10, "Snack", performed_by="test")
        envelopes = published(recorder, "user.debited")
        assert [e["data"] for e in envelopes] == [{"userId": funded_member_a, "amount": 10, "reason": "Snack"}]


class TestIdempotency:
    def test_repeated_key_applies_once(self, app, org_a, member_a):
        first = currency_service.credit(org_a, member_a, 100, "Bonus", performed_by="api", idempotency_key="bonus-1")
        second = currency_service.credit(org_a, member_a, 100, "Bonus", performed_by="api", idempotency_key="bonus-1")

        assert second.replayed is True
        assert second.transaction_id == first.transaction_id
        assert currency_service.get_balance(org_a, member_a) == 100
        assert db.session.query(CurrencyTransaction).count() == 1

    def test_replay_does_not_republish(self, app, org_a, member_a, endpoint_a, recorder):
        currency_service.credit(org_a, member_a, 100, "Bonus", performed_by="api", idempotency_key="k")
        currency_service.credit(org_a, member_a, 100, "Bonus", performed_by="api", idempotency_key="k")
        assert len(published(recorder, "user.credited")) == 1

    def test_keys_are_tenant_scoped(self, app, org_a, org_b, member_a, member_b):
        currency_service.credit(org_a, member_a, 10, "a", performed_by="api", idempotency_key="same")
        result = currency_service.credit(org_b, member_b, 20, "b", performed_by="api", idempotency_key="same")
        assert result.replayed is False
        assert currency_service.get_balance(org_b, member_b) == 20

    def test_debit_reusing_credit_key_conflicts(self, app, org_a, member_a):
        currency_service.credit(org_a, member_a, 100, "Bonus", performed_by="api", idempotency_key="k1")

        with pytest.raises(IdempotencyConflict) as exc_info:
            currency_service.debit(org_a, member_a, 30, "Snack", performed_by="api", idempotency_key="k1")

        assert exc_info.value.status_code == 409
        assert currency_service.get_balance(org_a, member_a) == 100
        assert db.session.query(CurrencyTransaction).count() == 1

    @pytest.mark.parametrize("amount, user", [(50, "member_a"), (100, "member_a2")])
    def test_same_key_different_request_conflicts(self, app, org_a, member_a, member_a2, amount, user):
        currency_service.credit(org_a, member_a, 100, "Bonus", performed_by="api", idempotency_key="k2")
        user_id = {"member_a": member_a, "member_a2": member_a2}[user]

        with pytest.raises(IdempotencyConflict):
            currency_service.credit(org_a, user_id, amount, "Bonus", performed_by="api", idempotency_key="k2")

        assert ledger_sum(org_a, member_a) == 100
        assert currency_service.get_balance(org_a, member_a2) == 0


class TestBulkDistribute:
    def test_credits_every_recipient(self, app, org_a, member_a, member_a2):
        result = currency_service.bulk_distribute(org_a, [member_a, member_a2], 25, "Monthly", performed_by="admin")

        assert result.to_dict() == {"count": 2, "totalDistributed": 50}
        assert currency_service.get_balance(org_a, member_a) == 25
        assert currency_service.get_balance(org_a, member_a2) == 25
        refs = {tx.reference_type for tx in db.session.query(CurrencyTransaction).all()}
        assert refs == {"distribution"}

    def test_duplicate_ids_credited_per_occurrence(self, app, org_a, member_a):
        result = currency_service.bulk_distribute(org_a, [member_a, member_a], 10, "Twice", performed_by="admin")
        assert result.count == 2
        assert currency_service.get_balance(org_a, member_a) == 20

    def test_unknown_member_rolls_back_everything(self, app, org_a, member_a):
        with pytest.raises(NotFoundError):
            currency_service.bulk_distribute(org_a, [member_a, 9999], 10, "Partial", performed_by="admin")

        assert db.session.query(Balance).count() == 0
        assert db.session.query(CurrencyTransaction).count() == 0

    @pytest.mark.parametrize("user_ids", [[], None, "1,2", [1] * 1001])
    def test_invalid_recipient_lists(self, app, org_a, user_ids):
        with pytest.raises(ValidationError):
            currency_service.bulk_distribute(org_a, user_ids, 10, "Bad", performed_by="admin")

    def test_one_event_per_recipient(self, app, org_a, member_a, member_a2, endpoint_a, recorder):
        recorder.clear()
        currency_service.bulk_distribute(org_a, [member_a, member_a2], 5, "Bonus", performed_by="admin")
        user_ids = sorted(e["data"]["userId"] for e in published(recorder, "user.credited"))
        assert user_ids == sorted([member_a, member_a2])


class TestAdjust:
    def test_positive_and_negative_adjustments(self, app, org_a, funded_member_a):
        up = currency_service.adjust(org_a, funded_member_a, 15, "Correction", performed_by="admin")
        down = currency_service.adjust(org_a, funded_member_a, -115, "Correction", performed_by="admin")

        assert up.new_balance == 1015
        assert down.new_balance == 900
        assert ledger_sum(org_a, funded_member_a) == 900

    def test_adjustment_cannot_go_negative(self, app, org_a, funded_member_a):
        with pytest.raises(InsufficientBalance):
            currency_service.adjust(org_a, funded_member_a, -1001, "Too far", performed_by="admin")
        assert currency_service.get_balance(org_a, funded_member_a) == 1000

    def test_zero_delta_rejected(self, app, org_a, funded_member_a):
        with pytest.raises(ValidationError):
            currency_service.adjust(org_a, funded_member_a, 0, "Nothing", performed_by="admin")


class TestReads:
    def test_balance_defaults_to_zero(self, app, org_a, member_a):
        assert currency_service.get_balance(org_a, member_a) == 0

    def test_transactions_newest_first_with_paging(self, app, org_a, member_a):
        ids = [
            currency_service.credit(org_a, member_a, n, f"credit {n}", performed_by="test").transaction_id
            for n in (1, 2, 3)
        ]

        rows = currency_service.list_transactions(org_a, user_id=member_a)
        assert [r["id"] for r in rows] == list(reversed(ids))

        older = currency_service.list_transactions(org_a, user_id=member_a, limit=1, before_id=ids[2])
        assert [r["id"] for r in older] == [ids[1]]
