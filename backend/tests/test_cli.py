# Overview: Pytest coverage for the Flask CLI command groups.

from datetime import timedelta

import pytest

from vault.errors import InsufficientBalance
from vault.extensions import db
from vault.models import ApiKey, Organization, SecurityEvent, WebhookDelivery
from vault.services import currency_service, order_service, permission_service, webhook_service
from vault.time_utils import utcnow


@pytest.fixture
def runner(app):
    return app.test_cli_runner()


class TestOrgAndMemberCommands:
    def test_create_and_list_orgs(self, runner):
        result = runner.invoke(args=["orgs", "create", "--name", "Gamma LLC", "--slug", "gamma", "--plan", "enterprise"])
        assert result.exit_code == 0
        assert "PASS Created organization: Gamma LLC" in result.output

        listing = runner.invoke(args=["orgs", "list"])
        assert "gamma" in listing.output
        assert "plan=enterprise" in listing.output

    def test_duplicate_slug_fails(self, runner, org_a):
        result = runner.invoke(args=["orgs", "create", "--name", "Again", "--slug", "acme"])
        assert result.exit_code == 1
        assert result.output.startswith("FAIL")
        assert db.session.query(Organization).count() == 1

    def test_add_member_and_credit(self, runner, org_a):
        result = runner.invoke(args=[
            "members", "add", "--org-id", str(org_a), "--email", "lin@acme.test", "--role", "admin",
        ])
        assert result.exit_code == 0
        member_id = int(result.output.split("(ID: ")[1].split(",")[0])

        credited = runner.invoke(args=[
            "members", "credit", "--org-id", str(org_a), "--user-id", str(member_id),
            "--amount", "75", "--reason", "Welcome",
        ])
        assert credited.exit_code == 0
        assert currency_service.get_balance(org_a, member_id) == 75


class TestApiKeyCommands:
    def test_create_prints_key_once(self, runner, org_a):
        result = runner.invoke(args=[
            "api-keys", "create", "--org-id", str(org_a), "--name", "ERP",
            "--permission", "currency:write", "--permission", "orders:read",
        ])
        assert result.exit_code == 0
        raw_key = result.output.split("Key (shown once): ")[1].strip()
        assert raw_key.startswith("vlt_live_")

        key = db.session.query(ApiKey).one()
        assert key.key_hash != raw_key
        assert sorted(key.permissions) == ["currency:write", "orders:read"]

    def test_invalid_permission(self, runner, org_a):
        result = runner.invoke(args=[
            "api-keys", "create", "--org-id", str(org_a), "--name", "Bad", "--permission", "everything",
        ])
        assert result.exit_code == 1
        assert db.session.query(ApiKey).count() == 0

    def test_revoke_and_list(self, runner, org_a, api_key_a):
        key_id = db.session.query(ApiKey.id).scalar()
        assert runner.invoke(args=["api-keys", "revoke", "--org-id", str(org_a), "--key-id", str(key_id)]).exit_code == 0
        assert "revoked" in runner.invoke(args=["api-keys", "list", "--org-id", str(org_a)]).output


class TestOperationalCommands:
    def test_process_retries(self, runner, org_a, endpoint_a, recorder):
        recorder.status = 500
        webhook_service.publish(org_a, "item.updated", {"itemId": 1})
        db.session.query(WebhookDelivery).update({"next_retry_at": utcnow() - timedelta(seconds=1)})
        db.session.commit()
        recorder.status = 200

        result = runner.invoke(args=["webhooks", "process-retries", "--limit", "10"])

        assert result.exit_code == 0
        assert "Processed 1: 1 succeeded, 0 failed" in result.output

    def test_reconcile_orders(self, runner, org_a, member_a, mug):
        with pytest.raises(InsufficientBalance):
            order_service.place_order(org_a, member_a, [{"item_id": mug, "quantity": 1}])

        dry = runner.invoke(args=["orders", "reconcile", "--dry-run"])
        assert "debit=failed" in dry.output

        failed = runner.invoke(args=["orders", "reconcile", "--org-id", str(org_a)])
        assert failed.exit_code == 1

        currency_service.credit(org_a, member_a, 100, "Top up", performed_by="test")
        result = runner.invoke(args=["orders", "reconcile"])
        assert result.exit_code == 0
        assert "-> settled" in result.output
        assert runner.invoke(args=["orders", "reconcile"]).output.strip() == "PASS No unsettled orders."

    def test_cleanup_security_events(self, runner, org_a):
        old = permission_service.log_security_event("API_AUTH_FAILED", False, tenant_id=org_a)
        old.occurred_at = utcnow() - timedelta(days=120)
        db.session.commit()
        permission_service.log_security_event("API_AUTH_FAILED", False, tenant_id=org_a)

        result = runner.invoke(args=["maintenance", "cleanup-security-events", "--retention-days", "90"])

        assert "Deleted 1 security events" in result.output
        assert db.session.query(SecurityEvent).count() == 1

    def test_cleanup_deliveries_keeps_pending_retries(self, runner, org_a, endpoint_a, recorder):
        webhook_service.publish(org_a, "item.updated", {"itemId": 1})
        recorder.status = 500
        webhook_service.publish(org_a, "item.updated", {"itemId": 2})
        db.session.query(WebhookDelivery).update(
            {"created_at": utcnow() - timedelta(days=45)}, synchronize_session=False
        )
        db.session.commit()

        result = runner.invoke(args=["maintenance", "cleanup-deliveries", "--retention-days", "30"])

        assert "Deleted 1 webhook deliveries" in result.output
        remaining = db.session.query(WebhookDelivery).one()
        assert remaining.status == "failed"
        assert remaining.next_retry_at is not None
