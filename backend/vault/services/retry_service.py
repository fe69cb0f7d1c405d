# Overview: Periodic resend of failed webhook deliveries with a fixed backoff schedule.

"""
Retry Scheduler

Triggered externally (cron route or `flask webhooks process-retries`).

SELECTION: status = failed AND attempts < WEBHOOK_MAX_ATTEMPTS AND
next_retry_at <= now, on active endpoints, oldest first, at most
WEBHOOK_RETRY_BATCH rows. Selection spans all tenants; each delivery is then
handled inside its own tenant's unit of work.

PER DELIVERY: re-sign with a fresh timestamp and resend once.
- 2xx: success, attempts + 1, next_retry_at NULL
- otherwise: attempts + 1, next_retry_at = now + backoff[attempts - 1],
  or NULL when attempts reached the maximum (abandoned, terminal)
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

from flask import current_app

from ..extensions import db
from ..models import WebhookDelivery, WebhookEndpoint
from ..models.webhooks import DELIVERY_FAILED, DELIVERY_SUCCESS
from vault.time_utils import utcnow
from .tenant_service import current_tenant_id, run_in_tenant
from .webhook_service import backoff_delay, encode_body, send_signed


@dataclass(frozen=True)
class RetrySummary:
    processed: int
    succeeded: int
    failed: int

    def to_dict(self) -> dict:
        return {"processed": self.processed, "succeeded": self.succeeded, "failed": self.failed}


def due_deliveries(limit: int) -> list[tuple[int, int]]:
    """(delivery_id, tenant_id) pairs due for a retry, across tenants."""
    if current_tenant_id() is not None:
        raise RuntimeError("Retry selection must run outside a tenant unit of work")

    max_attempts = current_app.config["WEBHOOK_MAX_ATTEMPTS"]
    rows = (
        db.session.query(WebhookDelivery.id, WebhookDelivery.tenant_id)
        .join(WebhookEndpoint, WebhookEndpoint.id == WebhookDelivery.endpoint_id)
        .filter(
            WebhookDelivery.status == DELIVERY_FAILED,
            WebhookDelivery.attempts < max_attempts,
            WebhookDelivery.next_retry_at.isnot(None),
            WebhookDelivery.next_retry_at <= utcnow(),
            WebhookEndpoint.is_active.is_(True),
        )
        .order_by(WebhookDelivery.next_retry_at, WebhookDelivery.id)
        .limit(limit)
        .all()
    )
    # Release the read transaction before any per-tenant unit opens
    db.session.rollback()
    return [(row.id, row.tenant_id) for row in rows]


def _load_attempt(delivery_id: int):
    delivery = db.session.query(WebhookDelivery).filter_by(id=delivery_id).first()
    if delivery is None or delivery.status != DELIVERY_FAILED:
        return None
    endpoint = delivery.endpoint
    return {
        "url": endpoint.url,
        "secret": endpoint.secret,
        "event": delivery.event,
        "body": encode_body(delivery.payload),
    }


def _record_attempt(delivery_id: int, outcome) -> bool:
    """Returns True when the delivery was abandoned by this attempt."""
    max_attempts = current_app.config["WEBHOOK_MAX_ATTEMPTS"]
    delivery = db.session.query(WebhookDelivery).filter_by(id=delivery_id).one()

    now = utcnow()
    delivery.attempts = (delivery.attempts or 0) + 1
    delivery.last_attempt_at = now
    delivery.response_status = outcome.status_code
    delivery.response_body = outcome.body

    if outcome.ok:
        delivery.status = DELIVERY_SUCCESS
        delivery.next_retry_at = None
        return False

    delivery.status = DELIVERY_FAILED
    if delivery.attempts >= max_attempts:
        delivery.next_retry_at = None
        return True
    delivery.next_retry_at = now + timedelta(seconds=backoff_delay(delivery.attempts))
    return False


def retry_delivery(tenant_id: int, delivery_id: int) -> bool | None:
    """
    Resend one failed delivery. Returns True on success, False on failure,
    None when the delivery is no longer eligible.
    """
    attempt = run_in_tenant(tenant_id, _load_attempt, delivery_id)
    if attempt is None:
        return None

    outcome = send_signed(attempt["url"], attempt["body"], attempt["event"], attempt["secret"], delivery_id)
    abandoned = run_in_tenant(tenant_id, _record_attempt, delivery_id, outcome)
    if abandoned:
        current_app.logger.warning(
            "Webhook delivery %s abandoned after %s attempts (tenant %s)",
            delivery_id, current_app.config["WEBHOOK_MAX_ATTEMPTS"], tenant_id,
        )
    return outcome.ok


def process_retries(limit: int | None = None) -> RetrySummary:
    if limit is None:
        limit = current_app.config["WEBHOOK_RETRY_BATCH"]

    succeeded = 0
    failed = 0
    due = due_deliveries(limit)
    for delivery_id, tenant_id in due:
        result = retry_delivery(tenant_id, delivery_id)
        if result is True:
            succeeded += 1
        elif result is False:
            failed += 1

    summary = RetrySummary(processed=len(due), succeeded=succeeded, failed=failed)
    current_app.logger.info(
        "Webhook retry sweep: processed=%s succeeded=%s failed=%s",
        summary.processed, summary.succeeded, summary.failed,
    )
    return summary
