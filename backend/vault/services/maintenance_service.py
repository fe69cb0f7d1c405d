# Overview: Service-layer operations for maintenance; retention cleanup across tenants.

from __future__ import annotations

from datetime import timedelta

from ..extensions import db
from ..models import SecurityEvent, WebhookDelivery
from ..models.webhooks import DELIVERY_FAILED, DELIVERY_SUCCESS
from vault.time_utils import utcnow


def cleanup_security_events(*, retention_days: int = 90) -> int:
    """
    Delete security events older than retention_days.

    Ledger transactions are never deleted.
    """
    cutoff = utcnow() - timedelta(days=retention_days)
    deleted = db.session.query(SecurityEvent).filter(
        SecurityEvent.occurred_at < cutoff
    ).delete(synchronize_session=False)
    db.session.commit()
    return deleted


def cleanup_deliveries(*, retention_days: int = 30) -> int:
    """
    Delete finished webhook deliveries older than retention_days.

    Finished means succeeded, or failed with no retry scheduled (abandoned).
    Deliveries still due for a retry are kept regardless of age.
    """
    cutoff = utcnow() - timedelta(days=retention_days)
    finished = (WebhookDelivery.status == DELIVERY_SUCCESS) | (
        (WebhookDelivery.status == DELIVERY_FAILED) & WebhookDelivery.next_retry_at.is_(None)
    )
    deleted = db.session.query(WebhookDelivery).filter(
        WebhookDelivery.created_at < cutoff,
        finished,
    ).delete(synchronize_session=False)
    db.session.commit()
    return deleted
