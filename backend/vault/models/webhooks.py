from __future__ import annotations

from ..extensions import db
from vault.time_utils import to_utc_z
from .tenancy import TenantScoped


DELIVERY_PENDING = "pending"
DELIVERY_SUCCESS = "success"
DELIVERY_FAILED = "failed"


class WebhookEndpoint(TenantScoped, db.Model):
    """
    Tenant-registered receiver for signed event notifications.

    events is the list of subscribed event names (see services/webhook_service.py).
    The secret is shown to the tenant once and used to sign every delivery.
    """
    __tablename__ = "webhook_endpoints"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    url = db.Column(db.String(500), nullable=False)
    events = db.Column(db.JSON, nullable=False, default=list)
    secret = db.Column(db.String(255), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def subscribes_to(self, event: str) -> bool:
        return event in (self.events or [])

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "url": self.url,
            "events": list(self.events or []),
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class WebhookDelivery(TenantScoped, db.Model):
    """
    One tracked delivery of one event to one endpoint.

    INVARIANTS:
    - attempts <= WEBHOOK_MAX_ATTEMPTS
    - next_retry_at is NULL once status is success or attempts are exhausted

    payload is the exact envelope sent; retries re-serialize it unchanged.
    """
    __tablename__ = "webhook_deliveries"
    __table_args__ = (
        db.Index("ix_webhook_deliveries_retry", "status", "next_retry_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    endpoint_id = db.Column(db.Integer, db.ForeignKey("webhook_endpoints.id"), nullable=False, index=True)
    event = db.Column(db.String(64), nullable=False)
    payload = db.Column(db.JSON, nullable=False)

    status = db.Column(db.String(16), nullable=False, default=DELIVERY_PENDING, index=True)
    attempts = db.Column(db.Integer, nullable=False, default=0)
    last_attempt_at = db.Column(db.DateTime(timezone=True), nullable=True)
    next_retry_at = db.Column(db.DateTime(timezone=True), nullable=True)

    response_status = db.Column(db.Integer, nullable=True)
    response_body = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    endpoint = db.relationship("WebhookEndpoint", backref=db.backref("deliveries", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "endpoint_id": self.endpoint_id,
            "event": self.event,
            "payload": self.payload,
            "status": self.status,
            "attempts": self.attempts,
            "last_attempt_at": to_utc_z(self.last_attempt_at),
            "next_retry_at": to_utc_z(self.next_retry_at),
            "response_status": self.response_status,
            "response_body": self.response_body,
            "created_at": to_utc_z(self.created_at),
        }


class Integration(TenantScoped, db.Model):
    """Chat workspace sink (Slack or Teams incoming webhook). Best-effort, no delivery tracking."""
    __tablename__ = "integrations"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    type = db.Column(db.String(16), nullable=False)  # slack, teams
    webhook_url = db.Column(db.String(500), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }
