from __future__ import annotations

from ..extensions import db
from vault.time_utils import to_utc_z
from .tenancy import TenantScoped


class ApiKey(TenantScoped, db.Model):
    """
    Programmatic credential for one tenant.

    SECURITY: Only the keyed hash of the raw key is stored. key_prefix keeps
    the first characters for display so tenants can tell keys apart.
    permissions holds capability tokens ("currency:write", "orders:*", "*").
    """
    __tablename__ = "api_keys"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    key_hash = db.Column(db.String(128), nullable=False, unique=True, index=True)
    key_prefix = db.Column(db.String(16), nullable=False)
    permissions = db.Column(db.JSON, nullable=False, default=list)

    created_by = db.Column(db.Integer, db.ForeignKey("organization_members.id"), nullable=True)
    last_used_at = db.Column(db.DateTime(timezone=True), nullable=True)
    revoked_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    organization = db.relationship("Organization", backref=db.backref("api_keys", lazy=True))

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "name": self.name,
            "key_prefix": self.key_prefix,
            "permissions": list(self.permissions or []),
            "created_by": self.created_by,
            "last_used_at": to_utc_z(self.last_used_at),
            "revoked_at": to_utc_z(self.revoked_at),
            "created_at": to_utc_z(self.created_at),
        }


class SecurityEvent(db.Model):
    """
    Security event audit log with tenant context.

    WHY: Track failed API authentication, permission denials, rate limit
    rejections and cross-tenant attempts.

    tenant_id is nullable because authentication failures happen before a
    tenant is known, so this table is not TenantScoped.

    IMMUTABLE: Never update or delete (except retention cleanup).
    """
    __tablename__ = "security_events"
    __table_args__ = (
        db.Index("ix_security_events_tenant_occurred", "tenant_id", "occurred_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=True, index=True)
    api_key_id = db.Column(db.Integer, db.ForeignKey("api_keys.id"), nullable=True, index=True)

    # API_AUTH_FAILED, PERMISSION_DENIED, RATE_LIMITED, CROSS_TENANT_ACCESS_DENIED
    event_type = db.Column(db.String(64), nullable=False, index=True)
    resource = db.Column(db.String(128), nullable=True)
    action = db.Column(db.String(64), nullable=True)

    success = db.Column(db.Boolean, nullable=False, index=True)
    reason = db.Column(db.Text, nullable=True)

    ip_address = db.Column(db.String(45), nullable=True)
    user_agent = db.Column(db.String(512), nullable=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "api_key_id": self.api_key_id,
            "event_type": self.event_type,
            "resource": self.resource,
            "action": self.action,
            "success": self.success,
            "reason": self.reason,
            "ip_address": self.ip_address,
            "occurred_at": to_utc_z(self.occurred_at),
        }
