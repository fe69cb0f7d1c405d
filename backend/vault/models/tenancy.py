from __future__ import annotations

from sqlalchemy.orm import declared_attr

from ..extensions import db
from vault.time_utils import to_utc_z


class TenantScoped:
    """
    Mixin for every row owned by a tenant.

    MULTI-TENANT: tenant_id is stamped from the active tenant context at flush
    time and every ORM statement issued inside a tenant unit of work is
    filtered on it (see services/tenant_service.py). Queries that forget the
    filter still cannot see another tenant's rows.
    """

    @declared_attr
    def tenant_id(cls):
        return db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)


class Organization(db.Model):
    """
    Multi-tenant root: Every tenant is an Organization.

    All members, balances, catalog items, orders, webhooks and API keys belong
    to exactly one organization. No data may cross organization boundaries.
    """
    __tablename__ = "organizations"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    slug = db.Column(db.String(100), nullable=False, unique=True, index=True)

    # pro, enterprise (see vault/plans.py)
    plan = db.Column(db.String(32), nullable=False, default="pro")
    currency_name = db.Column(db.String(50), nullable=False, default="Credits")

    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def __repr__(self) -> str:
        return f"<Organization id={self.id} slug={self.slug!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "slug": self.slug,
            "plan": self.plan,
            "currency_name": self.currency_name,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class Member(TenantScoped, db.Model):
    """
    A user's membership in one organization.

    The member id is the "user id" the ledger and orders refer to. Identity,
    passwords and sessions are managed outside this service.
    """
    __tablename__ = "organization_members"
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "email", name="uq_members_tenant_email"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), nullable=False)
    display_name = db.Column(db.String(100), nullable=False)
    role = db.Column(db.String(16), nullable=False, default="member")  # owner, admin, manager, member
    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    joined_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    organization = db.relationship("Organization", backref=db.backref("members", lazy=True))

    def __repr__(self) -> str:
        return f"<Member id={self.id} tenant_id={self.tenant_id} email={self.email!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "email": self.email,
            "display_name": self.display_name,
            "role": self.role,
            "is_active": self.is_active,
            "joined_at": to_utc_z(self.joined_at),
        }
