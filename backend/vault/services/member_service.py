# Overview: Service-layer operations for organizations and their members.

from __future__ import annotations

import re

from sqlalchemy.exc import IntegrityError

from ..errors import AppError, NotFoundError, ValidationError
from ..extensions import db
from ..models import Balance, Member, Organization
from ..plans import PLAN_FEATURES
from . import webhook_service
from .tenant_service import run_in_tenant


ROLES = ("owner", "admin", "manager", "member")

_SLUG_RE = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,98}[a-z0-9])?$")


def create_organization(name: str, slug: str, plan: str = "pro", currency_name: str = "Credits") -> Organization:
    """
    Create a tenant root.

    Runs outside any tenant context: the organization does not exist yet.
    """
    name = (name or "").strip()
    if not name:
        raise ValidationError("name is required")
    if not slug or not _SLUG_RE.match(slug):
        raise ValidationError("slug must be lowercase letters, digits and hyphens")
    if plan not in PLAN_FEATURES:
        raise ValidationError(f"plan must be one of: {', '.join(sorted(PLAN_FEATURES))}")

    org = Organization(name=name, slug=slug, plan=plan, currency_name=currency_name)
    db.session.add(org)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise AppError("An organization with this slug already exists", status_code=409, code="CONFLICT")
    return org


def list_organizations() -> list[Organization]:
    return db.session.query(Organization).order_by(Organization.id).all()


def add_member(tenant_id: int, email: str, display_name: str, role: str = "member") -> dict:
    """Add a member to the tenant. Publishes member.joined."""
    email = (email or "").strip().lower()
    if "@" not in email:
        raise ValidationError("email is invalid")
    display_name = (display_name or "").strip() or email.split("@", 1)[0]
    if role not in ROLES:
        raise ValidationError(f"role must be one of: {', '.join(ROLES)}")

    def _op():
        member = Member(email=email, display_name=display_name[:100], role=role, is_active=True)
        db.session.add(member)
        db.session.flush()
        return member.to_dict()

    try:
        member = run_in_tenant(tenant_id, _op)
    except IntegrityError:
        raise AppError("Member already exists", status_code=409, code="CONFLICT")

    webhook_service.publish(tenant_id, webhook_service.MEMBER_JOINED, {
        "userId": member["id"],
        "email": member["email"],
        "role": member["role"],
    })
    return member


def deactivate_member(tenant_id: int, member_id: int) -> dict:
    def _op():
        member = db.session.query(Member).filter_by(id=member_id).first()
        if not member:
            raise NotFoundError("Member")
        member.is_active = False
        db.session.flush()
        return member.to_dict()

    return run_in_tenant(tenant_id, _op)


def _member_with_balance(member: Member, balance: int | None) -> dict:
    data = member.to_dict()
    data["balance"] = balance or 0
    return data


def list_members(tenant_id: int, page: int = 1, page_size: int = 20) -> dict:
    page = max(1, page)
    page_size = max(1, min(page_size, 100))

    def _op():
        query = (
            db.session.query(Member, Balance.balance)
            .outerjoin(Balance, (Balance.user_id == Member.id) & (Balance.tenant_id == Member.tenant_id))
        )
        total = db.session.query(Member).count()
        rows = query.order_by(Member.id).offset((page - 1) * page_size).limit(page_size).all()
        return {
            "members": [_member_with_balance(m, b) for m, b in rows],
            "page": page,
            "pageSize": page_size,
            "total": total,
        }

    return run_in_tenant(tenant_id, _op)


def get_member(tenant_id: int, member_id: int) -> dict:
    def _op():
        row = (
            db.session.query(Member, Balance.balance)
            .outerjoin(Balance, (Balance.user_id == Member.id) & (Balance.tenant_id == Member.tenant_id))
            .filter(Member.id == member_id)
            .first()
        )
        if not row:
            raise NotFoundError("Member")
        return _member_with_balance(*row)

    return run_in_tenant(tenant_id, _op)
