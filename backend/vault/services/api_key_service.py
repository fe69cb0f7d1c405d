# Overview: Service-layer operations for API keys; issuance, revocation and bearer authentication.

"""
API Key Authentication

WHY: External systems call the /api/v1 surface with a bearer key bound to one
tenant and an explicit capability set.

SECURITY:
- Raw keys are "vlt_live_" + 64 hex chars and are shown exactly once
- Only HMAC-SHA256(API_KEY_HASH_SECRET, raw_key) is stored, plus a 12-char
  display prefix
- Malformed, unknown or revoked keys and inactive organizations answer 401;
  a plan without API access answers 403
- Every rejection is written to security_events
"""

from __future__ import annotations

import hashlib
import hmac
import re
import secrets
from dataclasses import dataclass

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from ..capabilities import CapabilitySet
from ..errors import ForbiddenError, NotFoundError, UnauthorizedError, ValidationError
from ..extensions import db
from ..models import ApiKey, Organization
from ..plans import plan_has_feature
from vault.time_utils import utcnow
from .permission_service import log_security_event
from .tenant_service import run_in_tenant


KEY_PREFIX = "vlt_live_"
DISPLAY_PREFIX_LENGTH = 12
_KEY_RE = re.compile(r"^vlt_live_[0-9a-f]{64}$")


@dataclass(frozen=True)
class ApiPrincipal:
    """Authenticated caller of the public API."""
    tenant_id: int
    api_key_id: int
    capabilities: CapabilitySet

    @property
    def credential_id(self) -> str:
        return str(self.api_key_id)


def generate_api_key() -> str:
    return KEY_PREFIX + secrets.token_hex(32)


def hash_api_key(raw_key: str) -> str:
    secret = current_app.config["API_KEY_HASH_SECRET"]
    return hmac.new(secret.encode("utf-8"), raw_key.encode("utf-8"), hashlib.sha256).hexdigest()


def create_api_key(tenant_id: int, name: str, permissions: list[str], created_by: int | None = None) -> tuple[dict, str]:
    """
    Issue a key. Returns (key metadata, raw key); the raw key is not recoverable later.

    Unknown capability tokens raise ValidationError.
    """
    name = (name or "").strip()
    if not name:
        raise ValidationError("name is required")
    if not permissions:
        raise ValidationError("At least one permission is required")
    capabilities = CapabilitySet.parse(permissions)

    raw_key = generate_api_key()

    def _op():
        key = ApiKey(
            name=name[:100],
            key_hash=hash_api_key(raw_key),
            key_prefix=raw_key[:DISPLAY_PREFIX_LENGTH],
            permissions=capabilities.tokens(),
            created_by=created_by,
        )
        db.session.add(key)
        db.session.flush()
        return key.to_dict()

    return run_in_tenant(tenant_id, _op), raw_key


def revoke_api_key(tenant_id: int, key_id: int) -> dict:
    def _op():
        key = db.session.query(ApiKey).filter_by(id=key_id).first()
        if not key:
            raise NotFoundError("API key")
        if key.revoked_at is None:
            key.revoked_at = utcnow()
        db.session.flush()
        return key.to_dict()

    return run_in_tenant(tenant_id, _op)


def list_api_keys(tenant_id: int) -> list[dict]:
    def _op():
        return [k.to_dict() for k in db.session.query(ApiKey).order_by(ApiKey.id).all()]

    return run_in_tenant(tenant_id, _op)


def _reject(reason: str, *, tenant_id=None, api_key_id=None, ip_address=None, user_agent=None, resource=None) -> None:
    log_security_event(
        event_type="API_AUTH_FAILED",
        success=False,
        tenant_id=tenant_id,
        api_key_id=api_key_id,
        resource=resource,
        reason=reason,
        ip_address=ip_address,
        user_agent=user_agent,
    )


def authenticate(
    bearer_token: str | None,
    *,
    ip_address: str | None = None,
    user_agent: str | None = None,
    resource: str | None = None,
) -> ApiPrincipal:
    """
    Resolve a raw bearer key to its tenant and capabilities.

    Runs before any tenant is known, so the lookup is not tenant scoped.
    """
    audit = {"ip_address": ip_address, "user_agent": user_agent, "resource": resource}

    if not bearer_token or not _KEY_RE.match(bearer_token):
        _reject("Malformed API key", **audit)
        raise UnauthorizedError("Invalid API key format")

    row = (
        db.session.query(ApiKey, Organization)
        .join(Organization, Organization.id == ApiKey.tenant_id)
        .filter(ApiKey.key_hash == hash_api_key(bearer_token))
        .first()
    )
    if row is None:
        _reject("Unknown API key", **audit)
        raise UnauthorizedError("Invalid API key")

    key, org = row
    key_id, tenant_id = key.id, key.tenant_id

    if key.revoked_at is not None:
        _reject("Revoked API key", tenant_id=tenant_id, api_key_id=key_id, **audit)
        raise UnauthorizedError("API key has been revoked")

    if not org.is_active:
        _reject("Organization inactive", tenant_id=tenant_id, api_key_id=key_id, **audit)
        raise UnauthorizedError("Organization is inactive")

    if not plan_has_feature(org.plan, "api_access"):
        log_security_event(
            event_type="PLAN_FEATURE_DENIED",
            success=False,
            tenant_id=tenant_id,
            api_key_id=key_id,
            resource=resource,
            action="api_access",
            reason=f"Plan {org.plan!r} has no API access",
            ip_address=ip_address,
            user_agent=user_agent,
        )
        raise ForbiddenError("API access requires an Enterprise plan", code="PLAN_REQUIRED")

    capabilities = CapabilitySet.load(
        key.permissions,
        on_invalid=lambda token: current_app.logger.warning(
            "Ignoring invalid capability %r on API key %s", token, key_id
        ),
    )

    _touch_last_used(key_id)
    return ApiPrincipal(tenant_id=tenant_id, api_key_id=key_id, capabilities=capabilities)


def _touch_last_used(key_id: int) -> None:
    """Best-effort; a failed timestamp update never fails the request."""
    try:
        db.session.query(ApiKey).filter(ApiKey.id == key_id).update(
            {"last_used_at": utcnow()}, synchronize_session=False
        )
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.warning("Could not update last_used_at for API key %s: %s", key_id, exc)
