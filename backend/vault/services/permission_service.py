# Overview: Service-layer operations for capability checks and security event logging.

"""
Capability Checking and Security Event Logging

WHY: API keys carry an explicit capability set; every request must be checked
against the capability its route needs, and every denial leaves an audit row.

DESIGN PRINCIPLES:
- Fail closed: Deny by default, require an explicit capability grant
- Log denials only: grants are not logged
- Security events are written in their own commit, outside any tenant unit of
  work, so a rolled back operation never erases its audit trail
"""

from __future__ import annotations

from ..capabilities import Capability, CapabilitySet
from ..errors import ForbiddenError
from ..extensions import db
from ..models import SecurityEvent
from vault.time_utils import utcnow


def log_security_event(
    event_type: str,
    success: bool,
    tenant_id: int | None = None,
    api_key_id: int | None = None,
    resource: str | None = None,
    action: str | None = None,
    reason: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> SecurityEvent:
    """
    Log security event to audit trail with tenant context.

    event_type examples:
    - API_AUTH_FAILED
    - PERMISSION_DENIED
    - PLAN_FEATURE_DENIED
    - RATE_LIMITED
    - CROSS_TENANT_ACCESS_DENIED
    """
    event = SecurityEvent(
        tenant_id=tenant_id,
        api_key_id=api_key_id,
        event_type=event_type,
        resource=resource,
        action=action,
        success=success,
        reason=reason,
        ip_address=ip_address,
        user_agent=(user_agent or "")[:512] or None,
        occurred_at=utcnow(),
    )

    db.session.add(event)
    db.session.commit()

    return event


def has_capability(capabilities: CapabilitySet, required: str) -> bool:
    return capabilities.allows(Capability.parse(required))


def require_permission(
    capabilities: CapabilitySet,
    required: str,
    *,
    tenant_id: int | None = None,
    api_key_id: int | None = None,
    resource: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> None:
    """
    Require a capability or raise ForbiddenError.

    Passes on "*", the exact capability, or "<resource>:*".
    """
    if has_capability(capabilities, required):
        return

    log_security_event(
        event_type="PERMISSION_DENIED",
        success=False,
        tenant_id=tenant_id,
        api_key_id=api_key_id,
        resource=resource,
        action=required,
        reason=f"Missing capability: {required}",
        ip_address=ip_address,
        user_agent=user_agent,
    )
    raise ForbiddenError(f"Missing permission: {required}", details={"required_permission": required})
