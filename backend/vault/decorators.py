# Overview: Request decorators for API key authentication, capabilities and the cron endpoint.

import hmac
from functools import wraps

from flask import after_this_request, current_app, g, request

from .capabilities import Capability
from .errors import ForbiddenError, RateLimitExceeded, UnauthorizedError, AppError
from .responses import api_error
from .services import api_key_service, permission_service
from .services.rate_limit_service import get_rate_limiter


def _client_context() -> dict:
    return {
        "ip_address": request.remote_addr,
        "user_agent": request.headers.get("User-Agent"),
    }


def require_api_key(f):
    """
    Authenticate the bearer API key, apply the rate limit and bind tenant context.

    MULTI-TENANT: Sets the following Flask g attributes:
    - g.api_principal: ApiPrincipal (tenant_id, api_key_id, capabilities)
    - g.org_id: the key's tenant

    Every response to an authenticated request carries X-RateLimit-* headers;
    a 429 adds Retry-After.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        auth_header = request.headers.get("Authorization")

        if not auth_header or not auth_header.startswith("Bearer "):
            permission_service.log_security_event(
                event_type="API_AUTH_FAILED",
                success=False,
                resource=request.path,
                action=request.method,
                reason="Missing bearer token",
                **_client_context(),
            )
            return api_error(UnauthorizedError("Missing or invalid Authorization header"))

        token = auth_header.split(" ", 1)[1].strip()

        try:
            principal = api_key_service.authenticate(token, resource=request.path, **_client_context())
        except AppError as e:
            return api_error(e)

        try:
            status = get_rate_limiter().hit(principal.tenant_id, principal.credential_id)
        except RateLimitExceeded as e:
            permission_service.log_security_event(
                event_type="RATE_LIMITED",
                success=False,
                tenant_id=principal.tenant_id,
                api_key_id=principal.api_key_id,
                resource=request.path,
                action=request.method,
                reason=f"Limit {e.limit} exceeded",
                **_client_context(),
            )
            response = api_error(e)
            response.headers["X-RateLimit-Limit"] = str(e.limit)
            response.headers["X-RateLimit-Remaining"] = "0"
            response.headers["X-RateLimit-Reset"] = str(e.reset_at)
            response.headers["Retry-After"] = str(e.retry_after)
            return response

        g.api_principal = principal
        g.org_id = principal.tenant_id
        g.rate_limit = status

        @after_this_request
        def _add_rate_limit_headers(response):
            response.headers.update(status.headers())
            return response

        return f(*args, **kwargs)

    return decorated_function


def require_capability(required: str):
    """
    Require a capability of the authenticated API key.

    Must be stacked below @require_api_key. The token is parsed at decoration
    time so a typo fails at import.
    """
    Capability.parse(required)

    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            principal = getattr(g, "api_principal", None)
            if principal is None:
                return api_error(UnauthorizedError("Authentication required"))

            try:
                permission_service.require_permission(
                    principal.capabilities,
                    required,
                    tenant_id=principal.tenant_id,
                    api_key_id=principal.api_key_id,
                    resource=request.path,
                    **_client_context(),
                )
            except ForbiddenError as e:
                return api_error(e)

            return f(*args, **kwargs)

        return decorated_function
    return decorator


def require_cron_secret(f):
    """
    Guard for externally scheduled jobs.

    When CRON_SECRET is configured the request must carry
    "Authorization: Bearer <CRON_SECRET>"; unset means no check.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        secret = current_app.config.get("CRON_SECRET")
        if secret:
            provided = request.headers.get("Authorization") or ""
            if not hmac.compare_digest(provided.encode("utf-8"), f"Bearer {secret}".encode("utf-8")):
                return api_error(UnauthorizedError())
        return f(*args, **kwargs)

    return decorated_function
