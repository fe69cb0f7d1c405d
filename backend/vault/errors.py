# Overview: Application error hierarchy shared by services, routes and the CLI.

"""
Every error a caller is expected to handle derives from AppError and carries
the HTTP status and machine-readable code the API surface answers with.

Services raise; routes translate with responses.api_error(). Anything that is not
an AppError is a bug and is answered with a logged 500.
"""

from __future__ import annotations


class AppError(Exception):
    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        code: str | None = None,
        details: dict | None = None,
    ):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if code is not None:
            self.code = code
        self.details = details or {}

    def to_dict(self) -> dict:
        body = {"code": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(AppError):
    """400-level input problem."""
    status_code = 400
    code = "VALIDATION_ERROR"


class NotFoundError(AppError):
    status_code = 404
    code = "NOT_FOUND"

    def __init__(self, resource: str = "Resource", **kwargs):
        super().__init__(f"{resource} not found", **kwargs)


class InsufficientBalance(AppError):
    status_code = 400
    code = "INSUFFICIENT_BALANCE"

    def __init__(self, required: int, available: int):
        super().__init__(
            f"Insufficient balance: requires {required}, available {available}",
            details={"required": required, "available": available},
        )
        self.required = required
        self.available = available


class EmptyCart(AppError):
    status_code = 400
    code = "EMPTY_CART"

    def __init__(self, message: str = "Cart is empty"):
        super().__init__(message)


class OutOfStock(AppError):
    status_code = 400
    code = "OUT_OF_STOCK"

    def __init__(self, label: str, *, requested: int | None = None, available: int | None = None):
        details = {"item": label}
        if requested is not None:
            details["requested"] = requested
            details["available"] = available
        super().__init__(f"{label} is out of stock", details=details)
        self.label = label


class ItemNotFound(NotFoundError):
    code = "ITEM_NOT_FOUND"

    def __init__(self, item_id, variant_id=None):
        label = f"Item {item_id}" if variant_id is None else f"Variant {variant_id} of item {item_id}"
        super().__init__(label)
        self.item_id = item_id
        self.variant_id = variant_id


class InvalidTransition(AppError):
    """Order status machine violation."""
    status_code = 409
    code = "INVALID_TRANSITION"

    def __init__(self, current: str, target: str):
        super().__init__(
            f"Cannot transition from {current} to {target}",
            details={"from": current, "to": target},
        )
        self.current = current
        self.target = target


class IdempotencyConflict(AppError):
    """Idempotency key already recorded for a different operation."""
    status_code = 409
    code = "IDEMPOTENCY_CONFLICT"

    def __init__(self, key: str):
        super().__init__(
            "Idempotency key was already used for a different request",
            details={"idempotencyKey": key},
        )
        self.key = key


class UnauthorizedError(AppError):
    status_code = 401
    code = "UNAUTHORIZED"

    def __init__(self, message: str = "Unauthorized", **kwargs):
        super().__init__(message, **kwargs)


class ForbiddenError(AppError):
    status_code = 403
    code = "FORBIDDEN"

    def __init__(self, message: str = "Forbidden", **kwargs):
        super().__init__(message, **kwargs)


class TenantAccessError(ForbiddenError):
    """Raised when cross-tenant access is attempted."""
    code = "TENANT_ACCESS_DENIED"


class RateLimitExceeded(AppError):
    status_code = 429
    code = "RATE_LIMIT_EXCEEDED"

    def __init__(self, limit: int, remaining: int, reset_at: int, retry_after: int):
        super().__init__("Rate limit exceeded")
        self.limit = limit
        self.remaining = remaining
        self.reset_at = reset_at
        self.retry_after = retry_after


class StorageUnavailable(AppError):
    """The unit of work could not be opened or committed. Safe to retry the whole call."""
    status_code = 503
    code = "STORAGE_UNAVAILABLE"

    def __init__(self, message: str = "Storage unavailable", **kwargs):
        super().__init__(message, **kwargs)
