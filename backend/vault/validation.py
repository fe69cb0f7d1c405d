# Overview: Input validation helpers shared by services and routes.

from __future__ import annotations

from typing import Any

from .errors import ValidationError


# Amounts are whole currency units; keep well inside a signed 64-bit column
MAX_AMOUNT = 1_000_000_000
MAX_REASON_LENGTH = 255
MAX_BULK_RECIPIENTS = 1000


def require_positive_int(value: Any, field: str = "amount", *, maximum: int | None = MAX_AMOUNT) -> int:
    """
    Strict positive integer check.

    Rejects bools (subclass of int), floats (even 10.0), numeric strings and
    anything <= 0. Currency has no fractional precision.
    """
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field} must be a positive integer")
    if value <= 0:
        raise ValidationError(f"{field} must be a positive integer")
    if maximum is not None and value > maximum:
        raise ValidationError(f"{field} must be at most {maximum}")
    return value


def require_nonzero_int(value: Any, field: str = "delta") -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer")
    if value == 0:
        raise ValidationError(f"{field} must not be zero")
    if abs(value) > MAX_AMOUNT:
        raise ValidationError(f"{field} must be at most {MAX_AMOUNT} in magnitude")
    return value


def require_reason(value: Any) -> str:
    if not isinstance(value, str):
        raise ValidationError("reason is required")
    reason = value.strip()
    if not reason:
        raise ValidationError("reason is required")
    if len(reason) > MAX_REASON_LENGTH:
        raise ValidationError(f"reason must be at most {MAX_REASON_LENGTH} characters")
    return reason


def require_user_id(value: Any, field: str = "userId") -> int:
    """User ids arrive as JSON numbers or numeric strings."""
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a positive integer")
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if not isinstance(value, int) or value <= 0:
        raise ValidationError(f"{field} must be a positive integer")
    return value


def require_user_ids(value: Any, field: str = "userIds") -> list[int]:
    if not isinstance(value, list) or not value:
        raise ValidationError(f"{field} must be a non-empty list")
    if len(value) > MAX_BULK_RECIPIENTS:
        raise ValidationError(f"{field} may contain at most {MAX_BULK_RECIPIENTS} entries")
    return [require_user_id(v, field) for v in value]


def parse_int_arg(raw: str | None, field: str, *, default: int, minimum: int = 1, maximum: int | None = None) -> int:
    """Query-string integer with bounds. Missing means default."""
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValidationError(f"{field} must be an integer")
    if value < minimum:
        raise ValidationError(f"{field} must be >= {minimum}")
    if maximum is not None and value > maximum:
        value = maximum
    return value
