# Overview: UTC clock helpers for stored timestamps, API payloads and webhook signing.

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    """Naive UTC; every DateTime column stores naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def unix_timestamp(dt: Optional[datetime] = None) -> int:
    """Whole epoch seconds, the X-Timestamp value of signed webhooks."""
    return int(_as_utc(dt if dt is not None else utcnow()).timestamp())


def to_utc_z(dt: Optional[datetime]) -> Optional[str]:
    """Second-precision ISO-8601 with a trailing 'Z', e.g. 2024-05-01T12:00:00Z."""
    if dt is None:
        return None
    return _as_utc(dt).strftime("%Y-%m-%dT%H:%M:%SZ")
