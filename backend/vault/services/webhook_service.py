# Overview: Service-layer operations for outbound webhooks; encapsulates signing, delivery tracking and endpoint management.

"""
Event Notifier: signed, tracked webhook deliveries

WHY: Tenants integrate with external systems by subscribing endpoints to
domain events. Delivery is at-least-once with deferred retries; the
triggering operation never waits for or fails because of a receiver.

PROTOCOL:
- POST JSON envelope {"event", "data", "timestamp"} (compact JSON)
- X-Signature: sha256=<hex HMAC-SHA256(secret, "<unix_ts>.<body>")>
- X-Event, X-Timestamp (unix seconds), X-Delivery-Id

DELIVERY FLOW (per subscribed active endpoint):
1. persist WebhookDelivery(pending, attempts=1) in its own unit of work
2. POST with WEBHOOK_TIMEOUT_SECONDS timeout (no inline retry)
3. second unit of work records success, or failed with
   next_retry_at = now + first backoff step

Retries are handled by retry_service.process_retries().
"""

from __future__ import annotations

import hashlib
import hmac
import json
import secrets
from dataclasses import dataclass
from datetime import timedelta
from urllib.parse import urlparse

import httpx
from flask import current_app

from ..errors import NotFoundError, ValidationError
from ..extensions import db
from ..models import WebhookDelivery, WebhookEndpoint
from ..models.webhooks import DELIVERY_FAILED, DELIVERY_PENDING, DELIVERY_SUCCESS
from vault.time_utils import to_utc_z, unix_timestamp, utcnow
from . import integration_service
from .dispatcher import get_dispatcher
from .tenant_service import require_tenant_id, run_in_tenant


ORDER_CREATED = "order.created"
ORDER_STATUS_CHANGED = "order.status_changed"
USER_CREDITED = "user.credited"
USER_DEBITED = "user.debited"
MEMBER_JOINED = "member.joined"
ITEM_CREATED = "item.created"
ITEM_UPDATED = "item.updated"

ALL_EVENTS = (
    ORDER_CREATED,
    ORDER_STATUS_CHANGED,
    USER_CREDITED,
    USER_DEBITED,
    MEMBER_JOINED,
    ITEM_CREATED,
    ITEM_UPDATED,
)

SIGNATURE_PREFIX = "sha256="
SECRET_PREFIX = "whsec_"
RESPONSE_BODY_LIMIT = 1000


@dataclass(frozen=True)
class EndpointTarget:
    """Detached endpoint snapshot handed to delivery code outside the unit of work."""
    id: int
    url: str
    secret: str


@dataclass(frozen=True)
class SendOutcome:
    ok: bool
    status_code: int | None
    body: str


# ---------------------------------------------------------------------------
# Signing
# ---------------------------------------------------------------------------

def generate_webhook_secret() -> str:
    return SECRET_PREFIX + secrets.token_hex(24)


def encode_body(envelope: dict) -> str:
    """Compact JSON; the exact string that is signed and sent."""
    return json.dumps(envelope, separators=(",", ":"), ensure_ascii=False)


def sign_payload(body: str, secret: str, timestamp: int) -> str:
    digest = hmac.new(
        secret.encode("utf-8"),
        f"{timestamp}.{body}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return SIGNATURE_PREFIX + digest


def verify_signature(
    secret: str,
    body: str | bytes,
    timestamp,
    signature: str,
    tolerance: int = 300,
    now: int | None = None,
) -> bool:
    """
    Receiver-side check of X-Signature / X-Timestamp.

    Rejects timestamps older or newer than tolerance seconds. Comparison is
    constant time.
    """
    if isinstance(body, bytes):
        body = body.decode("utf-8")
    try:
        ts = int(timestamp)
    except (TypeError, ValueError):
        return False
    current = unix_timestamp() if now is None else now
    if tolerance is not None and abs(current - ts) > tolerance:
        return False
    expected = sign_payload(body, secret, ts)
    return hmac.compare_digest(expected, signature or "")


def build_envelope(event: str, payload: dict) -> dict:
    return {"event": event, "data": payload, "timestamp": to_utc_z(utcnow())}


def backoff_delay(attempts: int) -> int:
    """Seconds to wait after the attempts-th failed attempt; last step reused past the end."""
    table = current_app.config["WEBHOOK_BACKOFF_SECONDS"]
    index = min(max(attempts, 1), len(table)) - 1
    return int(table[index])


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------

def _http_client(timeout: float) -> httpx.Client:
    return httpx.Client(
        timeout=timeout,
        transport=current_app.config.get("WEBHOOK_HTTP_TRANSPORT"),
        follow_redirects=False,
    )


def send_signed(url: str, body: str, event: str, secret: str, delivery_id: int | None = None) -> SendOutcome:
    """Sign with a fresh timestamp and POST once. Transport errors become failed outcomes."""
    timestamp = unix_timestamp()
    headers = {
        "Content-Type": "application/json",
        "X-Signature": sign_payload(body, secret, timestamp),
        "X-Event": event,
        "X-Timestamp": str(timestamp),
    }
    if delivery_id is not None:
        headers["X-Delivery-Id"] = str(delivery_id)

    try:
        with _http_client(current_app.config["WEBHOOK_TIMEOUT_SECONDS"]) as client:
            response = client.post(url, content=body.encode("utf-8"), headers=headers)
    except (httpx.HTTPError, httpx.InvalidURL) as exc:
        return SendOutcome(False, None, (str(exc) or exc.__class__.__name__)[:RESPONSE_BODY_LIMIT])

    return SendOutcome(response.is_success, response.status_code, response.text[:RESPONSE_BODY_LIMIT])


# ---------------------------------------------------------------------------
# Publish / deliver
# ---------------------------------------------------------------------------

def _subscribed_targets(event: str) -> list[EndpointTarget]:
    tenant_id = require_tenant_id()
    endpoints = (
        db.session.query(WebhookEndpoint)
        .filter(WebhookEndpoint.tenant_id == tenant_id, WebhookEndpoint.is_active.is_(True))
        .order_by(WebhookEndpoint.id)
        .all()
    )
    return [EndpointTarget(e.id, e.url, e.secret) for e in endpoints if e.subscribes_to(event)]


def publish(tenant_id: int, event: str, payload: dict) -> None:
    """
    Fan an event out to the tenant's subscribed endpoints and chat integrations.

    Never raises and never waits on a receiver. When the dispatcher is
    saturated the deliveries are stored as failed and due now, so the retry
    sweep sends them.
    """
    try:
        envelope = build_envelope(event, payload)
        if not get_dispatcher().submit(_fan_out, tenant_id, event, envelope):
            current_app.logger.warning(
                "Notification dispatcher saturated; deferring %s for tenant %s to retry sweep", event, tenant_id
            )
            _defer_to_retry(tenant_id, event, envelope)
    except Exception:
        current_app.logger.exception("Failed to publish %s for tenant %s", event, tenant_id)


def _fan_out(tenant_id: int, event: str, envelope: dict) -> None:
    targets = run_in_tenant(tenant_id, _subscribed_targets, event)
    for target in targets:
        deliver(tenant_id, target, event, envelope)
    integration_service.notify(tenant_id, event, envelope["data"])


def deliver(tenant_id: int, target: EndpointTarget, event: str, envelope: dict) -> int:
    """One tracked attempt to one endpoint. Returns the delivery id."""
    def _insert():
        delivery = WebhookDelivery(
            endpoint_id=target.id,
            event=event,
            payload=envelope,
            status=DELIVERY_PENDING,
            attempts=1,
            last_attempt_at=utcnow(),
        )
        db.session.add(delivery)
        db.session.flush()
        return delivery.id

    delivery_id = run_in_tenant(tenant_id, _insert)
    outcome = send_signed(target.url, encode_body(envelope), event, target.secret, delivery_id)

    def _record():
        delivery = db.session.query(WebhookDelivery).filter_by(id=delivery_id).one()
        delivery.response_status = outcome.status_code
        delivery.response_body = outcome.body
        if outcome.ok:
            delivery.status = DELIVERY_SUCCESS
            delivery.next_retry_at = None
        else:
            delivery.status = DELIVERY_FAILED
            delivery.next_retry_at = utcnow() + timedelta(seconds=backoff_delay(1))

    run_in_tenant(tenant_id, _record)
    return delivery_id


def _defer_to_retry(tenant_id: int, event: str, envelope: dict) -> None:
    def _op():
        now = utcnow()
        for target in _subscribed_targets(event):
            db.session.add(WebhookDelivery(
                endpoint_id=target.id,
                event=event,
                payload=envelope,
                status=DELIVERY_FAILED,
                attempts=0,
                next_retry_at=now,
                response_body="Deferred: dispatcher saturated",
            ))

    run_in_tenant(tenant_id, _op)


# ---------------------------------------------------------------------------
# Endpoint management
# ---------------------------------------------------------------------------

def _validate_url(url) -> str:
    if not isinstance(url, str) or not url.strip():
        raise ValidationError("url is required")
    url = url.strip()
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValidationError("url must be an absolute http(s) URL")
    if len(url) > 500:
        raise ValidationError("url must be at most 500 characters")
    return url


def _validate_events(events) -> list[str]:
    if not isinstance(events, list) or not events:
        raise ValidationError("events must be a non-empty list")
    unknown = [e for e in events if e not in ALL_EVENTS]
    if unknown:
        raise ValidationError("Unknown events", details={"events": unknown})
    # Keep first-seen order, drop duplicates
    return list(dict.fromkeys(events))


def create_endpoint(tenant_id: int, url: str, events: list[str]) -> dict:
    """Register an endpoint. The returned dict is the only place the secret is shown."""
    url = _validate_url(url)
    events = _validate_events(events)

    def _op():
        endpoint = WebhookEndpoint(url=url, events=events, secret=generate_webhook_secret(), is_active=True)
        db.session.add(endpoint)
        db.session.flush()
        data = endpoint.to_dict()
        data["secret"] = endpoint.secret
        return data

    return run_in_tenant(tenant_id, _op)


def update_endpoint(
    tenant_id: int,
    endpoint_id: int,
    *,
    url: str | None = None,
    events: list[str] | None = None,
    is_active: bool | None = None,
) -> dict:
    if url is not None:
        url = _validate_url(url)
    if events is not None:
        events = _validate_events(events)

    def _op():
        endpoint = db.session.query(WebhookEndpoint).filter_by(id=endpoint_id).first()
        if not endpoint:
            raise NotFoundError("Webhook endpoint")
        if url is not None:
            endpoint.url = url
        if events is not None:
            endpoint.events = events
        if is_active is not None:
            endpoint.is_active = bool(is_active)
        db.session.flush()
        return endpoint.to_dict()

    return run_in_tenant(tenant_id, _op)


def delete_endpoint(tenant_id: int, endpoint_id: int) -> None:
    """Remove an endpoint together with its delivery history."""
    def _op():
        endpoint = db.session.query(WebhookEndpoint).filter_by(id=endpoint_id).first()
        if not endpoint:
            raise NotFoundError("Webhook endpoint")
        db.session.query(WebhookDelivery).filter_by(endpoint_id=endpoint_id).delete(synchronize_session=False)
        db.session.delete(endpoint)

    run_in_tenant(tenant_id, _op)


def list_endpoints(tenant_id: int) -> list[dict]:
    def _op():
        rows = db.session.query(WebhookEndpoint).order_by(WebhookEndpoint.id).all()
        return [e.to_dict() for e in rows]

    return run_in_tenant(tenant_id, _op)


def list_deliveries(
    tenant_id: int,
    endpoint_id: int | None = None,
    status: str | None = None,
    limit: int = 50,
) -> list[dict]:
    def _op():
        query = db.session.query(WebhookDelivery)
        if endpoint_id is not None:
            query = query.filter(WebhookDelivery.endpoint_id == endpoint_id)
        if status is not None:
            query = query.filter(WebhookDelivery.status == status)
        rows = query.order_by(WebhookDelivery.id.desc()).limit(max(1, min(limit, 500))).all()
        return [d.to_dict() for d in rows]

    return run_in_tenant(tenant_id, _op)
