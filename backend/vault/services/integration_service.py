# Overview: Best-effort chat notifications (Slack, Teams) for domain events.

"""
Chat integration sink

Posts a short formatted message to each active Slack or Teams incoming
webhook of the tenant. No delivery tracking and no retries: failures are
logged and swallowed.
"""

from __future__ import annotations

from urllib.parse import urlparse

import httpx
from flask import current_app

from ..errors import NotFoundError, ValidationError
from ..extensions import db
from ..models import Integration
from .tenant_service import run_in_tenant


SLACK = "slack"
TEAMS = "teams"
INTEGRATION_TYPES = (SLACK, TEAMS)

EVENT_TITLES = {
    "order.created": "New Order",
    "order.status_changed": "Order Status Changed",
    "user.credited": "Currency Credited",
    "user.debited": "Currency Debited",
    "member.joined": "New Member",
    "item.created": "New Item",
    "item.updated": "Item Updated",
}

FOOTER = "Sent via Vault"


def build_message(event: str, payload: dict) -> tuple[str, str]:
    title = EVENT_TITLES.get(event, event)
    details = "\n".join(f"*{key}:* {value}" for key, value in (payload or {}).items())
    return title, details or "No additional details."


def slack_body(title: str, text: str) -> dict:
    return {
        "blocks": [
            {"type": "header", "text": {"type": "plain_text", "text": title, "emoji": True}},
            {"type": "section", "text": {"type": "mrkdwn", "text": text}},
            {"type": "context", "elements": [{"type": "mrkdwn", "text": FOOTER}]},
        ]
    }


def teams_body(title: str, text: str) -> dict:
    return {
        "type": "message",
        "attachments": [
            {
                "contentType": "application/vnd.microsoft.card.adaptive",
                "content": {
                    "$schema": "http://adaptivecards.io/schemas/adaptive-card.json",
                    "type": "AdaptiveCard",
                    "version": "1.4",
                    "body": [
                        {"type": "TextBlock", "text": title, "weight": "Bolder", "size": "Medium"},
                        {"type": "TextBlock", "text": text, "wrap": True},
                        {"type": "TextBlock", "text": FOOTER, "size": "Small", "isSubtle": True},
                    ],
                },
            }
        ],
    }


def _active_sinks() -> list[tuple[str, str]]:
    rows = db.session.query(Integration).filter(Integration.is_active.is_(True)).order_by(Integration.id).all()
    return [(row.type, row.webhook_url) for row in rows]


def notify(tenant_id: int, event: str, payload: dict) -> int:
    """Post to every active sink. Returns how many posts succeeded."""
    try:
        sinks = run_in_tenant(tenant_id, _active_sinks)
    except Exception:
        current_app.logger.warning("Could not load chat integrations for tenant %s", tenant_id, exc_info=True)
        return 0

    title, text = build_message(event, payload)
    sent = 0
    for sink_type, url in sinks:
        body = slack_body(title, text) if sink_type == SLACK else teams_body(title, text)
        try:
            with httpx.Client(
                timeout=current_app.config["INTEGRATION_TIMEOUT_SECONDS"],
                transport=current_app.config.get("WEBHOOK_HTTP_TRANSPORT"),
            ) as client:
                response = client.post(url, json=body)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            current_app.logger.warning("%s notification for %s failed: %s", sink_type, event, exc)
            continue
        if response.is_success:
            sent += 1
        else:
            current_app.logger.warning(
                "%s notification for %s rejected with HTTP %s", sink_type, event, response.status_code
            )
    return sent


def create_integration(tenant_id: int, integration_type: str, webhook_url: str) -> dict:
    if integration_type not in INTEGRATION_TYPES:
        raise ValidationError(f"type must be one of: {', '.join(INTEGRATION_TYPES)}")
    parsed = urlparse(webhook_url or "")
    if parsed.scheme != "https" or not parsed.netloc:
        raise ValidationError("webhook_url must be an https URL")

    def _op():
        integration = Integration(type=integration_type, webhook_url=webhook_url, is_active=True)
        db.session.add(integration)
        db.session.flush()
        return integration.to_dict()

    return run_in_tenant(tenant_id, _op)


def set_integration_active(tenant_id: int, integration_id: int, is_active: bool) -> dict:
    def _op():
        integration = db.session.query(Integration).filter_by(id=integration_id).first()
        if not integration:
            raise NotFoundError("Integration")
        integration.is_active = bool(is_active)
        db.session.flush()
        return integration.to_dict()

    return run_in_tenant(tenant_id, _op)
