# backend/vault/routes/system.py
"""
System health endpoint.

Reports database connectivity and notification backlog for load balancers
and deployment debugging.
"""

import time
from flask import Blueprint, current_app
from sqlalchemy import text
from ..extensions import db
from ..models import WebhookDelivery
from ..models.webhooks import DELIVERY_FAILED
from ..services.dispatcher import get_dispatcher
from vault.time_utils import to_utc_z, utcnow

system_bp = Blueprint("system", __name__, url_prefix="/api")


def check_database_health() -> dict:
    start_time = time.time()
    try:
        db.session.execute(text("SELECT 1"))
        due_retries = db.session.query(WebhookDelivery).filter(
            WebhookDelivery.status == DELIVERY_FAILED,
            WebhookDelivery.next_retry_at.isnot(None),
            WebhookDelivery.next_retry_at <= utcnow(),
        ).count()
        db.session.rollback()

        elapsed_ms = (time.time() - start_time) * 1000
        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {"webhook_retries_due": due_retries},
        }
    except Exception:
        db.session.rollback()
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error",
        }


@system_bp.get("/health")
def health():
    """
    Returns:
    - 200: database reachable
    - 503: database unreachable
    """
    database_health = check_database_health()
    healthy = database_health["status"] == "healthy"

    return {
        "status": "healthy" if healthy else "unhealthy",
        "timestamp": to_utc_z(utcnow()),
        "notifier_mode": get_dispatcher().mode,
        "checks": {"database": database_health},
    }, (200 if healthy else 503)
