# Overview: Endpoints triggered by an external scheduler.

from flask import Blueprint, current_app, jsonify

from ..decorators import require_cron_secret
from ..errors import AppError
from ..responses import api_error, internal_error
from ..services import retry_service

cron_bp = Blueprint("cron", __name__, url_prefix="/api/cron")


@cron_bp.route("/webhooks", methods=["GET", "POST"])
@require_cron_secret
def process_webhook_retries_route():
    """Run one retry sweep. Returns {processed, succeeded, failed}."""
    try:
        summary = retry_service.process_retries()
        return jsonify(summary.to_dict()), 200
    except AppError as e:
        return api_error(e)
    except Exception:
        current_app.logger.exception("Webhook retry sweep failed")
        return internal_error()
