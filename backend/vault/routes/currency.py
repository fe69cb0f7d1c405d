# Overview: Public API routes for the currency ledger; parses input and returns JSON envelopes.

from flask import Blueprint, request, g, current_app

from ..decorators import require_api_key, require_capability
from ..errors import AppError, ValidationError
from ..responses import api_error, api_success, internal_error
from ..services import currency_service
from ..validation import parse_int_arg, require_user_id

currency_bp = Blueprint("currency", __name__, url_prefix="/api/v1/currency")

API_ACTOR = "api"
# Stored key is "api:<key id>:<header>" in a 128-char column
MAX_IDEMPOTENCY_HEADER = 100


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _api_reference() -> tuple:
    return ("api", g.api_principal.api_key_id)


def _api_idempotency_key() -> str | None:
    """Idempotency-Key header, namespaced per API key so it cannot collide with internal keys."""
    header = (request.headers.get("Idempotency-Key") or "").strip()
    if not header:
        return None
    if len(header) > MAX_IDEMPOTENCY_HEADER:
        raise ValidationError(f"Idempotency-Key must be at most {MAX_IDEMPOTENCY_HEADER} characters")
    return f"api:{g.api_principal.api_key_id}:{header}"


@currency_bp.post("/credit")
@require_api_key
@require_capability("currency:write")
def credit_route():
    try:
        data = _json_body()
        result = currency_service.credit(
            g.org_id,
            data.get("userId"),
            data.get("amount"),
            data.get("reason"),
            performed_by=API_ACTOR,
            reference=_api_reference(),
            idempotency_key=_api_idempotency_key(),
        )
        return api_success(result.to_dict())
    except AppError as e:
        return api_error(e)
    except Exception:
        current_app.logger.exception("Currency credit failed")
        return internal_error()


@currency_bp.post("/debit")
@require_api_key
@require_capability("currency:write")
def debit_route():
    try:
        data = _json_body()
        result = currency_service.debit(
            g.org_id,
            data.get("userId"),
            data.get("amount"),
            data.get("reason"),
            performed_by=API_ACTOR,
            reference=_api_reference(),
            idempotency_key=_api_idempotency_key(),
        )
        return api_success(result.to_dict())
    except AppError as e:
        return api_error(e)
    except Exception:
        current_app.logger.exception("Currency debit failed")
        return internal_error()


@currency_bp.post("/distribute")
@require_api_key
@require_capability("currency:write")
def distribute_route():
    try:
        data = _json_body()
        result = currency_service.bulk_distribute(
            g.org_id,
            data.get("userIds"),
            data.get("amount"),
            data.get("reason"),
            performed_by=API_ACTOR,
        )
        return api_success(result.to_dict())
    except AppError as e:
        return api_error(e)
    except Exception:
        current_app.logger.exception("Currency distribution failed")
        return internal_error()


@currency_bp.get("/balances/<user_id>")
@require_api_key
@require_capability("currency:read")
def balance_route(user_id):
    try:
        user_id = require_user_id(user_id)
        balance = currency_service.get_balance(g.org_id, user_id)
        return api_success({"userId": user_id, "balance": balance})
    except AppError as e:
        return api_error(e)
    except Exception:
        current_app.logger.exception("Balance lookup failed")
        return internal_error()


@currency_bp.get("/transactions")
@require_api_key
@require_capability("currency:read")
def transactions_route():
    try:
        user_id = request.args.get("userId")
        if user_id is not None:
            user_id = require_user_id(user_id)
        limit = parse_int_arg(request.args.get("limit"), "limit", default=100, maximum=500)
        before_id = request.args.get("beforeId")
        if before_id is not None:
            before_id = parse_int_arg(before_id, "beforeId", default=0)
        rows = currency_service.list_transactions(g.org_id, user_id=user_id, limit=limit, before_id=before_id)
        return api_success(rows)
    except AppError as e:
        return api_error(e)
    except Exception:
        current_app.logger.exception("Transaction listing failed")
        return internal_error()
