# Overview: Public API routes for reading orders.

from flask import Blueprint, request, g, current_app

from ..decorators import require_api_key, require_capability
from ..errors import AppError
from ..responses import api_error, api_paginated, api_success, internal_error
from ..services import order_service
from ..validation import parse_int_arg

orders_bp = Blueprint("orders", __name__, url_prefix="/api/v1/orders")


@orders_bp.get("")
@require_api_key
@require_capability("orders:read")
def list_orders_route():
    try:
        page = parse_int_arg(request.args.get("page"), "page", default=1)
        page_size = parse_int_arg(request.args.get("pageSize"), "pageSize", default=20, maximum=100)
        result = order_service.list_orders(
            g.org_id,
            status=request.args.get("status") or None,
            page=page,
            page_size=page_size,
        )
        return api_paginated(result["orders"], result["page"], result["pageSize"], result["total"])
    except AppError as e:
        return api_error(e)
    except Exception:
        current_app.logger.exception("Order listing failed")
        return internal_error()


@orders_bp.get("/<int:order_id>")
@require_api_key
@require_capability("orders:read")
def get_order_route(order_id: int):
    try:
        return api_success(order_service.get_order(g.org_id, order_id))
    except AppError as e:
        return api_error(e)
    except Exception:
        current_app.logger.exception("Order lookup failed")
        return internal_error()
