# Overview: Public API routes for catalog items and members.

from flask import Blueprint, request, g, current_app

from ..decorators import require_api_key, require_capability
from ..errors import AppError, ValidationError
from ..responses import api_error, api_paginated, api_success, internal_error
from ..services import catalog_service, member_service
from ..validation import parse_int_arg

catalog_bp = Blueprint("catalog", __name__, url_prefix="/api/v1")


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _paging() -> tuple[int, int]:
    page = parse_int_arg(request.args.get("page"), "page", default=1)
    page_size = parse_int_arg(request.args.get("pageSize"), "pageSize", default=20, maximum=100)
    return page, page_size


@catalog_bp.get("/items")
@require_api_key
@require_capability("items:read")
def list_items_route():
    try:
        page, page_size = _paging()
        result = catalog_service.list_items(g.org_id, search=request.args.get("search"), page=page, page_size=page_size)
        return api_paginated(result["items"], result["page"], result["pageSize"], result["total"])
    except AppError as e:
        return api_error(e)
    except Exception:
        current_app.logger.exception("Item listing failed")
        return internal_error()


@catalog_bp.get("/items/<int:item_id>")
@require_api_key
@require_capability("items:read")
def get_item_route(item_id: int):
    try:
        return api_success(catalog_service.get_item(g.org_id, item_id))
    except AppError as e:
        return api_error(e)
    except Exception:
        current_app.logger.exception("Item lookup failed")
        return internal_error()


@catalog_bp.post("/items")
@require_api_key
@require_capability("items:write")
def create_item_route():
    try:
        return api_success(catalog_service.create_item(g.org_id, _json_body()), status=201)
    except AppError as e:
        return api_error(e)
    except Exception:
        current_app.logger.exception("Item creation failed")
        return internal_error()


@catalog_bp.patch("/items/<int:item_id>")
@require_api_key
@require_capability("items:write")
def update_item_route(item_id: int):
    try:
        return api_success(catalog_service.update_item(g.org_id, item_id, _json_body()))
    except AppError as e:
        return api_error(e)
    except Exception:
        current_app.logger.exception("Item update failed")
        return internal_error()


@catalog_bp.get("/members")
@require_api_key
@require_capability("members:read")
def list_members_route():
    try:
        page, page_size = _paging()
        result = member_service.list_members(g.org_id, page=page, page_size=page_size)
        return api_paginated(result["members"], result["page"], result["pageSize"], result["total"])
    except AppError as e:
        return api_error(e)
    except Exception:
        current_app.logger.exception("Member listing failed")
        return internal_error()


@catalog_bp.get("/members/<int:member_id>")
@require_api_key
@require_capability("members:read")
def get_member_route(member_id: int):
    try:
        return api_success(member_service.get_member(g.org_id, member_id))
    except AppError as e:
        return api_error(e)
    except Exception:
        current_app.logger.exception("Member lookup failed")
        return internal_error()
