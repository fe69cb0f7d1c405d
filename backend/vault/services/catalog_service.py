# Overview: Service-layer operations for catalog items and variants.

from __future__ import annotations

import re

from sqlalchemy.exc import IntegrityError

from ..errors import AppError, NotFoundError, ValidationError
from ..extensions import db
from ..models import Item, ItemVariant
from . import webhook_service
from .tenant_service import run_in_tenant


ITEM_WRITABLE_FIELDS = {"name", "slug", "description", "price", "stock_quantity", "is_active"}


def slugify(value: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", (value or "").lower()).strip("-")
    return slug[:255]


def _non_negative_int_or_none(value, field: str) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValidationError(f"{field} must be a non-negative integer")
    return value


def _clean_item_fields(data: dict, *, creating: bool) -> dict:
    unknown = set(data) - ITEM_WRITABLE_FIELDS
    if unknown:
        raise ValidationError(f"Unknown fields: {', '.join(sorted(unknown))}")

    cleaned = {}
    if "name" in data or creating:
        name = (data.get("name") or "").strip()
        if not name:
            raise ValidationError("name is required")
        cleaned["name"] = name[:255]
    if "slug" in data or creating:
        slug = slugify(data.get("slug") or cleaned.get("name", ""))
        if not slug:
            raise ValidationError("slug is required")
        cleaned["slug"] = slug
    if "price" in data or creating:
        price = _non_negative_int_or_none(data.get("price"), "price")
        if price is None:
            raise ValidationError("price is required")
        cleaned["price"] = price
    if "stock_quantity" in data:
        cleaned["stock_quantity"] = _non_negative_int_or_none(data["stock_quantity"], "stock_quantity")
    if "description" in data:
        cleaned["description"] = data["description"]
    if "is_active" in data:
        cleaned["is_active"] = bool(data["is_active"])
    return cleaned


def create_item(tenant_id: int, data: dict) -> dict:
    """Add a catalog item. Publishes item.created."""
    fields = _clean_item_fields(data, creating=True)

    def _op():
        item = Item(**fields)
        db.session.add(item)
        db.session.flush()
        return item.to_dict()

    try:
        item = run_in_tenant(tenant_id, _op)
    except IntegrityError:
        raise AppError("An item with this slug already exists", status_code=409, code="CONFLICT")

    webhook_service.publish(tenant_id, webhook_service.ITEM_CREATED, {"itemId": item["id"], "slug": item["slug"]})
    return item


def update_item(tenant_id: int, item_id: int, data: dict) -> dict:
    """Patch an item. Existing orders keep their snapshots. Publishes item.updated."""
    fields = _clean_item_fields(data, creating=False)

    def _op():
        item = db.session.query(Item).filter_by(id=item_id).first()
        if not item:
            raise NotFoundError("Item")
        for key, value in fields.items():
            setattr(item, key, value)
        db.session.flush()
        return item.to_dict()

    try:
        item = run_in_tenant(tenant_id, _op)
    except IntegrityError:
        raise AppError("An item with this slug already exists", status_code=409, code="CONFLICT")

    webhook_service.publish(tenant_id, webhook_service.ITEM_UPDATED, {"itemId": item["id"]})
    return item


def add_variant(
    tenant_id: int,
    item_id: int,
    name: str,
    *,
    options: dict | None = None,
    price_override: int | None = None,
    stock_quantity: int | None = None,
) -> dict:
    if not name or not name.strip():
        raise ValidationError("name is required")
    if options is not None and not isinstance(options, dict):
        raise ValidationError("options must be an object")
    price_override = _non_negative_int_or_none(price_override, "price_override")
    stock_quantity = _non_negative_int_or_none(stock_quantity, "stock_quantity")

    def _op():
        item = db.session.query(Item).filter_by(id=item_id).first()
        if not item:
            raise NotFoundError("Item")
        variant = ItemVariant(
            item_id=item.id,
            name=name.strip(),
            options=options or {},
            price_override=price_override,
            stock_quantity=stock_quantity,
        )
        db.session.add(variant)
        db.session.flush()
        return variant.to_dict()

    variant = run_in_tenant(tenant_id, _op)
    webhook_service.publish(tenant_id, webhook_service.ITEM_UPDATED, {"itemId": item_id})
    return variant


def get_item(tenant_id: int, item_id: int) -> dict:
    def _op():
        item = db.session.query(Item).filter_by(id=item_id).first()
        if not item:
            raise NotFoundError("Item")
        data = item.to_dict()
        data["variants"] = [v.to_dict() for v in item.variants]
        return data

    return run_in_tenant(tenant_id, _op)


def list_items(tenant_id: int, search: str | None = None, page: int = 1, page_size: int = 20) -> dict:
    page = max(1, page)
    page_size = max(1, min(page_size, 100))

    def _op():
        query = db.session.query(Item)
        if search:
            query = query.filter(Item.name.ilike(f"%{search}%"))
        total = query.count()
        rows = query.order_by(Item.name, Item.id).offset((page - 1) * page_size).limit(page_size).all()
        return {"items": [i.to_dict() for i in rows], "page": page, "pageSize": page_size, "total": total}

    return run_in_tenant(tenant_id, _op)
