from __future__ import annotations

from ..extensions import db
from vault.time_utils import to_utc_z
from .tenancy import TenantScoped


class Item(TenantScoped, db.Model):
    """
    Catalog item purchasable with the tenant's currency.

    stock_quantity NULL means unlimited stock.
    """
    __tablename__ = "items"
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "slug", name="uq_items_tenant_slug"),
        db.CheckConstraint("stock_quantity IS NULL OR stock_quantity >= 0", name="ck_items_stock_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    slug = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    price = db.Column(db.Integer, nullable=False)
    stock_quantity = db.Column(db.Integer, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    variants = db.relationship("ItemVariant", backref="item", lazy=True, order_by="ItemVariant.id")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "slug": self.slug,
            "description": self.description,
            "price": self.price,
            "stock_quantity": self.stock_quantity,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class ItemVariant(TenantScoped, db.Model):
    """
    Purchasable variant of an item (e.g. size/color combination).

    price_override NULL falls back to the item price.
    stock_quantity NULL means unlimited stock for this variant.
    """
    __tablename__ = "item_variants"
    __table_args__ = (
        db.CheckConstraint("stock_quantity IS NULL OR stock_quantity >= 0", name="ck_variants_stock_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    item_id = db.Column(db.Integer, db.ForeignKey("items.id"), nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False)
    options = db.Column(db.JSON, nullable=False, default=dict)  # {"Size": "M", "Color": "Navy"}
    price_override = db.Column(db.Integer, nullable=True)
    stock_quantity = db.Column(db.Integer, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "item_id": self.item_id,
            "name": self.name,
            "options": self.options or {},
            "price_override": self.price_override,
            "stock_quantity": self.stock_quantity,
            "is_active": self.is_active,
        }
