from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


def _money(value):
    return str(value) if value is not None else None


class Product(db.Model):
    """
    Product master data.

    SKUs are globally unique. Products are shared across shops; per-shop
    quantities live in StockRecord and per-shop prices in PriceRule.

    SOFT DELETE: deleted_at is set and is_active cleared. StockRecords and
    StockMovements are never removed, so history and ledger replay survive.

    uses_stock=False marks services and other untracked items: they can be
    sold without stock checks and never produce movements.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.Index("ix_products_active", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sku = db.Column(db.String(64), nullable=False, unique=True)
    name = db.Column(db.String(255), nullable=False)

    selling_price = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    # Cost basis; overwritten by purchase-order receipts
    purchase_price = db.Column(db.Numeric(12, 2), nullable=False, default=0)

    uses_stock = db.Column(db.Boolean, nullable=False, default=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_sellable(self) -> bool:
        return self.is_active and self.deleted_at is None

    def __repr__(self) -> str:
        return f"<Product id={self.id} sku={self.sku!r} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sku": self.sku,
            "name": self.name,
            "selling_price": _money(self.selling_price),
            "purchase_price": _money(self.purchase_price),
            "uses_stock": self.uses_stock,
            "is_active": self.is_active,
            "deleted_at": to_utc_z(self.deleted_at) if self.deleted_at else None,
            "version_id": self.version_id,
        }


class PriceCategory(db.Model):
    """Named pricing tier (retail, wholesale, member...)."""
    __tablename__ = "price_categories"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(128), nullable=False, unique=True)
    description = db.Column(db.Text, nullable=True)


class PriceRule(db.Model):
    """
    Tiered price for a product within a price category.

    shop_id NULL means the rule applies to every shop. When a shop-specific
    rule and a global rule both match, the shop-specific one wins; within one
    scope the highest min_quantity not above the requested quantity wins.
    """
    __tablename__ = "price_rules"
    __table_args__ = (
        db.Index("ix_price_rules_lookup", "product_id", "price_category_id", "shop_id", "min_quantity"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    shop_id = db.Column(db.Integer, db.ForeignKey("shops.id"), nullable=True, index=True)
    price_category_id = db.Column(db.Integer, db.ForeignKey("price_categories.id"), nullable=False, index=True)

    min_quantity = db.Column(db.Integer, nullable=False, default=1)
    price = db.Column(db.Numeric(12, 2), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    product = db.relationship("Product", backref=db.backref("price_rules", lazy=True))
    price_category = db.relationship("PriceCategory")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "shop_id": self.shop_id,
            "price_category_id": self.price_category_id,
            "min_quantity": self.min_quantity,
            "price": _money(self.price),
            "is_active": self.is_active,
        }


class Customer(db.Model):
    __tablename__ = "customers"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    phone = db.Column(db.String(64), nullable=True)
    email = db.Column(db.String(255), nullable=True)

    # Loyalty balance; may dip below zero when a void claws back spent points
    points = db.Column(db.Integer, nullable=False, default=0)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "phone": self.phone,
            "email": self.email,
            "points": self.points,
            "is_active": self.is_active,
        }


class PaymentMethod(db.Model):
    __tablename__ = "payment_methods"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(128), nullable=False, unique=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)


class Supplier(db.Model):
    __tablename__ = "suppliers"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    phone = db.Column(db.String(64), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
