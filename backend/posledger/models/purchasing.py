from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


# draft -> ordered -> partial -> received
# draft | ordered | partial -> canceled
PO_STATUSES = ("draft", "ordered", "partial", "received", "canceled")


class PurchaseOrder(db.Model):
    """
    Purchase order from a supplier into one shop.

    Stock is only touched on receipt; each receipt posts one "purchase"
    movement per stock-tracked item that received additional units.
    """
    __tablename__ = "purchase_orders"
    __table_args__ = (
        db.Index("ix_purchase_orders_shop_status", "shop_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    po_number = db.Column(db.String(32), nullable=False, unique=True)

    supplier_id = db.Column(db.Integer, db.ForeignKey("suppliers.id"), nullable=False, index=True)
    shop_id = db.Column(db.Integer, db.ForeignKey("shops.id"), nullable=False, index=True)

    status = db.Column(db.String(16), nullable=False, default="draft", index=True)
    total = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    order_date = db.Column(db.DateTime(timezone=True), nullable=False)
    notes = db.Column(db.Text, nullable=True)

    created_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    received_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    supplier = db.relationship("Supplier")
    shop = db.relationship("Shop")
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<PurchaseOrder id={self.id} po={self.po_number!r} status={self.status}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "po_number": self.po_number,
            "supplier_id": self.supplier_id,
            "shop_id": self.shop_id,
            "status": self.status,
            "total": str(self.total) if self.total is not None else None,
            "order_date": to_utc_z(self.order_date),
            "notes": self.notes,
            "created_by": self.created_by,
            "received_by": self.received_by,
            "version_id": self.version_id,
        }


class PurchaseOrderItem(db.Model):
    __tablename__ = "purchase_order_items"
    __table_args__ = (
        db.CheckConstraint("received_quantity <= quantity", name="ck_po_items_received_le_ordered"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    purchase_order_id = db.Column(db.Integer, db.ForeignKey("purchase_orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False)
    received_quantity = db.Column(db.Integer, nullable=False, default=0)
    unit_price = db.Column(db.Numeric(12, 2), nullable=False)

    purchase_order = db.relationship(
        "PurchaseOrder",
        backref=db.backref("items", lazy=True, order_by="PurchaseOrderItem.id", cascade="all, delete-orphan"),
    )
    product = db.relationship("Product")

    @property
    def is_fully_received(self) -> bool:
        return self.received_quantity >= self.quantity

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "purchase_order_id": self.purchase_order_id,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "received_quantity": self.received_quantity,
            "unit_price": str(self.unit_price) if self.unit_price is not None else None,
        }
