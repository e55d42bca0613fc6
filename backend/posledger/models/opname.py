from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


# draft -> pending -> approved
# draft | pending -> canceled
OPNAME_STATUSES = ("draft", "pending", "approved", "canceled")


class StockOpname(db.Model):
    """
    Stock-take session for one shop.

    Physical counts are compared to a system_stock snapshot taken when the
    item was last written in draft. Approval overwrites stock with the
    physical count; an opname can be approved at most once.
    """
    __tablename__ = "stock_opnames"
    __table_args__ = (
        db.Index("ix_stock_opnames_shop_status", "shop_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    shop_id = db.Column(db.Integer, db.ForeignKey("shops.id"), nullable=False, index=True)
    status = db.Column(db.String(16), nullable=False, default="draft", index=True)

    conducted_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    approved_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    conducted_at = db.Column(db.DateTime(timezone=True), nullable=False)
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    shop = db.relationship("Shop")
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<StockOpname id={self.id} shop_id={self.shop_id} status={self.status}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "shop_id": self.shop_id,
            "status": self.status,
            "conducted_by": self.conducted_by,
            "approved_by": self.approved_by,
            "conducted_at": to_utc_z(self.conducted_at),
            "approved_at": to_utc_z(self.approved_at) if self.approved_at else None,
            "notes": self.notes,
            "version_id": self.version_id,
        }


class StockOpnameItem(db.Model):
    __tablename__ = "stock_opname_items"
    __table_args__ = (
        db.UniqueConstraint("stock_opname_id", "product_id", name="uq_stock_opname_items_opname_product"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    stock_opname_id = db.Column(db.Integer, db.ForeignKey("stock_opnames.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    physical_stock = db.Column(db.Integer, nullable=False)
    system_stock = db.Column(db.Integer, nullable=False)
    # physical_stock - system_stock at snapshot time
    variance = db.Column(db.Integer, nullable=False)
    notes = db.Column(db.Text, nullable=True)

    applied_at = db.Column(db.DateTime(timezone=True), nullable=True)

    stock_opname = db.relationship(
        "StockOpname",
        backref=db.backref("items", lazy=True, order_by="StockOpnameItem.id", cascade="all, delete-orphan"),
    )
    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "stock_opname_id": self.stock_opname_id,
            "product_id": self.product_id,
            "physical_stock": self.physical_stock,
            "system_stock": self.system_stock,
            "variance": self.variance,
            "notes": self.notes,
            "applied_at": to_utc_z(self.applied_at) if self.applied_at else None,
        }
