from __future__ import annotations

import enum
from dataclasses import dataclass

from ..extensions import db
from ..time_utils import to_utc_z


MOVEMENT_TYPES = ("purchase", "sale", "adjustment", "return", "transfer", "void")

# Movement types whose debits must never drive stock below zero
GUARDED_MOVEMENT_TYPES = frozenset({"sale", "transfer"})


class ReferenceKind(str, enum.Enum):
    """What a stock movement points back to."""
    TRANSACTION = "transaction"
    PURCHASE_ORDER = "purchase_order"
    STOCK_OPNAME = "stock_opname"
    MANUAL_ADJUSTMENT = "manual_adjustment"
    TRANSFER = "transfer"


@dataclass(frozen=True)
class StockReference:
    """
    Typed back-reference carried by a StockMovement.

    Stored as (reference_type, reference_id). reference_id is the id of the
    referenced document; for TRANSFER it is the id of the paired movement,
    and for MANUAL_ADJUSTMENT it may be None.
    """
    kind: ReferenceKind
    id: int | None = None

    @classmethod
    def transaction(cls, transaction_id: int) -> "StockReference":
        return cls(ReferenceKind.TRANSACTION, transaction_id)

    @classmethod
    def purchase_order(cls, po_id: int) -> "StockReference":
        return cls(ReferenceKind.PURCHASE_ORDER, po_id)

    @classmethod
    def stock_opname(cls, opname_id: int) -> "StockReference":
        return cls(ReferenceKind.STOCK_OPNAME, opname_id)

    @classmethod
    def manual(cls) -> "StockReference":
        return cls(ReferenceKind.MANUAL_ADJUSTMENT, None)

    @classmethod
    def transfer(cls, paired_movement_id: int | None = None) -> "StockReference":
        return cls(ReferenceKind.TRANSFER, paired_movement_id)


class StockRecord(db.Model):
    """
    Current quantity of one product in one shop.

    Created lazily on the first stock-affecting event. Rows are locked with
    SELECT ... FOR UPDATE before every change, and every change of ``stock``
    is paired with exactly one StockMovement carrying the same signed delta.
    """
    __tablename__ = "stock_records"
    __table_args__ = (
        db.UniqueConstraint("product_id", "shop_id", name="uq_stock_records_product_shop"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    shop_id = db.Column(db.Integer, db.ForeignKey("shops.id"), nullable=False, index=True)

    stock = db.Column(db.Integer, nullable=False, default=0)
    min_stock = db.Column(db.Integer, nullable=False, default=0)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    product = db.relationship("Product", backref=db.backref("stock_records", lazy=True))
    shop = db.relationship("Shop")
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_low(self) -> bool:
        return self.stock <= self.min_stock

    def __repr__(self) -> str:
        return f"<StockRecord product_id={self.product_id} shop_id={self.shop_id} stock={self.stock}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "shop_id": self.shop_id,
            "stock": self.stock,
            "min_stock": self.min_stock,
            "version_id": self.version_id,
        }


class StockMovement(db.Model):
    """
    Append-only stock audit trail.

    IMMUTABILITY: rows are never updated or deleted (enforced by ORM event
    listeners in posledger.immutability). The one permitted edit is setting
    reference_id on the first leg of a transfer once its paired leg exists.

    LEDGER INVARIANT: for every StockRecord,
        stock == initial + SUM(quantity) over its movements
    """
    __tablename__ = "stock_movements"
    __table_args__ = (
        db.Index("ix_stock_movements_product_shop_created", "product_id", "shop_id", "created_at"),
        db.Index("ix_stock_movements_reference", "reference_type", "reference_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    shop_id = db.Column(db.Integer, db.ForeignKey("shops.id"), nullable=False, index=True)

    # Signed: positive adds stock, negative removes
    quantity = db.Column(db.Integer, nullable=False)
    movement_type = db.Column(db.String(32), nullable=False, index=True)

    reference_type = db.Column(db.String(32), nullable=False)
    reference_id = db.Column(db.Integer, nullable=True)

    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    product = db.relationship("Product")

    @property
    def reference(self) -> StockReference:
        return StockReference(ReferenceKind(self.reference_type), self.reference_id)

    def __repr__(self) -> str:
        return (
            f"<StockMovement id={self.id} product_id={self.product_id} shop_id={self.shop_id} "
            f"quantity={self.quantity} type={self.movement_type}>"
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "shop_id": self.shop_id,
            "quantity": self.quantity,
            "movement_type": self.movement_type,
            "reference_type": self.reference_type,
            "reference_id": self.reference_id,
            "user_id": self.user_id,
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
        }
