from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


TRANSACTION_TYPES = ("sale", "return", "adjustment")
PAYMENT_STATUSES = ("pending", "partial", "completed", "refunded")


def _money(value):
    return str(value) if value is not None else None


class Transaction(db.Model):
    """
    Sale, return or stock adjustment document.

    Items are immutable once written; payments are append-only. A void never
    edits the document beyond flipping payment_status to "refunded" and
    appending an audit note: the compensating effects live on a separate
    reversal transaction whose reversal_of_id points back here.
    """
    __tablename__ = "transactions"
    __table_args__ = (
        db.Index("ix_transactions_shop_date", "shop_id", "transaction_date"),
        db.Index("ix_transactions_shop_status", "shop_id", "payment_status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # Globally unique, e.g. "ABC-20261018-0001" or "VOID-ABC-20261018-0001"
    invoice_number = db.Column(db.String(64), nullable=False, unique=True)
    transaction_type = db.Column(db.String(16), nullable=False, index=True)

    shop_id = db.Column(db.Integer, db.ForeignKey("shops.id"), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=True, index=True)

    subtotal = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    discount_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    tax_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    service_fee = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    total_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)

    payment_method_id = db.Column(db.Integer, db.ForeignKey("payment_methods.id"), nullable=True)
    payment_status = db.Column(db.String(16), nullable=False, default="pending", index=True)

    transaction_date = db.Column(db.DateTime(timezone=True), nullable=False)
    notes = db.Column(db.Text, nullable=True)

    # Loyalty points credited for this sale (0 until awarded)
    points_awarded = db.Column(db.Integer, nullable=False, default=0)

    reversal_of_id = db.Column(db.Integer, db.ForeignKey("transactions.id"), nullable=True, index=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    shop = db.relationship("Shop")
    customer = db.relationship("Customer")
    reversal_of = db.relationship("Transaction", remote_side=[id])
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_reversal(self) -> bool:
        return self.reversal_of_id is not None

    def __repr__(self) -> str:
        return f"<Transaction id={self.id} invoice={self.invoice_number!r} type={self.transaction_type}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "invoice_number": self.invoice_number,
            "transaction_type": self.transaction_type,
            "shop_id": self.shop_id,
            "user_id": self.user_id,
            "customer_id": self.customer_id,
            "subtotal": _money(self.subtotal),
            "discount_amount": _money(self.discount_amount),
            "tax_amount": _money(self.tax_amount),
            "service_fee": _money(self.service_fee),
            "total_amount": _money(self.total_amount),
            "payment_method_id": self.payment_method_id,
            "payment_status": self.payment_status,
            "transaction_date": to_utc_z(self.transaction_date),
            "notes": self.notes,
            "points_awarded": self.points_awarded,
            "reversal_of_id": self.reversal_of_id,
            "version_id": self.version_id,
        }


class TransactionItem(db.Model):
    """Immutable line of a transaction, with a cost snapshot taken at sale time."""
    __tablename__ = "transaction_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    transaction_id = db.Column(db.Integer, db.ForeignKey("transactions.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    price_category_id = db.Column(db.Integer, db.ForeignKey("price_categories.id"), nullable=True)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price = db.Column(db.Numeric(12, 2), nullable=False)
    purchase_price = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    discount_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    tax_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    subtotal = db.Column(db.Numeric(12, 2), nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    transaction = db.relationship(
        "Transaction",
        backref=db.backref("items", lazy=True, order_by="TransactionItem.id"),
    )
    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "transaction_id": self.transaction_id,
            "product_id": self.product_id,
            "price_category_id": self.price_category_id,
            "quantity": self.quantity,
            "unit_price": _money(self.unit_price),
            "purchase_price": _money(self.purchase_price),
            "discount_amount": _money(self.discount_amount),
            "tax_amount": _money(self.tax_amount),
            "subtotal": _money(self.subtotal),
        }


class TransactionPayment(db.Model):
    """Append-only payment against a transaction. Split and partial payments are separate rows."""
    __tablename__ = "transaction_payments"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    transaction_id = db.Column(db.Integer, db.ForeignKey("transactions.id"), nullable=False, index=True)
    payment_method_id = db.Column(db.Integer, db.ForeignKey("payment_methods.id"), nullable=True)

    amount = db.Column(db.Numeric(12, 2), nullable=False)
    reference = db.Column(db.String(255), nullable=True)
    payment_date = db.Column(db.DateTime(timezone=True), nullable=False)

    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    transaction = db.relationship(
        "Transaction",
        backref=db.backref("payments", lazy=True, order_by="TransactionPayment.id"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "transaction_id": self.transaction_id,
            "payment_method_id": self.payment_method_id,
            "amount": _money(self.amount),
            "reference": self.reference,
            "payment_date": to_utc_z(self.payment_date),
            "user_id": self.user_id,
        }
