from __future__ import annotations

from ..extensions import db


class DocumentSequence(db.Model):
    """
    Counter backing invoice and purchase-order numbers.

    sequence_key is the full number prefix, e.g. "INV-ABC-20261018" or "PO".
    Allocation is an atomic UPDATE next_number = next_number + 1, so two
    writers can never observe the same value.
    """
    __tablename__ = "document_sequences"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    sequence_key = db.Column(db.String(64), nullable=False, unique=True)
    next_number = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())


class SystemSetting(db.Model):
    """Free-form (category, key) -> value setting row."""
    __tablename__ = "system_settings"
    __table_args__ = (
        db.UniqueConstraint("category", "key", name="uq_system_settings_category_key"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    category = db.Column(db.String(64), nullable=False)
    key = db.Column(db.String(128), nullable=False)
    value = db.Column(db.Text, nullable=True)

    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def to_dict(self) -> dict:
        return {"category": self.category, "key": self.key, "value": self.value}
