from __future__ import annotations

from flask import current_app

from ..errors import NotFound
from ..extensions import db
from ..models import Product
from ..time_utils import utcnow
from .concurrency import lock_for_update, run_with_retry


def soft_delete_product(product_id: int) -> Product:
    """
    Retire a product without losing its history.

    Sets deleted_at and clears is_active. StockRecords and StockMovements
    are left untouched so ledger replay and old transactions stay valid.
    Idempotent: deleting twice keeps the first deleted_at.
    """
    def _op():
        product = lock_for_update(db.session.query(Product).filter_by(id=product_id)).first()
        if product is None:
            raise NotFound("Product not found", details={"product_id": product_id})

        if product.deleted_at is None:
            product.deleted_at = utcnow()
        product.is_active = False

        db.session.commit()
        current_app.logger.info("Product %s (%s) soft-deleted", product.id, product.sku)
        return product

    return run_with_retry(_op)
