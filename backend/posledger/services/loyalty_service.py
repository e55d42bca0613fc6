from __future__ import annotations

from decimal import Decimal, ROUND_FLOOR

from flask import current_app

from ..extensions import db
from ..models import Customer, Transaction
from .concurrency import lock_for_update
from .settings_service import points_conversion_rate


def points_for_amount(total: Decimal) -> int:
    """floor(total / rate); never negative."""
    if total is None or total <= 0:
        return 0
    rate = points_conversion_rate()
    return int((Decimal(total) / Decimal(rate)).to_integral_value(rounding=ROUND_FLOOR))


def award_points(transaction: Transaction) -> int:
    """
    Credit loyalty points for a completed sale. Does not commit.

    Awards at most once per transaction: points_awarded doubles as the
    "already credited" marker and as the amount a void claws back.
    """
    if transaction.transaction_type != "sale" or transaction.customer_id is None:
        return 0
    if transaction.payment_status != "completed" or transaction.points_awarded:
        return 0

    points = points_for_amount(transaction.total_amount)
    if points <= 0:
        return 0

    customer = lock_for_update(db.session.query(Customer).filter_by(id=transaction.customer_id)).first()
    if customer is None:
        return 0

    customer.points = (customer.points or 0) + points
    transaction.points_awarded = points
    current_app.logger.info(
        "Awarded %d points to customer %s for %s", points, customer.id, transaction.invoice_number
    )
    return points


def revoke_points(transaction: Transaction) -> int:
    """Claw back points_awarded from the customer. Does not commit."""
    points = transaction.points_awarded or 0
    if points <= 0 or transaction.customer_id is None:
        return 0

    customer = lock_for_update(db.session.query(Customer).filter_by(id=transaction.customer_id)).first()
    if customer is None:
        return 0

    customer.points = (customer.points or 0) - points
    current_app.logger.info(
        "Revoked %d points from customer %s for %s", points, customer.id, transaction.invoice_number
    )
    return points
