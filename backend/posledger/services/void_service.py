# Overview: Service-layer void engine; compensating reversal of sales and returns.

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from flask import current_app

from ..authorization import Actor, require_shop_access
from ..errors import InvalidStateTransition, NotFound, ValidationError, VoidWindowExpired
from ..extensions import db
from ..models import Transaction, TransactionItem, TransactionPayment, User
from ..time_utils import to_utc_naive, utcnow
from .concurrency import begin_write, lock_for_update, run_with_retry
from .loyalty_service import revoke_points
from .transaction_service import post_stock_effects


REVERSIBLE_TYPES = {"sale": "return", "return": "sale"}


@dataclass(frozen=True)
class VoidResult:
    original: Transaction
    # None for adjustment transactions, which have no automatic reversal
    reversal: Transaction | None


def _check_void_window(actor: Actor, transaction: Transaction, now: datetime) -> None:
    if actor.is_elevated:
        return
    hours = int(current_app.config.get("VOID_WINDOW_HOURS", 24))
    age = to_utc_naive(now) - to_utc_naive(transaction.transaction_date)
    if age > timedelta(hours=hours):
        current_app.logger.warning(
            "Void of %s rejected for user %s: outside %dh window", transaction.invoice_number, actor.user_id, hours
        )
        raise VoidWindowExpired(
            f"Transactions can only be voided within {hours} hours",
            details={"invoice_number": transaction.invoice_number},
        )


def _create_reversal(original: Transaction, actor: Actor, now: datetime) -> Transaction:
    reversal = Transaction(
        invoice_number=f"VOID-{original.invoice_number}",
        transaction_type=REVERSIBLE_TYPES[original.transaction_type],
        shop_id=original.shop_id,
        user_id=actor.user_id,
        customer_id=original.customer_id,
        subtotal=original.subtotal,
        discount_amount=original.discount_amount,
        tax_amount=original.tax_amount,
        service_fee=original.service_fee,
        total_amount=original.total_amount,
        payment_method_id=original.payment_method_id,
        payment_status="completed",
        transaction_date=now,
        notes=f"Automatic reversal for voided transaction {original.invoice_number}",
        reversal_of_id=original.id,
    )
    db.session.add(reversal)
    db.session.flush()

    for item in original.items:
        db.session.add(
            TransactionItem(
                transaction_id=reversal.id,
                product_id=item.product_id,
                price_category_id=item.price_category_id,
                quantity=item.quantity,
                unit_price=item.unit_price,
                purchase_price=item.purchase_price,
                discount_amount=item.discount_amount,
                tax_amount=item.tax_amount,
                subtotal=item.subtotal,
            )
        )
    db.session.add(
        TransactionPayment(
            transaction_id=reversal.id,
            payment_method_id=original.payment_method_id,
            amount=original.total_amount,
            reference=f"Reversal for {original.invoice_number}",
            payment_date=now,
            user_id=actor.user_id,
        )
    )
    db.session.flush()
    db.session.refresh(reversal)

    # Inverse of the original's stock effect
    sign = 1 if original.transaction_type == "sale" else -1
    post_stock_effects(
        reversal,
        sign=sign,
        movement_type="void",
        user_id=actor.user_id,
        notes=f"Void reversal for: {original.invoice_number}",
    )
    return reversal


def void_transaction(
    actor: Actor,
    invoice_number: str,
    reason: str | None = None,
    now: datetime | None = None,
) -> VoidResult:
    """
    Void a transaction by compensating reversal.

    Sales and returns get a reversal of the opposite type ("VOID-{invoice}")
    with identical items, a completed payment equal to the total, and one
    inverse "void" movement per stock-tracked item. Adjustment transactions
    are only marked refunded: their stock effect is not reversed.

    The original is never edited beyond payment_status="refunded" and an
    appended audit note. Awarded loyalty points are clawed back.
    """
    if not invoice_number:
        raise ValidationError("invoice_number is required")

    def _op():
        begin_write()
        current = now or utcnow()

        original = lock_for_update(
            db.session.query(Transaction).filter_by(invoice_number=invoice_number)
        ).first()
        if original is None:
            raise NotFound("Transaction not found", details={"invoice_number": invoice_number})

        require_shop_access(actor, original.shop_id)

        if original.payment_status == "refunded":
            raise InvalidStateTransition(
                "This transaction has already been voided/refunded",
                details={"invoice_number": invoice_number},
            )
        if original.is_reversal:
            raise InvalidStateTransition(
                "Reversal transactions cannot be voided",
                details={"invoice_number": invoice_number},
            )

        _check_void_window(actor, original, current)

        reversal = None
        if original.transaction_type in REVERSIBLE_TYPES:
            reversal = _create_reversal(original, actor, current)

        user = db.session.get(User, actor.user_id)
        who = user.name if user else f"user #{actor.user_id}"
        note = f"VOIDED by {who} on {current:%Y-%m-%d %H:%M:%S}"
        if reason:
            note = f"{note}: {reason}"
        original.notes = f"{original.notes} | {note}" if original.notes else note
        original.payment_status = "refunded"

        revoke_points(original)

        db.session.commit()
        current_app.logger.info(
            "Transaction %s voided by user %s (reversal=%s)",
            invoice_number, actor.user_id, reversal.invoice_number if reversal else None,
        )
        return VoidResult(original=original, reversal=reversal)

    return run_with_retry(_op)
