# Overview: Service-layer transaction engine; sales, returns and stock adjustments with partial payments.

"""
Transaction engine.

create_transaction() runs as one unit of work:

1. Resolve unit prices (caller-supplied prices win over price rules)
2. Pre-check sale stock per product, summed over all lines
3. Compute totals: subtotal = SUM(unit_price * qty - item discount),
   total = subtotal - discount + tax + service fee
4. Allocate the invoice number
5. Persist transaction, items (with cost snapshot) and payments
6. Derive payment status
7. Post stock movements through the stock ledger
8. Award loyalty points on completed sales with a customer

Any failure rolls the whole unit back, invoice number included.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable

from flask import current_app
from sqlalchemy import func

from ..authorization import Actor, Visibility, require_shop_access
from ..errors import (
    InsufficientStock,
    InvalidStateTransition,
    NotFound,
    PaymentExceedsBalance,
    ValidationError,
)
from ..extensions import db
from ..models import (
    Customer,
    PaymentMethod,
    Product,
    Shop,
    StockReference,
    Transaction,
    TransactionItem,
    TransactionPayment,
)
from ..models.sales import TRANSACTION_TYPES
from ..time_utils import utcnow
from ..validation import CENT, ZERO, quantize_money, require_id, to_money, to_quantity
from . import stock_ledger
from .concurrency import begin_write, lock_for_update, run_with_retry
from .document_service import next_invoice_number
from .loyalty_service import award_points
from .pricing_service import resolve_unit_price


# Differences below one cent count as settled
PAYMENT_TOLERANCE = CENT

OPEN_PAYMENT_STATUSES = ("pending", "partial")


@dataclass(frozen=True)
class LineRequest:
    product_id: int
    quantity: int
    price_category_id: int | None = None
    # None: resolve through price rules
    unit_price: Decimal | int | str | None = None
    discount_amount: Decimal | int | str = ZERO
    tax_amount: Decimal | int | str = ZERO


@dataclass(frozen=True)
class PaymentRequest:
    amount: Decimal | int | str
    payment_method_id: int | None = None
    reference: str | None = None


@dataclass(frozen=True)
class PaymentSummary:
    total_paid: Decimal
    remaining_balance: Decimal


@dataclass(frozen=True)
class _PricedLine:
    product: Product
    quantity: int
    price_category_id: int | None
    unit_price: Decimal
    discount_amount: Decimal
    tax_amount: Decimal
    subtotal: Decimal


def determine_payment_status(total: Decimal, paid: Decimal) -> str:
    """
    completed when paid is within one cent of total, pending when nothing
    has been paid, partial otherwise.
    """
    if abs(Decimal(paid) - Decimal(total)) < PAYMENT_TOLERANCE:
        return "completed"
    if paid <= 0:
        return "pending"
    return "partial"


def _coerce_line(raw) -> LineRequest:
    if isinstance(raw, LineRequest):
        return raw
    if isinstance(raw, dict):
        try:
            return LineRequest(**raw)
        except TypeError as exc:
            raise ValidationError(f"Invalid item: {exc}")
    raise ValidationError("items must be LineRequest instances or dicts")


def _coerce_payment(raw) -> PaymentRequest:
    if isinstance(raw, PaymentRequest):
        return raw
    if isinstance(raw, dict):
        try:
            return PaymentRequest(**raw)
        except TypeError as exc:
            raise ValidationError(f"Invalid payment: {exc}")
    raise ValidationError("payments must be PaymentRequest instances or dicts")


def _stock_sign(transaction_type: str, is_stock_addition: bool) -> int:
    if transaction_type == "sale":
        return -1
    if transaction_type == "return":
        return 1
    return 1 if is_stock_addition else -1


def _price_lines(lines: list[LineRequest], shop_id: int) -> list[_PricedLine]:
    priced = []
    for index, line in enumerate(lines):
        product = db.session.query(Product).filter_by(id=line.product_id).first()
        if product is None:
            raise NotFound("Product not found", details={"product_id": line.product_id})
        if not product.is_sellable:
            raise ValidationError(
                f"Product is not available: {product.name}",
                details={"product_id": product.id},
            )

        if line.unit_price is None:
            unit_price = resolve_unit_price(product.id, line.price_category_id, shop_id, line.quantity)
        else:
            unit_price = to_money(line.unit_price, f"items[{index}].unit_price")
        discount = to_money(line.discount_amount, f"items[{index}].discount_amount")
        tax = to_money(line.tax_amount, f"items[{index}].tax_amount")

        subtotal = quantize_money(unit_price * line.quantity - discount)
        if subtotal < 0:
            raise ValidationError(
                f"items[{index}].discount_amount exceeds the line amount",
                details={"product_id": product.id},
            )

        priced.append(
            _PricedLine(
                product=product,
                quantity=line.quantity,
                price_category_id=line.price_category_id,
                unit_price=unit_price,
                discount_amount=discount,
                tax_amount=tax,
                subtotal=subtotal,
            )
        )
    return priced


def _precheck_sale_stock(priced: list[_PricedLine], shop_id: int) -> None:
    """Fail fast, before any write, if summed demand exceeds current stock."""
    demand = OrderedDict()
    for line in priced:
        if line.product.uses_stock:
            product, qty = demand.get(line.product.id, (line.product, 0))
            demand[line.product.id] = (product, qty + line.quantity)

    for product_id, (product, requested) in demand.items():
        available = stock_ledger.get_stock(product_id, shop_id)
        if available < requested:
            current_app.logger.warning(
                "Sale rejected, insufficient stock: product=%s shop=%s requested=%d available=%d",
                product_id, shop_id, requested, available,
            )
            raise InsufficientStock(
                product_id=product_id,
                shop_id=shop_id,
                requested=requested,
                available=available,
                product_name=product.name,
            )


def _require_payment_method(payment_method_id: int | None) -> None:
    if payment_method_id is None:
        return
    exists = db.session.query(PaymentMethod.id).filter_by(id=payment_method_id).first()
    if not exists:
        raise NotFound("Payment method not found", details={"payment_method_id": payment_method_id})


def total_paid(transaction_id: int) -> Decimal:
    paid = (
        db.session.query(func.coalesce(func.sum(TransactionPayment.amount), 0))
        .filter(TransactionPayment.transaction_id == transaction_id)
        .scalar()
    )
    return quantize_money(Decimal(paid))


def post_stock_effects(
    transaction: Transaction,
    *,
    sign: int,
    movement_type: str,
    user_id: int | None,
    notes: str | None = None,
) -> int:
    """Post one movement per stock-tracked item. Returns the number of movements written."""
    posted = 0
    for item in transaction.items:
        product = item.product or db.session.get(Product, item.product_id)
        if not product.uses_stock:
            continue
        stock_ledger.apply_movement(
            product_id=item.product_id,
            shop_id=transaction.shop_id,
            quantity=sign * item.quantity,
            movement_type=movement_type,
            reference=StockReference.transaction(transaction.id),
            user_id=user_id,
            notes=notes,
        )
        posted += 1
    return posted


def create_transaction(
    actor: Actor,
    shop_id: int,
    transaction_type: str,
    items: Iterable[LineRequest | dict],
    payments: Iterable[PaymentRequest | dict] = (),
    payment_method_id: int | None = None,
    customer_id: int | None = None,
    discount_amount=ZERO,
    tax_amount=ZERO,
    service_fee=ZERO,
    notes: str | None = None,
    is_stock_addition: bool = False,
) -> Transaction:
    """Create a sale, return or adjustment in one atomic unit. See module docstring."""
    if transaction_type not in TRANSACTION_TYPES:
        raise ValidationError(
            f"transaction_type must be one of: {', '.join(TRANSACTION_TYPES)}",
            details={"transaction_type": transaction_type},
        )
    require_id(shop_id, "shop_id")

    lines = [_coerce_line(raw) for raw in (items or [])]
    if not lines:
        raise ValidationError("At least one item is required")
    for index, line in enumerate(lines):
        require_id(line.product_id, f"items[{index}].product_id")
        to_quantity(line.quantity, f"items[{index}].quantity")

    payment_requests = [_coerce_payment(raw) for raw in (payments or [])]
    payment_amounts = []
    for index, payment in enumerate(payment_requests):
        amount = to_money(payment.amount, f"payments[{index}].amount")
        if amount <= 0:
            raise ValidationError(f"payments[{index}].amount must be greater than zero")
        payment_amounts.append(amount)

    header_discount = to_money(discount_amount, "discount_amount")
    header_tax = to_money(tax_amount, "tax_amount")
    header_fee = to_money(service_fee, "service_fee")

    require_shop_access(actor, shop_id)

    def _op():
        begin_write()

        shop = db.session.query(Shop).filter_by(id=shop_id).first()
        if shop is None:
            raise NotFound("Shop not found", details={"shop_id": shop_id})
        if not shop.is_active:
            raise ValidationError("Shop is inactive", details={"shop_id": shop_id})

        if customer_id is not None:
            if not db.session.query(Customer.id).filter_by(id=customer_id).first():
                raise NotFound("Customer not found", details={"customer_id": customer_id})
        _require_payment_method(payment_method_id)
        for payment in payment_requests:
            _require_payment_method(payment.payment_method_id)

        priced = _price_lines(lines, shop_id)
        if transaction_type == "sale":
            _precheck_sale_stock(priced, shop_id)

        subtotal = quantize_money(sum((line.subtotal for line in priced), ZERO))
        total = quantize_money(subtotal - header_discount + header_tax + header_fee)
        if total < 0:
            raise ValidationError("discount_amount exceeds the transaction amount")

        paid = quantize_money(sum(payment_amounts, ZERO))
        if paid - total >= PAYMENT_TOLERANCE:
            raise PaymentExceedsBalance(
                "Total payment exceeds transaction total",
                details={"total_amount": str(total), "paid": str(paid)},
            )

        now = utcnow()
        transaction = Transaction(
            invoice_number=next_invoice_number(shop, when=now),
            transaction_type=transaction_type,
            shop_id=shop_id,
            user_id=actor.user_id,
            customer_id=customer_id,
            subtotal=subtotal,
            discount_amount=header_discount,
            tax_amount=header_tax,
            service_fee=header_fee,
            total_amount=total,
            payment_method_id=payment_method_id,
            payment_status=determine_payment_status(total, paid),
            transaction_date=now,
            notes=notes,
        )
        db.session.add(transaction)
        db.session.flush()

        for line in priced:
            db.session.add(
                TransactionItem(
                    transaction_id=transaction.id,
                    product_id=line.product.id,
                    price_category_id=line.price_category_id,
                    quantity=line.quantity,
                    unit_price=line.unit_price,
                    purchase_price=line.product.purchase_price or ZERO,
                    discount_amount=line.discount_amount,
                    tax_amount=line.tax_amount,
                    subtotal=line.subtotal,
                )
            )
        for payment, amount in zip(payment_requests, payment_amounts):
            db.session.add(
                TransactionPayment(
                    transaction_id=transaction.id,
                    payment_method_id=payment.payment_method_id or payment_method_id,
                    amount=amount,
                    reference=payment.reference,
                    payment_date=now,
                    user_id=actor.user_id,
                )
            )
        db.session.flush()
        db.session.refresh(transaction)

        post_stock_effects(
            transaction,
            sign=_stock_sign(transaction_type, is_stock_addition),
            movement_type=transaction_type,
            user_id=actor.user_id,
            notes=f"{transaction_type}: {transaction.invoice_number}",
        )

        award_points(transaction)

        db.session.commit()
        current_app.logger.info(
            "Transaction %s created: type=%s shop=%s total=%s status=%s",
            transaction.invoice_number, transaction_type, shop_id, total, transaction.payment_status,
        )
        return transaction

    return run_with_retry(_op)


def add_payment(
    actor: Actor,
    invoice_number: str,
    amount,
    payment_method_id: int | None = None,
    reference: str | None = None,
) -> TransactionPayment:
    """
    Append a payment and recompute the payment status.

    Rejects amounts above the remaining balance and transactions that are
    no longer open (completed or refunded).
    """
    amount = to_money(amount, "amount")
    if amount <= 0:
        raise ValidationError("amount must be greater than zero")
    if not invoice_number:
        raise ValidationError("invoice_number is required")

    def _op():
        begin_write()
        transaction = lock_for_update(
            db.session.query(Transaction).filter_by(invoice_number=invoice_number)
        ).first()
        if transaction is None:
            raise NotFound("Transaction not found", details={"invoice_number": invoice_number})
        require_shop_access(actor, transaction.shop_id)
        _require_payment_method(payment_method_id)

        paid = total_paid(transaction.id)
        remaining = quantize_money(Decimal(transaction.total_amount) - paid)
        if amount > remaining:
            raise PaymentExceedsBalance(
                "Payment amount exceeds remaining balance",
                details={"remaining_balance": str(remaining), "amount": str(amount)},
            )
        if transaction.payment_status not in OPEN_PAYMENT_STATUSES:
            raise InvalidStateTransition(
                f"Cannot add payment to a {transaction.payment_status} transaction",
                details={"invoice_number": invoice_number, "payment_status": transaction.payment_status},
            )

        payment = TransactionPayment(
            transaction_id=transaction.id,
            payment_method_id=payment_method_id or transaction.payment_method_id,
            amount=amount,
            reference=reference,
            payment_date=utcnow(),
            user_id=actor.user_id,
        )
        db.session.add(payment)

        transaction.payment_status = determine_payment_status(transaction.total_amount, paid + amount)
        award_points(transaction)

        db.session.commit()
        current_app.logger.info(
            "Payment of %s added to %s, status=%s", amount, invoice_number, transaction.payment_status
        )
        return payment

    return run_with_retry(_op)


def get_transaction(visibility: Visibility, invoice_number: str) -> Transaction:
    transaction = db.session.query(Transaction).filter_by(invoice_number=invoice_number).first()
    if transaction is None or not visibility.allows(transaction.shop_id):
        raise NotFound("Transaction not found", details={"invoice_number": invoice_number})
    return transaction


def list_transactions(
    visibility: Visibility,
    *,
    shop_id: int | None = None,
    payment_status: str | None = None,
    limit: int = 100,
) -> list[Transaction]:
    if shop_id is not None and not visibility.allows(shop_id):
        return []
    q = visibility.apply(db.session.query(Transaction), Transaction.shop_id)
    if shop_id is not None:
        q = q.filter(Transaction.shop_id == shop_id)
    if payment_status is not None:
        q = q.filter(Transaction.payment_status == payment_status)
    return q.order_by(Transaction.transaction_date.desc(), Transaction.id.desc()).limit(limit).all()


def payment_summary(transaction: Transaction) -> PaymentSummary:
    paid = total_paid(transaction.id)
    return PaymentSummary(
        total_paid=paid,
        remaining_balance=quantize_money(Decimal(transaction.total_amount) - paid),
    )


def transaction_profit(transaction: Transaction) -> Decimal:
    """SUM((unit_price - purchase_price) * quantity) - header discount."""
    margin = sum(
        ((Decimal(item.unit_price) - Decimal(item.purchase_price)) * item.quantity for item in transaction.items),
        ZERO,
    )
    return quantize_money(margin - Decimal(transaction.discount_amount))
