# Overview: Service-layer stock ledger; the only code path that changes StockRecord.stock.

"""
Stock ledger.

Every stock change goes through _post(), which updates the locked
StockRecord and appends exactly one StockMovement with the same signed
quantity. That pairing is what makes the ledger replayable:

    stock == initial + SUM(movement.quantity)   for every (product, shop)

Public operations (adjust, transfer, set_stock) are complete units of work.
apply_movement() and apply_overwrite() are the commit-free building blocks
other engines call from inside their own unit of work.
"""

from __future__ import annotations

from dataclasses import dataclass

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from ..authorization import Actor, Visibility, require_shop_access
from ..errors import InsufficientStock, NotFound, ValidationError
from ..extensions import db
from ..models import (
    Product,
    PurchaseOrder,
    ReferenceKind,
    Shop,
    StockMovement,
    StockOpname,
    StockRecord,
    StockReference,
    Transaction,
)
from ..models.inventory import GUARDED_MOVEMENT_TYPES, MOVEMENT_TYPES
from ..validation import to_quantity
from .concurrency import begin_write, lock_for_update, run_with_retry


# Document model behind each reference kind. None: nothing to load.
_REFERENCE_MODELS = {
    ReferenceKind.TRANSACTION: Transaction,
    ReferenceKind.PURCHASE_ORDER: PurchaseOrder,
    ReferenceKind.STOCK_OPNAME: StockOpname,
    ReferenceKind.MANUAL_ADJUSTMENT: None,
    ReferenceKind.TRANSFER: StockMovement,
}
if set(_REFERENCE_MODELS) != set(ReferenceKind):
    raise RuntimeError(
        f"No reference resolver for: {sorted(k.value for k in set(ReferenceKind) - set(_REFERENCE_MODELS))}"
    )


@dataclass(frozen=True)
class TransferResult:
    source: StockRecord
    destination: StockRecord
    outgoing: StockMovement
    incoming: StockMovement


@dataclass(frozen=True)
class LedgerDrift:
    """A stock record whose quantity does not match its movement history."""
    product_id: int
    shop_id: int
    stock: int
    expected: int

    @property
    def difference(self) -> int:
        return self.stock - self.expected


def resolve_reference(reference: StockReference):
    """Load the document a movement points at, or None for manual adjustments."""
    model = _REFERENCE_MODELS[reference.kind]
    if model is None or reference.id is None:
        return None
    return db.session.get(model, reference.id)


def _require_product(product_id: int) -> Product:
    product = db.session.query(Product).filter_by(id=product_id).first()
    if product is None:
        raise NotFound("Product not found", details={"product_id": product_id})
    if not product.uses_stock:
        raise ValidationError(
            f"Product does not track stock: {product.name}",
            details={"product_id": product_id},
        )
    return product


def _require_shop(shop_id: int) -> Shop:
    shop = db.session.query(Shop).filter_by(id=shop_id).first()
    if shop is None:
        raise NotFound("Shop not found", details={"shop_id": shop_id})
    return shop


def _check_reference(reference: StockReference) -> None:
    if not isinstance(reference, StockReference):
        raise ValidationError("reference must be a StockReference")
    if reference.kind in (ReferenceKind.MANUAL_ADJUSTMENT, ReferenceKind.TRANSFER):
        return
    if reference.id is None or resolve_reference(reference) is None:
        raise NotFound(
            f"Referenced {reference.kind.value} not found",
            details={"reference_type": reference.kind.value, "reference_id": reference.id},
        )


def lock_stock_record(product_id: int, shop_id: int) -> StockRecord:
    """
    Lock (creating on first use) the StockRecord for a product in a shop.

    A concurrent first insert loses only its savepoint; the row the other
    writer created is then read and locked instead.
    """
    query = lock_for_update(db.session.query(StockRecord).filter_by(product_id=product_id, shop_id=shop_id))
    record = query.first()
    if record is not None:
        return record

    try:
        with db.session.begin_nested():
            record = StockRecord(product_id=product_id, shop_id=shop_id, stock=0, min_stock=0)
            db.session.add(record)
    except IntegrityError:
        record = query.first()
        if record is None:
            raise
    return record


def _ensure_available(record: StockRecord, quantity: int, movement_type: str, product: Product) -> None:
    if movement_type not in GUARDED_MOVEMENT_TYPES or quantity >= 0:
        return
    if record.stock + quantity < 0:
        current_app.logger.warning(
            "Insufficient stock: product=%s shop=%s requested=%d available=%d",
            record.product_id, record.shop_id, -quantity, record.stock,
        )
        raise InsufficientStock(
            product_id=record.product_id,
            shop_id=record.shop_id,
            requested=-quantity,
            available=record.stock,
            product_name=product.name,
        )


def _post(
    record: StockRecord,
    quantity: int,
    movement_type: str,
    reference: StockReference,
    *,
    user_id: int | None,
    notes: str | None,
) -> StockMovement:
    record.stock = record.stock + quantity
    movement = StockMovement(
        product_id=record.product_id,
        shop_id=record.shop_id,
        quantity=quantity,
        movement_type=movement_type,
        reference_type=reference.kind.value,
        reference_id=reference.id,
        user_id=user_id,
        notes=notes,
    )
    db.session.add(movement)
    db.session.flush()
    return movement


def apply_movement(
    *,
    product_id: int,
    shop_id: int,
    quantity: int,
    movement_type: str,
    reference: StockReference,
    user_id: int | None = None,
    notes: str | None = None,
) -> StockMovement:
    """
    Lock the stock row, apply a signed quantity and append its movement.

    Sale and transfer debits that would go below zero raise InsufficientStock
    before anything is written. No commit: the caller owns the transaction.
    """
    if movement_type not in MOVEMENT_TYPES:
        raise ValidationError(f"Unknown movement type: {movement_type}")
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity == 0:
        raise ValidationError("quantity must be a non-zero integer")
    _check_reference(reference)

    product = _require_product(product_id)
    record = lock_stock_record(product_id, shop_id)
    _ensure_available(record, quantity, movement_type, product)
    return _post(record, quantity, movement_type, reference, user_id=user_id, notes=notes)


def apply_overwrite(
    *,
    product_id: int,
    shop_id: int,
    new_stock: int,
    reference: StockReference,
    user_id: int | None = None,
    notes: str | None = None,
) -> StockMovement | None:
    """
    Lock the stock row and set it to new_stock, recording the difference as
    one "adjustment" movement. Returns None when the stock already matches.
    No commit.
    """
    _check_reference(reference)
    _require_product(product_id)
    record = lock_stock_record(product_id, shop_id)

    delta = new_stock - record.stock
    if not delta:
        return None
    return _post(record, delta, "adjustment", reference, user_id=user_id, notes=notes)


def get_stock(product_id: int, shop_id: int) -> int:
    """Current stock; 0 when no record exists yet."""
    stock = (
        db.session.query(StockRecord.stock)
        .filter_by(product_id=product_id, shop_id=shop_id)
        .scalar()
    )
    return stock or 0


def adjust(
    actor: Actor,
    product_id: int,
    shop_id: int,
    signed_quantity: int,
    movement_type: str = "adjustment",
    reference: StockReference | None = None,
    notes: str | None = None,
) -> StockRecord:
    """Apply one stock change as its own unit of work and return the updated record."""
    require_shop_access(actor, shop_id)

    def _op():
        begin_write()
        _require_shop(shop_id)
        movement = apply_movement(
            product_id=product_id,
            shop_id=shop_id,
            quantity=signed_quantity,
            movement_type=movement_type,
            reference=reference or StockReference.manual(),
            user_id=actor.user_id,
            notes=notes,
        )
        record = db.session.query(StockRecord).filter_by(product_id=product_id, shop_id=shop_id).one()
        db.session.commit()
        current_app.logger.info(
            "Stock %s: product=%s shop=%s delta=%d stock=%d movement=%s",
            movement_type, product_id, shop_id, signed_quantity, record.stock, movement.id,
        )
        return record

    return run_with_retry(_op)


def transfer(
    actor: Actor,
    product_id: int,
    from_shop_id: int,
    to_shop_id: int,
    quantity: int,
    notes: str | None = None,
) -> TransferResult:
    """
    Move stock between two shops atomically.

    Both rows are locked in ascending (shop_id, product_id) order so two
    opposite transfers cannot deadlock. The two legs reference each other.
    """
    quantity = to_quantity(quantity, "quantity")
    if from_shop_id == to_shop_id:
        raise ValidationError("Source and destination shops must differ")
    require_shop_access(actor, from_shop_id)
    require_shop_access(actor, to_shop_id)

    def _op():
        begin_write()
        _require_shop(from_shop_id)
        _require_shop(to_shop_id)
        product = _require_product(product_id)

        records = {}
        for shop_id, pid in sorted([(from_shop_id, product_id), (to_shop_id, product_id)]):
            records[shop_id] = lock_stock_record(pid, shop_id)
        source = records[from_shop_id]
        destination = records[to_shop_id]

        _ensure_available(source, -quantity, "transfer", product)

        outgoing = _post(
            source, -quantity, "transfer", StockReference.transfer(),
            user_id=actor.user_id, notes=notes,
        )
        incoming = _post(
            destination, quantity, "transfer", StockReference.transfer(outgoing.id),
            user_id=actor.user_id, notes=notes,
        )
        outgoing.reference_id = incoming.id
        db.session.flush()

        db.session.commit()
        current_app.logger.info(
            "Transferred %d of product %s from shop %s to shop %s",
            quantity, product_id, from_shop_id, to_shop_id,
        )
        return TransferResult(source=source, destination=destination, outgoing=outgoing, incoming=incoming)

    return run_with_retry(_op)


def set_stock(
    actor: Actor,
    product_id: int,
    shop_id: int,
    new_stock: int,
    min_stock: int | None = None,
    notes: str | None = None,
) -> StockRecord:
    """
    Authoritative manual overwrite of a stock level.

    The difference is recorded as an "adjustment" movement referencing a
    manual adjustment, so replay still reconciles. min_stock is updated when
    given.
    """
    new_stock = to_quantity(new_stock, "stock", minimum=0)
    if min_stock is not None:
        min_stock = to_quantity(min_stock, "min_stock", minimum=0)
    require_shop_access(actor, shop_id)

    def _op():
        begin_write()
        _require_shop(shop_id)
        movement = apply_overwrite(
            product_id=product_id,
            shop_id=shop_id,
            new_stock=new_stock,
            reference=StockReference.manual(),
            user_id=actor.user_id,
            notes=notes or "Manual stock update",
        )
        record = lock_stock_record(product_id, shop_id)
        if min_stock is not None:
            record.min_stock = min_stock

        db.session.commit()
        current_app.logger.info(
            "Stock set: product=%s shop=%s stock=%d (delta %d)",
            product_id, shop_id, record.stock, movement.quantity if movement else 0,
        )
        return record

    return run_with_retry(_op)


def list_movements(
    visibility: Visibility,
    *,
    product_id: int | None = None,
    shop_id: int | None = None,
    movement_type: str | None = None,
    limit: int = 200,
) -> list[StockMovement]:
    """Newest-first movements, restricted to the shops the caller can see."""
    if shop_id is not None and not visibility.allows(shop_id):
        return []

    q = visibility.apply(db.session.query(StockMovement), StockMovement.shop_id)
    if product_id is not None:
        q = q.filter(StockMovement.product_id == product_id)
    if shop_id is not None:
        q = q.filter(StockMovement.shop_id == shop_id)
    if movement_type is not None:
        q = q.filter(StockMovement.movement_type == movement_type)

    return q.order_by(StockMovement.id.desc()).limit(limit).all()


def list_low_stock(
    visibility: Visibility,
    *,
    shop_id: int | None = None,
    limit: int = 200,
) -> list[StockRecord]:
    """
    Stock records at or below their min_stock, emptiest first.

    Deleted and inactive products are left out; they cannot be restocked
    through purchasing anyway.
    """
    if shop_id is not None and not visibility.allows(shop_id):
        return []

    q = (
        db.session.query(StockRecord)
        .join(Product, Product.id == StockRecord.product_id)
        .filter(StockRecord.stock <= StockRecord.min_stock)
        .filter(Product.is_active.is_(True), Product.deleted_at.is_(None))
    )
    q = visibility.apply(q, StockRecord.shop_id)
    if shop_id is not None:
        q = q.filter(StockRecord.shop_id == shop_id)

    return q.order_by(StockRecord.stock.asc(), StockRecord.id.asc()).limit(limit).all()


def verify_ledger(initial: dict[tuple[int, int], int] | None = None) -> list[LedgerDrift]:
    """
    Replay movements per (product_id, shop_id) and report records whose
    stock differs from initial + SUM(quantity). Pairs with movements but no
    record are compared against a stock of 0.
    """
    initial = initial or {}

    totals = {
        (product_id, shop_id): int(total or 0)
        for product_id, shop_id, total in (
            db.session.query(StockMovement.product_id, StockMovement.shop_id, func.sum(StockMovement.quantity))
            .group_by(StockMovement.product_id, StockMovement.shop_id)
            .all()
        )
    }
    stocks = {
        (product_id, shop_id): stock
        for product_id, shop_id, stock in db.session.query(
            StockRecord.product_id, StockRecord.shop_id, StockRecord.stock
        ).all()
    }

    drifts = []
    for key in sorted(set(totals) | set(stocks)):
        expected = initial.get(key, 0) + totals.get(key, 0)
        actual = stocks.get(key, 0)
        if actual != expected:
            drifts.append(LedgerDrift(product_id=key[0], shop_id=key[1], stock=actual, expected=expected))
    return drifts
