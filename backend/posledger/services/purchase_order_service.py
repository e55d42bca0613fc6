# Overview: Service-layer purchase order lifecycle and receiving.

"""
Purchase orders.

LIFECYCLE:
1. draft: created, items editable
2. ordered: sent to supplier (requires at least one item)
3. partial / received: goods arriving; each receipt posts "purchase" movements
4. canceled: allowed from draft, ordered or partial; no stock effect

Receipts are cumulative: callers send the new total received per item and
only the difference from the previous total is posted.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Iterable

from flask import current_app

from ..authorization import Actor, Visibility, require_shop_access
from ..errors import InvalidStateTransition, NotFound, ValidationError
from ..extensions import db
from ..models import Product, PurchaseOrder, PurchaseOrderItem, Shop, StockReference, Supplier
from ..time_utils import to_utc_naive, utcnow
from ..validation import ZERO, quantize_money, require_id, to_money, to_quantity
from . import stock_ledger
from .concurrency import begin_write, lock_for_update, run_with_retry
from .document_service import next_po_number


PO_STATUS_DRAFT = "draft"
PO_STATUS_ORDERED = "ordered"
PO_STATUS_PARTIAL = "partial"
PO_STATUS_RECEIVED = "received"
PO_STATUS_CANCELED = "canceled"

RECEIVABLE_STATUSES = (PO_STATUS_ORDERED, PO_STATUS_PARTIAL)
CANCELABLE_STATUSES = (PO_STATUS_DRAFT, PO_STATUS_ORDERED, PO_STATUS_PARTIAL)
DELETABLE_STATUSES = (PO_STATUS_DRAFT, PO_STATUS_CANCELED)


@dataclass(frozen=True)
class POItemRequest:
    product_id: int
    quantity: int
    unit_price: Decimal | int | str


@dataclass(frozen=True)
class ReceiveLine:
    item_id: int
    # Cumulative total received so far, not the delta
    received_quantity: int


def _coerce(raw, cls, label: str):
    if isinstance(raw, cls):
        return raw
    if isinstance(raw, dict):
        try:
            return cls(**raw)
        except TypeError as exc:
            raise ValidationError(f"Invalid {label}: {exc}")
    raise ValidationError(f"{label} must be {cls.__name__} instances or dicts")


def _validate_items(items) -> list[tuple[POItemRequest, Decimal]]:
    requests = [_coerce(raw, POItemRequest, "item") for raw in (items or [])]
    if not requests:
        raise ValidationError("At least one item is required")
    validated = []
    for index, item in enumerate(requests):
        require_id(item.product_id, f"items[{index}].product_id")
        to_quantity(item.quantity, f"items[{index}].quantity")
        validated.append((item, to_money(item.unit_price, f"items[{index}].unit_price")))
    return validated


def _require_supplier(supplier_id: int) -> None:
    if not db.session.query(Supplier.id).filter_by(id=supplier_id).first():
        raise NotFound("Supplier not found", details={"supplier_id": supplier_id})


def _replace_items(po: PurchaseOrder, validated: list[tuple[POItemRequest, Decimal]]) -> None:
    for item in list(po.items):
        po.items.remove(item)
    db.session.flush()

    total = ZERO
    for item, unit_price in validated:
        product = db.session.query(Product).filter_by(id=item.product_id).first()
        if product is None:
            raise NotFound("Product not found", details={"product_id": item.product_id})
        po.items.append(
            PurchaseOrderItem(
                product_id=item.product_id,
                quantity=item.quantity,
                received_quantity=0,
                unit_price=unit_price,
            )
        )
        total += unit_price * item.quantity
    po.total = quantize_money(total)
    db.session.flush()


def _load_locked(po_id: int, actor: Actor) -> PurchaseOrder:
    po = lock_for_update(db.session.query(PurchaseOrder).filter_by(id=po_id)).first()
    if po is None:
        raise NotFound("Purchase order not found", details={"po_id": po_id})
    require_shop_access(actor, po.shop_id)
    return po


def _require_status(po: PurchaseOrder, allowed: tuple[str, ...], action: str) -> None:
    if po.status not in allowed:
        raise InvalidStateTransition(
            f"Cannot {action} purchase order with status: {po.status}",
            details={"po_id": po.id, "status": po.status, "allowed": list(allowed)},
        )


def create_purchase_order(
    actor: Actor,
    shop_id: int,
    supplier_id: int,
    items: Iterable[POItemRequest | dict],
    order_date: datetime | None = None,
    notes: str | None = None,
) -> PurchaseOrder:
    require_id(shop_id, "shop_id")
    require_id(supplier_id, "supplier_id")
    validated = _validate_items(items)
    require_shop_access(actor, shop_id)

    def _op():
        begin_write()
        if not db.session.query(Shop.id).filter_by(id=shop_id).first():
            raise NotFound("Shop not found", details={"shop_id": shop_id})
        _require_supplier(supplier_id)

        po = PurchaseOrder(
            po_number=next_po_number(),
            supplier_id=supplier_id,
            shop_id=shop_id,
            status=PO_STATUS_DRAFT,
            order_date=to_utc_naive(order_date) or utcnow(),
            notes=notes,
            created_by=actor.user_id,
        )
        db.session.add(po)
        db.session.flush()
        _replace_items(po, validated)

        db.session.commit()
        current_app.logger.info("Purchase order %s created for shop %s", po.po_number, shop_id)
        return po

    return run_with_retry(_op)


def update_purchase_order(
    actor: Actor,
    po_id: int,
    supplier_id: int | None = None,
    items: Iterable[POItemRequest | dict] | None = None,
    notes: str | None = None,
) -> PurchaseOrder:
    """Edit a draft. A given item list replaces the existing items and the total is recomputed."""
    validated = _validate_items(items) if items is not None else None

    def _op():
        begin_write()
        po = _load_locked(po_id, actor)
        _require_status(po, (PO_STATUS_DRAFT,), "update")

        if supplier_id is not None:
            _require_supplier(supplier_id)
            po.supplier_id = supplier_id
        if notes is not None:
            po.notes = notes
        if validated is not None:
            _replace_items(po, validated)

        db.session.commit()
        return po

    return run_with_retry(_op)


def mark_ordered(actor: Actor, po_id: int) -> PurchaseOrder:
    def _op():
        begin_write()
        po = _load_locked(po_id, actor)
        _require_status(po, (PO_STATUS_DRAFT,), "order")
        if not po.items:
            raise ValidationError("Purchase order has no items", details={"po_id": po_id})

        po.status = PO_STATUS_ORDERED
        db.session.commit()
        current_app.logger.info("Purchase order %s marked ordered", po.po_number)
        return po

    return run_with_retry(_op)


def receive(
    actor: Actor,
    po_id: int,
    lines: Iterable[ReceiveLine | dict],
    notes: str | None = None,
) -> PurchaseOrder:
    """
    Record cumulative received quantities.

    For each line, additional = new total - previously received. Lines with
    no additional units are skipped. Received products get their purchase
    price set to the PO unit price; stock-tracked products get one
    "purchase" movement for the additional units. Status becomes received
    when every item is complete, partial otherwise, and is left alone when
    nothing new arrived.
    """
    receive_lines = [_coerce(raw, ReceiveLine, "receive line") for raw in (lines or [])]
    if not receive_lines:
        raise ValidationError("At least one item is required")
    for index, line in enumerate(receive_lines):
        require_id(line.item_id, f"items[{index}].item_id")
        to_quantity(line.received_quantity, f"items[{index}].received_quantity", minimum=0)

    def _op():
        begin_write()
        po = _load_locked(po_id, actor)
        _require_status(po, RECEIVABLE_STATUSES, "receive items for")

        items_by_id = {item.id: item for item in po.items}
        any_received = False

        for line in receive_lines:
            item = items_by_id.get(line.item_id)
            if item is None:
                raise ValidationError(
                    "Item does not belong to this purchase order",
                    details={"po_id": po_id, "item_id": line.item_id},
                )
            if line.received_quantity > item.quantity:
                raise ValidationError(
                    "Received quantity exceeds ordered quantity",
                    details={"item_id": item.id, "quantity": item.quantity, "received_quantity": line.received_quantity},
                )
            if line.received_quantity < item.received_quantity:
                raise ValidationError(
                    "Received quantity cannot be lower than what was already received",
                    details={"item_id": item.id, "already_received": item.received_quantity},
                )

            additional = line.received_quantity - item.received_quantity
            if additional <= 0:
                continue

            product = db.session.query(Product).filter_by(id=item.product_id).first()
            if product is None or not product.is_sellable:
                raise ValidationError(
                    "Cannot receive a deleted or inactive product",
                    details={"product_id": item.product_id},
                )

            item.received_quantity = line.received_quantity
            product.purchase_price = item.unit_price
            any_received = True

            if product.uses_stock:
                stock_ledger.apply_movement(
                    product_id=item.product_id,
                    shop_id=po.shop_id,
                    quantity=additional,
                    movement_type="purchase",
                    reference=StockReference.purchase_order(po.id),
                    user_id=actor.user_id,
                    notes=f"Received from PO: {po.po_number}",
                )

        if any_received:
            if all(item.is_fully_received for item in po.items):
                po.status = PO_STATUS_RECEIVED
            else:
                po.status = PO_STATUS_PARTIAL
            if po.received_by is None:
                po.received_by = actor.user_id
            if notes is not None:
                po.notes = notes

        db.session.commit()
        current_app.logger.info(
            "Purchase order %s receipt processed: status=%s received=%s", po.po_number, po.status, any_received
        )
        return po

    return run_with_retry(_op)


def cancel(actor: Actor, po_id: int) -> PurchaseOrder:
    def _op():
        begin_write()
        po = _load_locked(po_id, actor)
        _require_status(po, CANCELABLE_STATUSES, "cancel")

        po.status = PO_STATUS_CANCELED
        db.session.commit()
        current_app.logger.info("Purchase order %s canceled", po.po_number)
        return po

    return run_with_retry(_op)


def delete(actor: Actor, po_id: int) -> None:
    """Delete a draft or canceled order that never received anything."""
    def _op():
        begin_write()
        po = _load_locked(po_id, actor)
        _require_status(po, DELETABLE_STATUSES, "delete")
        if any(item.received_quantity > 0 for item in po.items):
            raise InvalidStateTransition(
                "Cannot delete a purchase order with received items",
                details={"po_id": po_id},
            )

        po_number = po.po_number
        db.session.delete(po)
        db.session.commit()
        current_app.logger.info("Purchase order %s deleted", po_number)

    return run_with_retry(_op)


def get_purchase_order(visibility: Visibility, po_id: int) -> PurchaseOrder:
    po = db.session.get(PurchaseOrder, po_id)
    if po is None or not visibility.allows(po.shop_id):
        raise NotFound("Purchase order not found", details={"po_id": po_id})
    return po
