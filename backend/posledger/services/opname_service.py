# Overview: Service-layer stock-take (opname) reconciliation.

"""
Stock opname.

LIFECYCLE:
1. draft: counts entered; system_stock snapshotted on every write
2. pending: submitted for approval (requires at least one item)
3. approved: stock overwritten with the physical counts (terminal)
4. canceled: allowed from draft or pending; no stock effect

Approval is an authoritative overwrite, not a delta: stock is set to the
counted quantity. The movement written carries the difference between the
count and the stock at approval time, so the ledger still replays even when
sales happened between counting and approval. The item's variance keeps the
difference observed at counting time.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable

from flask import current_app

from ..authorization import Actor, Visibility, require_shop_access
from ..errors import InvalidStateTransition, NotFound, ValidationError
from ..extensions import db
from ..models import Product, Shop, StockOpname, StockOpnameItem, StockReference
from ..time_utils import to_utc_naive, utcnow
from ..validation import require_id, to_quantity
from . import stock_ledger
from .concurrency import begin_write, lock_for_update, run_with_retry


OPNAME_STATUS_DRAFT = "draft"
OPNAME_STATUS_PENDING = "pending"
OPNAME_STATUS_APPROVED = "approved"
OPNAME_STATUS_CANCELED = "canceled"


@dataclass(frozen=True)
class OpnameItemRequest:
    product_id: int
    physical_stock: int
    notes: str | None = None


def _coerce_items(items) -> list[OpnameItemRequest]:
    requests = []
    for raw in items or []:
        if isinstance(raw, OpnameItemRequest):
            requests.append(raw)
        elif isinstance(raw, dict):
            try:
                requests.append(OpnameItemRequest(**raw))
            except TypeError as exc:
                raise ValidationError(f"Invalid item: {exc}")
        else:
            raise ValidationError("items must be OpnameItemRequest instances or dicts")

    seen = set()
    for index, item in enumerate(requests):
        require_id(item.product_id, f"items[{index}].product_id")
        to_quantity(item.physical_stock, f"items[{index}].physical_stock", minimum=0)
        if item.product_id in seen:
            raise ValidationError(
                "Each product can only be counted once per opname",
                details={"product_id": item.product_id},
            )
        seen.add(item.product_id)
    return requests


def _require_countable(product_id: int) -> Product:
    product = db.session.query(Product).filter_by(id=product_id).first()
    if product is None:
        raise NotFound("Product not found", details={"product_id": product_id})
    if not product.is_sellable:
        raise ValidationError(
            f"Cannot count a deleted or inactive product: {product.name}",
            details={"product_id": product_id},
        )
    if not product.uses_stock:
        raise ValidationError(
            f"Product does not track stock: {product.name}",
            details={"product_id": product_id},
        )
    return product


def _snapshot(item: StockOpnameItem, shop_id: int) -> None:
    item.system_stock = stock_ledger.get_stock(item.product_id, shop_id)
    item.variance = item.physical_stock - item.system_stock


def _load_locked(opname_id: int, actor: Actor) -> StockOpname:
    opname = lock_for_update(db.session.query(StockOpname).filter_by(id=opname_id)).first()
    if opname is None:
        raise NotFound("Stock opname not found", details={"opname_id": opname_id})
    require_shop_access(actor, opname.shop_id)
    return opname


def _require_status(opname: StockOpname, allowed: tuple[str, ...], action: str) -> None:
    if opname.status not in allowed:
        raise InvalidStateTransition(
            f"Stock opname can only be {action} in {' or '.join(allowed)} status",
            details={"opname_id": opname.id, "status": opname.status},
        )


def create_opname(
    actor: Actor,
    shop_id: int,
    items: Iterable[OpnameItemRequest | dict],
    notes: str | None = None,
    conducted_at: datetime | None = None,
) -> StockOpname:
    require_id(shop_id, "shop_id")
    requests = _coerce_items(items)
    require_shop_access(actor, shop_id)

    def _op():
        begin_write()
        if not db.session.query(Shop.id).filter_by(id=shop_id).first():
            raise NotFound("Shop not found", details={"shop_id": shop_id})

        opname = StockOpname(
            shop_id=shop_id,
            status=OPNAME_STATUS_DRAFT,
            conducted_by=actor.user_id,
            conducted_at=to_utc_naive(conducted_at) or utcnow(),
            notes=notes,
        )
        db.session.add(opname)
        db.session.flush()

        for request in requests:
            _require_countable(request.product_id)
            item = StockOpnameItem(
                product_id=request.product_id,
                physical_stock=request.physical_stock,
                notes=request.notes,
            )
            _snapshot(item, shop_id)
            opname.items.append(item)

        db.session.commit()
        current_app.logger.info("Stock opname %s created for shop %s with %d items", opname.id, shop_id, len(requests))
        return opname

    return run_with_retry(_op)


def update_opname(
    actor: Actor,
    opname_id: int,
    items: Iterable[OpnameItemRequest | dict] | None = None,
    notes: str | None = None,
) -> StockOpname:
    """Upsert counts by product on a draft; every written item gets a fresh snapshot."""
    requests = _coerce_items(items) if items is not None else None

    def _op():
        begin_write()
        opname = _load_locked(opname_id, actor)
        _require_status(opname, (OPNAME_STATUS_DRAFT,), "updated")

        if notes is not None:
            opname.notes = notes

        if requests is not None:
            existing = {item.product_id: item for item in opname.items}
            for request in requests:
                _require_countable(request.product_id)
                item = existing.get(request.product_id)
                if item is None:
                    item = StockOpnameItem(product_id=request.product_id, physical_stock=request.physical_stock)
                    opname.items.append(item)
                item.physical_stock = request.physical_stock
                if request.notes is not None:
                    item.notes = request.notes
                _snapshot(item, opname.shop_id)

        db.session.commit()
        return opname

    return run_with_retry(_op)


def submit(actor: Actor, opname_id: int) -> StockOpname:
    def _op():
        begin_write()
        opname = _load_locked(opname_id, actor)
        _require_status(opname, (OPNAME_STATUS_DRAFT,), "submitted")
        if not opname.items:
            raise ValidationError("Stock opname has no items", details={"opname_id": opname_id})

        opname.status = OPNAME_STATUS_PENDING
        db.session.commit()
        current_app.logger.info("Stock opname %s submitted", opname_id)
        return opname

    return run_with_retry(_op)


def approve(actor: Actor, opname_id: int, selected_item_ids: Iterable[int] | None = None) -> StockOpname:
    """
    Apply a pending opname.

    Every item (or only the selected ones) with a non-zero variance has its
    shop stock overwritten with the physical count and is stamped applied_at.
    An already-approved opname is rejected.
    """
    selected = None
    if selected_item_ids is not None:
        selected = set()
        for index, item_id in enumerate(selected_item_ids):
            selected.add(require_id(item_id, f"selected_item_ids[{index}]"))

    def _op():
        begin_write()
        opname = _load_locked(opname_id, actor)
        _require_status(opname, (OPNAME_STATUS_PENDING,), "approved")

        if selected is not None:
            unknown = selected - {item.id for item in opname.items}
            if unknown:
                raise ValidationError(
                    "Selected items do not belong to this stock opname",
                    details={"opname_id": opname_id, "item_ids": sorted(unknown)},
                )

        now = utcnow()
        applied = 0
        for item in opname.items:
            if selected is not None and item.id not in selected:
                continue
            if item.variance == 0:
                continue
            stock_ledger.apply_overwrite(
                product_id=item.product_id,
                shop_id=opname.shop_id,
                new_stock=item.physical_stock,
                reference=StockReference.stock_opname(opname.id),
                user_id=actor.user_id,
                notes=f"Stock adjustment from stock opname #{opname.id}",
            )
            item.applied_at = now
            applied += 1

        opname.status = OPNAME_STATUS_APPROVED
        opname.approved_by = actor.user_id
        opname.approved_at = now

        db.session.commit()
        current_app.logger.info("Stock opname %s approved by user %s, %d items applied", opname_id, actor.user_id, applied)
        return opname

    return run_with_retry(_op)


def cancel(actor: Actor, opname_id: int) -> StockOpname:
    def _op():
        begin_write()
        opname = _load_locked(opname_id, actor)
        _require_status(opname, (OPNAME_STATUS_DRAFT, OPNAME_STATUS_PENDING), "canceled")

        opname.status = OPNAME_STATUS_CANCELED
        db.session.commit()
        current_app.logger.info("Stock opname %s canceled", opname_id)
        return opname

    return run_with_retry(_op)


def delete(actor: Actor, opname_id: int) -> None:
    def _op():
        begin_write()
        opname = _load_locked(opname_id, actor)
        _require_status(opname, (OPNAME_STATUS_DRAFT, OPNAME_STATUS_CANCELED), "deleted")

        db.session.delete(opname)
        db.session.commit()
        current_app.logger.info("Stock opname %s deleted", opname_id)

    return run_with_retry(_op)


def get_opname(visibility: Visibility, opname_id: int) -> StockOpname:
    opname = db.session.get(StockOpname, opname_id)
    if opname is None or not visibility.allows(opname.shop_id):
        raise NotFound("Stock opname not found", details={"opname_id": opname_id})
    return opname
