# Overview: ORM-level append-only enforcement for audit rows.

"""
Immutability guards.

SQLAlchemy fires before_update/before_delete on flush, before SQL reaches the
database. The listeners here raise ImmutableRecordError for:

    StockMovement       always, except filling a transfer back-link once
    TransactionItem     always
    TransactionPayment  always

Bulk query.update()/delete() bypass mapper events; services never use them
on these tables.
"""

from __future__ import annotations

from flask import current_app
from sqlalchemy import event, inspect

from .errors import ImmutableRecordError


def _blocked(entity: str, target, operation: str, reason: str):
    current_app.logger.error(
        "Immutability violation blocked: %s %s id=%s (%s)", operation, entity, target.id, reason
    )
    raise ImmutableRecordError(
        f"{entity} records are append-only: {reason}",
        details={"entity_type": entity, "entity_id": target.id, "operation": operation},
    )


def _check_stock_movement_update(mapper, connection, target):
    insp = inspect(target)
    changed = [attr.key for attr in insp.attrs if attr.history.has_changes()]

    if changed == ["reference_id"]:
        history = insp.attrs.reference_id.history
        previous = history.deleted[0] if history.deleted else None
        if previous is None and target.reference_type == "transfer":
            return

    _blocked("StockMovement", target, "UPDATE", "movements cannot be modified")


def _check_stock_movement_delete(mapper, connection, target):
    _blocked("StockMovement", target, "DELETE", "movements cannot be deleted")


def _check_transaction_item_update(mapper, connection, target):
    _blocked("TransactionItem", target, "UPDATE", "items cannot be modified")


def _check_transaction_item_delete(mapper, connection, target):
    _blocked("TransactionItem", target, "DELETE", "items cannot be deleted")


def _check_transaction_payment_update(mapper, connection, target):
    _blocked("TransactionPayment", target, "UPDATE", "payments cannot be modified")


def _check_transaction_payment_delete(mapper, connection, target):
    _blocked("TransactionPayment", target, "DELETE", "payments cannot be deleted")


def _listeners():
    from .models import StockMovement, TransactionItem, TransactionPayment

    return [
        (StockMovement, "before_update", _check_stock_movement_update),
        (StockMovement, "before_delete", _check_stock_movement_delete),
        (TransactionItem, "before_update", _check_transaction_item_update),
        (TransactionItem, "before_delete", _check_transaction_item_delete),
        (TransactionPayment, "before_update", _check_transaction_payment_update),
        (TransactionPayment, "before_delete", _check_transaction_payment_delete),
    ]


def register_immutability_listeners():
    """
    Register append-only guards. Safe to call once per application instance;
    listeners already present are left alone.
    """
    for target, name, fn in _listeners():
        if not event.contains(target, name, fn):
            event.listen(target, name, fn)

