# Overview: Service-layer operations for document numbering; race-safe invoice and PO counters.

from __future__ import annotations

from datetime import datetime

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..errors import ValidationError
from ..extensions import db
from ..models import DocumentSequence, Shop
from ..time_utils import utcnow


def shop_code(shop: Shop) -> str:
    """First three characters of the shop name, uppercased ("SHP" for an empty name)."""
    return (shop.name or "")[:3].upper() or "SHP"


def allocate_sequence(sequence_key: str) -> int:
    """
    Atomically allocate the next number for a sequence key.

    Must be called inside the caller's unit of work: the increment commits or
    rolls back together with the document that consumes it.
    """
    if not sequence_key:
        raise ValidationError("sequence_key is required")

    stmt = (
        update(DocumentSequence)
        .where(DocumentSequence.sequence_key == sequence_key)
        .values(next_number=DocumentSequence.next_number + 1)
        .execution_options(synchronize_session=False)
    )

    result = db.session.execute(stmt)
    if result.rowcount:
        current = (
            db.session.query(DocumentSequence.next_number)
            .filter_by(sequence_key=sequence_key)
            .scalar()
        )
        return current - 1

    # First use: insert inside a savepoint so a concurrent insert only
    # costs us the savepoint, not the caller's whole transaction.
    try:
        with db.session.begin_nested():
            db.session.add(DocumentSequence(sequence_key=sequence_key, next_number=2))
        return 1
    except IntegrityError:
        result = db.session.execute(stmt)
        if not result.rowcount:
            raise
        current = (
            db.session.query(DocumentSequence.next_number)
            .filter_by(sequence_key=sequence_key)
            .scalar()
        )
        return current - 1


def next_invoice_number(shop: Shop, *, when: datetime | None = None) -> str:
    """
    Allocate "{SHOPCODE}-{YYYYMMDD}-{seq:04d}".

    The counter is keyed by code and date, so shops whose names share a
    three-letter prefix share a counter and numbers stay globally unique.
    """
    when = when or utcnow()
    prefix = f"{shop_code(shop)}-{when:%Y%m%d}"
    seq = allocate_sequence(f"INV-{prefix}")
    return f"{prefix}-{seq:04d}"


def next_po_number() -> str:
    """Allocate a sequential "PO-{8 digits}" number."""
    seq = allocate_sequence("PO")
    return f"PO-{seq:08d}"
