# Overview: Exception taxonomy shared by every engine.

"""
Error taxonomy.

Every rejection raised by the core derives from PosLedgerError and carries a
human-readable message plus a ``details`` dict naming the offending entity.
``status_code`` is the HTTP status an outer API layer should answer with.

Rejections raised before the first write leave no trace. Rejections raised
mid-operation are rolled back by run_with_retry before they propagate.
"""

from __future__ import annotations


class PosLedgerError(Exception):
    """Base class for all business and persistence failures."""
    status_code = 400

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"error": self.message, "details": self.details}


class ValidationError(PosLedgerError, ValueError):
    """Malformed or missing input; raised before any mutation."""
    status_code = 400


class PaymentExceedsBalance(ValidationError):
    """Payment amount is larger than what is still owed."""
    status_code = 422


class InsufficientStock(PosLedgerError):
    """A sale or transfer-out would drive stock below zero."""
    status_code = 422

    def __init__(
        self,
        *,
        product_id: int,
        shop_id: int,
        requested: int,
        available: int,
        product_name: str | None = None,
    ):
        label = product_name or f"#{product_id}"
        super().__init__(
            f"Insufficient stock for product: {label} (requested {requested}, available {available})",
            details={
                "product_id": product_id,
                "product_name": product_name,
                "shop_id": shop_id,
                "requested": requested,
                "available": available,
            },
        )
        self.product_id = product_id
        self.shop_id = shop_id
        self.requested = requested
        self.available = available


class NotFound(PosLedgerError):
    status_code = 404


class InvalidStateTransition(PosLedgerError):
    """Operation is not allowed in the entity's current status."""
    status_code = 422


class ShopAccessDenied(PosLedgerError):
    status_code = 403


class VoidWindowExpired(ShopAccessDenied):
    pass


class ConcurrencyConflict(PosLedgerError):
    """Lock wait or optimistic version check failed after retries. Safe to retry."""
    status_code = 409


class PersistenceError(PosLedgerError):
    """Underlying store failure. The unit of work has been rolled back."""
    status_code = 500


class ImmutableRecordError(PersistenceError):
    """Attempt to update or delete an append-only row."""
