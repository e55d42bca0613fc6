from datetime import timedelta
from decimal import Decimal

import pytest

from posledger.authorization import Actor
from posledger.errors import InvalidStateTransition, NotFound, ShopAccessDenied, VoidWindowExpired
from posledger.models import StockMovement, Transaction
from posledger.services import stock_ledger
from posledger.services.transaction_service import LineRequest, PaymentRequest, create_transaction
from posledger.services.void_service import void_transaction


@pytest.fixture
def sale(cashier, product, shop, cash, stock_up):
    stock_up(product, shop, 10)
    return create_transaction(
        cashier, shop.id, "sale",
        items=[LineRequest(product_id=product.id, quantity=4)],
        payments=[PaymentRequest(amount="400.00", payment_method_id=cash.id)],
        payment_method_id=cash.id,
    )


class TestVoidSale:
    def test_void_creates_reversal_and_restores_stock(self, db_session, cashier, sale, product, shop):
        result = void_transaction(cashier, sale.invoice_number, reason="Customer changed mind")

        assert stock_ledger.get_stock(product.id, shop.id) == 10

        original = result.original
        assert original.payment_status == "refunded"
        assert "VOIDED by Carl Cashier on" in original.notes
        assert original.notes.endswith(": Customer changed mind")

        reversal = result.reversal
        assert reversal.invoice_number == f"VOID-{sale.invoice_number}"
        assert reversal.transaction_type == "return"
        assert reversal.payment_status == "completed"
        assert reversal.reversal_of_id == original.id
        assert reversal.total_amount == Decimal("400.00")
        assert [i.quantity for i in reversal.items] == [4]
        assert sum(p.amount for p in reversal.payments) == Decimal("400.00")

        movement = (
            db_session.query(StockMovement)
            .filter_by(reference_type="transaction", reference_id=reversal.id)
            .one()
        )
        assert movement.movement_type == "void"
        assert movement.quantity == 4
        assert stock_ledger.verify_ledger() == []

    def test_original_items_untouched(self, db_session, cashier, sale):
        before = [(i.product_id, i.quantity, i.unit_price) for i in sale.items]
        void_transaction(cashier, sale.invoice_number)

        original = db_session.query(Transaction).filter_by(invoice_number=sale.invoice_number).one()
        assert [(i.product_id, i.quantity, i.unit_price) for i in original.items] == before

    def test_double_void_rejected(self, cashier, sale, product, shop):
        void_transaction(cashier, sale.invoice_number)

        with pytest.raises(InvalidStateTransition):
            void_transaction(cashier, sale.invoice_number)
        assert stock_ledger.get_stock(product.id, shop.id) == 10

    def test_reversal_cannot_be_voided(self, admin, sale):
        result = void_transaction(admin, sale.invoice_number)

        with pytest.raises(InvalidStateTransition):
            void_transaction(admin, result.reversal.invoice_number)

    def test_unknown_invoice(self, admin):
        with pytest.raises(NotFound):
            void_transaction(admin, "MAI-20260101-9999")


class TestVoidWindow:
    def test_cashier_outside_window_rejected(self, cashier, sale):
        later = sale.transaction_date + timedelta(hours=25)

        with pytest.raises(VoidWindowExpired):
            void_transaction(cashier, sale.invoice_number, now=later)

    def test_cashier_inside_window_allowed(self, cashier, sale):
        later = sale.transaction_date + timedelta(hours=23)

        result = void_transaction(cashier, sale.invoice_number, now=later)
        assert result.original.payment_status == "refunded"

    def test_elevated_role_exempt_from_window(self, admin, sale):
        later = sale.transaction_date + timedelta(days=30)

        result = void_transaction(admin, sale.invoice_number, now=later)
        assert result.reversal is not None

    def test_cashier_cannot_void_foreign_shop(self, db_session, admin, cashier_user, product, other_shop, stock_up):
        stock_up(product, other_shop, 2)
        foreign = create_transaction(admin, other_shop.id, "sale", items=[LineRequest(product_id=product.id, quantity=1)])

        outsider = Actor(user_id=cashier_user.id, role="cashier", shop_ids=frozenset())
        with pytest.raises(ShopAccessDenied):
            void_transaction(outsider, foreign.invoice_number)


class TestVoidOtherTypes:
    def test_void_return_removes_stock_again(self, cashier, product, shop):
        returned = create_transaction(cashier, shop.id, "return", items=[LineRequest(product_id=product.id, quantity=3)])
        assert stock_ledger.get_stock(product.id, shop.id) == 3

        result = void_transaction(cashier, returned.invoice_number)

        assert result.reversal.transaction_type == "sale"
        assert stock_ledger.get_stock(product.id, shop.id) == 0
        assert stock_ledger.verify_ledger() == []

    def test_void_adjustment_has_no_reversal(self, cashier, product, shop):
        adjustment = create_transaction(
            cashier, shop.id, "adjustment",
            items=[LineRequest(product_id=product.id, quantity=5, unit_price="0.00")],
            is_stock_addition=True,
        )

        result = void_transaction(cashier, adjustment.invoice_number)

        assert result.reversal is None
        assert result.original.payment_status == "refunded"
        assert stock_ledger.get_stock(product.id, shop.id) == 5

    def test_void_claws_back_points(self, db_session, cashier, product, shop, customer, stock_up):
        stock_up(product, shop, 1)
        sale = create_transaction(
            cashier, shop.id, "sale",
            items=[LineRequest(product_id=product.id, quantity=1, unit_price="30000.00")],
            payments=[PaymentRequest(amount="30000.00")],
            customer_id=customer.id,
        )
        db_session.refresh(customer)
        assert customer.points == 3

        void_transaction(cashier, sale.invoice_number)

        db_session.refresh(customer)
        assert customer.points == 0
