import re
from datetime import timedelta
from decimal import Decimal

import pytest

from posledger.errors import (
    ImmutableRecordError,
    InsufficientStock,
    InvalidStateTransition,
    NotFound,
    PaymentExceedsBalance,
    ShopAccessDenied,
    ValidationError,
)
from posledger.models import DocumentSequence, StockMovement, Transaction, TransactionPayment
from posledger.services import stock_ledger
from posledger.services.catalog_service import soft_delete_product
from posledger.services.settings_service import CATEGORY_CUSTOMER, KEY_POINTS_CONVERSION_RATE, set_setting
from posledger.services.transaction_service import (
    LineRequest,
    PaymentRequest,
    add_payment,
    create_transaction,
    determine_payment_status,
    get_transaction,
    list_transactions,
    payment_summary,
    transaction_profit,
)
from posledger.time_utils import utcnow


INVOICE_PATTERN = re.compile(r"^MAI-\d{8}-\d{4}$")


class TestPaymentStatus:
    def test_status_derivation(self):
        assert determine_payment_status(Decimal("150.00"), Decimal("0.00")) == "pending"
        assert determine_payment_status(Decimal("150.00"), Decimal("50.00")) == "partial"
        assert determine_payment_status(Decimal("150.00"), Decimal("150.00")) == "completed"
        assert determine_payment_status(Decimal("150.00"), Decimal("149.995")) == "completed"
        assert determine_payment_status(Decimal("0.00"), Decimal("0.00")) == "completed"


class TestCreateSale:
    def test_sale_totals_stock_and_invoice(self, db_session, cashier, product, shop, cash, stock_up):
        stock_up(product, shop, 10)

        transaction = create_transaction(
            cashier,
            shop.id,
            "sale",
            items=[LineRequest(product_id=product.id, quantity=3, discount_amount="10.00")],
            payments=[PaymentRequest(amount="300.00", payment_method_id=cash.id)],
            payment_method_id=cash.id,
            discount_amount="20.00",
            tax_amount="25.00",
            service_fee="5.00",
        )

        assert INVOICE_PATTERN.match(transaction.invoice_number)
        assert transaction.invoice_number.endswith("-0001")
        assert transaction.subtotal == Decimal("290.00")
        assert transaction.total_amount == Decimal("300.00")
        assert transaction.payment_status == "completed"
        assert transaction.items[0].purchase_price == Decimal("60.00")
        assert stock_ledger.get_stock(product.id, shop.id) == 7

        movement = (
            db_session.query(StockMovement)
            .filter_by(reference_type="transaction", reference_id=transaction.id)
            .one()
        )
        assert movement.quantity == -3
        assert movement.movement_type == "sale"
        assert movement.notes == f"sale: {transaction.invoice_number}"
        assert stock_ledger.verify_ledger() == []

    def test_invoice_numbers_are_sequential(self, cashier, product, shop, stock_up):
        stock_up(product, shop, 10)

        first = create_transaction(cashier, shop.id, "sale", items=[{"product_id": product.id, "quantity": 1}])
        second = create_transaction(cashier, shop.id, "sale", items=[{"product_id": product.id, "quantity": 1}])

        assert first.invoice_number.endswith("-0001")
        assert second.invoice_number.endswith("-0002")
        assert first.invoice_number[:-4] == second.invoice_number[:-4]

    def test_transaction_date_is_stamped_by_server(self, cashier, product, shop, stock_up):
        stock_up(product, shop, 5)
        before = utcnow()

        sale = create_transaction(cashier, shop.id, "sale", items=[{"product_id": product.id, "quantity": 1}])

        assert before <= sale.transaction_date <= utcnow()
        with pytest.raises(TypeError):
            create_transaction(
                cashier, shop.id, "sale",
                items=[{"product_id": product.id, "quantity": 1}],
                transaction_date=before + timedelta(days=30),
            )
        assert stock_ledger.get_stock(product.id, shop.id) == 4

    def test_insufficient_stock_rolls_back_everything(self, db_session, cashier, product, shop, stock_up):
        stock_up(product, shop, 5)

        with pytest.raises(InsufficientStock) as exc_info:
            create_transaction(
                cashier,
                shop.id,
                "sale",
                items=[
                    LineRequest(product_id=product.id, quantity=3),
                    LineRequest(product_id=product.id, quantity=3),
                ],
            )

        assert exc_info.value.requested == 6
        assert db_session.query(Transaction).count() == 0
        assert db_session.query(DocumentSequence).count() == 0
        assert stock_ledger.get_stock(product.id, shop.id) == 5

        transaction = create_transaction(cashier, shop.id, "sale", items=[LineRequest(product_id=product.id, quantity=5)])
        assert transaction.invoice_number.endswith("-0001")

    def test_untracked_product_sells_without_stock(self, db_session, cashier, service_product, shop):
        transaction = create_transaction(
            cashier, shop.id, "sale", items=[LineRequest(product_id=service_product.id, quantity=2)],
        )

        assert transaction.total_amount == Decimal("10.00")
        assert db_session.query(StockMovement).count() == 0

    def test_deleted_product_cannot_be_sold(self, cashier, product, shop, stock_up):
        stock_up(product, shop, 5)
        soft_delete_product(product.id)

        with pytest.raises(ValidationError):
            create_transaction(cashier, shop.id, "sale", items=[LineRequest(product_id=product.id, quantity=1)])

    def test_overpayment_rejected(self, db_session, cashier, product, shop, stock_up):
        stock_up(product, shop, 5)

        with pytest.raises(PaymentExceedsBalance):
            create_transaction(
                cashier, shop.id, "sale",
                items=[LineRequest(product_id=product.id, quantity=1)],
                payments=[PaymentRequest(amount="100.01")],
            )
        assert db_session.query(Transaction).count() == 0

    def test_validation_before_any_write(self, cashier, product, shop):
        with pytest.raises(ValidationError):
            create_transaction(cashier, shop.id, "layaway", items=[LineRequest(product_id=product.id, quantity=1)])
        with pytest.raises(ValidationError):
            create_transaction(cashier, shop.id, "sale", items=[])
        with pytest.raises(ValidationError):
            create_transaction(cashier, shop.id, "sale", items=[LineRequest(product_id=product.id, quantity=0)])
        with pytest.raises(ValidationError):
            create_transaction(
                cashier, shop.id, "sale",
                items=[LineRequest(product_id=product.id, quantity=1)],
                payments=[PaymentRequest(amount=1.5)],
            )

    def test_header_discount_cannot_exceed_total(self, cashier, product, shop, stock_up):
        stock_up(product, shop, 5)
        with pytest.raises(ValidationError):
            create_transaction(
                cashier, shop.id, "sale",
                items=[LineRequest(product_id=product.id, quantity=1)],
                discount_amount="150.00",
            )

    def test_cashier_cannot_sell_in_foreign_shop(self, cashier, product, other_shop):
        with pytest.raises(ShopAccessDenied):
            create_transaction(cashier, other_shop.id, "sale", items=[LineRequest(product_id=product.id, quantity=1)])

    def test_unknown_customer(self, cashier, product, shop, stock_up):
        stock_up(product, shop, 5)
        with pytest.raises(NotFound):
            create_transaction(
                cashier, shop.id, "sale",
                items=[LineRequest(product_id=product.id, quantity=1)],
                customer_id=99999,
            )


class TestOtherTypes:
    def test_return_adds_stock(self, cashier, product, shop):
        transaction = create_transaction(cashier, shop.id, "return", items=[LineRequest(product_id=product.id, quantity=2)])

        assert transaction.transaction_type == "return"
        assert stock_ledger.get_stock(product.id, shop.id) == 2
        assert stock_ledger.verify_ledger() == []

    def test_adjustment_direction_follows_flag(self, cashier, product, shop, stock_up):
        stock_up(product, shop, 5)

        create_transaction(
            cashier, shop.id, "adjustment",
            items=[LineRequest(product_id=product.id, quantity=3, unit_price="0.00")],
            is_stock_addition=True,
        )
        assert stock_ledger.get_stock(product.id, shop.id) == 8

        create_transaction(
            cashier, shop.id, "adjustment",
            items=[LineRequest(product_id=product.id, quantity=2, unit_price="0.00")],
        )
        assert stock_ledger.get_stock(product.id, shop.id) == 6


class TestPayments:
    def test_partial_payments_converge(self, db_session, cashier, product, shop, cash, stock_up):
        stock_up(product, shop, 5)
        transaction = create_transaction(
            cashier, shop.id, "sale",
            items=[LineRequest(product_id=product.id, quantity=1, unit_price="150.00")],
            payments=[PaymentRequest(amount="50.00", payment_method_id=cash.id)],
        )
        assert transaction.payment_status == "partial"

        add_payment(cashier, transaction.invoice_number, "100.00", payment_method_id=cash.id)

        refreshed = get_transaction(cashier.visibility(), transaction.invoice_number)
        assert refreshed.payment_status == "completed"
        summary = payment_summary(refreshed)
        assert summary.total_paid == Decimal("150.00")
        assert summary.remaining_balance == Decimal("0.00")

        with pytest.raises(PaymentExceedsBalance):
            add_payment(cashier, transaction.invoice_number, "1.00")
        assert db_session.query(TransactionPayment).filter_by(transaction_id=transaction.id).count() == 2

    def test_payment_above_remaining_rejected(self, cashier, product, shop, stock_up):
        stock_up(product, shop, 5)
        transaction = create_transaction(cashier, shop.id, "sale", items=[LineRequest(product_id=product.id, quantity=1)])
        assert transaction.payment_status == "pending"

        with pytest.raises(PaymentExceedsBalance):
            add_payment(cashier, transaction.invoice_number, "100.50")

    def test_payment_to_zero_total_completed_sale_rejected(self, cashier, service_product, shop):
        transaction = create_transaction(
            cashier, shop.id, "sale",
            items=[LineRequest(product_id=service_product.id, quantity=1, unit_price="0.00")],
        )
        assert transaction.payment_status == "completed"

        with pytest.raises(PaymentExceedsBalance):
            add_payment(cashier, transaction.invoice_number, "1.00")

    def test_unknown_invoice(self, cashier):
        with pytest.raises(NotFound):
            add_payment(cashier, "NOPE-20260101-0001", "1.00")

    def test_payments_are_append_only(self, db_session, cashier, product, shop, stock_up):
        stock_up(product, shop, 5)
        transaction = create_transaction(
            cashier, shop.id, "sale",
            items=[LineRequest(product_id=product.id, quantity=1)],
            payments=[PaymentRequest(amount="100.00")],
        )

        payment = db_session.query(TransactionPayment).filter_by(transaction_id=transaction.id).one()
        payment.amount = Decimal("1.00")
        with pytest.raises(ImmutableRecordError):
            db_session.flush()
        db_session.rollback()


class TestLoyalty:
    def test_points_awarded_on_completed_sale(self, db_session, cashier, product, shop, customer, stock_up):
        stock_up(product, shop, 5)
        transaction = create_transaction(
            cashier, shop.id, "sale",
            items=[LineRequest(product_id=product.id, quantity=1, unit_price="25000.00")],
            payments=[PaymentRequest(amount="25000.00")],
            customer_id=customer.id,
        )

        assert transaction.points_awarded == 2
        db_session.refresh(customer)
        assert customer.points == 2

    def test_points_awarded_when_last_payment_arrives(self, db_session, cashier, product, shop, customer, stock_up):
        set_setting(CATEGORY_CUSTOMER, KEY_POINTS_CONVERSION_RATE, "100")
        db_session.commit()
        stock_up(product, shop, 5)

        transaction = create_transaction(
            cashier, shop.id, "sale",
            items=[LineRequest(product_id=product.id, quantity=3)],
            payments=[PaymentRequest(amount="100.00")],
            customer_id=customer.id,
        )
        assert transaction.points_awarded == 0

        add_payment(cashier, transaction.invoice_number, "200.00")

        db_session.refresh(customer)
        assert customer.points == 3

    def test_completed_transaction_rejects_more_payments_after_points(self, cashier, product, shop, customer, stock_up):
        stock_up(product, shop, 5)
        transaction = create_transaction(
            cashier, shop.id, "sale",
            items=[LineRequest(product_id=product.id, quantity=1)],
            payments=[PaymentRequest(amount="100.00")],
            customer_id=customer.id,
        )
        with pytest.raises(PaymentExceedsBalance):
            add_payment(cashier, transaction.invoice_number, "0.01")


class TestReads:
    def test_profit(self, cashier, product, shop, stock_up):
        stock_up(product, shop, 5)
        transaction = create_transaction(
            cashier, shop.id, "sale",
            items=[LineRequest(product_id=product.id, quantity=2)],
            discount_amount="15.00",
        )

        # (100 - 60) * 2 - 15
        assert transaction_profit(transaction) == Decimal("65.00")

    def test_visibility_hides_foreign_transactions(self, admin, cashier, product, shop, other_shop, stock_up):
        stock_up(product, other_shop, 5)
        foreign = create_transaction(admin, other_shop.id, "sale", items=[LineRequest(product_id=product.id, quantity=1)])

        with pytest.raises(NotFound):
            get_transaction(cashier.visibility(), foreign.invoice_number)
        assert list_transactions(cashier.visibility()) == []
        assert [t.id for t in list_transactions(admin.visibility(), shop_id=other_shop.id)] == [foreign.id]


class TestRefundedState:
    def test_payment_on_refunded_rejected(self, db_session, admin, product, shop, stock_up):
        stock_up(product, shop, 5)
        transaction = create_transaction(admin, shop.id, "sale", items=[LineRequest(product_id=product.id, quantity=1)])
        transaction.payment_status = "refunded"
        db_session.commit()

        with pytest.raises(InvalidStateTransition):
            add_payment(admin, transaction.invoice_number, "10.00")
