from decimal import Decimal

import pytest

from posledger.errors import NotFound, ValidationError
from posledger.models import PriceRule
from posledger.services.pricing_service import resolve_price, resolve_unit_price


@pytest.fixture
def tiered_rules(db_session, product, retail, shop):
    rules = [
        PriceRule(product_id=product.id, shop_id=None, price_category_id=retail.id, min_quantity=1, price=Decimal("100.00")),
        PriceRule(product_id=product.id, shop_id=shop.id, price_category_id=retail.id, min_quantity=5, price=Decimal("90.00")),
        PriceRule(product_id=product.id, shop_id=shop.id, price_category_id=retail.id, min_quantity=1, price=Decimal("95.00")),
    ]
    db_session.add_all(rules)
    db_session.commit()
    return rules


class TestResolvePrice:
    def test_shop_rule_with_highest_min_quantity_wins(self, tiered_rules, product, retail, shop):
        resolved = resolve_price(product.id, retail.id, shop.id, 5)
        assert resolved.amount == Decimal("90.00")
        assert resolved.rule_id == tiered_rules[1].id

    def test_shop_rule_beats_global_rule_below_tier(self, tiered_rules, product, retail, shop):
        assert resolve_unit_price(product.id, retail.id, shop.id, 3) == Decimal("95.00")

    def test_other_shop_falls_back_to_global_rule(self, tiered_rules, product, retail, other_shop):
        resolved = resolve_price(product.id, retail.id, other_shop.id, 10)
        assert resolved.amount == Decimal("100.00")
        assert resolved.rule_id == tiered_rules[0].id

    def test_no_category_uses_base_price(self, tiered_rules, product, shop):
        resolved = resolve_price(product.id, None, shop.id, 5)
        assert resolved.amount == Decimal("100.00")
        assert resolved.is_base_price

    def test_no_matching_rule_uses_base_price(self, db_session, product, retail, shop):
        db_session.add(PriceRule(
            product_id=product.id, shop_id=None, price_category_id=retail.id, min_quantity=10, price=Decimal("80.00"),
        ))
        db_session.commit()

        assert resolve_price(product.id, retail.id, shop.id, 2).is_base_price
        assert resolve_unit_price(product.id, retail.id, shop.id, 10) == Decimal("80.00")

    def test_inactive_rule_is_ignored(self, db_session, tiered_rules, product, retail, shop):
        tiered_rules[1].is_active = False
        db_session.commit()

        assert resolve_unit_price(product.id, retail.id, shop.id, 5) == Decimal("95.00")

    def test_newest_rule_breaks_ties(self, db_session, tiered_rules, product, retail, shop):
        newer = PriceRule(
            product_id=product.id, shop_id=shop.id, price_category_id=retail.id, min_quantity=5, price=Decimal("88.00"),
        )
        db_session.add(newer)
        db_session.commit()

        assert resolve_price(product.id, retail.id, shop.id, 7).rule_id == newer.id

    def test_unknown_product(self, db_session, retail, shop):
        with pytest.raises(NotFound):
            resolve_price(99999, retail.id, shop.id, 1)

    def test_quantity_must_be_positive(self, product, retail, shop):
        with pytest.raises(ValidationError):
            resolve_price(product.id, retail.id, shop.id, 0)
