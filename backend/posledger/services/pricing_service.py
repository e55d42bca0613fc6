# Overview: Read-only tiered price resolution.

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import case, or_

from ..errors import NotFound
from ..extensions import db
from ..models import PriceRule, Product
from ..validation import quantize_money, to_quantity


@dataclass(frozen=True)
class ResolvedPrice:
    amount: Decimal
    rule_id: int | None = None

    @property
    def is_base_price(self) -> bool:
        return self.rule_id is None


def resolve_price(
    product_id: int,
    price_category_id: int | None,
    shop_id: int | None,
    quantity: int,
) -> ResolvedPrice:
    """
    Unit price for `quantity` units of a product in a shop and price category.

    Candidate rules are the active rules for the product and category with
    min_quantity <= quantity that are either specific to the shop or global
    (shop_id NULL). Shop-specific rules win over global ones; within a scope
    the highest min_quantity wins, and the newest rule breaks remaining ties.

    With no price category, or no matching rule, the product's base selling
    price applies.
    """
    quantity = to_quantity(quantity, "quantity")

    product = db.session.query(Product).filter_by(id=product_id).first()
    if product is None:
        raise NotFound("Product not found", details={"product_id": product_id})

    if price_category_id is None:
        return ResolvedPrice(quantize_money(Decimal(product.selling_price)))

    scope_filter = PriceRule.shop_id.is_(None)
    if shop_id is not None:
        scope_filter = or_(PriceRule.shop_id == shop_id, PriceRule.shop_id.is_(None))

    rule = (
        db.session.query(PriceRule)
        .filter(
            PriceRule.product_id == product_id,
            PriceRule.price_category_id == price_category_id,
            PriceRule.is_active.is_(True),
            PriceRule.min_quantity <= quantity,
            scope_filter,
        )
        .order_by(
            case((PriceRule.shop_id.isnot(None), 1), else_=0).desc(),
            PriceRule.min_quantity.desc(),
            PriceRule.id.desc(),
        )
        .first()
    )

    if rule is None:
        return ResolvedPrice(quantize_money(Decimal(product.selling_price)))

    return ResolvedPrice(quantize_money(Decimal(rule.price)), rule.id)


def resolve_unit_price(
    product_id: int,
    price_category_id: int | None,
    shop_id: int | None,
    quantity: int,
) -> Decimal:
    return resolve_price(product_id, price_category_id, shop_id, quantity).amount
