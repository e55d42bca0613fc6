"""
Shop scoping tests.

Prove that actors can only mutate shops they were granted, and that read
visibility is derived from the same grants.
"""

import pytest

from posledger.authorization import (
    Actor,
    Visibility,
    actor_for_user,
    can_access_shop,
    require_shop_access,
)
from posledger.errors import NotFound, ShopAccessDenied
from posledger.models import Shop, ShopOwner, User


class TestActor:
    def test_super_admin_reaches_every_shop(self, admin, shop, other_shop):
        assert can_access_shop(admin, shop.id)
        assert can_access_shop(admin, other_shop.id)
        assert admin.visibility().shop_ids is None

    def test_cashier_confined_to_granted_shops(self, cashier, shop, other_shop):
        assert can_access_shop(cashier, shop.id)
        assert not can_access_shop(cashier, other_shop.id)
        assert not can_access_shop(cashier, None)

        with pytest.raises(ShopAccessDenied) as exc_info:
            require_shop_access(cashier, other_shop.id)
        assert exc_info.value.details["shop_id"] == other_shop.id

    def test_elevated_roles(self):
        assert Actor(user_id=1, role="owner").is_elevated
        assert Actor(user_id=1, role="admin").is_elevated
        assert not Actor(user_id=1, role="manager").is_elevated
        assert not Actor(user_id=1, role="cashier").is_elevated


class TestVisibility:
    def test_allows(self):
        assert Visibility.everything().allows(42)
        scoped = Visibility.for_shops(1, 2)
        assert scoped.allows(2)
        assert not scoped.allows(3)

    def test_apply_filters_query(self, db_session, shop, other_shop):
        query = Visibility.for_shops(shop.id).apply(db_session.query(Shop), Shop.id)
        assert [s.id for s in query.all()] == [shop.id]

        everything = Visibility.everything().apply(db_session.query(Shop), Shop.id)
        assert everything.count() == 2


class TestActorForUser:
    def test_cashier_gets_home_shop(self, cashier_user, shop):
        actor = actor_for_user(cashier_user.id)
        assert actor.role == "cashier"
        assert actor.shop_ids == frozenset({shop.id})

    def test_owner_gets_owned_shops(self, db_session, shop, other_shop):
        third = Shop(name="Third Shop")
        owner = User(name="Olga Owner", email="owner@test.local", role="owner", shop_id=shop.id)
        db_session.add_all([third, owner])
        db_session.commit()
        db_session.add(ShopOwner(user_id=owner.id, shop_id=other_shop.id))
        db_session.commit()

        actor = actor_for_user(owner.id)

        assert actor.shop_ids == frozenset({shop.id, other_shop.id})

    def test_super_admin_gets_all_shops(self, admin_user, shop, other_shop):
        actor = actor_for_user(admin_user.id)
        assert actor.is_super_admin
        assert actor.shop_ids == frozenset({shop.id, other_shop.id})

    def test_inactive_user_not_found(self, db_session, cashier_user):
        cashier_user.is_active = False
        db_session.commit()

        with pytest.raises(NotFound):
            actor_for_user(cashier_user.id)
