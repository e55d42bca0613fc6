# Overview: Caller identity and shop scoping passed into every engine.

"""
Authorization helpers.

The core never authenticates. Callers hand every engine an already-resolved
Actor; engines only check that the actor may touch the shop being mutated.
Read queries take an explicit Visibility instead of consulting ambient state.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from .errors import NotFound, ShopAccessDenied
from .extensions import db
from .models import ShopOwner, Shop, User


ROLES = ("super_admin", "owner", "admin", "manager", "cashier")

# Roles exempt from the void time window
ELEVATED_ROLES = frozenset({"super_admin", "owner", "admin"})


@dataclass(frozen=True)
class Actor:
    """
    Authenticated caller.

    shop_ids is the set of shops the actor may act in. It is ignored for
    super_admin, who may act everywhere.
    """
    user_id: int
    role: str
    shop_ids: frozenset[int] = field(default_factory=frozenset)

    @property
    def is_super_admin(self) -> bool:
        return self.role == "super_admin"

    @property
    def is_elevated(self) -> bool:
        return self.role in ELEVATED_ROLES

    def visibility(self) -> "Visibility":
        if self.is_super_admin:
            return Visibility.everything()
        return Visibility(frozenset(self.shop_ids))


@dataclass(frozen=True)
class Visibility:
    """Shops a read query may return. shop_ids=None means every shop."""
    shop_ids: frozenset[int] | None

    @classmethod
    def everything(cls) -> "Visibility":
        return cls(None)

    @classmethod
    def for_shops(cls, *shop_ids: int) -> "Visibility":
        return cls(frozenset(shop_ids))

    def allows(self, shop_id: int | None) -> bool:
        if self.shop_ids is None:
            return True
        return shop_id in self.shop_ids

    def apply(self, query, shop_column):
        if self.shop_ids is None:
            return query
        return query.filter(shop_column.in_(sorted(self.shop_ids)))


def can_access_shop(actor: Actor, shop_id: int | None) -> bool:
    if shop_id is None:
        return False
    if actor.is_super_admin:
        return True
    return shop_id in actor.shop_ids


def require_shop_access(actor: Actor, shop_id: int | None) -> None:
    if not can_access_shop(actor, shop_id):
        raise ShopAccessDenied(
            "You do not have access to this shop",
            details={"user_id": actor.user_id, "shop_id": shop_id},
        )


def actor_for_user(user_id: int) -> Actor:
    """
    Build an Actor from stored user data.

    super_admin sees every shop, owners see the shops they own plus their
    home shop, everyone else is confined to their home shop.
    """
    user = db.session.query(User).filter_by(id=user_id).first()
    if not user or not user.is_active:
        raise NotFound("User not found", details={"user_id": user_id})

    if user.role == "super_admin":
        shop_ids = {row[0] for row in db.session.query(Shop.id).all()}
    else:
        shop_ids = set()
        if user.role == "owner":
            rows = db.session.query(ShopOwner.shop_id).filter_by(user_id=user_id).all()
            shop_ids = {row[0] for row in rows}
        if user.shop_id is not None:
            shop_ids.add(user.shop_id)

    return Actor(user_id=user.id, role=user.role, shop_ids=frozenset(shop_ids))
