# cart_engine/services/promotion_eligibility.py
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Iterable, List, Mapping, Sequence, Tuple

from cart_engine.domain.records import Cart, CartItem, Promotion, PromotionScope
from cart_engine.services.promotion_calculators import calculate
from cart_engine.utils.logging import get_logger
from cart_engine.utils.money import money_sum

logger = get_logger(__name__)


@dataclass(frozen=True)
class EligiblePromotion:
    promotion: Promotion
    lines: Tuple[CartItem, ...]
    footprint: frozenset
    estimated_discount: Decimal
    snapshot: Mapping[str, Any] = field(default_factory=dict)


def normalize_code(code: str | None) -> str | None:
    return code.strip().upper() if code else None


def lines_in_scope(promotion: Promotion, cart: Cart) -> Tuple[CartItem, ...]:
    scope = PromotionScope(promotion.scope)
    items = cart.items

    if scope == PromotionScope.GLOBAL:
        return items
    if scope == PromotionScope.CATEGORY:
        return tuple(i for i in items if i.category_id in promotion.applicable_categories)
    if scope == PromotionScope.PRODUCT:
        return tuple(i for i in items if i.product_id in promotion.applicable_products)
    if scope == PromotionScope.SELLER:
        return tuple(i for i in items if i.seller_id in promotion.applicable_sellers)
    if scope == PromotionScope.USER:
        if cart.user_id and cart.user_id in promotion.applicable_users:
            return items
        return ()
    return ()


def footprint_of(lines: Iterable[CartItem]) -> frozenset:
    keys = set()
    for i in lines:
        keys.add(("product", i.product_id))
        keys.add(("seller", i.seller_id))
        if i.category_id:
            keys.add(("category", i.category_id))
    return frozenset(keys)


class PromotionEligibility:
    """
    Ocenia, ktore promocje z katalogu wchodza dla koszyka.
    Blad przy jednej promocji = ta promocja odpada (log), reszta dalej.
    """

    def __init__(self, catalog):
        self.catalog = catalog

    def evaluate(self, cart: Cart, promotions: Sequence[Promotion], now: datetime) -> List[EligiblePromotion]:
        codes = {normalize_code(c) for c in cart.promotion_codes}
        subtotal = money_sum(i.total_price for i in cart.items)

        eligible: List[EligiblePromotion] = []
        for promotion in promotions:
            try:
                found = self._check(cart, promotion, codes, subtotal, now)
            except Exception as e:
                logger.warning(f"Promocja {promotion.id} pominieta, blad ewaluacji: {e}")
                continue
            if found is not None:
                eligible.append(found)

        #priorytet malejaco, potem wiekszy rabat, potem id - deterministycznie
        eligible.sort(key=lambda e: (-e.promotion.priority, -e.estimated_discount, e.promotion.id))
        return eligible

    def _check(self, cart: Cart, promotion: Promotion, codes: set, subtotal: Decimal, now: datetime):
        if not promotion.active:
            return None
        if promotion.valid_from and now < promotion.valid_from:
            return None
        if promotion.valid_to and now > promotion.valid_to:
            return None

        #kupony tylko jesli kod zostal jawnie dodany do koszyka
        if promotion.code and normalize_code(promotion.code) not in codes:
            return None

        if promotion.min_order_amount is not None and subtotal < promotion.min_order_amount:
            return None

        usage = None
        if promotion.usage_limit is not None:
            usage = self.catalog.get_usage_count(promotion.id)
            if usage >= promotion.usage_limit:
                return None

        user_usage = None
        owner = cart.owner
        if promotion.usage_limit_per_user is not None and owner.is_authenticated:
            user_usage = self.catalog.get_usage_count(promotion.id, user_id=owner.user_id)
            if user_usage >= promotion.usage_limit_per_user:
                return None

        lines = lines_in_scope(promotion, cart)
        if not lines:
            return None

        if promotion.owner_rule is not None and not promotion.owner_rule(owner):
            return None

        estimate = calculate(promotion, lines).amount
        snapshot = {
            "scope": PromotionScope(promotion.scope).value,
            "subtotal": str(subtotal),
            "min_order_amount": str(promotion.min_order_amount) if promotion.min_order_amount is not None else None,
            "eligible_item_ids": [i.id for i in lines],
            "usage_count": usage,
            "user_usage_count": user_usage,
            "code": promotion.code,
        }
        return EligiblePromotion(
            promotion=promotion,
            lines=lines,
            footprint=footprint_of(lines),
            estimated_discount=estimate,
            snapshot=snapshot,
        )
