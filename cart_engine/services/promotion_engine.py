# cart_engine/services/promotion_engine.py
from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Dict, List, Sequence

from cart_engine.domain.records import AppliedPromotion, Cart, DiscountResult, LineDiscount, Promotion
from cart_engine.services.promotion_calculators import calculate
from cart_engine.services.promotion_eligibility import EligiblePromotion, PromotionEligibility
from cart_engine.utils.logging import get_logger
from cart_engine.utils.money import ZERO, to_money

logger = get_logger(__name__)


def fit_to_room(result: DiscountResult, room: Dict[str, Decimal]) -> DiscountResult:
    """
    Przycina rabaty linii do miejsca, ktore zostalo na linii po wczesniejszych
    promocjach. Nadwyzka idzie na inne linie tej samej promocji, ktore maja
    jeszcze miejsce. Suma rabatow linii zawsze rowna sie kwocie promocji.
    """
    left = dict(room)
    fitted: List[LineDiscount] = []
    excess = ZERO
    for ld in result.lines:
        available = max(left.get(ld.item_id, ZERO), ZERO)
        amount = min(ld.amount, available)
        excess += ld.amount - amount
        left[ld.item_id] = available - amount
        fitted.append(replace(ld, amount=amount))

    if excess > ZERO:
        for idx, ld in enumerate(fitted):
            if excess <= ZERO:
                break
            extra = min(excess, left[ld.item_id])
            if extra > ZERO:
                fitted[idx] = replace(ld, amount=ld.amount + extra)
                left[ld.item_id] -= extra
                excess -= extra

    lines = tuple(ld for ld in fitted if ld.amount > ZERO)
    amount = to_money(sum((ld.amount for ld in lines), ZERO))
    return replace(result, amount=amount, lines=lines)


def resolve_stacking(candidates: Sequence[EligiblePromotion], room: Dict[str, Decimal] | None = None):
    """
    Kolejnosc wejsciowa = kolejnosc ewaluacji. Wybrana niestackowalna promocja
    zajmuje swoj footprint (kategorie/produkty/sellerzy linii); kolejne
    niestackowalne z nachodzacym footprintem odpadaja. Stackowalne nigdy.
    Footprint zajmuje tylko promocja, ktora dala rabat > 0.
    Z podanym room rabaty sa dopasowane do wolnego miejsca na liniach,
    room jest pomniejszany o kazdy zwrocony rabat.
    """
    claimed = set()
    for candidate in candidates:
        promotion = candidate.promotion
        if not promotion.stackable and claimed & candidate.footprint:
            logger.debug(f"Promocja {promotion.id} wykluczona przez stacking")
            continue

        try:
            result = calculate(promotion, candidate.lines)
        except Exception as e:
            logger.warning(f"Promocja {promotion.id} pominieta, blad kalkulatora: {e}")
            continue

        if room is not None:
            result = fit_to_room(result, room)

        if result.amount <= ZERO:
            continue

        if not promotion.stackable:
            claimed |= candidate.footprint
        if room is not None:
            for ld in result.lines:
                room[ld.item_id] = room.get(ld.item_id, ZERO) - ld.amount
        yield candidate, result


class PromotionEngine:
    """
    Przelicza promocje koszyka od zera. Poprzednie AppliedPromotion sa
    wyrzucane, rabaty na liniach liczone na nowo.
    """

    def __init__(self, catalog, now_fn: Callable[[], datetime] | None = None):
        self.catalog = catalog
        self.eligibility = PromotionEligibility(catalog)
        self._now_fn = now_fn or (lambda: datetime.now(timezone.utc))

    def apply(self, cart: Cart, promotions: Sequence[Promotion] | None = None) -> Cart:
        now = self._now_fn()
        #czyscimy stan z poprzedniego przebiegu
        items = tuple(replace(i, discount_amount=ZERO) for i in cart.items)
        cart = replace(cart, items=items, applied_promotions=())
        if not items:
            return cart

        if promotions is None:
            promotions = self.catalog.find_active()

        eligible = self.eligibility.evaluate(cart, promotions, now)

        applied: List[AppliedPromotion] = []
        room = {i.id: i.total_price for i in items}
        per_item: Dict[str, Decimal] = {}
        for candidate, result in resolve_stacking(eligible, room):
            promotion = candidate.promotion
            for ld in result.lines:
                per_item[ld.item_id] = per_item.get(ld.item_id, ZERO) + ld.amount

            applied.append(
                AppliedPromotion(
                    promotion_id=promotion.id,
                    code=promotion.code,
                    name=promotion.name,
                    discount_type=str(getattr(promotion.discount_type, "value", promotion.discount_type)),
                    discount_value=to_money(promotion.value),
                    amount=result.amount,
                    priority=promotion.priority,
                    stackable=promotion.stackable,
                    item_id=result.lines[0].item_id if len(result.lines) == 1 else None,
                    lines=result.lines,
                    eligibility_snapshot=dict(candidate.snapshot),
                    applied_at=now,
                )
            )

        #rabat linii nigdy wiekszy niz wartosc linii
        items = tuple(
            replace(i, discount_amount=min(to_money(per_item.get(i.id, ZERO)), i.total_price))
            for i in items
        )
        if applied:
            logger.info(
                f"Koszyk {cart.id}: zastosowano promocje {[a.promotion_id for a in applied]}"
            )
        return replace(cart, items=items, applied_promotions=tuple(applied))
