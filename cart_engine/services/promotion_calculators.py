# cart_engine/services/promotion_calculators.py
"""
Kalkulatory rabatow, statyczny rejestr po typie rabatu.

Kalkulator dostaje promocje i linie, ktore sie kwalifikuja (w kolejnosci
dodania) i zwraca DiscountResult z rozbiciem na linie. Nic nie zapisuje.
"""
from collections import OrderedDict
from decimal import Decimal
from typing import Callable, Dict, List, Sequence, Tuple

from cart_engine.domain.records import CartItem, DiscountResult, DiscountType, LineDiscount, Promotion
from cart_engine.utils.money import ZERO, money_sum, to_money

HUNDRED = Decimal("100")


def _cap(amount: Decimal, promotion: Promotion) -> Decimal:
    if promotion.max_discount_amount is not None and amount > promotion.max_discount_amount:
        return to_money(promotion.max_discount_amount)
    return amount


def spread(amount: Decimal, weights: Sequence[Tuple[str, Decimal]]) -> Tuple[LineDiscount, ...]:
    """Rozklada kwote proporcjonalnie do wag, reszta z zaokraglen na ostatniej linii."""
    total = money_sum(w for _, w in weights)
    if amount <= ZERO or total <= ZERO:
        return ()

    lines: List[LineDiscount] = []
    assigned = ZERO
    for idx, (item_id, weight) in enumerate(weights):
        if idx == len(weights) - 1:
            share = to_money(amount - assigned)
        else:
            share = to_money(amount * weight / total)
        assigned += share
        lines.append(LineDiscount(item_id=item_id, amount=share))
    return tuple(lines)


def percentage(promotion: Promotion, lines: Sequence[CartItem]) -> DiscountResult:
    base = money_sum(i.total_price for i in lines)
    amount = to_money(base * promotion.value / HUNDRED)
    amount = min(_cap(amount, promotion), base)
    return DiscountResult(
        amount=amount,
        item_ids=tuple(i.id for i in lines),
        lines=spread(amount, [(i.id, i.total_price) for i in lines]),
    )


def fixed(promotion: Promotion, lines: Sequence[CartItem]) -> DiscountResult:
    base = money_sum(i.total_price for i in lines)
    amount = _cap(min(to_money(promotion.value), base), promotion)
    return DiscountResult(
        amount=amount,
        item_ids=tuple(i.id for i in lines),
        lines=spread(amount, [(i.id, i.total_price) for i in lines]),
    )


def buy_x_get_y(promotion: Promotion, lines: Sequence[CartItem]) -> DiscountResult:
    """
    Per produkt: free = floor(qty / buy) * get. Darmowe sztuki to najtansze,
    przy rownej cenie wczesniej dodane. Kazda darmowa sztuka dostaje
    get_discount_percentage (domyslnie 100%).
    """
    buy = promotion.buy_quantity or 0
    get = promotion.get_quantity or 0
    if buy <= 0 or get <= 0:
        return DiscountResult(amount=ZERO)

    pct = promotion.get_discount_percentage if promotion.get_discount_percentage is not None else HUNDRED

    by_product: "OrderedDict[str, List[CartItem]]" = OrderedDict()
    for item in sorted(lines, key=lambda i: i.position):
        by_product.setdefault(item.product_id, []).append(item)

    per_item: Dict[str, Tuple[Decimal, int]] = {}
    for product_lines in by_product.values():
        qty = sum(i.quantity for i in product_lines)
        free = min(qty, (qty // buy) * get)
        if free <= 0:
            continue

        units = sorted(
            ((i.current_unit_price, i.position, i.id) for i in product_lines for _ in range(i.quantity)),
            key=lambda u: (u[0], u[1]),
        )
        for price, _, item_id in units[:free]:
            amount, count = per_item.get(item_id, (ZERO, 0))
            per_item[item_id] = (amount + price * pct / HUNDRED, count + 1)

    if not per_item:
        return DiscountResult(amount=ZERO)

    ordered = [i for i in lines if i.id in per_item]
    raw = [LineDiscount(item_id=i.id, amount=to_money(per_item[i.id][0]), units=per_item[i.id][1]) for i in ordered]
    amount = money_sum(ld.amount for ld in raw)

    capped = _cap(amount, promotion)
    if capped < amount:
        units_by_item = {ld.item_id: ld.units for ld in raw}
        raw = [
            LineDiscount(item_id=ld.item_id, amount=ld.amount, units=units_by_item[ld.item_id])
            for ld in spread(capped, [(ld.item_id, ld.amount) for ld in raw])
        ]
        amount = capped

    return DiscountResult(amount=amount, item_ids=tuple(ld.item_id for ld in raw), lines=tuple(raw))


CALCULATORS: Dict[str, Callable[[Promotion, Sequence[CartItem]], DiscountResult]] = {
    DiscountType.PERCENTAGE.value: percentage,
    DiscountType.FIXED.value: fixed,
    DiscountType.BUY_X_GET_Y.value: buy_x_get_y,
}


def calculate(promotion: Promotion, lines: Sequence[CartItem]) -> DiscountResult:
    calculator = CALCULATORS.get(str(getattr(promotion.discount_type, "value", promotion.discount_type)))
    if calculator is None:
        raise ValueError(f"Nieznany typ rabatu: {promotion.discount_type}")
    if not lines:
        return DiscountResult(amount=ZERO)
    return calculator(promotion, lines)
