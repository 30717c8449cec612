# cart_engine/services/pricing_service.py
from collections import OrderedDict
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import List, Tuple

from cart_engine.domain.errors import NotFoundError
from cart_engine.domain.records import (
    AvailabilityReason,
    Cart,
    CartItem,
    PricingBreakdown,
    ShippingLine,
    TaxLine,
    Totals,
)
from cart_engine.utils.logging import get_logger
from cart_engine.utils.money import ZERO, money_sum, to_money
from cart_engine.utils.settings import DEFAULT_DESTINATION

logger = get_logger(__name__)


@dataclass(frozen=True)
class PriceChange:
    item_id: str
    variant_id: str
    old_price: Decimal
    new_price: Decimal


def grand_total_of(totals: Totals) -> Decimal:
    return to_money(totals.subtotal - totals.discount + totals.tax + totals.shipping)


def mark_variant_unavailable(item: CartItem) -> CartItem:
    #ostatnia znana cena zostaje, hold zwalnia ReservationService.drop_unavailable
    return replace(
        item,
        is_available=False,
        availability_reason=AvailabilityReason.VARIANT_UNAVAILABLE.value,
        available_quantity=0,
    )


class PricingService:
    """
    Pipeline cen:
    -odswiezenie cen linii z price lookup (zmiana ceny tylko flaguje, nie blokuje)
    -subtotal, rabat (przyciety do subtotalu), podatek per kategoria podatkowa,
     wysylka per seller
    -grand_total = subtotal - discount + tax + shipping, nigdy ujemny
    """

    def __init__(self, price_lookup, tax_rates, shipping_rates):
        self.price_lookup = price_lookup
        self.tax_rates = tax_rates
        self.shipping_rates = shipping_rates

    def refresh_line_prices(self, cart: Cart) -> Tuple[Cart, List[PriceChange]]:
        changes: List[PriceChange] = []
        items = []
        for item in cart.items:
            try:
                current = self.price_lookup.get_current_price(item.variant_id).unit_price
            except NotFoundError:
                logger.warning(f"Wariant {item.variant_id} wycofany, linia {item.id} w koszyku {cart.id} niedostepna")
                items.append(mark_variant_unavailable(item))
                continue
            if current != item.current_unit_price:
                logger.info(
                    f"Zmiana ceny wariantu {item.variant_id} w koszyku {cart.id}: "
                    f"{item.current_unit_price} -> {current}"
                )
                changes.append(PriceChange(item.id, item.variant_id, item.current_unit_price, current))
            items.append(replace(item, current_unit_price=current))
        return replace(cart, items=tuple(items)), changes

    def compute_totals(self, cart: Cart) -> Tuple[Cart, PricingBreakdown]:
        if not cart.items:
            return replace(cart, totals=Totals()), PricingBreakdown()

        subtotal = money_sum(i.total_price for i in cart.items)
        discount = min(money_sum(a.amount for a in cart.applied_promotions), subtotal)
        destination = cart.destination or DEFAULT_DESTINATION

        tax_lines = self._tax_lines(cart.items, destination)
        shipping_lines = self._shipping_lines(cart.items, destination)
        tax = money_sum(t.tax_amount for t in tax_lines)
        shipping = money_sum(s.cost for s in shipping_lines)

        totals = Totals(subtotal=subtotal, discount=discount, tax=tax, shipping=shipping)
        totals = replace(totals, grand_total=max(ZERO, grand_total_of(totals)))

        breakdown = PricingBreakdown(tax_lines=tuple(tax_lines), shipping_lines=tuple(shipping_lines))
        return replace(cart, totals=totals), breakdown

    def _tax_lines(self, items, destination: str) -> List[TaxLine]:
        groups: "OrderedDict[str, List[CartItem]]" = OrderedDict()
        for item in items:
            groups.setdefault(item.tax_category, []).append(item)

        lines = []
        for category, group in groups.items():
            gross = money_sum(i.total_price for i in group)
            discounts = money_sum(i.discount_amount for i in group)
            taxable = max(ZERO, gross - discounts)
            rate = Decimal(str(self.tax_rates.get_rate(category, destination)))
            lines.append(
                TaxLine(
                    tax_category=category,
                    rate=rate,
                    taxable_amount=taxable,
                    tax_amount=to_money(taxable * rate / Decimal("100")),
                )
            )
        return lines

    def _shipping_lines(self, items, destination: str) -> List[ShippingLine]:
        groups: "OrderedDict[str, List[CartItem]]" = OrderedDict()
        for item in items:
            groups.setdefault(item.seller_id, []).append(item)

        return [
            ShippingLine(
                seller_id=seller_id,
                item_count=sum(i.quantity for i in group),
                cost=to_money(self.shipping_rates.calculate(seller_id, group, destination)),
            )
            for seller_id, group in groups.items()
        ]
