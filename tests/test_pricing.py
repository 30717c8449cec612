"""
Tests for the price calculation pipeline.
"""

from dataclasses import replace
from decimal import Decimal

import pytest

from cart_engine.domain.records import DiscountType, Promotion, PromotionScope
from cart_engine.services.pricing_service import PricingService
from cart_engine.services.promotion_engine import PromotionEngine

from conftest import FakePriceLookup, FakeShippingRates, FakeTaxRates, make_cart, make_item


@pytest.fixture
def taxed():
    taxes = FakeTaxRates()
    taxes.rates = {"STANDARD": Decimal("18"), "REDUCED": Decimal("5")}
    return taxes


@pytest.fixture
def shipped():
    shipping = FakeShippingRates()
    shipping.costs = {"s1": Decimal("40.00")}
    return shipping


@pytest.fixture
def two_seller_cart():
    return make_cart([
        make_item("a", 2, "100.00", seller_id="s1", tax_category="STANDARD"),
        make_item("b", 1, "50.00", seller_id="s2", tax_category="REDUCED", position=1),
    ])


class TestComputeTotals:
    """Tests for totals, tax and shipping."""

    def test_tax_per_category_and_shipping_per_seller(self, taxed, shipped, two_seller_cart):
        pricing = PricingService(FakePriceLookup(), taxed, shipped)

        cart, breakdown = pricing.compute_totals(two_seller_cart)

        assert cart.totals.subtotal == Decimal("250.00")
        assert cart.totals.tax == Decimal("38.50")
        assert cart.totals.shipping == Decimal("40.00")
        assert cart.totals.grand_total == Decimal("328.50")
        assert [t.tax_category for t in breakdown.tax_lines] == ["STANDARD", "REDUCED"]
        assert [(s.seller_id, s.cost) for s in breakdown.shipping_lines] == [
            ("s1", Decimal("40.00")),
            ("s2", Decimal("0.00")),
        ]

    def test_tax_on_discounted_amount(self, taxed, shipped, two_seller_cart, catalog, clock):
        catalog.promotions = [
            Promotion(id="p10", name="10%", scope=PromotionScope.GLOBAL,
                      discount_type=DiscountType.PERCENTAGE.value, value=Decimal("10"))
        ]
        pricing = PricingService(FakePriceLookup(), taxed, shipped)
        discounted = PromotionEngine(catalog, now_fn=clock).apply(two_seller_cart)

        cart, _ = pricing.compute_totals(discounted)

        assert cart.totals.discount == Decimal("25.00")
        assert cart.totals.tax == Decimal("34.65")
        assert cart.totals.grand_total == Decimal("299.65")

    def test_discount_truncated_to_subtotal(self, catalog, clock):
        catalog.promotions = [
            Promotion(id=f"f{n}", name="fixed", scope=PromotionScope.GLOBAL, stackable=True,
                      discount_type=DiscountType.FIXED.value, value=Decimal("80"))
            for n in range(2)
        ]
        pricing = PricingService(FakePriceLookup(), FakeTaxRates("10"), FakeShippingRates())
        discounted = PromotionEngine(catalog, now_fn=clock).apply(make_cart([make_item("a", 1, "100.00")]))

        cart, _ = pricing.compute_totals(discounted)

        assert cart.totals.discount == Decimal("100.00")
        assert cart.totals.tax == Decimal("0.00")
        assert cart.totals.grand_total == Decimal("0.00")

    def test_line_discounts_match_cart_discount(self, catalog, clock):
        """A stackable global discount moves to lines that still have value left."""
        catalog.promotions = [
            Promotion(id="free-a", name="free a", scope=PromotionScope.PRODUCT, stackable=True, priority=10,
                      applicable_products=frozenset({"prod-a"}),
                      discount_type=DiscountType.PERCENTAGE.value, value=Decimal("100")),
            Promotion(id="fifty", name="fifty off", scope=PromotionScope.GLOBAL, stackable=True,
                      discount_type=DiscountType.FIXED.value, value=Decimal("50")),
        ]
        pricing = PricingService(FakePriceLookup(), FakeTaxRates("10"), FakeShippingRates())
        discounted = PromotionEngine(catalog, now_fn=clock).apply(
            make_cart([make_item("a", 1, "100.00"), make_item("b", 1, "100.00", position=1)])
        )

        cart, breakdown = pricing.compute_totals(discounted)

        assert [(a.promotion_id, a.amount) for a in cart.applied_promotions] == [
            ("free-a", Decimal("100.00")),
            ("fifty", Decimal("50.00")),
        ]
        assert [i.discount_amount for i in cart.items] == [Decimal("100.00"), Decimal("50.00")]
        assert sum(i.discount_amount for i in cart.items) == cart.totals.discount == Decimal("150.00")
        assert breakdown.tax_lines[0].taxable_amount == Decimal("50.00")
        assert cart.totals.tax == Decimal("5.00")
        assert cart.totals.grand_total == Decimal("55.00")

    def test_promotion_without_room_left_is_dropped(self, catalog, clock):
        catalog.promotions = [
            Promotion(id="all", name="all free", scope=PromotionScope.GLOBAL, stackable=True, priority=10,
                      discount_type=DiscountType.PERCENTAGE.value, value=Decimal("100")),
            Promotion(id="ten", name="ten off", scope=PromotionScope.GLOBAL, stackable=True,
                      discount_type=DiscountType.FIXED.value, value=Decimal("10")),
        ]

        cart = PromotionEngine(catalog, now_fn=clock).apply(make_cart([make_item("a", 2, "30.00")]))

        assert [a.promotion_id for a in cart.applied_promotions] == ["all"]
        assert cart.items[0].discount_amount == Decimal("60.00")

    def test_grand_total_invariant(self, taxed, shipped, two_seller_cart):
        cart, _ = PricingService(FakePriceLookup(), taxed, shipped).compute_totals(two_seller_cart)
        t = cart.totals

        assert t.grand_total == t.subtotal - t.discount + t.tax + t.shipping
        assert t.grand_total >= 0

    def test_empty_cart_skips_providers(self):
        taxes = FakeTaxRates("18")
        cart, breakdown = PricingService(FakePriceLookup(), taxes, FakeShippingRates()).compute_totals(make_cart())

        assert cart.totals.grand_total == Decimal("0.00")
        assert breakdown.tax_lines == ()
        assert taxes.calls == []

    def test_destination_passed_to_tax_provider(self, two_seller_cart):
        taxes = FakeTaxRates()
        cart = replace(two_seller_cart, destination="IN-KA-560001")

        PricingService(FakePriceLookup(), taxes, FakeShippingRates()).compute_totals(cart)

        assert {d for _, d in taxes.calls} == {"IN-KA-560001"}


class TestRefreshLinePrices:
    """Tests for line price refresh."""

    def test_price_change_flags_line(self):
        lookup = FakePriceLookup()
        lookup.add_variant("var-a", "120.00", 5)
        cart = make_cart([make_item("a", 2, "100.00")])

        refreshed, changes = PricingService(lookup, FakeTaxRates(), FakeShippingRates()).refresh_line_prices(cart)
        item = refreshed.items[0]

        assert item.current_unit_price == Decimal("120.00")
        assert item.unit_price == Decimal("100.00")
        assert item.price_changed is True
        assert item.total_price == Decimal("240.00")
        assert [(c.old_price, c.new_price) for c in changes] == [(Decimal("100.00"), Decimal("120.00"))]

    def test_unchanged_price_reports_nothing(self):
        lookup = FakePriceLookup()
        lookup.add_variant("var-a", "100.00", 5)
        cart = make_cart([make_item("a", 1, "100.00")])

        refreshed, changes = PricingService(lookup, FakeTaxRates(), FakeShippingRates()).refresh_line_prices(cart)

        assert changes == []
        assert refreshed.items[0].price_changed is False
