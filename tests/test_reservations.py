"""
Tests for soft/hard inventory reservations.
"""

import pytest
from dataclasses import replace

from cart_engine.data.models.reservation import VariantStockModel
from cart_engine.domain.errors import ReservationConversionError
from cart_engine.domain.events import ReservationExpired
from cart_engine.domain.records import AvailabilityReason, ReservationStatus, ReservationType
from cart_engine.services.pricing_service import mark_variant_unavailable

from conftest import START, make_cart, make_item


def cart_with(quantity, variant_id="v1", cart_id="cart-1", item_id="i1"):
    item = make_item(item_id, quantity, "100.00", variant_id=variant_id, cart_id=cart_id)
    return replace(make_cart([item]), id=cart_id)


class TestReserveForCart:
    """Tests for soft reservation refresh."""

    def test_reserves_each_line(self, reservations):
        cart = reservations.reserve_for_cart(cart_with(3))
        item = cart.items[0]

        assert item.reservation_id is not None
        assert item.is_available is True
        assert reservations.reserved_quantity("v1") == 3

        hold = reservations.get(item.reservation_id)
        assert hold.status == ReservationStatus.ACTIVE
        assert hold.reference_type == ReservationType.CART
        assert hold.expires_at == reservations.now().replace(minute=30)

    def test_live_hold_is_kept(self, reservations):
        first = reservations.reserve_for_cart(cart_with(3))
        second = reservations.reserve_for_cart(first)

        assert second.items[0].reservation_id == first.items[0].reservation_id
        assert reservations.reserved_quantity("v1") == 3

    def test_quantity_change_replaces_hold(self, reservations):
        first = reservations.reserve_for_cart(cart_with(3))
        changed = replace(first, items=(replace(first.items[0], quantity=5),))

        second = reservations.reserve_for_cart(changed)

        assert second.items[0].reservation_id != first.items[0].reservation_id
        assert reservations.get(first.items[0].reservation_id).status == ReservationStatus.RELEASED
        assert reservations.reserved_quantity("v1") == 5

    def test_partial_availability(self, reservations):
        reservations.reserve_for_cart(cart_with(8, cart_id="other"))

        cart = reservations.reserve_for_cart(cart_with(5))
        item = cart.items[0]

        assert item.is_available is False
        assert item.availability_reason == AvailabilityReason.PARTIAL_AVAILABILITY.value
        assert item.available_quantity == 2
        assert item.reservation_id is None
        assert reservations.reserved_quantity("v1") == 8

    def test_out_of_stock(self, reservations, prices):
        prices.stock["v1"] = 0

        item = reservations.reserve_for_cart(cart_with(1)).items[0]

        assert item.availability_reason == AvailabilityReason.OUT_OF_STOCK.value
        assert item.available_quantity == 0

    def test_last_unit_goes_to_one_cart_only(self, reservations, prices):
        """Two carts racing for the last unit: the counter never exceeds stock."""
        prices.stock["v1"] = 1

        winner = reservations.reserve_for_cart(cart_with(1, cart_id="a"))
        loser = reservations.reserve_for_cart(cart_with(1, cart_id="b", item_id="i2"))

        assert winner.items[0].is_available is True
        assert loser.items[0].is_available is False
        assert reservations.reserved_quantity("v1") == 1

    def test_removed_line_hold_released(self, reservations):
        cart = reservations.reserve_for_cart(cart_with(2))
        hold_id = cart.items[0].reservation_id

        reservations.reserve_for_cart(replace(cart, items=()))

        assert reservations.get(hold_id).status == ReservationStatus.RELEASED
        assert reservations.reserved_quantity("v1") == 0

    def test_available_for_line_excludes_own_hold(self, reservations):
        cart = reservations.reserve_for_cart(cart_with(4))

        assert reservations.available_for_line("v1") == 6
        assert reservations.available_for_line("v1", cart.items[0].reservation_id) == 10

    def test_delisted_variant_marked_unavailable(self, reservations, prices):
        prices.remove_variant("v1")

        item = reservations.reserve_for_cart(cart_with(2)).items[0]

        assert item.is_available is False
        assert item.availability_reason == AvailabilityReason.VARIANT_UNAVAILABLE.value
        assert item.available_quantity == 0
        assert item.reservation_id is None
        assert reservations.reserved_quantity("v1") == 0

    def test_drop_unavailable_releases_hold(self, reservations):
        cart = reservations.reserve_for_cart(cart_with(2))
        hold_id = cart.items[0].reservation_id
        delisted = replace(cart, items=(mark_variant_unavailable(cart.items[0]),))

        cart = reservations.drop_unavailable(delisted)

        assert cart.items[0].reservation_id is None
        assert cart.items[0].current_unit_price == delisted.items[0].current_unit_price
        assert reservations.get(hold_id).status == ReservationStatus.RELEASED
        assert reservations.reserved_quantity("v1") == 0

class TestStockCounter:
    """Tests for the per-variant reserved quantity counter."""

    def test_counter_created_once(self, reservations):
        reservations._ensure_counter("v1")
        reservations._ensure_counter("v1")

        assert reservations.reserved_quantity("v1") == 0

    def test_existing_counter_row_is_kept(self, db, reservations):
        """A row inserted by a parallel first reservation must not make the insert fail."""
        db.add(VariantStockModel(variant_id="v1", reserved_qty=4, updated_at=START))
        db.flush()

        reservations._ensure_counter("v1")

        assert reservations.reserved_quantity("v1") == 4

    def test_reserve_on_top_of_existing_counter(self, db, reservations):
        db.add(VariantStockModel(variant_id="v1", reserved_qty=8, updated_at=START))
        db.flush()

        cart = reservations.reserve_for_cart(cart_with(3))

        assert cart.items[0].availability_reason == AvailabilityReason.PARTIAL_AVAILABILITY.value
        assert cart.items[0].available_quantity == 2
        assert reservations.reserved_quantity("v1") == 8


class TestReleaseExpired:
    """Tests for the soft reservation sweep."""

    def test_sweep_after_ttl(self, reservations, clock, outbox):
        cart = reservations.reserve_for_cart(cart_with(3))
        clock.advance(minutes=31)

        expired = reservations.release_expired()

        assert [r.id for r in expired] == [cart.items[0].reservation_id]
        assert reservations.get(cart.items[0].reservation_id).status == ReservationStatus.EXPIRED
        assert reservations.reserved_quantity("v1") == 0
        assert isinstance(outbox.events[-1], ReservationExpired)

    def test_counter_decremented_once(self, reservations, clock):
        reservations.reserve_for_cart(cart_with(3))
        clock.advance(minutes=31)

        reservations.release_expired()
        again = reservations.release_expired()

        assert again == []
        assert reservations.reserved_quantity("v1") == 0

    def test_live_holds_untouched(self, reservations, clock):
        reservations.reserve_for_cart(cart_with(3))
        clock.advance(minutes=29)

        assert reservations.release_expired() == []
        assert reservations.reserved_quantity("v1") == 3


class TestConvertToHard:
    """Tests for soft to hard conversion."""

    def test_convert_twice_creates_one_hard_hold(self, reservations):
        cart = reservations.reserve_for_cart(cart_with(3))

        first = reservations.convert_to_hard("cart-1", "order-1")
        second = reservations.convert_to_hard("cart-1", "order-1")

        hard = reservations.list_for_reference(ReservationType.ORDER, "order-1")
        assert len(hard) == 1
        assert [r.id for r in first] == [r.id for r in second] == [hard[0].id]
        assert hard[0].parent_reservation_id == cart.items[0].reservation_id
        assert hard[0].expires_at is None
        assert reservations.get(cart.items[0].reservation_id).status == ReservationStatus.CONVERTED
        assert reservations.reserved_quantity("v1") == 3

    def test_convert_with_explicit_ids_is_idempotent(self, reservations):
        cart = reservations.reserve_for_cart(cart_with(2))
        ids = [cart.items[0].reservation_id]

        reservations.convert_to_hard("cart-1", "order-1", ids)
        reservations.convert_to_hard("cart-1", "order-1", ids)

        assert len(reservations.list_for_reference(ReservationType.ORDER, "order-1")) == 1

    def test_expired_hold_is_not_skipped(self, reservations, clock):
        cart = reservations.reserve_for_cart(cart_with(3))
        clock.advance(minutes=31)

        with pytest.raises(ReservationConversionError):
            reservations.convert_to_hard("cart-1", "order-1", [cart.items[0].reservation_id])

    def test_swept_hold_is_not_skipped(self, reservations, clock):
        cart = reservations.reserve_for_cart(cart_with(3))
        clock.advance(minutes=31)
        reservations.release_expired()

        with pytest.raises(ReservationConversionError):
            reservations.convert_to_hard("cart-1", "order-1", [cart.items[0].reservation_id])
        with pytest.raises(ReservationConversionError):
            reservations.convert_to_hard("cart-1", "order-1")
