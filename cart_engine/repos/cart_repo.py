# cart_engine/repos/cart_repo.py
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from cart_engine.data.models.cart import CartModel
from cart_engine.data.models.cart_item import CartItemModel
from cart_engine.data.models.applied_promotion import AppliedPromotionModel
from cart_engine.domain.records import (
    AppliedPromotion,
    Cart,
    CartItem,
    CartStatus,
    LineDiscount,
    OwnerRef,
    Totals,
)
from cart_engine.utils.money import to_money


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    #sqlite gubi strefe, postgres nie
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class CartRepo:
    """Zapis/odczyt koszyka jako niemutowalnego rekordu Cart."""

    def __init__(self, db: Session):
        self.db = db

    # odczyt
    def get_cart(self, cart_id: str) -> Cart | None:
        model = self.db.get(CartModel, cart_id)
        return self._to_record(model) if model else None

    def get_cart_by_item(self, item_id: str) -> Cart | None:
        item = self.db.get(CartItemModel, item_id)
        if not item:
            return None
        return self.get_cart(item.cart_id)

    def get_active_cart_by_owner(self, owner: OwnerRef) -> Cart | None:
        stmt = select(CartModel).where(CartModel.status == CartStatus.ACTIVE.value)
        if owner.user_id:
            stmt = stmt.where(CartModel.user_id == owner.user_id)
        else:
            stmt = stmt.where(CartModel.session_id == owner.session_id)
        model = self.db.execute(stmt).scalars().first()
        return self._to_record(model) if model else None

    def find_stale_active_carts(self, now: datetime, limit: int = 500) -> List[Cart]:
        models = (
            self.db.query(CartModel)
            .filter(
                CartModel.status == CartStatus.ACTIVE.value,
                CartModel.expires_at <= now,
            )
            .order_by(CartModel.expires_at)
            .limit(limit)
            .all()
        )
        return [self._to_record(m) for m in models]

    # zapis
    def create_cart(self, cart: Cart) -> Cart:
        model = CartModel(
            id=cart.id,
            user_id=cart.user_id,
            session_id=cart.session_id,
            status=cart.status.value,
            version=cart.version,
            currency=cart.currency,
            promotion_codes=list(cart.promotion_codes),
            destination=cart.destination,
            expires_at=cart.expires_at,
            last_activity_at=cart.last_activity_at,
            created_at=cart.created_at or cart.last_activity_at,
            subtotal=Decimal("0.00"),
            discount_amount=Decimal("0.00"),
            tax_amount=Decimal("0.00"),
            shipping_amount=Decimal("0.00"),
            total_amount=Decimal("0.00"),
        )
        self.db.add(model)
        self.db.flush()
        return self._to_record(model)

    def save_cart(self, cart: Cart, expected_version: int) -> int:
        """
        Optimistic locking: update ... where id = :id and version = :expected.
        Zwraca rowcount, 0 oznacza konflikt i nic nie zostalo zapisane.
        """
        totals = cart.totals
        result = self.db.execute(
            update(CartModel)
            .where(CartModel.id == cart.id, CartModel.version == expected_version)
            .values(
                status=cart.status.value,
                version=cart.version,
                subtotal=totals.subtotal,
                discount_amount=totals.discount,
                tax_amount=totals.tax,
                shipping_amount=totals.shipping,
                total_amount=totals.grand_total,
                promotion_codes=list(cart.promotion_codes),
                destination=cart.destination,
                expires_at=cart.expires_at,
                last_activity_at=cart.last_activity_at,
                converted_order_id=cart.converted_order_id,
                merged_into_cart_id=cart.merged_into_cart_id,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            return 0

        self._sync_items(cart)
        self._replace_applied_promotions(cart)
        self.db.flush()
        self.db.expire_all()
        return result.rowcount

    def commit(self):
        self.db.commit()

    def rollback(self):
        self.db.rollback()

    # pomocnicze
    def _sync_items(self, cart: Cart):
        existing = {
            m.id: m
            for m in self.db.query(CartItemModel).filter(CartItemModel.cart_id == cart.id).all()
        }
        wanted = {i.id for i in cart.items}

        #najpierw delete, zeby unique (cart, variant, seller) nie wybuchl
        for item_id, model in existing.items():
            if item_id not in wanted:
                self.db.delete(model)
        self.db.flush()

        for item in cart.items:
            model = existing.get(item.id)
            if model is None:
                model = CartItemModel(id=item.id, cart_id=cart.id)
                self.db.add(model)
            model.variant_id = item.variant_id
            model.seller_id = item.seller_id
            model.product_id = item.product_id
            model.category_id = item.category_id
            model.tax_category = item.tax_category
            model.quantity = item.quantity
            model.unit_price = item.unit_price
            model.current_unit_price = item.current_unit_price
            model.total_price = item.total_price
            model.discount_amount = item.discount_amount
            model.position = item.position
            model.reservation_id = item.reservation_id
            model.reservation_expires_at = item.reservation_expires_at
            model.is_available = item.is_available
            model.availability_reason = item.availability_reason
            model.available_quantity = item.available_quantity
            model.added_at = item.added_at

    def _replace_applied_promotions(self, cart: Cart):
        #nigdy nie poprawiamy w miejscu - kasujemy i tworzymy od nowa
        self.db.query(AppliedPromotionModel).filter(
            AppliedPromotionModel.cart_id == cart.id
        ).delete(synchronize_session=False)

        for ap in cart.applied_promotions:
            self.db.add(
                AppliedPromotionModel(
                    id=str(uuid4()),
                    cart_id=cart.id,
                    cart_item_id=ap.item_id,
                    promotion_id=ap.promotion_id,
                    promotion_code=ap.code,
                    promotion_name=ap.name,
                    discount_type=ap.discount_type,
                    discount_value=ap.discount_value,
                    discount_amount=ap.amount,
                    priority=ap.priority,
                    stackable=ap.stackable,
                    line_breakdown=[
                        {"item_id": ld.item_id, "amount": str(ld.amount), "units": ld.units}
                        for ld in ap.lines
                    ],
                    eligibility_snapshot=dict(ap.eligibility_snapshot),
                    applied_at=ap.applied_at or datetime.now(timezone.utc),
                )
            )

    def _to_record(self, model: CartModel) -> Cart:
        items = tuple(self._item_to_record(i) for i in sorted(model.items, key=lambda m: m.position))
        applied = tuple(
            AppliedPromotion(
                promotion_id=a.promotion_id,
                code=a.promotion_code,
                name=a.promotion_name,
                discount_type=a.discount_type,
                discount_value=to_money(a.discount_value),
                amount=to_money(a.discount_amount),
                priority=a.priority,
                stackable=a.stackable,
                item_id=a.cart_item_id,
                lines=tuple(
                    LineDiscount(item_id=ld["item_id"], amount=to_money(ld["amount"]), units=ld.get("units"))
                    for ld in (a.line_breakdown or [])
                ),
                eligibility_snapshot=dict(a.eligibility_snapshot or {}),
                applied_at=as_utc(a.applied_at),
            )
            for a in sorted(model.applied_promotions, key=lambda a: (-a.priority, a.promotion_id))
        )
        return Cart(
            id=model.id,
            user_id=model.user_id,
            session_id=model.session_id,
            status=CartStatus(model.status),
            version=model.version,
            expires_at=as_utc(model.expires_at),
            last_activity_at=as_utc(model.last_activity_at),
            created_at=as_utc(model.created_at),
            items=items,
            applied_promotions=applied,
            promotion_codes=tuple(model.promotion_codes or ()),
            totals=Totals(
                subtotal=to_money(model.subtotal),
                discount=to_money(model.discount_amount),
                tax=to_money(model.tax_amount),
                shipping=to_money(model.shipping_amount),
                grand_total=to_money(model.total_amount),
            ),
            currency=model.currency,
            destination=model.destination,
            converted_order_id=model.converted_order_id,
            merged_into_cart_id=model.merged_into_cart_id,
        )

    @staticmethod
    def _item_to_record(m: CartItemModel) -> CartItem:
        return CartItem(
            id=m.id,
            cart_id=m.cart_id,
            variant_id=m.variant_id,
            seller_id=m.seller_id,
            product_id=m.product_id,
            category_id=m.category_id,
            tax_category=m.tax_category,
            quantity=m.quantity,
            unit_price=to_money(m.unit_price),
            current_unit_price=to_money(m.current_unit_price),
            position=m.position,
            discount_amount=to_money(m.discount_amount),
            reservation_id=m.reservation_id,
            reservation_expires_at=as_utc(m.reservation_expires_at),
            is_available=m.is_available,
            availability_reason=m.availability_reason,
            available_quantity=m.available_quantity,
            added_at=as_utc(m.added_at),
        )
