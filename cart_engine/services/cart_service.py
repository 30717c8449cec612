# cart_engine/services/cart_service.py
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional
from uuid import uuid4

import requests
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from cart_engine.domain.errors import (
    BadRequestError,
    CartError,
    ConflictError,
    InsufficientInventoryError,
    NotFoundError,
)
from cart_engine.domain.events import (
    CartAbandoned,
    CartConverted,
    CartCreated,
    CartEvent,
    CartExpired,
    CartMerged,
    ItemAdded,
    ItemRemoved,
    ItemUpdated,
    PriceChangeDetected,
    PromotionsApplied,
)
from cart_engine.domain.records import Actor, Cart, CartItem, CartStatus, CartSummary, OwnerRef, PricingBreakdown
from cart_engine.repos.cart_repo import CartRepo
from cart_engine.services import cart_guard
from cart_engine.services.event_outbox import EventOutbox
from cart_engine.services.pricing_service import PricingService
from cart_engine.services.promotion_eligibility import PromotionEligibility, normalize_code
from cart_engine.services.promotion_engine import PromotionEngine
from cart_engine.services.reservation_service import ReservationService
from cart_engine.utils.logging import get_logger
from cart_engine.utils.retry import conflict_retry
from cart_engine.utils.settings import (
    CURRENCY,
    DEFAULT_DESTINATION,
    GUEST_CART_TTL_SECONDS,
    USER_CART_TTL_SECONDS,
)

logger = get_logger(__name__)

EventsFn = Callable[[Cart], List[CartEvent]]


@dataclass
class _Change:
    """Wynik jednej zmiany: nowy koszyk (przed pipeline), zdarzenia i opcjonalna weryfikacja po pipeline."""

    cart: Cart
    events: Optional[EventsFn] = None
    verify: Optional[Callable[[Cart], None]] = None


@dataclass
class MergeResult:
    cart: Cart
    merged_lines: int = 0
    failures: List[dict] = field(default_factory=list)


class CartService:
    """
    Use case'y koszyka.
    commands (add, update, remove, kody, merge, konwersja) ida przez jeden
    pipeline: guard -> rezerwacje -> ceny -> promocje -> sumy -> zapis z
    kontrola wersji -> commit -> zdarzenia
    query (get) tylko odczyt
    """

    def __init__(
        self,
        db: Session,
        price_lookup,
        promotion_catalog,
        tax_rates,
        shipping_rates,
        abuse_guard: cart_guard.AbuseGuard | None = None,
        outbox: EventOutbox | None = None,
        now_fn: Callable[[], datetime] | None = None,
    ):
        self._now_fn = now_fn or (lambda: datetime.now(timezone.utc))
        self.repo = CartRepo(db)
        self.price_lookup = price_lookup
        self.catalog = promotion_catalog
        self.abuse_guard = abuse_guard
        self.outbox = outbox or EventOutbox()
        self.reservations = ReservationService(db, price_lookup, outbox=self.outbox, now_fn=self._now_fn)
        self.pricing = PricingService(price_lookup, tax_rates, shipping_rates)
        self.promotions = PromotionEngine(promotion_catalog, now_fn=self._now_fn)

    def now(self) -> datetime:
        return self._now_fn()

    @staticmethod
    def ttl_for(owner: OwnerRef) -> timedelta:
        seconds = USER_CART_TTL_SECONDS if owner.is_authenticated else GUEST_CART_TTL_SECONDS
        return timedelta(seconds=seconds)

    #query - odczyt
    def get_cart(self, cart_id: str, actor: Actor) -> Cart:
        cart = self._load(cart_id)
        cart_guard.check_access(cart, actor)
        return cart

    def get_breakdown(self, cart_id: str, actor: Actor) -> PricingBreakdown:
        """Rozbicie podatku i wysylki dla zapisanego stanu koszyka (nic nie zapisuje)."""
        cart = self.get_cart(cart_id, actor)
        _, breakdown = self.pricing.compute_totals(cart)
        return breakdown

    def get_summary(self, cart_id: str, actor: Actor) -> CartSummary:
        cart = self.get_cart(cart_id, actor)
        return CartSummary(
            cart_id=cart.id,
            item_count=sum(i.quantity for i in cart.items),
            seller_count=len(cart.seller_ids),
            has_unavailable_items=any(not i.is_available for i in cart.items),
            has_price_changes=any(i.price_changed for i in cart.items),
            estimated_total=cart.totals.grand_total,
            currency=cart.currency,
        )

    #commands
    def get_or_create(self, owner: OwnerRef) -> Cart:
        return conflict_retry()(self._get_or_create)(owner)

    def _get_or_create(self, owner: OwnerRef) -> Cart:
        now = self.now()
        existing = self.repo.get_active_cart_by_owner(owner)

        if existing and existing.expires_at > now:
            return existing

        if existing:
            #stary koszyk po terminie - zamykamy zanim powstanie nowy
            logger.info(f"Koszyk {existing.id} wygasl, tworze nowy dla {owner.identifier}")
            self._close_stale(existing, CartStatus.EXPIRED, now)

        if self.abuse_guard is not None:
            self.abuse_guard.ensure_allowed(cart_guard.CART_CREATION, owner.identifier)
            self.abuse_guard.record_cart_creation(owner.identifier)

        new_cart = Cart(
            id=str(uuid4()),
            user_id=owner.user_id,
            session_id=owner.session_id,
            status=CartStatus.ACTIVE,
            version=1,
            expires_at=now + self.ttl_for(owner),
            last_activity_at=now,
            created_at=now,
            currency=CURRENCY,
            destination=DEFAULT_DESTINATION,
        )
        try:
            created = self.repo.create_cart(new_cart)
            self.repo.commit()
        except IntegrityError:
            #ktos rownolegle utworzyl aktywny koszyk dla tego wlasciciela
            self.repo.rollback()
            other = self.repo.get_active_cart_by_owner(owner)
            if other is None:
                raise
            return other

        logger.info(f"Utworzono nowy koszyk {created.id} dla {owner.identifier}")
        self._emit(
            [CartCreated(cart_id=created.id, sequence=created.version, occurred_at=now,
                         actor=owner.identifier, user_id=owner.user_id, session_id=owner.session_id)]
        )
        return created

    def refresh_cart(self, cart_id: str, actor: Actor) -> Cart:
        """Przelicza koszyk bez zmiany pozycji (ceny, rezerwacje, promocje)."""
        return self._mutate(cart_id, actor, lambda cart: _Change(cart))

    def add_item(self, cart_id: str, variant_id: str, quantity: int, actor: Actor) -> Cart:
        cart_guard.check_line_quantity(quantity)

        cart = self._load(cart_id)
        cart_guard.check_access(cart, actor)
        if self.abuse_guard is not None:
            self.abuse_guard.ensure_allowed(cart_guard.ADD_ITEM, cart.owner.identifier)

        def change(cart: Cart) -> _Change:
            price = self.price_lookup.get_current_price(variant_id)
            existing = next(
                (i for i in cart.items if i.variant_id == variant_id and i.seller_id == price.seller_id),
                None,
            )
            already = existing.quantity if existing else 0
            new_quantity = already + quantity
            cart_guard.check_line_quantity(new_quantity)

            #check czy stan pozwala na laczna ilosc (wlasna rezerwacja linii sie nie liczy)
            available = self.reservations.available_for_line(
                variant_id, existing.reservation_id if existing else None
            )
            if available < new_quantity:
                raise InsufficientInventoryError(variant_id, quantity, available - already)

            if existing:
                logger.info(
                    f"Wariant {variant_id} juz jest w koszyku, zwiekszam ilosc z {already} do {new_quantity}"
                )
                item = replace(existing, quantity=new_quantity, current_unit_price=price.unit_price)
                items = tuple(item if i.id == existing.id else i for i in cart.items)
            else:
                logger.info(f"Dodaje nowy wariant {variant_id} do koszyka {cart.id}")
                item = CartItem(
                    id=str(uuid4()),
                    cart_id=cart.id,
                    variant_id=variant_id,
                    seller_id=price.seller_id,
                    product_id=price.product_id,
                    category_id=price.category_id,
                    tax_category=price.tax_category,
                    quantity=quantity,
                    unit_price=price.unit_price,
                    current_unit_price=price.unit_price,
                    position=max((i.position for i in cart.items), default=-1) + 1,
                    added_at=self.now(),
                )
                items = cart.items + (item,)

            candidate = replace(cart, items=items)
            cart_guard.check_limits(candidate)

            def verify(final: Cart):
                #rezerwacja mogla przegrac wyscig o ostatnie sztuki
                line = next(i for i in final.items if i.id == item.id)
                if not line.is_available:
                    raise InsufficientInventoryError(variant_id, quantity, (line.available_quantity or 0) - already)

            return _Change(
                candidate,
                events=lambda final: [
                    ItemAdded(cart_id=final.id, sequence=final.version, occurred_at=self.now(),
                              actor=actor.identifier, item_id=item.id, variant_id=variant_id, quantity=quantity)
                ],
                verify=verify,
            )

        result = self._mutate(cart_id, actor, change)

        if self.abuse_guard is not None:
            reserved = self.reservations.reserved_quantity_for_owner(result.owner)
            self.abuse_guard.check_hoarding(result.owner.identifier, reserved)
        return result

    def update_item_quantity(self, item_id: str, quantity: int, actor: Actor) -> Cart:
        if quantity <= 0:
            return self.remove_item(item_id, actor)
        cart_guard.check_line_quantity(quantity)

        cart = self._load_by_item(item_id)

        def change(cart: Cart) -> _Change:
            item = self._find_item(cart, item_id)
            available = self.reservations.available_for_line(item.variant_id, item.reservation_id)
            if available < quantity:
                #nie przycinamy, klient dostaje max
                raise InsufficientInventoryError(item.variant_id, quantity, available)

            updated = replace(item, quantity=quantity)
            items = tuple(updated if i.id == item_id else i for i in cart.items)

            def verify(final: Cart):
                line = self._find_item(final, item_id)
                if not line.is_available:
                    raise InsufficientInventoryError(item.variant_id, quantity, line.available_quantity or 0)

            return _Change(
                replace(cart, items=items),
                events=lambda final: [
                    ItemUpdated(cart_id=final.id, sequence=final.version, occurred_at=self.now(),
                                actor=actor.identifier, item_id=item_id,
                                old_quantity=item.quantity, new_quantity=quantity)
                ],
                verify=verify,
            )

        return self._mutate(cart.id, actor, change)

    def remove_item(self, item_id: str, actor: Actor) -> Cart:
        cart = self._load_by_item(item_id)

        def change(cart: Cart) -> _Change:
            item = self._find_item(cart, item_id)
            logger.info(f"Usuwanie wariantu {item.variant_id} z koszyka {cart.id}")
            #rezerwacje linii zwalnia reserve_for_cart (linia zniknela)
            return _Change(
                replace(cart, items=tuple(i for i in cart.items if i.id != item_id)),
                events=lambda final: [
                    ItemRemoved(cart_id=final.id, sequence=final.version, occurred_at=self.now(),
                                actor=actor.identifier, item_id=item_id, variant_id=item.variant_id)
                ],
            )

        return self._mutate(cart.id, actor, change)

    def clear_cart(self, cart_id: str, actor: Actor) -> Cart:
        def change(cart: Cart) -> _Change:
            removed = cart.items
            return _Change(
                replace(cart, items=()),
                events=lambda final: [
                    ItemRemoved(cart_id=final.id, sequence=final.version, occurred_at=self.now(),
                                actor=actor.identifier, item_id=i.id, variant_id=i.variant_id)
                    for i in removed
                ],
            )

        return self._mutate(cart_id, actor, change)

    def apply_promotion_code(self, cart_id: str, code: str, actor: Actor) -> Cart:
        normalized = normalize_code(code)
        if not normalized:
            raise BadRequestError("Kod promocyjny jest pusty", reason="INVALID_PROMOTION_CODE")

        cart = self._load(cart_id)
        cart_guard.check_access(cart, actor)
        identifier = cart.owner.identifier
        if self.abuse_guard is not None:
            self.abuse_guard.ensure_allowed(cart_guard.PROMOTION_CODE, identifier)

        def change(cart: Cart) -> _Change:
            if normalized in {normalize_code(c) for c in cart.promotion_codes}:
                return _Change(cart)

            candidate = replace(cart, promotion_codes=cart.promotion_codes + (normalized,))
            matching = [p for p in self.catalog.find_active() if normalize_code(p.code) == normalized]
            eligible = PromotionEligibility(self.catalog).evaluate(candidate, matching, self.now())
            if not eligible:
                logger.info(f"Niepoprawny kod {normalized} dla koszyka {cart.id}")
                if self.abuse_guard is not None:
                    self.abuse_guard.record_invalid_code(identifier)
                raise BadRequestError(
                    f"Kod {normalized} nie istnieje albo nie dotyczy tego koszyka",
                    reason="INVALID_PROMOTION_CODE",
                )
            return _Change(candidate)

        return self._mutate(cart_id, actor, change)

    def remove_promotion_code(self, cart_id: str, code: str, actor: Actor) -> Cart:
        normalized = normalize_code(code)

        def change(cart: Cart) -> _Change:
            codes = tuple(c for c in cart.promotion_codes if normalize_code(c) != normalized)
            return _Change(replace(cart, promotion_codes=codes))

        return self._mutate(cart_id, actor, change)

    def set_destination(self, cart_id: str, destination: str, actor: Actor) -> Cart:
        if not destination or not destination.strip():
            raise BadRequestError("Brak miejsca dostawy", reason="INVALID_DESTINATION")

        return self._mutate(
            cart_id, actor, lambda cart: _Change(replace(cart, destination=destination.strip()))
        )

    def merge_guest_cart(self, session_id: str, user_id: str, actor: Actor) -> MergeResult:
        """
        Po zalogowaniu: rezerwacje koszyka goscia sa zwalniane, koszyk goscia
        -> merged, potem kazda linia idzie osobno przez add_item na koszyk
        usera. Bledy linii sa zbierane, nie przerywaja merge.
        """
        cart_guard.check_merge_access(actor, session_id, user_id)

        guest_owner = OwnerRef.for_session(session_id)
        user_owner = OwnerRef.for_user(user_id)
        owner_actor = Actor(user_id=user_id)

        user_cart = self.get_or_create(user_owner)
        guest = self.repo.get_active_cart_by_owner(guest_owner)
        if guest is None:
            return MergeResult(cart=user_cart)

        lines = conflict_retry()(self._close_guest)(guest.id, user_cart.id)

        result = MergeResult(cart=user_cart)
        for line in lines:
            try:
                result.cart = self.add_item(user_cart.id, line.variant_id, line.quantity, owner_actor)
                result.merged_lines += 1
            except (CartError, requests.RequestException) as e:
                logger.warning(f"Merge: linia {line.variant_id} x{line.quantity} nie przeszla: {e}")
                result.failures.append(
                    {
                        "variant_id": line.variant_id,
                        "quantity": line.quantity,
                        "reason": getattr(e, "reason", type(e).__name__),
                        "message": str(e),
                    }
                )

        if result.merged_lines == 0:
            result.cart = self._load(user_cart.id)

        self._emit(
            [CartMerged(cart_id=result.cart.id, sequence=result.cart.version, occurred_at=self.now(),
                        actor=actor.identifier, source_cart_id=guest.id,
                        merged_lines=result.merged_lines, failed_lines=len(result.failures))]
        )
        logger.info(
            f"Merge {guest.id} -> {user_cart.id}: {result.merged_lines} OK, {len(result.failures)} bledow"
        )
        return result

    def _close_guest(self, guest_id: str, target_id: str):
        try:
            guest = self._load(guest_id)
            if guest.status != CartStatus.ACTIVE:
                return ()
            self.reservations.release_for_cart(guest.id, reason="merged")
            closed = replace(
                guest,
                status=CartStatus.MERGED,
                merged_into_cart_id=target_id,
                version=guest.version + 1,
                last_activity_at=self.now(),
            )
            self._save(closed, guest.version)
            self.repo.commit()
        except Exception:
            self.repo.rollback()
            raise
        return guest.items

    def convert_to_order(self, cart_id: str, order_id: str, actor: Actor) -> Cart:
        """
        Hook dla tworzenia zamowienia: miekkie rezerwacje -> twarde, koszyk -> converted.
        Ponowne wywolanie z tym samym order_id zwraca skonwertowany koszyk.
        """
        return conflict_retry()(self._convert_to_order)(cart_id, order_id, actor)

    def _convert_to_order(self, cart_id: str, order_id: str, actor: Actor) -> Cart:
        now = self.now()
        cart = self._load(cart_id)
        cart_guard.check_access(cart, actor)

        if cart.status == CartStatus.CONVERTED:
            if cart.converted_order_id == order_id:
                return cart
            raise BadRequestError(
                f"Koszyk {cart.id} zostal juz zamieniony na zamowienie {cart.converted_order_id}",
                reason="CART_ALREADY_CONVERTED",
            )

        cart_guard.check_mutable(cart, now)
        if cart.is_empty:
            raise BadRequestError("Nie mozna zamowic pustego koszyka", reason="CART_EMPTY")
        not_ready = [i.id for i in cart.items if not i.is_available or not i.reservation_id]
        if not_ready:
            raise BadRequestError(
                "Nie wszystkie pozycje sa zarezerwowane", reason="CART_NOT_RESERVED", payload={"item_ids": not_ready}
            )

        try:
            self.reservations.convert_to_hard(cart.id, order_id, [i.reservation_id for i in cart.items])
            converted = replace(
                cart,
                status=CartStatus.CONVERTED,
                converted_order_id=order_id,
                version=cart.version + 1,
                last_activity_at=now,
            )
            self._save(converted, cart.version)
            self.repo.commit()
        except Exception:
            self.repo.rollback()
            raise

        logger.info(f"Koszyk {cart.id} zamieniony na zamowienie {order_id}, wersja {converted.version}")
        self._emit(
            [CartConverted(cart_id=cart.id, sequence=converted.version, occurred_at=now, actor=actor.identifier,
                           order_id=order_id, grand_total=str(converted.totals.grand_total))]
        )
        return converted

    # zadania okresowe
    def sweep_carts(self, now: datetime | None = None, limit: int = 500) -> dict:
        """Aktywne koszyki po terminie: z pozycjami -> abandoned, puste -> expired."""
        now = now or self.now()
        counts = {"abandoned": 0, "expired": 0, "skipped": 0}

        for cart in self.repo.find_stale_active_carts(now, limit=limit):
            status = CartStatus.ABANDONED if cart.items else CartStatus.EXPIRED
            try:
                self._close_stale(cart, status, now)
            except ConflictError:
                #koszyk dotkniety w miedzyczasie, nastepny sweep go zobaczy
                counts["skipped"] += 1
                continue
            counts[status.value] += 1

        logger.info(f"Cart sweep: {counts}")
        return counts

    def release_expired_reservations(self, now: datetime | None = None):
        return self.reservations.release_expired(now or self.now())

    # pipeline
    def _mutate(self, cart_id: str, actor: Actor, change_fn: Callable[[Cart], _Change]) -> Cart:
        @conflict_retry()
        def attempt():
            now = self.now()
            try:
                cart = self._load(cart_id)
                cart_guard.check_access(cart, actor)
                cart_guard.check_mutable(cart, now)

                change = change_fn(cart)
                final, price_changes = self._refresh(change.cart, now)
                if change.verify is not None:
                    change.verify(final)

                self._save(final, cart.version)
                self.repo.commit()
            except Exception:
                self.repo.rollback()
                raise
            return cart, final, change, price_changes

        before, final, change, price_changes = attempt()

        events: List[CartEvent] = []
        if change.events is not None:
            events.extend(change.events(final))
        events.extend(
            PriceChangeDetected(cart_id=final.id, sequence=final.version, occurred_at=self.now(),
                                actor=actor.identifier, item_id=pc.item_id, variant_id=pc.variant_id,
                                old_price=str(pc.old_price), new_price=str(pc.new_price))
            for pc in price_changes
        )
        if self._promotions_changed(before, final):
            events.append(
                PromotionsApplied(cart_id=final.id, sequence=final.version, occurred_at=self.now(),
                                  actor=actor.identifier,
                                  promotion_ids=[a.promotion_id for a in final.applied_promotions],
                                  discount=str(final.totals.discount))
            )
        self._emit(events)
        return final

    def _refresh(self, cart: Cart, now: datetime):
        cart = self.reservations.reserve_for_cart(cart)
        cart, price_changes = self.pricing.refresh_line_prices(cart)
        cart = self.reservations.drop_unavailable(cart)
        cart = self.promotions.apply(cart)
        cart, _ = self.pricing.compute_totals(cart)

        cart_guard.check_limits(cart)
        cart = cart_guard.ensure_invariants(cart)

        #kazda akcja przesuwa termin waznosci koszyka
        cart = replace(
            cart,
            version=cart.version + 1,
            last_activity_at=now,
            expires_at=now + self.ttl_for(cart.owner),
        )
        return cart, price_changes

    def _close_stale(self, cart: Cart, status: CartStatus, now: datetime):
        try:
            self.reservations.release_for_cart(cart.id, reason=f"cart_{status.value}")
            closed = replace(cart, status=status, version=cart.version + 1)
            self._save(closed, cart.version)
            self.repo.commit()
        except Exception:
            self.repo.rollback()
            raise

        if status == CartStatus.ABANDONED:
            event = CartAbandoned(cart_id=cart.id, sequence=closed.version, occurred_at=now,
                                  item_count=len(cart.items), total_value=str(cart.totals.grand_total))
        else:
            event = CartExpired(cart_id=cart.id, sequence=closed.version, occurred_at=now)
        self._emit([event])

    def _save(self, cart: Cart, expected_version: int):
        rowcount = self.repo.save_cart(cart, expected_version)
        # np w bazie update set version 2 where id 1 and version 1
        if rowcount == 0:
            raise ConflictError()

    def _emit(self, events: List[CartEvent]):
        for event in events:
            self.outbox.emit(event)

    def _load(self, cart_id: str) -> Cart:
        cart = self.repo.get_cart(cart_id)
        if not cart:
            raise NotFoundError(f"Koszyk {cart_id} nie istnieje", reason="CART_NOT_FOUND")
        return cart

    def _load_by_item(self, item_id: str) -> Cart:
        cart = self.repo.get_cart_by_item(item_id)
        if not cart:
            raise NotFoundError(f"Pozycja {item_id} nie istnieje", reason="ITEM_NOT_FOUND")
        return cart

    @staticmethod
    def _find_item(cart: Cart, item_id: str) -> CartItem:
        item = next((i for i in cart.items if i.id == item_id), None)
        if item is None:
            raise NotFoundError(f"Pozycja {item_id} nie istnieje", reason="ITEM_NOT_FOUND")
        return item

    @staticmethod
    def _promotions_changed(before: Cart, after: Cart) -> bool:
        def key(cart: Cart):
            #kolejnosc z bazy i z silnika moze sie roznic
            return sorted((a.promotion_id, a.amount) for a in cart.applied_promotions)

        return key(before) != key(after)
