# cart_engine/services/reservation_service.py
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, List, Optional
from uuid import uuid4

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from cart_engine.data.models.cart import CartModel
from cart_engine.data.models.reservation import InventoryReservationModel, VariantStockModel
from cart_engine.domain.errors import NotFoundError, ReservationConversionError
from cart_engine.domain.events import ReservationExpired
from cart_engine.domain.records import (
    AvailabilityReason,
    Cart,
    CartItem,
    CartStatus,
    OwnerRef,
    Reservation,
    ReservationStatus,
    ReservationType,
)
from cart_engine.repos.cart_repo import as_utc
from cart_engine.services.pricing_service import mark_variant_unavailable
from cart_engine.utils.logging import get_logger
from cart_engine.utils.settings import SOFT_RESERVATION_TTL_SECONDS

logger = get_logger(__name__)


def _to_record(m: InventoryReservationModel) -> Reservation:
    return Reservation(
        id=m.id,
        variant_id=m.variant_id,
        quantity=m.quantity,
        reference_type=ReservationType(m.reference_type),
        reference_id=m.reference_id,
        status=ReservationStatus(m.status),
        cart_item_id=m.cart_item_id,
        expires_at=as_utc(m.expires_at),
        parent_reservation_id=m.parent_reservation_id,
        converted_to_reservation_id=m.converted_to_reservation_id,
        created_at=as_utc(m.created_at),
    )


class ReservationService:
    """
    Miekkie (koszyk, 30 min) i twarde (zamowienie, bez wygasania) rezerwacje stanu.

    Licznik variant_stock.reserved_qty = suma aktywnych rezerwacji wariantu.
    Kazda zmiana licznika idzie warunkowym UPDATE w tej samej transakcji co
    wiersz rezerwacji, wiec dwie rownolegle proby o ostatnia sztuke nie moga
    obie przejsc. Serwis nie commituje (poza sweepem), robi to wolajacy.
    """

    def __init__(
        self,
        db: Session,
        price_lookup,
        outbox=None,
        now_fn: Callable[[], datetime] | None = None,
    ):
        self.db = db
        self.price_lookup = price_lookup
        self.outbox = outbox
        self._now_fn = now_fn or (lambda: datetime.now(timezone.utc))

    def now(self) -> datetime:
        return self._now_fn()

    # odczyt
    def get(self, reservation_id: str) -> Reservation | None:
        model = self.db.get(InventoryReservationModel, reservation_id)
        return _to_record(model) if model else None

    def list_for_reference(self, reference_type: ReservationType, reference_id: str) -> List[Reservation]:
        models = (
            self.db.query(InventoryReservationModel)
            .filter(
                InventoryReservationModel.reference_type == reference_type.value,
                InventoryReservationModel.reference_id == reference_id,
            )
            .order_by(InventoryReservationModel.created_at, InventoryReservationModel.id)
            .all()
        )
        return [_to_record(m) for m in models]

    def reserved_quantity(self, variant_id: str) -> int:
        value = self.db.execute(
            select(VariantStockModel.reserved_qty).where(VariantStockModel.variant_id == variant_id)
        ).scalar_one_or_none()
        return value or 0

    def available_for_line(self, variant_id: str, reservation_id: str | None = None) -> int:
        """Stan minus rezerwacje innych (wlasna aktywna rezerwacja linii sie nie liczy)."""
        stock = self.price_lookup.get_available_quantity(variant_id)
        held_by_others = self.reserved_quantity(variant_id)

        if reservation_id:
            own = self.db.get(InventoryReservationModel, reservation_id)
            if own is not None and own.status == ReservationStatus.ACTIVE.value:
                held_by_others -= own.quantity

        return max(0, stock - held_by_others)

    def reserved_quantity_for_owner(self, owner: OwnerRef) -> int:
        stmt = (
            select(func.coalesce(func.sum(InventoryReservationModel.quantity), 0))
            .join(CartModel, CartModel.id == InventoryReservationModel.reference_id)
            .where(
                InventoryReservationModel.reference_type == ReservationType.CART.value,
                InventoryReservationModel.status == ReservationStatus.ACTIVE.value,
                CartModel.status == CartStatus.ACTIVE.value,
            )
        )
        if owner.user_id:
            stmt = stmt.where(CartModel.user_id == owner.user_id)
        else:
            stmt = stmt.where(CartModel.session_id == owner.session_id)
        return int(self.db.execute(stmt).scalar_one())

    # rezerwacje koszyka
    def reserve_for_cart(self, cart: Cart) -> Cart:
        """
        Dla kazdej linii bez zywej, pasujacej rezerwacji: zwolnij stara,
        zarezerwuj od nowa. Brak stanu nie jest bledem, linia dostaje
        OUT_OF_STOCK / PARTIAL_AVAILABILITY.
        Zwraca koszyk z uzupelnionymi reservation_id i dostepnoscia.
        """
        now = self.now()

        #holdy linii, ktorych juz nie ma w koszyku
        wanted = {i.reservation_id for i in cart.items if i.reservation_id}
        for hold in self._active_cart_holds(cart.id):
            if hold.id not in wanted:
                self.release(hold.id, reason="line_removed")

        items = tuple(self._reserve_line(cart.id, item, now) for item in cart.items)
        return replace(cart, items=items)

    def _reserve_line(self, cart_id: str, item: CartItem, now: datetime) -> CartItem:
        if item.reservation_id:
            hold = self.db.get(InventoryReservationModel, item.reservation_id)
            if hold is not None and self._is_live(hold, item, now):
                return replace(
                    item,
                    reservation_expires_at=as_utc(hold.expires_at),
                    is_available=True,
                    availability_reason=None,
                )
            #stara rezerwacja (inna ilosc albo wygasla) - zwolnij zanim zalozysz nowa
            self.release(item.reservation_id, reason="refresh")

        try:
            stock = self.price_lookup.get_available_quantity(item.variant_id)
        except NotFoundError:
            #wariant wycofany z katalogu - linia niedostepna, reszta koszyka dziala dalej
            logger.warning(f"Wariant {item.variant_id} nie istnieje w katalogu, linia {item.id} niedostepna")
            return mark_variant_unavailable(item)
        self._ensure_counter(item.variant_id)

        reserved = self._try_increment(item.variant_id, item.quantity, stock)
        if not reserved:
            available = max(0, stock - self.reserved_quantity(item.variant_id))
            reason = (
                AvailabilityReason.OUT_OF_STOCK
                if available <= 0
                else AvailabilityReason.PARTIAL_AVAILABILITY
            )
            logger.info(
                f"Brak stanu dla wariantu {item.variant_id}: zadano {item.quantity}, dostepne {available}"
            )
            return replace(
                item,
                reservation_id=None,
                reservation_expires_at=None,
                is_available=False,
                availability_reason=reason.value,
                available_quantity=available,
            )

        expires_at = now + timedelta(seconds=SOFT_RESERVATION_TTL_SECONDS)
        hold = InventoryReservationModel(
            id=str(uuid4()),
            variant_id=item.variant_id,
            quantity=item.quantity,
            reference_type=ReservationType.CART.value,
            reference_id=cart_id,
            cart_item_id=item.id,
            status=ReservationStatus.ACTIVE.value,
            expires_at=expires_at,
            created_at=now,
        )
        self.db.add(hold)
        self.db.flush()

        logger.info(f"Soft reservation {hold.id}: {item.quantity} x {item.variant_id} dla koszyka {cart_id}")
        return replace(
            item,
            reservation_id=hold.id,
            reservation_expires_at=expires_at,
            is_available=True,
            availability_reason=None,
            available_quantity=max(0, stock - self.reserved_quantity(item.variant_id) + item.quantity),
        )

    @staticmethod
    def _is_live(hold: InventoryReservationModel, item: CartItem, now: datetime) -> bool:
        expires_at = as_utc(hold.expires_at)
        return (
            hold.status == ReservationStatus.ACTIVE.value
            and hold.quantity == item.quantity
            and hold.variant_id == item.variant_id
            and expires_at is not None
            and expires_at > now
        )

    def _active_cart_holds(self, cart_id: str) -> List[InventoryReservationModel]:
        return (
            self.db.query(InventoryReservationModel)
            .filter(
                InventoryReservationModel.reference_type == ReservationType.CART.value,
                InventoryReservationModel.reference_id == cart_id,
                InventoryReservationModel.status == ReservationStatus.ACTIVE.value,
            )
            .all()
        )

    def drop_unavailable(self, cart: Cart) -> Cart:
        """Zwalnia holdy linii, ktorych wariant zniknal z katalogu."""
        items = []
        for item in cart.items:
            if item.availability_reason == AvailabilityReason.VARIANT_UNAVAILABLE.value and item.reservation_id:
                self.release(item.reservation_id, reason="variant_unavailable")
                item = replace(item, reservation_id=None, reservation_expires_at=None)
            items.append(item)
        return replace(cart, items=tuple(items))

    def _ensure_counter(self, variant_id: str):
        #insert ... on conflict do nothing, rownolegly pierwszy add nie wybucha na PK
        insert_fn = sqlite_insert if self.db.get_bind().dialect.name == "sqlite" else pg_insert
        self.db.execute(
            insert_fn(VariantStockModel)
            .values(variant_id=variant_id, reserved_qty=0, updated_at=self.now())
            .on_conflict_do_nothing(index_elements=[VariantStockModel.variant_id])
        )

    def _try_increment(self, variant_id: str, quantity: int, stock: int) -> bool:
        #check-and-increment w jednym zapytaniu
        result = self.db.execute(
            update(VariantStockModel)
            .where(
                VariantStockModel.variant_id == variant_id,
                VariantStockModel.reserved_qty + quantity <= stock,
            )
            .values(reserved_qty=VariantStockModel.reserved_qty + quantity, updated_at=self.now())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def _decrement(self, variant_id: str, quantity: int):
        self.db.execute(
            update(VariantStockModel)
            .where(VariantStockModel.variant_id == variant_id)
            .values(reserved_qty=VariantStockModel.reserved_qty - quantity, updated_at=self.now())
            .execution_options(synchronize_session=False)
        )

    def _flip(self, reservation_id: str, new_status: ReservationStatus, reason: str | None, *extra) -> bool:
        """Warunkowa zmiana statusu active -> new_status. True tylko dla zwyciezcy."""
        result = self.db.execute(
            update(InventoryReservationModel)
            .where(
                InventoryReservationModel.id == reservation_id,
                InventoryReservationModel.status == ReservationStatus.ACTIVE.value,
                *extra,
            )
            .values(status=new_status.value, released_at=self.now(), release_reason=reason)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            self._expire_cached(reservation_id)
        return result.rowcount == 1

    def _expire_cached(self, reservation_id: str):
        obj = self.db.identity_map.get(Session.identity_key(InventoryReservationModel, reservation_id))
        if obj is not None:
            self.db.expire(obj)

    # zwalnianie
    def release(self, reservation_id: str, reason: str = "released") -> bool:
        hold = self.db.get(InventoryReservationModel, reservation_id)
        if hold is None:
            return False

        if not self._flip(reservation_id, ReservationStatus.RELEASED, reason):
            #ktos inny juz zwolnil / sweep wygasil
            return False

        self._decrement(hold.variant_id, hold.quantity)
        logger.info(f"Released reservation {reservation_id} ({reason})")
        return True

    def release_for_cart(self, cart_id: str, reason: str = "cart_closed") -> int:
        released = 0
        for hold in self._active_cart_holds(cart_id):
            if self.release(hold.id, reason=reason):
                released += 1
        return released

    def release_expired(self, now: datetime | None = None, limit: int = 1000) -> List[Reservation]:
        """
        Sweep: aktywne miekkie rezerwacje po expires_at -> expired, licznik w dol.
        Warunkowy flip gwarantuje jedno zmniejszenie licznika nawet przy
        rownoleglej konwersji albo drugim sweepie. Commituje i emituje
        reservation_expired dopiero po commicie.
        """
        now = now or self.now()
        candidates = (
            self.db.query(InventoryReservationModel)
            .filter(
                InventoryReservationModel.reference_type == ReservationType.CART.value,
                InventoryReservationModel.status == ReservationStatus.ACTIVE.value,
                InventoryReservationModel.expires_at <= now,
            )
            .order_by(InventoryReservationModel.expires_at)
            .limit(limit)
            .all()
        )

        expired: List[Reservation] = []
        for hold in candidates:
            if not self._flip(hold.id, ReservationStatus.EXPIRED, "ttl"):
                continue
            self._decrement(hold.variant_id, hold.quantity)
            expired.append(replace(_to_record(hold), status=ReservationStatus.EXPIRED))

        self.db.commit()
        logger.info(f"Expired {len(expired)} soft reservations")

        if self.outbox is not None:
            for r in expired:
                sequence = self.db.execute(
                    select(CartModel.version).where(CartModel.id == r.reference_id)
                ).scalar_one_or_none()
                self.outbox.emit(
                    ReservationExpired(
                        cart_id=r.reference_id,
                        sequence=sequence or 0,
                        occurred_at=now,
                        reservation_id=r.id,
                        variant_id=r.variant_id,
                        quantity=r.quantity,
                    )
                )
        return expired

    # konwersja przy skladaniu zamowienia
    def convert_to_hard(
        self,
        cart_id: str,
        order_id: str,
        reservation_ids: Optional[Iterable[str]] = None,
    ) -> List[Reservation]:
        """
        Kazda aktywna miekka rezerwacja koszyka -> converted + jedna twarda na
        zamowienie. Licznik sie nie zmienia (ta sama ilosc zostaje zajeta).
        Wygasla/zwolniona rezerwacja = ReservationConversionError, bez pomijania.
        Powtorne wywolanie dla tego samego (cart, order) zwraca istniejace twarde.
        """
        now = self.now()

        if reservation_ids is None:
            soft = self._active_cart_holds(cart_id)
        else:
            soft = [self.db.get(InventoryReservationModel, rid) for rid in reservation_ids]

        existing_hard = {
            h.parent_reservation_id: h
            for h in self.list_for_reference(ReservationType.ORDER, order_id)
            if h.status == ReservationStatus.ACTIVE
        }

        result: List[Reservation] = []
        for hold in soft:
            if hold is None or hold.reference_id != cart_id:
                raise ReservationConversionError("Rezerwacja nie nalezy do koszyka")

            if hold.id in existing_hard:
                #juz skonwertowana dla tego zamowienia
                result.append(existing_hard[hold.id])
                continue

            converted = self._flip(
                hold.id,
                ReservationStatus.CONVERTED,
                f"order:{order_id}",
                InventoryReservationModel.expires_at > now,
            )
            if not converted:
                raise ReservationConversionError(
                    f"Rezerwacja {hold.id} nie jest juz aktywna (wygasla lub zwolniona)",
                    payload={"reservation_id": hold.id, "variant_id": hold.variant_id},
                )

            hard = InventoryReservationModel(
                id=str(uuid4()),
                variant_id=hold.variant_id,
                quantity=hold.quantity,
                reference_type=ReservationType.ORDER.value,
                reference_id=order_id,
                cart_item_id=None,
                status=ReservationStatus.ACTIVE.value,
                expires_at=None,
                parent_reservation_id=hold.id,
                created_at=now,
            )
            self.db.add(hard)
            self.db.execute(
                update(InventoryReservationModel)
                .where(InventoryReservationModel.id == hold.id)
                .values(converted_to_reservation_id=hard.id)
                .execution_options(synchronize_session=False)
            )
            self._expire_cached(hold.id)
            self.db.flush()
            result.append(_to_record(hard))

        if not soft and not result:
            #idempotencja: nic aktywnego, ale zamowienie ma juz twarde rezerwacje z tego koszyka
            cart_hold_ids = {r.id for r in self.list_for_reference(ReservationType.CART, cart_id)}
            result = [h for pid, h in existing_hard.items() if pid in cart_hold_ids]
            if not result:
                raise ReservationConversionError(f"Koszyk {cart_id} nie ma aktywnych rezerwacji")

        logger.info(f"Converted {len(result)} reservations of cart {cart_id} to order {order_id}")
        return result
