# cart_engine/api/routers/carts.py
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from cart_engine.data.database import get_db
from cart_engine.domain.records import Actor, OwnerRef
from cart_engine.domain.schemas import (
    BreakdownOut,
    CartOut,
    CodeIn,
    ConvertIn,
    DestinationIn,
    ItemIn,
    MergeFailureOut,
    MergeIn,
    MergeOut,
    OwnerIn,
    QuantityIn,
    SummaryOut,
)
from cart_engine.services.cart_service import CartService
from cart_engine.services.factory import build_cart_service

router = APIRouter(prefix="/carts", tags=["carts"])


def get_service(db: Session = Depends(get_db)) -> CartService:
    return build_cart_service(db)


def get_actor(
    user_id: str | None = Query(None),
    session_id: str | None = Query(None),
) -> Actor:
    return Actor(user_id=user_id, session_id=session_id)


@router.post("/", response_model=CartOut)
def get_or_create_cart(payload: OwnerIn, svc: CartService = Depends(get_service)):
    """Zwraca aktywny koszyk wlasciciela albo tworzy nowy."""
    owner = OwnerRef(user_id=payload.user_id, session_id=payload.session_id)
    return CartOut.model_validate(svc.get_or_create(owner))


@router.post("/merge", response_model=MergeOut)
def merge_guest_cart(
    payload: MergeIn,
    actor: Actor = Depends(get_actor),
    svc: CartService = Depends(get_service),
):
    """Po zalogowaniu: pozycje koszyka goscia przechodza do koszyka usera."""
    result = svc.merge_guest_cart(payload.session_id, payload.user_id, actor)
    return MergeOut(
        cart=CartOut.model_validate(result.cart),
        merged_lines=result.merged_lines,
        failures=[MergeFailureOut(**f) for f in result.failures],
    )


@router.get("/{cart_id}", response_model=CartOut)
def get_cart(cart_id: str, actor: Actor = Depends(get_actor), svc: CartService = Depends(get_service)):
    return CartOut.model_validate(svc.get_cart(cart_id, actor))


@router.get("/{cart_id}/breakdown", response_model=BreakdownOut)
def get_breakdown(cart_id: str, actor: Actor = Depends(get_actor), svc: CartService = Depends(get_service)):
    return BreakdownOut.model_validate(svc.get_breakdown(cart_id, actor))


@router.get("/{cart_id}/summary", response_model=SummaryOut)
def get_summary(cart_id: str, actor: Actor = Depends(get_actor), svc: CartService = Depends(get_service)):
    """Liczba sztuk, sellerow i flagi ostrzezen bez pelnego koszyka."""
    return SummaryOut.model_validate(svc.get_summary(cart_id, actor))


@router.post("/{cart_id}/refresh", response_model=CartOut)
def refresh_cart(cart_id: str, actor: Actor = Depends(get_actor), svc: CartService = Depends(get_service)):
    return CartOut.model_validate(svc.refresh_cart(cart_id, actor))


@router.post("/{cart_id}/items", response_model=CartOut)
def add_item(
    cart_id: str,
    payload: ItemIn,
    actor: Actor = Depends(get_actor),
    svc: CartService = Depends(get_service),
):
    cart = svc.add_item(cart_id, payload.variant_id, payload.quantity, actor)
    return CartOut.model_validate(cart)


@router.delete("/{cart_id}/items", response_model=CartOut)
def clear_cart(cart_id: str, actor: Actor = Depends(get_actor), svc: CartService = Depends(get_service)):
    return CartOut.model_validate(svc.clear_cart(cart_id, actor))


@router.patch("/items/{item_id}", response_model=CartOut)
def update_item(
    item_id: str,
    payload: QuantityIn,
    actor: Actor = Depends(get_actor),
    svc: CartService = Depends(get_service),
):
    return CartOut.model_validate(svc.update_item_quantity(item_id, payload.quantity, actor))


@router.delete("/items/{item_id}", response_model=CartOut)
def remove_item(item_id: str, actor: Actor = Depends(get_actor), svc: CartService = Depends(get_service)):
    return CartOut.model_validate(svc.remove_item(item_id, actor))


@router.post("/{cart_id}/codes", response_model=CartOut)
def apply_code(
    cart_id: str,
    payload: CodeIn,
    actor: Actor = Depends(get_actor),
    svc: CartService = Depends(get_service),
):
    return CartOut.model_validate(svc.apply_promotion_code(cart_id, payload.code, actor))


@router.delete("/{cart_id}/codes/{code}", response_model=CartOut)
def remove_code(
    cart_id: str,
    code: str,
    actor: Actor = Depends(get_actor),
    svc: CartService = Depends(get_service),
):
    return CartOut.model_validate(svc.remove_promotion_code(cart_id, code, actor))


@router.put("/{cart_id}/destination", response_model=CartOut)
def set_destination(
    cart_id: str,
    payload: DestinationIn,
    actor: Actor = Depends(get_actor),
    svc: CartService = Depends(get_service),
):
    return CartOut.model_validate(svc.set_destination(cart_id, payload.destination, actor))


@router.post("/{cart_id}/convert", response_model=CartOut)
def convert_to_order(
    cart_id: str,
    payload: ConvertIn,
    actor: Actor = Depends(get_actor),
    svc: CartService = Depends(get_service),
):
    """Hook dla order service: rezerwacje miekkie -> twarde, koszyk -> converted."""
    return CartOut.model_validate(svc.convert_to_order(cart_id, payload.order_id, actor))
