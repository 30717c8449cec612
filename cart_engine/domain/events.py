# cart_engine/domain/events.py
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


class CartEvent(BaseModel):
    """Zdarzenie domenowe koszyka. sequence = wersja koszyka po zmianie."""

    model_config = ConfigDict(frozen=True)

    event_id: str = Field(default_factory=lambda: str(uuid4()))
    event_type: str
    cart_id: str
    sequence: int
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    actor: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class CartCreated(CartEvent):
    event_type: str = "cart_created"
    user_id: Optional[str] = None
    session_id: Optional[str] = None


class ItemAdded(CartEvent):
    event_type: str = "item_added"
    item_id: str
    variant_id: str
    quantity: int


class ItemUpdated(CartEvent):
    event_type: str = "item_updated"
    item_id: str
    old_quantity: int
    new_quantity: int


class ItemRemoved(CartEvent):
    event_type: str = "item_removed"
    item_id: str
    variant_id: str


class PromotionsApplied(CartEvent):
    event_type: str = "promotions_applied"
    promotion_ids: List[str]
    discount: str


class PriceChangeDetected(CartEvent):
    event_type: str = "price_change_detected"
    item_id: str
    variant_id: str
    old_price: str
    new_price: str


class ReservationExpired(CartEvent):
    event_type: str = "reservation_expired"
    reservation_id: str
    variant_id: str
    quantity: int


class CartMerged(CartEvent):
    event_type: str = "cart_merged"
    source_cart_id: str
    merged_lines: int
    failed_lines: int


class CartConverted(CartEvent):
    event_type: str = "cart_converted"
    order_id: str
    grand_total: str


class CartAbandoned(CartEvent):
    event_type: str = "cart_abandoned"
    item_count: int
    total_value: str


class CartExpired(CartEvent):
    event_type: str = "cart_expired"
