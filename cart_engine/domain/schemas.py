# cart_engine/domain/schemas.py
from pydantic import BaseModel, Field, ConfigDict, model_validator
from typing import List, Optional
from decimal import Decimal
from datetime import datetime

from cart_engine.domain.records import CartStatus


class OwnerIn(BaseModel):
    """Schema dla pobrania/utworzenia koszyka - dokladnie jedno z user_id / session_id."""

    user_id: Optional[str] = Field(None, min_length=1, max_length=64)
    session_id: Optional[str] = Field(None, min_length=1, max_length=128)

    @model_validator(mode="after")
    def exactly_one_owner(self):
        if bool(self.user_id) == bool(self.session_id):
            raise ValueError("Podaj dokladnie jedno z user_id / session_id")
        return self


class ItemIn(BaseModel):
    """Schema dla dodawania wariantu do koszyka."""

    variant_id: str = Field(..., min_length=1, max_length=64, description="ID wariantu")
    quantity: int = Field(..., gt=0, description="Ilość (musi być > 0)")


class QuantityIn(BaseModel):
    """Nowa ilosc pozycji, 0 usuwa pozycje."""

    quantity: int = Field(..., ge=0)


class CodeIn(BaseModel):
    code: str = Field(..., min_length=1, max_length=50)


class DestinationIn(BaseModel):
    destination: str = Field(..., min_length=1, max_length=64)


class MergeIn(BaseModel):
    session_id: str = Field(..., min_length=1, max_length=128)
    user_id: str = Field(..., min_length=1, max_length=64)


class ConvertIn(BaseModel):
    order_id: str = Field(..., min_length=1, max_length=64)


class CartItemOut(BaseModel):
    """Schema dla pozycji w koszyku (response)."""

    id: str
    variant_id: str
    seller_id: str
    product_id: str
    quantity: int
    unit_price: Decimal
    current_unit_price: Decimal
    total_price: Decimal
    discount_amount: Decimal
    price_changed: bool
    is_available: bool
    availability_reason: Optional[str] = None
    available_quantity: Optional[int] = None
    reservation_expires_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class AppliedPromotionOut(BaseModel):
    promotion_id: str
    code: Optional[str] = None
    name: str
    discount_type: str
    amount: Decimal
    item_id: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class TotalsOut(BaseModel):
    subtotal: Decimal
    discount: Decimal
    tax: Decimal
    shipping: Decimal
    grand_total: Decimal

    model_config = ConfigDict(from_attributes=True)


class CartOut(BaseModel):
    """Schema dla koszyka (response)."""

    id: str
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    status: CartStatus
    version: int
    currency: str
    destination: Optional[str] = None
    items: List[CartItemOut]
    applied_promotions: List[AppliedPromotionOut]
    promotion_codes: List[str]
    totals: TotalsOut
    expires_at: datetime
    last_activity_at: datetime
    converted_order_id: Optional[str] = None
    merged_into_cart_id: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class TaxLineOut(BaseModel):
    tax_category: str
    rate: Decimal
    taxable_amount: Decimal
    tax_amount: Decimal

    model_config = ConfigDict(from_attributes=True)


class ShippingLineOut(BaseModel):
    seller_id: str
    item_count: int
    cost: Decimal

    model_config = ConfigDict(from_attributes=True)


class BreakdownOut(BaseModel):
    tax_lines: List[TaxLineOut]
    shipping_lines: List[ShippingLineOut]

    model_config = ConfigDict(from_attributes=True)


class SummaryOut(BaseModel):
    cart_id: str
    item_count: int
    seller_count: int
    has_unavailable_items: bool
    has_price_changes: bool
    estimated_total: Decimal
    currency: str

    model_config = ConfigDict(from_attributes=True)


class MergeFailureOut(BaseModel):
    variant_id: str
    quantity: int
    reason: str
    message: str


class MergeOut(BaseModel):
    cart: CartOut
    merged_lines: int
    failures: List[MergeFailureOut]

    model_config = ConfigDict(from_attributes=True)
