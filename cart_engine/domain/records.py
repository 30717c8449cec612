"""
Niemutowalne rekordy domeny koszyka.

Rekordy nie maja zachowania poza wyliczanymi wlasciwosciami, zmiany robimy
przez dataclasses.replace w czystych funkcjach serwisow. Koszyk trzyma pozycje
po wartosci (tuple), pozycja zna tylko cart_id rodzica.
"""
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Mapping, Optional, Tuple

from cart_engine.utils.money import ZERO, to_money


class CartStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    CONVERTED = "converted"
    ABANDONED = "abandoned"
    MERGED = "merged"


class ReservationStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    CONVERTED = "converted"
    RELEASED = "released"


class ReservationType(str, Enum):
    CART = "cart"
    ORDER = "order"


class PromotionScope(str, Enum):
    GLOBAL = "global"
    CATEGORY = "category"
    PRODUCT = "product"
    SELLER = "seller"
    USER = "user"


class DiscountType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"
    BUY_X_GET_Y = "buy_x_get_y"


class AvailabilityReason(str, Enum):
    OUT_OF_STOCK = "OUT_OF_STOCK"
    PARTIAL_AVAILABILITY = "PARTIAL_AVAILABILITY"
    VARIANT_UNAVAILABLE = "VARIANT_UNAVAILABLE"


@dataclass(frozen=True)
class OwnerRef:
    """Owner of a cart: exactly one of user_id / session_id."""

    user_id: Optional[str] = None
    session_id: Optional[str] = None

    def __post_init__(self):
        if bool(self.user_id) == bool(self.session_id):
            raise ValueError("Cart owner needs exactly one of user_id or session_id")

    @classmethod
    def for_user(cls, user_id: str) -> "OwnerRef":
        return cls(user_id=user_id)

    @classmethod
    def for_session(cls, session_id: str) -> "OwnerRef":
        return cls(session_id=session_id)

    @property
    def is_authenticated(self) -> bool:
        return self.user_id is not None

    @property
    def identifier(self) -> str:
        if self.user_id:
            return f"user:{self.user_id}"
        return f"session:{self.session_id}"


@dataclass(frozen=True)
class Actor:
    """Who is calling. Admins may touch any cart."""

    user_id: Optional[str] = None
    session_id: Optional[str] = None
    is_admin: bool = False

    @property
    def identifier(self) -> str:
        if self.user_id:
            return f"user:{self.user_id}"
        if self.session_id:
            return f"session:{self.session_id}"
        return "anonymous"


@dataclass(frozen=True)
class VariantPrice:
    unit_price: Decimal
    seller_id: str
    product_id: str
    category_id: Optional[str]
    tax_category: str


@dataclass(frozen=True)
class CartItem:
    id: str
    cart_id: str
    variant_id: str
    seller_id: str
    product_id: str
    category_id: Optional[str]
    tax_category: str
    quantity: int
    unit_price: Decimal
    current_unit_price: Decimal
    position: int
    discount_amount: Decimal = ZERO
    reservation_id: Optional[str] = None
    reservation_expires_at: Optional[datetime] = None
    is_available: bool = True
    availability_reason: Optional[str] = None
    available_quantity: Optional[int] = None
    added_at: Optional[datetime] = None

    @property
    def total_price(self) -> Decimal:
        return to_money(self.current_unit_price * self.quantity)

    @property
    def price_changed(self) -> bool:
        return self.current_unit_price != self.unit_price


@dataclass(frozen=True)
class LineDiscount:
    item_id: str
    amount: Decimal
    units: Optional[int] = None


@dataclass(frozen=True)
class DiscountResult:
    amount: Decimal
    item_ids: Tuple[str, ...] = ()
    lines: Tuple[LineDiscount, ...] = ()


@dataclass(frozen=True)
class AppliedPromotion:
    promotion_id: str
    code: Optional[str]
    name: str
    discount_type: str
    discount_value: Decimal
    amount: Decimal
    priority: int
    stackable: bool
    item_id: Optional[str] = None
    lines: Tuple[LineDiscount, ...] = ()
    eligibility_snapshot: Mapping[str, Any] = field(default_factory=dict)
    applied_at: Optional[datetime] = field(default=None, compare=False)


@dataclass(frozen=True)
class Totals:
    subtotal: Decimal = ZERO
    discount: Decimal = ZERO
    tax: Decimal = ZERO
    shipping: Decimal = ZERO
    grand_total: Decimal = ZERO


@dataclass(frozen=True)
class TaxLine:
    tax_category: str
    rate: Decimal
    taxable_amount: Decimal
    tax_amount: Decimal


@dataclass(frozen=True)
class ShippingLine:
    seller_id: str
    item_count: int
    cost: Decimal


@dataclass(frozen=True)
class PricingBreakdown:
    tax_lines: Tuple[TaxLine, ...] = ()
    shipping_lines: Tuple[ShippingLine, ...] = ()


@dataclass(frozen=True)
class CartSummary:
    """Lekki podglad koszyka dla naglowka strony (badge, ostrzezenia)."""

    cart_id: str
    item_count: int
    seller_count: int
    has_unavailable_items: bool
    has_price_changes: bool
    estimated_total: Decimal
    currency: str


@dataclass(frozen=True)
class Cart:
    id: str
    user_id: Optional[str]
    session_id: Optional[str]
    status: CartStatus
    version: int
    expires_at: datetime
    last_activity_at: datetime
    created_at: Optional[datetime] = None
    items: Tuple[CartItem, ...] = ()
    applied_promotions: Tuple[AppliedPromotion, ...] = ()
    promotion_codes: Tuple[str, ...] = ()
    totals: Totals = Totals()
    currency: str = "INR"
    destination: Optional[str] = None
    converted_order_id: Optional[str] = None
    merged_into_cart_id: Optional[str] = None

    @property
    def owner(self) -> OwnerRef:
        return OwnerRef(user_id=self.user_id, session_id=self.session_id)

    @property
    def seller_ids(self) -> frozenset:
        return frozenset(i.seller_id for i in self.items)

    @property
    def is_empty(self) -> bool:
        return not self.items


@dataclass(frozen=True)
class Promotion:
    id: str
    name: str
    scope: PromotionScope
    discount_type: str
    value: Decimal
    priority: int = 0
    stackable: bool = False
    active: bool = True
    code: Optional[str] = None
    min_order_amount: Optional[Decimal] = None
    max_discount_amount: Optional[Decimal] = None
    usage_limit: Optional[int] = None
    usage_limit_per_user: Optional[int] = None
    valid_from: Optional[datetime] = None
    valid_to: Optional[datetime] = None
    applicable_categories: frozenset = frozenset()
    applicable_products: frozenset = frozenset()
    applicable_sellers: frozenset = frozenset()
    applicable_users: frozenset = frozenset()
    buy_quantity: Optional[int] = None
    get_quantity: Optional[int] = None
    get_discount_percentage: Decimal = Decimal("100")
    owner_rule: Optional[Callable[[OwnerRef], bool]] = field(default=None, compare=False)


@dataclass(frozen=True)
class Reservation:
    id: str
    variant_id: str
    quantity: int
    reference_type: ReservationType
    reference_id: str
    status: ReservationStatus
    cart_item_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    parent_reservation_id: Optional[str] = None
    converted_to_reservation_id: Optional[str] = None
    created_at: Optional[datetime] = None
