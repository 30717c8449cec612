#import wszystkich modeli zeby SQLAlchemy je zarejestrowal w base metadata

from cart_engine.data.models.cart import CartModel
from cart_engine.data.models.cart_item import CartItemModel
from cart_engine.data.models.applied_promotion import AppliedPromotionModel
from cart_engine.data.models.reservation import InventoryReservationModel, VariantStockModel

__all__ = [
    "CartModel",
    "CartItemModel",
    "AppliedPromotionModel",
    "InventoryReservationModel",
    "VariantStockModel",
]
