# cart_engine/services/factory.py
from sqlalchemy.orm import Session

from cart_engine.services.cart_guard import AbuseGuard, RedisAbuseStore
from cart_engine.services.cart_service import CartService
from cart_engine.services.event_publisher import celery_outbox
from cart_engine.services.price_lookup import PriceLookupClient
from cart_engine.services.promotion_catalog import PromotionCatalogClient
from cart_engine.services.rate_providers import ShippingRateClient, TaxRateClient


def build_cart_service(db: Session) -> CartService:
    #produkcyjne zaleznosci: HTTP klienci, Redis dla abuse guard, Celery dla zdarzen
    return CartService(
        db=db,
        price_lookup=PriceLookupClient(),
        promotion_catalog=PromotionCatalogClient(),
        tax_rates=TaxRateClient(),
        shipping_rates=ShippingRateClient(),
        abuse_guard=AbuseGuard(RedisAbuseStore()),
        outbox=celery_outbox(),
    )
