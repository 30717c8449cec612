# cart_engine/services/rate_providers.py
from decimal import Decimal
from typing import Sequence

import requests

from cart_engine.domain.records import CartItem
from cart_engine.utils.logging import get_logger
from cart_engine.utils.money import to_money
from cart_engine.utils.retry import http_retry
from cart_engine.utils.settings import HTTP_TIMEOUT_SECONDS, SHIPPING_SERVICE_URL, TAX_SERVICE_URL

logger = get_logger(__name__)


class TaxRateClient:
    """Stawka podatku w procentach dla kategorii podatkowej i miejsca dostawy."""

    def __init__(self, base_url: str | None = None, timeout: int = HTTP_TIMEOUT_SECONDS):
        self.base_url = (base_url or TAX_SERVICE_URL).rstrip("/")
        self.timeout = timeout

    @http_retry()
    def get_rate(self, tax_category: str, destination: str) -> Decimal:
        url = f"{self.base_url}/rates"
        logger.info(f"TaxRateClient GET {url} category={tax_category} destination={destination}")

        resp = requests.get(
            url,
            params={"tax_category": tax_category, "destination": destination},
            timeout=self.timeout,
        )
        resp.raise_for_status()
        return Decimal(str(resp.json()["rate"]))


class ShippingRateClient:
    def __init__(self, base_url: str | None = None, timeout: int = HTTP_TIMEOUT_SECONDS):
        self.base_url = (base_url or SHIPPING_SERVICE_URL).rstrip("/")
        self.timeout = timeout

    @http_retry()
    def calculate(self, seller_id: str, items: Sequence[CartItem], destination: str) -> Decimal:
        url = f"{self.base_url}/quotes"
        logger.info(f"ShippingRateClient POST {url} seller={seller_id} items={len(items)}")

        resp = requests.post(
            url,
            json={
                "seller_id": seller_id,
                "destination": destination,
                "items": [
                    {
                        "variant_id": i.variant_id,
                        "quantity": i.quantity,
                        "unit_price": str(i.current_unit_price),
                    }
                    for i in items
                ],
            },
            timeout=self.timeout,
        )
        resp.raise_for_status()
        return to_money(resp.json()["cost"])
