# cart_engine/services/price_lookup.py
import requests

from cart_engine.domain.errors import NotFoundError
from cart_engine.domain.records import VariantPrice
from cart_engine.utils.logging import get_logger
from cart_engine.utils.money import to_money
from cart_engine.utils.retry import http_retry
from cart_engine.utils.settings import HTTP_TIMEOUT_SECONDS, PRODUCT_SERVICE_URL

logger = get_logger(__name__)


class PriceLookupClient:
    """
    Klient HTTP do product-service.
    -aktualna cena + identyfikatory wariantu (seller, produkt, kategoria)
    -stan magazynowy wariantu
    """

    def __init__(self, base_url: str | None = None, timeout: int = HTTP_TIMEOUT_SECONDS):
        self.base_url = (base_url or PRODUCT_SERVICE_URL).rstrip("/")
        self.timeout = timeout

    def _get(self, path: str, variant_id: str) -> dict:
        url = f"{self.base_url}{path}"
        logger.info(f"PriceLookupClient GET {url}")

        resp = requests.get(url, timeout=self.timeout)
        #404 nie retryujemy, to nie jest blad sieci
        if resp.status_code == 404:
            raise NotFoundError(f"Wariant {variant_id} nie istnieje", reason="VARIANT_NOT_FOUND")
        resp.raise_for_status()
        return resp.json()

    @http_retry()
    def get_current_price(self, variant_id: str) -> VariantPrice:
        data = self._get(f"/variants/{variant_id}", variant_id)
        return VariantPrice(
            unit_price=to_money(data["price"]),
            seller_id=str(data["seller_id"]),
            product_id=str(data["product_id"]),
            category_id=str(data["category_id"]) if data.get("category_id") is not None else None,
            tax_category=data.get("tax_category") or "STANDARD",
        )

    @http_retry()
    def get_available_quantity(self, variant_id: str) -> int:
        data = self._get(f"/variants/{variant_id}/stock", variant_id)
        return int(data.get("available_quantity", 0))
