# cart_engine/services/promotion_catalog.py
from datetime import datetime, timezone
from decimal import Decimal
from typing import List

import requests

from cart_engine.domain.records import DiscountType, OwnerRef, Promotion, PromotionScope
from cart_engine.utils.logging import get_logger
from cart_engine.utils.retry import http_retry
from cart_engine.utils.settings import HTTP_TIMEOUT_SECONDS, PROMOTION_SERVICE_URL

logger = get_logger(__name__)


def _decimal_or_none(value):
    return Decimal(str(value)) if value is not None else None


def _datetime_or_none(value):
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    #katalog bez strefy = UTC
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class PromotionCatalogClient:
    """
    Katalog promocji (tylko odczyt).
    -lista aktywnych promocji
    -licznik uzyc (globalny i per user)
    -reguly wlasciciela (np. pierwszy zakup) sprawdzane po stronie katalogu
    """

    def __init__(self, base_url: str | None = None, timeout: int = HTTP_TIMEOUT_SECONDS):
        self.base_url = (base_url or PROMOTION_SERVICE_URL).rstrip("/")
        self.timeout = timeout

    @http_retry()
    def find_active(self) -> List[Promotion]:
        url = f"{self.base_url}/promotions"
        logger.info(f"PromotionCatalogClient GET {url}")

        resp = requests.get(url, params={"active": "true"}, timeout=self.timeout)
        resp.raise_for_status()
        promotions = []
        for data in resp.json():
            #jeden zepsuty wpis katalogu nie blokuje pozostalych promocji
            try:
                promotions.append(self._to_promotion(data))
            except (AttributeError, KeyError, TypeError, ValueError, ArithmeticError) as e:
                logger.warning(f"Pomijam niepoprawna promocje {data.get('id') if isinstance(data, dict) else data}: {e!r}")
        return promotions

    @http_retry()
    def get_usage_count(self, promotion_id: str, user_id: str | None = None) -> int:
        url = f"{self.base_url}/promotions/{promotion_id}/usage"
        params = {"user_id": user_id} if user_id else {}

        resp = requests.get(url, params=params, timeout=self.timeout)
        resp.raise_for_status()
        return int(resp.json().get("count", 0))

    @http_retry()
    def check_owner_rule(self, promotion_id: str, rule: str, owner: OwnerRef) -> bool:
        url = f"{self.base_url}/promotions/{promotion_id}/rules/{rule}"

        resp = requests.get(
            url,
            params={"user_id": owner.user_id, "session_id": owner.session_id},
            timeout=self.timeout,
        )
        resp.raise_for_status()
        return bool(resp.json().get("eligible", False))

    def _to_promotion(self, data: dict) -> Promotion:
        rule = data.get("owner_rule")
        owner_rule = None
        if rule:
            pid = str(data["id"])
            owner_rule = lambda owner, _pid=pid, _rule=rule: self.check_owner_rule(_pid, _rule, owner)

        return Promotion(
            id=str(data["id"]),
            name=data["name"],
            scope=PromotionScope(data.get("scope", "global")),
            discount_type=DiscountType(data["discount_type"]).value,
            value=Decimal(str(data["value"])),
            priority=int(data.get("priority", 0)),
            stackable=bool(data.get("stackable", False)),
            active=bool(data.get("active", True)),
            code=data.get("code"),
            min_order_amount=_decimal_or_none(data.get("min_order_amount")),
            max_discount_amount=_decimal_or_none(data.get("max_discount_amount")),
            usage_limit=data.get("usage_limit"),
            usage_limit_per_user=data.get("usage_limit_per_user"),
            valid_from=_datetime_or_none(data.get("valid_from")),
            valid_to=_datetime_or_none(data.get("valid_to")),
            applicable_categories=frozenset(str(x) for x in data.get("applicable_categories") or ()),
            applicable_products=frozenset(str(x) for x in data.get("applicable_products") or ()),
            applicable_sellers=frozenset(str(x) for x in data.get("applicable_sellers") or ()),
            applicable_users=frozenset(str(x) for x in data.get("applicable_users") or ()),
            buy_quantity=data.get("buy_quantity"),
            get_quantity=data.get("get_quantity"),
            get_discount_percentage=Decimal(str(data.get("get_discount_percentage") or 100)),
            owner_rule=owner_rule,
        )
