# cart_engine/services/cart_guard.py
import time
from dataclasses import replace
from datetime import datetime
from uuid import uuid4

import redis
from redis.exceptions import RedisError

from cart_engine.domain.errors import BadRequestError, ForbiddenError, RateLimitedError
from cart_engine.domain.records import Actor, Cart, CartStatus
from cart_engine.services.pricing_service import grand_total_of
from cart_engine.utils.logging import get_logger
from cart_engine.utils.money import ZERO, money_sum
from cart_engine.utils.retry import redis_retry
from cart_engine.utils.settings import (
    CART_CREATION_LIMIT,
    CART_CREATION_WINDOW_SECONDS,
    HOARDING_THRESHOLD,
    INVALID_CODE_LIMIT,
    INVALID_CODE_WINDOW_SECONDS,
    MAX_CART_LINES,
    MAX_CART_VALUE,
    MAX_QUANTITY_PER_LINE,
    MAX_SELLERS_PER_CART,
    REDIS_URL,
    RESTRICTION_TTL_SECONDS,
)

logger = get_logger(__name__)

CART_CREATION = "cart_creation"
PROMOTION_CODE = "promotion_code"
ADD_ITEM = "add_item"


# integralnosc koszyka
def check_access(cart: Cart, actor: Actor):
    if actor.is_admin:
        return
    if cart.user_id:
        if actor.user_id != cart.user_id:
            raise ForbiddenError()
        return
    if actor.session_id != cart.session_id:
        raise ForbiddenError()


def check_merge_access(actor: Actor, session_id: str, user_id: str):
    #merge moze zlecic tylko user zalogowany w tej samej sesji goscia
    if actor.is_admin:
        return
    if actor.user_id != user_id or actor.session_id != session_id:
        raise ForbiddenError("Brak dostepu do merge koszyka goscia")


def check_mutable(cart: Cart, now: datetime):
    if cart.status != CartStatus.ACTIVE:
        raise BadRequestError(f"Koszyk {cart.id} nie jest aktywny ({cart.status.value})", reason="CART_NOT_ACTIVE")
    if cart.expires_at <= now:
        raise BadRequestError(f"Koszyk {cart.id} wygasl", reason="CART_EXPIRED")


def check_line_quantity(quantity: int):
    if quantity <= 0:
        raise BadRequestError("Ilosc musi byc wieksza niz 0", reason="INVALID_QUANTITY")
    if quantity > MAX_QUANTITY_PER_LINE:
        raise BadRequestError(
            f"Maksymalnie {MAX_QUANTITY_PER_LINE} sztuk na pozycje", reason="QUANTITY_LIMIT_EXCEEDED"
        )


def check_limits(cart: Cart):
    if len(cart.items) > MAX_CART_LINES:
        raise BadRequestError(f"Maksymalnie {MAX_CART_LINES} pozycji w koszyku", reason="CART_LINES_LIMIT_EXCEEDED")
    for item in cart.items:
        check_line_quantity(item.quantity)
    if len(cart.seller_ids) > MAX_SELLERS_PER_CART:
        raise BadRequestError(
            f"Maksymalnie {MAX_SELLERS_PER_CART} sprzedawcow w koszyku", reason="SELLER_LIMIT_EXCEEDED"
        )
    if money_sum(i.total_price for i in cart.items) > MAX_CART_VALUE:
        raise BadRequestError(f"Wartosc koszyka przekracza {MAX_CART_VALUE}", reason="CART_VALUE_LIMIT_EXCEEDED")


def ensure_invariants(cart: Cart) -> Cart:
    """Samonaprawa: linie z iloscia <= 0 wypadaja, grand_total liczony od nowa."""
    healed = cart
    bad_lines = [i for i in cart.items if i.quantity <= 0]
    if bad_lines:
        logger.warning(f"Koszyk {cart.id}: usuwam linie z iloscia <= 0 {[i.id for i in bad_lines]}")
        healed = replace(healed, items=tuple(i for i in healed.items if i.quantity > 0))

    expected = max(ZERO, grand_total_of(healed.totals))
    if healed.totals.grand_total != expected:
        logger.warning(
            f"Koszyk {cart.id}: niespojne sumy (grand_total={healed.totals.grand_total}, "
            f"oczekiwane {expected}), przeliczam"
        )
        healed = replace(healed, totals=replace(healed.totals, grand_total=expected))
    return healed


#LUA sliding window: wyrzuc stare wpisy, dodaj biezacy, zwroc licznik - atomowo
_SLIDING_WINDOW_LUA = """
redis.call('ZREMRANGEBYSCORE', KEYS[1], '-inf', tonumber(ARGV[1]) - tonumber(ARGV[2]))
redis.call('ZADD', KEYS[1], ARGV[1], ARGV[3])
redis.call('EXPIRE', KEYS[1], math.ceil(tonumber(ARGV[2])))
return redis.call('ZCARD', KEYS[1])
"""


class RedisAbuseStore:
    """
    -liczniki w oknie przesuwnym (sorted set, score = timestamp)
    -tymczasowe blokady z TTL, nie trzeba recznie czyscic
    """

    def __init__(self, url: str | None = None):
        self.redis = redis.Redis.from_url(
            url or REDIS_URL,
            decode_responses=True,
        )

    @redis_retry()
    def hit(self, key: str, window_seconds: int) -> int:
        now = time.time()
        return int(self.redis.eval(_SLIDING_WINDOW_LUA, 1, key, now, window_seconds, f"{now}:{uuid4().hex}"))

    @redis_retry()
    def restrict(self, key: str, ttl: int):
        logger.info(f"Restrict {key} for {ttl}s")
        self.redis.set(name=key, value="1", ex=ttl)

    @redis_retry()
    def is_restricted(self, key: str) -> bool:
        return bool(self.redis.exists(key))


class AbuseGuard:
    """
    Best-effort wykrywanie naduzyc. Awaria Redisa nigdy nie blokuje
    operacji koszyka (log + przepuszczamy).
    """

    def __init__(self, store=None):
        self.store = store if store is not None else RedisAbuseStore()

    @staticmethod
    def restriction_key(kind: str, identifier: str) -> str:
        return f"restricted:{kind}:{identifier}"

    def ensure_allowed(self, kind: str, identifier: str):
        try:
            restricted = self.store.is_restricted(self.restriction_key(kind, identifier))
        except RedisError as e:
            logger.warning(f"Abuse guard niedostepny ({kind}, {identifier}): {e}")
            return
        if restricted:
            raise RateLimitedError(f"Zbyt wiele prob ({kind}), sprobuj pozniej", payload={"action": kind})

    def _trip(self, kind: str, identifier: str, limit: int, window: int) -> bool:
        try:
            count = self.store.hit(f"abuse:{kind}:{identifier}", window)
            if count > limit:
                logger.warning(f"Abuse guard: {identifier} przekroczyl limit {kind} ({count} > {limit})")
                self.store.restrict(self.restriction_key(kind, identifier), RESTRICTION_TTL_SECONDS)
                return True
        except RedisError as e:
            logger.warning(f"Abuse guard niedostepny ({kind}, {identifier}): {e}")
        return False

    def record_cart_creation(self, identifier: str):
        if self._trip(CART_CREATION, identifier, CART_CREATION_LIMIT, CART_CREATION_WINDOW_SECONDS):
            raise RateLimitedError("Zbyt wiele nowych koszykow, sprobuj pozniej", payload={"action": CART_CREATION})

    def record_invalid_code(self, identifier: str):
        self._trip(PROMOTION_CODE, identifier, INVALID_CODE_LIMIT, INVALID_CODE_WINDOW_SECONDS)

    def check_hoarding(self, identifier: str, reserved_units: int):
        if reserved_units <= HOARDING_THRESHOLD:
            return
        logger.warning(f"Abuse guard: {identifier} trzyma {reserved_units} zarezerwowanych sztuk")
        try:
            self.store.restrict(self.restriction_key(ADD_ITEM, identifier), RESTRICTION_TTL_SECONDS)
        except RedisError as e:
            logger.warning(f"Abuse guard niedostepny ({ADD_ITEM}, {identifier}): {e}")
