import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import redis
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from cart_engine.data.database import Base
from cart_engine.data import models  # noqa: F401
from cart_engine.domain.errors import NotFoundError
from cart_engine.domain.records import Actor, Cart, CartItem, CartStatus, VariantPrice
from cart_engine.services.cart_guard import AbuseGuard
from cart_engine.services.cart_service import CartService
from cart_engine.services.event_outbox import EventOutbox
from cart_engine.services.reservation_service import ReservationService


START = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)


class Clock:
    """Controllable clock injected as now_fn."""

    def __init__(self, now=START):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class FakePriceLookup:
    def __init__(self):
        self.prices = {}
        self.stock = {}

    def add_variant(self, variant_id, price, stock, seller_id="seller-1", product_id=None,
                    category_id="cat-1", tax_category="STANDARD"):
        self.prices[variant_id] = VariantPrice(
            unit_price=Decimal(str(price)),
            seller_id=seller_id,
            product_id=product_id or f"prod-{variant_id}",
            category_id=category_id,
            tax_category=tax_category,
        )
        self.stock[variant_id] = stock

    def set_price(self, variant_id, price):
        old = self.prices[variant_id]
        self.prices[variant_id] = VariantPrice(
            unit_price=Decimal(str(price)),
            seller_id=old.seller_id,
            product_id=old.product_id,
            category_id=old.category_id,
            tax_category=old.tax_category,
        )

    def remove_variant(self, variant_id):
        self.prices.pop(variant_id, None)
        self.stock.pop(variant_id, None)

    def get_current_price(self, variant_id):
        if variant_id not in self.prices:
            raise NotFoundError(f"Wariant {variant_id} nie istnieje", reason="VARIANT_NOT_FOUND")
        return self.prices[variant_id]

    def get_available_quantity(self, variant_id):
        if variant_id not in self.stock:
            raise NotFoundError(f"Wariant {variant_id} nie istnieje", reason="VARIANT_NOT_FOUND")
        return self.stock[variant_id]


class FakeTaxRates:
    def __init__(self, default="0"):
        self.default = Decimal(default)
        self.rates = {}
        self.calls = []

    def get_rate(self, tax_category, destination):
        self.calls.append((tax_category, destination))
        return self.rates.get(tax_category, self.default)


class FakeShippingRates:
    def __init__(self, default="0"):
        self.default = Decimal(default)
        self.costs = {}

    def calculate(self, seller_id, items, destination):
        return self.costs.get(seller_id, self.default)


class FakePromotionCatalog:
    def __init__(self):
        self.promotions = []
        self.usage = {}
        self.rules = {}

    def find_active(self):
        return list(self.promotions)

    def get_usage_count(self, promotion_id, user_id=None):
        return self.usage.get((promotion_id, user_id), 0)

    def check_owner_rule(self, promotion_id, rule, owner):
        return self.rules.get((promotion_id, rule), False)


class FakeAbuseStore:
    """In-memory stand-in for RedisAbuseStore."""

    def __init__(self):
        self.hits = {}
        self.restricted = set()
        self.failing = False

    def _check(self):
        if self.failing:
            raise redis.ConnectionError("redis down")

    def hit(self, key, window_seconds):
        self._check()
        self.hits[key] = self.hits.get(key, 0) + 1
        return self.hits[key]

    def restrict(self, key, ttl):
        self._check()
        self.restricted.add(key)

    def is_restricted(self, key):
        self._check()
        return key in self.restricted


def make_item(item_id, quantity, price, position=0, variant_id=None, seller_id="seller-1",
              product_id=None, category_id="cat-1", tax_category="STANDARD", cart_id="cart-1"):
    price = Decimal(str(price))
    return CartItem(
        id=item_id,
        cart_id=cart_id,
        variant_id=variant_id or f"var-{item_id}",
        seller_id=seller_id,
        product_id=product_id or f"prod-{item_id}",
        category_id=category_id,
        tax_category=tax_category,
        quantity=quantity,
        unit_price=price,
        current_unit_price=price,
        position=position,
    )


def make_cart(items=(), user_id=None, session_id="sess-1", codes=()):
    return Cart(
        id="cart-1",
        user_id=user_id,
        session_id=None if user_id else session_id,
        status=CartStatus.ACTIVE,
        version=1,
        expires_at=START + timedelta(days=1),
        last_activity_at=START,
        created_at=START,
        items=tuple(items),
        promotion_codes=tuple(codes),
    )


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def prices():
    lookup = FakePriceLookup()
    lookup.add_variant("v1", "100.00", 10)
    lookup.add_variant("v2", "50.00", 10, seller_id="seller-2", category_id="cat-2")
    return lookup


@pytest.fixture
def taxes():
    return FakeTaxRates()


@pytest.fixture
def shipping():
    return FakeShippingRates()


@pytest.fixture
def catalog():
    return FakePromotionCatalog()


@pytest.fixture
def abuse_store():
    return FakeAbuseStore()


@pytest.fixture
def outbox():
    return EventOutbox()


@pytest.fixture
def service(db, prices, catalog, taxes, shipping, abuse_store, outbox, clock):
    return CartService(
        db=db,
        price_lookup=prices,
        promotion_catalog=catalog,
        tax_rates=taxes,
        shipping_rates=shipping,
        abuse_guard=AbuseGuard(abuse_store),
        outbox=outbox,
        now_fn=clock,
    )


@pytest.fixture
def reservations(db, prices, outbox, clock):
    return ReservationService(db, prices, outbox=outbox, now_fn=clock)


@pytest.fixture
def guest():
    return Actor(session_id="sess-1")


@pytest.fixture
def user():
    return Actor(user_id="user-1")
