"""Pytest configuration for cartupsell tests.

WHAT: Shared fixtures for service-level and HTTP endpoint tests
WHY: Consistent in-memory database, a fake Shopify Admin API, and admin
     session tokens without network access
REFERENCES:
    - cartupsell/main.py: FastAPI application
    - cartupsell/deps.py: Dependencies overridden here
"""

import os
import sys
import time
from pathlib import Path
from typing import Dict, Generator, List, Optional, Set

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool
from fastapi.testclient import TestClient

# Ensure backend is in path
BACKEND_ROOT = Path(__file__).resolve().parents[2]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

# Set test environment before any cartupsell import
# Must be URL-safe base64-encoded 32-byte string (security validates at import time)
os.environ.setdefault("TOKEN_ENCRYPTION_KEY", "MDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDA=")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ["SHOPIFY_API_KEY"] = "test-api-key"
os.environ["SHOPIFY_API_SECRET"] = "test-api-secret"
os.environ["SHOPIFY_APP_URL"] = "https://upsell.example.com"
os.environ.pop("REDIS_URL", None)
os.environ.pop("SENTRY_DSN", None)

API_KEY = "test-api-key"
API_SECRET = "test-api-secret"
SHOP_DOMAIN = "test-store.myshopify.com"
OTHER_SHOP_DOMAIN = "other-store.myshopify.com"


# ============================================================================
# Fake Shopify Admin API
# ============================================================================

class FakeShopifyClient:
    """In-memory stand-in for ShopifyClient.

    Configure `products`, `collections`, `subscriptions`; set a `fail_*` flag
    to make the matching call raise ShopifyAPIError. Calls are recorded.
    """

    def __init__(self):
        self.shop_domain = SHOP_DOMAIN
        self.access_token = None
        self.products: Dict[str, dict] = {}
        self.collections: Dict[str, Set[str]] = {}
        self.subscriptions: List[dict] = []
        self.currency = "EUR"
        self.fail_products: Set[str] = set()
        self.fail_collections = False
        self.fail_billing = False
        self.calls: List[tuple] = []

    def _error(self, message: str):
        from cartupsell.services.shopify_client import ShopifyAPIError
        return ShopifyAPIError(message)

    async def get_product(self, product_id: str) -> Optional[dict]:
        self.calls.append(("get_product", product_id))
        if product_id in self.fail_products:
            raise self._error("product lookup failed")
        return self.products.get(product_id)

    async def get_product_collections(self, product_id: str) -> Set[str]:
        self.calls.append(("get_product_collections", product_id))
        if self.fail_collections:
            raise self._error("collection lookup failed")
        return set(self.collections.get(product_id, set()))

    async def get_shop_currency(self) -> str:
        self.calls.append(("get_shop_currency",))
        return self.currency

    async def get_active_subscriptions(self) -> List[dict]:
        self.calls.append(("get_active_subscriptions",))
        if self.fail_billing:
            raise self._error("billing unavailable")
        return list(self.subscriptions)

    async def create_subscription(self, name, price, return_url, test=False):
        self.calls.append(("create_subscription", name, price, return_url, test))
        if self.fail_billing:
            raise self._error("billing unavailable")
        return "gid://shopify/AppSubscription/1", "https://test-store.myshopify.com/admin/charges/1/confirm"

    async def cancel_subscription(self, subscription_id: str) -> dict:
        self.calls.append(("cancel_subscription", subscription_id))
        if self.fail_billing:
            raise self._error("billing unavailable")
        return {"id": subscription_id, "status": "CANCELLED"}


def paid_subscription(amount: str = "9.99", status: str = "ACTIVE") -> dict:
    return {
        "id": "gid://shopify/AppSubscription/1",
        "name": "Pro Plan",
        "status": status,
        "currentPeriodEnd": "2030-01-01T00:00:00Z",
        "lineItems": [{"plan": {"pricingDetails": {"price": {"amount": amount, "currencyCode": "USD"}}}}],
    }


def product_payload(product_id: str, title: str = "Upsell Product", price: str = "19.99") -> dict:
    return {
        "id": product_id,
        "title": title,
        "image": f"https://cdn.shopify.com/{title}.png",
        "variant_id": f"gid://shopify/ProductVariant/{product_id.rsplit('/', 1)[-1]}1",
        "price": price,
        "compare_at_price": None,
    }


@pytest.fixture
def fake_shopify() -> FakeShopifyClient:
    return FakeShopifyClient()


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def test_db_engine():
    """In-memory SQLite shared across threads (TestClient runs handlers in a thread pool)."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine, "connect")
    def _enable_foreign_keys(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    from cartupsell.models import Base
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def test_db_session(test_db_engine) -> Generator[Session, None, None]:
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_db_engine)
    session = SessionLocal()
    yield session
    session.rollback()
    session.close()


# ============================================================================
# Model Fixtures
# ============================================================================

def _install_shop(db: Session, shop_domain: str):
    from cartupsell.models import Session as AuthSession, Shop
    from cartupsell.security import encrypt_secret

    encrypted = encrypt_secret("shpat_test_token", context=shop_domain)
    db.add(AuthSession(id=f"offline_{shop_domain}", shop=shop_domain, state="", is_online=False, access_token=encrypted))
    shop = Shop(shopify_domain=shop_domain, access_token=encrypted)
    db.add(shop)
    db.commit()
    db.refresh(shop)
    return shop


@pytest.fixture
def shop(test_db_session):
    """Installed shop with an offline session."""
    return _install_shop(test_db_session, SHOP_DOMAIN)


@pytest.fixture
def other_shop(test_db_session):
    return _install_shop(test_db_session, OTHER_SHOP_DOMAIN)


@pytest.fixture
def make_rule(test_db_session):
    """Factory for persisted rules with a ready upsell snapshot."""
    from cartupsell.models import Rule, TriggerTypeEnum

    def _make(shop, **overrides):
        upsell_id = overrides.pop("upsell_product_id", "gid://shopify/Product/900")
        fields = dict(
            shop_id=shop.id,
            name="Rule",
            is_enabled=True,
            trigger_type=TriggerTypeEnum.product,
            trigger_product_id="gid://shopify/Product/100",
            upsell_product_id=upsell_id,
            upsell_variant_id=None,
            upsell_product_data={
                "title": "Upsell",
                "image": None,
                "price": "1999",
                "compareAtPrice": None,
                "variantId": "gid://shopify/ProductVariant/901",
            },
            priority=0,
        )
        fields.update(overrides)
        rule = Rule(**fields)
        test_db_session.add(rule)
        test_db_session.commit()
        test_db_session.refresh(rule)
        return rule

    return _make


# ============================================================================
# Application & Client Fixtures
# ============================================================================

@pytest.fixture
def app(test_db_session, fake_shopify):
    """FastAPI app with the database and Shopify client factory overridden."""
    from cartupsell.main import create_app
    from cartupsell.database import get_db
    from cartupsell.deps import get_shopify_client_factory

    test_app = create_app()

    def override_get_db():
        yield test_db_session

    def override_factory():
        def factory(shop_domain, access_token):
            fake_shopify.shop_domain = shop_domain
            fake_shopify.access_token = access_token
            return fake_shopify
        return factory

    test_app.dependency_overrides[get_db] = override_get_db
    test_app.dependency_overrides[get_shopify_client_factory] = override_factory
    return test_app


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app)


# ============================================================================
# Authentication Fixtures
# ============================================================================

def make_session_token(shop_domain: str = SHOP_DOMAIN, secret: str = API_SECRET, audience: str = API_KEY) -> str:
    """App Bridge style session token."""
    from jose import jwt

    now = int(time.time())
    claims = {
        "iss": f"https://{shop_domain}/admin",
        "dest": f"https://{shop_domain}",
        "aud": audience,
        "sub": "42",
        "exp": now + 60,
        "nbf": now - 5,
        "iat": now,
        "jti": "test-jti",
        "sid": "test-sid",
    }
    return jwt.encode(claims, secret, algorithm="HS256")


@pytest.fixture
def auth_headers(shop):
    return {"Authorization": f"Bearer {make_session_token(SHOP_DOMAIN)}"}


@pytest.fixture
def other_auth_headers(other_shop):
    return {"Authorization": f"Bearer {make_session_token(OTHER_SHOP_DOMAIN)}"}
