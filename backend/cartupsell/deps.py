"""Dependency providers and settings management."""

from dataclasses import dataclass
from functools import lru_cache
from typing import Callable, Optional

from fastapi import Depends, Header, HTTPException, status
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.orm import Session

from .database import get_db
from .models import Session as AuthSession, Shop
from .security import SessionTokenError, decode_session_token, decrypt_secret, shop_from_session_token
from .services import shop_service
from .services.shopify_client import ShopifyClient
from .telemetry import set_shop_context


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    # Shopify app credentials
    SHOPIFY_API_KEY: str = ""
    SHOPIFY_API_SECRET: str = ""
    SHOPIFY_APP_URL: str = "http://localhost:8000"
    SHOPIFY_API_VERSION: str = "2024-07"
    SHOPIFY_SCOPES: str = "read_products"

    # Billing: test charges are never billed by Shopify
    BILLING_TEST_MODE: bool = True

    # Storefront
    MAX_OFFERS: int = 3

    # Optional Redis cache for collection membership lookups
    REDIS_URL: Optional[str] = None
    COLLECTION_CACHE_TTL_SECONDS: int = 300

    # Back-office (SQLAdmin)
    ADMIN_SECRET_KEY: str = "supersecretkey-change-this-in-production"
    ADMIN_PASSWORD: Optional[str] = None

    BACKEND_CORS_ORIGINS: str = "https://admin.shopify.com,http://localhost:3000"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]


ShopifyClientFactory = Callable[[str, str], ShopifyClient]


def get_shopify_client_factory(settings: Settings = Depends(get_settings)) -> ShopifyClientFactory:
    """Return a callable building an Admin API client for (shop_domain, access_token).

    Overridden in tests to avoid network calls.
    """
    def factory(shop_domain: str, access_token: str) -> ShopifyClient:
        return ShopifyClient(shop_domain, access_token, api_version=settings.SHOPIFY_API_VERSION)

    return factory


@dataclass
class ShopContext:
    """Authenticated admin request: the tenant plus its plaintext Admin API token."""

    shop: Shop
    shop_domain: str
    access_token: str


def get_shop_context(
    authorization: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> ShopContext:
    """Resolve the current shop from the App Bridge session token.

    The header is expected to be in the form: "Bearer <jwt>". The offline
    session stored at install supplies the Admin API token, which is also
    copied onto the Shop row (get-or-create) so the storefront can use it.
    """
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    token = authorization[len("Bearer "):]
    try:
        payload = decode_session_token(
            token,
            api_key=settings.SHOPIFY_API_KEY,
            api_secret=settings.SHOPIFY_API_SECRET,
        )
    except SessionTokenError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid session token")

    shop_domain = shop_from_session_token(payload)

    auth_session = db.get(AuthSession, f"offline_{shop_domain}")
    if not auth_session:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="App not installed for this shop")

    try:
        access_token = decrypt_secret(auth_session.access_token, context=shop_domain)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Stored credentials are invalid")

    shop = shop_service.get_or_create_shop(db, shop_domain, auth_session.access_token)
    set_shop_context(shop_domain, plan=shop.current_plan.value)

    return ShopContext(shop=shop, shop_domain=shop_domain, access_token=access_token)


def get_shopify_client(
    context: ShopContext = Depends(get_shop_context),
    factory: ShopifyClientFactory = Depends(get_shopify_client_factory),
) -> ShopifyClient:
    """Admin API client for the authenticated shop."""
    return factory(context.shop_domain, context.access_token)
