"""Shopify OAuth install flow.

WHAT:
    Implements the authorization code grant that installs the app on a
    store and stores the resulting offline access token.

WHY:
    The offline token is what the admin API (session token auth) and the
    storefront collection lookups use to call the Admin API.

REFERENCES:
    - Shopify OAuth: https://shopify.dev/docs/apps/auth/oauth
    - cartupsell/deps.py (get_shop_context reads the stored session)
"""

import logging
import re
import secrets
from typing import Optional
from urllib.parse import urlencode, urlparse

import httpx
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from cartupsell.database import get_db
from cartupsell.deps import Settings, ShopifyClientFactory, get_settings, get_shopify_client_factory
from cartupsell.security import encrypt_secret, verify_oauth_hmac
from cartupsell.services import shop_service
from cartupsell.services.shopify_client import ShopifyAPIError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth/shopify", tags=["Shopify OAuth"])

STATE_COOKIE = "shopify_oauth_state"


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def normalize_shop_domain(shop_input: str) -> str:
    """Normalize shop domain to myshopify.com format.

    Examples:
        'myshop' -> 'myshop.myshopify.com'
        'myshop.myshopify.com' -> 'myshop.myshopify.com'
        'https://myshop.myshopify.com/admin' -> 'myshop.myshopify.com'
    """
    shop = shop_input.strip().lower()

    if shop.startswith("http://") or shop.startswith("https://"):
        parsed = urlparse(shop)
        shop = parsed.netloc or parsed.path.split("/")[0]

    shop = shop.split("/")[0]

    if not shop.endswith(".myshopify.com"):
        shop = f"{shop}.myshopify.com"

    return shop


def validate_shop_domain(shop_domain: str) -> bool:
    """Must be {store-name}.myshopify.com with a sane store name."""
    pattern = r"^[a-z0-9][a-z0-9\-]{1,98}[a-z0-9]\.myshopify\.com$"
    return bool(re.match(pattern, shop_domain.lower()))


def _require_config(settings: Settings) -> None:
    missing = [name for name in ("SHOPIFY_API_KEY", "SHOPIFY_API_SECRET") if not getattr(settings, name)]
    if missing:
        logger.error("[SHOPIFY_OAUTH] Missing required settings: %s", missing)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Shopify integration not configured. Missing: {', '.join(missing)}",
        )


# =============================================================================
# OAUTH ENDPOINTS
# =============================================================================

@router.get("/install")
def shopify_install(
    shop: str = Query(..., description="Shopify store domain (e.g., 'mystore' or 'mystore.myshopify.com')"),
    settings: Settings = Depends(get_settings),
):
    """Redirect the merchant to the Shopify OAuth consent screen."""
    _require_config(settings)

    shop_domain = normalize_shop_domain(shop)
    if not validate_shop_domain(shop_domain):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid Shopify store domain: {shop_domain}. Expected format: mystore.myshopify.com",
        )

    nonce = secrets.token_urlsafe(24)
    params = {
        "client_id": settings.SHOPIFY_API_KEY,
        "scope": settings.SHOPIFY_SCOPES,
        "redirect_uri": f"{settings.SHOPIFY_APP_URL.rstrip('/')}/auth/shopify/callback",
        "state": nonce,
    }
    auth_url = f"https://{shop_domain}/admin/oauth/authorize?{urlencode(params)}"

    logger.info(f"[SHOPIFY_OAUTH] Redirecting {shop_domain} to consent screen")
    response = RedirectResponse(url=auth_url)
    response.set_cookie(STATE_COOKIE, nonce, max_age=600, httponly=True, secure=True, samesite="lax")
    return response


@router.get("/callback")
async def shopify_callback(
    request: Request,
    code: Optional[str] = Query(None),
    shop: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    client_factory: ShopifyClientFactory = Depends(get_shopify_client_factory),
):
    """Exchange the authorization code for an offline token and store it.

    REFERENCES:
        https://shopify.dev/docs/apps/auth/oauth/getting-started#step-5-get-an-access-token
    """
    _require_config(settings)

    if not verify_oauth_hmac(dict(request.query_params), settings.SHOPIFY_API_SECRET):
        logger.warning("[SHOPIFY_OAUTH] Invalid callback HMAC")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid HMAC")

    if not code or not shop:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing code or shop")

    expected_state = request.cookies.get(STATE_COOKIE)
    if not state or not expected_state or not secrets.compare_digest(state, expected_state):
        logger.warning(f"[SHOPIFY_OAUTH] State mismatch for {shop}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid OAuth state")

    shop_domain = normalize_shop_domain(shop)
    if not validate_shop_domain(shop_domain):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid shop domain")

    try:
        async with httpx.AsyncClient(timeout=15.0) as client:
            token_response = await client.post(
                f"https://{shop_domain}/admin/oauth/access_token",
                json={
                    "client_id": settings.SHOPIFY_API_KEY,
                    "client_secret": settings.SHOPIFY_API_SECRET,
                    "code": code,
                },
            )
            token_response.raise_for_status()
            token_data = token_response.json()
    except httpx.HTTPError as e:
        logger.exception(f"[SHOPIFY_OAUTH] Token exchange failed for {shop_domain}: {e}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Token exchange failed")

    access_token = token_data.get("access_token")
    if not access_token:
        logger.error("[SHOPIFY_OAUTH] Missing access token in response")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Token exchange failed")

    logger.info(f"[SHOPIFY_OAUTH] Token exchange successful for {shop_domain}, scopes={token_data.get('scope')}")

    encrypted = encrypt_secret(access_token, context=shop_domain)
    shop_service.store_offline_session(db, shop_domain, encrypted, token_data.get("scope"))
    shop_record = shop_service.get_or_create_shop(db, shop_domain, encrypted)

    try:
        currency_code = await client_factory(shop_domain, access_token).get_shop_currency()
        shop_service.update_shipping_settings(
            db,
            shop_record,
            enabled=shop_record.free_shipping_enabled,
            threshold=shop_record.free_shipping_threshold,
            currency_code=currency_code,
        )
    except ShopifyAPIError as e:
        logger.warning(f"[SHOPIFY_OAUTH] Currency lookup failed for {shop_domain}: {e}")

    response = RedirectResponse(url=f"https://{shop_domain}/admin/apps/{settings.SHOPIFY_API_KEY}")
    response.delete_cookie(STATE_COOKIE)
    return response
