"""Shopify webhooks: app lifecycle and mandatory compliance topics.

WEBHOOKS:
    1. app/uninstalled - deactivate the shop, drop stored sessions
    2. customers/data_request - acknowledge (no customer data is stored)
    3. customers/redact - acknowledge (no customer data is stored)
    4. shop/redact - delete all shop data 48h after uninstall

Storefront events only hold anonymous cart tokens and session ids, so there
is nothing to export or redact per customer.

REFERENCES:
    - https://shopify.dev/docs/apps/build/compliance/privacy-law-compliance
    - https://shopify.dev/docs/api/webhooks?reference=toml#list-of-topics-app/uninstalled
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from cartupsell.database import get_db
from cartupsell.deps import Settings, get_settings
from cartupsell.security import verify_webhook_hmac
from cartupsell.services import shop_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks/shopify", tags=["Shopify Webhooks"])


async def get_verified_webhook_body(request: Request, settings: Settings = Depends(get_settings)) -> dict:
    """Dependency that verifies the webhook HMAC and returns the parsed body.

    Raises:
        HTTPException: 401 if HMAC verification fails, 400 on invalid JSON
    """
    body = await request.body()
    hmac_header = request.headers.get("X-Shopify-Hmac-SHA256")

    if not verify_webhook_hmac(body, hmac_header, settings.SHOPIFY_API_SECRET):
        logger.warning(f"[SHOPIFY_WEBHOOK] Invalid signature on {request.url.path}")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook signature")

    try:
        payload = await request.json()
    except ValueError as e:
        logger.error(f"[SHOPIFY_WEBHOOK] Failed to parse JSON: {e}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON payload")

    return payload if isinstance(payload, dict) else {}


@router.post("/app/uninstalled")
def handle_app_uninstalled(
    request: Request,
    payload: dict = Depends(get_verified_webhook_body),
    db: Session = Depends(get_db),
):
    """Mark the shop uninstalled. Rules and analytics are kept for reinstalls."""
    shop_domain = request.headers.get("X-Shopify-Shop-Domain") or payload.get("myshopify_domain")
    if not shop_domain:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing shop domain")

    found = shop_service.mark_uninstalled(db, shop_domain)
    logger.info(f"[SHOPIFY_WEBHOOK] app/uninstalled for {shop_domain} (known={found})")
    return {"status": "ok"}


@router.post("/customers/data_request")
def handle_customer_data_request(payload: dict = Depends(get_verified_webhook_body)):
    logger.info(f"[SHOPIFY_WEBHOOK] customers/data_request for {payload.get('shop_domain', 'unknown')}: nothing stored")
    return {"status": "ok"}


@router.post("/customers/redact")
def handle_customer_redact(payload: dict = Depends(get_verified_webhook_body)):
    logger.info(f"[SHOPIFY_WEBHOOK] customers/redact for {payload.get('shop_domain', 'unknown')}: nothing stored")
    return {"status": "ok"}


@router.post("/shop/redact")
def handle_shop_redact(
    payload: dict = Depends(get_verified_webhook_body),
    db: Session = Depends(get_db),
):
    """Delete the shop with its rules and events."""
    shop_domain = payload.get("shop_domain")
    if not shop_domain:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing shop_domain")

    found = shop_service.redact_shop(db, shop_domain)
    logger.info(f"[SHOPIFY_WEBHOOK] shop/redact for {shop_domain} (known={found})")
    return {"status": "ok"}
