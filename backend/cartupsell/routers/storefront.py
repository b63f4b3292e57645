"""Public storefront endpoints called by the cart drawer script.

WHAT:
    - GET  /api/storefront/upsells   offers for the products in the cart
    - GET  /api/storefront/shipping  free shipping bar settings
    - POST /api/storefront/track     impression/conversion events

WHY:
    The script runs on the merchant's storefront domain, so every response
    carries permissive CORS headers (handled by StorefrontCORSMiddleware in
    main.py). These endpoints must never break the cart: on internal errors
    they still answer with an empty-safe body.

REFERENCES:
    - cartupsell/routers/app_proxy.py (same handlers behind the app proxy)
    - cartupsell/services/cart_matcher.py, offer_formatter.py
"""

import logging
from typing import Any, Dict, List, Optional, Tuple, Union

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from cartupsell import state
from cartupsell.database import get_db
from cartupsell.deps import Settings, ShopifyClientFactory, get_settings, get_shopify_client_factory
from cartupsell.exceptions import EventValidationError, NotFoundError
from cartupsell.models import TriggerTypeEnum
from cartupsell.schemas import ShippingSettingsResponse, TrackEventRequest, TrackEventResponse, UpsellsResponse
from cartupsell.security import decrypt_secret
from cartupsell.services import analytics_service, rule_service, shop_service
from cartupsell.services.cart_matcher import match_rules, normalize_cart_product_ids
from cartupsell.services.collection_cache import CollectionMembershipCache
from cartupsell.services.offer_formatter import format_offers
from cartupsell.telemetry import capture_exception

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/storefront", tags=["Storefront"])

NO_CACHE = {"Cache-Control": "no-cache, no-store, must-revalidate"}
SHIPPING_CACHE = {"Cache-Control": "public, max-age=300"}


# =============================================================================
# SHARED HANDLERS (also used by the app proxy)
# =============================================================================


async def build_upsells(
    db: Session,
    settings: Settings,
    client_factory: ShopifyClientFactory,
    shop: Optional[str],
    products: Union[str, List[str], None],
) -> Tuple[int, Dict[str, Any]]:
    """Compute the offers payload for a cart.

    Returns:
        (status_code, body). Errors never propagate: an internal failure
        answers 500 with no offers.
    """
    if not shop:
        return 400, {"error": "Missing shop parameter"}

    cart_product_ids = normalize_cart_product_ids(products)
    if not cart_product_ids:
        return 200, {"offers": []}

    try:
        shop_record = shop_service.get_shop_by_domain(db, shop, active_only=True)
        if shop_record is None:
            logger.info(f"[UPSELLS] Unknown or inactive shop {shop}")
            return 200, {"offers": []}

        rules = rule_service.load_enabled_rules(db, shop_record.id)
        if not rules:
            return 200, {"offers": []}

        lookup = CollectionMembershipCache(shop, state.redis_client, settings.COLLECTION_CACHE_TTL_SECONDS)
        if any(rule.trigger_type == TriggerTypeEnum.collection for rule in rules):
            try:
                access_token = decrypt_secret(shop_record.access_token, context=shop)
            except ValueError:
                # Collection rules just won't match
                logger.error(f"[UPSELLS] Cannot decrypt access token for {shop}")
            else:
                await lookup.prefetch(client_factory(shop, access_token), cart_product_ids)

        matched = match_rules(rules, cart_product_ids, lookup)
        offers = format_offers(matched, settings.MAX_OFFERS)

        logger.info(f"[UPSELLS] {shop}: {len(cart_product_ids)} cart product(s), {len(matched)} match(es)")
        return 200, UpsellsResponse(offers=offers).model_dump(by_alias=True)

    except Exception as e:
        logger.exception(f"[UPSELLS] Failed to build offers for {shop}: {e}")
        capture_exception(e, extra={"shop": shop})
        return 500, {"offers": []}


def track_event(db: Session, body: Any) -> Tuple[int, Dict[str, Any]]:
    """Validate and store one tracking event.

    Returns:
        (status_code, body)
    """
    try:
        payload = TrackEventRequest.model_validate(body)
    except PydanticValidationError:
        return 400, {"error": "Invalid request body"}

    try:
        result = analytics_service.record_event(
            db,
            shop_domain=payload.shop_domain,
            rule_id=payload.rule_id,
            event_type=payload.event_type,
            session_id=payload.session_id,
            cart_token=payload.cart_token,
            product_price=payload.product_price,
        )
    except EventValidationError as e:
        return 400, {"error": "Invalid event", "errors": e.errors}
    except NotFoundError as e:
        return 404, {"error": str(e)}
    except Exception as e:
        db.rollback()
        logger.exception(f"[TRACK] Failed to record event: {e}")
        capture_exception(e, extra={"shop": payload.shop_domain, "rule_id": payload.rule_id})
        return 500, {"error": "Internal server error"}

    response = TrackEventResponse(tracked=result.tracked, reason=result.reason)
    return 200, response.model_dump(by_alias=True, exclude_none=True)


# =============================================================================
# ENDPOINTS
# =============================================================================


@router.get("/upsells", response_model=UpsellsResponse)
async def get_upsells(
    shop: Optional[str] = Query(None, description="Shop domain, e.g. mystore.myshopify.com"),
    products: Optional[str] = Query(None, description="Comma-separated product ids in the cart"),
    cart_token: Optional[str] = Query(None, alias="cartToken"),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    client_factory: ShopifyClientFactory = Depends(get_shopify_client_factory),
):
    """Offers for the current cart, best first (at most MAX_OFFERS)."""
    logger.debug(f"[UPSELLS] Request shop={shop} cart={cart_token}")
    status_code, body = await build_upsells(db, settings, client_factory, shop, products)
    return JSONResponse(status_code=status_code, content=body, headers=NO_CACHE)


@router.get("/shipping", response_model=ShippingSettingsResponse)
def get_shipping(
    shop: Optional[str] = Query(None),
    db: Session = Depends(get_db),
):
    """Free shipping bar settings; unknown shops get the disabled defaults."""
    if not shop:
        return JSONResponse(status_code=400, content={"error": "Missing shop parameter"})

    defaults = ShippingSettingsResponse().model_dump(by_alias=True)
    try:
        shop_record = shop_service.get_shop_by_domain(db, shop, active_only=True)
    except Exception as e:
        logger.exception(f"[SHIPPING] Failed to load settings for {shop}: {e}")
        capture_exception(e, extra={"shop": shop})
        return JSONResponse(status_code=500, content=defaults)

    if shop_record is None:
        return JSONResponse(content=defaults, headers=SHIPPING_CACHE)

    body = ShippingSettingsResponse(
        enabled=shop_record.free_shipping_enabled,
        threshold=float(shop_record.free_shipping_threshold or 0),
        currency=shop_record.currency_code or "USD",
    )
    return JSONResponse(content=body.model_dump(by_alias=True), headers=SHIPPING_CACHE)


@router.post("/track", response_model=TrackEventResponse)
async def post_track(request: Request, db: Session = Depends(get_db)):
    """Record an impression or conversion."""
    try:
        body = await request.json()
    except ValueError:
        return JSONResponse(status_code=400, content={"error": "Invalid JSON payload"})

    status_code, content = track_event(db, body)
    return JSONResponse(status_code=status_code, content=content)
