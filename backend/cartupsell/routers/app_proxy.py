"""Storefront endpoints served through the Shopify app proxy.

WHAT:
    Same behaviour as /api/storefront/upsells and /track, reached at
    https://{shop}/apps/{subpath}/... and forwarded by Shopify to
    /apps/proxy/... here.

WHY:
    Requests through the proxy are same-origin for the storefront (no CORS)
    and are signed by Shopify, so the shop parameter can be trusted once the
    signature checks out.

REFERENCES:
    - https://shopify.dev/docs/apps/build/online-store/display-dynamic-data
"""

import logging
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from cartupsell.database import get_db
from cartupsell.deps import Settings, ShopifyClientFactory, get_settings, get_shopify_client_factory
from cartupsell.routers.storefront import NO_CACHE, build_upsells, track_event
from cartupsell.security import verify_proxy_signature

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/apps/proxy", tags=["App Proxy"])


def verified_proxy_params(request: Request, settings: Settings = Depends(get_settings)) -> Dict[str, Any]:
    """Dependency that checks the app proxy signature and returns the query params.

    Raises:
        HTTPException: 401 if the signature is missing or wrong
    """
    grouped: Dict[str, List[str]] = {}
    for key, value in request.query_params.multi_items():
        grouped.setdefault(key, []).append(value)
    params = {key: values[0] if len(values) == 1 else values for key, values in grouped.items()}

    if not verify_proxy_signature(params, settings.SHOPIFY_API_SECRET):
        logger.warning(f"[APP_PROXY] Invalid signature for {request.url.path} shop={params.get('shop')}")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid proxy signature")

    return params


@router.get("/upsells")
async def proxy_upsells(
    params: Dict[str, Any] = Depends(verified_proxy_params),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    client_factory: ShopifyClientFactory = Depends(get_shopify_client_factory),
):
    status_code, body = await build_upsells(db, settings, client_factory, params.get("shop"), params.get("products"))
    return JSONResponse(status_code=status_code, content=body, headers=NO_CACHE)


@router.post("/track")
async def proxy_track(
    request: Request,
    params: Dict[str, Any] = Depends(verified_proxy_params),
    db: Session = Depends(get_db),
):
    """Record an event; the shop comes from the signed query, not the body."""
    try:
        body = await request.json()
    except ValueError:
        return JSONResponse(status_code=400, content={"error": "Invalid JSON payload"})

    if isinstance(body, dict):
        body["shopDomain"] = params.get("shop")

    status_code, content = track_event(db, body)
    return JSONResponse(status_code=status_code, content=content)
