"""App billing endpoints (Shopify recurring app subscriptions).

WHAT:
    - GET  /api/admin/billing           current plan and plan table
    - POST /api/admin/billing/upgrade   start a subscription, returns approval URL
    - POST /api/admin/billing/cancel    cancel, drop to FREE
    - GET  /api/admin/billing/callback  return URL after approval

WHY:
    Shopify owns payment. We only request charges and read back their status;
    the plan used for limits is re-derived from the live subscription.

REFERENCES:
    - https://shopify.dev/docs/apps/launch/billing/subscription-billing/create-time-based-subscriptions
"""

import logging
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from cartupsell.database import get_db
from cartupsell.deps import (
    Settings,
    ShopContext,
    ShopifyClientFactory,
    get_settings,
    get_shop_context,
    get_shopify_client,
    get_shopify_client_factory,
)
from cartupsell.models import Session as AuthSession
from cartupsell.schemas import (
    BillingResponse,
    CancelRequest,
    PlanOut,
    SubscriptionOut,
    UpgradeRequest,
    UpgradeResponse,
)
from cartupsell.security import decrypt_secret
from cartupsell.services import billing_service, rule_service, shop_service
from cartupsell.services.shopify_client import ShopifyAPIError, ShopifyClient

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin/billing", tags=["Billing"])


def _plans_table():
    return [
        PlanOut(id=plan, name=config.name, price=float(config.price), max_rules=config.max_rules, features=config.features)
        for plan, config in billing_service.PLANS.items()
    ]


@router.get("", response_model=BillingResponse)
async def get_billing(
    context: ShopContext = Depends(get_shop_context),
    client: ShopifyClient = Depends(get_shopify_client),
    db: Session = Depends(get_db),
):
    shop = context.shop
    try:
        subscription = await billing_service.get_active_subscription(client)
        plan = billing_service.get_current_plan(subscription)
    except ShopifyAPIError as e:
        logger.warning(f"[BILLING] Subscription lookup failed for {context.shop_domain}: {e}")
        subscription = None
        plan = shop.current_plan

    return BillingResponse(
        current_plan=plan,
        billing_status=shop.billing_status,
        active_rule_count=rule_service.count_enabled_rules(db, shop.id),
        subscription=SubscriptionOut(
            id=subscription["id"],
            name=subscription.get("name"),
            status=subscription.get("status"),
            current_period_end=subscription.get("currentPeriodEnd"),
        ) if subscription else None,
        plans=_plans_table(),
    )


@router.post("/upgrade", response_model=UpgradeResponse)
async def upgrade(
    payload: UpgradeRequest,
    context: ShopContext = Depends(get_shop_context),
    client: ShopifyClient = Depends(get_shopify_client),
    settings: Settings = Depends(get_settings),
):
    """Create the subscription; the merchant approves it at the returned URL."""
    return_url = f"{settings.SHOPIFY_APP_URL.rstrip('/')}/api/admin/billing/callback?{urlencode({'shop': context.shop_domain})}"
    try:
        confirmation_url = await billing_service.start_subscription(
            client, payload.plan, return_url=return_url, test=settings.BILLING_TEST_MODE
        )
    except ShopifyAPIError as e:
        logger.error(f"[BILLING] Upgrade failed for {context.shop_domain}: {e}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Failed to create subscription")

    return UpgradeResponse(confirmation_url=confirmation_url)


@router.post("/cancel", response_model=BillingResponse)
async def cancel(
    payload: CancelRequest,
    context: ShopContext = Depends(get_shop_context),
    client: ShopifyClient = Depends(get_shopify_client),
    db: Session = Depends(get_db),
):
    try:
        shop = await billing_service.cancel_plan(db, client, context.shop, payload.subscription_id)
    except ShopifyAPIError as e:
        logger.error(f"[BILLING] Cancel failed for {context.shop_domain}: {e}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Failed to cancel subscription")

    return BillingResponse(
        current_plan=shop.current_plan,
        billing_status=shop.billing_status,
        active_rule_count=rule_service.count_enabled_rules(db, shop.id),
        subscription=None,
        plans=_plans_table(),
    )


@router.get("/callback")
async def billing_callback(
    shop: str = Query(..., description="Shop domain added to the return URL by /upgrade"),
    charge_id: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    client_factory: ShopifyClientFactory = Depends(get_shopify_client_factory),
):
    """Return URL after the merchant approves or declines a charge.

    No session token is available on this top-level redirect; the plan is
    re-read from Shopify rather than trusted from the query string.
    """
    shop_record = shop_service.get_shop_by_domain(db, shop, active_only=True)
    auth_session = db.get(AuthSession, f"offline_{shop}")
    if shop_record is None or auth_session is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Shop not found")

    logger.info(f"[BILLING] Callback for {shop} charge_id={charge_id}")
    try:
        client = client_factory(shop, decrypt_secret(auth_session.access_token, context=shop))
        await billing_service.sync_plan_from_billing(db, client, shop_record)
    except (ShopifyAPIError, ValueError) as e:
        logger.error(f"[BILLING] Plan sync failed for {shop}: {e}")

    return RedirectResponse(url=f"{settings.SHOPIFY_APP_URL.rstrip('/')}/billing?{urlencode({'shop': shop})}")
