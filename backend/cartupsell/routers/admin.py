"""Embedded admin: dashboard, analytics and shop settings.

WHAT:
    - GET /api/admin/dashboard   plan, active rules, last 7 days
    - GET /api/admin/analytics   totals plus per-rule performance
    - GET/PUT /api/admin/settings  free shipping bar

REFERENCES:
    - cartupsell/services/analytics_service.py
"""

import logging
from decimal import Decimal, InvalidOperation

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from cartupsell.database import get_db
from cartupsell.deps import ShopContext, get_shop_context, get_shopify_client
from cartupsell.models import Rule
from cartupsell.schemas import (
    AnalyticsResponse,
    AnalyticsSummaryOut,
    DashboardResponse,
    RulePerformanceOut,
    ShopSettingsOut,
    ShopSettingsUpdate,
    WindowStatsOut,
)
from cartupsell.services import analytics_service, rule_service, shop_service
from cartupsell.services.billing_service import PLANS
from cartupsell.services.shopify_client import ShopifyAPIError, ShopifyClient

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["Admin"])


def _settings_out(shop) -> ShopSettingsOut:
    return ShopSettingsOut(
        free_shipping_enabled=shop.free_shipping_enabled,
        free_shipping_threshold=float(shop.free_shipping_threshold or 0),
        currency_code=shop.currency_code or "USD",
    )


@router.get("/dashboard", response_model=DashboardResponse)
def dashboard(
    context: ShopContext = Depends(get_shop_context),
    db: Session = Depends(get_db),
):
    """Home page numbers. Uses the stored plan (no Billing API round trip)."""
    shop = context.shop
    stats = analytics_service.compute_window_stats(db, shop.id, days=7)

    return DashboardResponse(
        shop_domain=shop.shopify_domain,
        plan=shop.current_plan,
        billing_status=shop.billing_status,
        active_rule_count=rule_service.count_enabled_rules(db, shop.id),
        max_rules=PLANS[shop.current_plan].max_rules,
        stats=WindowStatsOut(
            impressions=stats.impressions,
            conversions=stats.conversions,
            conversion_rate=stats.conversion_rate,
        ),
    )


@router.get("/analytics", response_model=AnalyticsResponse)
def analytics(
    context: ShopContext = Depends(get_shop_context),
    db: Session = Depends(get_db),
):
    """All-time totals and per-rule breakdown, recomputed from raw events."""
    shop = context.shop
    events = analytics_service.load_events(db, shop.id)
    rules = {rule.id: rule for rule in db.query(Rule).filter(Rule.shop_id == shop.id).all()}

    summary = analytics_service.compute_summary(events)
    per_rule = analytics_service.compute_per_rule(events, rules)

    return AnalyticsResponse(
        summary=AnalyticsSummaryOut(
            total_impressions=summary.total_impressions,
            total_conversions=summary.total_conversions,
            conversion_rate=summary.conversion_rate,
            total_revenue=float(summary.total_revenue),
        ),
        rule_performance=[
            RulePerformanceOut(
                rule_id=perf.rule_id,
                rule_name=perf.rule_name,
                is_enabled=perf.is_enabled,
                impressions=perf.impressions,
                conversions=perf.conversions,
                conversion_rate=perf.conversion_rate,
                revenue=float(perf.revenue),
            )
            for perf in per_rule
        ],
        currency_code=shop.currency_code or "USD",
    )


@router.get("/settings", response_model=ShopSettingsOut)
def get_settings_endpoint(context: ShopContext = Depends(get_shop_context)):
    return _settings_out(context.shop)


@router.put("/settings", response_model=ShopSettingsOut)
async def update_settings(
    payload: ShopSettingsUpdate,
    context: ShopContext = Depends(get_shop_context),
    client: ShopifyClient = Depends(get_shopify_client),
    db: Session = Depends(get_db),
):
    """Save free shipping settings and refresh the shop currency from Shopify."""
    try:
        threshold = Decimal(str(payload.free_shipping_threshold if payload.free_shipping_threshold is not None else 0))
    except InvalidOperation:
        threshold = None
    if threshold is None or not threshold.is_finite() or threshold < 0:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"errors": {"freeShippingThreshold": "Threshold must be a number zero or greater"}},
        )

    try:
        currency_code = await client.get_shop_currency()
    except ShopifyAPIError as e:
        logger.warning(f"[SETTINGS] Currency lookup failed for {context.shop_domain}: {e}")
        currency_code = None

    shop = shop_service.update_shipping_settings(
        db,
        context.shop,
        enabled=payload.free_shipping_enabled,
        threshold=threshold,
        currency_code=currency_code,
    )
    logger.info(f"[SETTINGS] Updated shipping settings for {context.shop_domain}")
    return _settings_out(shop)
