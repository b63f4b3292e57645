"""Plans, plan limits and Shopify app billing.

WHAT:
    - PLANS: tier table (price, rule limit, marketing features)
    - Pure plan derivation from a Shopify subscription and the
      can_perform_action gate used before enabling rules
    - Async helpers that talk to the Billing API through ShopifyClient

WHY:
    The live subscription is the source of truth for what a merchant paid
    for; the stored Shop.current_plan is a fallback for when Shopify is
    unreachable, so a billing outage never locks merchants out.

REFERENCES:
    - https://shopify.dev/docs/apps/launch/billing/subscription-billing
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy.orm import Session

from ..models import BillingStatusEnum, PlanEnum, Shop
from .shopify_client import ShopifyAPIError, ShopifyClient

logger = logging.getLogger(__name__)

# Sentinel for "no practical limit"
UNLIMITED_RULES = 999

CREATE_RULE = "createRule"


@dataclass(frozen=True)
class PlanConfig:
    name: str
    price: Decimal
    max_rules: int
    features: List[str] = field(default_factory=list)


PLANS: Dict[PlanEnum, PlanConfig] = {
    PlanEnum.free: PlanConfig(
        name="Free",
        price=Decimal("0"),
        max_rules=1,
        features=["1 active upsell rule", "Cart drawer offers", "Basic analytics"],
    ),
    PlanEnum.starter: PlanConfig(
        name="Starter",
        price=Decimal("4.99"),
        max_rules=UNLIMITED_RULES,
        features=["Unlimited upsell rules", "Collection triggers", "Free shipping bar"],
    ),
    PlanEnum.pro: PlanConfig(
        name="Pro",
        price=Decimal("9.99"),
        max_rules=UNLIMITED_RULES,
        features=["Everything in Starter", "Per-rule analytics", "Priority support"],
    ),
}


@dataclass
class ActionCheck:
    allowed: bool
    reason: Optional[str] = None


# =============================================================================
# PURE PLAN LOGIC
# =============================================================================


def _recurring_amount(line_item: Mapping[str, Any]) -> Decimal:
    pricing = ((line_item.get("plan") or {}).get("pricingDetails")) or {}
    amount = (pricing.get("price") or {}).get("amount")
    try:
        return Decimal(str(amount))
    except (InvalidOperation, TypeError):
        return Decimal("0")


def has_active_paid_subscription(subscription: Optional[Mapping[str, Any]]) -> bool:
    """True iff the subscription is ACTIVE with some recurring price above zero."""
    if not subscription or subscription.get("status") != "ACTIVE":
        return False
    return any(_recurring_amount(item) > 0 for item in subscription.get("lineItems") or [])


def get_current_plan(subscription: Optional[Mapping[str, Any]]) -> PlanEnum:
    """Plan implied by a Shopify subscription: PRO when paid and active, else FREE."""
    if has_active_paid_subscription(subscription):
        return PlanEnum.pro
    return PlanEnum.free


def can_perform_action(
    current_plan: PlanEnum,
    action: str = CREATE_RULE,
    current_active_rule_count: Optional[int] = None,
) -> ActionCheck:
    """Check a plan limit.

    Args:
        current_plan: Plan to check against
        action: Only "createRule" (adding or enabling a rule) is gated
        current_active_rule_count: Enabled rules the shop has now. When None
            the count is unknown and the action is allowed.

    Raises:
        ValueError: Unknown action
    """
    if action != CREATE_RULE:
        raise ValueError(f"Unknown action: {action}")

    plan = PLANS[PlanEnum(current_plan)]
    if current_active_rule_count is not None and current_active_rule_count >= plan.max_rules:
        return ActionCheck(
            allowed=False,
            reason=f"{plan.name} plan allows {plan.max_rules} active rule(s). Upgrade to add more.",
        )
    return ActionCheck(allowed=True)


def billing_status_from_subscription(subscription: Optional[Mapping[str, Any]]) -> BillingStatusEnum:
    """Map a Shopify AppSubscriptionStatus onto our billing status."""
    status = (subscription or {}).get("status") or "ACTIVE"
    if status in ("CANCELLED", "DECLINED", "EXPIRED"):
        return BillingStatusEnum.cancelled
    if status == "FROZEN":
        return BillingStatusEnum.past_due
    return BillingStatusEnum.active


# =============================================================================
# BILLING API
# =============================================================================


async def get_active_subscription(client: ShopifyClient) -> Optional[Dict[str, Any]]:
    """First active subscription, or None. Raises ShopifyAPIError."""
    subscriptions = await client.get_active_subscriptions()
    return subscriptions[0] if subscriptions else None


async def resolve_live_plan(client: ShopifyClient, shop: Shop) -> PlanEnum:
    """Plan from the live subscription, falling back to the stored plan."""
    try:
        subscription = await get_active_subscription(client)
    except ShopifyAPIError as e:
        logger.warning(f"[BILLING] Subscription lookup failed for {shop.shopify_domain}, using stored plan: {e}")
        return shop.current_plan
    return get_current_plan(subscription)


async def start_subscription(client: ShopifyClient, plan: PlanEnum, return_url: str, test: bool) -> Optional[str]:
    """Create the Shopify charge for a paid plan.

    Returns:
        Confirmation URL, or None for the free plan (nothing to approve)
    """
    config = PLANS[plan]
    if config.price <= 0:
        return None

    subscription_id, confirmation_url = await client.create_subscription(
        name=f"{config.name} Plan",
        price=str(config.price),
        return_url=return_url,
        test=test,
    )
    logger.info(f"[BILLING] Created subscription {subscription_id} for {client.shop_domain} ({plan.value})")
    return confirmation_url


async def cancel_plan(db: Session, client: ShopifyClient, shop: Shop, subscription_id: str) -> Shop:
    """Cancel the subscription at Shopify and drop the shop to FREE."""
    await client.cancel_subscription(subscription_id)

    shop.current_plan = PlanEnum.free
    shop.billing_status = BillingStatusEnum.cancelled
    shop.charge_id = None
    db.commit()
    db.refresh(shop)
    logger.info(f"[BILLING] Cancelled {subscription_id} for {shop.shopify_domain}")
    return shop


async def sync_plan_from_billing(db: Session, client: ShopifyClient, shop: Shop) -> Shop:
    """Store the plan and status derived from the live subscription.

    Called when the merchant returns from the Shopify approval page.
    """
    subscription = await get_active_subscription(client)

    shop.current_plan = get_current_plan(subscription)
    shop.billing_status = billing_status_from_subscription(subscription)
    shop.charge_id = (subscription or {}).get("id")
    db.commit()
    db.refresh(shop)
    logger.info(
        f"[BILLING] Synced {shop.shopify_domain}: plan={shop.current_plan.value} status={shop.billing_status.value}"
    )
    return shop
