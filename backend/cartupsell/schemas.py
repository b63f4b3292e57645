"""Pydantic schemas for request/response payloads.

All payloads use camelCase on the wire (the storefront script and the
embedded admin UI are JavaScript) while Python code uses snake_case.
"""

from datetime import datetime
from uuid import UUID
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .models import PlanEnum, BillingStatusEnum, TriggerTypeEnum


class CamelModel(BaseModel):
    """Base model that reads and writes camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# =============================================================================
# STOREFRONT
# =============================================================================


class OfferProduct(CamelModel):
    """Product shown in the cart drawer.

    Prices are string-encoded minor units ("1999" for 19.99).
    """

    id: str = Field(description="Upsell product GID", examples=["gid://shopify/Product/222"])
    variant_id: str = Field(description="Variant added to cart (falls back to product id)")
    title: str = Field(description="Product title", examples=["Leather Care Kit"])
    image: Optional[str] = Field(None, description="Featured image URL")
    price: str = Field(description="Price in minor units", examples=["1999"])
    compare_at_price: Optional[str] = Field(None, description="Compare-at price in minor units")
    available: bool = True


class Offer(CamelModel):
    rule_id: str = Field(description="Rule that produced this offer")
    product: OfferProduct


class UpsellsResponse(CamelModel):
    offers: List[Offer] = Field(default_factory=list)


class ShippingSettingsResponse(CamelModel):
    """Free shipping progress bar configuration."""

    enabled: bool = False
    threshold: float = 0
    currency: str = "USD"


class TrackEventRequest(CamelModel):
    """Impression/conversion reported by the storefront script.

    Every field is optional here so missing fields produce the service's
    field-level error map instead of a generic 422.

    Example:
        {
            "eventType": "IMPRESSION",
            "ruleId": "uuid",
            "shopDomain": "mystore.myshopify.com",
            "sessionId": "sess_abc",
            "cartToken": "c1-xyz"
        }
    """

    event_type: Optional[str] = Field(None, description="IMPRESSION or CONVERSION")
    rule_id: Optional[str] = None
    shop_domain: Optional[str] = None
    cart_token: Optional[str] = None
    session_id: Optional[str] = Field(None, description="Storefront session, used to de-duplicate impressions")
    product_price: Optional[Union[float, str]] = Field(None, description="Conversion price in minor units")


class TrackEventResponse(CamelModel):
    success: bool = True
    tracked: bool
    reason: Optional[str] = Field(None, description="Why the event was not stored, e.g. 'duplicate'")


class ErrorResponse(CamelModel):
    error: str
    errors: Optional[Dict[str, str]] = None


# =============================================================================
# ADMIN: RULES
# =============================================================================


class RuleIn(CamelModel):
    """Create/update payload. Validation happens in rule_service."""

    name: Optional[str] = None
    trigger_type: Optional[str] = Field(None, description="PRODUCT or COLLECTION")
    trigger_product_id: Optional[str] = None
    trigger_collection_id: Optional[str] = None
    upsell_product_id: Optional[str] = None
    is_enabled: bool = True
    priority: int = Field(0, description="Lower values are shown first")


class RuleStats(CamelModel):
    impressions: int = 0
    conversions: int = 0
    conversion_rate: str = Field("0.0", description="Conversions per 100 impressions, one decimal")


class RuleOut(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    id: UUID
    name: str
    is_enabled: bool
    trigger_type: TriggerTypeEnum
    trigger_product_id: Optional[str] = None
    trigger_collection_id: Optional[str] = None
    trigger_product_data: Optional[Dict[str, Any]] = None
    upsell_product_id: str
    upsell_variant_id: Optional[str] = None
    upsell_product_data: Optional[Dict[str, Any]] = None
    priority: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class RuleWithStats(RuleOut):
    stats: RuleStats = Field(default_factory=RuleStats)


class RuleListResponse(CamelModel):
    rules: List[RuleWithStats]


class SuccessResponse(CamelModel):
    success: bool = True


# =============================================================================
# ADMIN: DASHBOARD / ANALYTICS / SETTINGS
# =============================================================================


class WindowStatsOut(CamelModel):
    impressions: int
    conversions: int
    conversion_rate: float


class DashboardResponse(CamelModel):
    shop_domain: str
    plan: PlanEnum
    billing_status: BillingStatusEnum
    active_rule_count: int
    max_rules: int
    stats: WindowStatsOut = Field(description="Last 7 days")


class AnalyticsSummaryOut(CamelModel):
    total_impressions: int
    total_conversions: int
    conversion_rate: float
    total_revenue: float = Field(description="Sum of conversion prices in minor units")


class RulePerformanceOut(CamelModel):
    rule_id: str
    rule_name: str
    is_enabled: bool
    impressions: int
    conversions: int
    conversion_rate: float
    revenue: float


class AnalyticsResponse(CamelModel):
    summary: AnalyticsSummaryOut
    rule_performance: List[RulePerformanceOut]
    currency_code: str


class ShopSettingsOut(CamelModel):
    free_shipping_enabled: bool
    free_shipping_threshold: float
    currency_code: str


class ShopSettingsUpdate(CamelModel):
    free_shipping_enabled: bool = False
    free_shipping_threshold: Optional[Union[float, str]] = 0


# =============================================================================
# ADMIN: BILLING
# =============================================================================


class PlanOut(CamelModel):
    id: PlanEnum
    name: str
    price: float
    max_rules: int
    features: List[str]


class SubscriptionOut(CamelModel):
    id: str
    name: Optional[str] = None
    status: Optional[str] = None
    current_period_end: Optional[str] = None


class BillingResponse(CamelModel):
    current_plan: PlanEnum
    billing_status: BillingStatusEnum
    active_rule_count: int
    subscription: Optional[SubscriptionOut] = None
    plans: List[PlanOut]


class UpgradeRequest(CamelModel):
    plan: PlanEnum


class UpgradeResponse(CamelModel):
    confirmation_url: Optional[str] = Field(None, description="Shopify page where the merchant approves the charge")


class CancelRequest(CamelModel):
    subscription_id: str


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(description="Service status", examples=["ok"])
