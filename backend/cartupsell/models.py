"""SQLAlchemy ORM models and enums.

This module defines the upsell schema using UUID primary keys and explicit
relationships. Platform auth sessions live in their own `sessions` table so
the `shops` tenant table only carries what the app itself needs.
"""

import uuid
from datetime import datetime
import enum

from sqlalchemy import Column, String, DateTime, Enum, Integer, ForeignKey, Numeric, JSON, Boolean, BigInteger, Index
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship, declarative_base


# Single Base used by the entire application
Base = declarative_base()


# Enums ---------------------------------------------------------

class PlanEnum(str, enum.Enum):
    free = "FREE"
    starter = "STARTER"
    pro = "PRO"


class BillingStatusEnum(str, enum.Enum):
    active = "ACTIVE"
    cancelled = "CANCELLED"
    trial = "TRIAL"
    past_due = "PAST_DUE"


class TriggerTypeEnum(str, enum.Enum):
    """What a rule watches for in the cart.

    - product: a specific product is in the cart
    - collection: any cart product belongs to a collection
    """
    product = "PRODUCT"
    collection = "COLLECTION"


class EventTypeEnum(str, enum.Enum):
    impression = "IMPRESSION"
    conversion = "CONVERSION"


def _enum_values(obj):
    return [e.value for e in obj]


# Core models ----------------------------------------------------

class Session(Base):
    """Shopify auth session as stored by the install flow.

    WHAT: One row per offline (or online) session returned by Shopify OAuth
    WHY: The access token for Admin API calls is read from the offline session
    REFERENCES: https://shopify.dev/docs/apps/build/authentication-authorization/access-token-types
    """
    __tablename__ = "sessions"

    id = Column(String, primary_key=True)  # offline_{shop} for offline sessions
    shop = Column(String, nullable=False, index=True)
    state = Column(String, nullable=False)
    is_online = Column(Boolean, nullable=False, default=False)
    scope = Column(String, nullable=True)
    expires = Column(DateTime, nullable=True)
    access_token = Column(String, nullable=False)  # Encrypted
    user_id = Column(BigInteger, nullable=True)
    first_name = Column(String, nullable=True)
    last_name = Column(String, nullable=True)
    email = Column(String, nullable=True)
    account_owner = Column(Boolean, nullable=False, default=False)
    locale = Column(String, nullable=True)
    collaborator = Column(Boolean, nullable=True, default=False)
    email_verified = Column(Boolean, nullable=True, default=False)
    refresh_token = Column(String, nullable=True)
    refresh_token_expires = Column(DateTime, nullable=True)

    def __str__(self):
        return self.id


class Shop(Base):
    """Shop is the tenant record for one installed Shopify store.

    Created on first authenticated access and refreshed on every login.
    Uninstall only stamps `uninstalled_at`; the row is deleted by the
    shop/redact compliance webhook.
    """
    __tablename__ = "shops"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    shopify_domain = Column(String, unique=True, index=True, nullable=False)  # e.g. "mystore.myshopify.com"
    access_token = Column(String, nullable=False)  # Encrypted, see security.encrypt_secret
    is_active = Column(Boolean, nullable=False, default=True)

    # Billing
    current_plan = Column(Enum(PlanEnum, values_callable=_enum_values), nullable=False, default=PlanEnum.free)
    billing_status = Column(Enum(BillingStatusEnum, values_callable=_enum_values), nullable=False, default=BillingStatusEnum.active)
    charge_id = Column(String, nullable=True)  # gid://shopify/AppSubscription/xxx

    # Free shipping progress bar
    free_shipping_enabled = Column(Boolean, nullable=False, default=False)
    free_shipping_threshold = Column(Numeric(10, 2), nullable=False, default=0)
    currency_code = Column(String, nullable=False, default="USD")  # Display only, never converted

    installed_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    uninstalled_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    rules = relationship("Rule", back_populates="shop", cascade="all, delete-orphan", passive_deletes=True)
    events = relationship("AnalyticsEvent", back_populates="shop", cascade="all, delete-orphan", passive_deletes=True)

    # This is used to display the model in the admin interface.
    def __str__(self):
        return self.shopify_domain


class Rule(Base):
    """Upsell rule: when the trigger is in the cart, offer the upsell product.

    Exactly one of trigger_product_id / trigger_collection_id is set, matching
    trigger_type. The rule service enforces this on every write; the database
    does not.

    The *_product_data columns are snapshots taken when the rule was saved so
    the storefront never waits on the Admin API. See UpsellSnapshot.
    """
    __tablename__ = "rules"
    __table_args__ = (
        Index("ix_rules_shop_id_is_enabled", "shop_id", "is_enabled"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    shop_id = Column(UUID(as_uuid=True), ForeignKey("shops.id", ondelete="CASCADE"), nullable=False)
    name = Column(String, nullable=False)
    is_enabled = Column(Boolean, nullable=False, default=True)

    trigger_type = Column(Enum(TriggerTypeEnum, values_callable=_enum_values), nullable=False)
    trigger_product_id = Column(String, nullable=True, index=True)  # gid://shopify/Product/xxx
    trigger_collection_id = Column(String, nullable=True, index=True)  # gid://shopify/Collection/xxx
    trigger_product_data = Column(JSON, nullable=True)

    upsell_product_id = Column(String, nullable=False)
    upsell_variant_id = Column(String, nullable=True)
    upsell_product_data = Column(JSON, nullable=True)

    priority = Column(Integer, nullable=False, default=0)  # Lower = shown first
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    shop = relationship("Shop", back_populates="rules")
    events = relationship("AnalyticsEvent", back_populates="rule", cascade="all, delete-orphan", passive_deletes=True)

    def __str__(self):
        return self.name


class AnalyticsEvent(Base):
    """Append-only impression/conversion log written by the storefront.

    At most one IMPRESSION per (rule_id, session_id). This is checked by
    analytics_service.record_event, not by a database constraint.
    """
    __tablename__ = "analytics_events"
    __table_args__ = (
        Index("ix_analytics_events_shop_rule_created", "shop_id", "rule_id", "created_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    shop_id = Column(UUID(as_uuid=True), ForeignKey("shops.id", ondelete="CASCADE"), nullable=False)
    rule_id = Column(UUID(as_uuid=True), ForeignKey("rules.id", ondelete="CASCADE"), nullable=False)
    event_type = Column(Enum(EventTypeEnum, values_callable=_enum_values), nullable=False)
    cart_token = Column(String, nullable=True, index=True)
    session_id = Column(String, nullable=True)
    product_price = Column(Numeric(10, 2), nullable=True)  # CONVERSION only
    created_at = Column(DateTime, default=datetime.utcnow)

    shop = relationship("Shop", back_populates="events")
    rule = relationship("Rule", back_populates="events")

    def __str__(self):
        return f"{self.event_type} - {self.rule_id} - {self.created_at}"
