"""Initial cart upsell schema (sessions, shops, rules, analytics_events)

Revision ID: 20261017_000001
Revises:
Create Date: 2026-10-17 09:00:00.000000

WHAT:
    Creates the four tables the app needs:
    - sessions: Shopify auth sessions (offline token per shop)
    - shops: tenant record, plan and free shipping settings
    - rules: trigger -> upsell rules with product snapshots
    - analytics_events: impression/conversion log

WHY:
    Storefront reads (rules by shop, events by rule) are the hot path, so
    the composite indexes below match those queries.

REFERENCES:
    - cartupsell/models.py
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = '20261017_000001'
down_revision = None
branch_labels = None
depends_on = None


PLAN_ENUM = sa.Enum('FREE', 'STARTER', 'PRO', name='planenum')
BILLING_STATUS_ENUM = sa.Enum('ACTIVE', 'CANCELLED', 'TRIAL', 'PAST_DUE', name='billingstatusenum')
TRIGGER_TYPE_ENUM = sa.Enum('PRODUCT', 'COLLECTION', name='triggertypeenum')
EVENT_TYPE_ENUM = sa.Enum('IMPRESSION', 'CONVERSION', name='eventtypeenum')


def upgrade() -> None:
    # =========================================================================
    # STEP 1: sessions
    # =========================================================================
    # WHAT: Shopify session storage, id is "offline_{shop}" for offline tokens
    op.create_table(
        'sessions',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('shop', sa.String(), nullable=False),
        sa.Column('state', sa.String(), nullable=False, server_default=''),
        sa.Column('is_online', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('scope', sa.String(), nullable=True),
        sa.Column('expires', sa.DateTime(), nullable=True),
        sa.Column('access_token', sa.String(), nullable=False),
        sa.Column('user_id', sa.BigInteger(), nullable=True),
        sa.Column('first_name', sa.String(), nullable=True),
        sa.Column('last_name', sa.String(), nullable=True),
        sa.Column('email', sa.String(), nullable=True),
        sa.Column('account_owner', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('locale', sa.String(), nullable=True),
        sa.Column('collaborator', sa.Boolean(), nullable=True, server_default=sa.false()),
        sa.Column('email_verified', sa.Boolean(), nullable=True, server_default=sa.false()),
        sa.Column('refresh_token', sa.String(), nullable=True),
        sa.Column('refresh_token_expires', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_sessions_shop', 'sessions', ['shop'])

    # =========================================================================
    # STEP 2: shops
    # =========================================================================
    op.create_table(
        'shops',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('shopify_domain', sa.String(), nullable=False),
        sa.Column('access_token', sa.String(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('current_plan', PLAN_ENUM, nullable=False, server_default='FREE'),
        sa.Column('billing_status', BILLING_STATUS_ENUM, nullable=False, server_default='ACTIVE'),
        sa.Column('charge_id', sa.String(), nullable=True),
        sa.Column('free_shipping_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('free_shipping_threshold', sa.Numeric(10, 2), nullable=False, server_default='0'),
        sa.Column('currency_code', sa.String(), nullable=False, server_default='USD'),
        sa.Column('installed_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('uninstalled_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index('ix_shops_shopify_domain', 'shops', ['shopify_domain'], unique=True)

    # =========================================================================
    # STEP 3: rules
    # =========================================================================
    # WHAT: One row per upsell rule
    # WHY: (shop_id, is_enabled) serves the storefront rule load
    op.create_table(
        'rules',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('shop_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('shops.id', ondelete='CASCADE'), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('is_enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('trigger_type', TRIGGER_TYPE_ENUM, nullable=False),
        sa.Column('trigger_product_id', sa.String(), nullable=True),
        sa.Column('trigger_collection_id', sa.String(), nullable=True),
        sa.Column('trigger_product_data', sa.JSON(), nullable=True),
        sa.Column('upsell_product_id', sa.String(), nullable=False),
        sa.Column('upsell_variant_id', sa.String(), nullable=True),
        sa.Column('upsell_product_data', sa.JSON(), nullable=True),
        sa.Column('priority', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index('ix_rules_shop_id_is_enabled', 'rules', ['shop_id', 'is_enabled'])
    op.create_index('ix_rules_trigger_product_id', 'rules', ['trigger_product_id'])
    op.create_index('ix_rules_trigger_collection_id', 'rules', ['trigger_collection_id'])

    # =========================================================================
    # STEP 4: analytics_events
    # =========================================================================
    # WHAT: Append-only impression/conversion log
    # WHY: Analytics are recomputed from raw events, never pre-aggregated
    op.create_table(
        'analytics_events',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('shop_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('shops.id', ondelete='CASCADE'), nullable=False),
        sa.Column('rule_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('rules.id', ondelete='CASCADE'), nullable=False),
        sa.Column('event_type', EVENT_TYPE_ENUM, nullable=False),
        sa.Column('cart_token', sa.String(), nullable=True),
        sa.Column('session_id', sa.String(), nullable=True),
        sa.Column('product_price', sa.Numeric(10, 2), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index(
        'ix_analytics_events_shop_rule_created', 'analytics_events', ['shop_id', 'rule_id', 'created_at']
    )
    op.create_index('ix_analytics_events_cart_token', 'analytics_events', ['cart_token'])


def downgrade() -> None:
    op.drop_table('analytics_events')
    op.drop_table('rules')
    op.drop_table('shops')
    op.drop_index('ix_sessions_shop', table_name='sessions')
    op.drop_table('sessions')

    bind = op.get_bind()
    for enum in (EVENT_TYPE_ENUM, TRIGGER_TYPE_ENUM, BILLING_STATUS_ENUM, PLAN_ENUM):
        enum.drop(bind, checkfirst=True)
