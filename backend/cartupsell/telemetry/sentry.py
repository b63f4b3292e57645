"""
Sentry Error Tracking
=====================

Error tracking and performance monitoring for the upsell backend.

Related files:
- cartupsell/main.py: Initializes Sentry on app startup
- cartupsell/deps.py: Tags the current shop after session token auth
- cartupsell/routers/storefront.py: Reports errors swallowed to keep the cart drawer working

Environment Variables:
- SENTRY_DSN: Sentry project DSN (Sentry stays off when unset)
- ENVIRONMENT: Environment name (production, staging, development)
"""

from __future__ import annotations

import os
import logging
from typing import Optional
from functools import lru_cache

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
from sentry_sdk.integrations.redis import RedisIntegration
from sentry_sdk.integrations.logging import LoggingIntegration

logger = logging.getLogger(__name__)

_initialized = False


@lru_cache()
def get_sentry_dsn() -> Optional[str]:
    """Get Sentry DSN from environment variable."""
    return os.environ.get("SENTRY_DSN")


def init_sentry() -> bool:
    """
    Initialize Sentry SDK for FastAPI.

    Should be called once during application startup.

    Returns:
        True if Sentry was initialized, False when no DSN is configured
        or initialization failed.
    """
    global _initialized

    dsn = get_sentry_dsn()
    if not dsn:
        return False

    environment = os.environ.get("ENVIRONMENT", "development")

    try:
        sentry_sdk.init(
            dsn=dsn,
            environment=environment,
            integrations=[
                FastApiIntegration(transaction_style="endpoint"),
                SqlalchemyIntegration(),
                RedisIntegration(),
                LoggingIntegration(
                    level=logging.INFO,        # Capture INFO+ as breadcrumbs
                    event_level=logging.ERROR,  # Send ERROR+ as events
                ),
            ],
            # Storefront endpoints are hot; sample sparingly
            traces_sample_rate=0.05,
            send_default_pii=False,
            release=os.environ.get("RELEASE_VERSION"),
        )
    except Exception as e:
        logger.error(f"[SENTRY] Failed to initialize: {e}")
        return False

    _initialized = True
    logger.debug(f"[SENTRY] Initialized for {environment} environment")
    return True


def set_shop_context(shop_domain: str, plan: Optional[str] = None) -> None:
    """
    Attach the authenticated shop to subsequent Sentry events.

    Args:
        shop_domain: e.g. "mystore.myshopify.com"
        plan: Stored plan tier (optional)
    """
    if not _initialized:
        return

    sentry_sdk.set_user({"id": shop_domain})
    if plan:
        sentry_sdk.set_tag("plan", plan)


def capture_exception(exception: Exception, extra: Optional[dict] = None) -> None:
    """
    Manually capture an exception that was handled.

    Example:
        try:
            offers = await build_offers(...)
        except Exception as e:
            capture_exception(e, extra={"shop": shop})
            return fallback_response()
    """
    if not _initialized:
        logger.error(f"Exception (Sentry disabled): {exception}")
        return

    with sentry_sdk.new_scope() as scope:
        for key, value in (extra or {}).items():
            scope.set_extra(key, value)
        sentry_sdk.capture_exception(exception)
