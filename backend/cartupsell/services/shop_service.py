"""Shop (tenant) persistence.

Shops are created lazily the first time an authenticated admin request
arrives and are never hard-deleted in normal operation. Uninstall only
marks the row inactive; reinstalling reactivates it.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from ..models import Session as AuthSession, Shop, PlanEnum, BillingStatusEnum

logger = logging.getLogger(__name__)


def get_shop_by_domain(db: Session, shop_domain: str, active_only: bool = False) -> Optional[Shop]:
    query = db.query(Shop).filter(Shop.shopify_domain == shop_domain)
    if active_only:
        query = query.filter(Shop.is_active.is_(True))
    return query.first()


def get_or_create_shop(db: Session, shop_domain: str, encrypted_access_token: str) -> Shop:
    """Return the shop row, creating it on first access.

    The stored Admin API token is refreshed on every call so that a
    reinstall (which issues a new token) takes effect immediately.

    Args:
        db: Database session
        shop_domain: e.g. "mystore.myshopify.com"
        encrypted_access_token: Token as stored by security.encrypt_secret
    """
    shop = get_shop_by_domain(db, shop_domain)

    if shop is None:
        shop = Shop(
            shopify_domain=shop_domain,
            access_token=encrypted_access_token,
            current_plan=PlanEnum.free,
            billing_status=BillingStatusEnum.active,
        )
        db.add(shop)
        db.commit()
        db.refresh(shop)
        logger.info(f"[SHOP] Created shop {shop_domain}")
        return shop

    changed = False
    if shop.access_token != encrypted_access_token:
        shop.access_token = encrypted_access_token
        changed = True
    if not shop.is_active:
        shop.is_active = True
        shop.uninstalled_at = None
        shop.installed_at = datetime.utcnow()
        changed = True
        logger.info(f"[SHOP] Reactivated shop {shop_domain}")

    if changed:
        db.commit()
        db.refresh(shop)
    return shop


def store_offline_session(db: Session, shop_domain: str, encrypted_access_token: str, scope: Optional[str]) -> AuthSession:
    """Upsert the offline session written by the OAuth callback."""
    session_id = f"offline_{shop_domain}"
    auth_session = db.get(AuthSession, session_id)
    if auth_session is None:
        auth_session = AuthSession(id=session_id, shop=shop_domain, state="", is_online=False)
        db.add(auth_session)

    auth_session.access_token = encrypted_access_token
    auth_session.scope = scope
    db.commit()
    logger.info(f"[SHOP] Stored offline session for {shop_domain}")
    return auth_session


def update_shipping_settings(
    db: Session,
    shop: Shop,
    *,
    enabled: bool,
    threshold: Decimal,
    currency_code: Optional[str] = None,
) -> Shop:
    """Persist free shipping bar settings.

    Raises:
        ValueError: If the threshold is negative
    """
    if threshold < 0:
        raise ValueError("Threshold must be zero or greater")

    shop.free_shipping_enabled = enabled
    shop.free_shipping_threshold = threshold
    if currency_code:
        shop.currency_code = currency_code
    db.commit()
    db.refresh(shop)
    return shop


def mark_uninstalled(db: Session, shop_domain: str) -> bool:
    """Deactivate a shop and drop its auth sessions.

    Rules and analytics are kept so a reinstall picks up where it left off.

    Returns:
        True if a shop row was found
    """
    db.query(AuthSession).filter(AuthSession.shop == shop_domain).delete(synchronize_session=False)

    shop = get_shop_by_domain(db, shop_domain)
    if shop is not None:
        shop.is_active = False
        shop.uninstalled_at = datetime.utcnow()

    db.commit()
    logger.info(f"[SHOP] Marked {shop_domain} uninstalled (found={shop is not None})")
    return shop is not None


def redact_shop(db: Session, shop_domain: str) -> bool:
    """Permanently delete a shop and everything it owns (shop/redact compliance webhook)."""
    db.query(AuthSession).filter(AuthSession.shop == shop_domain).delete(synchronize_session=False)

    shop = get_shop_by_domain(db, shop_domain)
    if shop is not None:
        db.delete(shop)

    db.commit()
    logger.info(f"[SHOP] Redacted {shop_domain} (found={shop is not None})")
    return shop is not None
