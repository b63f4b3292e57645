"""Rule store: validated CRUD for upsell rules.

WHAT:
    Create, read, update, toggle and delete rules for one shop, taking a
    product snapshot from Shopify whenever the referenced product changes
    and enforcing the plan's active-rule limit when a rule becomes enabled.

WHY:
    The storefront only reads snapshots, so every write path that changes a
    product reference must refresh them here.

REFERENCES:
    - cartupsell/services/offer_formatter.py (UpsellSnapshot)
    - cartupsell/services/billing_service.py (can_perform_action)
"""

import logging
from typing import Dict, List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from ..exceptions import NotFoundError, RuleValidationError
from ..models import PlanEnum, Rule, Shop, TriggerTypeEnum
from ..schemas import RuleIn
from .billing_service import can_perform_action
from .cart_matcher import normalize_id
from .offer_formatter import UpsellSnapshot
from .shopify_client import ShopifyAPIError, ShopifyClient

logger = logging.getLogger(__name__)


# =============================================================================
# VALIDATION
# =============================================================================


def validate_rule_input(data: RuleIn) -> Dict[str, str]:
    """Field-level errors for a create/update payload (empty when valid)."""
    errors: Dict[str, str] = {}

    if not data.name or not data.name.strip():
        errors["name"] = "Rule name is required"

    trigger_type: Optional[TriggerTypeEnum] = None
    if not data.trigger_type:
        errors["triggerType"] = "Trigger type is required"
    else:
        try:
            trigger_type = TriggerTypeEnum(data.trigger_type)
        except ValueError:
            errors["triggerType"] = "Trigger type must be PRODUCT or COLLECTION"

    if trigger_type == TriggerTypeEnum.product and not normalize_id(data.trigger_product_id):
        errors["triggerProductId"] = "Trigger product is required"
    if trigger_type == TriggerTypeEnum.collection and not normalize_id(data.trigger_collection_id, "Collection"):
        errors["triggerCollectionId"] = "Trigger collection is required"

    upsell_id = normalize_id(data.upsell_product_id)
    if not upsell_id:
        errors["upsellProductId"] = "Upsell product is required"
    elif trigger_type == TriggerTypeEnum.product and normalize_id(data.trigger_product_id) == upsell_id:
        errors["upsellProductId"] = "Trigger and upsell must be different products"

    return errors


def _check_plan(db: Session, shop: Shop, plan: PlanEnum, exclude_rule_id: Optional[UUID] = None) -> Optional[str]:
    check = can_perform_action(plan, current_active_rule_count=count_enabled_rules(db, shop.id, exclude_rule_id))
    return None if check.allowed else check.reason


def parse_rule_id(rule_id) -> Optional[UUID]:
    if isinstance(rule_id, UUID):
        return rule_id
    try:
        return UUID(str(rule_id))
    except ValueError:
        return None


# =============================================================================
# SNAPSHOTS
# =============================================================================


async def fetch_snapshot(client: ShopifyClient, product_id: str) -> Optional[UpsellSnapshot]:
    """Snapshot of a product's display data, None when the product is gone.

    Raises:
        ShopifyAPIError: If Shopify cannot be reached
    """
    product = await client.get_product(product_id)
    if product is None:
        logger.warning(f"[RULES] Product {product_id} not found on {client.shop_domain}")
        return None
    return UpsellSnapshot.from_product(product)


async def _trigger_snapshot(client: ShopifyClient, product_id: str) -> Optional[dict]:
    # Trigger data is cosmetic (admin list); failures are not fatal
    try:
        snapshot = await fetch_snapshot(client, product_id)
    except ShopifyAPIError as e:
        logger.warning(f"[RULES] Trigger snapshot failed for {product_id}: {e}")
        return None
    return snapshot.to_json() if snapshot else None


async def _upsell_snapshot(client: ShopifyClient, product_id: str) -> Optional[UpsellSnapshot]:
    try:
        return await fetch_snapshot(client, product_id)
    except ShopifyAPIError as e:
        logger.error(f"[RULES] Upsell snapshot failed for {product_id}: {e}")
        raise RuleValidationError({"upsellProductId": "Failed to fetch product data"}) from e


# =============================================================================
# QUERIES
# =============================================================================


def count_enabled_rules(db: Session, shop_id: UUID, exclude_rule_id: Optional[UUID] = None) -> int:
    query = db.query(Rule).filter(Rule.shop_id == shop_id, Rule.is_enabled.is_(True))
    if exclude_rule_id is not None:
        query = query.filter(Rule.id != exclude_rule_id)
    return query.count()


def load_enabled_rules(db: Session, shop_id: UUID) -> List[Rule]:
    """Enabled rules in match order: priority ascending, then oldest first."""
    return (
        db.query(Rule)
        .filter(Rule.shop_id == shop_id, Rule.is_enabled.is_(True))
        .order_by(Rule.priority.asc(), Rule.created_at.asc(), Rule.id.asc())
        .all()
    )


def list_rules(db: Session, shop: Shop, search: Optional[str] = None, enabled: Optional[bool] = None) -> List[Rule]:
    """Rules for the admin list, newest first.

    Args:
        search: Case-insensitive substring of the rule name
        enabled: Only rules with this flag
    """
    query = db.query(Rule).filter(Rule.shop_id == shop.id)
    if search:
        query = query.filter(Rule.name.ilike(f"%{search}%"))
    if enabled is not None:
        query = query.filter(Rule.is_enabled.is_(enabled))
    return query.order_by(Rule.created_at.desc()).all()


def get_rule(db: Session, shop: Shop, rule_id) -> Rule:
    """Rule owned by `shop`. Raises NotFoundError otherwise."""
    rule_uuid = parse_rule_id(rule_id)
    rule = None
    if rule_uuid is not None:
        rule = db.query(Rule).filter(Rule.id == rule_uuid, Rule.shop_id == shop.id).first()
    if rule is None:
        raise NotFoundError("Rule not found")
    return rule


# =============================================================================
# WRITES
# =============================================================================


async def create_rule(db: Session, client: ShopifyClient, shop: Shop, data: RuleIn, plan: PlanEnum) -> Rule:
    """Validate, snapshot and store a new rule.

    Raises:
        RuleValidationError: Bad input, plan limit reached, or the upsell
            product could not be fetched
    """
    errors = validate_rule_input(data)
    if data.is_enabled:
        plan_error = _check_plan(db, shop, plan)
        if plan_error:
            errors["plan"] = plan_error
    if errors:
        raise RuleValidationError(errors)

    trigger_type = TriggerTypeEnum(data.trigger_type)
    trigger_product_data = None
    if trigger_type == TriggerTypeEnum.product:
        trigger_product_data = await _trigger_snapshot(client, data.trigger_product_id)

    upsell = await _upsell_snapshot(client, data.upsell_product_id)

    rule = Rule(
        shop_id=shop.id,
        name=data.name.strip(),
        is_enabled=data.is_enabled,
        trigger_type=trigger_type,
        trigger_product_id=data.trigger_product_id if trigger_type == TriggerTypeEnum.product else None,
        trigger_collection_id=data.trigger_collection_id if trigger_type == TriggerTypeEnum.collection else None,
        trigger_product_data=trigger_product_data,
        upsell_product_id=data.upsell_product_id,
        upsell_variant_id=upsell.variant_id if upsell else None,
        upsell_product_data=upsell.to_json() if upsell else None,
        priority=data.priority,
    )
    db.add(rule)
    db.commit()
    db.refresh(rule)

    logger.info(f"[RULES] Created rule {rule.id} for {shop.shopify_domain}")
    return rule


async def update_rule(
    db: Session,
    client: ShopifyClient,
    shop: Shop,
    rule_id,
    data: RuleIn,
    plan: PlanEnum,
) -> Rule:
    """Replace a rule's fields.

    Snapshots are re-fetched only when the referenced product changed (or the
    trigger snapshot is missing). Enabling a disabled rule is plan-gated.

    Raises:
        NotFoundError: Rule does not belong to the shop
        RuleValidationError: As for create_rule
    """
    rule = get_rule(db, shop, rule_id)

    errors = validate_rule_input(data)
    if data.is_enabled and not rule.is_enabled:
        plan_error = _check_plan(db, shop, plan, exclude_rule_id=rule.id)
        if plan_error:
            errors["plan"] = plan_error
    if errors:
        raise RuleValidationError(errors)

    trigger_type = TriggerTypeEnum(data.trigger_type)

    if trigger_type == TriggerTypeEnum.product:
        if data.trigger_product_id != rule.trigger_product_id or not rule.trigger_product_data:
            rule.trigger_product_data = await _trigger_snapshot(client, data.trigger_product_id)
        rule.trigger_product_id = data.trigger_product_id
        rule.trigger_collection_id = None
    else:
        rule.trigger_collection_id = data.trigger_collection_id
        rule.trigger_product_id = None
        rule.trigger_product_data = None

    if data.upsell_product_id != rule.upsell_product_id:
        upsell = await _upsell_snapshot(client, data.upsell_product_id)
        rule.upsell_product_id = data.upsell_product_id
        rule.upsell_variant_id = upsell.variant_id if upsell else None
        rule.upsell_product_data = upsell.to_json() if upsell else None

    rule.name = data.name.strip()
    rule.trigger_type = trigger_type
    rule.is_enabled = data.is_enabled
    rule.priority = data.priority

    db.commit()
    db.refresh(rule)

    logger.info(f"[RULES] Updated rule {rule.id} for {shop.shopify_domain}")
    return rule


def toggle_rule(db: Session, shop: Shop, rule_id, plan: PlanEnum) -> Rule:
    """Flip is_enabled. Enabling is plan-gated.

    Raises:
        NotFoundError: Rule does not belong to the shop
        RuleValidationError: {"plan": ...} when the limit is reached
    """
    rule = get_rule(db, shop, rule_id)

    if not rule.is_enabled:
        plan_error = _check_plan(db, shop, plan, exclude_rule_id=rule.id)
        if plan_error:
            raise RuleValidationError({"plan": plan_error})

    rule.is_enabled = not rule.is_enabled
    db.commit()
    db.refresh(rule)

    logger.info(f"[RULES] Rule {rule.id} enabled={rule.is_enabled}")
    return rule


def delete_rule(db: Session, shop: Shop, rule_id) -> None:
    """Delete a rule and (via cascade) its analytics events."""
    rule = get_rule(db, shop, rule_id)
    db.delete(rule)
    db.commit()
    logger.info(f"[RULES] Deleted rule {rule_id} for {shop.shopify_domain}")
