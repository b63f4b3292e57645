"""Rule management endpoints for the embedded admin.

All routes are scoped to the shop in the App Bridge session token; rules of
other shops answer 404.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from cartupsell.database import get_db
from cartupsell.deps import ShopContext, get_shop_context, get_shopify_client
from cartupsell.exceptions import NotFoundError, RuleValidationError
from cartupsell.schemas import RuleIn, RuleListResponse, RuleOut, RuleStats, RuleWithStats, SuccessResponse
from cartupsell.services import analytics_service, billing_service, rule_service
from cartupsell.services.shopify_client import ShopifyClient

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin/rules", tags=["Rules"])


def _bad_request(e: RuleValidationError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail={"errors": e.errors})


def _not_found() -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Rule not found")


@router.get("", response_model=RuleListResponse)
def list_rules(
    search: Optional[str] = Query(None, description="Case-insensitive match on rule name"),
    enabled: Optional[bool] = Query(None),
    context: ShopContext = Depends(get_shop_context),
    db: Session = Depends(get_db),
):
    """Rules newest first, each with impression/conversion stats."""
    rules = rule_service.list_rules(db, context.shop, search=search, enabled=enabled)
    events = analytics_service.load_events(db, context.shop.id, rule_ids=[rule.id for rule in rules])
    stats = analytics_service.rule_stats(events)

    return RuleListResponse(
        rules=[
            RuleWithStats(
                **RuleOut.model_validate(rule).model_dump(),
                stats=RuleStats(**stats[rule.id]) if rule.id in stats else RuleStats(),
            )
            for rule in rules
        ]
    )


@router.post("", response_model=RuleOut, status_code=status.HTTP_201_CREATED)
async def create_rule(
    payload: RuleIn,
    context: ShopContext = Depends(get_shop_context),
    client: ShopifyClient = Depends(get_shopify_client),
    db: Session = Depends(get_db),
):
    plan = await billing_service.resolve_live_plan(client, context.shop)
    try:
        rule = await rule_service.create_rule(db, client, context.shop, payload, plan)
    except RuleValidationError as e:
        logger.info(f"[RULES] Create rejected for {context.shop_domain}: {e.errors}")
        raise _bad_request(e)
    return rule


@router.get("/{rule_id}", response_model=RuleOut)
def get_rule(
    rule_id: str,
    context: ShopContext = Depends(get_shop_context),
    db: Session = Depends(get_db),
):
    try:
        return rule_service.get_rule(db, context.shop, rule_id)
    except NotFoundError:
        raise _not_found()


@router.put("/{rule_id}", response_model=RuleOut)
async def update_rule(
    rule_id: str,
    payload: RuleIn,
    context: ShopContext = Depends(get_shop_context),
    client: ShopifyClient = Depends(get_shopify_client),
    db: Session = Depends(get_db),
):
    plan = await billing_service.resolve_live_plan(client, context.shop)
    try:
        return await rule_service.update_rule(db, client, context.shop, rule_id, payload, plan)
    except NotFoundError:
        raise _not_found()
    except RuleValidationError as e:
        raise _bad_request(e)


@router.post("/{rule_id}/toggle", response_model=RuleOut)
async def toggle_rule(
    rule_id: str,
    context: ShopContext = Depends(get_shop_context),
    client: ShopifyClient = Depends(get_shopify_client),
    db: Session = Depends(get_db),
):
    plan = await billing_service.resolve_live_plan(client, context.shop)
    try:
        return rule_service.toggle_rule(db, context.shop, rule_id, plan)
    except NotFoundError:
        raise _not_found()
    except RuleValidationError as e:
        raise _bad_request(e)


@router.delete("/{rule_id}", response_model=SuccessResponse)
def delete_rule(
    rule_id: str,
    context: ShopContext = Depends(get_shop_context),
    db: Session = Depends(get_db),
):
    try:
        rule_service.delete_rule(db, context.shop, rule_id)
    except NotFoundError:
        raise _not_found()
    return SuccessResponse()
