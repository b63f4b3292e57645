"""Analytics: storefront event recording and read-time aggregation.

WHAT:
    - record_event: validate and append one IMPRESSION/CONVERSION row,
      de-duplicating impressions per (rule, storefront session)
    - compute_summary / compute_per_rule / rule_stats: pure aggregations over
      loaded events
    - compute_window_stats: last-N-days counts for the dashboard

WHY:
    Stats are recomputed on every read from the append-only event log. Volumes
    per shop are small and this keeps numbers consistent with the raw rows.

REFERENCES:
    - cartupsell/routers/storefront.py (writes)
    - cartupsell/routers/admin.py (reads)
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Mapping, Optional
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..exceptions import EventValidationError, NotFoundError
from ..models import AnalyticsEvent, EventTypeEnum, Rule
from .rule_service import parse_rule_id
from .shop_service import get_shop_by_domain

logger = logging.getLogger(__name__)


# =============================================================================
# RESULT TYPES
# =============================================================================


@dataclass
class TrackResult:
    tracked: bool
    reason: Optional[str] = None


@dataclass
class AnalyticsSummary:
    total_impressions: int = 0
    total_conversions: int = 0
    conversion_rate: float = 0.0
    total_revenue: Decimal = field(default_factory=lambda: Decimal("0"))


@dataclass
class RulePerformance:
    rule_id: str
    rule_name: str
    is_enabled: bool
    impressions: int = 0
    conversions: int = 0
    conversion_rate: float = 0.0
    revenue: Decimal = field(default_factory=lambda: Decimal("0"))


@dataclass
class WindowStats:
    impressions: int
    conversions: int
    conversion_rate: float


def conversion_rate(impressions: int, conversions: int) -> float:
    """Conversions per 100 impressions; 0 when there are no impressions."""
    if impressions <= 0:
        return 0.0
    return conversions / impressions * 100


def _parse_price(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        price = Decimal(str(value))
    except InvalidOperation:
        raise EventValidationError({"productPrice": "Product price must be a number"})
    if not price.is_finite():
        raise EventValidationError({"productPrice": "Product price must be a number"})
    return price


# =============================================================================
# RECORDING
# =============================================================================


def record_event(
    db: Session,
    shop_domain: Optional[str],
    rule_id: Optional[str],
    event_type: Optional[str],
    session_id: Optional[str] = None,
    cart_token: Optional[str] = None,
    product_price: Any = None,
) -> TrackResult:
    """Validate and store one storefront event.

    Impressions carrying a session_id are stored at most once per
    (rule_id, session_id); later ones return tracked=False, reason="duplicate".
    Conversions are always stored.

    Raises:
        EventValidationError: Missing fields, unknown event type, bad price
        NotFoundError: Unknown shop, or rule not owned by the shop
    """
    errors: Dict[str, str] = {}
    if not event_type:
        errors["eventType"] = "Event type is required"
    if not rule_id:
        errors["ruleId"] = "Rule ID is required"
    if not shop_domain:
        errors["shopDomain"] = "Shop domain is required"
    if errors:
        raise EventValidationError(errors)

    try:
        event_enum = EventTypeEnum(event_type)
    except ValueError:
        raise EventValidationError({"eventType": "Event type must be IMPRESSION or CONVERSION"})

    price = _parse_price(product_price) if event_enum == EventTypeEnum.conversion else None

    shop = get_shop_by_domain(db, shop_domain)
    if shop is None:
        raise NotFoundError("Shop not found")

    rule_uuid = parse_rule_id(rule_id)
    rule = None
    if rule_uuid is not None:
        rule = db.query(Rule).filter(Rule.id == rule_uuid, Rule.shop_id == shop.id).first()
    if rule is None:
        raise NotFoundError("Rule not found")

    # Check-then-insert; two concurrent first impressions can both land.
    if event_enum == EventTypeEnum.impression and session_id:
        existing = (
            db.query(AnalyticsEvent.id)
            .filter(
                AnalyticsEvent.rule_id == rule.id,
                AnalyticsEvent.session_id == session_id,
                AnalyticsEvent.event_type == EventTypeEnum.impression,
            )
            .first()
        )
        if existing:
            logger.debug(f"[TRACK] Duplicate impression rule={rule.id} session={session_id}")
            return TrackResult(tracked=False, reason="duplicate")

    db.add(
        AnalyticsEvent(
            shop_id=shop.id,
            rule_id=rule.id,
            event_type=event_enum,
            session_id=session_id,
            cart_token=cart_token,
            product_price=price,
        )
    )
    db.commit()

    logger.info(f"[TRACK] {event_enum.value} stored shop={shop_domain} rule={rule.id}")
    return TrackResult(tracked=True)


# =============================================================================
# AGGREGATION
# =============================================================================


def compute_summary(events: Iterable[AnalyticsEvent]) -> AnalyticsSummary:
    """Shop-wide totals across all given events."""
    summary = AnalyticsSummary()
    for event in events:
        if event.event_type == EventTypeEnum.impression:
            summary.total_impressions += 1
        elif event.event_type == EventTypeEnum.conversion:
            summary.total_conversions += 1
            summary.total_revenue += Decimal(str(event.product_price or 0))

    summary.conversion_rate = conversion_rate(summary.total_impressions, summary.total_conversions)
    return summary


def compute_per_rule(events: Iterable[AnalyticsEvent], rule_lookup: Mapping[Any, Rule]) -> List[RulePerformance]:
    """Per-rule totals, in the order each rule first appears in `events`.

    Args:
        events: Events to aggregate
        rule_lookup: rule id -> Rule. Events whose rule is missing (deleted
            since) are skipped.
    """
    per_rule: "OrderedDict[Any, RulePerformance]" = OrderedDict()

    for event in events:
        rule = rule_lookup.get(event.rule_id)
        if rule is None:
            continue

        perf = per_rule.get(event.rule_id)
        if perf is None:
            perf = RulePerformance(rule_id=str(rule.id), rule_name=rule.name, is_enabled=rule.is_enabled)
            per_rule[event.rule_id] = perf

        if event.event_type == EventTypeEnum.impression:
            perf.impressions += 1
        elif event.event_type == EventTypeEnum.conversion:
            perf.conversions += 1
            perf.revenue += Decimal(str(event.product_price or 0))

    for perf in per_rule.values():
        perf.conversion_rate = conversion_rate(perf.impressions, perf.conversions)
    return list(per_rule.values())


def rule_stats(events: Iterable[AnalyticsEvent]) -> Dict[Any, Dict[str, Any]]:
    """Impressions, conversions and a display rate for each rule id in `events`.

    Returns:
        rule_id -> {"impressions", "conversions", "conversion_rate"} where
        the rate is a string with one decimal, e.g. "20.0".
    """
    counts: Dict[Any, Dict[str, int]] = {}
    for event in events:
        bucket = counts.setdefault(event.rule_id, {"impressions": 0, "conversions": 0})
        if event.event_type == EventTypeEnum.impression:
            bucket["impressions"] += 1
        elif event.event_type == EventTypeEnum.conversion:
            bucket["conversions"] += 1

    return {
        rule_id: {
            "impressions": c["impressions"],
            "conversions": c["conversions"],
            "conversion_rate": f"{conversion_rate(c['impressions'], c['conversions']):.1f}",
        }
        for rule_id, c in counts.items()
    }


def load_events(db: Session, shop_id: UUID, rule_ids: Optional[List[UUID]] = None) -> List[AnalyticsEvent]:
    """All events for a shop (optionally restricted to some rules), oldest first."""
    query = db.query(AnalyticsEvent).filter(AnalyticsEvent.shop_id == shop_id)
    if rule_ids is not None:
        if not rule_ids:
            return []
        query = query.filter(AnalyticsEvent.rule_id.in_(rule_ids))
    return query.order_by(AnalyticsEvent.created_at.asc()).all()


def compute_window_stats(db: Session, shop_id: UUID, days: int = 7, now: Optional[datetime] = None) -> WindowStats:
    """Impression/conversion counts over the last `days` days."""
    since = (now or datetime.utcnow()) - timedelta(days=days)

    rows = (
        db.query(AnalyticsEvent.event_type, func.count(AnalyticsEvent.id))
        .filter(AnalyticsEvent.shop_id == shop_id, AnalyticsEvent.created_at >= since)
        .group_by(AnalyticsEvent.event_type)
        .all()
    )
    counts = {event_type: count for event_type, count in rows}

    impressions = counts.get(EventTypeEnum.impression, 0)
    conversions = counts.get(EventTypeEnum.conversion, 0)
    return WindowStats(
        impressions=impressions,
        conversions=conversions,
        conversion_rate=conversion_rate(impressions, conversions),
    )
