"""Tests for event recording and analytics aggregation."""

import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from types import SimpleNamespace

import pytest

from cartupsell.exceptions import EventValidationError, NotFoundError
from cartupsell.models import AnalyticsEvent, EventTypeEnum
from cartupsell.services import analytics_service
from cartupsell.tests.conftest import SHOP_DOMAIN


def _event(event_type, rule_id="r1", price=None):
    return SimpleNamespace(event_type=event_type, rule_id=rule_id, product_price=price)


IMP = EventTypeEnum.impression
CONV = EventTypeEnum.conversion


# ============================================================================
# record_event
# ============================================================================

class TestRecordEvent:
    def test_impression_deduplicated_per_session(self, test_db_session, shop, make_rule):
        rule = make_rule(shop)

        first = analytics_service.record_event(test_db_session, SHOP_DOMAIN, str(rule.id), "IMPRESSION", session_id="s1")
        second = analytics_service.record_event(test_db_session, SHOP_DOMAIN, str(rule.id), "IMPRESSION", session_id="s1")
        other = analytics_service.record_event(test_db_session, SHOP_DOMAIN, str(rule.id), "IMPRESSION", session_id="s2")

        assert first.tracked is True
        assert second.tracked is False
        assert second.reason == "duplicate"
        assert other.tracked is True
        assert test_db_session.query(AnalyticsEvent).count() == 2

    def test_impression_without_session_not_deduplicated(self, test_db_session, shop, make_rule):
        rule = make_rule(shop)

        analytics_service.record_event(test_db_session, SHOP_DOMAIN, str(rule.id), "IMPRESSION")
        result = analytics_service.record_event(test_db_session, SHOP_DOMAIN, str(rule.id), "IMPRESSION")

        assert result.tracked is True
        assert test_db_session.query(AnalyticsEvent).count() == 2

    def test_conversions_are_never_deduplicated(self, test_db_session, shop, make_rule):
        rule = make_rule(shop)

        for _ in range(2):
            result = analytics_service.record_event(
                test_db_session, SHOP_DOMAIN, str(rule.id), "CONVERSION", session_id="s1", product_price="1999"
            )
            assert result.tracked is True

        events = test_db_session.query(AnalyticsEvent).all()
        assert len(events) == 2
        assert all(e.product_price == Decimal("1999") for e in events)

    def test_impression_ignores_price(self, test_db_session, shop, make_rule):
        rule = make_rule(shop)
        analytics_service.record_event(test_db_session, SHOP_DOMAIN, str(rule.id), "IMPRESSION", product_price="500")
        assert test_db_session.query(AnalyticsEvent).one().product_price is None

    def test_missing_fields(self, test_db_session):
        with pytest.raises(EventValidationError) as exc:
            analytics_service.record_event(test_db_session, None, None, None)
        assert set(exc.value.errors) == {"eventType", "ruleId", "shopDomain"}

    def test_invalid_event_type(self, test_db_session, shop, make_rule):
        rule = make_rule(shop)
        with pytest.raises(EventValidationError) as exc:
            analytics_service.record_event(test_db_session, SHOP_DOMAIN, str(rule.id), "CLICK")
        assert "eventType" in exc.value.errors

    def test_unparsable_price(self, test_db_session, shop, make_rule):
        rule = make_rule(shop)
        with pytest.raises(EventValidationError) as exc:
            analytics_service.record_event(test_db_session, SHOP_DOMAIN, str(rule.id), "CONVERSION", product_price="abc")
        assert "productPrice" in exc.value.errors

    def test_unknown_shop(self, test_db_session):
        with pytest.raises(NotFoundError):
            analytics_service.record_event(test_db_session, "nope.myshopify.com", str(uuid.uuid4()), "IMPRESSION")

    def test_rule_of_other_shop(self, test_db_session, shop, other_shop, make_rule):
        foreign_rule = make_rule(other_shop)
        with pytest.raises(NotFoundError):
            analytics_service.record_event(test_db_session, SHOP_DOMAIN, str(foreign_rule.id), "IMPRESSION")

    def test_malformed_rule_id(self, test_db_session, shop):
        with pytest.raises(NotFoundError):
            analytics_service.record_event(test_db_session, SHOP_DOMAIN, "not-a-uuid", "IMPRESSION")


# ============================================================================
# Aggregation
# ============================================================================

class TestSummary:
    def test_conversion_rate(self):
        events = [_event(IMP) for _ in range(10)] + [_event(CONV) for _ in range(2)]
        summary = analytics_service.compute_summary(events)

        assert summary.total_impressions == 10
        assert summary.total_conversions == 2
        assert summary.conversion_rate == pytest.approx(20.0)

    def test_rate_zero_without_impressions(self):
        summary = analytics_service.compute_summary([_event(CONV)])
        assert summary.conversion_rate == 0

    def test_revenue_treats_null_as_zero(self):
        events = [_event(CONV, price=Decimal("500")), _event(CONV, price=Decimal("1500")), _event(CONV, price=None)]
        assert analytics_service.compute_summary(events).total_revenue == Decimal("2000")

    def test_empty(self):
        summary = analytics_service.compute_summary([])
        assert summary.total_impressions == 0
        assert summary.total_revenue == Decimal("0")


class TestPerRule:
    def test_groups_in_first_seen_order_and_skips_missing(self):
        rule_a = SimpleNamespace(id="a", name="Rule A", is_enabled=True)
        rule_b = SimpleNamespace(id="b", name="Rule B", is_enabled=False)
        events = [
            _event(IMP, "b"),
            _event(IMP, "a"),
            _event(IMP, "gone"),
            _event(CONV, "b", Decimal("700")),
            _event(IMP, "b"),
        ]

        perf = analytics_service.compute_per_rule(events, {"a": rule_a, "b": rule_b})

        assert [p.rule_id for p in perf] == ["b", "a"]
        assert perf[0].rule_name == "Rule B"
        assert perf[0].is_enabled is False
        assert perf[0].impressions == 2
        assert perf[0].conversions == 1
        assert perf[0].conversion_rate == pytest.approx(50.0)
        assert perf[0].revenue == Decimal("700")
        assert perf[1].conversion_rate == 0

    def test_rule_stats_formats_rate(self):
        events = [_event(IMP, "a") for _ in range(3)] + [_event(CONV, "a")]
        stats = analytics_service.rule_stats(events)

        assert stats["a"] == {"impressions": 3, "conversions": 1, "conversion_rate": "33.3"}


def test_window_stats_only_counts_recent_events(test_db_session, shop, make_rule):
    rule = make_rule(shop)
    now = datetime.utcnow()
    test_db_session.add_all(
        [
            AnalyticsEvent(shop_id=shop.id, rule_id=rule.id, event_type=IMP, created_at=now - timedelta(days=1)),
            AnalyticsEvent(shop_id=shop.id, rule_id=rule.id, event_type=IMP, created_at=now - timedelta(days=2)),
            AnalyticsEvent(shop_id=shop.id, rule_id=rule.id, event_type=CONV, created_at=now - timedelta(days=1)),
            AnalyticsEvent(shop_id=shop.id, rule_id=rule.id, event_type=IMP, created_at=now - timedelta(days=30)),
        ]
    )
    test_db_session.commit()

    stats = analytics_service.compute_window_stats(test_db_session, shop.id, days=7, now=now)

    assert stats.impressions == 2
    assert stats.conversions == 1
    assert stats.conversion_rate == pytest.approx(50.0)
