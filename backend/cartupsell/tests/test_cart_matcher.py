"""Unit tests for cart matching (no database needed)."""

import uuid

from cartupsell.models import Rule, TriggerTypeEnum
from cartupsell.services.cart_matcher import match_rules, normalize_cart_product_ids, normalize_id


def _rule(name, trigger_type=TriggerTypeEnum.product, trigger=None, upsell="gid://shopify/Product/900"):
    rule = Rule(id=uuid.uuid4(), name=name, trigger_type=trigger_type, upsell_product_id=upsell, is_enabled=True)
    if trigger_type == TriggerTypeEnum.product:
        rule.trigger_product_id = trigger
    else:
        rule.trigger_collection_id = trigger
    return rule


def _no_collections(product_id):
    raise AssertionError("collection lookup should not be called for product rules")


class TestNormalize:
    def test_strips_product_gid(self):
        assert normalize_id("gid://shopify/Product/123") == "123"

    def test_accepts_bare_numeric(self):
        assert normalize_id(" 123 ") == "123"

    def test_rejects_other_resources_and_garbage(self):
        assert normalize_id("gid://shopify/ProductVariant/123") is None
        assert normalize_id("abc") is None
        assert normalize_id("") is None
        assert normalize_id(None) is None

    def test_collection_resource(self):
        assert normalize_id("gid://shopify/Collection/7", resource="Collection") == "7"
        assert normalize_id("gid://shopify/Product/7", resource="Collection") is None

    def test_cart_ids_parsing(self):
        raw = " 111, gid://shopify/Product/222,,bogus, 111 "
        assert normalize_cart_product_ids(raw) == ["111", "222"]

    def test_cart_ids_empty(self):
        assert normalize_cart_product_ids(None) == []
        assert normalize_cart_product_ids("") == []

    def test_cart_ids_from_repeated_parameter(self):
        assert normalize_cart_product_ids(["1", "gid://shopify/Product/2,1"]) == ["1", "2"]


class TestMatchRules:
    def test_product_trigger_matches(self):
        rule = _rule("A", trigger="gid://shopify/Product/1")
        assert match_rules([rule], ["1"], _no_collections) == [rule]

    def test_product_trigger_misses(self):
        rule = _rule("A", trigger="gid://shopify/Product/1")
        assert match_rules([rule], ["2"], _no_collections) == []

    def test_malformed_trigger_never_matches(self):
        rule = _rule("A", trigger="not-an-id")
        assert match_rules([rule], ["1"], _no_collections) == []

    def test_upsell_already_in_cart_is_excluded(self):
        rule = _rule("A", trigger="gid://shopify/Product/1", upsell="gid://shopify/Product/2")
        assert match_rules([rule], ["1", "2"], _no_collections) == []

    def test_preserves_input_order(self):
        rules = [
            _rule("first", trigger="gid://shopify/Product/1", upsell="gid://shopify/Product/10"),
            _rule("second", trigger="gid://shopify/Product/1", upsell="gid://shopify/Product/11"),
            _rule("third", trigger="gid://shopify/Product/1", upsell="gid://shopify/Product/12"),
        ]
        assert [r.name for r in match_rules(rules, ["1"], _no_collections)] == ["first", "second", "third"]

    def test_deterministic(self):
        rules = [
            _rule("A", trigger="gid://shopify/Product/1", upsell="gid://shopify/Product/10"),
            _rule("B", trigger="gid://shopify/Product/2", upsell="gid://shopify/Product/11"),
        ]
        first = match_rules(rules, ["1", "2"], _no_collections)
        second = match_rules(rules, ["1", "2"], _no_collections)
        assert first == second

    def test_collection_trigger_matches(self):
        rule = _rule("C", trigger_type=TriggerTypeEnum.collection, trigger="gid://shopify/Collection/5")
        lookup = {"1": set(), "2": {"gid://shopify/Collection/5"}}
        assert match_rules([rule], ["1", "2"], lambda pid: lookup[pid]) == [rule]

    def test_collection_trigger_short_circuits(self):
        rule = _rule("C", trigger_type=TriggerTypeEnum.collection, trigger="gid://shopify/Collection/5")
        asked = []

        def lookup(pid):
            asked.append(pid)
            return {"gid://shopify/Collection/5"}

        assert match_rules([rule], ["1", "2", "3"], lookup) == [rule]
        assert asked == ["1"]

    def test_collection_without_data_does_not_match(self):
        rule = _rule("C", trigger_type=TriggerTypeEnum.collection, trigger="gid://shopify/Collection/5")
        assert match_rules([rule], ["1"], lambda pid: set()) == []

    def test_end_to_end_scenario(self):
        rule_a = _rule("A", trigger="gid://shopify/Product/1", upsell="gid://shopify/Product/2")
        rule_b = _rule(
            "B",
            trigger_type=TriggerTypeEnum.collection,
            trigger="gid://shopify/Collection/1",
            upsell="gid://shopify/Product/3",
        )
        memberships = {"1": set(), "3": {"gid://shopify/Collection/1"}}

        matched = match_rules([rule_a, rule_b], ["1", "3"], lambda pid: memberships[pid])

        # B fires via P3's collection but P3 is already in the cart
        assert matched == [rule_a]
