"""Cart matcher: which enabled rules fire for the products in a cart.

WHAT:
    Pure function over already-loaded rules. Product triggers are compared
    against the cart directly; collection triggers ask a lookup callable for
    each cart product's collections.

WHY:
    Keeping this free of I/O lets the storefront endpoint decide how
    collection membership is fetched (prefetched, memoized, cached) and keeps
    the matching rules trivially testable.

REFERENCES:
    - cartupsell/services/collection_cache.py (the lookup used in production)
    - cartupsell/routers/storefront.py
"""

import re
from typing import Callable, Iterable, List, Optional, Sequence, Set, Union

from ..models import Rule, TriggerTypeEnum

CollectionLookup = Callable[[str], Set[str]]

_GID_RE = re.compile(r"^gid://shopify/(?P<resource>\w+)/(?P<id>\d+)$")


def normalize_id(value: Optional[str], resource: str = "Product") -> Optional[str]:
    """Return the bare numeric id for a GID of `resource` or a bare numeric id.

    Anything else (other resource types, empty, malformed) returns None.

    Example:
        normalize_id("gid://shopify/Product/123")   -> "123"
        normalize_id("123")                         -> "123"
        normalize_id("gid://shopify/Variant/123")   -> None
    """
    if not value:
        return None

    value = value.strip()
    if value.isdigit():
        return value

    match = _GID_RE.match(value)
    if match and match.group("resource") == resource:
        return match.group("id")
    return None


def normalize_cart_product_ids(raw: Union[str, Sequence[str], None]) -> List[str]:
    """Parse the comma-separated `products` query value.

    A repeated query parameter (list of values) is treated as one joined
    value. Entries are trimmed, empties and malformed ids dropped, GIDs
    reduced to bare ids. Duplicates are removed, first occurrence kept.
    """
    if not raw:
        return []
    if not isinstance(raw, str):
        raw = ",".join(str(value) for value in raw)

    seen: Set[str] = set()
    product_ids: List[str] = []
    for part in raw.split(","):
        product_id = normalize_id(part)
        if product_id and product_id not in seen:
            seen.add(product_id)
            product_ids.append(product_id)
    return product_ids


def _collection_matches(
    collection_id: Optional[str],
    cart_product_ids: Iterable[str],
    collection_lookup: CollectionLookup,
) -> bool:
    target = normalize_id(collection_id, resource="Collection")
    if target is None:
        return False

    for product_id in cart_product_ids:
        memberships = {normalize_id(c, resource="Collection") for c in collection_lookup(product_id)}
        if target in memberships:
            return True
    return False


def match_rules(
    rules: Iterable[Rule],
    cart_product_ids: Iterable[str],
    collection_lookup: CollectionLookup,
) -> List[Rule]:
    """Return the rules whose trigger is satisfied by the cart.

    Args:
        rules: Enabled rules, already ordered by priority then creation
        cart_product_ids: Normalized (bare) product ids in the cart
        collection_lookup: product_id -> set of collection GIDs the product
            belongs to. Only called for COLLECTION rules.

    Returns:
        Matched rules in input order. A rule is dropped when its upsell
        product is already in the cart.
    """
    cart_ids = list(dict.fromkeys(cart_product_ids))
    cart_set = set(cart_ids)

    matched: List[Rule] = []
    for rule in rules:
        if rule.trigger_type == TriggerTypeEnum.product:
            fires = normalize_id(rule.trigger_product_id) in cart_set
        elif rule.trigger_type == TriggerTypeEnum.collection:
            fires = _collection_matches(rule.trigger_collection_id, cart_ids, collection_lookup)
        else:
            fires = False

        if not fires:
            continue

        # Never offer what the shopper already has
        if normalize_id(rule.upsell_product_id) in cart_set:
            continue

        matched.append(rule)

    return matched
