"""Collection membership lookups for COLLECTION rules.

WHAT:
    Fetches, per cart product, the set of collections it belongs to. Results
    are memoized for the request and, when Redis is configured, cached across
    requests with a short TTL.

WHY:
    The matcher is synchronous and may ask about the same product for every
    COLLECTION rule. Prefetching once (concurrently) before matching keeps
    the storefront to one Admin API round trip per uncached product.

REFERENCES:
    - cartupsell/services/cart_matcher.py (consumes the lookup)
    - cartupsell/state.py (shared Redis client)
"""

import asyncio
import json
import logging
from typing import Dict, Iterable, Optional, Set

from redis import Redis
from redis.exceptions import RedisError

from .shopify_client import ShopifyAPIError, ShopifyClient

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 300


class CollectionMembershipCache:
    """Callable product_id -> set of collection GIDs.

    Usage:
        cache = CollectionMembershipCache(shop_domain, redis_client)
        await cache.prefetch(client, cart_product_ids)
        matched = match_rules(rules, cart_product_ids, cache)

    Products that were never prefetched, or whose lookup failed, belong to
    no collections.
    """

    def __init__(
        self,
        shop_domain: str,
        redis_client: Optional[Redis] = None,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
    ):
        self.shop_domain = shop_domain
        self.redis_client = redis_client
        self.ttl_seconds = ttl_seconds
        self._memo: Dict[str, Set[str]] = {}

    def _key(self, product_id: str) -> str:
        return f"collections:{self.shop_domain}:{product_id}"

    def _read_cached(self, product_id: str) -> Optional[Set[str]]:
        if self.redis_client is None:
            return None
        try:
            raw = self.redis_client.get(self._key(product_id))
        except RedisError as e:
            logger.warning(f"[COLLECTIONS] Redis read failed: {e}")
            return None
        if raw is None:
            return None
        try:
            return set(json.loads(raw))
        except (TypeError, ValueError):
            logger.warning(f"[COLLECTIONS] Ignoring corrupt cache entry {self._key(product_id)}")
            return None

    def _write_cached(self, product_id: str, collections: Set[str]) -> None:
        if self.redis_client is None:
            return
        try:
            self.redis_client.setex(self._key(product_id), self.ttl_seconds, json.dumps(sorted(collections)))
        except RedisError as e:
            logger.warning(f"[COLLECTIONS] Redis write failed: {e}")

    async def _fetch(self, client: ShopifyClient, product_id: str) -> None:
        try:
            collections = await client.get_product_collections(product_id)
        except ShopifyAPIError as e:
            logger.warning(f"[COLLECTIONS] Lookup failed for {self.shop_domain} product {product_id}: {e}")
            self._memo[product_id] = set()
            return
        self._memo[product_id] = collections
        self._write_cached(product_id, collections)

    async def prefetch(self, client: ShopifyClient, product_ids: Iterable[str]) -> None:
        """Load memberships for every product not already known, concurrently."""
        missing = []
        for product_id in dict.fromkeys(product_ids):
            if product_id in self._memo:
                continue
            cached = self._read_cached(product_id)
            if cached is not None:
                self._memo[product_id] = cached
            else:
                missing.append(product_id)

        if missing:
            logger.debug(f"[COLLECTIONS] Fetching {len(missing)} product(s) for {self.shop_domain}")
            await asyncio.gather(*(self._fetch(client, product_id) for product_id in missing))

    def __call__(self, product_id: str) -> Set[str]:
        return self._memo.get(product_id, set())
