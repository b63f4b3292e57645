"""
Application State
=================

Process-wide shared resources that outlive a single request.

WHAT it stores:
- redis_pool / redis_client: Optional shared Redis connection used to cache
  collection membership across storefront requests

WHERE it's used:
- cartupsell/routers/storefront.py: passed to CollectionMembershipCache
- cartupsell/main.py: startup ping

Redis is optional. With REDIS_URL unset, redis_client stays None and
collection lookups are only memoized per request.
"""

import logging
from typing import Optional

from redis import Redis, ConnectionPool

from cartupsell.deps import get_settings

logger = logging.getLogger(__name__)

redis_pool: Optional[ConnectionPool] = None
redis_client: Optional[Redis] = None

settings = get_settings()
if settings.REDIS_URL:
    try:
        redis_pool = ConnectionPool.from_url(
            settings.REDIS_URL,
            max_connections=20,
            decode_responses=True,
            socket_timeout=0.5,  # Storefront latency budget
        )
        redis_client = Redis(connection_pool=redis_pool)
        logger.info("[STATE] Shared Redis connection pool initialized (max_connections=20)")
    except ValueError as e:
        logger.error(f"[STATE] Invalid REDIS_URL, collection cache disabled: {e}")
        redis_pool = None
        redis_client = None
else:
    logger.info("[STATE] REDIS_URL not set, collection cache is per-request only")
