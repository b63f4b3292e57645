"""Shopify GraphQL Admin API client.

WHAT:
    Wrapper for the Shopify Admin GraphQL API with:
    - Authentication handling
    - Rate limiting (2 requests/second)
    - Error handling and retries
    - The handful of queries/mutations the upsell app needs: product
      snapshots, collection membership, shop currency and app billing

WHY:
    Every Admin API call goes through one place so failures surface as a
    single exception type (ShopifyAPIError) that callers can degrade on.

REFERENCES:
    - Shopify GraphQL Admin API: https://shopify.dev/docs/api/admin-graphql
    - Rate limits: https://shopify.dev/docs/api/usage/rate-limits
    - App billing: https://shopify.dev/docs/apps/launch/billing/subscription-billing
"""

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional, Set, Tuple

import httpx

logger = logging.getLogger(__name__)

# Default API version
DEFAULT_API_VERSION = "2024-07"

# Rate limiting: Shopify allows 2 requests/second for regular apps
RATE_LIMIT_DELAY = 0.5  # seconds between requests (2 req/sec)

PRODUCT_GID_PREFIX = "gid://shopify/Product/"


class ShopifyAPIError(Exception):
    """Custom exception for Shopify API errors."""

    def __init__(self, message: str, status_code: Optional[int] = None, errors: Optional[List] = None):
        super().__init__(message)
        self.status_code = status_code
        self.errors = errors or []


def to_product_gid(product_id: str) -> str:
    """Return the Product GID for a bare numeric id (GIDs pass through)."""
    if product_id.startswith("gid://"):
        return product_id
    return f"{PRODUCT_GID_PREFIX}{product_id}"


class ShopifyClient:
    """GraphQL client for Shopify Admin API.

    Usage:
        client = ShopifyClient(shop_domain="mystore.myshopify.com", access_token="shpat_xxx")
        product = await client.get_product("gid://shopify/Product/123")
        collections = await client.get_product_collections("123")
    """

    def __init__(
        self,
        shop_domain: str,
        access_token: str,
        api_version: str = DEFAULT_API_VERSION,
        timeout: float = 10.0,
    ):
        """Initialize Shopify client.

        Args:
            shop_domain: Shopify store domain (e.g., "mystore.myshopify.com")
            access_token: Shopify Admin API access token
            api_version: API version to use (default: 2024-07)
            timeout: Per-request timeout in seconds. Storefront requests wait
                on collection lookups, so this stays short.
        """
        self.shop_domain = shop_domain
        self.access_token = access_token
        self.api_version = api_version
        self.timeout = timeout
        self.base_url = f"https://{shop_domain}/admin/api/{api_version}/graphql.json"

        self._last_request_time: float = 0

        logger.debug(f"[SHOPIFY_CLIENT] Initialized for {shop_domain} (API version: {api_version})")

    async def _rate_limit(self) -> None:
        """Wait if needed to respect the 2 req/sec limit."""
        current_time = time.time()
        elapsed = current_time - self._last_request_time

        if elapsed < RATE_LIMIT_DELAY:
            wait_time = RATE_LIMIT_DELAY - elapsed
            logger.debug(f"[SHOPIFY_CLIENT] Rate limiting: waiting {wait_time:.3f}s")
            await asyncio.sleep(wait_time)

        self._last_request_time = time.time()

    async def execute(
        self,
        query: str,
        variables: Optional[Dict[str, Any]] = None,
        retries: int = 3,
    ) -> Dict[str, Any]:
        """Execute a GraphQL query against Shopify Admin API.

        Args:
            query: GraphQL query string
            variables: Query variables (optional)
            retries: Number of retry attempts for transient errors

        Returns:
            The `data` object of the GraphQL response

        Raises:
            ShopifyAPIError: If query fails after all retries
        """
        await self._rate_limit()

        headers = {
            "X-Shopify-Access-Token": self.access_token,
            "Content-Type": "application/json",
        }

        payload: Dict[str, Any] = {"query": query}
        if variables:
            payload["variables"] = variables

        last_error = None

        for attempt in range(retries):
            try:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(
                        self.base_url,
                        json=payload,
                        headers=headers,
                    )

                    # Handle rate limiting (429)
                    if response.status_code == 429:
                        retry_after = float(response.headers.get("Retry-After", 2))
                        logger.warning(
                            f"[SHOPIFY_CLIENT] Rate limited, waiting {retry_after}s (attempt {attempt + 1}/{retries})"
                        )
                        await asyncio.sleep(retry_after)
                        continue

                    response.raise_for_status()
                    data = response.json()

                    if "errors" in data:
                        errors = data["errors"]
                        error_messages = [e.get("message", str(e)) for e in errors]
                        logger.error(f"[SHOPIFY_CLIENT] GraphQL errors: {error_messages}")

                        if any("throttled" in msg.lower() for msg in error_messages):
                            logger.warning("[SHOPIFY_CLIENT] Throttled, waiting 2s")
                            await asyncio.sleep(2)
                            continue

                        raise ShopifyAPIError(
                            f"GraphQL errors: {', '.join(error_messages)}",
                            errors=errors,
                        )

                    return data.get("data") or {}

            except httpx.HTTPStatusError as e:
                last_error = e
                logger.warning(
                    f"[SHOPIFY_CLIENT] HTTP error {e.response.status_code} (attempt {attempt + 1}/{retries})"
                )
                # 4xx other than 429 will not get better on retry
                if 400 <= e.response.status_code < 500:
                    raise ShopifyAPIError(
                        f"HTTP {e.response.status_code} from Shopify",
                        status_code=e.response.status_code,
                    ) from e
                if attempt < retries - 1:
                    await asyncio.sleep(1 * (attempt + 1))

            except httpx.RequestError as e:
                last_error = e
                logger.warning(f"[SHOPIFY_CLIENT] Request error: {e} (attempt {attempt + 1}/{retries})")
                if attempt < retries - 1:
                    await asyncio.sleep(1 * (attempt + 1))

        raise ShopifyAPIError(f"Failed after {retries} attempts: {last_error}")

    # =========================================================================
    # SHOP QUERIES
    # =========================================================================

    async def get_shop_currency(self) -> str:
        """Return the shop's currency code (defaults to USD when absent)."""
        query = """
        query GetShopCurrency {
            shop {
                currencyCode
            }
        }
        """
        data = await self.execute(query)
        return (data.get("shop") or {}).get("currencyCode") or "USD"

    # =========================================================================
    # PRODUCT QUERIES
    # =========================================================================

    async def get_product(self, product_id: str) -> Optional[Dict[str, Any]]:
        """Fetch the display data used for rule snapshots.

        Args:
            product_id: Product GID or bare numeric id

        Returns:
            Dict with id, title, image, variant_id, price, compare_at_price
            (prices as decimal strings in shop currency), or None when the
            product does not exist.
        """
        query = """
        query GetProduct($id: ID!) {
            product(id: $id) {
                id
                title
                featuredImage {
                    url
                }
                variants(first: 1) {
                    edges {
                        node {
                            id
                            price
                            compareAtPrice
                        }
                    }
                }
            }
        }
        """
        data = await self.execute(query, {"id": to_product_gid(product_id)})
        product = data.get("product")
        if not product:
            return None

        edges = (product.get("variants") or {}).get("edges") or []
        variant = edges[0]["node"] if edges else {}

        return {
            "id": product.get("id"),
            "title": product.get("title"),
            "image": (product.get("featuredImage") or {}).get("url"),
            "variant_id": variant.get("id"),
            "price": variant.get("price"),
            "compare_at_price": variant.get("compareAtPrice"),
        }

    async def get_product_collections(self, product_id: str) -> Set[str]:
        """Return the GIDs of every collection a product belongs to.

        Only the first 250 collections are read; a product in more than that
        is treated as not belonging to the rest.
        """
        query = """
        query GetProductCollections($id: ID!) {
            product(id: $id) {
                collections(first: 250) {
                    edges {
                        node {
                            id
                        }
                    }
                }
            }
        }
        """
        data = await self.execute(query, {"id": to_product_gid(product_id)}, retries=1)
        product = data.get("product") or {}
        edges = (product.get("collections") or {}).get("edges") or []
        return {edge["node"]["id"] for edge in edges if edge.get("node")}

    # =========================================================================
    # APP BILLING
    # =========================================================================

    async def create_subscription(
        self,
        name: str,
        price: str,
        return_url: str,
        test: bool = False,
    ) -> Tuple[Optional[str], Optional[str]]:
        """Create a recurring 30-day app subscription.

        Returns:
            Tuple of (subscription GID, confirmation URL the merchant must visit)

        Raises:
            ShopifyAPIError: On transport errors or mutation userErrors
        """
        mutation = """
        mutation CreateAppSubscription($name: String!, $price: Decimal!, $returnUrl: URL!, $test: Boolean) {
            appSubscriptionCreate(
                name: $name
                returnUrl: $returnUrl
                test: $test
                lineItems: [
                    {
                        plan: {
                            appRecurringPricingDetails: {
                                price: { amount: $price, currencyCode: USD }
                                interval: EVERY_30_DAYS
                            }
                        }
                    }
                ]
            ) {
                appSubscription {
                    id
                    status
                }
                confirmationUrl
                userErrors {
                    field
                    message
                }
            }
        }
        """
        data = await self.execute(
            mutation,
            {"name": name, "price": price, "returnUrl": return_url, "test": test},
            retries=1,
        )
        result = data.get("appSubscriptionCreate") or {}
        user_errors = result.get("userErrors") or []
        if user_errors:
            raise ShopifyAPIError(user_errors[0].get("message", "Subscription create failed"), errors=user_errors)

        subscription = result.get("appSubscription") or {}
        return subscription.get("id"), result.get("confirmationUrl")

    async def get_active_subscriptions(self) -> List[Dict[str, Any]]:
        """Return the app's active subscriptions for this shop (raw GraphQL shape)."""
        query = """
        query GetActiveSubscriptions {
            currentAppInstallation {
                activeSubscriptions {
                    id
                    name
                    status
                    createdAt
                    currentPeriodEnd
                    lineItems {
                        plan {
                            pricingDetails {
                                ... on AppRecurringPricing {
                                    price {
                                        amount
                                        currencyCode
                                    }
                                    interval
                                }
                            }
                        }
                    }
                }
            }
        }
        """
        data = await self.execute(query)
        installation = data.get("currentAppInstallation") or {}
        return installation.get("activeSubscriptions") or []

    async def cancel_subscription(self, subscription_id: str) -> Dict[str, Any]:
        """Cancel an app subscription.

        Raises:
            ShopifyAPIError: On transport errors or mutation userErrors
        """
        mutation = """
        mutation CancelSubscription($id: ID!) {
            appSubscriptionCancel(id: $id) {
                appSubscription {
                    id
                    status
                }
                userErrors {
                    field
                    message
                }
            }
        }
        """
        data = await self.execute(mutation, {"id": subscription_id}, retries=1)
        result = data.get("appSubscriptionCancel") or {}
        user_errors = result.get("userErrors") or []
        if user_errors:
            raise ShopifyAPIError(user_errors[0].get("message", "Subscription cancel failed"), errors=user_errors)
        return result.get("appSubscription") or {}
