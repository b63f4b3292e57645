"""Offer formatting for the storefront cart drawer.

Turns matched rules into the payload the storefront script renders. Display
data comes only from the snapshot stored on the rule, so this never touches
the network or the database.
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, List, Mapping, Optional

from ..models import Rule
from ..schemas import Offer, OfferProduct

DEFAULT_MAX_OFFERS = 3


def to_minor_units(price: Any) -> Optional[str]:
    """Convert a decimal price ("19.99") to string minor units ("1999").

    Returns None for missing or unparsable prices.
    """
    if price is None or price == "":
        return None
    try:
        return str(round(Decimal(str(price)) * 100))
    except InvalidOperation:
        return None


@dataclass
class UpsellSnapshot:
    """Product display data captured when a rule is saved.

    Stored in Rule.upsell_product_data / trigger_product_data with the
    camelCase keys the storefront script reads. Prices are minor units.
    """

    title: Optional[str] = None
    image: Optional[str] = None
    price: Optional[str] = None
    compare_at_price: Optional[str] = None
    variant_id: Optional[str] = None

    @classmethod
    def from_product(cls, product: Mapping[str, Any]) -> "UpsellSnapshot":
        """Build from ShopifyClient.get_product output (decimal prices)."""
        return cls(
            title=product.get("title"),
            image=product.get("image"),
            price=to_minor_units(product.get("price")),
            compare_at_price=to_minor_units(product.get("compare_at_price")),
            variant_id=product.get("variant_id"),
        )

    @classmethod
    def from_json(cls, data: Optional[Mapping[str, Any]]) -> Optional["UpsellSnapshot"]:
        """Parse a stored snapshot; unknown keys are ignored."""
        if not data:
            return None
        return cls(
            title=data.get("title"),
            image=data.get("image"),
            price=data.get("price"),
            compare_at_price=data.get("compareAtPrice"),
            variant_id=data.get("variantId"),
        )

    def to_json(self) -> dict:
        return {
            "title": self.title,
            "image": self.image,
            "price": self.price,
            "compareAtPrice": self.compare_at_price,
            "variantId": self.variant_id,
        }


def format_offer(rule: Rule) -> Offer:
    snapshot = UpsellSnapshot.from_json(rule.upsell_product_data) or UpsellSnapshot()
    return Offer(
        rule_id=str(rule.id),
        product=OfferProduct(
            id=rule.upsell_product_id,
            variant_id=snapshot.variant_id or rule.upsell_variant_id or rule.upsell_product_id,
            title=snapshot.title or "Product",
            image=snapshot.image,
            price=snapshot.price or "0.00",
            compare_at_price=snapshot.compare_at_price,
            available=True,
        ),
    )


def format_offers(matched_rules: Iterable[Rule], max_offers: int = DEFAULT_MAX_OFFERS) -> List[Offer]:
    """Format the first `max_offers` matched rules, preserving order."""
    offers: List[Offer] = []
    for rule in matched_rules:
        if len(offers) >= max_offers:
            break
        offers.append(format_offer(rule))
    return offers
