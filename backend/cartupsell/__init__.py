"""Cart upsell backend for Shopify stores."""
