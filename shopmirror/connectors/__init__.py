"""Shopify Admin API connector"""

from shopmirror.connectors.errors import ShopifyAPIError, RateLimitError, ConfigurationError
from shopmirror.connectors.shopify import ShopifyFetcher, DateWindow, Page

__all__ = [
    "ShopifyFetcher",
    "DateWindow",
    "Page",
    "ShopifyAPIError",
    "RateLimitError",
    "ConfigurationError"
]
