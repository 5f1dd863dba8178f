"""
Shopify connector errors
"""
from typing import Optional


class ShopifyAPIError(Exception):
    """Shopify Admin API call failed"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RateLimitError(ShopifyAPIError):
    """HTTP 429 from Shopify. Never retried inside the fetcher."""

    def __init__(self, message: str = "Shopify rate limit exceeded", retry_after: Optional[float] = None):
        super().__init__(message, status_code=429)
        self.retry_after = retry_after


class ConfigurationError(Exception):
    """Store is missing or has no domain/access token"""
