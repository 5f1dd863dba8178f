"""
Shopify Connector

Rate-limited fetcher for the Shopify Admin REST API.
Pages through orders and products, fetches per-order refunds and counts.
Persistence is left to the callers.
"""
import httpx
import time
import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from shopmirror.config import get_settings
from shopmirror.connectors.errors import ShopifyAPIError, RateLimitError, ConfigurationError
from shopmirror.utils.retry import retry_async
from shopmirror.utils.logger import log


def _utc_iso(value: datetime) -> str:
    """ISO-8601 with an explicit UTC offset; naive values are taken as UTC"""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


class RequestSpacer:
    """
    Minimum interval between calls to one shop.

    Each caller reserves the next free slot before sleeping, so concurrent
    fetchers for the same domain queue up behind each other.
    """

    def __init__(self):
        self.next_allowed = 0.0

    def reserve(self, interval: float, now: Optional[float] = None) -> float:
        """Claim the next slot; returns how long to wait for it"""
        now = time.monotonic() if now is None else now
        slot = max(now, self.next_allowed)
        self.next_allowed = slot + interval
        return slot - now

    async def wait(self, interval: float):
        delay = self.reserve(interval)
        if delay > 0:
            await asyncio.sleep(delay)


_spacers: Dict[str, RequestSpacer] = {}


def get_request_spacer(store_url: str) -> RequestSpacer:
    """One spacer per shop domain, shared by every fetcher in the process"""
    if store_url not in _spacers:
        _spacers[store_url] = RequestSpacer()
    return _spacers[store_url]


@dataclass
class DateWindow:
    """Inclusive [start, end] window on order created_at (naive UTC)"""
    start: datetime
    end: datetime


@dataclass
class Page:
    """One page of upstream records plus the cursor for the next page"""
    records: List[Dict[str, Any]] = field(default_factory=list)
    next_cursor: Optional[str] = None


class ShopifyFetcher:
    """
    Client for the Shopify Admin API

    Every call waits out the minimum inter-call interval, then retries
    transport and 5xx failures with exponential backoff. HTTP 429 raises
    RateLimitError immediately so the caller can stop its batch.
    """

    def __init__(
        self,
        store_url: str,
        access_token: str,
        api_version: Optional[str] = None,
        min_request_interval: Optional[float] = None,
        page_size: Optional[int] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        retry_base_delay: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None
    ):
        """
        Initialize Shopify fetcher

        Args:
            store_url: Shopify store URL (e.g., "your-store.myshopify.com")
            access_token: Shopify Admin API access token
            api_version: API version to use
            client: Pre-built httpx client (tests pass one with a MockTransport)
        """
        settings = get_settings()

        if not store_url or not access_token:
            raise ConfigurationError("Shopify store domain and access token are required")

        self.store_url = store_url.replace('https://', '').replace('http://', '').rstrip('/')
        self.access_token = access_token
        self.api_version = api_version or settings.shopify_api_version
        self.base_url = f"https://{self.store_url}/admin/api/{self.api_version}"

        self.min_request_interval = (
            settings.shopify_min_request_interval_seconds
            if min_request_interval is None else min_request_interval
        )
        self.page_size = page_size or settings.shopify_page_size
        self.timeout = timeout or settings.shopify_request_timeout_seconds
        self.spacer = get_request_spacer(self.store_url)

        self._client = client or httpx.AsyncClient(timeout=self.timeout)
        self._owns_client = client is None

        self._get_with_retry = retry_async(
            max_attempts=max_retries or settings.shopify_max_retries,
            base_delay=settings.shopify_retry_base_delay if retry_base_delay is None else retry_base_delay,
            retryable_exceptions=(httpx.TransportError,),
        )(self._request_once)

    @classmethod
    def from_store(cls, store, **kwargs) -> "ShopifyFetcher":
        """Build a fetcher from a Store row"""
        if store is None:
            raise ConfigurationError("Store not found")
        if not store.domain or not store.access_token:
            raise ConfigurationError(f"Store {store.id} is missing Shopify credentials")
        return cls(store.domain, store.access_token, **kwargs)

    async def list_orders(self, window: DateWindow, cursor: Optional[str] = None) -> Page:
        """
        Fetch one page of orders created inside the window

        Args:
            window: created_at window
            cursor: next-page URL from the previous Page, None for the first page
        """
        if cursor:
            response = await self._get(cursor)
        else:
            response = await self._get(
                f"{self.base_url}/orders.json",
                params={
                    "status": "any",  # Get all orders (open, closed, cancelled)
                    "created_at_min": _utc_iso(window.start),
                    "created_at_max": _utc_iso(window.end),
                    "limit": self.page_size
                }
            )

        return Page(
            records=response.json().get("orders", []),
            next_cursor=self._get_next_page_url(response.headers.get("Link"))
        )

    async def list_products(self, cursor: Optional[str] = None) -> Page:
        """Fetch one page of the full product catalog"""
        if cursor:
            response = await self._get(cursor)
        else:
            response = await self._get(
                f"{self.base_url}/products.json",
                params={"limit": self.page_size}
            )

        return Page(
            records=response.json().get("products", []),
            next_cursor=self._get_next_page_url(response.headers.get("Link"))
        )

    async def get_order_refunds(self, order_id: int) -> List[Dict[str, Any]]:
        """Fetch all refund records of one order"""
        response = await self._get(f"{self.base_url}/orders/{order_id}/refunds.json")
        return response.json().get("refunds", [])

    async def count_orders(self, window: DateWindow) -> int:
        """Count upstream orders created inside the window"""
        response = await self._get(
            f"{self.base_url}/orders/count.json",
            params={
                "status": "any",
                "created_at_min": _utc_iso(window.start),
                "created_at_max": _utc_iso(window.end)
            }
        )
        return int(response.json().get("count", 0))

    async def aclose(self):
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()

    async def _get(self, url: str, params: Optional[Dict[str, Any]] = None) -> httpx.Response:
        try:
            return await self._get_with_retry(url, params)
        except httpx.TransportError as e:
            raise ShopifyAPIError(f"Shopify request failed: {e}") from e

    async def _request_once(self, url: str, params: Optional[Dict[str, Any]] = None) -> httpx.Response:
        await self._rate_limit()

        response = await self._client.get(
            url,
            params=params,
            headers=self._get_headers(),
            timeout=self.timeout
        )

        if response.status_code == 429:
            retry_after = self._parse_retry_after(response.headers.get("Retry-After"))
            log.warning(f"Shopify rate limit hit on {url} (retry after {retry_after}s)")
            raise RateLimitError(retry_after=retry_after)

        if response.status_code != 200:
            raise ShopifyAPIError(
                f"Shopify API error {response.status_code}: {response.text[:200]}",
                status_code=response.status_code
            )

        return response

    def _get_headers(self) -> Dict[str, str]:
        """Get HTTP headers for Shopify API requests"""
        return {
            "X-Shopify-Access-Token": self.access_token,
            "Content-Type": "application/json"
        }

    def _get_next_page_url(self, link_header: Optional[str]) -> Optional[str]:
        """
        Parse next page URL from Link header

        Shopify uses cursor-based pagination with Link headers:
        <https://...page_info=abc>; rel="next"
        """
        if not link_header:
            return None

        links = link_header.split(",")
        for link in links:
            parts = link.split(";")
            if len(parts) == 2 and 'rel="next"' in parts[1]:
                return parts[0].strip().strip("<>")

        return None

    @staticmethod
    def _parse_retry_after(value: Optional[str]) -> Optional[float]:
        if not value:
            return None
        try:
            return float(value)
        except ValueError:
            return None

    async def _rate_limit(self):
        """Enforce the minimum interval between Shopify calls to this shop"""
        await self.spacer.wait(self.min_request_interval)
