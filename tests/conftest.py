"""
Shared fixtures: an in-memory mirror database and an in-process Shopify double.
"""
from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from shopmirror.connectors.errors import ConfigurationError
from shopmirror.connectors.shopify import Page
from shopmirror.models import Store
from shopmirror.models.base import init_db
from shopmirror.services.mirror_store import MirrorStore

STORE_ID = "store-1"


class FakeShopify:
    """
    Stands in for ShopifyFetcher.

    Pages are plain lists; the cursor is the next page index as a string.
    Any value in *_errors / refunds / count that is an exception is raised.
    """

    def __init__(self):
        self.order_pages = []
        self.product_pages = []
        self.order_errors = {}
        self.product_errors = {}
        self.refunds = {}
        self.count = 0
        self.calls = []
        self.windows = []
        self.closed = 0

    def factory(self, store):
        if store is None:
            raise ConfigurationError("Store not found")
        if not store.domain or not store.access_token:
            raise ConfigurationError(f"Store {store.id} is missing Shopify credentials")
        return self

    @staticmethod
    def _page(pages, errors, cursor):
        index = int(cursor) if cursor else 0
        if index in errors:
            raise errors[index]
        records = pages[index] if index < len(pages) else []
        next_cursor = str(index + 1) if index + 1 < len(pages) else None
        return Page(records=records, next_cursor=next_cursor)

    async def list_orders(self, window, cursor=None):
        self.calls.append(("list_orders", cursor))
        self.windows.append(window)
        return self._page(self.order_pages, self.order_errors, cursor)

    async def list_products(self, cursor=None):
        self.calls.append(("list_products", cursor))
        return self._page(self.product_pages, self.product_errors, cursor)

    async def get_order_refunds(self, order_id):
        self.calls.append(("get_order_refunds", order_id))
        refunds = self.refunds.get(order_id, [])
        if isinstance(refunds, Exception):
            raise refunds
        return refunds

    async def count_orders(self, window):
        self.calls.append(("count_orders", None))
        self.windows.append(window)
        if isinstance(self.count, Exception):
            raise self.count
        return self.count

    async def aclose(self):
        self.closed += 1


def make_order(order_id, financial_status="paid", days_ago=1, **extra):
    """Shopify REST order payload"""
    created = (datetime.utcnow() - timedelta(days=days_ago)).isoformat() + "Z"
    order = {
        "id": order_id,
        "name": f"#{order_id}",
        "order_number": order_id,
        "email": f"customer{order_id}@example.com",
        "financial_status": financial_status,
        "fulfillment_status": None,
        "currency": "USD",
        "total_price": "100.00",
        "subtotal_price": "90.00",
        "total_tax": "10.00",
        "total_discounts": "0.00",
        "created_at": created,
        "updated_at": created,
        "line_items": [
            {
                "id": order_id * 10,
                "product_id": 501,
                "variant_id": 601,
                "sku": "SKU-1",
                "title": "Widget",
                "quantity": 1,
                "price": "90.00",
            }
        ],
        "shipping_lines": [{"price": "5.00"}],
    }
    order.update(extra)
    return order


def make_product(product_id, variants=None, **extra):
    """Shopify REST product payload"""
    product = {
        "id": product_id,
        "title": f"Product {product_id}",
        "handle": f"product-{product_id}",
        "vendor": "Acme",
        "product_type": "Widgets",
        "status": "active",
        "tags": "new, sale",
        "created_at": "2024-01-01T00:00:00Z",
        "updated_at": "2024-02-01T00:00:00Z",
        "images": [{"src": "https://cdn.example.com/p.png"}],
        "variants": variants if variants is not None else [
            {"id": product_id * 10, "title": "Default", "sku": f"SKU-{product_id}", "price": "25.00"}
        ],
    }
    product.update(extra)
    return product


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    init_db(engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def mirror(session_factory):
    store = MirrorStore(session_factory)
    with store.session() as db:
        db.add(Store(
            id=STORE_ID,
            domain="test-shop.myshopify.com",
            access_token="shpat_test",
            currency="USD"
        ))
    return store


@pytest.fixture
def fake_shopify():
    return FakeShopify()


@pytest.fixture
def order_payload():
    return make_order


@pytest.fixture
def product_payload():
    return make_product
