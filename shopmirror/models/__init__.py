"""Database models for the shopmirror sync engine"""

from shopmirror.models.store import Store

from shopmirror.models.sync_status import (
    SyncStatus,
    DATA_TYPE_ORDERS,
    DATA_TYPE_PRODUCTS,
    DATA_TYPES,
)

from shopmirror.models.shopify import (
    ShopifyOrder,
    ShopifyLineItem,
    ShopifyProduct,
    ShopifyProductVariant,
    COST_SOURCE_MANUAL,
    COST_SOURCE_SHOPIFY,
    REFUND_FINANCIAL_STATUSES,
)

__all__ = [
    "Store",
    "SyncStatus",
    "DATA_TYPE_ORDERS",
    "DATA_TYPE_PRODUCTS",
    "DATA_TYPES",
    "ShopifyOrder",
    "ShopifyLineItem",
    "ShopifyProduct",
    "ShopifyProductVariant",
    "COST_SOURCE_MANUAL",
    "COST_SOURCE_SHOPIFY",
    "REFUND_FINANCIAL_STATUSES",
]
