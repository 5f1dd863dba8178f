"""
Shopify Data Models

Local mirror of orders and the product catalog pulled from the Shopify Admin API.
"""
from sqlalchemy import Column, Integer, String, DateTime, JSON, Text, BigInteger, ForeignKey, Numeric
from sqlalchemy.orm import relationship
from datetime import datetime

from shopmirror.models.base import Base

# Who owns a variant's cost
COST_SOURCE_MANUAL = "MANUAL"
COST_SOURCE_SHOPIFY = "SHOPIFY"

# Financial statuses that flag an order as potentially refunded
REFUND_FINANCIAL_STATUSES = ("refunded", "partially_refunded")


class ShopifyOrder(Base):
    """
    Shopify orders

    Synced from Shopify Admin API: GET /admin/api/{version}/orders.json
    total_refunds is owned by the refund reconciliation pass; order syncs
    never overwrite it on an existing row.
    """
    __tablename__ = "shopify_orders"

    id = Column(Integer, primary_key=True, index=True)

    # Shopify IDs
    shopify_order_id = Column(BigInteger, unique=True, index=True, nullable=False)
    store_id = Column(String, index=True, nullable=False)
    order_number = Column(Integer, index=True, nullable=True)
    order_name = Column(String, index=True, nullable=True)  # "#1001"
    email = Column(String, nullable=True)

    # Order status
    financial_status = Column(String, index=True)  # paid, refunded, partially_refunded, voided, ...
    fulfillment_status = Column(String, nullable=True)

    # Amounts (store currency)
    currency = Column(String, default='USD')
    total_price = Column(Numeric(12, 2), default=0)
    subtotal_price = Column(Numeric(12, 2), default=0)
    total_shipping = Column(Numeric(12, 2), default=0)
    total_tax = Column(Numeric(12, 2), default=0)
    total_discounts = Column(Numeric(12, 2), default=0)

    # Refunds (canonical reconciliation result)
    total_refunds = Column(Numeric(12, 2), default=0, nullable=False)
    refunds_reconciled_at = Column(DateTime, nullable=True)

    tags = Column(Text, nullable=True)

    # Timestamps
    created_at = Column(DateTime, index=True)
    updated_at = Column(DateTime, index=True)
    processed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)

    # Sync metadata
    last_synced_at = Column(DateTime, default=datetime.utcnow)

    line_items = relationship(
        "ShopifyLineItem",
        back_populates="order",
        cascade="all, delete-orphan",
        primaryjoin="ShopifyLineItem.shopify_order_id == ShopifyOrder.shopify_order_id",
        foreign_keys="ShopifyLineItem.shopify_order_id",
    )


class ShopifyLineItem(Base):
    """
    Order line items

    Replaced wholesale on every order upsert.
    """
    __tablename__ = "shopify_line_items"

    id = Column(Integer, primary_key=True, index=True)

    shopify_line_item_id = Column(BigInteger, index=True, nullable=False)
    shopify_order_id = Column(BigInteger, ForeignKey('shopify_orders.shopify_order_id'), index=True, nullable=False)

    shopify_product_id = Column(BigInteger, index=True, nullable=True)
    shopify_variant_id = Column(BigInteger, index=True, nullable=True)
    sku = Column(String, index=True, nullable=True)
    title = Column(String, nullable=True)
    variant_title = Column(String, nullable=True)
    vendor = Column(String, nullable=True)

    quantity = Column(Integer, nullable=False, default=1)
    price = Column(Numeric(12, 2), nullable=False, default=0)
    total_discount = Column(Numeric(12, 2), default=0)

    order = relationship(
        "ShopifyOrder",
        back_populates="line_items",
        primaryjoin="ShopifyLineItem.shopify_order_id == ShopifyOrder.shopify_order_id",
        foreign_keys=[shopify_order_id],
    )


class ShopifyProduct(Base):
    """
    Shopify products catalog

    Synced from Shopify Admin API: GET /admin/api/{version}/products.json
    """
    __tablename__ = "shopify_products"

    id = Column(Integer, primary_key=True, index=True)

    shopify_product_id = Column(BigInteger, unique=True, index=True, nullable=False)
    store_id = Column(String, index=True, nullable=False)
    handle = Column(String, index=True, nullable=True)

    title = Column(String, nullable=False)
    vendor = Column(String, index=True, nullable=True)
    product_type = Column(String, nullable=True)
    tags = Column(Text, nullable=True)
    status = Column(String, index=True)  # active, archived, draft
    images = Column(JSON, nullable=True)

    # Timestamps
    created_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, index=True, nullable=True)  # Local write time
    shopify_updated_at = Column(DateTime, nullable=True)
    published_at = Column(DateTime, nullable=True)

    # Sync metadata
    last_synced_at = Column(DateTime, default=datetime.utcnow)

    variants = relationship(
        "ShopifyProductVariant",
        back_populates="product",
        cascade="all, delete-orphan",
        primaryjoin="ShopifyProductVariant.shopify_product_id == ShopifyProduct.shopify_product_id",
        foreign_keys="ShopifyProductVariant.shopify_product_id",
    )


class ShopifyProductVariant(Base):
    """
    Product variants with locally owned cost

    cost_source=MANUAL means a person entered the cost; syncs leave it alone.
    """
    __tablename__ = "shopify_product_variants"

    id = Column(Integer, primary_key=True, index=True)

    shopify_variant_id = Column(BigInteger, unique=True, index=True, nullable=False)
    shopify_product_id = Column(BigInteger, ForeignKey('shopify_products.shopify_product_id'), index=True, nullable=False)

    title = Column(String, nullable=True)
    sku = Column(String, index=True, nullable=True)
    price = Column(Numeric(12, 2), default=0)
    compare_at_price = Column(Numeric(12, 2), nullable=True)
    inventory_quantity = Column(Integer, default=0)

    # Locally owned cost
    cost = Column(Numeric(12, 2), nullable=True)
    cost_source = Column(String, nullable=True)  # MANUAL, SHOPIFY
    cost_last_updated = Column(DateTime, nullable=True)

    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, index=True)

    product = relationship(
        "ShopifyProduct",
        back_populates="variants",
        primaryjoin="ShopifyProductVariant.shopify_product_id == ShopifyProduct.shopify_product_id",
        foreign_keys=[shopify_product_id],
    )
