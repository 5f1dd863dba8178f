"""
Local Mirror Store

Persistence for mirrored Shopify orders/products and the per (store, data type)
SyncStatus rows. Every method opens and closes its own session so callers can
share one MirrorStore across asyncio tasks.
"""
from contextlib import contextmanager
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import func, or_

from shopmirror.models.base import SessionLocal
from shopmirror.models import (
    Store,
    SyncStatus,
    ShopifyOrder,
    ShopifyLineItem,
    ShopifyProduct,
    ShopifyProductVariant,
    COST_SOURCE_SHOPIFY,
    REFUND_FINANCIAL_STATUSES,
)
from shopmirror.utils.helpers import parse_datetime, to_decimal
from shopmirror.utils.logger import log


def _empty_result() -> Dict[str, Any]:
    return {'processed': 0, 'created': 0, 'updated': 0, 'failed': 0, 'failed_ids': []}


class MirrorStore:
    """SQLAlchemy-backed mirror of Shopify data and sync state"""

    def __init__(self, session_factory=None):
        self.session_factory = session_factory or SessionLocal

    @contextmanager
    def session(self):
        """Session that commits on success and rolls back on error"""
        db = self.session_factory()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Stores
    # ------------------------------------------------------------------

    def get_store(self, store_id: str) -> Optional[Store]:
        """Load a store detached from its session"""
        with self.session() as db:
            store = db.query(Store).filter(Store.id == store_id).first()
            if store is not None:
                db.expunge(store)
            return store

    def list_store_ids(self) -> List[str]:
        with self.session() as db:
            return [row.id for row in db.query(Store.id).order_by(Store.created_at, Store.id).all()]

    # ------------------------------------------------------------------
    # Sync status
    # ------------------------------------------------------------------

    def _get_or_create_status(self, db, store_id: str, data_type: str) -> SyncStatus:
        status = db.query(SyncStatus).filter(
            SyncStatus.store_id == store_id,
            SyncStatus.data_type == data_type
        ).first()

        if not status:
            status = SyncStatus(
                store_id=store_id,
                data_type=data_type,
                sync_in_progress=False,
                total_records=0
            )
            db.add(status)
            db.flush()

        return status

    def get_status(self, store_id: str, data_type: str) -> Optional[Dict[str, Any]]:
        with self.session() as db:
            status = db.query(SyncStatus).filter(
                SyncStatus.store_id == store_id,
                SyncStatus.data_type == data_type
            ).first()
            return status.to_dict() if status else None

    def list_statuses(self, store_id: Optional[str] = None, in_progress_only: bool = False) -> List[Dict[str, Any]]:
        with self.session() as db:
            query = db.query(SyncStatus)
            if store_id:
                query = query.filter(SyncStatus.store_id == store_id)
            if in_progress_only:
                query = query.filter(SyncStatus.sync_in_progress.is_(True))
            return [s.to_dict() for s in query.order_by(SyncStatus.store_id, SyncStatus.data_type).all()]

    def try_begin_sync(self, store_id: str, data_type: str, timeframe_days: int, now: Optional[datetime] = None) -> bool:
        """
        Check-and-set the in-progress flag.

        Returns False without writing anything when a run is already in
        progress. Otherwise marks the row running, clears the previous error,
        stores the window and writes the initial heartbeat.
        """
        now = now or datetime.utcnow()
        with self.session() as db:
            status = self._get_or_create_status(db, store_id, data_type)
            if status.sync_in_progress:
                return False

            status.sync_in_progress = True
            status.error_message = None
            status.timeframe_days = timeframe_days
            status.total_records = 0
            status.last_heartbeat = now
            return True

    def record_heartbeat(self, store_id: str, data_type: str, records_added: int, now: Optional[datetime] = None):
        """Written after every page"""
        with self.session() as db:
            status = self._get_or_create_status(db, store_id, data_type)
            status.last_heartbeat = now or datetime.utcnow()
            status.total_records = (status.total_records or 0) + records_added

    def complete_sync(self, store_id: str, data_type: str, now: Optional[datetime] = None):
        with self.session() as db:
            status = self._get_or_create_status(db, store_id, data_type)
            status.sync_in_progress = False
            status.last_sync_at = now or datetime.utcnow()
            status.last_heartbeat = None
            status.error_message = None

    def record_sync_error(self, store_id: str, data_type: str, message: str):
        """Record an error; sync_in_progress is left as-is for the detector"""
        with self.session() as db:
            status = self._get_or_create_status(db, store_id, data_type)
            status.error_message = message[:2000]

    def reset_stuck_status(self, store_id: str, data_type: str) -> bool:
        """
        Release a stuck row.

        Only the liveness fields change; last_sync_at and total_records keep
        their values.
        """
        with self.session() as db:
            status = db.query(SyncStatus).filter(
                SyncStatus.store_id == store_id,
                SyncStatus.data_type == data_type
            ).first()
            if not status or not status.sync_in_progress:
                return False

            status.sync_in_progress = False
            status.error_message = None
            status.last_heartbeat = None
            return True

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    def _parse_order(self, store_id: str, order_data: Dict) -> Dict[str, Any]:
        """Normalize one upstream order; raises ValueError when malformed"""
        if not order_data.get('id'):
            raise ValueError("order has no id")

        line_items = []
        for item in order_data.get('line_items') or []:
            if not item.get('id'):
                raise ValueError(f"line item without id on order {order_data['id']}")
            line_items.append({
                'shopify_line_item_id': int(item['id']),
                'shopify_product_id': int(item['product_id']) if item.get('product_id') else None,
                'shopify_variant_id': int(item['variant_id']) if item.get('variant_id') else None,
                'sku': item.get('sku') or None,
                'title': item.get('title'),
                'variant_title': item.get('variant_title'),
                'vendor': item.get('vendor'),
                'quantity': int(item.get('quantity') or 1),
                'price': to_decimal(item.get('price')),
                'total_discount': to_decimal(item.get('total_discount')),
            })

        shipping_lines = order_data.get('shipping_lines') or []
        total_shipping = sum(
            (to_decimal(line.get('price')) for line in shipping_lines),
            Decimal("0")
        )
        if not shipping_lines and order_data.get('total_shipping_price_set'):
            total_shipping = to_decimal(order_data['total_shipping_price_set'])

        return {
            'shopify_order_id': int(order_data['id']),
            'store_id': store_id,
            'order_number': order_data.get('order_number'),
            'order_name': order_data.get('name'),
            'email': order_data.get('email'),
            'financial_status': order_data.get('financial_status'),
            'fulfillment_status': order_data.get('fulfillment_status'),
            'currency': order_data.get('currency') or 'USD',
            'total_price': to_decimal(order_data.get('total_price')),
            'subtotal_price': to_decimal(order_data.get('subtotal_price')),
            'total_shipping': total_shipping,
            'total_tax': to_decimal(order_data.get('total_tax')),
            'total_discounts': to_decimal(order_data.get('total_discounts')),
            'tags': order_data.get('tags') or None,
            'created_at': parse_datetime(order_data.get('created_at')),
            'updated_at': parse_datetime(order_data.get('updated_at')),
            'processed_at': parse_datetime(order_data.get('processed_at')),
            'cancelled_at': parse_datetime(order_data.get('cancelled_at')),
            'line_items': line_items,
        }

    def upsert_orders(self, store_id: str, orders: Iterable[Dict]) -> Dict[str, Any]:
        """
        Upsert one page of orders by external id.

        Malformed records are skipped and reported in failed/failed_ids.
        total_refunds of an existing order is never overwritten here.

        Returns:
            Dict with keys: processed, created, updated, failed, failed_ids
        """
        result = _empty_result()
        now = datetime.utcnow()

        with self.session() as db:
            for order_data in orders:
                result['processed'] += 1
                try:
                    fields = self._parse_order(store_id, order_data)
                except (ValueError, TypeError, ArithmeticError) as e:
                    log.warning(f"Skipping malformed order {order_data.get('id')}: {e}")
                    result['failed'] += 1
                    result['failed_ids'].append(str(order_data.get('id')))
                    continue

                line_items = fields.pop('line_items')
                order = db.query(ShopifyOrder).filter(
                    ShopifyOrder.shopify_order_id == fields['shopify_order_id']
                ).first()

                if order:
                    result['updated'] += 1
                else:
                    order = ShopifyOrder(shopify_order_id=fields['shopify_order_id'], total_refunds=Decimal("0"))
                    db.add(order)
                    result['created'] += 1

                for key, value in fields.items():
                    setattr(order, key, value)
                order.last_synced_at = now

                # Replaced wholesale, delete-orphan removes the old rows
                order.line_items = [ShopifyLineItem(**item) for item in line_items]
                db.flush()

        return result

    def get_order(self, shopify_order_id: int) -> Optional[Dict[str, Any]]:
        with self.session() as db:
            order = db.query(ShopifyOrder).filter(
                ShopifyOrder.shopify_order_id == shopify_order_id
            ).first()
            if not order:
                return None
            return {
                'shopify_order_id': order.shopify_order_id,
                'store_id': order.store_id,
                'order_name': order.order_name,
                'financial_status': order.financial_status,
                'total_refunds': order.total_refunds or Decimal("0"),
                'refunds_reconciled_at': order.refunds_reconciled_at,
                'created_at': order.created_at,
            }

    def set_order_refunds(self, shopify_order_id: int, total: Decimal, now: Optional[datetime] = None) -> bool:
        """Replace the canonical total_refunds of one order"""
        with self.session() as db:
            order = db.query(ShopifyOrder).filter(
                ShopifyOrder.shopify_order_id == shopify_order_id
            ).first()
            if not order:
                return False
            order.total_refunds = total
            order.refunds_reconciled_at = now or datetime.utcnow()
            return True

    def list_refund_candidates(
        self,
        store_id: Optional[str] = None,
        since: Optional[datetime] = None,
        order_ids: Optional[List[int]] = None
    ) -> List[Dict[str, Any]]:
        """
        Orders flagged as potentially refunded.

        financial_status refunded/partially_refunded, or a non-zero stored
        total_refunds. Explicit order_ids bypass the flag filter.
        """
        with self.session() as db:
            query = db.query(
                ShopifyOrder.shopify_order_id,
                ShopifyOrder.order_name,
                ShopifyOrder.total_refunds
            )
            if store_id:
                query = query.filter(ShopifyOrder.store_id == store_id)
            if order_ids:
                query = query.filter(ShopifyOrder.shopify_order_id.in_(order_ids))
            else:
                query = query.filter(or_(
                    ShopifyOrder.financial_status.in_(REFUND_FINANCIAL_STATUSES),
                    ShopifyOrder.total_refunds > 0
                ))
            if since:
                query = query.filter(ShopifyOrder.created_at >= since)

            return [
                {
                    'shopify_order_id': row.shopify_order_id,
                    'order_name': row.order_name,
                    'total_refunds': row.total_refunds or Decimal("0"),
                }
                for row in query.order_by(ShopifyOrder.created_at.desc()).all()
            ]

    def count_orders_in_window(self, store_id: str, start: datetime, end: datetime) -> int:
        with self.session() as db:
            return db.query(func.count(ShopifyOrder.id)).filter(
                ShopifyOrder.store_id == store_id,
                ShopifyOrder.created_at >= start,
                ShopifyOrder.created_at <= end
            ).scalar() or 0

    def sum_total_refunds(self, store_id: str, start: datetime, end: datetime) -> Dict[str, Any]:
        """Aggregate persisted total_refunds over orders created in the window"""
        with self.session() as db:
            total, refunded_orders = db.query(
                func.coalesce(func.sum(ShopifyOrder.total_refunds), 0),
                func.count(ShopifyOrder.id)
            ).filter(
                ShopifyOrder.store_id == store_id,
                ShopifyOrder.created_at >= start,
                ShopifyOrder.created_at <= end,
                ShopifyOrder.total_refunds > 0
            ).one()

            return {
                'total_returns': to_decimal(total).quantize(Decimal("0.01")),
                'refunded_orders': refunded_orders or 0,
            }

    # ------------------------------------------------------------------
    # Products
    # ------------------------------------------------------------------

    def _parse_product(self, store_id: str, product_data: Dict) -> Dict[str, Any]:
        if not product_data.get('id'):
            raise ValueError("product has no id")

        variants = []
        for variant in product_data.get('variants') or []:
            if not variant.get('id'):
                raise ValueError(f"variant without id on product {product_data['id']}")
            inventory_item = variant.get('inventory_item') or {}
            upstream_cost = variant.get('cost', inventory_item.get('cost'))
            variants.append({
                'shopify_variant_id': int(variant['id']),
                'title': variant.get('title'),
                'sku': variant.get('sku') or None,
                'price': to_decimal(variant.get('price')),
                'compare_at_price': to_decimal(variant.get('compare_at_price'), default=None),
                'inventory_quantity': int(variant.get('inventory_quantity') or 0),
                'upstream_cost': to_decimal(upstream_cost, default=None),
            })

        return {
            'shopify_product_id': int(product_data['id']),
            'store_id': store_id,
            'handle': product_data.get('handle'),
            'title': product_data.get('title') or 'Unknown',
            'vendor': product_data.get('vendor'),
            'product_type': product_data.get('product_type'),
            'tags': product_data.get('tags') or None,
            'status': product_data.get('status'),
            'images': [img.get('src') for img in product_data.get('images') or [] if img.get('src')],
            'created_at': parse_datetime(product_data.get('created_at')),
            'shopify_updated_at': parse_datetime(product_data.get('updated_at')),
            'published_at': parse_datetime(product_data.get('published_at')),
            'variants': variants,
        }

    def upsert_products(self, store_id: str, products: Iterable[Dict]) -> Dict[str, Any]:
        """
        Upsert one page of products and their variants by external id.

        Variant cost is taken from upstream only when the stored cost is
        unset or SHOPIFY-sourced. MANUAL costs are left untouched.

        Returns:
            Dict with keys: processed, created, updated, failed, failed_ids
        """
        result = _empty_result()
        now = datetime.utcnow()

        with self.session() as db:
            for product_data in products:
                result['processed'] += 1
                try:
                    fields = self._parse_product(store_id, product_data)
                except (ValueError, TypeError, ArithmeticError) as e:
                    log.warning(f"Skipping malformed product {product_data.get('id')}: {e}")
                    result['failed'] += 1
                    result['failed_ids'].append(str(product_data.get('id')))
                    continue

                variants = fields.pop('variants')
                product = db.query(ShopifyProduct).filter(
                    ShopifyProduct.shopify_product_id == fields['shopify_product_id']
                ).first()

                if product:
                    result['updated'] += 1
                else:
                    product = ShopifyProduct(shopify_product_id=fields['shopify_product_id'])
                    db.add(product)
                    result['created'] += 1

                for key, value in fields.items():
                    setattr(product, key, value)
                product.updated_at = now
                product.last_synced_at = now

                for variant_fields in variants:
                    self._apply_variant(db, product, variant_fields, now)
                db.flush()

        return result

    def _apply_variant(self, db, product: ShopifyProduct, variant_fields: Dict[str, Any], now: datetime):
        upstream_cost = variant_fields.pop('upstream_cost')
        variant = db.query(ShopifyProductVariant).filter(
            ShopifyProductVariant.shopify_variant_id == variant_fields['shopify_variant_id']
        ).first()

        if not variant:
            variant = ShopifyProductVariant(shopify_variant_id=variant_fields['shopify_variant_id'])
            product.variants.append(variant)

        for key, value in variant_fields.items():
            setattr(variant, key, value)

        if upstream_cost is None:
            return

        if variant.cost is None or variant.cost_source == COST_SOURCE_SHOPIFY:
            if variant.cost != upstream_cost:
                variant.cost_last_updated = now
            variant.cost = upstream_cost
            variant.cost_source = COST_SOURCE_SHOPIFY

    def has_recent_changes(self, store_id: Optional[str] = None, hours: int = 24, now: Optional[datetime] = None) -> bool:
        """
        Whether any product, variant or variant cost changed locally in the
        last `hours`.
        """
        since = (now or datetime.utcnow()) - timedelta(hours=hours)

        with self.session() as db:
            product_query = db.query(ShopifyProduct.id).filter(ShopifyProduct.updated_at >= since)
            if store_id:
                product_query = product_query.filter(ShopifyProduct.store_id == store_id)
            if product_query.first() is not None:
                return True

            variant_query = db.query(ShopifyProductVariant.id).filter(or_(
                ShopifyProductVariant.updated_at >= since,
                ShopifyProductVariant.cost_last_updated >= since
            ))
            if store_id:
                variant_query = variant_query.join(
                    ShopifyProduct,
                    ShopifyProduct.shopify_product_id == ShopifyProductVariant.shopify_product_id
                ).filter(ShopifyProduct.store_id == store_id)
            return variant_query.first() is not None
