"""
Refund Reconciliation Service

Shopify spreads what Analytics calls "returns" over several refund fragments:
refund transactions, refunded shipping and order-level adjustments. This
service fetches an order's refund records, folds them into one canonical
total and stores it as ShopifyOrder.total_refunds.

compute_refund_components() is the only place refunds are summed.
"""
import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional

from shopmirror.config import get_settings
from shopmirror.connectors.errors import ConfigurationError, RateLimitError
from shopmirror.connectors.shopify import ShopifyFetcher
from shopmirror.services.mirror_store import MirrorStore
from shopmirror.utils.helpers import calculate_date_range, to_decimal
from shopmirror.utils.logger import log

REFUND_TRANSACTION_KINDS = ("refund", "void")
ABSOLUTE_ADJUSTMENT_KINDS = ("tax_adjustment", "return_fee")

ZERO = Decimal("0")
CENTS = Decimal("0.01")


class OrderNotFoundError(LookupError):
    """Order is not in the local mirror"""


@dataclass
class RefundComponents:
    """Per-component breakdown of one order's (or a batch's) refunds"""
    transactions_total: Decimal = ZERO
    shipping_total: Decimal = ZERO
    tax_adjustment_total: Decimal = ZERO
    other_adjustment_total: Decimal = ZERO
    refund_count: int = 0
    excluded_write_off_total: Decimal = ZERO

    @property
    def total(self) -> Decimal:
        return (
            self.transactions_total
            + self.shipping_total
            + self.tax_adjustment_total
            + self.other_adjustment_total
        ).quantize(CENTS)

    def __add__(self, other: "RefundComponents") -> "RefundComponents":
        return RefundComponents(
            transactions_total=self.transactions_total + other.transactions_total,
            shipping_total=self.shipping_total + other.shipping_total,
            tax_adjustment_total=self.tax_adjustment_total + other.tax_adjustment_total,
            other_adjustment_total=self.other_adjustment_total + other.other_adjustment_total,
            refund_count=self.refund_count + other.refund_count,
            excluded_write_off_total=self.excluded_write_off_total + other.excluded_write_off_total,
        )

    def to_dict(self) -> dict:
        return {
            "transactions": float(self.transactions_total),
            "shipping": float(self.shipping_total),
            "tax_adjustments": float(self.tax_adjustment_total),
            "other_adjustments": float(self.other_adjustment_total),
            "excluded_write_offs": float(self.excluded_write_off_total),
            "refund_count": self.refund_count,
            "total": float(self.total),
        }


def _amount(item: Dict[str, Any], label: str) -> Decimal:
    """Signed amount of a transaction, shipping or adjustment fragment"""
    raw = item.get("amount")
    if raw is None:
        raw = item.get("amount_set")

    value = to_decimal(raw, default=None)
    if value is None:
        if raw not in (None, ""):
            log.warning(f"Unparseable {label} amount {raw!r}, counting as 0")
        return ZERO
    return value


def compute_refund_components(
    refunds: Iterable[Dict[str, Any]],
    write_off_kinds: Optional[Iterable[str]] = None
) -> RefundComponents:
    """
    Fold refund records into components.

    Per refund record:
      1. transactions of kind refund/void: amount as-is
      2. refund.shipping.amount when positive
      3. order adjustments of kind tax_adjustment/return_fee: absolute amount
      4. any other adjustment with a positive amount, unless its kind is a
         write-off (those are tracked in excluded_write_off_total)
    """
    if write_off_kinds is None:
        write_off_kinds = get_settings().write_off_kinds
    write_off_kinds = set(write_off_kinds)

    components = RefundComponents()

    for refund in refunds or []:
        components.refund_count += 1

        for transaction in refund.get("transactions") or []:
            if transaction.get("kind") in REFUND_TRANSACTION_KINDS:
                components.transactions_total += _amount(transaction, "transaction")

        shipping = refund.get("shipping") or {}
        shipping_amount = _amount(shipping, "shipping")
        if shipping_amount > 0:
            components.shipping_total += shipping_amount

        for adjustment in refund.get("order_adjustments") or []:
            kind = adjustment.get("kind")
            amount = _amount(adjustment, f"{kind} adjustment")

            if kind in ABSOLUTE_ADJUSTMENT_KINDS:
                components.tax_adjustment_total += abs(amount)
            elif kind in write_off_kinds:
                components.excluded_write_off_total += abs(amount)
            elif amount > 0:
                components.other_adjustment_total += amount

    return components


class RefundReconciliationService:
    """Recomputes ShopifyOrder.total_refunds from Shopify refund records"""

    def __init__(
        self,
        mirror: Optional[MirrorStore] = None,
        fetcher_factory: Optional[Callable] = None,
        call_delay: Optional[float] = None,
        write_off_kinds: Optional[List[str]] = None
    ):
        settings = get_settings()
        self.mirror = mirror or MirrorStore()
        self.fetcher_factory = fetcher_factory or ShopifyFetcher.from_store
        self.call_delay = settings.refund_call_delay_seconds if call_delay is None else call_delay
        self.write_off_kinds = write_off_kinds if write_off_kinds is not None else settings.write_off_kinds

    def _resolve_store_id(self, store_id: Optional[str]) -> Optional[str]:
        if store_id:
            return store_id
        default_store_id = get_settings().default_store_id
        if default_store_id:
            return default_store_id
        store_ids = self.mirror.list_store_ids()
        return store_ids[0] if store_ids else None

    async def _reconcile_single(self, order_id: int, dry_run: bool = False):
        """
        Fetch, fold and (unless dry_run) store one order's refunds.

        Raises:
            OrderNotFoundError: order is not mirrored
            ConfigurationError: store credentials missing
            ShopifyAPIError: refund fetch failed (stored value untouched)
        """
        order = self.mirror.get_order(order_id)
        if not order:
            raise OrderNotFoundError(f"Order {order_id} not found")

        fetcher = self.fetcher_factory(self.mirror.get_store(order['store_id']))
        try:
            refunds = await fetcher.get_order_refunds(order_id)
        finally:
            await fetcher.aclose()

        components = compute_refund_components(refunds, self.write_off_kinds)
        if not dry_run:
            self.mirror.set_order_refunds(order_id, components.total)

        return order, components

    async def reconcile_order(self, order_id: int, dry_run: bool = False) -> Dict[str, Any]:
        """Reconcile one order and return its per-component breakdown"""
        order, components = await self._reconcile_single(order_id, dry_run=dry_run)
        return self._order_result(order, components)

    async def reconcile_order_refunds(self, order_id: int) -> Decimal:
        """Reconcile one order; returns the new canonical total_refunds"""
        _, components = await self._reconcile_single(order_id)
        return components.total

    async def reconcile_orders(
        self,
        store_id: Optional[str] = None,
        days: Optional[int] = None,
        order_ids: Optional[List[int]] = None,
        dry_run: bool = False
    ) -> Dict[str, Any]:
        """
        Batch pass over orders flagged as potentially refunded.

        A failed fetch or an unreadable refund payload is logged and leaves
        that order's stored value as-is.
        A rate limit stops the batch early; orders already reconciled keep
        their new values.

        Args:
            store_id: Store to reconcile (default: configured/first store)
            days: Only orders created in the last N days
            order_ids: Explicit orders, bypasses the refunded-status filter
            dry_run: Compute and report without writing
        """
        report = {
            'success': False,
            'store_id': None,
            'dry_run': dry_run,
            'orders_checked': 0,
            'orders_updated': 0,
            'errors': 0,
            'stopped_early': False,
            'error': None,
            'components': RefundComponents().to_dict(),
            'orders': [],
        }

        store_id = self._resolve_store_id(store_id)
        report['store_id'] = store_id
        if not store_id:
            report['error'] = "No store configured"
            return report

        since = datetime.utcnow() - timedelta(days=days) if days else None
        candidates = self.mirror.list_refund_candidates(store_id, since=since, order_ids=order_ids)
        log.info(f"Reconciling refunds for {len(candidates)} orders (store {store_id}, dry_run={dry_run})")

        if not candidates:
            report['success'] = True
            return report

        try:
            fetcher = self.fetcher_factory(self.mirror.get_store(store_id))
        except ConfigurationError as e:
            log.error(f"Cannot reconcile refunds for store {store_id}: {e}")
            report['error'] = str(e)
            return report

        batch_components = RefundComponents()
        try:
            for index, order in enumerate(candidates):
                if index and self.call_delay:
                    await asyncio.sleep(self.call_delay)

                order_id = order['shopify_order_id']
                try:
                    refunds = await fetcher.get_order_refunds(order_id)
                    components = compute_refund_components(refunds, self.write_off_kinds)
                except RateLimitError:
                    log.warning(f"Rate limited after {report['orders_checked']} orders, stopping refund reconciliation")
                    report['stopped_early'] = True
                    break
                except Exception as e:
                    log.error(f"Error reconciling refunds for order {order.get('order_name') or order_id}: {e}")
                    report['errors'] += 1
                    continue

                result = self._order_result(order, components)
                report['orders_checked'] += 1
                batch_components = batch_components + components

                if result['changed']:
                    report['orders_updated'] += 1
                    log.info(
                        f"Order {order.get('order_name') or order_id}: "
                        f"{result['previous_total_refunds']:.2f} -> {result['new_total_refunds']:.2f}"
                    )

                if not dry_run:
                    self.mirror.set_order_refunds(order_id, components.total)

                report['orders'].append(result)
        finally:
            await fetcher.aclose()

        report['components'] = batch_components.to_dict()
        report['success'] = not report['stopped_early']
        log.info(
            f"Refund reconciliation done: {report['orders_checked']} checked, "
            f"{report['orders_updated']} changed, {report['errors']} errors"
        )
        return report

    def total_returns(self, store_id: Optional[str] = None, days: Optional[int] = None) -> Dict[str, Any]:
        """Store-wide sum of persisted total_refunds over orders created in the window"""
        store_id = self._resolve_store_id(store_id)
        days = days or get_settings().default_timeframe_days
        start, end = calculate_date_range(days)

        if not store_id:
            return {'store_id': None, 'days': days, 'total_returns': 0.0, 'refunded_orders': 0}

        totals = self.mirror.sum_total_refunds(store_id, start, end)
        return {
            'store_id': store_id,
            'days': days,
            'start_date': start.isoformat(),
            'end_date': end.isoformat(),
            'total_returns': float(totals['total_returns']),
            'refunded_orders': totals['refunded_orders'],
        }

    @staticmethod
    def _order_result(order: Dict[str, Any], components: RefundComponents) -> Dict[str, Any]:
        previous = to_decimal(order.get('total_refunds'))
        return {
            'order_id': order['shopify_order_id'],
            'order_name': order.get('order_name'),
            'previous_total_refunds': float(previous),
            'new_total_refunds': float(components.total),
            'changed': previous.quantize(CENTS) != components.total,
            'components': components.to_dict(),
        }
