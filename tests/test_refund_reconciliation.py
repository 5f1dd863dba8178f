"""
Refund reconciliation tests.

The component fold is pure and tested without a database; the batch pass runs
against an in-memory mirror and the Shopify double from conftest.
"""
import asyncio
from decimal import Decimal

import pytest

from shopmirror.connectors.errors import RateLimitError, ShopifyAPIError
from shopmirror.services.refund_reconciliation import (
    OrderNotFoundError,
    RefundComponents,
    RefundReconciliationService,
    compute_refund_components,
)

STORE_ID = "store-1"
WRITE_OFFS = ["write_off", "debt_write_off"]


def _run(coro):
    """Run an async coroutine in a sync test."""
    return asyncio.run(coro)


def _refund(transactions=(), shipping=None, adjustments=()):
    refund = {
        "id": 1,
        "transactions": list(transactions),
        "order_adjustments": list(adjustments),
    }
    if shipping is not None:
        refund["shipping"] = shipping
    return refund


# Refund of $40 on the card, $5 shipping back, and a -$2.50 tax adjustment
EXAMPLE_REFUNDS = [
    _refund(
        transactions=[{"kind": "refund", "amount": "40.00", "status": "success"}],
        shipping={"amount": "5.00", "maximum_refundable": "10.00"},
        adjustments=[{"kind": "tax_adjustment", "amount": "-2.50"}],
    )
]


# ────────────────────────────────────────────
# COMPONENT FOLD
# ────────────────────────────────────────────


class TestComputeRefundComponents:

    def test_transactions_shipping_and_tax_example(self):
        components = compute_refund_components(EXAMPLE_REFUNDS, WRITE_OFFS)

        assert components.transactions_total == Decimal("40.00")
        assert components.shipping_total == Decimal("5.00")
        assert components.tax_adjustment_total == Decimal("2.50")
        assert components.other_adjustment_total == Decimal("0")
        assert components.total == Decimal("47.50")
        assert components.refund_count == 1

    def test_only_refund_and_void_transactions_count(self):
        refunds = [_refund(transactions=[
            {"kind": "refund", "amount": "10.00"},
            {"kind": "void", "amount": "3.00"},
            {"kind": "sale", "amount": "99.00"},
            {"kind": "capture", "amount": "50.00"},
        ])]

        assert compute_refund_components(refunds, WRITE_OFFS).transactions_total == Decimal("13.00")

    def test_zero_shipping_and_maximum_refundable_ignored(self):
        refunds = [
            _refund(shipping={"amount": "0.00", "maximum_refundable": "12.00"}),
            _refund(shipping={"amount": "-1.00"}),
        ]

        components = compute_refund_components(refunds, WRITE_OFFS)

        assert components.shipping_total == Decimal("0")
        assert components.total == Decimal("0.00")

    def test_return_fee_counts_as_absolute_value(self):
        refunds = [_refund(adjustments=[
            {"kind": "return_fee", "amount": "-4.00"},
            {"kind": "tax_adjustment", "amount": "1.20"},
        ])]

        assert compute_refund_components(refunds, WRITE_OFFS).tax_adjustment_total == Decimal("5.20")

    def test_write_offs_excluded_but_tracked(self):
        refunds = [_refund(adjustments=[
            {"kind": "write_off", "amount": "15.00"},
            {"kind": "debt_write_off", "amount": "-5.00"},
            {"kind": "refund_discrepancy", "amount": "3.00"},
            {"kind": "shipping_refund", "amount": "-7.00"},
        ])]

        components = compute_refund_components(refunds, WRITE_OFFS)

        assert components.excluded_write_off_total == Decimal("20.00")
        # Only the positive non-write-off adjustment counts
        assert components.other_adjustment_total == Decimal("3.00")
        assert components.total == Decimal("3.00")

    def test_write_off_kinds_are_configurable(self):
        refunds = [_refund(adjustments=[{"kind": "write_off", "amount": "15.00"}])]

        assert compute_refund_components(refunds, []).total == Decimal("15.00")

    def test_money_bag_amounts(self):
        refunds = [_refund(transactions=[
            {"kind": "refund", "amount_set": {"shop_money": {"amount": "12.34", "currency_code": "USD"}}},
        ])]

        assert compute_refund_components(refunds, WRITE_OFFS).total == Decimal("12.34")

    def test_unparseable_amount_counts_as_zero(self):
        refunds = [_refund(transactions=[
            {"kind": "refund", "amount": "not-a-number"},
            {"kind": "refund", "amount": "2.00"},
        ])]

        assert compute_refund_components(refunds, WRITE_OFFS).total == Decimal("2.00")

    def test_multiple_refund_records_accumulate(self):
        components = compute_refund_components(EXAMPLE_REFUNDS * 2, WRITE_OFFS)

        assert components.refund_count == 2
        assert components.total == Decimal("95.00")

    def test_no_refunds(self):
        assert compute_refund_components([], WRITE_OFFS) == RefundComponents()
        assert compute_refund_components(None, WRITE_OFFS).total == Decimal("0.00")


# ────────────────────────────────────────────
# RECONCILIATION PASS
# ────────────────────────────────────────────


def _service(mirror, fake_shopify):
    return RefundReconciliationService(
        mirror,
        fetcher_factory=fake_shopify.factory,
        call_delay=0,
        write_off_kinds=WRITE_OFFS
    )


class TestReconcileOrders:

    def test_replaces_total_refunds(self, mirror, fake_shopify, order_payload):
        mirror.upsert_orders(STORE_ID, [order_payload(1001, "refunded")])
        fake_shopify.refunds[1001] = EXAMPLE_REFUNDS

        report = _run(_service(mirror, fake_shopify).reconcile_orders(STORE_ID))

        assert report['success'] is True
        assert report['orders_checked'] == 1
        assert report['orders_updated'] == 1
        assert report['orders'][0]['new_total_refunds'] == 47.5
        assert report['components']['tax_adjustments'] == 2.5
        assert mirror.get_order(1001)['total_refunds'] == Decimal("47.50")
        assert mirror.get_order(1001)['refunds_reconciled_at'] is not None

    def test_idempotent(self, mirror, fake_shopify, order_payload):
        mirror.upsert_orders(STORE_ID, [order_payload(1001, "partially_refunded")])
        fake_shopify.refunds[1001] = EXAMPLE_REFUNDS
        service = _service(mirror, fake_shopify)

        _run(service.reconcile_orders(STORE_ID))
        second = _run(service.reconcile_orders(STORE_ID))

        assert second['orders_updated'] == 0
        assert mirror.get_order(1001)['total_refunds'] == Decimal("47.50")

    def test_only_flagged_orders_are_checked(self, mirror, fake_shopify, order_payload):
        mirror.upsert_orders(STORE_ID, [
            order_payload(1001, "refunded"),
            order_payload(1002, "paid"),
        ])

        report = _run(_service(mirror, fake_shopify).reconcile_orders(STORE_ID))

        assert report['orders_checked'] == 1
        assert ("get_order_refunds", 1002) not in fake_shopify.calls

    def test_failed_fetch_leaves_stored_value(self, mirror, fake_shopify, order_payload):
        mirror.upsert_orders(STORE_ID, [
            order_payload(1001, "refunded", days_ago=1),
            order_payload(1002, "refunded", days_ago=2),
        ])
        mirror.set_order_refunds(1001, Decimal("12.00"))
        fake_shopify.refunds[1001] = ShopifyAPIError("Shopify API error 500", status_code=500)
        fake_shopify.refunds[1002] = EXAMPLE_REFUNDS

        report = _run(_service(mirror, fake_shopify).reconcile_orders(STORE_ID))

        assert report['errors'] == 1
        assert report['orders_checked'] == 1
        assert mirror.get_order(1001)['total_refunds'] == Decimal("12.00")
        assert mirror.get_order(1002)['total_refunds'] == Decimal("47.50")

    def test_unreadable_refund_payload_skips_only_that_order(self, mirror, fake_shopify, order_payload):
        mirror.upsert_orders(STORE_ID, [
            order_payload(1001, "refunded", days_ago=1),
            order_payload(1002, "refunded", days_ago=2),
        ])
        mirror.set_order_refunds(1001, Decimal("3.00"))
        fake_shopify.refunds[1001] = ["garbage"]
        fake_shopify.refunds[1002] = [_refund(transactions=[{"kind": "refund", "amount": "10.00"}])]

        report = _run(_service(mirror, fake_shopify).reconcile_orders(STORE_ID))

        assert report['errors'] == 1
        assert report['orders_checked'] == 1
        assert mirror.get_order(1001)['total_refunds'] == Decimal("3.00")
        assert mirror.get_order(1002)['total_refunds'] == Decimal("10.00")

    def test_rate_limit_stops_batch(self, mirror, fake_shopify, order_payload):
        # Candidates are processed newest first
        mirror.upsert_orders(STORE_ID, [
            order_payload(1001, "refunded", days_ago=1),
            order_payload(1002, "refunded", days_ago=2),
            order_payload(1003, "refunded", days_ago=3),
        ])
        fake_shopify.refunds[1001] = EXAMPLE_REFUNDS
        fake_shopify.refunds[1002] = RateLimitError(retry_after=2.0)
        fake_shopify.refunds[1003] = EXAMPLE_REFUNDS

        report = _run(_service(mirror, fake_shopify).reconcile_orders(STORE_ID))

        assert report['stopped_early'] is True
        assert report['success'] is False
        assert mirror.get_order(1001)['total_refunds'] == Decimal("47.50")
        assert mirror.get_order(1003)['total_refunds'] == Decimal("0")
        assert ("get_order_refunds", 1003) not in fake_shopify.calls

    def test_dry_run_does_not_write(self, mirror, fake_shopify, order_payload):
        mirror.upsert_orders(STORE_ID, [order_payload(1001, "refunded")])
        fake_shopify.refunds[1001] = EXAMPLE_REFUNDS

        report = _run(_service(mirror, fake_shopify).reconcile_orders(STORE_ID, dry_run=True))

        assert report['orders'][0]['new_total_refunds'] == 47.5
        assert report['orders'][0]['changed'] is True
        assert mirror.get_order(1001)['total_refunds'] == Decimal("0")

    def test_explicit_order_ids_bypass_status_filter(self, mirror, fake_shopify, order_payload):
        mirror.upsert_orders(STORE_ID, [order_payload(1002, "paid")])
        fake_shopify.refunds[1002] = EXAMPLE_REFUNDS

        report = _run(_service(mirror, fake_shopify).reconcile_orders(STORE_ID, order_ids=[1002]))

        assert report['orders_checked'] == 1
        assert mirror.get_order(1002)['total_refunds'] == Decimal("47.50")

    def test_days_window_limits_candidates(self, mirror, fake_shopify, order_payload):
        mirror.upsert_orders(STORE_ID, [
            order_payload(1001, "refunded", days_ago=2),
            order_payload(1002, "refunded", days_ago=60),
        ])

        report = _run(_service(mirror, fake_shopify).reconcile_orders(STORE_ID, days=30))

        assert [o['order_id'] for o in report['orders']] == [1001]

    def test_missing_credentials_reported(self, mirror, fake_shopify, order_payload):
        from shopmirror.models import Store

        with mirror.session() as db:
            db.add(Store(id="store-2", domain="other.myshopify.com", access_token=None))
        mirror.upsert_orders("store-2", [order_payload(2001, "refunded")])

        report = _run(_service(mirror, fake_shopify).reconcile_orders("store-2"))

        assert report['success'] is False
        assert "credentials" in report['error']


class TestSingleOrder:

    def test_reconcile_order_refunds_returns_total(self, mirror, fake_shopify, order_payload):
        mirror.upsert_orders(STORE_ID, [order_payload(1001, "refunded")])
        fake_shopify.refunds[1001] = EXAMPLE_REFUNDS

        total = _run(_service(mirror, fake_shopify).reconcile_order_refunds(1001))

        assert total == Decimal("47.50")
        assert mirror.get_order(1001)['total_refunds'] == Decimal("47.50")

    def test_unknown_order(self, mirror, fake_shopify):
        with pytest.raises(OrderNotFoundError):
            _run(_service(mirror, fake_shopify).reconcile_order_refunds(999))

    def test_failed_fetch_raises_and_keeps_value(self, mirror, fake_shopify, order_payload):
        mirror.upsert_orders(STORE_ID, [order_payload(1001, "refunded")])
        mirror.set_order_refunds(1001, Decimal("8.00"))
        fake_shopify.refunds[1001] = ShopifyAPIError("Shopify API error 502", status_code=502)

        with pytest.raises(ShopifyAPIError):
            _run(_service(mirror, fake_shopify).reconcile_order(1001))

        assert mirror.get_order(1001)['total_refunds'] == Decimal("8.00")


class TestTotalReturns:

    def test_sums_persisted_refunds_in_window(self, mirror, fake_shopify, order_payload):
        mirror.upsert_orders(STORE_ID, [
            order_payload(1001, "refunded", days_ago=1),
            order_payload(1002, "partially_refunded", days_ago=5),
            order_payload(1003, "refunded", days_ago=90),
        ])
        mirror.set_order_refunds(1001, Decimal("47.50"))
        mirror.set_order_refunds(1002, Decimal("10.25"))
        mirror.set_order_refunds(1003, Decimal("100.00"))

        totals = _service(mirror, fake_shopify).total_returns(STORE_ID, days=30)

        assert totals['total_returns'] == 57.75
        assert totals['refunded_orders'] == 2
