#!/usr/bin/env python3
"""
Reconcile order refunds against Shopify.

Recomputes total_refunds for every order flagged as potentially refunded
(financial_status refunded/partially_refunded, or a non-zero stored total)
from its Shopify refund records, then prints the store's total returns.

Usage:
    python scripts/reconcile_refunds.py [--store-id STORE] [--days 30] [--dry-run]
"""
import asyncio
import argparse
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from shopmirror.models.base import init_db
from shopmirror.services.refund_reconciliation import RefundReconciliationService


async def main(store_id: str = None, days: int = None, dry_run: bool = False) -> int:
    init_db()
    service = RefundReconciliationService()

    print(f"Reconciling refunds{' (dry run)' if dry_run else ''}...")
    report = await service.reconcile_orders(store_id=store_id, days=days, dry_run=dry_run)

    if report['error']:
        print(f"Error: {report['error']}")
        return 1

    for order in report['orders']:
        if not order['changed']:
            continue
        print(
            f"  {order['order_name'] or order['order_id']}: "
            f"${order['previous_total_refunds']:.2f} -> ${order['new_total_refunds']:.2f}"
        )

    components = report['components']
    print("\nSUMMARY")
    print(f"  Store:            {report['store_id']}")
    print(f"  Orders checked:   {report['orders_checked']}")
    print(f"  Orders changed:   {report['orders_updated']}")
    print(f"  Errors:           {report['errors']}")
    if report['stopped_early']:
        print("  Stopped early:    rate limited by Shopify")
    print(f"  Transactions:     ${components['transactions']:.2f}")
    print(f"  Shipping:         ${components['shipping']:.2f}")
    print(f"  Tax/return fees:  ${components['tax_adjustments']:.2f}")
    print(f"  Other:            ${components['other_adjustments']:.2f}")
    print(f"  Write-offs (excl):${components['excluded_write_offs']:.2f}")

    if not dry_run:
        totals = service.total_returns(report['store_id'], days)
        print(f"\nTotal returns ({totals['days']} days): ${totals['total_returns']:.2f} "
              f"across {totals['refunded_orders']} orders")

    return 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Reconcile Shopify order refunds into total_refunds")
    parser.add_argument("--store-id", default=None, help="Store to reconcile (default: first store)")
    parser.add_argument("--days", type=int, default=None, help="Only orders created in the last N days")
    parser.add_argument("--dry-run", action="store_true", help="Compute and print without writing")
    args = parser.parse_args()

    sys.exit(asyncio.run(main(args.store_id, args.days, args.dry_run)))
