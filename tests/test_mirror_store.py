"""
Mirror store tests: sync status lifecycle, refund candidates and change detection.
"""
from datetime import datetime, timedelta
from decimal import Decimal

STORE_ID = "store-1"


class TestSyncStatusLifecycle:

    def test_begin_heartbeat_complete(self, mirror):
        start = datetime(2024, 3, 1, 12, 0)

        assert mirror.try_begin_sync(STORE_ID, "orders", 30, now=start) is True
        assert mirror.try_begin_sync(STORE_ID, "orders", 30, now=start) is False

        mirror.record_heartbeat(STORE_ID, "orders", 250, now=start + timedelta(minutes=1))
        mirror.record_heartbeat(STORE_ID, "orders", 100, now=start + timedelta(minutes=2))
        running = mirror.get_status(STORE_ID, "orders")
        assert running['total_records'] == 350
        assert running['last_heartbeat'] == (start + timedelta(minutes=2)).isoformat()

        mirror.complete_sync(STORE_ID, "orders", now=start + timedelta(minutes=3))
        done = mirror.get_status(STORE_ID, "orders")
        assert done['sync_in_progress'] is False
        assert done['last_heartbeat'] is None
        assert done['last_sync_at'] == (start + timedelta(minutes=3)).isoformat()

    def test_new_run_resets_record_count(self, mirror):
        mirror.try_begin_sync(STORE_ID, "orders", 30)
        mirror.record_heartbeat(STORE_ID, "orders", 40)
        mirror.complete_sync(STORE_ID, "orders")

        mirror.try_begin_sync(STORE_ID, "orders", 7)

        status = mirror.get_status(STORE_ID, "orders")
        assert status['total_records'] == 0
        assert status['timeframe_days'] == 7

    def test_error_message_truncated(self, mirror):
        mirror.record_sync_error(STORE_ID, "products", "x" * 5000)

        assert len(mirror.get_status(STORE_ID, "products")['error_message']) == 2000

    def test_reset_only_touches_running_rows(self, mirror):
        assert mirror.reset_stuck_status(STORE_ID, "orders") is False

        mirror.try_begin_sync(STORE_ID, "orders", 30)
        assert mirror.reset_stuck_status(STORE_ID, "orders") is True
        assert mirror.get_status(STORE_ID, "orders")['sync_in_progress'] is False

    def test_list_statuses_in_progress_only(self, mirror):
        mirror.try_begin_sync(STORE_ID, "orders", 30)
        mirror.try_begin_sync(STORE_ID, "products", 30)
        mirror.complete_sync(STORE_ID, "products")

        running = mirror.list_statuses(in_progress_only=True)

        assert [s['data_type'] for s in running] == ["orders"]
        assert len(mirror.list_statuses(STORE_ID)) == 2


class TestRefundCandidates:

    def test_flagged_by_status_or_existing_total(self, mirror, order_payload):
        mirror.upsert_orders(STORE_ID, [
            order_payload(1001, "refunded"),
            order_payload(1002, "partially_refunded"),
            order_payload(1003, "paid"),
            order_payload(1004, "paid"),
        ])
        mirror.set_order_refunds(1004, Decimal("5.00"))

        ids = {o['shopify_order_id'] for o in mirror.list_refund_candidates(STORE_ID)}

        assert ids == {1001, 1002, 1004}

    def test_window_filters_old_orders(self, mirror, order_payload):
        mirror.upsert_orders(STORE_ID, [
            order_payload(1001, "refunded", days_ago=2),
            order_payload(1002, "refunded", days_ago=60),
        ])

        since = datetime.utcnow() - timedelta(days=30)
        ids = [o['shopify_order_id'] for o in mirror.list_refund_candidates(STORE_ID, since=since)]

        assert ids == [1001]


class TestRecentChanges:

    def test_fresh_product_sync_counts_as_change(self, mirror, product_payload):
        mirror.upsert_products(STORE_ID, [product_payload(1)])

        assert mirror.has_recent_changes(STORE_ID, hours=24) is True

    def test_nothing_inside_lookback(self, mirror, product_payload):
        mirror.upsert_products(STORE_ID, [product_payload(1)])

        later = datetime.utcnow() + timedelta(days=3)
        assert mirror.has_recent_changes(STORE_ID, hours=24, now=later) is False

    def test_empty_mirror(self, mirror):
        assert mirror.has_recent_changes(STORE_ID) is False

    def test_other_store_changes_ignored(self, mirror, product_payload):
        mirror.upsert_products("store-2", [product_payload(1)])

        assert mirror.has_recent_changes(STORE_ID) is False
        assert mirror.has_recent_changes() is True
