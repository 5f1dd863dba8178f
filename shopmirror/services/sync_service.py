"""
Sync trigger and status surface

Entry point used by the HTTP routes, the scheduler and the CLI. Runs the
entity synchronizer per data type, optionally follows an orders sync with a
refund reconciliation pass, and reports persisted plus in-flight state.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from shopmirror.config import get_settings
from shopmirror.models import DATA_TYPE_ORDERS, DATA_TYPE_PRODUCTS, DATA_TYPES
from shopmirror.services.entity_sync import EntitySynchronizer
from shopmirror.services.mirror_store import MirrorStore
from shopmirror.services.refund_reconciliation import RefundReconciliationService
from shopmirror.services.sync_progress import InMemoryProgressReporter, ProgressReporter
from shopmirror.utils.logger import log

settings = get_settings()


class SyncService:
    """Triggers syncs and reports their state"""

    def __init__(
        self,
        mirror: Optional[MirrorStore] = None,
        synchronizer: Optional[EntitySynchronizer] = None,
        reconciler: Optional[RefundReconciliationService] = None,
        reporter: Optional[ProgressReporter] = None
    ):
        self.mirror = mirror or MirrorStore()
        self.reporter = reporter or InMemoryProgressReporter()
        self.synchronizer = synchronizer or EntitySynchronizer(self.mirror, reporter=self.reporter)
        self.reconciler = reconciler or RefundReconciliationService(
            self.mirror, fetcher_factory=self.synchronizer.fetcher_factory
        )

    def resolve_store_id(self, store_id: Optional[str] = None) -> Optional[str]:
        """Explicit store, else the configured default, else the first store"""
        if store_id:
            return store_id
        if settings.default_store_id:
            return settings.default_store_id
        store_ids = self.mirror.list_store_ids()
        return store_ids[0] if store_ids else None

    @staticmethod
    def data_types_for(data_type: str, skip_products: bool = False) -> List[str]:
        if data_type == "all":
            types = list(DATA_TYPES)
        elif data_type in DATA_TYPES:
            types = [data_type]
        else:
            raise ValueError(f"Unknown data type: {data_type}")

        if skip_products:
            types = [t for t in types if t != DATA_TYPE_PRODUCTS]
        return types

    async def trigger(
        self,
        store_id: Optional[str] = None,
        data_type: str = "all",
        timeframe_days: Optional[int] = None,
        trigger_reason: Optional[str] = None,
        trigger_source: str = "manual",
        skip_products: bool = False
    ) -> Dict[str, Any]:
        """
        Run a sync for one store

        Args:
            store_id: Store to sync (default: configured/first store)
            data_type: "orders", "products" or "all"
            timeframe_days: Orders window
            trigger_reason: Free text recorded in the logs
            trigger_source: manual, scheduler, api, cli
            skip_products: Skip the product catalog (auto syncs only)

        Returns:
            Per data type outcome summary
        """
        data_types = self.data_types_for(data_type, skip_products)
        timeframe_days = timeframe_days or settings.default_timeframe_days
        store_id = self.resolve_store_id(store_id)

        summary = {
            'store_id': store_id,
            'data_type': data_type,
            'timeframe_days': timeframe_days,
            'trigger_source': trigger_source,
            'trigger_reason': trigger_reason,
            'skip_products': skip_products,
            'started_at': datetime.utcnow().isoformat(),
            'results': {},
        }

        if not store_id:
            log.error("Sync trigger ignored: no store configured")
            summary['error'] = "No store configured"
            summary['completed_at'] = datetime.utcnow().isoformat()
            return summary

        log.info(
            f"Sync triggered by {trigger_source} for store {store_id}: {', '.join(data_types)} "
            f"({timeframe_days} days){' - ' + trigger_reason if trigger_reason else ''}"
        )

        for entity in data_types:
            outcome = await self.synchronizer.sync(store_id, entity, timeframe_days)
            summary['results'][entity] = outcome.to_dict()

            if (
                entity == DATA_TYPE_ORDERS
                and outcome.success
                and settings.reconcile_refunds_after_sync
            ):
                refunds = await self.reconciler.reconcile_orders(store_id, days=timeframe_days)
                summary['refunds'] = {
                    key: refunds[key]
                    for key in ('success', 'orders_checked', 'orders_updated', 'errors', 'stopped_early', 'components')
                }

        summary['completed_at'] = datetime.utcnow().isoformat()
        return summary

    def get_status(self, store_id: Optional[str] = None) -> Dict[str, Any]:
        """Persisted SyncStatus per data type plus in-flight progress"""
        store_id = self.resolve_store_id(store_id)
        status = {'store_id': store_id, 'data_types': {}}
        if not store_id:
            return status

        for entity in DATA_TYPES:
            row = self.mirror.get_status(store_id, entity) or {
                'sync_in_progress': False,
                'last_sync_at': None,
                'last_heartbeat': None,
                'total_records': 0,
                'timeframe_days': None,
                'error_message': None,
            }
            status['data_types'][entity] = {
                'sync_in_progress': row['sync_in_progress'],
                'last_sync_at': row['last_sync_at'],
                'last_heartbeat': row['last_heartbeat'],
                'total_records': row['total_records'],
                'timeframe_days': row['timeframe_days'],
                'error_message': row['error_message'],
                'progress': self.reporter.get(store_id, entity),
            }

        return status
