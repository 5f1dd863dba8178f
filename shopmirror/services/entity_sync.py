"""
Entity Synchronizer

Pulls orders or products page by page from Shopify into the mirror,
heartbeating SyncStatus after every page so the stuck-sync detector can tell
a live run from a dead one.
"""
from dataclasses import dataclass, field, asdict
from typing import Callable, List, Optional

from shopmirror.config import get_settings
from shopmirror.connectors.errors import ConfigurationError, RateLimitError
from shopmirror.connectors.shopify import ShopifyFetcher, DateWindow
from shopmirror.models import DATA_TYPE_ORDERS, DATA_TYPE_PRODUCTS, DATA_TYPES
from shopmirror.services.mirror_store import MirrorStore
from shopmirror.services.sync_progress import ProgressReporter
from shopmirror.utils.helpers import calculate_date_range
from shopmirror.utils.logger import log

SKIPPED_IN_PROGRESS = "Sync already in progress"


@dataclass
class SyncOutcome:
    """Result of one synchronizer run"""
    store_id: str
    data_type: str
    records_processed: int = 0
    errors: List[str] = field(default_factory=list)
    success: bool = False
    stopped_early: bool = False
    skipped_reason: Optional[str] = None
    pages: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


class EntitySynchronizer:
    """
    Runs one (store, data type) sync.

    At most one run per (store, data type) is enforced by the check-and-set on
    SyncStatus. Errors are recorded on SyncStatus and returned in the outcome,
    never raised.
    """

    def __init__(
        self,
        mirror: Optional[MirrorStore] = None,
        fetcher_factory: Optional[Callable] = None,
        reporter: Optional[ProgressReporter] = None
    ):
        self.mirror = mirror or MirrorStore()
        self.fetcher_factory = fetcher_factory or ShopifyFetcher.from_store
        self.reporter = reporter or ProgressReporter()

    async def sync(
        self,
        store_id: str,
        data_type: str,
        timeframe_days: Optional[int] = None,
        reporter: Optional[ProgressReporter] = None
    ) -> SyncOutcome:
        """
        Sync one data type for one store

        Args:
            store_id: Store to sync
            data_type: "orders" or "products"
            timeframe_days: Order window on created_at; ignored for products
            reporter: Overrides the instance progress reporter for this run
        """
        if data_type not in DATA_TYPES:
            raise ValueError(f"Unknown data type: {data_type}")

        reporter = reporter or self.reporter
        timeframe_days = timeframe_days or get_settings().default_timeframe_days
        outcome = SyncOutcome(store_id=store_id, data_type=data_type)

        try:
            fetcher = self.fetcher_factory(self.mirror.get_store(store_id))
        except ConfigurationError as e:
            message = f"Configuration error: {e}"
            log.error(f"Cannot sync {data_type} for store {store_id}: {message}")
            self.mirror.record_sync_error(store_id, data_type, message)
            outcome.errors.append(message)
            return outcome

        try:
            if not self.mirror.try_begin_sync(store_id, data_type, timeframe_days):
                log.info(f"Skipping {data_type} sync for store {store_id}: already in progress")
                outcome.skipped_reason = SKIPPED_IN_PROGRESS
                return outcome

            reporter.start(store_id, data_type)
            log.info(f"Starting {data_type} sync for store {store_id} ({timeframe_days} days)")

            try:
                await self._run_pages(fetcher, outcome, timeframe_days, reporter)

                self.mirror.complete_sync(store_id, data_type)
                outcome.success = True
                reporter.finish(store_id, data_type, "completed")
                log.info(
                    f"{data_type.capitalize()} sync complete for store {store_id}: "
                    f"{outcome.records_processed} records in {outcome.pages} pages ({len(outcome.errors)} errors)"
                )

            except RateLimitError as e:
                message = f"Rate limited by Shopify after {outcome.pages} pages"
                if e.retry_after:
                    message += f" (retry after {e.retry_after:.0f}s)"
                log.warning(f"Stopping {data_type} sync for store {store_id} early: {message}")
                outcome.stopped_early = True
                outcome.errors.append(message)
                self.mirror.record_sync_error(store_id, data_type, message)
                reporter.finish(store_id, data_type, "stopped", error=message)

            except Exception as e:
                message = f"{type(e).__name__}: {e}"
                log.error(f"{data_type.capitalize()} sync failed for store {store_id}: {message}")
                outcome.errors.append(message)
                self.mirror.record_sync_error(store_id, data_type, message)
                reporter.finish(store_id, data_type, "failed", error=message)

            return outcome

        finally:
            await fetcher.aclose()

    async def _run_pages(self, fetcher, outcome: SyncOutcome, timeframe_days: int, reporter: ProgressReporter):
        store_id, data_type = outcome.store_id, outcome.data_type
        window = DateWindow(*calculate_date_range(timeframe_days))
        cursor = None

        while True:
            if data_type == DATA_TYPE_ORDERS:
                page = await fetcher.list_orders(window, cursor)
                result = self.mirror.upsert_orders(store_id, page.records)
            else:
                page = await fetcher.list_products(cursor)
                result = self.mirror.upsert_products(store_id, page.records)

            upserted = result['created'] + result['updated']
            outcome.pages += 1
            outcome.records_processed += upserted
            outcome.errors.extend(
                f"Skipped malformed {data_type[:-1]} {record_id}" for record_id in result['failed_ids']
            )

            self.mirror.record_heartbeat(store_id, data_type, upserted)
            reporter.update(
                store_id,
                data_type,
                outcome.records_processed,
                current=self._record_label(data_type, page.records[-1]) if page.records else None
            )

            cursor = page.next_cursor
            if not cursor:
                break

    @staticmethod
    def _record_label(data_type: str, record: dict) -> Optional[str]:
        if data_type == DATA_TYPE_PRODUCTS:
            return record.get('title') or str(record.get('id'))
        return record.get('name') or str(record.get('id'))
