"""
Stuck-sync detection and recovery

A sync run has no cancellation channel: if the process dies mid-run its
SyncStatus row stays in progress forever. The detector releases such rows
using two rules:

1. Heartbeat timeout: in progress and the last heartbeat (or, without one,
   the last completed sync) is older than the threshold.
2. Completed-but-stuck (orders only): the local mirror already holds at least
   as many orders in the row's window as Shopify reports, yet the row is still
   in progress. If the upstream count cannot be fetched the row is treated as
   possibly stuck and released anyway.

Releasing a row only touches the liveness fields.
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Set

from shopmirror.config import get_settings
from shopmirror.connectors.shopify import ShopifyFetcher, DateWindow
from shopmirror.models import DATA_TYPE_ORDERS
from shopmirror.services.entity_sync import EntitySynchronizer
from shopmirror.services.mirror_store import MirrorStore
from shopmirror.utils.helpers import calculate_date_range, parse_datetime
from shopmirror.utils.logger import log

REASON_HEARTBEAT_TIMEOUT = "heartbeat_timeout"
REASON_COMPLETED_BUT_STUCK = "completed_but_stuck"
REASON_COUNT_UNAVAILABLE = "count_unavailable"


@dataclass
class CleanupReport:
    """Rows released by one detector pass"""
    cleaned_up: int = 0
    details: List[Dict] = field(default_factory=list)

    @property
    def message(self) -> str:
        if not self.cleaned_up:
            return "No stuck syncs found"
        return f"Successfully reset {self.cleaned_up} stuck sync(s)"

    def to_dict(self) -> dict:
        return {
            "success": True,
            "message": self.message,
            "cleaned_up": self.cleaned_up,
            "details": self.details,
        }


def _minutes_since(status: Dict, now: datetime) -> Optional[int]:
    reference = (
        parse_datetime(status.get("last_heartbeat"))
        or parse_datetime(status.get("last_sync_at"))
    )
    if reference is None:
        return None
    return int((now - reference).total_seconds() // 60)


def is_heartbeat_stale(status: Dict, threshold: datetime) -> bool:
    """Timeout rule for one in-progress SyncStatus dict"""
    if not status.get("sync_in_progress"):
        return False

    heartbeat = parse_datetime(status.get("last_heartbeat"))
    if heartbeat is not None:
        return heartbeat < threshold

    last_sync_at = parse_datetime(status.get("last_sync_at"))
    return last_sync_at is None or last_sync_at < threshold


class StuckSyncDetector:
    """Finds and releases SyncStatus rows left in progress by dead runs"""

    def __init__(
        self,
        mirror: Optional[MirrorStore] = None,
        fetcher_factory: Optional[Callable] = None,
        synchronizer: Optional[EntitySynchronizer] = None
    ):
        self.mirror = mirror or MirrorStore()
        self.fetcher_factory = fetcher_factory or ShopifyFetcher.from_store
        self.synchronizer = synchronizer or EntitySynchronizer(self.mirror, self.fetcher_factory)
        self._background_tasks: Set[asyncio.Task] = set()

    def find_stuck_syncs(self, threshold_minutes: Optional[int] = None, now: Optional[datetime] = None) -> List[Dict]:
        """Read-only listing of rows matching the timeout rule"""
        now = now or datetime.utcnow()
        threshold_minutes = threshold_minutes or get_settings().stuck_sync_timeout_minutes
        threshold = now - timedelta(minutes=threshold_minutes)

        stuck = []
        for status in self.mirror.list_statuses(in_progress_only=True):
            if is_heartbeat_stale(status, threshold):
                stuck.append({
                    **status,
                    "minutes_stuck": _minutes_since(status, now),
                })
        return stuck

    async def cleanup_stuck_syncs(
        self,
        threshold_minutes: Optional[int] = None,
        now: Optional[datetime] = None
    ) -> CleanupReport:
        """
        Release every stuck row. Idempotent; writes nothing when nothing is
        stuck.

        Args:
            threshold_minutes: Heartbeat staleness threshold
                (default: stuck_sync_timeout_minutes)
        """
        now = now or datetime.utcnow()
        threshold_minutes = threshold_minutes or get_settings().stuck_sync_timeout_minutes
        threshold = now - timedelta(minutes=threshold_minutes)
        report = CleanupReport()

        in_progress = self.mirror.list_statuses(in_progress_only=True)
        if not in_progress:
            log.debug("Sync cleanup: no syncs in progress")
            return report

        for status in in_progress:
            reason = None
            if is_heartbeat_stale(status, threshold):
                reason = REASON_HEARTBEAT_TIMEOUT
            elif status["data_type"] == DATA_TYPE_ORDERS:
                reason = await self._check_completion(status, now)

            if reason is None:
                continue

            minutes_stuck = _minutes_since(status, now)
            if self.mirror.reset_stuck_status(status["store_id"], status["data_type"]):
                log.warning(
                    f"Reset stuck {status['data_type']} sync for store {status['store_id']} "
                    f"({reason}, stuck for {minutes_stuck} minutes)"
                )
                report.cleaned_up += 1
                report.details.append({
                    "store_id": status["store_id"],
                    "data_type": status["data_type"],
                    "reason": reason,
                    "minutes_stuck": minutes_stuck,
                    "timeframe_days": status.get("timeframe_days"),
                })

        if report.cleaned_up:
            log.info(f"Sync cleanup: {report.message}")
        return report

    async def _check_completion(self, status: Dict, now: datetime) -> Optional[str]:
        """Completed-but-stuck rule for one in-progress orders row"""
        store_id = status["store_id"]
        days = status.get("timeframe_days") or get_settings().default_timeframe_days
        start, end = calculate_date_range(days, now=now)

        local_count = self.mirror.count_orders_in_window(store_id, start, end)

        fetcher = None
        try:
            fetcher = self.fetcher_factory(self.mirror.get_store(store_id))
            upstream_count = await fetcher.count_orders(DateWindow(start, end))
        except Exception as e:
            log.warning(f"Could not count Shopify orders for store {store_id}, treating sync as possibly stuck: {e}")
            return REASON_COUNT_UNAVAILABLE
        finally:
            if fetcher is not None:
                await fetcher.aclose()

        if local_count >= upstream_count:
            log.info(
                f"Orders sync for store {store_id} has {local_count}/{upstream_count} orders "
                f"but is still marked in progress"
            )
            return REASON_COMPLETED_BUT_STUCK

        return None

    async def resume_stuck_syncs(self, threshold_minutes: Optional[int] = None) -> List[Dict]:
        """
        Acute pass: release rows with a stale heartbeat and restart their
        orders sync in the background with the stored window.

        Returns:
            One entry per released orders row that was resumed
        """
        threshold_minutes = threshold_minutes or get_settings().stale_heartbeat_minutes
        now = datetime.utcnow()
        threshold = now - timedelta(minutes=threshold_minutes)

        resumed = []
        for status in self.mirror.list_statuses(in_progress_only=True):
            if not is_heartbeat_stale(status, threshold):
                continue

            if not self.mirror.reset_stuck_status(status["store_id"], status["data_type"]):
                continue

            if status["data_type"] != DATA_TYPE_ORDERS:
                log.info(f"Reset stuck {status['data_type']} sync for store {status['store_id']}")
                continue

            timeframe_days = status.get("timeframe_days") or get_settings().default_timeframe_days
            log.info(f"Resuming orders sync for store {status['store_id']} with {timeframe_days} days timeframe")

            task = asyncio.create_task(
                self.synchronizer.sync(status["store_id"], DATA_TYPE_ORDERS, timeframe_days)
            )
            self._background_tasks.add(task)
            task.add_done_callback(self._background_tasks.discard)

            resumed.append({
                "store_id": status["store_id"],
                "data_type": status["data_type"],
                "timeframe_days": timeframe_days,
                "status": "resumed",
            })

        return resumed

    async def wait_for_resumed(self):
        """Wait until every background resume has finished"""
        if self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)
