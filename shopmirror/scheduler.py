"""
Scheduler for the daily auto-sync and the stuck-sync sweep

Uses APScheduler. The daily sync is a single-shot DateTrigger job that re-arms
itself for the next day after every run, whatever the outcome. The reference
time is a fixed UTC offset (06:00 at UTC-6 by default, i.e. 12:00 UTC) with
no daylight saving.
"""
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger
from datetime import datetime, timedelta, timezone
import asyncio
from typing import Optional

from shopmirror.config import get_settings
from shopmirror.services.mirror_store import MirrorStore
from shopmirror.services.sync_cleanup import StuckSyncDetector
from shopmirror.services.sync_service import SyncService
from shopmirror.utils.logger import log

settings = get_settings()

DAILY_SYNC_JOB_ID = "daily_auto_sync"
CLEANUP_JOB_ID = "stuck_sync_cleanup"


def reference_timezone(offset_hours: Optional[int] = None) -> timezone:
    """Fixed-offset zone the daily trigger is expressed in"""
    if offset_hours is None:
        offset_hours = settings.auto_sync_utc_offset_hours
    return timezone(timedelta(hours=offset_hours))


def next_trigger_instant(
    now: Optional[datetime] = None,
    hour: Optional[int] = None,
    minute: Optional[int] = None,
    offset_hours: Optional[int] = None
) -> datetime:
    """
    Next daily trigger instant after `now`.

    Today's fixed instant if it is still in the future, else tomorrow's.
    Naive `now` values are taken as UTC.
    """
    tz = reference_timezone(offset_hours)
    hour = settings.auto_sync_hour if hour is None else hour
    minute = settings.auto_sync_minute if minute is None else minute

    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    local_now = now.astimezone(tz)
    candidate = local_now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if candidate <= local_now:
        candidate += timedelta(days=1)
    return candidate


class DailySyncScheduler:
    """
    Daily auto-sync plus the periodic stuck-sync sweep.

    Auto syncs skip the product catalog and are skipped entirely when nothing
    changed locally in the lookback window.
    """

    def __init__(
        self,
        sync_service: Optional[SyncService] = None,
        detector: Optional[StuckSyncDetector] = None,
        mirror: Optional[MirrorStore] = None,
        scheduler: Optional[AsyncIOScheduler] = None
    ):
        self.mirror = mirror or MirrorStore()
        self.sync_service = sync_service or SyncService(self.mirror)
        self.detector = detector or StuckSyncDetector(
            self.mirror,
            self.sync_service.synchronizer.fetcher_factory,
            synchronizer=self.sync_service.synchronizer
        )
        self.scheduler = scheduler or AsyncIOScheduler(timezone=timezone.utc)
        self.next_run_time: Optional[datetime] = None

    @property
    def is_running(self) -> bool:
        return self.scheduler.running

    def start(self):
        """Arm the daily job, add the cleanup sweep and start the scheduler"""
        if self.is_running:
            log.info("Scheduler already running")
            return

        self.schedule_next_sync()

        self.scheduler.add_job(
            self.run_cleanup,
            trigger=IntervalTrigger(minutes=settings.cleanup_interval_minutes),
            id=CLEANUP_JOB_ID,
            name='Stuck Sync Cleanup',
            replace_existing=True,
            max_instances=1
        )

        self.scheduler.start()
        log.info(
            f"Scheduler started (daily sync at {settings.auto_sync_hour:02d}:{settings.auto_sync_minute:02d} "
            f"UTC{settings.auto_sync_utc_offset_hours:+d}, cleanup every {settings.cleanup_interval_minutes} min)"
        )

    def stop(self):
        if self.is_running:
            self.scheduler.shutdown(wait=False)
            log.info("Scheduler stopped")

    def get_next_run_time(self) -> Optional[datetime]:
        return self.next_run_time

    def schedule_next_sync(self, now: Optional[datetime] = None) -> datetime:
        """Arm the single-shot daily job for the next trigger instant"""
        run_at = next_trigger_instant(now)
        self.scheduler.add_job(
            self.run_daily_sync,
            trigger=DateTrigger(run_date=run_at),
            id=DAILY_SYNC_JOB_ID,
            name='Daily Auto Sync',
            replace_existing=True,
            max_instances=1
        )
        self.next_run_time = run_at

        hours_until = (run_at - datetime.now(timezone.utc)).total_seconds() / 3600
        log.info(f"Next auto sync scheduled for {run_at.isoformat()} (in {hours_until:.0f} hours)")
        return run_at

    def has_recent_changes(self, store_id: Optional[str] = None) -> bool:
        """Recent local changes; a failing check counts as changes present"""
        try:
            return self.mirror.has_recent_changes(store_id, hours=settings.change_lookback_hours)
        except Exception as e:
            log.error(f"Error checking for recent changes, assuming there are some: {e}")
            return True

    async def run_daily_sync(self):
        """Daily job body; always re-arms for the next day"""
        try:
            store_id = self.sync_service.resolve_store_id()

            if not self.has_recent_changes(store_id):
                log.info(f"Auto sync skipped: no changes in the last {settings.change_lookback_hours} hours")
                return

            log.info("Auto sync proceeding: recent changes detected")
            result = await self.sync_service.trigger(
                store_id=store_id,
                data_type="all",
                trigger_reason="Daily auto-sync",
                trigger_source="scheduler",
                skip_products=True
            )
            log.info(f"Auto sync finished: {list(result.get('results', {}).keys())}")

        except Exception as e:
            log.error(f"Error running auto sync: {e}")
        finally:
            self.schedule_next_sync()

    async def run_cleanup(self):
        try:
            await self.detector.cleanup_stuck_syncs()
        except Exception as e:
            log.error(f"Stuck sync cleanup failed: {e}")

    def get_scheduled_jobs(self) -> list:
        """
        Get list of all scheduled jobs

        Returns:
            List of job info dicts
        """
        jobs = []

        for job in self.scheduler.get_jobs():
            next_run = getattr(job, 'next_run_time', None)
            if next_run is None and job.id == DAILY_SYNC_JOB_ID:
                next_run = self.next_run_time

            jobs.append({
                'id': job.id,
                'name': job.name,
                'next_run': next_run.isoformat() if next_run else None,
                'trigger': str(job.trigger)
            })

        return jobs


_daily_scheduler: Optional[DailySyncScheduler] = None


def get_daily_scheduler(sync_service: Optional[SyncService] = None) -> DailySyncScheduler:
    """Process-wide scheduler; the first caller may hand it the SyncService to drive"""
    global _daily_scheduler
    if _daily_scheduler is None:
        _daily_scheduler = DailySyncScheduler(
            sync_service=sync_service,
            mirror=sync_service.mirror if sync_service else None
        )
    return _daily_scheduler


def start_scheduler(sync_service: Optional[SyncService] = None):
    """Start the scheduler"""
    get_daily_scheduler(sync_service).start()


def stop_scheduler():
    """Stop the scheduler"""
    if _daily_scheduler is not None:
        _daily_scheduler.stop()


async def _serve_forever():
    start_scheduler()
    try:
        while True:
            await asyncio.sleep(3600)
    finally:
        stop_scheduler()


# CLI

if __name__ == "__main__":
    import sys

    if len(sys.argv) < 2:
        print("Usage: python -m shopmirror.scheduler <command>")
        print("\nCommands:")
        print("  start     Start the scheduler")
        print("  list      Show scheduled jobs and the next auto sync time")
        print("  cleanup   Run the stuck-sync sweep once")
        sys.exit(1)

    command = sys.argv[1]

    if command == "start":
        from shopmirror.models.base import init_db
        init_db()
        print("Starting scheduler...")
        try:
            asyncio.run(_serve_forever())
        except (KeyboardInterrupt, SystemExit):
            print("\nShutting down scheduler...")

    elif command == "list":
        daily = get_daily_scheduler()
        daily.schedule_next_sync()
        print("\nScheduled Jobs:")
        print("-" * 80)
        for job in daily.get_scheduled_jobs():
            print(f"\nID:       {job['id']}")
            print(f"Name:     {job['name']}")
            print(f"Next Run: {job['next_run']}")
            print(f"Trigger:  {job['trigger']}")

    elif command == "cleanup":
        from shopmirror.models.base import init_db
        init_db()
        report = asyncio.run(get_daily_scheduler().detector.cleanup_stuck_syncs())
        print(report.message)
        for detail in report.details:
            print(f"  - {detail['data_type']} for store {detail['store_id']}: "
                  f"{detail['reason']} ({detail['minutes_stuck']} minutes)")

    else:
        print(f"Unknown command: {command}")
        sys.exit(1)
