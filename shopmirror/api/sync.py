"""
Data synchronization endpoints
"""
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from typing import Optional
import secrets

from shopmirror.config import get_settings
from shopmirror.services.sync_cleanup import StuckSyncDetector
from shopmirror.services.sync_service import SyncService
from shopmirror.utils.logger import log

router = APIRouter(prefix="/sync", tags=["sync"])

settings = get_settings()

# Lazy-init so importing the router doesn't touch the database
_sync_service: Optional[SyncService] = None
_detector: Optional[StuckSyncDetector] = None


def configure_sync_service(service: SyncService):
    """Install the app-wide SyncService (built in the app lifespan)"""
    global _sync_service, _detector
    _sync_service = service
    _detector = None


def get_sync_service() -> SyncService:
    global _sync_service
    if _sync_service is None:
        _sync_service = SyncService()
    return _sync_service


def get_detector() -> StuckSyncDetector:
    global _detector
    if _detector is None:
        service = get_sync_service()
        _detector = StuckSyncDetector(service.mirror, synchronizer=service.synchronizer)
    return _detector


async def _run_sync(service: SyncService, **kwargs):
    """Background task: run a triggered sync."""
    try:
        result = await service.trigger(**kwargs)
        log.info(f"Background sync completed for store {result.get('store_id')}: {list(result['results'].keys())}")
    except Exception as e:
        log.error(f"Background sync error: {str(e)}")


@router.post("")
async def trigger_sync(
    background_tasks: BackgroundTasks,
    store_id: Optional[str] = Query(None, description="Store to sync (default: first store)"),
    data_type: str = Query("all", description="orders, products or all"),
    days: Optional[int] = Query(None, description="Orders window in days", ge=1, le=730),
    trigger_reason: Optional[str] = Query(None),
    trigger_source: str = Query("api"),
    background: bool = Query(True, description="Return immediately and sync in background"),
    service: SyncService = Depends(get_sync_service)
):
    """
    Trigger a manual sync. Manual syncs never skip products.
    Check progress at GET /sync/status
    """
    try:
        service.data_types_for(data_type)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    kwargs = dict(
        store_id=store_id,
        data_type=data_type,
        timeframe_days=days,
        trigger_reason=trigger_reason,
        trigger_source=trigger_source,
        skip_products=False
    )

    try:
        if background:
            background_tasks.add_task(_run_sync, service, **kwargs)
            return {
                "message": "Sync started in background",
                "store_id": service.resolve_store_id(store_id),
                "data_type": data_type,
                "days": days or settings.default_timeframe_days,
                "check_progress": "/sync/status",
            }

        return await service.trigger(**kwargs)

    except Exception as e:
        log.error(f"Error triggering sync: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/status")
async def get_sync_status(
    store_id: Optional[str] = Query(None),
    service: SyncService = Depends(get_sync_service)
):
    """Persisted sync state per data type plus in-flight progress"""
    try:
        return service.get_status(store_id)
    except Exception as e:
        log.error(f"Error getting sync status: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/cleanup")
async def cleanup_stuck_syncs(
    threshold_minutes: Optional[int] = Query(None, ge=1, description="Heartbeat staleness threshold"),
    detector: StuckSyncDetector = Depends(get_detector)
):
    """Reset syncs stuck in progress"""
    try:
        report = await detector.cleanup_stuck_syncs(threshold_minutes)
        return report.to_dict()
    except Exception as e:
        log.error(f"Error cleaning up stuck syncs: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/cleanup")
async def list_stuck_syncs(
    threshold_minutes: Optional[int] = Query(None, ge=1),
    detector: StuckSyncDetector = Depends(get_detector)
):
    """List syncs that look stuck without changing anything"""
    try:
        stuck = detector.find_stuck_syncs(threshold_minutes)
        return {"stuck_syncs": stuck, "count": len(stuck)}
    except Exception as e:
        log.error(f"Error listing stuck syncs: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.api_route("/auto-recovery", methods=["GET", "POST"])
async def auto_recovery(
    key: Optional[str] = Query(None, description="Shared recovery secret"),
    detector: StuckSyncDetector = Depends(get_detector)
):
    """
    Stuck-sync sweep for external cron services.
    Protected by the sync_recovery_key shared secret.
    """
    expected = settings.sync_recovery_key
    if not expected:
        raise HTTPException(status_code=503, detail="Auto-recovery is not configured")

    if not key or not secrets.compare_digest(key.encode(), expected.encode()):
        log.warning("Auto-recovery called with an invalid key")
        raise HTTPException(status_code=401, detail="Invalid recovery key")

    try:
        report = await detector.cleanup_stuck_syncs()
        return report.to_dict()
    except Exception as e:
        log.error(f"Auto-recovery failed: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/resume")
async def resume_stuck_syncs(detector: StuckSyncDetector = Depends(get_detector)):
    """Reset syncs with a stale heartbeat and restart stuck orders syncs in the background"""
    try:
        resumed = await detector.resume_stuck_syncs()
        if not resumed:
            return {"message": "No stuck syncs found", "resumed_syncs": 0, "results": []}
        return {
            "message": f"Resumed {len(resumed)} stuck syncs",
            "resumed_syncs": len(resumed),
            "results": resumed,
        }
    except Exception as e:
        log.error(f"Error resuming stuck syncs: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))
