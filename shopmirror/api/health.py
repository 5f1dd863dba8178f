"""
Health check endpoint
"""
from fastapi import APIRouter
from datetime import datetime
from shopmirror.config import get_settings
from shopmirror import __version__

settings = get_settings()

router = APIRouter()


@router.get("/health")
async def health_check():
    """Health check endpoint"""
    from shopmirror.scheduler import get_daily_scheduler

    daily = get_daily_scheduler()
    next_run = daily.get_next_run_time()
    return {
        "status": "healthy",
        "app_name": settings.app_name,
        "environment": settings.environment,
        "timestamp": datetime.utcnow().isoformat(),
        "version": __version__,
        "scheduler": {
            "running": daily.is_running,
            "next_auto_sync": next_run.isoformat() if next_run else None,
        },
    }
