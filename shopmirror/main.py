"""
shopmirror
Main FastAPI application
"""
from fastapi import FastAPI
from contextlib import asynccontextmanager

from shopmirror.config import get_settings
from shopmirror.utils.logger import log
from shopmirror import __version__

from shopmirror.api import health, sync, refunds
from shopmirror.services.sync_progress import InMemoryProgressReporter
from shopmirror.services.sync_service import SyncService

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    # Startup
    log.info(f"Starting {settings.app_name} v{__version__}")
    log.info(f"Environment: {settings.environment}")

    try:
        from shopmirror.models.base import init_db
        init_db()
        log.info("Database initialized")
    except Exception as e:
        log.error(f"Database initialization error: {str(e)}")

    # One progress map shared by the HTTP routes and the scheduler
    sync_service = SyncService(reporter=InMemoryProgressReporter())
    sync.configure_sync_service(sync_service)

    if settings.enable_scheduler:
        try:
            from shopmirror.scheduler import start_scheduler
            start_scheduler(sync_service)
        except Exception as e:
            log.error(f"Scheduler startup error: {str(e)}")

    yield

    # Shutdown
    if settings.enable_scheduler:
        from shopmirror.scheduler import stop_scheduler
        stop_scheduler()
    log.info("Shutting down application")


app = FastAPI(
    title=settings.app_name,
    version=__version__,
    description="""
    Shopify mirror and refund reconciliation

    - Syncs orders and products from the Shopify Admin API into a local mirror
    - Tracks sync liveness with heartbeats and recovers stuck syncs
    - Runs a daily auto-sync
    - Reconciles refund fragments into a canonical total returns figure
    """,
    lifespan=lifespan
)

app.include_router(health.router, tags=["health"])
app.include_router(sync.router)
app.include_router(refunds.router)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "shopmirror.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug
    )
