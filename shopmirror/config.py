"""
Configuration management for the shopmirror sync engine
"""
from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import List, Optional


class Settings(BaseSettings):
    """Application settings"""

    # Application
    app_name: str = "shopmirror"
    environment: str = "development"
    debug: bool = False
    log_level: str = "INFO"
    log_dir: str = "logs"

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # Database
    database_url: str = "sqlite:///./shopmirror.db"

    # Shopify
    shopify_api_version: str = "2024-01"
    shopify_min_request_interval_seconds: float = 0.5  # Shopify REST: 2 req/sec
    shopify_page_size: int = 250  # Max per page
    shopify_request_timeout_seconds: float = 60.0
    shopify_max_retries: int = 3
    shopify_retry_base_delay: float = 2.0

    # Entity sync
    default_timeframe_days: int = 30
    default_store_id: Optional[str] = None  # Falls back to the first store

    # Stuck-sync detection
    stale_heartbeat_minutes: int = 5  # Acute check (resume)
    stuck_sync_timeout_minutes: int = 30  # Lenient sweep (cleanup)
    cleanup_interval_minutes: int = 10
    sync_recovery_key: Optional[str] = None  # Shared secret for /sync/auto-recovery

    # Daily auto-sync (06:00 at UTC-6, i.e. 12:00 UTC)
    enable_scheduler: bool = True
    auto_sync_hour: int = 6
    auto_sync_minute: int = 0
    auto_sync_utc_offset_hours: int = -6
    change_lookback_hours: int = 24

    # Refund reconciliation
    refund_call_delay_seconds: float = 0.25
    refund_write_off_kinds: str = "write_off,debt_write_off"
    reconcile_refunds_after_sync: bool = True

    class Config:
        env_file = ".env"
        case_sensitive = False

    @property
    def write_off_kinds(self) -> List[str]:
        """Adjustment kinds treated as store write-offs rather than refunds"""
        return [k.strip() for k in self.refund_write_off_kinds.split(",") if k.strip()]


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
