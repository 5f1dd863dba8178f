"""
Sync status tracking

One row per (store, data type). Records whether a synchronizer is running,
when it last proved it was alive, and how far it got.
"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, Text, UniqueConstraint
from datetime import datetime

from shopmirror.models.base import Base

DATA_TYPE_ORDERS = "orders"
DATA_TYPE_PRODUCTS = "products"
DATA_TYPES = (DATA_TYPE_ORDERS, DATA_TYPE_PRODUCTS)


class SyncStatus(Base):
    """
    Per (store, data type) sync state machine row

    sync_in_progress=True with a stale last_heartbeat means the run crashed.
    Rows are never deleted, only reset by the stuck-sync detector.
    """
    __tablename__ = "sync_status"
    __table_args__ = (
        UniqueConstraint("store_id", "data_type", name="uq_sync_status_store_data_type"),
    )

    id = Column(Integer, primary_key=True, index=True)

    store_id = Column(String, index=True, nullable=False)
    data_type = Column(String, index=True, nullable=False)  # orders, products

    # State
    sync_in_progress = Column(Boolean, default=False, nullable=False, index=True)
    last_sync_at = Column(DateTime, nullable=True)  # Last successful completion
    last_heartbeat = Column(DateTime, nullable=True)  # Written after every page

    # Progress
    total_records = Column(Integer, default=0, nullable=False)
    timeframe_days = Column(Integer, nullable=True)  # Window of the current/last run

    # Errors
    error_message = Column(Text, nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "store_id": self.store_id,
            "data_type": self.data_type,
            "sync_in_progress": bool(self.sync_in_progress),
            "last_sync_at": self.last_sync_at.isoformat() if self.last_sync_at else None,
            "last_heartbeat": self.last_heartbeat.isoformat() if self.last_heartbeat else None,
            "total_records": self.total_records or 0,
            "timeframe_days": self.timeframe_days,
            "error_message": self.error_message,
        }
