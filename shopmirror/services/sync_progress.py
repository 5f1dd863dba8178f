"""
In-flight sync progress

One entry per (store, data type), written only by the running synchronizer
and read by the status surface. Not persisted.
"""
from datetime import datetime
from typing import Dict, Optional, Tuple


class ProgressReporter:
    """Interface the synchronizer reports page progress to"""

    def start(self, store_id: str, data_type: str):
        pass

    def update(self, store_id: str, data_type: str, processed: int, current: Optional[str] = None):
        pass

    def finish(self, store_id: str, data_type: str, status: str = "completed", error: Optional[str] = None):
        pass

    def get(self, store_id: str, data_type: str) -> Optional[dict]:
        return None


class InMemoryProgressReporter(ProgressReporter):
    """Process-local progress map"""

    def __init__(self):
        self._progress: Dict[Tuple[str, str], dict] = {}

    def start(self, store_id: str, data_type: str):
        self._progress[(store_id, data_type)] = {
            "status": "running",
            "processed": 0,
            "current": None,
            "started_at": datetime.utcnow().isoformat(),
            "updated_at": datetime.utcnow().isoformat(),
            "error": None,
        }

    def update(self, store_id: str, data_type: str, processed: int, current: Optional[str] = None):
        entry = self._progress.setdefault((store_id, data_type), {
            "status": "running",
            "started_at": datetime.utcnow().isoformat(),
            "error": None,
        })
        entry["processed"] = processed
        entry["current"] = current
        entry["updated_at"] = datetime.utcnow().isoformat()

    def finish(self, store_id: str, data_type: str, status: str = "completed", error: Optional[str] = None):
        entry = self._progress.get((store_id, data_type))
        if entry is None:
            return
        entry["status"] = status
        entry["error"] = error
        entry["updated_at"] = datetime.utcnow().isoformat()

    def get(self, store_id: str, data_type: str) -> Optional[dict]:
        entry = self._progress.get((store_id, data_type))
        return dict(entry) if entry else None

    def clear(self):
        self._progress.clear()

