import logging
import threading
import time

from studentflow.schemas import ProgressSnapshot


logger = logging.getLogger(__name__)


# Snapshots are replaced whole; terminal snapshots stay until evicted.
class ProgressRegistry:
    def __init__(self, clock=time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._snapshots: dict[str, ProgressSnapshot] = {}
        self._finished_at: dict[str, float] = {}

    def record(self, task_id: str, snapshot: ProgressSnapshot) -> bool:
        with self._lock:
            current = self._snapshots.get(task_id)
            if current is not None and current.status.is_terminal:
                logger.debug("ignoring update for finished task", extra={"task_id": task_id})
                return False
            self._snapshots[task_id] = snapshot
            if snapshot.status.is_terminal:
                self._finished_at[task_id] = self._clock()
            return True

    def lookup(self, task_id: str) -> ProgressSnapshot:
        with self._lock:
            snapshot = self._snapshots.get(task_id)
        if snapshot is None:
            return ProgressSnapshot.not_found(task_id)
        return snapshot

    def evict(self, task_id: str) -> None:
        with self._lock:
            self._snapshots.pop(task_id, None)
            self._finished_at.pop(task_id, None)

    def evict_expired(self, ttl_seconds: float, now: float | None = None) -> list[str]:
        cutoff = (self._clock() if now is None else now) - ttl_seconds
        with self._lock:
            expired = [task_id for task_id, finished in self._finished_at.items() if finished <= cutoff]
            for task_id in expired:
                self._snapshots.pop(task_id, None)
                del self._finished_at[task_id]
        if expired:
            logger.info("evicted finished tasks", extra={"evicted": len(expired)})
        return expired

    def active_count(self) -> int:
        with self._lock:
            return len(self._snapshots) - len(self._finished_at)

    def __len__(self) -> int:
        with self._lock:
            return len(self._snapshots)
