# taskrelay/queue.py
import logging
from typing import Optional, List, Iterable

from .common.task import TaskStatus, now_ms
from .storage.base import KeyValueBackend
from .task_storage import TASK_KEY_PREFIX, TaskStorage

logger = logging.getLogger(__name__)

QUEUE_PREFIX = "taskrelay:queue:"
PRIORITIES_KEY = "taskrelay:queue:priorities"
RUNNING_KEY = "taskrelay:running"


def queue_key(priority: int) -> str:
    return f"{QUEUE_PREFIX}{priority}"


class TaskQueue:
    """
    Pending task ids, ordered by (priority, scheduled_for, id).

    Each priority level is a sorted set scored by ``scheduled_for``. Claimed
    ids move to the running set, scored by their lease deadline.
    """

    def __init__(self, backend: KeyValueBackend, storage: TaskStorage):
        self.backend = backend
        self.storage = storage

    def add(self, task_id: str, priority: int, scheduled_for: int) -> None:
        self.backend.sadd(PRIORITIES_KEY, str(priority))
        self.backend.zadd(queue_key(priority), task_id, scheduled_for)

    def remove(self, task_id: str, priority: int) -> bool:
        return self.backend.zrem(queue_key(priority), task_id) > 0

    def priorities(self) -> List[int]:
        return sorted(int(p) for p in self.backend.smembers(PRIORITIES_KEY))

    def claim_next(
        self,
        worker_id: str,
        lease_ms: int,
        task_types: Optional[Iterable[str]] = None,
        excluded_types: Optional[Iterable[str]] = None,
        now: Optional[int] = None,
    ) -> Optional[str]:
        """Claims the first due task for ``worker_id``; returns its id or ``None``."""
        now = now if now is not None else now_ms()
        queue_keys = [queue_key(p) for p in self.priorities()]
        task_id = self.backend.claim(
            queue_keys,
            RUNNING_KEY,
            max_score=now,
            lease_score=now + lease_ms,
            hash_prefix=TASK_KEY_PREFIX,
            updates={
                "status": TaskStatus.RUNNING,
                "worker_id": worker_id,
                "started_at": str(now),
            },
            match_field="name",
            allowed=task_types,
            excluded=excluded_types,
        )
        if task_id:
            self.storage.move_status_index(task_id, TaskStatus.PENDING, TaskStatus.RUNNING)
            logger.debug(f"[{worker_id}] Claimed task {task_id}")
        return task_id

    # --- leases ---

    def renew(self, task_id: str, lease_ms: int, now: Optional[int] = None) -> bool:
        """Pushes the lease deadline out; ``False`` means the lease was lost."""
        now = now if now is not None else now_ms()
        return self.backend.zadd(RUNNING_KEY, task_id, now + lease_ms, xx=True)

    def requeue_leased(self, task_id: str, priority: int, scheduled_for: int) -> bool:
        """Moves a leased id back onto its queue. ``False`` means the lease was already gone."""
        self.backend.sadd(PRIORITIES_KEY, str(priority))
        return self.backend.zmove(RUNNING_KEY, queue_key(priority), task_id, scheduled_for)

    def release(self, task_id: str) -> bool:
        """Drops the lease. Only one caller ever gets ``True`` for a given claim."""
        return self.backend.zrem(RUNNING_KEY, task_id) > 0

    def expired_leases(self, now: Optional[int] = None, limit: int = 100) -> List[str]:
        now = now if now is not None else now_ms()
        return self.backend.zrangebyscore(RUNNING_KEY, "-inf", now, offset=0, count=limit)

    def running_count(self) -> int:
        return self.backend.zcard(RUNNING_KEY)

    # --- inspection ---

    def depth(self, priority: Optional[int] = None) -> int:
        if priority is not None:
            return self.backend.zcard(queue_key(priority))
        return sum(self.backend.zcard(queue_key(p)) for p in self.priorities())

    def pending_ids(self, limit: int = 100) -> List[str]:
        """Queued ids in claim order, ignoring whether they are due yet."""
        ids: List[str] = []
        for priority in self.priorities():
            if len(ids) >= limit:
                break
            ids.extend(self.backend.zrange(queue_key(priority), 0, limit - len(ids) - 1))
        return ids
