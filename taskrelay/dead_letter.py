# taskrelay/dead_letter.py
import logging
from dataclasses import replace
from typing import Callable, List, Optional

from .client import Scheduler
from .common.states import DeadState
from .common.task import DeadLetterEntry, Task, TaskStatus, new_id, now_ms
from .serialization.base import BaseSerializer
from .serialization.json_serializer import JsonSerializer
from .storage.base import KeyValueBackend
from .task_storage import TaskStorage

logger = logging.getLogger(__name__)

DEAD_LETTER_KEY = "taskrelay:dead"
DEAD_LETTER_DATA_PREFIX = "taskrelay:dead:data:"


class DeadLetterQueue:
    """
    Terminally failed tasks, newest first.

    Entries keep a snapshot of the task and the failure reason verbatim.
    ``retry`` turns an entry into a brand new pending task.
    """

    def __init__(
        self,
        backend: KeyValueBackend,
        requeue: Optional[Callable[[Task], str]] = None,
        serializer: Optional[BaseSerializer] = None,
        clock=now_ms,
    ):
        self.backend = backend
        self.serializer = serializer or JsonSerializer()
        self.clock = clock
        self.storage = TaskStorage(backend, self.serializer)
        self.requeue = requeue or Scheduler(backend, serializer=self.serializer, clock=clock).requeue

    def _key(self, task_id: str) -> str:
        return f"{DEAD_LETTER_DATA_PREFIX}{task_id}"

    def add(self, task: Task, reason: str) -> DeadLetterEntry:
        failed_at = self.clock()
        snapshot = replace(
            task, status=TaskStatus.DEAD, last_error=reason, completed_at=failed_at
        )
        entry = DeadLetterEntry(
            task_id=task.id,
            task=snapshot,
            reason=reason,
            attempts=task.attempt,
            failed_at=failed_at,
        )
        self.backend.hset(self._key(task.id), self.serializer.serialize_dead_letter(entry))
        self.backend.zadd(DEAD_LETTER_KEY, task.id, failed_at)
        # Status last: a dead task always has an entry behind it
        self.storage.set_state(task.id, DeadState(reason, created_at=failed_at))
        logger.warning(
            f"Task {task.id} ({task.name}) dead-lettered after {task.attempt} attempt(s): {reason}"
        )
        return entry

    def list(self, limit: int = 100, offset: int = 0) -> List[DeadLetterEntry]:
        if limit <= 0:
            return []
        entries = []
        for task_id in self.backend.zrange(
            DEAD_LETTER_KEY, offset, offset + limit - 1, desc=True
        ):
            entry = self.get(task_id)
            if entry:
                entries.append(entry)
        return entries

    def get(self, task_id: str) -> Optional[DeadLetterEntry]:
        data = self.backend.hgetall(self._key(task_id))
        if not data:
            return None
        return self.serializer.deserialize_dead_letter(data)

    def retry(self, task_id: str) -> Optional[str]:
        entry = self.get(task_id)
        if entry is None:
            return None
        if not self.backend.zrem(DEAD_LETTER_KEY, task_id):
            # Another caller is already retrying or purging it
            return None

        now = self.clock()
        fresh = replace(
            entry.task,
            id=new_id(),
            status=TaskStatus.PENDING,
            attempt=0,
            created_at=now,
            scheduled_for=now,
            started_at=None,
            completed_at=None,
            worker_id=None,
            last_error=None,
            result=None,
            debounce_key=None,
        )
        try:
            new_task_id = self.requeue(fresh)
        except Exception:
            self.backend.zadd(DEAD_LETTER_KEY, task_id, entry.failed_at)
            raise
        self.backend.delete(self._key(task_id))
        logger.info(f"Retrying dead task {task_id} as {new_task_id}")
        return new_task_id

    def retry_all(self) -> int:
        retried = 0
        while True:
            task_ids = self.backend.zrange(DEAD_LETTER_KEY, 0, 99)
            if not task_ids:
                return retried
            for task_id in task_ids:
                if self.retry(task_id):
                    retried += 1
                elif self.get(task_id) is None:
                    # Index entry without data
                    self.backend.zrem(DEAD_LETTER_KEY, task_id)

    def purge(self, older_than_ms: Optional[int] = None) -> int:
        """Deletes entries and their task records; returns how many went."""
        if older_than_ms is None:
            task_ids = self.backend.zrangebyscore(DEAD_LETTER_KEY, "-inf", "+inf")
        else:
            cutoff = self.clock() - older_than_ms
            task_ids = self.backend.zrangebyscore(DEAD_LETTER_KEY, "-inf", f"({cutoff}")

        purged = 0
        for task_id in task_ids:
            if not self.backend.zrem(DEAD_LETTER_KEY, task_id):
                continue
            self.backend.delete(self._key(task_id))
            self.storage.delete(task_id)
            purged += 1
        if purged:
            logger.info(f"Purged {purged} dead-lettered task(s)")
        return purged

    def count(self) -> int:
        return self.backend.zcard(DEAD_LETTER_KEY)
