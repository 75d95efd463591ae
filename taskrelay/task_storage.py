# taskrelay/task_storage.py
import logging
from typing import Optional, List, Any, Iterable, Union

from .common.states import BaseState
from .common.task import Task, TaskStatus, ALL_STATUSES
from .serialization.base import BaseSerializer
from .serialization.json_serializer import JsonSerializer
from .storage.base import KeyValueBackend

logger = logging.getLogger(__name__)

TASK_KEY_PREFIX = "taskrelay:task:"
STATUS_INDEX_PREFIX = "taskrelay:status:"
NAME_INDEX_PREFIX = "taskrelay:name:"
IDEMPOTENCY_PREFIX = "taskrelay:idempotency:"
IDEMPOTENCY_TTL_MS = 24 * 60 * 60 * 1000


def task_key(task_id: str) -> str:
    return f"{TASK_KEY_PREFIX}{task_id}"


class TaskStorage:
    """Persists task records as hashes, with status and name indexes."""

    def __init__(self, backend: KeyValueBackend, serializer: Optional[BaseSerializer] = None):
        self.backend = backend
        self.serializer = serializer or JsonSerializer()

    def store(self, task: Task) -> None:
        self.backend.hset(task_key(task.id), self.serializer.serialize_task(task))
        self.backend.sadd(f"{STATUS_INDEX_PREFIX}{task.status}", task.id)
        self.backend.sadd(f"{NAME_INDEX_PREFIX}{task.name}", task.id)
        if task.idempotency_key:
            self.backend.set(
                f"{IDEMPOTENCY_PREFIX}{task.idempotency_key}",
                task.id,
                ttl_ms=IDEMPOTENCY_TTL_MS,
            )

    def get(self, task_id: str) -> Optional[Task]:
        data = self.backend.hgetall(task_key(task_id))
        if not data:
            return None
        return self.serializer.deserialize_task(data)

    def update(self, task_id: str, **values: Any) -> bool:
        """Writes the given fields; a ``None`` value removes the field."""
        key = task_key(task_id)
        if not self.backend.hget(key, "status"):
            return False
        self._write(key, values)
        return True

    def replace_pending_input(self, task_id: str, input: Any) -> bool:
        """Swaps the input of a task that is still pending. ``False`` once it was claimed."""
        return self.backend.hset_if(
            task_key(task_id),
            "status",
            TaskStatus.PENDING,
            {"input": self.serializer.serialize_value(input)},
        )

    def set_state(
        self, task_id: str, state: BaseState, expected_old_state: Optional[str] = None
    ) -> bool:
        key = task_key(task_id)
        current_state = self.backend.hget(key, "status")
        if current_state is None:
            return False
        if expected_old_state and current_state != expected_old_state:
            logger.debug(
                f"Task {task_id}: refusing {current_state} -> {state.name}, expected {expected_old_state}"
            )
            return False

        self._write(key, {**state.serialize_data(), "status": state.name})
        if current_state != state.name:
            self.move_status_index(task_id, current_state, state.name)
        return True

    def move_status_index(self, task_id: str, old_status: str, new_status: str) -> None:
        """Moves ``task_id`` between status indexes after the record itself changed."""
        self.backend.srem(f"{STATUS_INDEX_PREFIX}{old_status}", task_id)
        self.backend.sadd(f"{STATUS_INDEX_PREFIX}{new_status}", task_id)

    def delete(self, task_id: str) -> None:
        task = self.get(task_id)
        if not task:
            return
        self.backend.delete(task_key(task_id))
        self.backend.srem(f"{STATUS_INDEX_PREFIX}{task.status}", task_id)
        self.backend.srem(f"{NAME_INDEX_PREFIX}{task.name}", task_id)
        if task.idempotency_key:
            idempotency_key = f"{IDEMPOTENCY_PREFIX}{task.idempotency_key}"
            if self.backend.get(idempotency_key) == task_id:
                self.backend.delete(idempotency_key)

    def query(
        self,
        status: Union[str, Iterable[str], None] = None,
        name: Union[str, Iterable[str], None] = None,
        created_after: Optional[int] = None,
        created_before: Optional[int] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Task]:
        """Tasks matching every given filter, newest first."""
        statuses = [status] if isinstance(status, str) else list(status or ALL_STATUSES)
        task_ids = set()
        for s in statuses:
            task_ids |= self.backend.smembers(f"{STATUS_INDEX_PREFIX}{s}")

        if name is not None:
            names = [name] if isinstance(name, str) else list(name)
            name_ids = set()
            for n in names:
                name_ids |= self.backend.smembers(f"{NAME_INDEX_PREFIX}{n}")
            task_ids &= name_ids

        tasks = []
        for task_id in task_ids:
            task = self.get(task_id)
            if task is None:
                continue
            if created_after is not None and task.created_at < created_after:
                continue
            if created_before is not None and task.created_at > created_before:
                continue
            tasks.append(task)

        tasks.sort(key=lambda t: (t.created_at, t.id), reverse=True)
        return tasks[offset : offset + limit]

    def find_by_idempotency_key(self, key: str) -> Optional[Task]:
        task_id = self.backend.get(f"{IDEMPOTENCY_PREFIX}{key}")
        if not task_id:
            return None
        return self.get(task_id)

    def count_by_status(self, status: str) -> int:
        return len(self.backend.smembers(f"{STATUS_INDEX_PREFIX}{status}"))

    def _write(self, key: str, values: dict) -> None:
        removed = [field for field, value in values.items() if value is None]
        encoded = self.serializer.serialize_fields(values)
        if encoded:
            self.backend.hset(key, encoded)
        if removed:
            self.backend.hdel(key, *removed)
