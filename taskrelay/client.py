# taskrelay/client.py
import logging
from datetime import datetime
from typing import Any, Optional, List, Dict, Union, Iterable

from .common.definition import TaskDefinition
from .common.exceptions import TaskValidationError
from .common.task import (
    Task,
    TaskStatus,
    ALL_STATUSES,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_PRIORITY,
    now_ms,
    to_ms,
)
from .queue import TaskQueue
from .recurring import RecurringManager, RecurringSpec
from .registry import TaskRegistry
from .serialization.base import BaseSerializer
from .serialization.json_serializer import JsonSerializer
from .storage.base import KeyValueBackend
from .task_storage import TaskStorage

logger = logging.getLogger(__name__)

DEBOUNCE_PREFIX = "taskrelay:debounce:"
WORKERS_KEY = "taskrelay:workers"
WORKER_DATA_PREFIX = "taskrelay:worker:"


class Scheduler:
    """
    Puts tasks on the queue and answers questions about them.

    All state lives in ``backend``; any number of schedulers and workers in
    any number of processes can share it.
    """

    def __init__(
        self,
        backend: KeyValueBackend,
        registry: Optional[TaskRegistry] = None,
        serializer: Optional[BaseSerializer] = None,
        clock=now_ms,
    ):
        self.backend = backend
        self.registry = registry or TaskRegistry()
        self.serializer = serializer or JsonSerializer()
        self.clock = clock
        self.storage = TaskStorage(backend, self.serializer)
        self.queue = TaskQueue(backend, self.storage)

    def enqueue(
        self,
        definition: TaskDefinition,
        input: Any = None,
        *,
        delay_ms: Optional[int] = None,
        run_at: Optional[datetime] = None,
        priority: Optional[int] = None,
        idempotency_key: Optional[str] = None,
    ) -> str:
        """Creates a task for ``definition`` (or collapses into an existing one)."""
        if definition.input_validator is not None:
            try:
                input = definition.input_validator(input)
            except Exception as e:
                raise TaskValidationError(
                    f"Invalid input for task '{definition.name}': {e}"
                ) from e

        now = self.clock()

        idempotency_key = idempotency_key or (
            definition.idempotency_key(input) if definition.idempotency_key else None
        )
        if idempotency_key:
            existing = self.storage.find_by_idempotency_key(idempotency_key)
            if existing and not existing.is_terminal:
                logger.debug(
                    f"Idempotency key {idempotency_key!r} matches task {existing.id}"
                )
                return existing.id

        if run_at is not None:
            scheduled_for = to_ms(run_at)
        else:
            scheduled_for = now + (delay_ms or 0)

        debounce_key = None
        if definition.debounce is not None:
            debounce_key = f"{DEBOUNCE_PREFIX}{definition.name}:{definition.debounce.key(input)}"
            collapsed = self._collapse_debounced(debounce_key, input)
            if collapsed:
                return collapsed
            scheduled_for += definition.debounce.window_ms

        task = Task(
            name=definition.name,
            input=input,
            status=TaskStatus.PENDING,
            priority=priority if priority is not None else definition.priority,
            created_at=now,
            scheduled_for=scheduled_for,
            attempt=0,
            max_attempts=definition.retry.max_attempts,
            idempotency_key=idempotency_key,
            debounce_key=debounce_key,
        )

        if debounce_key and not self.backend.set(
            debounce_key, task.id, ttl_ms=definition.debounce.window_ms, nx=True
        ):
            # Lost the race for the window to another enqueue
            collapsed = self._collapse_debounced(debounce_key, input)
            if collapsed:
                return collapsed
            self.backend.set(debounce_key, task.id, ttl_ms=definition.debounce.window_ms)

        return self.requeue(task)

    def schedule(self, definition: TaskDefinition, input: Any, run_at: datetime, **options) -> str:
        return self.enqueue(definition, input, run_at=run_at, **options)

    def enqueue_by_name(self, name: str, input: Any = None) -> str:
        """Enqueues by registered name. Unregistered names still produce a task,
        which workers dead-letter as an unknown task type."""
        definition = self.registry.get(name)
        if definition is not None:
            return self.enqueue(definition, input)

        logger.warning(f"Enqueuing task for unregistered name '{name}'")
        now = self.clock()
        task = Task(
            name=name,
            input=input,
            priority=DEFAULT_PRIORITY,
            created_at=now,
            scheduled_for=now,
            max_attempts=DEFAULT_MAX_ATTEMPTS,
        )
        return self.requeue(task)

    def requeue(self, task: Task) -> str:
        """Stores ``task`` as given and makes it claimable at ``scheduled_for``."""
        self.storage.store(task)
        self.queue.add(task.id, task.priority, task.scheduled_for)
        logger.debug(f"Enqueued task {task.id} ({task.name}) for {task.scheduled_for}")
        return task.id

    def cancel(self, task_id: str) -> bool:
        """Removes a task that has not started yet."""
        task = self.storage.get(task_id)
        if not task or task.status != TaskStatus.PENDING:
            return False
        if not self.queue.remove(task_id, task.priority):
            # Claimed in the meantime
            return False
        if task.debounce_key and self.backend.get(task.debounce_key) == task_id:
            self.backend.delete(task.debounce_key)
        self.storage.delete(task_id)
        return True

    def get_task(self, task_id: str) -> Optional[Task]:
        return self.storage.get(task_id)

    def get_tasks(
        self,
        status: Union[str, Iterable[str], None] = None,
        name: Union[str, Iterable[str], None] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Task]:
        return self.storage.query(status=status, name=name, limit=limit, offset=offset)

    def get_queue_depth(self) -> int:
        return self.queue.depth()

    def get_state_counts(self) -> Dict[str, int]:
        return {status: self.storage.count_by_status(status) for status in ALL_STATUSES}

    def schedule_recurring(
        self, definition: TaskDefinition, input: Any, spec: RecurringSpec
    ) -> str:
        return RecurringManager(self.backend, self.serializer, self.clock).create(
            definition, input, spec
        )

    def list_workers(self) -> List[Dict[str, str]]:
        workers = []
        for worker_id in sorted(self.backend.smembers(WORKERS_KEY)):
            data = self.backend.hgetall(f"{WORKER_DATA_PREFIX}{worker_id}")
            if data:
                workers.append(data)
            else:
                # Registration expired without a clean stop
                self.backend.srem(WORKERS_KEY, worker_id)
        return workers

    def _collapse_debounced(self, debounce_key: str, input: Any) -> Optional[str]:
        task_id = self.backend.get(debounce_key)
        if not task_id:
            return None
        if not self.storage.replace_pending_input(task_id, input):
            # Already claimed, or gone
            return None
        logger.debug(f"Debounced into pending task {task_id}")
        return task_id
