# taskrelay/common/task.py
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, UTC
from typing import Optional, Dict, Any, List


class TaskStatus:
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    DEAD = "dead"


ALL_STATUSES = [
    TaskStatus.PENDING,
    TaskStatus.RUNNING,
    TaskStatus.COMPLETED,
    TaskStatus.FAILED,
    TaskStatus.DEAD,
]

ACTIVE_STATUSES = (TaskStatus.PENDING, TaskStatus.RUNNING)

DEFAULT_PRIORITY = 50
DEFAULT_MAX_ATTEMPTS = 3


def now_ms() -> int:
    return int(time.time() * 1000)


def from_ms(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000, UTC)


def to_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class Task:
    """
    A single unit of work stored in the backend.

    Times are milliseconds since the epoch. ``attempt`` counts the executions
    that have been started; it never exceeds ``max_attempts``.
    """

    name: str
    input: Any = None

    id: str = field(default_factory=new_id)
    status: str = TaskStatus.PENDING
    priority: int = DEFAULT_PRIORITY
    created_at: int = field(default_factory=now_ms)
    scheduled_for: int = field(default_factory=now_ms)

    attempt: int = 0
    max_attempts: int = DEFAULT_MAX_ATTEMPTS

    # Execution bookkeeping
    last_error: Optional[str] = None
    result: Any = None
    worker_id: Optional[str] = None
    started_at: Optional[int] = None
    completed_at: Optional[int] = None

    idempotency_key: Optional[str] = None
    debounce_key: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status not in ACTIVE_STATUSES


@dataclass
class DeadLetterEntry:
    task_id: str
    task: Task
    reason: str
    attempts: int
    failed_at: int = field(default_factory=now_ms)


@dataclass
class RecurringSchedule:
    task_name: str
    input: Any
    next_run_at: int

    id: str = field(default_factory=new_id)
    cron: Optional[str] = None
    interval_ms: Optional[int] = None
    timezone: str = "UTC"
    enabled: bool = True
    last_run_at: Optional[int] = None
    created_at: int = field(default_factory=now_ms)


@dataclass
class WorkerStats:
    id: str
    status: str
    concurrency: int
    poll_interval_ms: int
    task_types: Optional[List[str]]
    active_tasks: int
    processed_count: int
    failed_count: int
    started_at: Optional[int]
    uptime_ms: int

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)
