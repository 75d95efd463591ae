from .client import Scheduler
from .common.definition import (
    DebounceConfig,
    RetryConfig,
    TaskContext,
    TaskDefinition,
    define_task,
    task,
)
from .common.exceptions import (
    BackendError,
    ConfigurationError,
    TaskRelayException,
    TaskTimeoutError,
    TaskValidationError,
)
from .common.task import DeadLetterEntry, RecurringSchedule, Task, TaskStatus, WorkerStats
from .config import TaskRelaySettings, create_backend
from .dead_letter import DeadLetterQueue
from .recurring import (
    RecurringManager,
    RecurringSpec,
    calculate_next_run,
    start_recurring_scheduler,
)
from .registry import TaskRegistry
from .retry import calculate_backoff, should_retry
from .server.worker import Worker, start_workers
from .storage import KeyValueBackend, MemoryBackend, RedisBackend

__all__ = [
    "BackendError",
    "ConfigurationError",
    "DeadLetterEntry",
    "DeadLetterQueue",
    "DebounceConfig",
    "KeyValueBackend",
    "MemoryBackend",
    "RecurringManager",
    "RecurringSchedule",
    "RecurringSpec",
    "RedisBackend",
    "RetryConfig",
    "Scheduler",
    "Task",
    "TaskContext",
    "TaskDefinition",
    "TaskRegistry",
    "TaskRelayException",
    "TaskRelaySettings",
    "TaskStatus",
    "TaskTimeoutError",
    "TaskValidationError",
    "Worker",
    "WorkerStats",
    "calculate_backoff",
    "calculate_next_run",
    "create_backend",
    "define_task",
    "should_retry",
    "start_recurring_scheduler",
    "start_workers",
    "task",
]
