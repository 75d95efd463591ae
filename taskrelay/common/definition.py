# taskrelay/common/definition.py
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

from .exceptions import ConfigurationError
from .task import DEFAULT_MAX_ATTEMPTS, DEFAULT_PRIORITY

BACKOFF_STRATEGIES = ("exponential", "linear", "fixed")


@dataclass(frozen=True)
class RetryConfig:
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff: str = "exponential"
    initial_delay_ms: int = 1000
    max_delay_ms: int = 60000
    retry_on: Optional[Callable[[BaseException], bool]] = None

    def __post_init__(self):
        if self.backoff not in BACKOFF_STRATEGIES:
            raise ConfigurationError(f"Unknown backoff strategy: {self.backoff}")
        if self.max_attempts < 1:
            raise ConfigurationError("max_attempts must be at least 1")


@dataclass(frozen=True)
class DebounceConfig:
    window_ms: int
    key: Callable[[Any], str]


@dataclass(frozen=True)
class TaskContext:
    """What a handler gets to know about the execution it is part of.

    ``signal`` is set when the execution has been abandoned (timeout or a
    lost lease); long-running handlers should check it and bail out.
    """

    task_id: str
    attempt: int
    worker_id: str
    scheduled_at: datetime
    started_at: datetime
    signal: threading.Event = field(default_factory=threading.Event)

    @property
    def cancelled(self) -> bool:
        return self.signal.is_set()


@dataclass(frozen=True)
class TaskDefinition:
    """
    Describes a task type. Registered once per process, never mutated.

    The handler is called as ``handler(context, input)`` and may be a plain
    function or a coroutine function.
    """

    name: str
    handler: Callable[[TaskContext, Any], Any]
    input_validator: Optional[Callable[[Any], Any]] = None
    output_validator: Optional[Callable[[Any], Any]] = None
    retry: RetryConfig = field(default_factory=RetryConfig)
    timeout_ms: Optional[int] = None
    priority: int = DEFAULT_PRIORITY
    max_concurrency: Optional[int] = None
    debounce: Optional[DebounceConfig] = None
    idempotency_key: Optional[Callable[[Any], str]] = None

    def __post_init__(self):
        if not self.name:
            raise ConfigurationError("Task definitions need a name")
        if not callable(self.handler):
            raise ConfigurationError(f"Handler for task '{self.name}' is not callable")
        if self.timeout_ms is not None and self.timeout_ms <= 0:
            raise ConfigurationError("timeout_ms must be positive")
        if self.max_concurrency is not None and self.max_concurrency < 1:
            raise ConfigurationError("max_concurrency must be at least 1")
        if self.debounce is not None and self.debounce.window_ms <= 0:
            raise ConfigurationError("debounce window must be positive")


def define_task(name: str, handler: Callable, **options: Any) -> TaskDefinition:
    """Builds a ``TaskDefinition``; ``retry`` may be given as a dict."""
    retry = options.pop("retry", None)
    if isinstance(retry, dict):
        retry = RetryConfig(**retry)
    if retry is not None:
        options["retry"] = retry
    return TaskDefinition(name=name, handler=handler, **options)


def task(name: Optional[str] = None, **options: Any) -> Callable[[Callable], TaskDefinition]:
    """Decorator form of ``define_task``. The task name defaults to the function name."""

    def decorator(func: Callable) -> TaskDefinition:
        return define_task(name or func.__name__, func, **options)

    return decorator
