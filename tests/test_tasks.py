# tests/test_tasks.py
import asyncio
import threading
import time


def wait_for(predicate, timeout=5.0, interval=0.02):
    """Polls ``predicate`` until it is truthy or ``timeout`` seconds pass."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return bool(predicate())


def add_task(context, input):
    """A simple task that succeeds."""
    return input["x"] + input["y"]


async def async_add_task(context, input):
    await asyncio.sleep(0.01)
    return input["x"] + input["y"]


def failure_task(context, input):
    """A task that is designed to fail."""
    raise ValueError("This task is designed to fail")


def context_task(context, input):
    return {
        "task_id": context.task_id,
        "attempt": context.attempt,
        "worker_id": context.worker_id,
    }


def slow_task(context, input):
    """Sleeps until cancelled or ``seconds`` pass."""
    context.signal.wait(input.get("seconds", 1))
    return "done"


def side_effect_task(context, input):
    """A task that writes to a file to check for side effects."""
    with open(input["path"], "w") as f:
        f.write(input["content"])


class FlakyTask:
    """Fails the first ``failures`` calls, then succeeds."""

    def __init__(self, failures):
        self.failures = failures
        self.calls = 0
        self._lock = threading.Lock()

    def __call__(self, context, input):
        with self._lock:
            self.calls += 1
            call = self.calls
        if call <= self.failures:
            raise RuntimeError(f"Failure {call}")
        return "ok"


class RecordingTask:
    """Records every execution and how many ran at the same time."""

    def __init__(self, duration=0.0):
        self.duration = duration
        self.executions = []
        self.running = 0
        self.max_running = 0
        self._lock = threading.Lock()

    def __call__(self, context, input):
        with self._lock:
            self.executions.append(input)
            self.running += 1
            self.max_running = max(self.max_running, self.running)
        try:
            if self.duration:
                time.sleep(self.duration)
            return input
        finally:
            with self._lock:
                self.running -= 1


def fail_once(backend, method, key):
    """Makes the next ``method`` call on ``key`` raise ``BackendError``."""
    from taskrelay.common.exceptions import BackendError

    original = getattr(backend, method)

    def failing(first_key, *args, **kwargs):
        if first_key != key:
            return original(first_key, *args, **kwargs)
        setattr(backend, method, original)
        raise BackendError(f"{method} {key} failed")

    setattr(backend, method, failing)
