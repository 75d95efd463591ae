# taskrelay/execution/performer.py
import asyncio
import inspect
import threading
from concurrent.futures import Future, TimeoutError as FutureTimeoutError
from typing import Any, Callable, Optional

from taskrelay.common.definition import TaskContext
from taskrelay.common.exceptions import TaskTimeoutError


def _invoke(handler: Callable, context: TaskContext, input: Any) -> Any:
    result = handler(context, input)
    if inspect.iscoroutine(result):
        return asyncio.run(result)
    return result


def perform_task(
    handler: Callable,
    context: TaskContext,
    input: Any,
    timeout_ms: Optional[int] = None,
) -> Any:
    """Runs ``handler(context, input)``; coroutine handlers run on a fresh event loop.

    With a timeout the handler runs on its own daemon thread. When the timer
    wins, ``context.signal`` is set and ``TaskTimeoutError`` is raised; the
    handler thread is left to notice the signal and finish on its own.
    """
    if timeout_ms is None:
        return _invoke(handler, context, input)

    future: Future = Future()

    def run():
        if not future.set_running_or_notify_cancel():
            return
        try:
            future.set_result(_invoke(handler, context, input))
        except BaseException as e:
            future.set_exception(e)

    thread = threading.Thread(
        target=run, name=f"taskrelay-handler-{context.task_id}", daemon=True
    )
    thread.start()
    try:
        return future.result(timeout=timeout_ms / 1000)
    except FutureTimeoutError:
        if future.done():
            # The handler itself raised a TimeoutError
            raise
        context.signal.set()
        raise TaskTimeoutError("Task timeout") from None
