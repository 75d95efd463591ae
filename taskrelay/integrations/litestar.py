"""Litestar integration helpers for taskrelay."""

from __future__ import annotations

from typing import Optional

try:
    from litestar import Litestar
    from litestar.datastructures import State
    from litestar.di import Provide
except ImportError as exc:  # pragma: no cover - optional dependency
    raise ImportError(
        "Litestar integration requires 'litestar'. Install with `pip install taskrelay[litestar]`."
    ) from exc

from taskrelay.client import Scheduler
from taskrelay.integrations.runtime import BackgroundRuntime
from taskrelay.registry import TaskRegistry
from taskrelay.storage.base import KeyValueBackend


def get_taskrelay_scheduler(state: State) -> Scheduler:
    return state.taskrelay_scheduler


def taskrelay_dependency() -> Provide:
    return Provide(get_taskrelay_scheduler, sync_to_thread=False)


def configure_taskrelay(
    app: Litestar,
    backend: KeyValueBackend,
    registry: TaskRegistry,
    workers: int = 0,
    recurring_interval_ms: Optional[int] = None,
    **worker_options,
) -> Scheduler:
    """
    Puts a scheduler on ``app.state``. With ``workers`` or
    ``recurring_interval_ms`` the background runtime follows the app's
    startup and shutdown hooks.
    """
    scheduler = Scheduler(backend, registry)
    runtime = BackgroundRuntime(scheduler, workers, recurring_interval_ms, **worker_options)
    app.state.taskrelay_scheduler = scheduler
    app.state.taskrelay_runtime = runtime
    if workers or recurring_interval_ms is not None:
        app.on_startup.append(runtime.start)
        app.on_shutdown.append(runtime.stop)
    return scheduler
