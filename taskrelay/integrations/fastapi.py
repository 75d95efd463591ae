"""FastAPI integration helpers for taskrelay."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import List

try:
    from fastapi import FastAPI, Request
except ImportError as exc:  # pragma: no cover - optional dependency
    raise ImportError(
        "FastAPI integration requires 'fastapi'. Install with `pip install taskrelay[fastapi]`."
    ) from exc

from taskrelay.client import Scheduler
from taskrelay.integrations.runtime import BackgroundRuntime
from taskrelay.registry import TaskRegistry
from taskrelay.server.worker import Worker
from taskrelay.storage.base import KeyValueBackend


class TaskRelayFastAPIPlugin:
    """
    Ties a scheduler, and optionally workers and the recurring ticker, to an
    application's lifespan::

        plugin = TaskRelayFastAPIPlugin(backend, registry).run_workers_in_background()
        app = FastAPI(lifespan=plugin.lifespan)
    """

    def __init__(self, backend: KeyValueBackend, registry: TaskRegistry):
        self.backend = backend
        self.registry = registry
        self.scheduler = Scheduler(backend, registry)
        self.runtime = BackgroundRuntime(self.scheduler)

    @property
    def workers(self) -> List[Worker]:
        return self.runtime.workers

    def get_scheduler(self) -> Scheduler:
        return self.scheduler

    def run_workers_in_background(self, count: int = 1, **worker_options) -> "TaskRelayFastAPIPlugin":
        self.runtime.worker_count = count
        self.runtime.worker_options = worker_options
        return self

    def run_recurring_scheduler(self, interval_ms: int = 1000) -> "TaskRelayFastAPIPlugin":
        self.runtime.recurring_interval_ms = interval_ms
        return self

    def startup(self) -> None:
        self.runtime.start()

    def shutdown(self) -> None:
        self.runtime.stop()

    @asynccontextmanager
    async def lifespan(self, app: FastAPI):
        app.state.taskrelay_scheduler = self.scheduler
        self.startup()
        try:
            yield
        finally:
            self.shutdown()


def get_scheduler(request: Request) -> Scheduler:
    return request.app.state.taskrelay_scheduler
