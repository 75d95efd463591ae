"""Background workers and recurring ticker shared by the web integrations."""

from __future__ import annotations

import logging
from typing import Callable, List, Optional

from taskrelay.client import Scheduler
from taskrelay.recurring import start_recurring_scheduler
from taskrelay.server.worker import Worker, start_workers

logger = logging.getLogger(__name__)


class BackgroundRuntime:
    """Starts and stops in-process workers and the recurring ticker for ``scheduler``."""

    def __init__(
        self,
        scheduler: Scheduler,
        worker_count: int = 0,
        recurring_interval_ms: Optional[int] = None,
        **worker_options,
    ):
        self.scheduler = scheduler
        self.worker_count = worker_count
        self.worker_options = worker_options
        self.recurring_interval_ms = recurring_interval_ms
        self.workers: List[Worker] = []
        self._stop_recurring: Optional[Callable[[], None]] = None

    def start(self) -> None:
        if self.worker_count:
            self.workers = start_workers(
                self.scheduler.backend,
                self.scheduler.registry,
                self.worker_count,
                **self.worker_options,
            )
        if self.recurring_interval_ms is not None:
            self._stop_recurring = start_recurring_scheduler(
                self.scheduler.backend,
                self.scheduler.enqueue_by_name,
                interval_ms=self.recurring_interval_ms,
            )
        logger.debug(
            f"Started {len(self.workers)} background worker(s)"
            + (" and the recurring ticker" if self._stop_recurring else "")
        )

    def stop(self) -> None:
        if self._stop_recurring:
            self._stop_recurring()
            self._stop_recurring = None
        for worker in self.workers:
            worker.stop()
        self.workers = []
