# taskrelay/server/worker.py
import logging
import threading
import uuid
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from typing import Dict, Iterable, List, Optional

from taskrelay.client import Scheduler, WORKERS_KEY, WORKER_DATA_PREFIX
from taskrelay.common.exceptions import ConfigurationError
from taskrelay.common.states import CompletedState, DeadState, PendingState, RunningState
from taskrelay.common.task import Task, TaskStatus, WorkerStats, now_ms
from taskrelay.dead_letter import DeadLetterQueue
from taskrelay.registry import TaskRegistry
from taskrelay.serialization.base import BaseSerializer
from taskrelay.server.processor import TaskProcessor
from taskrelay.storage.base import KeyValueBackend

logger = logging.getLogger(__name__)

LEASE_EXPIRED = "Lease expired"


class WorkerStatus:
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"


class _Execution:
    def __init__(self, task_name: str):
        self.task_name = task_name
        self.signal = threading.Event()


class Worker:
    """
    Polls the shared backend and runs up to ``concurrency`` tasks at once.

    Each poll renews the leases of running executions, reaps leases that
    expired elsewhere and then claims work for the free slots.
    """

    def __init__(
        self,
        backend: KeyValueBackend,
        registry: TaskRegistry,
        serializer: Optional[BaseSerializer] = None,
        worker_id: Optional[str] = None,
        concurrency: int = 5,
        poll_interval_ms: int = 1000,
        task_types: Optional[Iterable[str]] = None,
        lease_ttl_ms: int = 30000,
        heartbeat_ms: int = 10000,
        clock=now_ms,
    ):
        if concurrency < 1:
            raise ConfigurationError("concurrency must be at least 1")
        if heartbeat_ms >= lease_ttl_ms:
            raise ConfigurationError("heartbeat_ms must be shorter than lease_ttl_ms")
        # Leases are only renewed from the poll loop
        if poll_interval_ms >= lease_ttl_ms:
            raise ConfigurationError("poll_interval_ms must be shorter than lease_ttl_ms")

        self.backend = backend
        self.registry = registry
        self.worker_id = worker_id or f"worker-{uuid.uuid4().hex[:12]}"
        self.concurrency = concurrency
        self.poll_interval_ms = poll_interval_ms
        self.task_types = list(task_types) if task_types is not None else None
        self.lease_ttl_ms = lease_ttl_ms
        self.heartbeat_ms = heartbeat_ms
        self.clock = clock

        self.scheduler = Scheduler(backend, registry, serializer, clock)
        self.storage = self.scheduler.storage
        self.queue = self.scheduler.queue
        self.dead_letters = DeadLetterQueue(
            backend, self.scheduler.requeue, self.scheduler.serializer, clock
        )

        self.processed_count = 0
        self.failed_count = 0
        self.started_at: Optional[int] = None

        self._status = WorkerStatus.STOPPED
        self._lock = threading.Lock()
        self._active: Dict[str, _Execution] = {}
        self._executor: Optional[ThreadPoolExecutor] = None
        self._thread: Optional[threading.Thread] = None
        self._wakeup = threading.Event()
        self._last_heartbeat = 0

    @property
    def status(self) -> str:
        return self._status

    # --- lifecycle ---

    def start(self) -> None:
        """Starts polling on a background thread."""
        if self._status != WorkerStatus.STOPPED:
            return
        self._prepare()
        self._thread = threading.Thread(
            target=self.run, name=f"taskrelay-{self.worker_id}", daemon=True
        )
        self._thread.start()

    def run(self) -> None:
        """The polling loop. Blocks until ``stop`` is called."""
        if self._status == WorkerStatus.STOPPED:
            self._prepare()
        logger.info(
            f"[{self.worker_id}] Starting worker with concurrency {self.concurrency}"
            + (f" for task types: {', '.join(self.task_types)}" if self.task_types else "")
        )
        try:
            while self._status != WorkerStatus.STOPPED:
                try:
                    self.poll_once()
                except Exception:
                    logger.exception(f"[{self.worker_id}] Unhandled exception in worker loop")
                self._wakeup.wait(self.poll_interval_ms / 1000)
                self._wakeup.clear()
        except KeyboardInterrupt:
            logger.info(f"[{self.worker_id}] Shutdown requested...")
            self.stop()
        logger.info(f"[{self.worker_id}] Worker has stopped.")

    def pause(self) -> None:
        """Stops claiming new work; running executions carry on."""
        if self._status == WorkerStatus.RUNNING:
            self._status = WorkerStatus.PAUSED
            logger.info(f"[{self.worker_id}] Paused")

    def resume(self) -> None:
        if self._status == WorkerStatus.PAUSED:
            self._status = WorkerStatus.RUNNING
            self._wakeup.set()
            logger.info(f"[{self.worker_id}] Resumed")

    def stop(self) -> None:
        """Stops claiming and waits for running executions to finish."""
        if self._status == WorkerStatus.STOPPED:
            return
        self._status = WorkerStatus.STOPPED
        self._wakeup.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join()
        self._thread = None
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
        self._deregister()
        logger.info(
            f"[{self.worker_id}] Stopped after {self.processed_count} completed and {self.failed_count} failed task(s)"
        )

    def get_stats(self) -> WorkerStats:
        with self._lock:
            active_tasks = len(self._active)
        uptime_ms = self.clock() - self.started_at if self.started_at else 0
        return WorkerStats(
            id=self.worker_id,
            status=self._status,
            concurrency=self.concurrency,
            poll_interval_ms=self.poll_interval_ms,
            task_types=self.task_types,
            active_tasks=active_tasks,
            processed_count=self.processed_count,
            failed_count=self.failed_count,
            started_at=self.started_at,
            uptime_ms=uptime_ms,
        )

    # --- polling ---

    def poll_once(self) -> int:
        """One poll: heartbeat, reap, then claim. Returns how many tasks were claimed."""
        now = self.clock()
        self._heartbeat(now)
        self._recover_expired_leases(now)

        if self._status != WorkerStatus.RUNNING:
            return 0

        claimed = 0
        while self._free_slots() > 0 and self._status == WorkerStatus.RUNNING:
            task_id = self.queue.claim_next(
                self.worker_id,
                self.lease_ttl_ms,
                task_types=self.task_types,
                excluded_types=self._saturated_types(),
                now=now,
            )
            if not task_id:
                break
            self._dispatch(task_id)
            claimed += 1
        return claimed

    def _free_slots(self) -> int:
        with self._lock:
            return self.concurrency - len(self._active)

    def _saturated_types(self) -> Optional[List[str]]:
        """Task types this worker already runs at their ``max_concurrency``."""
        with self._lock:
            running = Counter(e.task_name for e in self._active.values())
        saturated = []
        for name, count in running.items():
            definition = self.registry.get(name)
            if definition and definition.max_concurrency and count >= definition.max_concurrency:
                saturated.append(name)
        return saturated or None

    def _dispatch(self, task_id: str) -> None:
        task = self.storage.get(task_id)
        if task is None:
            # Record deleted after it was queued
            self.queue.release(task_id)
            return
        execution = _Execution(task.name)
        with self._lock:
            self._active[task_id] = execution
        self._executor.submit(self._execute, task, execution)

    def _execute(self, task: Task, execution: _Execution) -> None:
        try:
            definition = self.registry.get(task.name)
            if definition is None:
                if self.queue.renew(task.id, self.lease_ttl_ms, self.clock()):
                    self.dead_letters.add(task, f"Unknown task type: {task.name}")
                    self.queue.release(task.id)
                    self._count(failed=True)
                return

            started_at = task.started_at or self.clock()
            running_state = RunningState(
                self.worker_id, task.attempt + 1, created_at=started_at
            )
            self.storage.set_state(task.id, running_state, expected_old_state=TaskStatus.RUNNING)
            task = replace(
                task,
                status=TaskStatus.RUNNING,
                attempt=task.attempt + 1,
                worker_id=self.worker_id,
                started_at=started_at,
            )
            logger.info(f"[{self.worker_id}] Picked up task {task.id} ({task.name}), attempt {task.attempt}")

            processor = TaskProcessor(
                task,
                definition,
                self.worker_id,
                self.storage,
                self.queue,
                self.dead_letters,
                signal=execution.signal,
                lease_ms=self.lease_ttl_ms,
                clock=self.clock,
            )
            final_state = processor.process()

            if isinstance(final_state, CompletedState):
                self._count(failed=False)
            elif isinstance(final_state, DeadState):
                self._count(failed=True)
            logger.info(
                f"[{self.worker_id}] Finished task {task.id}: "
                f"{final_state.name if final_state else 'lease lost'}"
            )
        except Exception:
            logger.exception(f"[{self.worker_id}] Unhandled exception while running task {task.id}")
        finally:
            with self._lock:
                self._active.pop(task.id, None)
            self._wakeup.set()

    def _count(self, failed: bool) -> None:
        with self._lock:
            if failed:
                self.failed_count += 1
            else:
                self.processed_count += 1

    # --- leases ---

    def _heartbeat(self, now: int) -> None:
        if self._last_heartbeat and now - self._last_heartbeat < self.heartbeat_ms:
            return
        self._last_heartbeat = now

        with self._lock:
            active = list(self._active.items())
        for task_id, execution in active:
            if not self.queue.renew(task_id, self.lease_ttl_ms, now):
                logger.warning(f"[{self.worker_id}] Lease on task {task_id} was lost")
                execution.signal.set()

        self._publish_registration(now)

    def _recover_expired_leases(self, now: int) -> None:
        for task_id in self.queue.expired_leases(now):
            with self._lock:
                if task_id in self._active:
                    continue
            task = self.storage.get(task_id)
            if task is None:
                self.queue.release(task_id)
                continue

            if task.status == TaskStatus.PENDING:
                # A retry was recorded but never made it back onto the queue
                if self.queue.requeue_leased(task_id, task.priority, task.scheduled_for):
                    logger.warning(f"[{self.worker_id}] Requeued task {task_id} left under an expired lease")
                continue
            if task.status != TaskStatus.RUNNING:
                # Outcome recorded, lease never released
                self.queue.release(task_id)
                continue

            logger.warning(
                f"[{self.worker_id}] Lease on task {task_id} held by {task.worker_id} expired"
            )
            if task.attempt >= task.max_attempts:
                self.dead_letters.add(task, LEASE_EXPIRED)
                self.queue.release(task_id)
            elif self.storage.set_state(
                task_id,
                PendingState(scheduled_for=now, last_error=LEASE_EXPIRED, created_at=now),
                expected_old_state=TaskStatus.RUNNING,
            ):
                self.queue.requeue_leased(task_id, task.priority, now)

    # --- registration ---

    def _prepare(self) -> None:
        self._executor = ThreadPoolExecutor(
            max_workers=self.concurrency, thread_name_prefix=self.worker_id
        )
        self._status = WorkerStatus.RUNNING
        self.started_at = self.clock()
        self._last_heartbeat = 0
        self.backend.sadd(WORKERS_KEY, self.worker_id)

    def _publish_registration(self, now: int) -> None:
        key = f"{WORKER_DATA_PREFIX}{self.worker_id}"
        with self._lock:
            active_tasks = len(self._active)
        self.backend.hset(
            key,
            {
                "id": self.worker_id,
                "status": self._status,
                "concurrency": str(self.concurrency),
                "active_tasks": str(active_tasks),
                "started_at": str(self.started_at),
                "last_heartbeat": str(now),
            },
        )
        self.backend.expire(key, self.lease_ttl_ms)
        self.backend.sadd(WORKERS_KEY, self.worker_id)

    def _deregister(self) -> None:
        self.backend.srem(WORKERS_KEY, self.worker_id)
        self.backend.delete(f"{WORKER_DATA_PREFIX}{self.worker_id}")


def start_workers(
    backend: KeyValueBackend, registry: TaskRegistry, count: int = 1, **options
) -> List[Worker]:
    """Starts ``count`` workers sharing ``backend``. Worker ids get a numeric suffix."""
    base_id = options.pop("worker_id", None) or f"worker-{uuid.uuid4().hex[:8]}"
    workers = []
    for index in range(count):
        worker = Worker(backend, registry, worker_id=f"{base_id}-{index + 1}", **options)
        worker.start()
        workers.append(worker)
    return workers
