# taskrelay/server/processor.py
import logging
import threading
from typing import List, Optional

from taskrelay.common.definition import TaskContext, TaskDefinition
from taskrelay.common.exceptions import ConfigurationError
from taskrelay.common.states import (
    BaseState,
    CompletedState,
    DeadState,
    PendingState,
)
from taskrelay.common.task import Task, TaskStatus, from_ms, now_ms
from taskrelay.dead_letter import DeadLetterQueue
from taskrelay.execution.performer import perform_task
from taskrelay.filters.base import TaskFilter
from taskrelay.queue import TaskQueue
from taskrelay.task_storage import TaskStorage
from ..filters.builtin import RetryFilter
from .context import ElectStateContext

logger = logging.getLogger(__name__)


class TaskProcessor:
    """Runs one claimed execution of a task and records how it ended."""

    def __init__(
        self,
        task: Task,
        definition: TaskDefinition,
        worker_id: str,
        storage: TaskStorage,
        queue: TaskQueue,
        dead_letters: DeadLetterQueue,
        signal: Optional[threading.Event] = None,
        filters: Optional[List[TaskFilter]] = None,
        lease_ms: int = 30000,
        clock=now_ms,
    ):
        self.task = task
        self.definition = definition
        self.worker_id = worker_id
        self.storage = storage
        self.queue = queue
        self.dead_letters = dead_letters
        self.signal = signal or threading.Event()
        self.filters = filters if filters is not None else [RetryFilter()]
        self.lease_ms = lease_ms
        self.clock = clock

    def process(self) -> Optional[BaseState]:
        """Returns the state the task ended in, or ``None`` if the lease was lost."""
        context = TaskContext(
            task_id=self.task.id,
            attempt=self.task.attempt,
            worker_id=self.worker_id,
            scheduled_at=from_ms(self.task.scheduled_for),
            started_at=from_ms(self.task.started_at or self.clock()),
            signal=self.signal,
        )

        try:
            # 1. Perform the task
            result = perform_task(
                self.definition.handler,
                context,
                self.task.input,
                timeout_ms=self.definition.timeout_ms,
            )

            # 2. Validate the output
            if self.definition.output_validator is not None:
                result = self.definition.output_validator(result)

            final_state = CompletedState(result=result, created_at=self.clock())

        except Exception as e:
            # 3. Handle failure
            logger.error(
                f"Task {self.task.id} ({self.task.name}) failed on attempt {self.task.attempt}.",
                exc_info=True,
            )
            now = self.clock()
            candidate_state = DeadState(
                reason=str(e) or type(e).__name__,
                exception=e,
                retryable=not isinstance(e, ConfigurationError),
                created_at=now,
            )

            elect_state_context = ElectStateContext(
                task=self.task,
                definition=self.definition,
                candidate_state=candidate_state,
                now=now,
            )
            for f in self.filters:
                f.on_state_election(elect_state_context)

            final_state = elect_state_context.candidate_state
            logger.debug(
                f"Task {self.task.id}: attempt={self.task.attempt}, final_state={final_state.name}"
            )

        # 4. Only the lease holder may record the outcome
        if not self.queue.renew(self.task.id, self.lease_ms, now=self.clock()):
            logger.warning(
                f"[{self.worker_id}] Lost the lease on task {self.task.id}; discarding its {final_state.name} outcome"
            )
            return None

        # 5. Record it, then give the lease up. A failed write leaves the
        # lease in place for the reaper.
        self._apply(final_state)
        return final_state

    def _apply(self, state: BaseState) -> None:
        if isinstance(state, PendingState):
            self.storage.set_state(self.task.id, state, expected_old_state=TaskStatus.RUNNING)
            if not self.queue.requeue_leased(self.task.id, self.task.priority, state.scheduled_for):
                logger.warning(f"[{self.worker_id}] Lease on task {self.task.id} vanished before requeue")
            return

        if isinstance(state, DeadState):
            self.dead_letters.add(self.task, state.reason)
        elif not self.storage.set_state(self.task.id, state, expected_old_state=TaskStatus.RUNNING):
            # Recovered elsewhere; the reaper sorts out the lease
            logger.warning(f"[{self.worker_id}] Task {self.task.id} is no longer running; not recording {state.name}")
            return
        self.queue.release(self.task.id)
