# taskrelay/filters/builtin.py
from taskrelay.filters.base import TaskFilter
from taskrelay.common.states import DeadState, PendingState
from taskrelay.retry import calculate_backoff, should_retry
import logging
from taskrelay.server.context import ElectStateContext

logger = logging.getLogger(__name__)


class RetryFilter(TaskFilter):
    """Turns a failed execution back into a pending task while attempts remain."""

    def on_state_election(self, elect_state_context: ElectStateContext):
        task = elect_state_context.task
        candidate_state = elect_state_context.candidate_state

        if not isinstance(candidate_state, DeadState) or not candidate_state.retryable:
            return

        definition = elect_state_context.definition
        retry_config = definition.retry if definition else None
        error = candidate_state.exception or Exception(candidate_state.reason)

        if not should_retry(error, task.attempt, task.max_attempts, retry_config):
            logger.debug(
                f"RetryFilter: Task {task.id} will not be retried after attempt {task.attempt} of {task.max_attempts}"
            )
            return

        delay = calculate_backoff(task.attempt, retry_config)
        logger.debug(
            f"RetryFilter: Re-scheduling task {task.id} in {delay}ms. Attempt {task.attempt} of {task.max_attempts} failed"
        )
        elect_state_context.candidate_state = PendingState(
            scheduled_for=elect_state_context.now + delay,
            last_error=candidate_state.reason,
            reason=f"Retrying task... Attempt {task.attempt + 1} of {task.max_attempts}",
            created_at=elect_state_context.now,
        )
