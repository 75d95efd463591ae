from datetime import datetime, timedelta, UTC

import pytest

from taskrelay.client import Scheduler
from taskrelay.common.definition import DebounceConfig, define_task
from taskrelay.common.exceptions import TaskValidationError
from taskrelay.common.task import TaskStatus
from taskrelay.registry import TaskRegistry
from taskrelay.storage.memory_storage import MemoryBackend
from tests.test_tasks import add_task


class FakeClock:
    def __init__(self, now=1_700_000_000_000):
        self.now = now

    def __call__(self):
        return self.now


def _validate_add(input):
    if not isinstance(input, dict) or "x" not in input or "y" not in input:
        raise ValueError("x and y are required")
    return input


# --- Fixtures ---
@pytest.fixture
def backend():
    return MemoryBackend()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def add_definition():
    return define_task("add", add_task, input_validator=_validate_add)


@pytest.fixture
def registry(add_definition):
    return TaskRegistry(add_definition)


@pytest.fixture
def scheduler(backend, registry, clock):
    return Scheduler(backend, registry, clock=clock)


def _claim_all(scheduler, clock):
    claimed = []
    while True:
        task_id = scheduler.queue.claim_next("test-worker", 30000, now=clock.now)
        if not task_id:
            return claimed
        claimed.append(task_id)


# --- enqueue ---

def test_enqueue_creates_pending_task(scheduler, add_definition, clock):
    task_id = scheduler.enqueue(add_definition, {"x": 1, "y": 2})
    task = scheduler.get_task(task_id)

    assert task.id == task_id
    assert task.name == "add"
    assert task.input == {"x": 1, "y": 2}
    assert task.status == TaskStatus.PENDING
    assert task.attempt == 0
    assert task.max_attempts == 3
    assert task.priority == 50
    assert task.created_at == clock.now
    assert task.scheduled_for == clock.now
    assert scheduler.get_queue_depth() == 1


def test_enqueue_with_delay(scheduler, add_definition, clock):
    task_id = scheduler.enqueue(add_definition, {"x": 1, "y": 2}, delay_ms=5000)
    assert scheduler.get_task(task_id).scheduled_for == clock.now + 5000


def test_schedule_at_datetime(scheduler, add_definition):
    run_at = datetime(2030, 1, 1, tzinfo=UTC)
    task_id = scheduler.schedule(add_definition, {"x": 1, "y": 2}, run_at)
    assert scheduler.get_task(task_id).scheduled_for == int(run_at.timestamp() * 1000)


def test_invalid_input_is_rejected_synchronously(scheduler, add_definition):
    with pytest.raises(TaskValidationError):
        scheduler.enqueue(add_definition, {"x": 1})
    assert scheduler.get_queue_depth() == 0


def test_get_task_missing(scheduler):
    assert scheduler.get_task("does-not-exist") is None


def test_priority_override(scheduler, add_definition):
    task_id = scheduler.enqueue(add_definition, {"x": 1, "y": 2}, priority=5)
    assert scheduler.get_task(task_id).priority == 5


# --- ordering ---

def test_claim_order_is_priority_then_time(scheduler, add_definition, clock):
    later = scheduler.enqueue(add_definition, {"x": 1, "y": 1}, priority=10, delay_ms=10)
    low = scheduler.enqueue(add_definition, {"x": 2, "y": 2}, priority=90)
    urgent = scheduler.enqueue(add_definition, {"x": 3, "y": 3}, priority=10)
    clock.now += 100

    assert _claim_all(scheduler, clock) == [urgent, later, low]


def test_future_tasks_are_not_claimed(scheduler, add_definition, clock):
    scheduler.enqueue(add_definition, {"x": 1, "y": 1}, delay_ms=60000)
    assert _claim_all(scheduler, clock) == []
    clock.now += 60000
    assert len(_claim_all(scheduler, clock)) == 1


def test_claim_marks_task_running(scheduler, add_definition, clock):
    task_id = scheduler.enqueue(add_definition, {"x": 1, "y": 1})
    scheduler.queue.claim_next("test-worker", 30000, now=clock.now)

    task = scheduler.get_task(task_id)
    assert task.status == TaskStatus.RUNNING
    assert task.worker_id == "test-worker"
    assert task.started_at == clock.now
    assert [t.id for t in scheduler.get_tasks(status=TaskStatus.RUNNING)] == [task_id]
    assert scheduler.get_tasks(status=TaskStatus.PENDING) == []


# --- idempotency ---

def test_idempotency_key_returns_existing_task(scheduler, add_definition):
    first = scheduler.enqueue(add_definition, {"x": 1, "y": 2}, idempotency_key="order-1")
    second = scheduler.enqueue(add_definition, {"x": 9, "y": 9}, idempotency_key="order-1")

    assert first == second
    assert scheduler.get_task(first).input == {"x": 1, "y": 2}
    assert scheduler.get_queue_depth() == 1


def test_idempotency_key_from_definition(backend, clock):
    definition = define_task(
        "charge", add_task, idempotency_key=lambda input: f"charge-{input['x']}"
    )
    scheduler = Scheduler(backend, TaskRegistry(definition), clock=clock)

    first = scheduler.enqueue(definition, {"x": 1, "y": 0})
    assert scheduler.enqueue(definition, {"x": 1, "y": 5}) == first
    assert scheduler.enqueue(definition, {"x": 2, "y": 0}) != first


def test_idempotency_key_ignores_finished_tasks(scheduler, add_definition):
    first = scheduler.enqueue(add_definition, {"x": 1, "y": 2}, idempotency_key="order-1")
    scheduler.storage.update(first, status=TaskStatus.COMPLETED)

    second = scheduler.enqueue(add_definition, {"x": 1, "y": 2}, idempotency_key="order-1")
    assert second != first


# --- debounce ---

@pytest.fixture
def debounced(backend, clock):
    definition = define_task(
        "sync",
        add_task,
        debounce=DebounceConfig(window_ms=1000, key=lambda input: str(input["x"])),
    )
    return definition, Scheduler(backend, TaskRegistry(definition), clock=clock)


def test_debounce_collapses_into_one_task(debounced, clock):
    definition, scheduler = debounced
    first = scheduler.enqueue(definition, {"x": 1, "y": 1})
    clock.now += 200
    second = scheduler.enqueue(definition, {"x": 1, "y": 2})

    assert first == second
    task = scheduler.get_task(first)
    assert task.input == {"x": 1, "y": 2}
    # The first window deadline is kept
    assert task.scheduled_for == 1_700_000_000_000 + 1000
    assert scheduler.get_queue_depth() == 1


def test_debounce_keys_are_independent(debounced):
    definition, scheduler = debounced
    a = scheduler.enqueue(definition, {"x": 1, "y": 1})
    b = scheduler.enqueue(definition, {"x": 2, "y": 1})
    assert a != b
    assert scheduler.get_queue_depth() == 2


def test_debounce_starts_new_task_once_running(debounced, clock):
    definition, scheduler = debounced
    first = scheduler.enqueue(definition, {"x": 1, "y": 1})
    clock.now += 1000
    scheduler.queue.claim_next("test-worker", 30000, now=clock.now)

    second = scheduler.enqueue(definition, {"x": 1, "y": 2})
    assert second != first
    # The running task keeps the input it was claimed with
    assert scheduler.get_task(first).input == {"x": 1, "y": 1}
    assert scheduler.get_task(second).input == {"x": 1, "y": 2}


def test_pending_input_is_not_replaced_after_claim(debounced, clock):
    definition, scheduler = debounced
    task_id = scheduler.enqueue(definition, {"x": 1, "y": 1})
    assert scheduler.storage.replace_pending_input(task_id, {"x": 1, "y": 5}) is True

    clock.now += 1000
    scheduler.queue.claim_next("test-worker", 30000, now=clock.now)

    assert scheduler.storage.replace_pending_input(task_id, {"x": 1, "y": 9}) is False
    assert scheduler.get_task(task_id).input == {"x": 1, "y": 5}
    assert scheduler.storage.replace_pending_input("missing", {}) is False


# --- cancel ---

def test_cancel_pending_task(scheduler, add_definition):
    task_id = scheduler.enqueue(add_definition, {"x": 1, "y": 2})
    assert scheduler.cancel(task_id) is True
    assert scheduler.get_task(task_id) is None
    assert scheduler.get_queue_depth() == 0


def test_cancel_running_task_is_refused(scheduler, add_definition, clock):
    task_id = scheduler.enqueue(add_definition, {"x": 1, "y": 2})
    scheduler.queue.claim_next("test-worker", 30000, now=clock.now)
    assert scheduler.cancel(task_id) is False
    assert scheduler.get_task(task_id).status == TaskStatus.RUNNING


def test_cancel_unknown_task(scheduler):
    assert scheduler.cancel("nope") is False


# --- inspection ---

def test_get_tasks_filters_and_orders_newest_first(scheduler, add_definition, clock):
    ids = []
    for i in range(3):
        ids.append(scheduler.enqueue(add_definition, {"x": i, "y": i}))
        clock.now += 1

    tasks = scheduler.get_tasks(status=TaskStatus.PENDING, name="add")
    assert [t.id for t in tasks] == list(reversed(ids))
    assert [t.id for t in scheduler.get_tasks(limit=1, offset=1)] == [ids[1]]
    assert scheduler.get_tasks(name="other") == []


def test_get_state_counts(scheduler, add_definition, clock):
    scheduler.enqueue(add_definition, {"x": 1, "y": 1})
    scheduler.enqueue(add_definition, {"x": 2, "y": 2})
    scheduler.queue.claim_next("test-worker", 30000, now=clock.now)

    counts = scheduler.get_state_counts()
    assert counts[TaskStatus.PENDING] == 1
    assert counts[TaskStatus.RUNNING] == 1
    assert counts[TaskStatus.DEAD] == 0


def test_enqueue_by_name(scheduler, clock):
    task_id = scheduler.enqueue_by_name("add", {"x": 1, "y": 2})
    assert scheduler.get_task(task_id).name == "add"


def test_enqueue_by_unknown_name_still_creates_task(scheduler):
    task_id = scheduler.enqueue_by_name("ghost", {"a": 1})
    task = scheduler.get_task(task_id)
    assert task.name == "ghost"
    assert task.status == TaskStatus.PENDING


def test_scheduled_for_in_the_past_is_due(scheduler, add_definition, clock):
    run_at = datetime.fromtimestamp(clock.now / 1000, UTC) - timedelta(hours=1)
    scheduler.schedule(add_definition, {"x": 1, "y": 1}, run_at)
    assert len(_claim_all(scheduler, clock)) == 1


def test_schedule_recurring(scheduler, add_definition, clock):
    from taskrelay.recurring import RecurringManager, RecurringSpec

    schedule_id = scheduler.schedule_recurring(
        add_definition, {"x": 1, "y": 1}, RecurringSpec(interval_ms=60000)
    )
    schedule = RecurringManager(scheduler.backend, clock=clock).get(schedule_id)
    assert schedule.task_name == "add"
    assert schedule.next_run_at == clock.now + 60000
