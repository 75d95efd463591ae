# taskrelay/recurring.py
import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, List, Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from cronsim import CronSim, CronSimError

from .common.definition import TaskDefinition
from .common.exceptions import ConfigurationError
from .common.task import RecurringSchedule, now_ms, to_ms
from .serialization.base import BaseSerializer
from .serialization.json_serializer import JsonSerializer
from .storage.base import KeyValueBackend

logger = logging.getLogger(__name__)

RECURRING_KEY = "taskrelay:recurring"
RECURRING_DATA_PREFIX = "taskrelay:recurring:data:"

EnqueueFn = Callable[[str, Any], str]


@dataclass(frozen=True)
class RecurringSpec:
    """Either a 5-field cron expression (evaluated in ``timezone``) or an interval."""

    cron: Optional[str] = None
    interval_ms: Optional[int] = None
    timezone: str = "UTC"


def _zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ConfigurationError(f"Unknown timezone: {name}") from e


def calculate_next_run(spec: RecurringSpec, from_time_ms: int) -> int:
    """
    The first run time at or after ``from_time_ms``, in milliseconds.

    Cron runs fall on minute boundaries; an interval schedule runs
    ``interval_ms`` after ``from_time_ms``.
    """
    if spec.cron:
        if len(spec.cron.split()) != 5:
            raise ConfigurationError(
                f"Cron expression must have 5 fields: {spec.cron!r}"
            )
        zone = _zone(spec.timezone or "UTC")
        # CronSim yields times strictly after the minute it starts in, so start
        # just before from_time_ms to include a match exactly at from_time_ms.
        start = datetime.fromtimestamp((from_time_ms - 1) / 1000, zone)
        try:
            return to_ms(next(CronSim(spec.cron, start)))
        except CronSimError as e:
            raise ConfigurationError(f"Invalid cron expression {spec.cron!r}: {e}") from e
        except StopIteration as e:
            raise ConfigurationError(f"Cron expression {spec.cron!r} never matches") from e

    if spec.interval_ms is not None:
        if spec.interval_ms <= 0:
            raise ConfigurationError("interval_ms must be positive")
        return from_time_ms + spec.interval_ms

    raise ConfigurationError("Either cron or interval_ms must be specified")


def _spec_of(schedule: RecurringSchedule) -> RecurringSpec:
    return RecurringSpec(
        cron=schedule.cron, interval_ms=schedule.interval_ms, timezone=schedule.timezone
    )


def _next_run_after(spec: RecurringSpec, now: int) -> int:
    next_run = calculate_next_run(spec, now)
    if next_run <= now:
        next_run = calculate_next_run(spec, now + 1)
    return next_run


class RecurringManager:
    def __init__(
        self,
        backend: KeyValueBackend,
        serializer: Optional[BaseSerializer] = None,
        clock=now_ms,
    ):
        self.backend = backend
        self.serializer = serializer or JsonSerializer()
        self.clock = clock

    def _key(self, schedule_id: str) -> str:
        return f"{RECURRING_DATA_PREFIX}{schedule_id}"

    def create(
        self,
        definition: Union[TaskDefinition, str],
        input: Any,
        spec: RecurringSpec,
    ) -> str:
        task_name = definition if isinstance(definition, str) else definition.name
        now = self.clock()
        schedule = RecurringSchedule(
            task_name=task_name,
            input=input,
            cron=spec.cron,
            interval_ms=spec.interval_ms,
            timezone=spec.timezone or "UTC",
            enabled=True,
            next_run_at=calculate_next_run(spec, now),
            created_at=now,
        )
        self.backend.hset(self._key(schedule.id), self.serializer.serialize_schedule(schedule))
        self.backend.zadd(RECURRING_KEY, schedule.id, schedule.next_run_at)
        logger.info(
            f"Created recurring schedule {schedule.id} for '{task_name}', next run {schedule.next_run_at}"
        )
        return schedule.id

    def get(self, schedule_id: str) -> Optional[RecurringSchedule]:
        data = self.backend.hgetall(self._key(schedule_id))
        if not data:
            return None
        return self.serializer.deserialize_schedule(data)

    def list(self) -> List[RecurringSchedule]:
        schedules = []
        for key in self.backend.keys(f"{RECURRING_DATA_PREFIX}*"):
            data = self.backend.hgetall(key)
            if data:
                schedules.append(self.serializer.deserialize_schedule(data))
        return schedules

    def pause(self, schedule_id: str) -> bool:
        if self.get(schedule_id) is None:
            return False
        self.backend.hset(self._key(schedule_id), {"enabled": "false"})
        self.backend.zrem(RECURRING_KEY, schedule_id)
        return True

    def resume(self, schedule_id: str) -> bool:
        schedule = self.get(schedule_id)
        if schedule is None:
            return False
        next_run_at = calculate_next_run(_spec_of(schedule), self.clock())
        self.backend.hset(
            self._key(schedule_id),
            {"enabled": "true", "next_run_at": str(next_run_at)},
        )
        self.backend.zadd(RECURRING_KEY, schedule_id, next_run_at)
        return True

    def delete(self, schedule_id: str) -> None:
        self.backend.zrem(RECURRING_KEY, schedule_id)
        self.backend.delete(self._key(schedule_id))

    def tick(self, enqueue: EnqueueFn) -> List[str]:
        """Enqueues every due schedule once; returns the new task ids."""
        now = self.clock()
        task_ids = []

        for schedule_id in self.backend.zrangebyscore(RECURRING_KEY, "-inf", now):
            data = self.backend.hgetall(self._key(schedule_id))
            if not data:
                logger.debug(f"Pruning orphaned recurring schedule {schedule_id}")
                self.backend.zrem(RECURRING_KEY, schedule_id)
                continue

            schedule = self.serializer.deserialize_schedule(data)
            # Taking the id off the index is what makes this ticker the one that fires it
            if not self.backend.zrem(RECURRING_KEY, schedule_id):
                continue
            if not schedule.enabled:
                continue

            try:
                task_ids.append(enqueue(schedule.task_name, schedule.input))
            except Exception:
                logger.exception(f"Recurring schedule {schedule_id} failed to enqueue")
                self.backend.zadd(RECURRING_KEY, schedule_id, schedule.next_run_at)
                continue

            if self.backend.hget(self._key(schedule_id), "id") is None:
                # Deleted while enqueueing
                continue
            next_run_at = _next_run_after(_spec_of(schedule), now)
            self.backend.hset(
                self._key(schedule_id),
                {"last_run_at": str(now), "next_run_at": str(next_run_at)},
            )
            if self.backend.hget(self._key(schedule_id), "enabled") == "true":
                self.backend.zadd(RECURRING_KEY, schedule_id, next_run_at)

        return task_ids


def start_recurring_scheduler(
    backend: KeyValueBackend,
    enqueue: EnqueueFn,
    interval_ms: int = 1000,
    serializer: Optional[BaseSerializer] = None,
    clock=now_ms,
) -> Callable[[], None]:
    """Ticks recurring schedules every ``interval_ms`` on a daemon thread.

    Returns a function that stops the thread.
    """
    manager = RecurringManager(backend, serializer, clock)
    stopped = threading.Event()

    def run():
        while not stopped.is_set():
            try:
                manager.tick(enqueue)
            except Exception:
                logger.exception("Recurring scheduler tick failed")
            stopped.wait(interval_ms / 1000)

    thread = threading.Thread(target=run, name="taskrelay-recurring", daemon=True)
    thread.start()

    def stop() -> None:
        stopped.set()
        thread.join(timeout=5)

    return stop
