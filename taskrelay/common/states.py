# taskrelay/common/states.py

from typing import Dict, Any, Optional

from .task import TaskStatus, now_ms


class BaseState:
    """A status transition together with the task fields it writes."""

    NAME = "base"

    def __init__(self, created_at: Optional[int] = None):
        self.created_at = created_at if created_at is not None else now_ms()

    @property
    def name(self) -> str:
        return self.NAME

    def serialize_data(self) -> Dict[str, Any]:
        return {}


class PendingState(BaseState):
    NAME = TaskStatus.PENDING

    def __init__(
        self,
        scheduled_for: int,
        last_error: Optional[str] = None,
        reason: Optional[str] = None,
        *args,
        **kwargs,
    ):
        super().__init__(*args, **kwargs)
        self.scheduled_for = scheduled_for
        self.last_error = last_error
        self.reason = reason

    def serialize_data(self) -> Dict[str, Any]:
        data = {"scheduled_for": self.scheduled_for, "worker_id": None}
        if self.last_error is not None:
            data["last_error"] = self.last_error
        return data


class RunningState(BaseState):
    NAME = TaskStatus.RUNNING

    def __init__(self, worker_id: str, attempt: int, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.worker_id = worker_id
        self.attempt = attempt

    def serialize_data(self) -> Dict[str, Any]:
        return {
            "worker_id": self.worker_id,
            "attempt": self.attempt,
            "started_at": self.created_at,
        }


class CompletedState(BaseState):
    NAME = TaskStatus.COMPLETED

    def __init__(self, result: Any, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.result = result

    def serialize_data(self) -> Dict[str, Any]:
        return {"result": self.result, "completed_at": self.created_at}


class DeadState(BaseState):
    NAME = TaskStatus.DEAD

    def __init__(
        self,
        reason: str,
        exception: Optional[BaseException] = None,
        retryable: bool = True,
        *args,
        **kwargs,
    ):
        super().__init__(*args, **kwargs)
        self.reason = reason
        self.exception = exception
        self.retryable = retryable

    def serialize_data(self) -> Dict[str, Any]:
        return {"last_error": self.reason, "completed_at": self.created_at}
