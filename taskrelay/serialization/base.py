# taskrelay/serialization/base.py
from abc import ABC, abstractmethod
from typing import Dict, Any

from taskrelay.common.task import Task, DeadLetterEntry, RecurringSchedule


class BaseSerializer(ABC):
    """Maps records to and from the flat string hashes kept in the backend."""

    @abstractmethod
    def serialize_value(self, value: Any) -> str: ...

    @abstractmethod
    def deserialize_value(self, data: str) -> Any: ...

    @abstractmethod
    def serialize_task(self, task: Task) -> Dict[str, str]: ...

    @abstractmethod
    def deserialize_task(self, data: Dict[str, str]) -> Task: ...

    @abstractmethod
    def serialize_fields(self, fields: Dict[str, Any]) -> Dict[str, str]: ...

    @abstractmethod
    def serialize_dead_letter(self, entry: DeadLetterEntry) -> Dict[str, str]: ...

    @abstractmethod
    def deserialize_dead_letter(self, data: Dict[str, str]) -> DeadLetterEntry: ...

    @abstractmethod
    def serialize_schedule(self, schedule: RecurringSchedule) -> Dict[str, str]: ...

    @abstractmethod
    def deserialize_schedule(self, data: Dict[str, str]) -> RecurringSchedule: ...
