# taskrelay/serialization/json_serializer.py
import json
from dataclasses import fields
from typing import Dict, Any

from taskrelay.serialization.base import BaseSerializer
from taskrelay.common.task import Task, DeadLetterEntry, RecurringSchedule

_TASK_FIELDS = {f.name for f in fields(Task)}
_JSON_FIELDS = {"input", "result"}
_INT_FIELDS = {
    "priority",
    "created_at",
    "scheduled_for",
    "attempt",
    "max_attempts",
    "started_at",
    "completed_at",
}


class JsonSerializer(BaseSerializer):
    def serialize_value(self, value: Any) -> str:
        return json.dumps(value, default=str)

    def deserialize_value(self, data: str) -> Any:
        return json.loads(data)

    def serialize_fields(self, values: Dict[str, Any]) -> Dict[str, str]:
        """Encodes task fields for storage. ``None`` values are left out."""
        encoded = {}
        for key, value in values.items():
            if value is None:
                continue
            if key in _JSON_FIELDS:
                encoded[key] = self.serialize_value(value)
            else:
                encoded[key] = str(value)
        return encoded

    def serialize_task(self, task: Task) -> Dict[str, str]:
        data = self.serialize_fields(task.__dict__)
        # input is always present, even when it is None
        data["input"] = self.serialize_value(task.input)
        return data

    def deserialize_task(self, data: Dict[str, str]) -> Task:
        task_dict = {}
        for key, value in data.items():
            if key not in _TASK_FIELDS:
                continue
            if key in _JSON_FIELDS:
                try:
                    task_dict[key] = self.deserialize_value(value)
                except (json.JSONDecodeError, TypeError):
                    task_dict[key] = None
            elif key in _INT_FIELDS:
                task_dict[key] = int(value)
            else:
                task_dict[key] = value
        return Task(**task_dict)

    def serialize_dead_letter(self, entry: DeadLetterEntry) -> Dict[str, str]:
        return {
            "task_id": entry.task_id,
            "task": json.dumps(self.serialize_task(entry.task)),
            "reason": entry.reason,
            "attempts": str(entry.attempts),
            "failed_at": str(entry.failed_at),
        }

    def deserialize_dead_letter(self, data: Dict[str, str]) -> DeadLetterEntry:
        return DeadLetterEntry(
            task_id=data["task_id"],
            task=self.deserialize_task(json.loads(data["task"])),
            reason=data["reason"],
            attempts=int(data["attempts"]),
            failed_at=int(data["failed_at"]),
        )

    def serialize_schedule(self, schedule: RecurringSchedule) -> Dict[str, str]:
        data = {
            "id": schedule.id,
            "task_name": schedule.task_name,
            "input": self.serialize_value(schedule.input),
            "timezone": schedule.timezone,
            "enabled": "true" if schedule.enabled else "false",
            "next_run_at": str(schedule.next_run_at),
            "created_at": str(schedule.created_at),
        }
        if schedule.cron:
            data["cron"] = schedule.cron
        if schedule.interval_ms:
            data["interval_ms"] = str(schedule.interval_ms)
        if schedule.last_run_at is not None:
            data["last_run_at"] = str(schedule.last_run_at)
        return data

    def deserialize_schedule(self, data: Dict[str, str]) -> RecurringSchedule:
        return RecurringSchedule(
            id=data["id"],
            task_name=data["task_name"],
            input=self.deserialize_value(data["input"]),
            cron=data.get("cron"),
            interval_ms=int(data["interval_ms"]) if data.get("interval_ms") else None,
            timezone=data.get("timezone", "UTC"),
            enabled=data.get("enabled") == "true",
            next_run_at=int(data["next_run_at"]),
            last_run_at=int(data["last_run_at"]) if data.get("last_run_at") else None,
            created_at=int(data["created_at"]),
        )
