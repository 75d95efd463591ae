# taskrelay/config.py
import os
from dataclasses import dataclass
from typing import Optional

from taskrelay.common.exceptions import ConfigurationError
from taskrelay.storage.base import KeyValueBackend

BACKENDS = ("memory", "redis")


def _int_env(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}") from e


@dataclass
class TaskRelaySettings:
    backend: str = "memory"
    redis_url: Optional[str] = None
    concurrency: int = 5
    poll_interval_ms: int = 1000
    lease_ttl_ms: int = 30000
    heartbeat_ms: int = 10000
    recurring_interval_ms: int = 1000

    def __post_init__(self):
        if self.backend not in BACKENDS:
            raise ConfigurationError(f"Unknown backend: {self.backend}")

    @classmethod
    def from_env(cls) -> "TaskRelaySettings":
        return cls(
            backend=os.environ.get("TASKRELAY_BACKEND", "memory"),
            redis_url=os.environ.get("TASKRELAY_REDIS_URL"),
            concurrency=_int_env("TASKRELAY_CONCURRENCY", 5),
            poll_interval_ms=_int_env("TASKRELAY_POLL_INTERVAL_MS", 1000),
            lease_ttl_ms=_int_env("TASKRELAY_LEASE_TTL_MS", 30000),
            heartbeat_ms=_int_env("TASKRELAY_HEARTBEAT_MS", 10000),
            recurring_interval_ms=_int_env("TASKRELAY_RECURRING_INTERVAL_MS", 1000),
        )

    def worker_options(self) -> dict:
        return {
            "concurrency": self.concurrency,
            "poll_interval_ms": self.poll_interval_ms,
            "lease_ttl_ms": self.lease_ttl_ms,
            "heartbeat_ms": self.heartbeat_ms,
        }


def create_backend(settings: Optional[TaskRelaySettings] = None) -> KeyValueBackend:
    settings = settings or TaskRelaySettings.from_env()
    if settings.backend == "redis":
        from taskrelay.storage.redis_storage import RedisBackend

        return RedisBackend(url=settings.redis_url or "redis://localhost:6379/0")

    from taskrelay.storage.memory_storage import MemoryBackend

    return MemoryBackend()
