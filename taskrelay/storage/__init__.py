from .base import KeyValueBackend
from .memory_storage import MemoryBackend
from .redis_storage import RedisBackend

__all__ = ["KeyValueBackend", "MemoryBackend", "RedisBackend"]
