# taskrelay/storage/memory_storage.py
import fnmatch
import time
from threading import RLock
from typing import Optional, List, Dict, Iterable, Set, Tuple, Union, Any

from taskrelay.storage.base import KeyValueBackend, Score


def _bound(value: Union[Score, str]) -> Tuple[float, bool]:
    """Parses a Redis-style score bound into (score, exclusive)."""
    if isinstance(value, str) and value.startswith("("):
        return float(value[1:]), True
    return float(value), False


class MemoryBackend(KeyValueBackend):
    """In-process backend. Shares state between threads, not processes."""

    def __init__(self):
        self._data: Dict[str, Any] = {}
        self._expires: Dict[str, float] = {}
        self._lock = RLock()

    # --- helpers (call with the lock held) ---

    def _alive(self, key: str) -> bool:
        expires_at = self._expires.get(key)
        if expires_at is not None and time.monotonic() >= expires_at:
            self._data.pop(key, None)
            del self._expires[key]
        return key in self._data

    def _container(self, key: str, factory):
        if not self._alive(key):
            self._data[key] = factory()
        return self._data[key]

    def _existing(self, key: str, default):
        return self._data[key] if self._alive(key) else default

    def _sorted_members(self, key: str) -> List[str]:
        zset: Dict[str, float] = self._existing(key, {})
        return [m for m, _ in sorted(zset.items(), key=lambda item: (item[1], item[0]))]

    def _drop_if_empty(self, key: str) -> None:
        if key in self._data and not self._data[key]:
            del self._data[key]
            self._expires.pop(key, None)

    def ping(self) -> bool:
        return True

    # --- scalars ---

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._existing(key, None)

    def set(
        self, key: str, value: str, ttl_ms: Optional[int] = None, nx: bool = False
    ) -> bool:
        with self._lock:
            if nx and self._alive(key):
                return False
            self._data[key] = value
            if ttl_ms is not None:
                self._expires[key] = time.monotonic() + ttl_ms / 1000
            else:
                self._expires.pop(key, None)
            return True

    def delete(self, *keys: str) -> int:
        deleted = 0
        with self._lock:
            for key in keys:
                if self._alive(key):
                    deleted += 1
                self._data.pop(key, None)
                self._expires.pop(key, None)
        return deleted

    def expire(self, key: str, ttl_ms: int) -> bool:
        with self._lock:
            if not self._alive(key):
                return False
            self._expires[key] = time.monotonic() + ttl_ms / 1000
            return True

    # --- hashes ---

    def hset(self, key: str, mapping: Dict[str, str]) -> None:
        with self._lock:
            self._container(key, dict).update(mapping)

    def hget(self, key: str, field: str) -> Optional[str]:
        with self._lock:
            return self._existing(key, {}).get(field)

    def hgetall(self, key: str) -> Dict[str, str]:
        with self._lock:
            return dict(self._existing(key, {}))

    def hdel(self, key: str, *fields: str) -> int:
        with self._lock:
            data = self._existing(key, {})
            removed = sum(1 for f in fields if data.pop(f, None) is not None)
            self._drop_if_empty(key)
            return removed

    def hset_if(
        self, key: str, field: str, expected: str, mapping: Dict[str, str]
    ) -> bool:
        with self._lock:
            data = self._existing(key, None)
            if data is None or data.get(field) != expected:
                return False
            data.update(mapping)
            return True

    # --- sets ---

    def sadd(self, key: str, *members: str) -> int:
        with self._lock:
            data = self._container(key, set)
            added = len(set(members) - data)
            data.update(members)
            return added

    def srem(self, key: str, *members: str) -> int:
        with self._lock:
            data = self._existing(key, set())
            removed = len(data & set(members))
            data.difference_update(members)
            self._drop_if_empty(key)
            return removed

    def smembers(self, key: str) -> Set[str]:
        with self._lock:
            return set(self._existing(key, set()))

    # --- sorted sets ---

    def zadd(self, key: str, member: str, score: Score, xx: bool = False) -> bool:
        with self._lock:
            if xx:
                zset = self._existing(key, {})
                if member not in zset:
                    return False
                zset[member] = float(score)
                return True
            self._container(key, dict)[member] = float(score)
            return True

    def zrem(self, key: str, *members: str) -> int:
        with self._lock:
            zset = self._existing(key, {})
            removed = sum(1 for m in members if zset.pop(m, None) is not None)
            self._drop_if_empty(key)
            return removed

    def zscore(self, key: str, member: str) -> Optional[float]:
        with self._lock:
            return self._existing(key, {}).get(member)

    def zrange(self, key: str, start: int, stop: int, desc: bool = False) -> List[str]:
        with self._lock:
            members = self._sorted_members(key)
            if desc:
                members.reverse()
            # Redis semantics: inclusive stop, negative indexes from the end
            stop = len(members) + stop if stop < 0 else stop
            return members[start : stop + 1]

    def zrangebyscore(
        self,
        key: str,
        min_score: Union[Score, str],
        max_score: Union[Score, str],
        offset: int = 0,
        count: Optional[int] = None,
    ) -> List[str]:
        low, low_exclusive = _bound(min_score)
        high, high_exclusive = _bound(max_score)

        def in_range(score: float) -> bool:
            above = score > low if low_exclusive else score >= low
            below = score < high if high_exclusive else score <= high
            return above and below

        with self._lock:
            zset = self._existing(key, {})
            members = [m for m in self._sorted_members(key) if in_range(zset[m])]
            end = None if count is None else offset + count
            return members[offset:end]

    def zcard(self, key: str) -> int:
        with self._lock:
            return len(self._existing(key, {}))

    def zmove(self, source: str, destination: str, member: str, score: Score) -> bool:
        with self._lock:
            if self.zrem(source, member) == 0:
                return False
            self._container(destination, dict)[member] = float(score)
            return True

    # --- keyspace ---

    def keys(self, pattern: str) -> List[str]:
        with self._lock:
            return [k for k in list(self._data) if self._alive(k) and fnmatch.fnmatchcase(k, pattern)]

    def claim(
        self,
        queue_keys: List[str],
        running_key: str,
        max_score: Score,
        lease_score: Score,
        hash_prefix: str,
        updates: Dict[str, str],
        match_field: str = "name",
        allowed: Optional[Iterable[str]] = None,
        excluded: Optional[Iterable[str]] = None,
    ) -> Optional[str]:
        allowed = set(allowed) if allowed is not None else None
        excluded = set(excluded or ())
        with self._lock:
            for queue_key in queue_keys:
                for member in self.zrangebyscore(queue_key, "-inf", max_score):
                    record = self._existing(hash_prefix + member, None)
                    if record is None:
                        self.zrem(queue_key, member)
                        continue
                    value = record.get(match_field)
                    if allowed is not None and value not in allowed:
                        continue
                    if value in excluded:
                        continue

                    self.zrem(queue_key, member)
                    self._container(running_key, dict)[member] = float(lease_score)
                    record.update(updates)
                    return member
        return None
