# taskrelay/storage/base.py
from abc import ABC, abstractmethod
from typing import Optional, List, Dict, Iterable, Set, Union

Score = Union[int, float]


class KeyValueBackend(ABC):
    """
    The key-value operations taskrelay needs from its shared store.

    Every method is atomic on its own. ``claim`` is the one compound
    operation and must be executed as a single atomic step (a lock in
    process, a server-side script in Redis).
    """

    @abstractmethod
    def ping(self) -> bool: ...

    # Scalars
    @abstractmethod
    def get(self, key: str) -> Optional[str]: ...

    @abstractmethod
    def set(
        self, key: str, value: str, ttl_ms: Optional[int] = None, nx: bool = False
    ) -> bool: ...

    @abstractmethod
    def delete(self, *keys: str) -> int: ...

    @abstractmethod
    def expire(self, key: str, ttl_ms: int) -> bool: ...

    # Hashes
    @abstractmethod
    def hset(self, key: str, mapping: Dict[str, str]) -> None: ...

    @abstractmethod
    def hget(self, key: str, field: str) -> Optional[str]: ...

    @abstractmethod
    def hgetall(self, key: str) -> Dict[str, str]: ...

    @abstractmethod
    def hdel(self, key: str, *fields: str) -> int: ...

    @abstractmethod
    def hset_if(
        self, key: str, field: str, expected: str, mapping: Dict[str, str]
    ) -> bool:
        """Writes ``mapping`` only while ``field`` still equals ``expected``."""

    # Sets
    @abstractmethod
    def sadd(self, key: str, *members: str) -> int: ...

    @abstractmethod
    def srem(self, key: str, *members: str) -> int: ...

    @abstractmethod
    def smembers(self, key: str) -> Set[str]: ...

    # Sorted sets. Members with equal scores order by member.
    @abstractmethod
    def zadd(self, key: str, member: str, score: Score, xx: bool = False) -> bool:
        """Adds or updates ``member``. With ``xx`` only existing members are
        updated; returns whether anything was written."""

    @abstractmethod
    def zrem(self, key: str, *members: str) -> int: ...

    @abstractmethod
    def zscore(self, key: str, member: str) -> Optional[float]: ...

    @abstractmethod
    def zrange(self, key: str, start: int, stop: int, desc: bool = False) -> List[str]: ...

    @abstractmethod
    def zrangebyscore(
        self,
        key: str,
        min_score: Union[Score, str],
        max_score: Union[Score, str],
        offset: int = 0,
        count: Optional[int] = None,
    ) -> List[str]: ...

    @abstractmethod
    def zcard(self, key: str) -> int: ...

    @abstractmethod
    def zmove(self, source: str, destination: str, member: str, score: Score) -> bool:
        """Moves ``member`` from ``source`` to ``destination`` with ``score``.
        Returns ``False`` and writes nothing when ``member`` is not in ``source``."""

    # Keyspace
    @abstractmethod
    def keys(self, pattern: str) -> List[str]: ...

    @abstractmethod
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
        """
        Atomically takes the first eligible member off the queues.

        ``queue_keys`` are scanned in order; inside a queue members with a
        score ``<= max_score`` are visited lowest score first, ties by member.
        A member is eligible when the ``match_field`` of the hash at
        ``hash_prefix + member`` is in ``allowed`` (if given) and not in
        ``excluded``. Members whose hash no longer exists are dropped.

        The winner is removed from its queue, added to ``running_key`` with
        ``lease_score``, and ``updates`` are written to its hash. Returns the
        member, or ``None`` when nothing is eligible.
        """
