# taskrelay/storage/redis_storage.py
import functools
import json
import logging
from typing import Optional, List, Dict, Iterable, Set, Union

import redis

from .base import KeyValueBackend, Score
from ..common.exceptions import BackendError

logger = logging.getLogger(__name__)


def _translate_errors(method):
    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        try:
            return method(self, *args, **kwargs)
        except redis.exceptions.RedisError as e:
            raise BackendError(f"Redis {method.__name__} failed: {e}") from e

    return wrapper


def _decoding_pool(pool: redis.ConnectionPool) -> redis.ConnectionPool:
    """A pool like ``pool`` whose connections decode responses to str."""
    if pool.connection_kwargs.get("decode_responses", False):
        return pool
    return pool.__class__(
        connection_class=pool.connection_class,
        **{**pool.connection_kwargs, "decode_responses": True},
    )


class RedisBackend(KeyValueBackend):
    """
    Backend on a single Redis server.

    The claim script touches task hashes it cannot declare up front, so the
    backend does not support Redis Cluster.
    """

    def __init__(self, connection_pool=None, redis_client=None, url: Optional[str] = None):
        if redis_client:
            self.redis_client = redis.Redis(
                connection_pool=_decoding_pool(redis_client.connection_pool)
            )
        elif connection_pool:
            self.redis_client = redis.Redis(connection_pool=_decoding_pool(connection_pool))
        elif url:
            self.redis_client = redis.Redis.from_url(url, decode_responses=True)
        else:
            self.redis_client = redis.Redis(
                host="localhost", port=6379, db=0, decode_responses=True
            )

        # Lua script for atomically claiming the first eligible queue member
        self.claim_script = self.redis_client.register_script("""
            local running_key = KEYS[1]
            local max_score = ARGV[1]
            local lease_score = ARGV[2]
            local hash_prefix = ARGV[3]
            local match_field = ARGV[4]
            local has_allowed = ARGV[5] == '1'
            local allowed = cjson.decode(ARGV[6])
            local excluded = cjson.decode(ARGV[7])
            local updates = cjson.decode(ARGV[8])

            local function contains(list, value)
                for _, item in ipairs(list) do
                    if item == value then
                        return true
                    end
                end
                return false
            end

            for i = 2, #KEYS do
                local queue_key = KEYS[i]
                local members = redis.call('ZRANGEBYSCORE', queue_key, '-inf', max_score)
                for _, member in ipairs(members) do
                    local task_key = hash_prefix .. member
                    if redis.call('EXISTS', task_key) == 0 then
                        redis.call('ZREM', queue_key, member)
                    else
                        local value = redis.call('HGET', task_key, match_field)
                        local eligible = true
                        if has_allowed and not contains(allowed, value) then
                            eligible = false
                        end
                        if eligible and contains(excluded, value) then
                            eligible = false
                        end
                        if eligible then
                            redis.call('ZREM', queue_key, member)
                            redis.call('ZADD', running_key, lease_score, member)
                            if #updates > 0 then
                                redis.call('HSET', task_key, unpack(updates))
                            end
                            return member
                        end
                    end
                end
            end
            return false
        """)

        self.hset_if_script = self.redis_client.register_script("""
            if redis.call('HGET', KEYS[1], ARGV[1]) ~= ARGV[2] then
                return 0
            end
            redis.call('HSET', KEYS[1], unpack(cjson.decode(ARGV[3])))
            return 1
        """)

        self.zmove_script = self.redis_client.register_script("""
            if redis.call('ZREM', KEYS[1], ARGV[1]) == 0 then
                return 0
            end
            redis.call('ZADD', KEYS[2], ARGV[2], ARGV[1])
            return 1
        """)

    @_translate_errors
    def ping(self) -> bool:
        return bool(self.redis_client.ping())

    @_translate_errors
    def get(self, key: str) -> Optional[str]:
        return self.redis_client.get(key)

    @_translate_errors
    def set(
        self, key: str, value: str, ttl_ms: Optional[int] = None, nx: bool = False
    ) -> bool:
        return bool(self.redis_client.set(key, value, px=ttl_ms, nx=nx))

    @_translate_errors
    def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return self.redis_client.delete(*keys)

    @_translate_errors
    def expire(self, key: str, ttl_ms: int) -> bool:
        return bool(self.redis_client.pexpire(key, ttl_ms))

    @_translate_errors
    def hset(self, key: str, mapping: Dict[str, str]) -> None:
        if mapping:
            self.redis_client.hset(key, mapping=mapping)

    @_translate_errors
    def hget(self, key: str, field: str) -> Optional[str]:
        return self.redis_client.hget(key, field)

    @_translate_errors
    def hgetall(self, key: str) -> Dict[str, str]:
        return self.redis_client.hgetall(key)

    @_translate_errors
    def hdel(self, key: str, *fields: str) -> int:
        if not fields:
            return 0
        return self.redis_client.hdel(key, *fields)

    @_translate_errors
    def hset_if(
        self, key: str, field: str, expected: str, mapping: Dict[str, str]
    ) -> bool:
        flat_mapping = []
        for name, value in mapping.items():
            flat_mapping.extend([name, value])
        if not flat_mapping:
            return self.redis_client.hget(key, field) == expected
        return bool(
            self.hset_if_script(keys=[key], args=[field, expected, json.dumps(flat_mapping)])
        )

    @_translate_errors
    def sadd(self, key: str, *members: str) -> int:
        return self.redis_client.sadd(key, *members) if members else 0

    @_translate_errors
    def srem(self, key: str, *members: str) -> int:
        return self.redis_client.srem(key, *members) if members else 0

    @_translate_errors
    def smembers(self, key: str) -> Set[str]:
        return set(self.redis_client.smembers(key))

    @_translate_errors
    def zadd(self, key: str, member: str, score: Score, xx: bool = False) -> bool:
        if xx:
            if self.redis_client.zadd(key, {member: score}, xx=True, ch=True):
                return True
            # CH counts 0 when the score was already equal
            return self.redis_client.zscore(key, member) is not None
        self.redis_client.zadd(key, {member: score})
        return True

    @_translate_errors
    def zrem(self, key: str, *members: str) -> int:
        return self.redis_client.zrem(key, *members) if members else 0

    @_translate_errors
    def zscore(self, key: str, member: str) -> Optional[float]:
        return self.redis_client.zscore(key, member)

    @_translate_errors
    def zrange(self, key: str, start: int, stop: int, desc: bool = False) -> List[str]:
        return self.redis_client.zrange(key, start, stop, desc=desc)

    @_translate_errors
    def zrangebyscore(
        self,
        key: str,
        min_score: Union[Score, str],
        max_score: Union[Score, str],
        offset: int = 0,
        count: Optional[int] = None,
    ) -> List[str]:
        if count is None and offset == 0:
            return self.redis_client.zrangebyscore(key, min_score, max_score)
        return self.redis_client.zrangebyscore(
            key, min_score, max_score, start=offset, num=-1 if count is None else count
        )

    @_translate_errors
    def zcard(self, key: str) -> int:
        return self.redis_client.zcard(key)

    @_translate_errors
    def zmove(self, source: str, destination: str, member: str, score: Score) -> bool:
        return bool(self.zmove_script(keys=[source, destination], args=[member, score]))

    @_translate_errors
    def keys(self, pattern: str) -> List[str]:
        return list(self.redis_client.scan_iter(match=pattern))

    @_translate_errors
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
        if not queue_keys:
            return None
        flat_updates = []
        for field, value in updates.items():
            flat_updates.extend([field, value])
        result = self.claim_script(
            keys=[running_key, *queue_keys],
            args=[
                max_score,
                lease_score,
                hash_prefix,
                match_field,
                "1" if allowed is not None else "0",
                json.dumps(list(allowed or [])),
                json.dumps(list(excluded or [])),
                json.dumps(flat_updates),
            ],
        )
        return result or None
