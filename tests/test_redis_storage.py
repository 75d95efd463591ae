import pytest
import redis

from taskrelay.client import Scheduler
from taskrelay.common.definition import define_task
from taskrelay.common.exceptions import BackendError
from taskrelay.common.task import TaskStatus
from taskrelay.registry import TaskRegistry
from taskrelay.server.worker import Worker
from taskrelay.storage.redis_storage import RedisBackend
from tests.test_tasks import add_task, wait_for


# --- Fixtures ---
@pytest.fixture
def redis_client():
    r = redis.Redis(host="localhost", port=6379, db=0)
    try:
        r.ping()
    except redis.exceptions.ConnectionError:
        pytest.skip("Redis server not running on localhost:6379")
    r.flushdb()  # Clear database before each test
    return r


@pytest.fixture
def backend(redis_client):
    return RedisBackend(connection_pool=redis_client.connection_pool)


def test_responses_are_decoded(backend):
    backend.set("k", "v")
    assert backend.get("k") == "v"


def test_set_nx_and_ttl(backend):
    assert backend.set("k", "first", ttl_ms=10000, nx=True) is True
    assert backend.set("k", "second", nx=True) is False
    assert 0 < backend.redis_client.pttl("k") <= 10000


def test_hashes_and_sets(backend):
    backend.hset("h", {"a": "1"})
    assert backend.hgetall("h") == {"a": "1"}
    backend.sadd("s", "x", "y")
    assert backend.smembers("s") == {"x", "y"}


def test_zadd_xx_with_unchanged_score(backend):
    backend.zadd("z", "a", 5)
    assert backend.zadd("z", "a", 5, xx=True) is True
    assert backend.zadd("z", "missing", 5, xx=True) is False


def test_zrangebyscore_exclusive_bound(backend):
    for i in range(3):
        backend.zadd("z", f"m{i}", i)
    assert backend.zrangebyscore("z", "-inf", "(2") == ["m0", "m1"]
    assert backend.zrangebyscore("z", "-inf", "+inf", offset=1, count=1) == ["m1"]


def test_zmove_script(backend):
    backend.zadd("running", "a", 100)
    assert backend.zmove("running", "queue", "a", 5) is True
    assert backend.zscore("queue", "a") == 5
    assert backend.zmove("running", "queue", "a", 7) is False


def test_hset_if_script(backend):
    backend.hset("h", {"status": "running", "input": "1"})
    assert backend.hset_if("h", "status", "pending", {"input": "2"}) is False
    backend.hset("h", {"status": "pending"})
    assert backend.hset_if("h", "status", "pending", {"input": "2"}) is True
    assert backend.hget("h", "input") == "2"


def test_claim_script(backend):
    backend.hset("t:email", {"name": "email"})
    backend.hset("t:report", {"name": "report"})
    backend.zadd("q", "orphan", 1)
    backend.zadd("q", "email", 2)
    backend.zadd("q", "report", 3)

    claimed = backend.claim(["q"], "running", 10, 40, "t:", {"status": "running"}, excluded=["email"])

    assert claimed == "report"
    assert backend.zrange("q", 0, -1) == ["email"]
    assert backend.zscore("running", "report") == 40
    assert backend.hget("t:report", "status") == "running"
    assert backend.claim(["q"], "running", 10, 40, "t:", {}, allowed=["report"]) is None


def test_worker_round_trip(backend):
    registry = TaskRegistry(define_task("add", add_task))
    scheduler = Scheduler(backend, registry)
    task_id = scheduler.enqueue(registry.get("add"), {"x": 2, "y": 3})

    worker = Worker(backend, registry, worker_id="redis-worker", poll_interval_ms=20)
    worker.start()
    try:
        assert wait_for(lambda: scheduler.get_task(task_id).status == TaskStatus.COMPLETED)
    finally:
        worker.stop()
    assert scheduler.get_task(task_id).result == 5


def test_connection_errors_become_backend_errors():
    backend = RedisBackend(url="redis://localhost:6399/0")
    with pytest.raises(BackendError):
        backend.get("k")
