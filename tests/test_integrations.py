import pytest

from taskrelay.client import Scheduler
from taskrelay.common.definition import define_task
from taskrelay.common.task import TaskStatus
from taskrelay.recurring import RecurringManager, RecurringSpec
from taskrelay.registry import TaskRegistry
from taskrelay.storage.memory_storage import MemoryBackend
from tests.test_tasks import add_task, wait_for

fastapi = pytest.importorskip("fastapi")
from fastapi import Depends, FastAPI  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from taskrelay.integrations.fastapi import TaskRelayFastAPIPlugin, get_scheduler  # noqa: E402


@pytest.fixture
def backend():
    return MemoryBackend()


@pytest.fixture
def registry():
    return TaskRegistry(define_task("add", add_task))


def _create_app(plugin):
    app = FastAPI(lifespan=plugin.lifespan)

    @app.post("/add")
    def enqueue_add(x: int, y: int, scheduler: Scheduler = Depends(get_scheduler)):
        task_id = scheduler.enqueue(scheduler.registry.get("add"), {"x": x, "y": y})
        return {"task_id": task_id}

    @app.get("/tasks/{task_id}")
    def read_task(task_id: str, scheduler: Scheduler = Depends(get_scheduler)):
        task = scheduler.get_task(task_id)
        return {"status": task.status, "result": task.result}

    return app


def test_fastapi_plugin_enqueues_and_processes(backend, registry):
    plugin = TaskRelayFastAPIPlugin(backend, registry).run_workers_in_background(
        poll_interval_ms=20
    )
    app = _create_app(plugin)

    with TestClient(app) as client:
        assert app.state.taskrelay_scheduler is plugin.get_scheduler()
        assert len(plugin.workers) == 1

        task_id = client.post("/add", params={"x": 2, "y": 5}).json()["task_id"]
        assert wait_for(
            lambda: client.get(f"/tasks/{task_id}").json()["status"] == TaskStatus.COMPLETED
        )
        assert client.get(f"/tasks/{task_id}").json()["result"] == 7

    assert plugin.workers == []


def test_fastapi_plugin_without_workers(backend, registry):
    plugin = TaskRelayFastAPIPlugin(backend, registry)
    app = _create_app(plugin)

    with TestClient(app) as client:
        task_id = client.post("/add", params={"x": 1, "y": 1}).json()["task_id"]
        assert client.get(f"/tasks/{task_id}").json()["status"] == TaskStatus.PENDING


def test_fastapi_plugin_runs_recurring_scheduler(backend, registry):
    RecurringManager(backend).create("add", {"x": 1, "y": 1}, RecurringSpec(interval_ms=20))
    plugin = TaskRelayFastAPIPlugin(backend, registry).run_recurring_scheduler(interval_ms=20)

    with TestClient(_create_app(plugin)):
        assert wait_for(lambda: plugin.get_scheduler().get_queue_depth() >= 1)


def test_litestar_configuration(backend, registry):
    pytest.importorskip("litestar")
    from litestar import Litestar, get
    from litestar.testing import TestClient as LitestarTestClient

    from taskrelay.integrations.litestar import configure_taskrelay, taskrelay_dependency

    @get("/depth")
    async def depth(taskrelay_scheduler: Scheduler) -> dict:
        return {"depth": taskrelay_scheduler.get_queue_depth()}

    app = Litestar(
        route_handlers=[depth],
        dependencies={"taskrelay_scheduler": taskrelay_dependency()},
    )
    scheduler = configure_taskrelay(app, backend, registry)
    scheduler.enqueue(registry.get("add"), {"x": 1, "y": 1})

    with LitestarTestClient(app=app) as client:
        assert client.get("/depth").json() == {"depth": 1}


def test_litestar_runs_background_workers(backend, registry):
    pytest.importorskip("litestar")
    from litestar import Litestar
    from litestar.testing import TestClient as LitestarTestClient

    from taskrelay.integrations.litestar import configure_taskrelay

    app = Litestar(route_handlers=[])
    scheduler = configure_taskrelay(app, backend, registry, workers=1, poll_interval_ms=20)
    runtime = app.state.taskrelay_runtime

    with LitestarTestClient(app=app):
        assert len(runtime.workers) == 1
        task_id = scheduler.enqueue(registry.get("add"), {"x": 3, "y": 4})
        assert wait_for(lambda: scheduler.get_task(task_id).status == TaskStatus.COMPLETED)
        assert scheduler.get_task(task_id).result == 7

    assert runtime.workers == []
