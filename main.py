# main.py
import logging
import time

from taskrelay.client import Scheduler
from taskrelay.common.definition import define_task
from taskrelay.config import TaskRelaySettings, create_backend
from taskrelay.registry import TaskRegistry
from taskrelay.server.worker import Worker


def sample_task(context, input):
    print(f"Executing sample_task (attempt {context.attempt}) with input: {input}")
    return input["x"] + input["y"]


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)

    # 1. Build a backend from TASKRELAY_* environment variables (memory by default)
    settings = TaskRelaySettings.from_env()
    backend = create_backend(settings)

    # 2. Register task definitions
    registry = TaskRegistry(define_task("sample_task", sample_task))

    # 3. Enqueue a task
    scheduler = Scheduler(backend, registry)
    task_id = scheduler.enqueue(registry.get("sample_task"), {"x": 1, "y": 2})
    print(f"Enqueued task {task_id} for sample_task(1, 2)")

    # 4. Start a worker on a background thread
    worker = Worker(backend, registry, **settings.worker_options())
    worker.start()

    # 5. Wait and check task status
    time.sleep(2)  # Give the worker time to process

    task = scheduler.get_task(task_id)
    print(f"\nTask after execution: status={task.status}, result={task.result}")

    # Stop the worker gracefully
    worker.stop()
    print("\nDemonstration finished.")
