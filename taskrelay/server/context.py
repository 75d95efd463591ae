from typing import Optional

from taskrelay.common.definition import TaskDefinition
from taskrelay.common.states import BaseState
from taskrelay.common.task import Task


class ElectStateContext:
    def __init__(
        self,
        task: Task,
        definition: Optional[TaskDefinition],
        candidate_state: BaseState,
        now: int,
    ):
        self.task = task
        self.definition = definition
        self.candidate_state = candidate_state
        self.now = now
