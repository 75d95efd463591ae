# taskrelay/filters/base.py
from abc import ABC


class TaskFilter(ABC):
    def on_state_election(self, elect_state_context):
        pass  # Default implementation does nothing
