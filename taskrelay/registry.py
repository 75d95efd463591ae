# taskrelay/registry.py
import logging
from typing import Dict, List, Optional

from .common.definition import TaskDefinition
from .common.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


class TaskRegistry:
    """Maps task names to their definitions."""

    def __init__(self, *definitions: TaskDefinition):
        self._definitions: Dict[str, TaskDefinition] = {}
        for definition in definitions:
            self.register(definition)

    def register(self, definition: TaskDefinition) -> TaskDefinition:
        if not isinstance(definition, TaskDefinition):
            raise ConfigurationError(
                f"Expected a TaskDefinition, got {type(definition).__name__}"
            )
        if definition.name in self._definitions:
            logger.debug(f"Overwriting task definition '{definition.name}'")
        self._definitions[definition.name] = definition
        return definition

    def unregister(self, name: str) -> None:
        self._definitions.pop(name, None)

    def get(self, name: str) -> Optional[TaskDefinition]:
        return self._definitions.get(name)

    def get_all(self) -> List[TaskDefinition]:
        return list(self._definitions.values())

    def names(self) -> List[str]:
        return list(self._definitions)

    def __contains__(self, name: str) -> bool:
        return name in self._definitions

    def __len__(self) -> int:
        return len(self._definitions)
