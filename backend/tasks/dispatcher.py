"""Action dispatcher.

Runs one typed unit of work: looks up the action type in the task
registry, resolves `{{placeholders}}` in its configuration against the
run's variable bag and executes it. Unresolved placeholders are passed
through verbatim.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import structlog

from core.exceptions import InvalidConfiguration, UnknownActionType
from tasks.registry import TaskRegistry
from workflow.context import ExecutionContext
from workflow.templating import resolve_value

logger = structlog.get_logger(__name__)


@dataclass
class ActionConfig:
    """An action type plus its (unresolved) configuration."""
    type: str
    config: Dict[str, Any] = field(default_factory=dict)


class ActionDispatcher:
    def __init__(self, registry: Optional[TaskRegistry] = None):
        self.registry = registry or TaskRegistry()

    def resolve(self, config: Dict[str, Any], context: Optional[ExecutionContext]) -> Dict[str, Any]:
        variables = context.variables if context is not None else {}
        resolved = resolve_value(config, variables)
        if not isinstance(resolved, dict):
            raise InvalidConfiguration("Action configuration must be an object")
        return resolved

    async def execute(self, action: ActionConfig, context: Optional[ExecutionContext] = None) -> Any:
        """Execute an action and return its output.

        Raises:
            UnknownActionType: No task is registered for the type
            InvalidConfiguration: The resolved configuration is malformed
            Any transport/provider error raised by the task
        """
        task = self.registry.create_instance(action.type)
        if task is None:
            raise UnknownActionType(action.type)

        resolved = self.resolve(action.config, context)
        result = await task.run(resolved, context)
        return result.output
