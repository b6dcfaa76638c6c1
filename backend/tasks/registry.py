"""
Task Type Registry: central registry for all available action types.

Maps action type strings to task factories. Built-in types are registered
on construction; the host application registers its own action kinds
(either BaseTask subclasses, configured instances, or plain async
callables taking the resolved config).
"""

from typing import Any, Awaitable, Callable, Dict, Optional, Type

from tasks.base_task import BaseTask, TaskResult
from tasks.implementations.control_task import CONTROL_TASK_TYPES
from tasks.implementations.http_task import HTTP_TASK_TYPES
from tasks.implementations.integration_task import IntegrationRegistry, IntegrationRequestTask
from tasks.implementations.transform_task import TransformTask


class FunctionTask(BaseTask):
    """Adapts an `async handler(resolved_config) -> result` into a task."""

    def __init__(self, task_type: str, handler: Callable[[Dict[str, Any]], Awaitable[Any]]):
        self.task_type = task_type
        self.display_name = task_type
        self.handler = handler

    async def execute(self, config: Dict[str, Any], context=None) -> TaskResult:
        return TaskResult(output=await self.handler(config))


TaskFactory = Callable[[], BaseTask]


class TaskRegistry:
    """Central registry for all task type implementations."""

    def __init__(
        self,
        integrations: Optional[IntegrationRegistry] = None,
        register_builtins: bool = True,
    ):
        self._tasks: Dict[str, TaskFactory] = {}
        self._meta: Dict[str, Type[BaseTask]] = {}
        self.integrations = integrations or IntegrationRegistry()
        if register_builtins:
            self._register_builtin_tasks()

    def _register_builtin_tasks(self):
        """Register all built-in task types."""
        self.register("transform", TransformTask)

        for task_type, task_class in CONTROL_TASK_TYPES.items():
            self.register(task_type, task_class)

        for task_type, task_class in HTTP_TASK_TYPES.items():
            self.register(task_type, task_class)

        self.register_instance("integration", IntegrationRequestTask(self.integrations))

    def register(self, task_type: str, task_class: Type[BaseTask]):
        """Register a task class; a new instance is created per call."""
        self._tasks[task_type] = task_class
        self._meta[task_type] = task_class

    def register_instance(self, task_type: str, task: BaseTask):
        """Register a configured task instance shared by all calls."""
        self._tasks[task_type] = lambda: task
        self._meta[task_type] = type(task)

    def register_handler(self, task_type: str, handler: Callable[[Dict[str, Any]], Awaitable[Any]]):
        """Register an externally supplied action kind."""
        self.register_instance(task_type, FunctionTask(task_type, handler))

    def unregister(self, task_type: str):
        self._tasks.pop(task_type, None)
        self._meta.pop(task_type, None)

    def create_instance(self, task_type: str) -> Optional[BaseTask]:
        """Create (or fetch) the task for a type."""
        factory = self._tasks.get(task_type)
        return factory() if factory else None

    def list_all(self) -> list:
        """List all registered task types with metadata."""
        return [
            {
                "task_type": task_type,
                "display_name": cls.display_name if cls is not FunctionTask else task_type,
                "description": cls.description,
                "config_schema": cls.get_config_schema(),
            }
            for task_type, cls in self._meta.items()
        ]

    @property
    def available_types(self) -> list:
        return list(self._tasks.keys())
