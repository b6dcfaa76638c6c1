"""
Integration Task: call an externally supplied integration from a workflow.

Integrations (spreadsheets, chat, CRM, AI tools, ...) live outside the
engine. Each one is registered under a name as an async callable taking
the resolved configuration and returning a result or raising.
"""

from typing import Any, Awaitable, Callable, Dict, Optional

import structlog

from core.exceptions import UnknownActionType
from tasks.base_task import BaseTask, TaskResult

logger = structlog.get_logger(__name__)

IntegrationHandler = Callable[[Dict[str, Any]], Awaitable[Any]]


class IntegrationRegistry:
    """Named integration handlers supplied by the host application."""

    def __init__(self):
        self._handlers: Dict[str, IntegrationHandler] = {}

    def register(self, name: str, handler: IntegrationHandler) -> None:
        self._handlers[name] = handler
        logger.info("Integration registered", integration=name)

    def unregister(self, name: str) -> None:
        self._handlers.pop(name, None)

    def get(self, name: str) -> Optional[IntegrationHandler]:
        return self._handlers.get(name)

    def list_all(self) -> list[str]:
        return sorted(self._handlers)


class IntegrationRequestTask(BaseTask):
    """Delegate to a registered integration.

    Config:
        integration: registered integration name (required)
        operation / params / ...: passed through to the handler
    """

    task_type = "integration"
    display_name = "Integration Call"
    description = "Call a registered external integration"

    def __init__(self, registry: Optional[IntegrationRegistry] = None):
        self.registry = registry or IntegrationRegistry()

    async def execute(self, config: Dict[str, Any], context=None) -> TaskResult:
        name = config["integration"]
        handler = self.registry.get(name)
        if handler is None:
            raise UnknownActionType(f"integration:{name}")

        payload = {k: v for k, v in config.items() if k != "integration"}
        result = await handler(payload)
        return TaskResult(output=result, metadata={"integration": name})

    @classmethod
    def get_config_schema(cls) -> Dict[str, Any]:
        return {
            "type": "object",
            "required": ["integration"],
            "properties": {
                "integration": {"type": "string", "description": "Registered integration name"},
            },
            "additionalProperties": True,
        }
