"""
Base task interface for all action implementations.

Every action kind (transform, HTTP call, delegated integration, ...)
inherits from BaseTask and implements execute(). Failures are raised as
exceptions so the retry coordinator can classify them; run() checks the
required configuration keys, then times and logs execute() and re-raises.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, Optional

import structlog

from core.exceptions import InvalidConfiguration

if TYPE_CHECKING:
    from workflow.context import ExecutionContext

logger = structlog.get_logger(__name__)


@dataclass
class TaskResult:
    output: Any = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    duration_ms: float = 0.0


class BaseTask(ABC):
    """
    Abstract base class for all action implementations.

    Subclasses set `task_type`, `display_name` and `description`, implement
    execute(), and declare their configuration in get_config_schema().
    """

    task_type: str = "base"
    display_name: str = "Base Task"
    description: str = "Abstract base task"

    @abstractmethod
    async def execute(
        self,
        config: Dict[str, Any],
        context: Optional["ExecutionContext"] = None,
    ) -> TaskResult:
        """
        Execute the task with an already-resolved configuration.

        Raises:
            InvalidConfiguration, TypeMismatch, or a transport error
        """

    def check_required(self, config: Dict[str, Any]) -> None:
        for name in self.get_config_schema().get("required", []):
            if config.get(name) in (None, ""):
                raise InvalidConfiguration(f"Missing required config: {name}")

    async def run(
        self,
        config: Dict[str, Any],
        context: Optional["ExecutionContext"] = None,
    ) -> TaskResult:
        """Entry point called by the action dispatcher."""
        self.check_required(config)
        log = logger.bind(task_type=self.task_type)
        start = time.monotonic()
        try:
            result = await self.execute(config, context)
        except Exception as e:
            log.warning(
                "Task failed",
                error=str(e),
                error_type=type(e).__name__,
                duration_ms=round((time.monotonic() - start) * 1000, 2),
            )
            raise

        result.duration_ms = (time.monotonic() - start) * 1000
        log.debug("Task completed", duration_ms=round(result.duration_ms, 2))
        return result

    @classmethod
    def get_config_schema(cls) -> Dict[str, Any]:
        """JSON schema of the configuration; `required` keys are enforced by run()."""
        return {"type": "object", "properties": {}}
