"""Built-in control actions: delay, set_variable, log."""

import asyncio
from typing import Any, Dict

import structlog

from core.exceptions import InvalidConfiguration
from tasks.base_task import BaseTask, TaskResult

logger = structlog.get_logger(__name__)

MAX_DELAY_MS = 300_000  # 5 minutes


class DelayTask(BaseTask):
    """Pause the run for a fixed number of milliseconds.

    Config:
        delay: milliseconds, 0..300000 (default 1000)
    """

    task_type = "delay"
    display_name = "Delay"
    description = "Wait before continuing"

    async def execute(self, config: Dict[str, Any], context=None) -> TaskResult:
        raw = config.get("delay", 1000)
        try:
            delay_ms = int(raw)
        except (TypeError, ValueError):
            raise InvalidConfiguration(f"Delay must be a number of milliseconds, got {raw!r}")
        if delay_ms < 0 or delay_ms > MAX_DELAY_MS:
            raise InvalidConfiguration(f"Delay must be between 0 and {MAX_DELAY_MS}ms")

        await asyncio.sleep(delay_ms / 1000)
        return TaskResult(output={"delayed_ms": delay_ms, "message": f"Delayed execution by {delay_ms}ms"})


class SetVariableTask(BaseTask):
    """Write values into the run's variable bag.

    Config:
        name + value, or variables: {"dotted.key": value, ...}
    """

    task_type = "set_variable"
    display_name = "Set Variable"
    description = "Store values for later steps"

    async def execute(self, config: Dict[str, Any], context=None) -> TaskResult:
        if "variables" in config:
            assignments = config["variables"]
            if not isinstance(assignments, dict):
                raise InvalidConfiguration("'variables' must be an object")
        elif config.get("name"):
            assignments = {config["name"]: config.get("value")}
        else:
            raise InvalidConfiguration("set_variable requires 'name' or 'variables'")

        if context is not None:
            for key, value in assignments.items():
                context.set_variable(key, value)
        return TaskResult(output=dict(assignments))


class LogTask(BaseTask):
    """Emit a message to the application log."""

    task_type = "log"
    display_name = "Log Message"
    description = "Write a message to the execution log"

    async def execute(self, config: Dict[str, Any], context=None) -> TaskResult:
        message = str(config.get("message", ""))
        level = str(config.get("level", "info")).lower()
        if level not in ("debug", "info", "warning", "error"):
            raise InvalidConfiguration(f"Unknown log level: {level}")
        getattr(logger, level)(
            message,
            execution_id=getattr(context, "execution_id", None),
        )
        return TaskResult(output={"message": message, "level": level})


CONTROL_TASK_TYPES = {
    "delay": DelayTask,
    "set_variable": SetVariableTask,
    "log": LogTask,
}
