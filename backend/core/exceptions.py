"""Custom exceptions for the workflow automation engine."""

from typing import Optional


class EngineException(Exception):
    """Base exception for the workflow automation engine."""

    def __init__(self, message: str, status_code: int = 500):
        """Initialize exception with message and status code.

        Args:
            message: Exception message
            status_code: HTTP status code
        """
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)


class NotFoundError(EngineException):
    """Resource not found exception."""

    def __init__(self, message: str = "Resource not found"):
        super().__init__(message, 404)


class ValidationError(EngineException):
    """Validation error exception."""

    def __init__(self, message: str = "Validation failed"):
        super().__init__(message, 422)


class ConflictError(EngineException):
    """Resource conflict exception."""

    def __init__(self, message: str = "Resource conflict"):
        super().__init__(message, 409)


# ─── Lookups ───────────────────────────────────────────────────

class WorkflowNotFound(NotFoundError):
    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(f"Workflow not found: {workflow_id}")


class ExecutionNotFound(NotFoundError):
    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__(f"Execution not found: {execution_id}")


class ScheduleNotFound(NotFoundError):
    def __init__(self, schedule_id: str):
        self.schedule_id = schedule_id
        super().__init__(f"Schedule not found: {schedule_id}")


class WebhookNotFound(NotFoundError):
    def __init__(self, webhook_id: str):
        self.webhook_id = webhook_id
        super().__init__(f"Webhook not found: {webhook_id}")


class WorkflowInactive(ConflictError):
    """Raised when a run is requested for a workflow that is not active."""

    def __init__(self, workflow_id: str, status: str):
        self.workflow_id = workflow_id
        super().__init__(f"Workflow {workflow_id} is not active (status: {status})")


# ─── Validation ────────────────────────────────────────────────

class InvalidTimezone(ValidationError):
    def __init__(self, timezone_name: str):
        self.timezone_name = timezone_name
        super().__init__(f"Invalid timezone: {timezone_name}")


class InvalidCronExpression(ValidationError):
    def __init__(self, expression: str):
        self.expression = expression
        super().__init__(f"Invalid cron expression: {expression}")


class InvalidConfiguration(ValidationError):
    """An action configuration is malformed (bad URL, missing field, ...)."""


class TypeMismatch(ValidationError):
    """A transform received a value of the wrong type."""


class LoopLimitExceeded(ValidationError):
    def __init__(self, step_id: str, size: int, limit: int):
        self.step_id = step_id
        super().__init__(
            f"Loop step '{step_id}' has {size} items, exceeding max_iterations={limit}"
        )


class UnknownActionType(ValidationError):
    def __init__(self, action_type: str):
        self.action_type = action_type
        super().__init__(f"Unknown action type: {action_type}")


# ─── Runtime failures ──────────────────────────────────────────

class InvalidSignature(EngineException):
    def __init__(self, message: str = "Invalid webhook signature"):
        super().__init__(message, 401)


class CircuitOpenError(EngineException):
    """The circuit for a service is open; the call was not attempted."""

    def __init__(self, service_id: str):
        self.service_id = service_id
        super().__init__(f"Service unavailable, circuit open: {service_id}", 503)


class HttpStatusError(EngineException):
    """An upstream HTTP call answered with a non-2xx status."""

    def __init__(self, status: int, reason: str = ""):
        self.status = status
        super().__init__(f"HTTP {status}: {reason}".rstrip(": "), 502)


class ExecutionTimeout(EngineException):
    def __init__(self, timeout_seconds: float, execution_id: Optional[str] = None):
        self.timeout_seconds = timeout_seconds
        self.execution_id = execution_id
        super().__init__(f"Execution timed out after {timeout_seconds}s", 504)


class StepFailedError(EngineException):
    """A step failed and its error policy aborts the run."""

    def __init__(self, step_id: str, message: str, cause: Optional[BaseException] = None):
        self.step_id = step_id
        self.cause = cause
        super().__init__(message, 500)
