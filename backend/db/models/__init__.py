"""Database models for the workflow automation engine.

This module imports all models to ensure they are registered
with SQLAlchemy's declarative base.
"""

from db.models.workflow import WorkflowModel
from db.models.execution import ExecutionModel
from db.models.execution_state import CheckpointModel
from db.models.schedule import ScheduleModel, ScheduledExecutionModel
from db.models.webhook import WebhookModel

__all__ = [
    "WorkflowModel",
    "ExecutionModel",
    "CheckpointModel",
    "ScheduleModel",
    "ScheduledExecutionModel",
    "WebhookModel",
]
