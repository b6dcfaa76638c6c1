"""FastAPI dependency injection functions.

The runtime is built once in the application lifespan and stored on
`app.state.runtime`; endpoints pull the component they need from it.
"""

from fastapi import Depends, Request

from app.runtime import Runtime
from db.repository import Repository
from scheduling.scheduler import WorkflowScheduler
from services.workflow_service import WorkflowService
from triggers.router import TriggerRouter
from workflow.engine import WorkflowEngine


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def get_repository(runtime: Runtime = Depends(get_runtime)) -> Repository:
    return runtime.repository


def get_engine(runtime: Runtime = Depends(get_runtime)) -> WorkflowEngine:
    return runtime.engine


def get_scheduler(runtime: Runtime = Depends(get_runtime)) -> WorkflowScheduler:
    return runtime.scheduler


def get_trigger_router(runtime: Runtime = Depends(get_runtime)) -> TriggerRouter:
    return runtime.router


def get_workflow_service(runtime: Runtime = Depends(get_runtime)) -> WorkflowService:
    return runtime.workflows
