"""API v1 aggregated router, mounted under API_V1_PREFIX in main.py."""

from fastapi import APIRouter

from api.routes import executions, health, schedules, triggers, workflows
from api.schemas.common import ErrorResponse

api_v1_router = APIRouter(
    responses={code: {"model": ErrorResponse} for code in (401, 404, 409, 422, 503)},
)

api_v1_router.include_router(health.router, tags=["Health"])

for router, prefix, tag in (
    (workflows.router, "/workflows", "Workflows"),
    (executions.router, "/executions", "Executions"),
    (schedules.router, "/schedules", "Schedules"),
    # registrations, then the inbound calls they receive
    (triggers.webhooks_router, "/webhooks", "Webhooks"),
    (triggers.hooks_router, "/hooks", "Webhooks"),
    # email / form / named-event intake
    (triggers.router, "/triggers", "Triggers"),
):
    api_v1_router.include_router(router, prefix=prefix, tags=[tag])
