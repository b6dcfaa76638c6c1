"""Database seed script: creates a demo workflow with a schedule and a webhook.

Run: python -m scripts.seed
"""

import asyncio
import os
import sys

# Ensure project root is in path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

DEMO_WORKFLOW = {
    "name": "Order intake",
    "description": "Fetch an order, branch on its total and notify the team.",
    "status": "active",
    "variables": {"orders_api": "https://orders.example.com/api"},
    "trigger": {"kind": "webhook"},
    "steps": [
        {
            "id": "fetch",
            "kind": "action",
            "action": "http_request",
            "service": "orders-api",
            "config": {"url": "{{orders_api}}/orders/{{trigger.body.order_id}}"},
            "retry": {"preset": "network"},
            "next": ["check_total"],
        },
        {
            "id": "check_total",
            "kind": "condition",
            "condition": {"field": "steps.fetch.data.total", "operator": "greater_than", "value": 1000},
            "then": ["flag"],
            "else": ["log"],
        },
        {
            "id": "flag",
            "kind": "action",
            "action": "log",
            "config": {"message": "Large order {{trigger.body.order_id}}", "level": "warning"},
        },
        {
            "id": "log",
            "kind": "action",
            "action": "log",
            "config": {"message": "Order {{trigger.body.order_id}} received"},
        },
    ],
}


async def seed():
    """Seed the database with a demo workflow."""
    from app.config import get_settings
    from app.runtime import build_runtime
    from db.database import close_db, create_db_engine, create_session_factory, init_db
    from db.sql import SqlRepository

    settings = get_settings()
    engine = create_db_engine(settings=settings)
    await init_db(engine)
    runtime = build_runtime(settings, SqlRepository(create_session_factory(engine)))

    try:
        existing = [w for w in await runtime.workflows.list() if w.name == DEMO_WORKFLOW["name"]]
        if existing:
            print(f"[seed] Demo workflow exists: {existing[0].id}")
            return

        workflow = await runtime.workflows.create_workflow(DEMO_WORKFLOW)
        print(f"[seed] Created workflow: {workflow.name} ({workflow.id})")

        schedule = await runtime.scheduler.create_schedule({
            "workflow_id": workflow.id,
            "name": "Weekday replay",
            "params": {"kind": "cron", "expression": "0 9 * * 1-5", "timezone": settings.SCHEDULER_DEFAULT_TIMEZONE},
            "trigger_data": {"body": {"order_id": "demo"}},
        })
        print(f"[seed] Created schedule: {schedule.id} (next: {schedule.next_execution_at})")

        webhook = await runtime.router.register_webhook(workflow.id)
        print(f"[seed] Created webhook: /api/v1/hooks/{webhook.id} (secret: {webhook.secret})")
        print("[seed] Database seeded successfully!")
    finally:
        await runtime.stop()
        await close_db(engine)


if __name__ == "__main__":
    asyncio.run(seed())
