"""Shared pytest fixtures for the workflow engine test suite.

Provides:
- In-memory repository and an aiosqlite-backed SqlRepository
- Task registry, engine (backoff waits recorded, never slept)
- Fake clock and timer facility for driving the scheduler by hand
- FastAPI test client (httpx.AsyncClient over ASGITransport)
- Workflow factory
"""

import os
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, Callable

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Override settings BEFORE any app imports
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("LOG_FORMAT", "text")

from app.config import Settings  # noqa: E402
from core.circuit_breaker import CircuitBreaker  # noqa: E402
from core.constants import WorkflowStatus  # noqa: E402
from db.database import close_db, create_db_engine, create_session_factory, init_db  # noqa: E402
from db.memory import InMemoryRepository  # noqa: E402
from db.sql import SqlRepository  # noqa: E402
from scheduling.scheduler import WorkflowScheduler  # noqa: E402
from tasks.dispatcher import ActionDispatcher  # noqa: E402
from tasks.registry import TaskRegistry  # noqa: E402
from workflow.definition import parse_workflow  # noqa: E402
from workflow.engine import WorkflowEngine  # noqa: E402
from workflow.retry_strategies import RetryCoordinator  # noqa: E402

START = datetime(2026, 1, 1, 0, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Time
# ---------------------------------------------------------------------------

class FakeClock:
    def __init__(self, start: datetime = START):
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


class FakeTimerHandle:
    def __init__(self, when: datetime, callback: Callable[[], None]):
        self.when = when
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeTimers:
    """Timer facility that only fires when the test says so."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.handles: list[FakeTimerHandle] = []

    def call_at(self, when: datetime, callback: Callable[[], None]) -> FakeTimerHandle:
        handle = FakeTimerHandle(when, callback)
        self.handles.append(handle)
        return handle

    @property
    def pending(self) -> list[FakeTimerHandle]:
        return [h for h in self.handles if not h.cancelled]

    def fire_due(self) -> int:
        """Run every live callback due at or before the clock's time."""
        due = sorted(
            (h for h in self.pending if h.when <= self.clock.now()),
            key=lambda h: h.when,
        )
        for handle in due:
            self.handles.remove(handle)
            handle.callback()
        return len(due)


class Sleeper:
    """Stands in for asyncio.sleep in the retry coordinator."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


# ---------------------------------------------------------------------------
# Core fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def settings() -> Settings:
    return Settings(
        ENVIRONMENT="testing",
        REDIS_URL="",
        RECOVER_ON_STARTUP=False,
        RETRY_INITIAL_DELAY_MS=0,
        RETRY_JITTER=False,
        LOG_FORMAT="text",
    )


@pytest.fixture
def repository() -> InMemoryRepository:
    return InMemoryRepository()


@pytest.fixture
def registry() -> TaskRegistry:
    return TaskRegistry()


@pytest.fixture
def sleeper() -> Sleeper:
    return Sleeper()


@pytest.fixture
def breaker() -> CircuitBreaker:
    return CircuitBreaker(failure_threshold=3, window_seconds=60)


@pytest_asyncio.fixture
async def engine(repository, registry, sleeper, breaker) -> AsyncGenerator[WorkflowEngine, None]:
    engine = WorkflowEngine(
        repository,
        dispatcher=ActionDispatcher(registry),
        retry_coordinator=RetryCoordinator(circuit_breaker=breaker, sleep=sleeper),
        branch_timeout=5.0,
    )
    yield engine
    await engine.shutdown()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def timers(clock) -> FakeTimers:
    return FakeTimers(clock)


@pytest_asyncio.fixture
async def scheduler(repository, engine, clock, timers) -> AsyncGenerator[WorkflowScheduler, None]:
    scheduler = WorkflowScheduler(repository, engine, clock=clock, timers=timers)
    await scheduler.start()
    yield scheduler
    await scheduler.stop()


@pytest.fixture
def make_workflow(repository):
    """Save an active workflow built from step dicts; returns the definition."""

    async def _make(*steps: dict, **fields):
        data = {"name": fields.pop("name", "Test Workflow"), "status": WorkflowStatus.ACTIVE.value, "steps": list(steps)}
        data.update(fields)
        workflow = parse_workflow(data)
        await repository.save_workflow(workflow)
        return workflow

    return _make


def action(step_id: str, action_type: str, config: dict = None, **extra) -> dict:
    """Shorthand for an action step dict."""
    return {"id": step_id, "kind": "action", "action": action_type, "config": config or {}, **extra}


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def sql_repository(tmp_path, settings) -> AsyncGenerator[SqlRepository, None]:
    """SqlRepository over a throwaway SQLite file."""
    db_engine = create_db_engine(f"sqlite+aiosqlite:///{tmp_path}/test.db", settings=settings)
    await init_db(db_engine)
    yield SqlRepository(create_session_factory(db_engine))
    await close_db(db_engine)


# ---------------------------------------------------------------------------
# App / HTTP client fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def runtime(settings, repository, registry, clock, timers):
    from app.runtime import build_runtime

    return build_runtime(settings, repository, registry=registry, clock=clock, timers=timers)


@pytest.fixture
def app(settings, runtime):
    """FastAPI app wired to a prebuilt in-memory runtime."""
    from app.main import create_app

    return create_app(settings, runtime=runtime)


@pytest_asyncio.fixture
async def client(app, runtime) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP test client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test", follow_redirects=True) as ac:
        yield ac
    await runtime.stop()
