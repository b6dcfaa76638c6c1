"""Runtime assembly.

Turns Settings into constructor arguments and wires the components
together. Components never read settings themselves.
"""

from dataclasses import dataclass
from typing import Optional

import structlog

from app.config import Settings
from core.circuit_breaker import CircuitBreaker
from db.repository import Repository
from notifications.manager import NotificationManager
from scheduling.scheduler import WorkflowScheduler
from scheduling.timers import Clock, TimerFacility
from services.workflow_service import WorkflowService
from tasks.dispatcher import ActionDispatcher
from tasks.implementations.http_task import HttpRequestTask, WebhookTask
from tasks.registry import TaskRegistry
from triggers.event_bus import EventBusListener
from triggers.router import TriggerRouter
from workflow.checkpoint import CheckpointManager
from workflow.conditions import ConditionalEvaluator
from workflow.engine import WorkflowEngine
from workflow.recovery import RecoveryService
from workflow.retry_strategies import RetryCoordinator, RetryPolicy

logger = structlog.get_logger(__name__)


@dataclass
class Runtime:
    settings: Settings
    repository: Repository
    registry: TaskRegistry
    breaker: CircuitBreaker
    notifier: NotificationManager
    engine: WorkflowEngine
    scheduler: WorkflowScheduler
    router: TriggerRouter
    recovery: RecoveryService
    workflows: WorkflowService
    event_bus: Optional[EventBusListener] = None

    async def start(self) -> None:
        if self.settings.RECOVER_ON_STARTUP:
            results = await self.recovery.recover_all()
            recovered = sum(1 for r in results if r.recovered)
            logger.info("Startup recovery finished", recovered=recovered, scanned=len(results))
        if self.settings.SCHEDULER_ENABLED:
            await self.scheduler.start()
        if self.event_bus is not None:
            self.event_bus.start()

    async def stop(self) -> None:
        if self.event_bus is not None:
            await self.event_bus.stop()
        await self.scheduler.stop()
        await self.engine.shutdown()


def default_retry_policy(settings: Settings) -> RetryPolicy:
    return RetryPolicy(
        max_retries=settings.RETRY_MAX_RETRIES,
        initial_delay=settings.RETRY_INITIAL_DELAY_MS / 1000,
        max_delay=settings.RETRY_MAX_DELAY_MS / 1000,
        exponential_base=settings.RETRY_EXPONENTIAL_BASE,
        backoff_multiplier=settings.RETRY_BACKOFF_MULTIPLIER,
        jitter=settings.RETRY_JITTER,
    )


def build_runtime(
    settings: Settings,
    repository: Repository,
    registry: Optional[TaskRegistry] = None,
    clock: Optional[Clock] = None,
    timers: Optional[TimerFacility] = None,
) -> Runtime:
    registry = registry or TaskRegistry()
    registry.register_instance("http_request", HttpRequestTask(timeout=settings.HTTP_TIMEOUT_SECONDS))
    registry.register_instance("webhook", WebhookTask(timeout=settings.HTTP_TIMEOUT_SECONDS))

    breaker = CircuitBreaker(
        failure_threshold=settings.CIRCUIT_FAILURE_THRESHOLD,
        window_seconds=settings.CIRCUIT_WINDOW_SECONDS,
    )
    policy = default_retry_policy(settings)
    notifier = NotificationManager.from_settings(settings)
    evaluator = ConditionalEvaluator(cache_size=settings.CONDITION_CACHE_SIZE)

    engine = WorkflowEngine(
        repository,
        dispatcher=ActionDispatcher(registry),
        evaluator=evaluator,
        retry_coordinator=RetryCoordinator(circuit_breaker=breaker, default_policy=policy),
        checkpoints=CheckpointManager(repository),
        notifier=notifier,
        default_retry_policy=policy,
        default_loop_max_iterations=settings.DEFAULT_LOOP_MAX_ITERATIONS,
        max_concurrency=settings.ENGINE_MAX_CONCURRENCY,
    )
    scheduler = WorkflowScheduler(
        repository,
        engine,
        clock=clock,
        timers=timers,
        evaluator=evaluator,
        default_timezone=settings.SCHEDULER_DEFAULT_TIMEZONE,
        upcoming_limit=settings.SCHEDULER_UPCOMING_LIMIT,
    )
    router = TriggerRouter(
        repository,
        engine,
        scheduler=scheduler,
        signature_tolerance=settings.WEBHOOK_SIGNATURE_TOLERANCE_SECONDS,
    )
    event_bus = None
    if settings.REDIS_URL:
        event_bus = EventBusListener(router, settings.REDIS_URL, settings.EVENT_BUS_CHANNEL)

    return Runtime(
        settings=settings,
        repository=repository,
        registry=registry,
        breaker=breaker,
        notifier=notifier,
        engine=engine,
        scheduler=scheduler,
        router=router,
        recovery=RecoveryService(engine),
        workflows=WorkflowService(repository),
        event_bus=event_bus,
    )
