"""Workflow scheduler.

Owns the schedule definitions and drives their timers:

- cron:     next fire computed from the expression in the schedule's timezone
- interval: fixed period between optional start/end, optional max runs
- delay:    one fire a fixed offset after each occurrence of a named event
- once:     one fire at an absolute instant, then marked executed for good
- event:    fires on a named event, optionally filtered and debounced

Each fire is recorded as a ScheduledExecutionRecord
(pending -> running -> completed | failed | skipped | cancelled). A failed
fire may spawn a follow-on pending record per the schedule's retry policy.

Timer callbacks only hand the fire to a new asyncio task, so a slow or
hung workflow run never delays other schedules. The clock and the timer
facility are injected; nothing here reads the wall clock directly.
"""

import asyncio
import functools
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Union

import pydantic
import structlog

from core.constants import (
    ExecutionStatus,
    ScheduledExecutionStatus,
    ScheduleKind,
    TriggerKind,
)
from core.exceptions import (
    ConflictError,
    EngineException,
    NotFoundError,
    ScheduleNotFound,
    ValidationError,
    WorkflowNotFound,
)
from db.repository import Repository
from scheduling.cron import next_cron_fire, upcoming_cron_fires, validate_cron, validate_timezone
from scheduling.models import ScheduleDefinition, ScheduledExecutionRecord
from scheduling.timers import AsyncioTimerFacility, Clock, SystemClock, TimerFacility, TimerHandle
from workflow.conditions import ConditionalEvaluator
from workflow.engine import WorkflowEngine

logger = structlog.get_logger(__name__)

_EXECUTION_TO_FIRE_STATUS = {
    ExecutionStatus.COMPLETED: ScheduledExecutionStatus.COMPLETED,
    ExecutionStatus.FAILED: ScheduledExecutionStatus.FAILED,
    ExecutionStatus.CANCELLED: ScheduledExecutionStatus.CANCELLED,
}

# Fields a caller may not overwrite through update_schedule
_BOOKKEEPING = {"id", "execution_count", "last_execution_at", "next_execution_at", "last_event_at", "created_at"}


def parse_schedule(data: Union[dict, ScheduleDefinition]) -> ScheduleDefinition:
    if isinstance(data, ScheduleDefinition):
        return data
    try:
        return ScheduleDefinition.model_validate(data)
    except pydantic.ValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'schedule'}: {err['msg']}"
            for err in e.errors()
        )
        raise ValidationError(f"Invalid schedule: {details}") from e


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """UTC-aware copy; naive values are taken to be UTC already."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class WorkflowScheduler:
    """Single scheduler authority backed by the repository."""

    def __init__(
        self,
        repository: Repository,
        engine: WorkflowEngine,
        clock: Optional[Clock] = None,
        timers: Optional[TimerFacility] = None,
        evaluator: Optional[ConditionalEvaluator] = None,
        default_timezone: str = "UTC",
        upcoming_limit: int = 10,
    ):
        self.repository = repository
        self.engine = engine
        self.clock = clock or SystemClock()
        self.timers = timers or AsyncioTimerFacility(self.clock)
        self.evaluator = evaluator or engine.evaluator
        self.default_timezone = default_timezone
        self.upcoming_limit = upcoming_limit
        self._handles: dict[str, TimerHandle] = {}
        self._delay_handles: dict[str, list[TimerHandle]] = {}
        self._retry_handles: dict[str, TimerHandle] = {}
        self._inflight: set[asyncio.Task] = set()
        self._running = False

    # ─── Lifecycle ─────────────────────────────────────────────

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Load enabled schedules from the store and arm their timers."""
        self._running = True
        now = self.clock.now()
        armed = 0
        for schedule in await self.repository.list_schedules(enabled=True):
            if schedule.kind in (ScheduleKind.CRON, ScheduleKind.INTERVAL):
                # Missed ticks are not replayed
                nxt = _aware(schedule.next_execution_at)
                if nxt is None or nxt < now:
                    schedule.next_execution_at = self._compute_next(schedule, now)
                    await self.repository.save_schedule(schedule)
            if self._arm(schedule):
                armed += 1

        # Follow-on retries that were waiting when the process stopped
        pending = await self.repository.list_scheduled_executions(status=ScheduledExecutionStatus.PENDING)
        for record in pending:
            if record.retry_of is not None:
                self._arm_retry(record)

        logger.info("Scheduler started", armed=armed, pending_retries=len(self._retry_handles))

    async def stop(self) -> None:
        """Cancel every timer and in-flight fire."""
        self._running = False
        for handle in self._handles.values():
            handle.cancel()
        for handles in self._delay_handles.values():
            for handle in handles:
                handle.cancel()
        for handle in self._retry_handles.values():
            handle.cancel()
        self._handles.clear()
        self._delay_handles.clear()
        self._retry_handles.clear()

        tasks = list(self._inflight)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Scheduler stopped")

    async def drain(self) -> None:
        """Wait until every dispatched fire has finished."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    # ─── CRUD ──────────────────────────────────────────────────

    async def create_schedule(self, data: Union[dict, ScheduleDefinition]) -> ScheduleDefinition:
        schedule = parse_schedule(data)
        await self._validate(schedule)
        now = self.clock.now()
        schedule.created_at = now
        schedule.updated_at = now
        schedule.next_execution_at = self._compute_next(schedule, now) if schedule.enabled else None
        await self.repository.save_schedule(schedule)
        self._arm(schedule)
        logger.info(
            "Schedule created",
            schedule_id=schedule.id,
            workflow_id=schedule.workflow_id,
            kind=schedule.kind.value,
            next_execution_at=schedule.next_execution_at,
        )
        return schedule

    async def get_schedule(self, schedule_id: str) -> ScheduleDefinition:
        schedule = await self.repository.get_schedule(schedule_id)
        if schedule is None:
            raise ScheduleNotFound(schedule_id)
        return schedule

    async def list_schedules(
        self,
        enabled: Optional[bool] = None,
        workflow_id: Optional[str] = None,
    ) -> list[ScheduleDefinition]:
        return await self.repository.list_schedules(enabled=enabled, workflow_id=workflow_id)

    async def update_schedule(self, schedule_id: str, changes: dict) -> ScheduleDefinition:
        current = await self.get_schedule(schedule_id)
        merged = current.model_dump(mode="json")
        merged.update({k: v for k, v in changes.items() if k not in _BOOKKEEPING})
        schedule = parse_schedule(merged)
        await self._validate(schedule)

        now = self.clock.now()
        schedule.updated_at = now
        schedule.next_execution_at = self._compute_next(schedule, now) if schedule.enabled else None
        await self.repository.save_schedule(schedule)
        self._arm(schedule)
        logger.info("Schedule updated", schedule_id=schedule_id, next_execution_at=schedule.next_execution_at)
        return schedule

    async def enable_schedule(self, schedule_id: str) -> ScheduleDefinition:
        schedule = await self.get_schedule(schedule_id)
        now = self.clock.now()
        schedule.enabled = True
        schedule.updated_at = now
        schedule.next_execution_at = self._compute_next(schedule, now)
        await self.repository.save_schedule(schedule)
        self._arm(schedule)
        logger.info("Schedule enabled", schedule_id=schedule_id)
        return schedule

    async def disable_schedule(self, schedule_id: str) -> ScheduleDefinition:
        schedule = await self.get_schedule(schedule_id)
        schedule.enabled = False
        schedule.next_execution_at = None
        schedule.updated_at = self.clock.now()
        await self.repository.save_schedule(schedule)
        self._disarm(schedule_id)
        logger.info("Schedule disabled", schedule_id=schedule_id)
        return schedule

    async def delete_schedule(self, schedule_id: str) -> None:
        self._disarm(schedule_id)
        pending = await self.repository.list_scheduled_executions(
            schedule_id=schedule_id, status=ScheduledExecutionStatus.PENDING
        )
        for record in pending:
            await self._cancel_record(record)
        if not await self.repository.delete_schedule(schedule_id):
            raise ScheduleNotFound(schedule_id)
        logger.info("Schedule deleted", schedule_id=schedule_id)

    async def _validate(self, schedule: ScheduleDefinition) -> None:
        if await self.repository.get_workflow(schedule.workflow_id) is None:
            raise WorkflowNotFound(schedule.workflow_id)

        params = schedule.params
        if schedule.kind == ScheduleKind.CRON:
            validate_timezone(params.timezone)
            params.expression = validate_cron(params.expression)
        elif schedule.kind == ScheduleKind.INTERVAL:
            params.start_at = _aware(params.start_at)
            params.end_at = _aware(params.end_at)
            if params.start_at and params.end_at and params.end_at <= params.start_at:
                raise ValidationError("Interval end_at must be after start_at")
        elif schedule.kind == ScheduleKind.ONCE:
            params.execute_at = _aware(params.execute_at)

    # ─── Timing ────────────────────────────────────────────────

    def _compute_next(self, schedule: ScheduleDefinition, after: datetime) -> Optional[datetime]:
        """Next timer-driven fire strictly after `after`, or None."""
        params = schedule.params
        if schedule.max_executions is not None and schedule.execution_count >= schedule.max_executions:
            return None

        if schedule.kind == ScheduleKind.CRON:
            return next_cron_fire(params.expression, params.timezone, after)

        if schedule.kind == ScheduleKind.INTERVAL:
            if params.max_runs is not None and schedule.execution_count >= params.max_runs:
                return None
            period = timedelta(milliseconds=params.interval_ms)
            start_at = _aware(params.start_at)
            last = _aware(schedule.last_execution_at)
            if start_at is not None and after < start_at:
                candidate = start_at
            elif last is not None and last + period > after:
                candidate = last + period
            else:
                candidate = after + period
            end_at = _aware(params.end_at)
            if end_at is not None and candidate > end_at:
                return None
            return candidate

        if schedule.kind == ScheduleKind.ONCE:
            return None if params.executed else _aware(params.execute_at)

        # delay and event schedules are armed by events
        return None

    def _arm(self, schedule: ScheduleDefinition) -> bool:
        self._disarm_timer(schedule.id)
        when = _aware(schedule.next_execution_at)
        if not self._running or not schedule.enabled or when is None:
            return False
        if schedule.kind in (ScheduleKind.DELAY, ScheduleKind.EVENT):
            return False
        self._handles[schedule.id] = self.timers.call_at(
            when, functools.partial(self._on_timer, schedule.id, when)
        )
        return True

    def _disarm_timer(self, schedule_id: str) -> None:
        handle = self._handles.pop(schedule_id, None)
        if handle is not None:
            handle.cancel()

    def _disarm(self, schedule_id: str) -> None:
        self._disarm_timer(schedule_id)
        for handle in self._delay_handles.pop(schedule_id, []):
            handle.cancel()

    def _on_timer(self, schedule_id: str, when: datetime) -> None:
        self._handles.pop(schedule_id, None)
        self._dispatch(self._fire(schedule_id, when, due_check=True), schedule_id=schedule_id)

    def _dispatch(self, coro, **log_context) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(self._guarded(coro, log_context))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    @staticmethod
    async def _guarded(coro, log_context: dict) -> Optional[ScheduledExecutionRecord]:
        try:
            return await coro
        except Exception:
            logger.exception("Scheduled fire crashed", **log_context)
            return None

    # ─── Firing ────────────────────────────────────────────────

    async def trigger_now(self, schedule_id: str) -> ScheduledExecutionRecord:
        """Fire a schedule immediately and wait for the run to finish."""
        await self.get_schedule(schedule_id)
        record = await self._fire(schedule_id, self.clock.now(), manual=True)
        if record is None:
            raise ConflictError(f"Schedule {schedule_id} cannot fire")
        return record

    async def emit_event(self, name: str, payload: Optional[dict] = None) -> list[str]:
        """Feed a named event to event and delay schedules.

        Returns the ids of the schedules it fired or armed.
        """
        payload = payload or {}
        now = self.clock.now()
        matched: list[str] = []

        for schedule in await self.repository.list_schedules(enabled=True):
            params = schedule.params
            if schedule.kind == ScheduleKind.EVENT and params.event_name == name:
                if not self._matches_filter(payload, params.filter):
                    continue
                last = _aware(schedule.last_event_at)
                if params.debounce_ms and last is not None and now - last < timedelta(milliseconds=params.debounce_ms):
                    logger.debug("Event debounced", schedule_id=schedule.id, event=name)
                    continue
                schedule.last_event_at = now
                await self.repository.save_schedule(schedule)
                self._dispatch(
                    self._fire(schedule.id, now, event={"name": name, "payload": payload}),
                    schedule_id=schedule.id,
                )
                matched.append(schedule.id)

            elif schedule.kind == ScheduleKind.DELAY and params.trigger_event == name:
                when = now + timedelta(milliseconds=params.delay_ms)
                schedule.last_event_at = now
                schedule.next_execution_at = when
                await self.repository.save_schedule(schedule)
                if self._running:
                    handle = self.timers.call_at(
                        when,
                        functools.partial(self._on_delay, schedule.id, when, {"name": name, "payload": payload}),
                    )
                    self._delay_handles.setdefault(schedule.id, []).append(handle)
                matched.append(schedule.id)

        if matched:
            logger.info("Event matched schedules", event=name, schedule_ids=matched)
        return matched

    def _on_delay(self, schedule_id: str, when: datetime, event: dict) -> None:
        self._dispatch(self._fire(schedule_id, when, event=event), schedule_id=schedule_id)

    @staticmethod
    def _matches_filter(payload: dict[str, Any], filter_rules: dict[str, Any]) -> bool:
        """Key-value match with `_gt`, `_lt` and `_contains` suffixes.

        {"status": "paid", "amount_gt": 100, "tags_contains": "urgent"}
        """
        for key, expected in filter_rules.items():
            try:
                if key.endswith("_gt"):
                    field = key[:-3]
                    if field not in payload or not payload[field] > expected:
                        return False
                elif key.endswith("_lt"):
                    field = key[:-3]
                    if field not in payload or not payload[field] < expected:
                        return False
                elif key.endswith("_contains"):
                    field = key[:-9]
                    if field not in payload or expected not in payload[field]:
                        return False
                elif key not in payload or payload[key] != expected:
                    return False
            except TypeError:
                return False
        return True

    async def _fire(
        self,
        schedule_id: str,
        scheduled_time: datetime,
        event: Optional[dict] = None,
        due_check: bool = False,
        manual: bool = False,
    ) -> Optional[ScheduledExecutionRecord]:
        schedule = await self.repository.get_schedule(schedule_id)
        if schedule is None or (not schedule.enabled and not manual):
            return None
        if due_check and _aware(schedule.next_execution_at) != scheduled_time:
            # Timer went stale (schedule was updated after arming)
            return None
        if schedule.kind == ScheduleKind.ONCE and schedule.params.executed and not manual:
            return None

        record = ScheduledExecutionRecord(
            schedule_id=schedule.id,
            workflow_id=schedule.workflow_id,
            scheduled_time=scheduled_time,
            created_at=self.clock.now(),
        )
        await self.repository.save_scheduled_execution(record)
        return await self._execute(schedule, record, event=event, primary=True)

    async def _execute(
        self,
        schedule: ScheduleDefinition,
        record: ScheduledExecutionRecord,
        event: Optional[dict] = None,
        primary: bool = True,
    ) -> ScheduledExecutionRecord:
        now = self.clock.now()
        log = logger.bind(schedule_id=schedule.id, scheduled_execution_id=record.id, retry_count=record.retry_count)

        blocked_by = await self._blocking_condition(schedule, record, now)
        if blocked_by is not None:
            record.status = ScheduledExecutionStatus.SKIPPED
            record.completed_at = now
            record.error_message = f"Condition not met: {blocked_by}"
            await self.repository.save_scheduled_execution(record)
            if primary:
                await self._advance(schedule, now, counted=False)
            log.info("Scheduled fire skipped", condition=blocked_by)
            return record

        if primary:
            await self._advance(schedule, now, counted=True)

        stored = await self.repository.get_scheduled_execution(record.id)
        if stored is not None and stored.status == ScheduledExecutionStatus.CANCELLED:
            log.info("Scheduled fire cancelled before start")
            return stored

        record.status = ScheduledExecutionStatus.RUNNING
        record.started_at = now
        await self.repository.save_scheduled_execution(record)

        trigger = {
            **schedule.trigger_data,
            "schedule": {
                "id": schedule.id,
                "name": schedule.name,
                "kind": schedule.kind.value,
                "scheduled_time": record.scheduled_time.isoformat(),
                "retry_count": record.retry_count,
            },
        }
        if event is not None:
            trigger["event"] = event

        try:
            execution_id = await self.engine.start(
                schedule.workflow_id,
                trigger_data=trigger,
                user_id=schedule.user_id,
                trigger_kind=TriggerKind.SCHEDULE,
            )
        except EngineException as e:
            record.status = ScheduledExecutionStatus.FAILED
            record.error_message = e.message
        else:
            record.execution_id = execution_id
            await self.repository.save_scheduled_execution(record)
            execution = await self.engine.wait(execution_id)
            record.status = _EXECUTION_TO_FIRE_STATUS.get(execution.status, ScheduledExecutionStatus.RUNNING)
            record.error_message = execution.error_message

        finished = self.clock.now()
        if record.status != ScheduledExecutionStatus.RUNNING:
            record.completed_at = finished
            record.duration_ms = int((finished - now).total_seconds() * 1000)
        await self.repository.save_scheduled_execution(record)
        log.info("Scheduled fire finished", status=record.status.value, execution_id=record.execution_id)

        if record.status == ScheduledExecutionStatus.FAILED:
            await self._schedule_retry(schedule, record)
        return record

    async def _advance(self, schedule: ScheduleDefinition, now: datetime, counted: bool) -> None:
        """Per-fire bookkeeping: counters, next fire, max-executions cut-off."""
        schedule = await self.get_schedule(schedule.id)
        if counted:
            schedule.execution_count += 1
            schedule.last_execution_at = now
        if schedule.kind == ScheduleKind.ONCE:
            schedule.params.executed = True

        schedule.next_execution_at = self._compute_next(schedule, now)
        if schedule.max_executions is not None and schedule.execution_count >= schedule.max_executions:
            schedule.enabled = False
            logger.info("Schedule reached max executions", schedule_id=schedule.id, count=schedule.execution_count)
        elif schedule.next_execution_at is None and schedule.kind in (ScheduleKind.INTERVAL, ScheduleKind.ONCE):
            schedule.enabled = False
        schedule.updated_at = now
        await self.repository.save_schedule(schedule)
        if schedule.enabled:
            self._arm(schedule)
        else:
            self._disarm(schedule.id)

    # ─── Conditions ────────────────────────────────────────────

    async def _condition_variables(
        self,
        schedule: ScheduleDefinition,
        current: ScheduledExecutionRecord,
        now: datetime,
    ) -> dict:
        tz_name = schedule.params.timezone if schedule.kind == ScheduleKind.CRON else self.default_timezone
        local = now.astimezone(validate_timezone(tz_name))
        history = [
            r for r in await self.repository.list_scheduled_executions(schedule_id=schedule.id)
            if r.id != current.id
        ]
        last = history[-1] if history else None
        return {
            "schedule": {
                "id": schedule.id,
                "name": schedule.name,
                "workflow_id": schedule.workflow_id,
                "kind": schedule.kind.value,
                "execution_count": schedule.execution_count,
                "trigger_data": schedule.trigger_data,
            },
            "now": {
                "iso": local.isoformat(),
                "year": local.year,
                "month": local.month,
                "day": local.day,
                "hour": local.hour,
                "minute": local.minute,
                # 0 = Sunday, as in cron
                "weekday": local.isoweekday() % 7,
            },
            "last_execution": last.model_dump(mode="json") if last else None,
        }

    async def _blocking_condition(
        self,
        schedule: ScheduleDefinition,
        record: ScheduledExecutionRecord,
        now: datetime,
    ) -> Optional[str]:
        """Name of the first failing blocking condition, if any."""
        if not schedule.conditions:
            return None
        variables = await self._condition_variables(schedule, record, now)
        for index, condition in enumerate(schedule.conditions):
            name = condition.name or f"condition_{index}"
            try:
                passed = self.evaluator.evaluate(condition.condition, variables)
            except ValidationError as e:
                logger.warning("Schedule condition invalid", schedule_id=schedule.id, condition=name, error=e.message)
                passed = False
            if passed:
                continue
            if condition.block_execution:
                return name
            logger.info("Non-blocking schedule condition failed", schedule_id=schedule.id, condition=name)
        return None

    # ─── Retries & cancellation ────────────────────────────────

    async def _schedule_retry(self, schedule: ScheduleDefinition, failed: ScheduledExecutionRecord) -> None:
        policy = schedule.retry_policy
        if policy is None or failed.retry_count >= policy.max_retries:
            return
        retry_number = failed.retry_count + 1
        when = self.clock.now() + policy.delay_for(retry_number)
        failed.next_retry_at = when
        await self.repository.save_scheduled_execution(failed)

        retry = ScheduledExecutionRecord(
            schedule_id=schedule.id,
            workflow_id=schedule.workflow_id,
            scheduled_time=when,
            retry_count=retry_number,
            retry_of=failed.id,
            created_at=self.clock.now(),
        )
        await self.repository.save_scheduled_execution(retry)
        self._arm_retry(retry)
        logger.info("Scheduled fire retry armed", schedule_id=schedule.id, retry_count=retry_number, at=when)

    def _arm_retry(self, record: ScheduledExecutionRecord) -> None:
        if not self._running:
            return
        self._retry_handles[record.id] = self.timers.call_at(
            _aware(record.scheduled_time), functools.partial(self._on_retry, record.id)
        )

    def _on_retry(self, record_id: str) -> None:
        self._retry_handles.pop(record_id, None)
        self._dispatch(self._run_retry(record_id), scheduled_execution_id=record_id)

    async def _run_retry(self, record_id: str) -> Optional[ScheduledExecutionRecord]:
        record = await self.repository.get_scheduled_execution(record_id)
        if record is None or record.status != ScheduledExecutionStatus.PENDING:
            return record
        schedule = await self.repository.get_schedule(record.schedule_id)
        if schedule is None or not schedule.enabled:
            await self._cancel_record(record)
            return record
        return await self._execute(schedule, record, primary=False)

    async def cancel_scheduled_execution(self, record_id: str) -> ScheduledExecutionRecord:
        record = await self.repository.get_scheduled_execution(record_id)
        if record is None:
            raise NotFoundError(f"Scheduled execution not found: {record_id}")
        if record.status not in (ScheduledExecutionStatus.PENDING, ScheduledExecutionStatus.RUNNING):
            raise ConflictError(f"Scheduled execution {record_id} already finished (status: {record.status.value})")

        if record.status == ScheduledExecutionStatus.RUNNING and record.execution_id:
            # The fire's own task records the final status
            await self.engine.cancel(record.execution_id)
            return record
        await self._cancel_record(record)
        return record

    async def _cancel_record(self, record: ScheduledExecutionRecord) -> None:
        handle = self._retry_handles.pop(record.id, None)
        if handle is not None:
            handle.cancel()
        record.status = ScheduledExecutionStatus.CANCELLED
        record.completed_at = self.clock.now()
        await self.repository.save_scheduled_execution(record)

    # ─── Queries ───────────────────────────────────────────────

    async def list_executions(
        self,
        schedule_id: str,
        status: Optional[ScheduledExecutionStatus] = None,
    ) -> list[ScheduledExecutionRecord]:
        await self.get_schedule(schedule_id)
        return await self.repository.list_scheduled_executions(schedule_id=schedule_id, status=status)

    def _upcoming_for(self, schedule: ScheduleDefinition, count: int) -> list[datetime]:
        first = _aware(schedule.next_execution_at)
        if not schedule.enabled or first is None:
            return []
        remaining = count
        if schedule.max_executions is not None:
            remaining = min(remaining, schedule.max_executions - schedule.execution_count)

        if schedule.kind == ScheduleKind.CRON:
            params = schedule.params
            return [first] + upcoming_cron_fires(params.expression, params.timezone, first, max(0, remaining - 1))
        if schedule.kind == ScheduleKind.INTERVAL:
            params = schedule.params
            if params.max_runs is not None:
                remaining = min(remaining, params.max_runs - schedule.execution_count)
            period = timedelta(milliseconds=params.interval_ms)
            end_at = _aware(params.end_at)
            fires = []
            current = first
            while len(fires) < remaining and (end_at is None or current <= end_at):
                fires.append(current)
                current += period
            return fires
        return [first][:remaining]

    async def get_statistics(self, upcoming: Optional[int] = None) -> dict:
        limit = upcoming or self.upcoming_limit
        now = self.clock.now()
        schedules = await self.repository.list_schedules()
        records = await self.repository.list_scheduled_executions(since=now - timedelta(days=30))
        ran = [r for r in records if r.status not in (
            ScheduledExecutionStatus.SKIPPED, ScheduledExecutionStatus.CANCELLED, ScheduledExecutionStatus.PENDING,
        )]

        def since(delta: timedelta) -> int:
            cutoff = now - delta
            return sum(1 for r in ran if _aware(r.scheduled_time) >= cutoff)

        finished = [r for r in ran if r.status in (ScheduledExecutionStatus.COMPLETED, ScheduledExecutionStatus.FAILED)]
        succeeded = sum(1 for r in finished if r.status == ScheduledExecutionStatus.COMPLETED)
        durations = [r.duration_ms for r in finished if r.duration_ms is not None]

        fires = []
        for schedule in schedules:
            for fire_at in self._upcoming_for(schedule, limit):
                fires.append((fire_at, {
                    "schedule_id": schedule.id,
                    "workflow_id": schedule.workflow_id,
                    "name": schedule.name,
                    "kind": schedule.kind.value,
                    "fire_at": fire_at.isoformat(),
                }))
        fires.sort(key=lambda pair: pair[0])

        by_kind: dict[str, int] = {}
        for schedule in schedules:
            by_kind[schedule.kind.value] = by_kind.get(schedule.kind.value, 0) + 1

        return {
            "total_schedules": len(schedules),
            "active_schedules": sum(1 for s in schedules if s.enabled),
            "by_kind": by_kind,
            "executions_last_day": since(timedelta(days=1)),
            "executions_last_week": since(timedelta(days=7)),
            "executions_last_month": since(timedelta(days=30)),
            "success_rate": round(succeeded / len(finished) * 100, 2) if finished else 0.0,
            "average_duration_ms": round(sum(durations) / len(durations), 2) if durations else 0.0,
            "upcoming": [fire for _, fire in fires[:limit]],
        }
