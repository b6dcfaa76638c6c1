"""Workflow Execution Engine: graph-based workflow runner.

Takes a stored workflow definition (a graph of steps) and executes it,
handling:

- Sequential walk from the entry step along `next` edges
- Conditional branching (then/else)
- Parallel fork/join over forked contexts
- Loops over an explicit collection, bounded by max_iterations
- Per-step error policy (stop / continue / notify)
- Retry with exponential backoff and per-service circuit breaking
- Timeout per action step, per parallel branch and per run
- Checkpoint before every step, pause/resume and crash recovery

Architecture (explicit state machine):
- The run's position is `context.pending` (FIFO of step ids) plus
  `context.visited`; both live in the checkpoint, so a run can stop at any
  step boundary and later continue from the persisted state
- A driver loop pops one step at a time and enqueues its successors
- Pause and cancel are requests observed at step boundaries, never forced
  interruptions of a running action
- Once the ExecutionRecord exists every failure is captured in it; only
  pre-flight errors (and the timeout of `run_with_timeout`) reach callers

Parallel branches and loop iterations run against forked contexts. A fork
walks its own sub-graph (the branch or body step and its successors); only
the join writes results back into the parent context.
"""

import asyncio
import copy
import time
from dataclasses import dataclass
from typing import Any, Optional

import structlog

from core.constants import ErrorPolicy, ExecutionStatus, TriggerKind, WorkflowStatus
from core.exceptions import (
    ConflictError,
    ExecutionNotFound,
    ExecutionTimeout,
    InvalidConfiguration,
    LoopLimitExceeded,
    StepFailedError,
    TypeMismatch,
    ValidationError,
    WorkflowInactive,
    WorkflowNotFound,
)
from core.logging_config import execution_log_context
from db.repository import Repository
from tasks.dispatcher import ActionConfig, ActionDispatcher
from workflow.checkpoint import CheckpointManager, CheckpointType
from workflow.conditions import ConditionalEvaluator
from workflow.context import ExecutionContext, StepResult, StepStatus, utcnow
from workflow.definition import ActionStep, ConditionStep, LoopStep, ParallelStep, WorkflowDefinition
from workflow.records import ExecutionRecord
from workflow.retry_strategies import RETRY_PRESETS, RetryCoordinator, RetryPolicy
from workflow.templating import MISSING, get_path, resolve_value

logger = structlog.get_logger(__name__)


class _Cancelled(Exception):
    """Raised at a step boundary once cancellation has been requested."""


class JoinFailed(StepFailedError):
    """A parallel branch failed with an aborting policy.

    Raised after the join completed; `output` is the join result.
    """

    def __init__(self, step_id: str, message: str, cause: Optional[BaseException], output: dict):
        super().__init__(step_id, message, cause)
        self.output = output


@dataclass
class _RunControl:
    """Requests for a live run, observed at the next step boundary."""
    pause: bool = False
    cancel: bool = False


# ─── Workflow Engine ───────────────────────────────────────────

class WorkflowEngine:
    """Main workflow execution engine.

    One driver coroutine per run; `max_concurrency` bounds how many runs
    are driven at once (queued runs stay `pending`).
    """

    DEFAULT_MAX_CONCURRENCY = 10
    DEFAULT_BRANCH_TIMEOUT = 300.0

    def __init__(
        self,
        repository: Repository,
        dispatcher: Optional[ActionDispatcher] = None,
        evaluator: Optional[ConditionalEvaluator] = None,
        retry_coordinator: Optional[RetryCoordinator] = None,
        checkpoints: Optional[CheckpointManager] = None,
        notifier=None,
        default_retry_policy: Optional[RetryPolicy] = None,
        default_loop_max_iterations: int = 1000,
        branch_timeout: float = DEFAULT_BRANCH_TIMEOUT,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
    ):
        self.repository = repository
        self.dispatcher = dispatcher or ActionDispatcher()
        self.evaluator = evaluator or ConditionalEvaluator()
        self.retry = retry_coordinator or RetryCoordinator(default_policy=default_retry_policy)
        self.checkpoints = checkpoints or CheckpointManager(repository)
        self.notifier = notifier
        self.default_retry_policy = default_retry_policy or self.retry.default_policy
        self.default_loop_max_iterations = default_loop_max_iterations
        self.branch_timeout = branch_timeout
        self._slots = asyncio.Semaphore(max_concurrency)
        self._controls: dict[str, _RunControl] = {}
        self._tasks: dict[str, asyncio.Task] = {}

    # ─── Starting runs ─────────────────────────────────────────

    async def run(
        self,
        workflow_id: str,
        trigger_data: Optional[dict] = None,
        user_id: Optional[str] = None,
        trigger_kind: TriggerKind = TriggerKind.MANUAL,
    ) -> str:
        """Execute a workflow to the end (or to a pause) and return the execution id.

        Raises:
            WorkflowNotFound, WorkflowInactive, ValidationError: before any
            state is persisted. Later failures end up in the ExecutionRecord.
        """
        workflow, record, context = await self._prepare(workflow_id, trigger_data, user_id, trigger_kind)
        await self._drive(workflow, record, context)
        return record.id

    async def start(
        self,
        workflow_id: str,
        trigger_data: Optional[dict] = None,
        user_id: Optional[str] = None,
        trigger_kind: TriggerKind = TriggerKind.MANUAL,
        retry_of: Optional[ExecutionRecord] = None,
    ) -> str:
        """Like `run`, but the driver runs as a background task."""
        workflow, record, context = await self._prepare(
            workflow_id, trigger_data, user_id, trigger_kind, retry_of=retry_of
        )
        self._spawn(workflow, record, context)
        return record.id

    async def run_with_timeout(
        self,
        workflow_id: str,
        timeout: float,
        trigger_data: Optional[dict] = None,
        user_id: Optional[str] = None,
        trigger_kind: TriggerKind = TriggerKind.MANUAL,
    ) -> str:
        """Race a run against a deadline.

        On expiry the run is marked failed and ExecutionTimeout is raised.
        Side effects already dispatched are not undone.
        """
        workflow, record, context = await self._prepare(workflow_id, trigger_data, user_id, trigger_kind)
        try:
            await asyncio.wait_for(self._drive(workflow, record, context), timeout=timeout)
        except asyncio.TimeoutError:
            error = ExecutionTimeout(timeout, execution_id=record.id)
            logger.warning("Execution timed out", execution_id=record.id, timeout_s=timeout)
            await self._finalize(record, context, ExecutionStatus.FAILED, error=error.message)
            raise error
        return record.id

    async def retry_execution(self, execution_id: str) -> str:
        """Start a new run of a failed execution with the same trigger payload."""
        original = await self.get_execution(execution_id)
        if original.status != ExecutionStatus.FAILED:
            raise ConflictError(
                f"Only failed executions can be retried (status: {original.status.value})"
            )
        return await self.start(
            original.workflow_id,
            trigger_data=original.trigger_payload,
            user_id=original.user_id,
            trigger_kind=original.trigger_kind,
            retry_of=original,
        )

    async def _prepare(
        self,
        workflow_id: str,
        trigger_data: Optional[dict],
        user_id: Optional[str],
        trigger_kind: TriggerKind,
        retry_of: Optional[ExecutionRecord] = None,
    ) -> tuple[WorkflowDefinition, ExecutionRecord, ExecutionContext]:
        if trigger_data is not None and not isinstance(trigger_data, dict):
            raise ValidationError("Trigger data must be an object")
        workflow = await self.repository.get_workflow(workflow_id)
        if workflow is None:
            raise WorkflowNotFound(workflow_id)
        if workflow.status != WorkflowStatus.ACTIVE:
            raise WorkflowInactive(workflow_id, workflow.status.value)

        trigger = copy.deepcopy(trigger_data or {})
        record = ExecutionRecord(
            workflow_id=workflow.id,
            organization_id=workflow.organization_id,
            user_id=user_id,
            status=ExecutionStatus.PENDING,
            trigger_kind=trigger_kind,
            trigger_payload=trigger,
            started_at=utcnow(),
            retry_of=retry_of.id if retry_of else None,
            retry_count=retry_of.retry_count + 1 if retry_of else 0,
        )
        context = ExecutionContext(
            execution_id=record.id,
            workflow_id=workflow.id,
            organization_id=workflow.organization_id,
            user_id=user_id,
            trigger_payload=trigger,
            variables={**copy.deepcopy(workflow.variables), "trigger": copy.deepcopy(trigger)},
            started_at=record.started_at.isoformat(),
            pending=[workflow.entry_step],
        )
        await self.repository.save_execution(record)
        await self.checkpoints.save_checkpoint(
            context, CheckpointType.EXECUTION_STARTED, definition=workflow.dump()
        )
        logger.info(
            "Execution created",
            execution_id=record.id,
            workflow_id=workflow.id,
            trigger_kind=trigger_kind.value,
            retry_of=record.retry_of,
        )
        return workflow, record, context

    def _spawn(self, workflow: WorkflowDefinition, record: ExecutionRecord, context: ExecutionContext) -> None:
        self._controls.setdefault(record.id, _RunControl())
        task = asyncio.create_task(self._drive(workflow, record, context), name=f"execution-{record.id}")
        self._tasks[record.id] = task
        task.add_done_callback(lambda t, eid=record.id: self._forget_task(eid, t))

    def _forget_task(self, execution_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(execution_id) is task:
            del self._tasks[execution_id]

    # ─── Controlling runs ──────────────────────────────────────

    async def get_execution(self, execution_id: str) -> ExecutionRecord:
        record = await self.repository.get_execution(execution_id)
        if record is None:
            raise ExecutionNotFound(execution_id)
        return record

    async def wait(self, execution_id: str) -> ExecutionRecord:
        """Wait for a background run to stop and return its record."""
        task = self._tasks.get(execution_id)
        if task is not None:
            await task
        return await self.get_execution(execution_id)

    async def pause(self, execution_id: str) -> ExecutionRecord:
        """Ask a live run to pause at its next step boundary."""
        record = await self.get_execution(execution_id)
        control = self._controls.get(execution_id)
        if control is None or record.status not in (ExecutionStatus.PENDING, ExecutionStatus.RUNNING):
            raise ConflictError(f"Execution {execution_id} is not running (status: {record.status.value})")
        control.pause = True
        logger.info("Pause requested", execution_id=execution_id)
        return record

    async def resume(self, execution_id: str, background: bool = False) -> str:
        """Continue a paused run from its checkpoint."""
        record = await self.get_execution(execution_id)
        if record.status != ExecutionStatus.PAUSED:
            raise ConflictError(f"Execution {execution_id} is not paused (status: {record.status.value})")
        await self._resume_from_checkpoint(record, background)
        return execution_id

    async def recover(self, execution_id: str, background: bool = True) -> bool:
        """Continue a run left `running` by a stopped process.

        Returns False when the run is live in this process or already over.
        """
        record = await self.get_execution(execution_id)
        if execution_id in self._controls:
            return False
        if record.status not in (ExecutionStatus.PENDING, ExecutionStatus.RUNNING):
            return False
        await self._resume_from_checkpoint(record, background)
        return True

    async def abandon(self, execution_id: str, reason: str) -> ExecutionRecord:
        """Mark a run that cannot be resumed as failed."""
        record = await self.get_execution(execution_id)
        await self._finalize(record, None, ExecutionStatus.FAILED, error=reason)
        return record

    async def cancel(self, execution_id: str) -> ExecutionRecord:
        """Cancel a run.

        A live run is cancelled at its next step boundary; a paused (or
        orphaned) run is cancelled immediately.
        """
        record = await self.get_execution(execution_id)
        if record.status.is_terminal:
            raise ConflictError(f"Execution {execution_id} already finished (status: {record.status.value})")

        control = self._controls.get(execution_id)
        if control is not None:
            control.cancel = True
            logger.info("Cancellation requested", execution_id=execution_id)
            return record

        await self._finalize(record, None, ExecutionStatus.CANCELLED)
        return record

    def get_running_executions(self) -> list[str]:
        return list(self._controls)

    async def shutdown(self) -> None:
        """Stop background drivers; their runs stay resumable from checkpoints."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def _resume_from_checkpoint(self, record: ExecutionRecord, background: bool) -> None:
        checkpoint = await self.checkpoints.get_checkpoint(record.id)
        if checkpoint is None:
            raise ConflictError(f"No checkpoint for execution {record.id}")

        if checkpoint.definition is not None:
            workflow = WorkflowDefinition.model_validate(checkpoint.definition)
        else:
            workflow = await self.repository.get_workflow(record.workflow_id)
            if workflow is None:
                raise WorkflowNotFound(record.workflow_id)
        context = ExecutionContext.from_dict(checkpoint.context)

        record.status = ExecutionStatus.PENDING
        record.updated_at = utcnow()
        await self.repository.save_execution(record)
        logger.info(
            "Resuming execution",
            execution_id=record.id,
            pending=context.pending,
            step_cursor=context.step_cursor,
        )
        if background:
            self._spawn(workflow, record, context)
        else:
            await self._drive(workflow, record, context)

    async def _control_signal(self, execution_id: str) -> Optional[str]:
        control = self._controls.get(execution_id)
        if control is not None and control.cancel:
            return "cancel"
        stored = await self.repository.get_execution(execution_id)
        if stored is not None and stored.status == ExecutionStatus.CANCELLED:
            return "cancel"
        if control is not None and control.pause:
            return "pause"
        return None

    async def _raise_if_cancelled(self, execution_id: str) -> None:
        if await self._control_signal(execution_id) == "cancel":
            raise _Cancelled()

    # ─── Driver loop ───────────────────────────────────────────

    async def _drive(
        self,
        workflow: WorkflowDefinition,
        record: ExecutionRecord,
        context: ExecutionContext,
    ) -> ExecutionRecord:
        with execution_log_context(record.id, workflow.id):
            return await self._drive_run(workflow, record, context)

    async def _drive_run(
        self,
        workflow: WorkflowDefinition,
        record: ExecutionRecord,
        context: ExecutionContext,
    ) -> ExecutionRecord:
        self._controls.setdefault(record.id, _RunControl())
        definition = workflow.dump()
        try:
            async with self._slots:
                record.status = ExecutionStatus.RUNNING
                record.updated_at = utcnow()
                await self.repository.save_execution(record)

                try:
                    while context.pending:
                        signal = await self._control_signal(record.id)
                        if signal == "cancel":
                            raise _Cancelled()
                        if signal == "pause":
                            await self._pause_at_boundary(record, context, definition)
                            return record

                        step_id = context.pending[0]
                        context.step_cursor += 1
                        # Checkpoint first: a crash mid-step replays this step
                        await self.checkpoints.save_checkpoint(
                            context, CheckpointType.STEP_STARTING, step_id=step_id, definition=definition
                        )
                        context.pending.pop(0)
                        context.visited.append(step_id)

                        next_ids = await self._run_step(workflow, workflow.get_step(step_id), context)
                        self._enqueue(context, next_ids)
                except _Cancelled:
                    await self._finalize(record, context, ExecutionStatus.CANCELLED)
                except StepFailedError as e:
                    await self._finalize(
                        record, context, ExecutionStatus.FAILED, error=e.message, failed_step_id=e.step_id
                    )
                except Exception as e:
                    logger.exception("Execution crashed", execution_id=record.id)
                    await self._finalize(record, context, ExecutionStatus.FAILED, error=str(e))
                else:
                    await self._finalize(record, context, ExecutionStatus.COMPLETED)
        finally:
            self._controls.pop(record.id, None)
        return record

    @staticmethod
    def _enqueue(context: ExecutionContext, next_ids: list[str]) -> None:
        for next_id in next_ids:
            if next_id not in context.visited and next_id not in context.pending:
                context.pending.append(next_id)

    async def _pause_at_boundary(self, record: ExecutionRecord, context: ExecutionContext, definition: dict) -> None:
        await self.checkpoints.save_checkpoint(context, CheckpointType.EXECUTION_PAUSED, definition=definition)
        record.status = ExecutionStatus.PAUSED
        record.step_results = {sid: r.to_dict() for sid, r in context.steps.items()}
        record.updated_at = utcnow()
        await self.repository.save_execution(record)
        logger.info("Execution paused", execution_id=record.id, pending=context.pending)

    async def _finalize(
        self,
        record: ExecutionRecord,
        context: Optional[ExecutionContext],
        status: ExecutionStatus,
        error: Optional[str] = None,
        failed_step_id: Optional[str] = None,
    ) -> None:
        now = utcnow()
        record.status = status
        record.completed_at = now
        if record.started_at is not None:
            record.duration_ms = int((now - record.started_at).total_seconds() * 1000)
        record.error_message = error
        record.failed_step_id = failed_step_id
        if context is not None:
            record.step_results = {sid: r.to_dict() for sid, r in context.steps.items()}
        record.updated_at = now
        await self.repository.save_execution(record)
        await self.checkpoints.cleanup(record.id)

        log = logger.bind(execution_id=record.id, workflow_id=record.workflow_id, duration_ms=record.duration_ms)
        if status == ExecutionStatus.FAILED:
            log.warning("Execution failed", error=error, failed_step_id=failed_step_id)
        else:
            log.info("Execution finished", status=status.value)

    # ─── Steps ─────────────────────────────────────────────────

    async def _run_step(self, workflow: WorkflowDefinition, step, context: ExecutionContext) -> list[str]:
        """Run one step and return the ids to visit next.

        Raises StepFailedError when the step fails and its policy aborts.
        """
        result = StepResult(step_id=step.id, status=StepStatus.RUNNING, started_at=utcnow().isoformat())
        started = time.monotonic()
        logger.debug(
            "Step starting",
            execution_id=context.execution_id,
            step_id=step.id,
            kind=step.kind,
            fork_id=context.fork_id,
        )

        try:
            if isinstance(step, ActionStep):
                output = await self._run_action(step, context, result)
                next_ids = list(step.next)
            elif isinstance(step, ConditionStep):
                met = self.evaluator.evaluate(step.condition, context.variables)
                output = {"result": met, "branch": "then" if met else "else"}
                next_ids = list(step.then if met else step.else_)
            elif isinstance(step, ParallelStep):
                output = await self._run_parallel(workflow, step, context)
                next_ids = list(step.next)
            elif isinstance(step, LoopStep):
                output = await self._run_loop(workflow, step, context)
                next_ids = list(step.next)
            else:
                raise ValidationError(f"Unsupported step kind: {step.kind}")
        except _Cancelled:
            raise
        except Exception as e:
            result.status = StepStatus.FAILED
            result.error = str(e)
            result.output = e.output if isinstance(e, JoinFailed) else None
            self._close_result(result, started)
            context.record_step(result)
            return await self._handle_failure(step, e, context)

        result.status = StepStatus.COMPLETED
        result.output = output
        self._close_result(result, started)
        context.record_step(result)
        return next_ids

    @staticmethod
    def _close_result(result: StepResult, started: float) -> None:
        result.completed_at = utcnow().isoformat()
        result.duration_ms = int((time.monotonic() - started) * 1000)

    async def _handle_failure(self, step, error: Exception, context: ExecutionContext) -> list[str]:
        origin = error.step_id if isinstance(error, StepFailedError) else step.id
        cause = error.cause if isinstance(error, StepFailedError) and error.cause else error
        message = str(error)
        log = logger.bind(
            execution_id=context.execution_id,
            step_id=step.id,
            failed_step_id=origin,
            fork_id=context.fork_id,
            error=message,
        )

        if step.on_error == ErrorPolicy.CONTINUE:
            log.warning("Step failed, continuing")
            return list(step.next)

        if step.on_error == ErrorPolicy.NOTIFY:
            await self._notify(context, origin, message)
        log.error("Step failed", policy=step.on_error.value)
        raise StepFailedError(origin, message, cause) from error

    async def _notify(self, context: ExecutionContext, step_id: str, message: str) -> None:
        if self.notifier is None:
            logger.warning("No notifier configured", execution_id=context.execution_id, step_id=step_id)
            return
        await self.notifier.notify_step_failed(
            workflow_id=context.workflow_id,
            execution_id=context.execution_id,
            step_id=step_id,
            error=message,
            organization_id=context.organization_id,
        )

    # ─── Actions ───────────────────────────────────────────────

    def _policy_for(self, step: ActionStep) -> RetryPolicy:
        if step.retry is None:
            return self.default_retry_policy
        base = self.default_retry_policy
        if step.retry.preset:
            base = RETRY_PRESETS.get(step.retry.preset)
            if base is None:
                raise InvalidConfiguration(f"Unknown retry preset: {step.retry.preset}")
        return RetryPolicy.from_dict(step.retry.model_dump(exclude={"preset"}), base)

    async def _run_action(self, step: ActionStep, context: ExecutionContext, result: StepResult) -> Any:
        policy = self._policy_for(step)
        action = ActionConfig(type=step.action, config=step.config)
        unit_id = f"{context.execution_id}:{step.id}"
        if context.fork_id:
            unit_id = f"{context.execution_id}:{context.fork_id}:{step.id}"

        async def attempt() -> Any:
            result.attempts += 1
            call = self.dispatcher.execute(action, context)
            if step.timeout_seconds:
                return await asyncio.wait_for(call, timeout=step.timeout_seconds)
            return await call

        return await self.retry.execute_with_retry(
            attempt,
            unit_id=unit_id,
            policy=policy,
            service_id=step.service,
            per_error_class=step.retry is None,
        )

    # ─── Sub-graphs (branches, loop bodies) ────────────────────

    async def _run_subgraph(
        self,
        workflow: WorkflowDefinition,
        seeds: list[str],
        context: ExecutionContext,
        executed: list[str],
    ) -> None:
        """Walk `seeds` and their successors inside a forked context."""
        pending = list(seeds)
        seen = set(seeds)
        while pending:
            await self._raise_if_cancelled(context.execution_id)
            step_id = pending.pop(0)
            executed.append(step_id)
            for next_id in await self._run_step(workflow, workflow.get_step(step_id), context):
                if next_id not in seen:
                    seen.add(next_id)
                    pending.append(next_id)

    async def _run_parallel(self, workflow: WorkflowDefinition, step: ParallelStep, context: ExecutionContext) -> dict:
        timeout = step.timeout_seconds or self.branch_timeout
        forks = [context.fork(f"{step.id}:{branch_id}") for branch_id in step.branches]
        results = await asyncio.gather(
            *[
                self._run_branch(workflow, branch_id, fork, timeout)
                for branch_id, fork in zip(step.branches, forks)
            ],
            return_exceptions=True,
        )

        outcomes: list[dict] = []
        escalation: Optional[StepFailedError] = None
        for branch_id, fork, res in zip(step.branches, forks, results):
            if isinstance(res, _Cancelled):
                raise res
            if isinstance(res, BaseException):
                outcome = {"step_id": branch_id, "fork_id": fork.fork_id, "status": "failed", "error": str(res)}
                failure = StepFailedError(branch_id, str(res), res)
                executed: list[str] = []
            else:
                outcome, failure, executed = res
            outcomes.append(outcome)
            # Join: the only place branch results reach the parent context
            for sid in executed:
                if sid in fork.steps:
                    context.record_step(fork.steps[sid])
            if failure is not None and escalation is None:
                escalation = failure

        failed = sum(1 for o in outcomes if o["status"] == "failed")
        join = {"outcomes": outcomes, "succeeded": len(outcomes) - failed, "failed": failed}
        logger.debug(
            "Parallel join",
            execution_id=context.execution_id,
            step_id=step.id,
            succeeded=join["succeeded"],
            failed=failed,
        )
        if escalation is not None:
            raise JoinFailed(escalation.step_id, escalation.message, escalation.cause, join)
        return join

    async def _run_branch(
        self,
        workflow: WorkflowDefinition,
        branch_id: str,
        fork: ExecutionContext,
        timeout: float,
    ) -> tuple[dict, Optional[StepFailedError], list[str]]:
        """Run one branch; never raises for step failures."""
        executed: list[str] = []
        failure: Optional[StepFailedError] = None
        try:
            await asyncio.wait_for(self._run_subgraph(workflow, [branch_id], fork, executed), timeout=timeout)
        except StepFailedError as e:
            failure = e
        except asyncio.TimeoutError:
            message = f"Branch '{branch_id}' timed out after {timeout}s"
            fork.record_step(StepResult(
                step_id=executed[-1] if executed else branch_id,
                status=StepStatus.FAILED,
                error=message,
                completed_at=utcnow().isoformat(),
            ))
            try:
                await self._handle_failure(workflow.get_step(branch_id), asyncio.TimeoutError(message), fork)
            except StepFailedError as e:
                failure = e

        outcome: dict[str, Any] = {"step_id": branch_id, "fork_id": fork.fork_id}
        failed_steps = [
            fork.steps[sid] for sid in executed
            if sid in fork.steps and fork.steps[sid].status == StepStatus.FAILED
        ]
        if failure is not None or failed_steps:
            outcome["status"] = "failed"
            outcome["error"] = failure.message if failure is not None else failed_steps[0].error
        else:
            outcome["status"] = "completed"
            outcome["output"] = fork.steps[executed[-1]].output if executed else None
        return outcome, failure, executed

    def _resolve_items(self, step: LoopStep, context: ExecutionContext) -> list:
        items: Any = step.items
        if isinstance(items, str):
            items = resolve_value(items, context.variables)
            if isinstance(items, str):
                # Bare dotted path
                found = get_path(context.variables, items)
                items = items if found is MISSING else found
        if not isinstance(items, list):
            raise TypeMismatch(
                f"Loop step '{step.id}' items must resolve to an array, got {type(items).__name__}"
            )
        return items

    async def _run_loop(self, workflow: WorkflowDefinition, step: LoopStep, context: ExecutionContext) -> dict:
        items = self._resolve_items(step, context)
        limit = step.max_iterations or self.default_loop_max_iterations
        if len(items) > limit:
            raise LoopLimitExceeded(step.id, len(items), limit)

        results: list[Any] = []
        errors: list[dict] = []
        for index, item in enumerate(items):
            await self._raise_if_cancelled(context.execution_id)
            fork = context.fork(f"{step.id}[{index}]", {"item": item, "index": index})
            executed: list[str] = []
            try:
                await self._run_subgraph(workflow, step.body, fork, executed)
            except StepFailedError as e:
                if not step.continue_on_error:
                    raise
                errors.append({"index": index, "step_id": e.step_id, "error": e.message})
                results.append(None)
                continue
            results.append(fork.steps[executed[-1]].output if executed else None)

        return {
            "total_items": len(items),
            "iterations_completed": len(items) - len(errors),
            "results": results,
            "errors": errors,
        }
