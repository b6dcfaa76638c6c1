"""Tests for the workflow execution engine."""

import asyncio

import httpx
import pytest
import structlog

from conftest import action
from core.constants import ExecutionStatus, TriggerKind
from core.exceptions import (
    ConflictError,
    ExecutionTimeout,
    ValidationError,
    WorkflowInactive,
    WorkflowNotFound,
)
from tasks.base_task import BaseTask, TaskResult
from tasks.dispatcher import ActionDispatcher
from tasks.implementations.http_task import HttpRequestTask
from workflow.definition import parse_workflow
from workflow.engine import WorkflowEngine
from workflow.retry_strategies import RetryCoordinator, RetryPolicy


# ─── Helpers ───

class Gate:
    """Action that blocks until released."""

    def __init__(self):
        self.entered = asyncio.Event()
        self.release = asyncio.Event()
        self.calls = 0

    async def __call__(self, config):
        self.calls += 1
        self.entered.set()
        await self.release.wait()
        return "released"


class Recorder:
    """Action that records the `id` it was configured with."""

    def __init__(self, fail_on=()):
        self.calls = []
        self.fail_on = set(fail_on)

    async def __call__(self, config):
        self.calls.append(config.get("id"))
        if config.get("id") in self.fail_on:
            raise ValueError(f"kaput {config.get('id')}")
        return config.get("id")


class PeekCheckpoint(BaseTask):
    task_type = "peek"

    def __init__(self, repository):
        self.repository = repository
        self.seen = []

    async def execute(self, config, context=None):
        checkpoint = await self.repository.get_checkpoint(context.execution_id)
        self.seen.append((checkpoint.step_id, checkpoint.reason, checkpoint.context["pending"], checkpoint.sequence))
        return TaskResult(output=None)


def http_responses(*statuses):
    """MockTransport answering with the given statuses, then 200 forever."""
    queue = list(statuses)

    def handler(request):
        status = queue.pop(0) if queue else 200
        return httpx.Response(status, json={"status": status})

    return httpx.MockTransport(handler)


def rec(step_id, **extra):
    return action(step_id, "record", {"id": step_id}, **extra)


@pytest.fixture
def recorder(registry):
    recorder = Recorder()
    registry.register_handler("record", recorder)
    return recorder


# ─── Definition ───

@pytest.mark.unit
class TestWorkflowDefinition:
    def test_entry_defaults_to_first_step(self):
        wf = parse_workflow({"name": "w", "steps": [rec("a"), rec("b")]})
        assert wf.entry_step == "a"

    @pytest.mark.parametrize("steps", [
        [rec("a", next=["ghost"])],
        [rec("a"), rec("a")],
        [{"id": "l", "kind": "loop", "items": [], "body": ["l"]}],
        [{"id": "p", "kind": "parallel", "branches": []}],
        [],
    ])
    def test_invalid_graphs_rejected(self, steps):
        with pytest.raises(ValidationError):
            parse_workflow({"name": "w", "steps": steps})

    def test_unknown_entry_rejected(self):
        with pytest.raises(ValidationError):
            parse_workflow({"name": "w", "entry_step": "zzz", "steps": [rec("a")]})

    def test_condition_else_alias_round_trips(self):
        wf = parse_workflow({"name": "w", "steps": [
            {"id": "c", "kind": "condition", "condition": True, "then": ["a"], "else": ["b"]}, rec("a"), rec("b"),
        ]})
        assert wf.get_step("c").else_ == ["b"]
        assert wf.dump()["steps"][0]["else"] == ["b"]


# ─── Sequential runs ───

@pytest.mark.unit
class TestSequentialRuns:
    async def test_runs_steps_and_resolves_variables(self, engine, make_workflow, repository):
        wf = await make_workflow(
            action("a", "set_variable", {"name": "greeting", "value": "hi"}, next=["b"]),
            action("b", "log", {"message": "{{greeting}} {{trigger.who}}"}),
        )
        eid = await engine.run(wf.id, trigger_data={"who": "Ana"})

        record = await engine.get_execution(eid)
        assert record.status == ExecutionStatus.COMPLETED
        assert record.trigger_kind == TriggerKind.MANUAL
        assert record.step_results["b"]["output"]["message"] == "hi Ana"
        assert record.step_results["a"]["attempts"] == 1
        assert record.duration_ms is not None
        assert await repository.get_checkpoint(eid) is None

    async def test_run_ids_bound_to_log_context(self, engine, make_workflow, registry):
        seen = []

        async def peek_log_context(config):
            seen.append(structlog.contextvars.get_contextvars())
            return None

        registry.register_handler("peek_log", peek_log_context)
        wf = await make_workflow(action("a", "peek_log"))
        eid = await engine.run(wf.id)

        assert seen == [{"execution_id": eid, "workflow_id": wf.id}]
        assert "execution_id" not in structlog.contextvars.get_contextvars()

    async def test_shared_successor_runs_once(self, engine, make_workflow, recorder):
        wf = await make_workflow(
            rec("a", next=["b", "c"]),
            rec("b", next=["d"]),
            rec("c", next=["d"]),
            rec("d"),
        )
        await engine.run(wf.id)
        assert recorder.calls == ["a", "b", "c", "d"]

    async def test_checkpoint_written_before_each_step(self, engine, make_workflow, registry, repository):
        peek = PeekCheckpoint(repository)
        registry.register_instance("peek", peek)
        wf = await make_workflow(action("a", "peek", next=["b"]), action("b", "peek"))
        await engine.run(wf.id)
        assert peek.seen == [
            ("a", "step_starting", ["a"], 1),
            ("b", "step_starting", ["b"], 2),
        ]

    async def test_trigger_payload_is_copied(self, engine, make_workflow):
        wf = await make_workflow(action("a", "set_variable", {"name": "trigger.n", "value": 2}))
        payload = {"n": 1}
        eid = await engine.run(wf.id, trigger_data=payload)
        assert payload == {"n": 1}
        assert (await engine.get_execution(eid)).trigger_payload == {"n": 1}

    async def test_preflight_errors(self, engine, make_workflow, repository):
        with pytest.raises(WorkflowNotFound):
            await engine.run("missing")

        draft = await make_workflow(rec("a"), status="draft")
        with pytest.raises(WorkflowInactive):
            await engine.run(draft.id)

        with pytest.raises(ValidationError):
            await engine.run(draft.id, trigger_data="not-a-dict")
        assert await repository.list_executions() == []


# ─── Retries ───

@pytest.mark.unit
class TestActionRetries:
    async def test_503_twice_then_success(self, engine, make_workflow, registry, sleeper):
        registry.register_instance("http_request", HttpRequestTask(transport=http_responses(503, 503)))
        wf = await make_workflow(action(
            "fetch", "http_request", {"url": "https://api.example.com/orders"},
            retry={"max_retries": 3, "jitter": False},
        ))
        eid = await engine.run(wf.id)

        record = await engine.get_execution(eid)
        assert record.status == ExecutionStatus.COMPLETED
        assert record.step_results["fetch"]["attempts"] == 3
        assert record.step_results["fetch"]["output"]["data"] == {"status": 200}
        assert sleeper.delays == [1.0, 3.0]

    async def test_503_exhausts_attempts(self, engine, make_workflow, registry):
        registry.register_instance("http_request", HttpRequestTask(transport=http_responses(*[503] * 10)))
        wf = await make_workflow(action(
            "fetch", "http_request", {"url": "https://api.example.com/orders"},
            retry={"max_retries": 3, "jitter": False},
        ))
        eid = await engine.run(wf.id)

        record = await engine.get_execution(eid)
        assert record.status == ExecutionStatus.FAILED
        assert record.failed_step_id == "fetch"
        assert record.error_message == "HTTP 503: Service Unavailable"
        assert record.step_results["fetch"]["attempts"] == 3

    async def test_client_error_not_retried(self, engine, make_workflow, registry):
        registry.register_instance("http_request", HttpRequestTask(transport=http_responses(404)))
        wf = await make_workflow(action("fetch", "http_request", {"url": "https://api.example.com/x"}))
        eid = await engine.run(wf.id)
        assert (await engine.get_execution(eid)).step_results["fetch"]["attempts"] == 1

    async def test_retry_preset(self, engine, make_workflow, registry):
        registry.register_instance("http_request", HttpRequestTask(transport=http_responses(503)))
        wf = await make_workflow(action(
            "fetch", "http_request", {"url": "https://api.example.com/x"}, retry={"preset": "none"},
        ))
        eid = await engine.run(wf.id)
        assert (await engine.get_execution(eid)).step_results["fetch"]["attempts"] == 1

    async def test_unknown_preset_fails_step(self, engine, make_workflow, recorder):
        wf = await make_workflow(rec("a", retry={"preset": "eventually"}))
        eid = await engine.run(wf.id)
        record = await engine.get_execution(eid)
        assert record.status == ExecutionStatus.FAILED
        assert "Unknown retry preset" in record.error_message

    async def test_open_circuit_short_circuits_later_runs(self, engine, make_workflow, registry):
        registry.register_instance("http_request", HttpRequestTask(transport=http_responses(*[503] * 10)))
        wf = await make_workflow(action(
            "fetch", "http_request", {"url": "https://api.example.com/x"},
            service="orders-api", retry={"max_retries": 5, "jitter": False},
        ))
        first = await engine.get_execution(await engine.run(wf.id))
        assert first.step_results["fetch"]["attempts"] == 3
        assert first.error_message == "Service unavailable, circuit open: orders-api"

        second = await engine.get_execution(await engine.run(wf.id))
        assert second.status == ExecutionStatus.FAILED
        assert second.step_results["fetch"]["attempts"] == 0

    async def test_rate_limit_without_override_uses_rate_limit_policy(self, repository, registry, sleeper, make_workflow):
        registry.register_instance("http_request", HttpRequestTask(transport=http_responses(429, 429)))
        engine = WorkflowEngine(
            repository,
            dispatcher=ActionDispatcher(registry),
            retry_coordinator=RetryCoordinator(sleep=sleeper, default_policy=RetryPolicy(jitter=False)),
        )
        wf = await make_workflow(action("fetch", "http_request", {"url": "https://api.example.com/orders"}))
        try:
            record = await engine.get_execution(await engine.run(wf.id))
        finally:
            await engine.shutdown()

        assert record.status == ExecutionStatus.COMPLETED
        assert record.step_results["fetch"]["attempts"] == 3
        assert sleeper.delays == [5.0, 15.0]

    async def test_step_override_keeps_its_own_policy(self, repository, registry, sleeper, make_workflow):
        registry.register_instance("http_request", HttpRequestTask(transport=http_responses(429)))
        engine = WorkflowEngine(
            repository,
            dispatcher=ActionDispatcher(registry),
            retry_coordinator=RetryCoordinator(sleep=sleeper),
        )
        wf = await make_workflow(action(
            "fetch", "http_request", {"url": "https://api.example.com/orders"},
            retry={"max_retries": 2, "jitter": False},
        ))
        try:
            await engine.run(wf.id)
        finally:
            await engine.shutdown()
        assert sleeper.delays == [1.0]

    async def test_unknown_action_type_fails_run(self, engine, make_workflow):
        wf = await make_workflow(action("a", "teleport"))
        record = await engine.get_execution(await engine.run(wf.id))
        assert record.status == ExecutionStatus.FAILED
        assert record.error_message == "Unknown action type: teleport"


# ─── Conditions ───

@pytest.mark.unit
class TestConditionSteps:
    @pytest.mark.parametrize("amount,taken,skipped", [(150, "big", "small"), (50, "small", "big")])
    async def test_branch_selection(self, engine, make_workflow, recorder, amount, taken, skipped):
        wf = await make_workflow(
            {"id": "check", "kind": "condition",
             "condition": {"field": "trigger.amount", "operator": "greater_than", "value": 100},
             "then": ["big"], "else": ["small"]},
            rec("big"),
            rec("small"),
        )
        record = await engine.get_execution(await engine.run(wf.id, trigger_data={"amount": amount}))
        assert recorder.calls == [taken]
        assert record.step_results["check"]["output"] == {"result": amount > 100, "branch": "then" if amount > 100 else "else"}
        assert skipped not in record.step_results

    async def test_invalid_expression_fails_run(self, engine, make_workflow, recorder):
        wf = await make_workflow(
            {"id": "check", "kind": "condition", "condition": "1 >= 0", "then": ["a"]},
            rec("a"),
        )
        record = await engine.get_execution(await engine.run(wf.id))
        assert record.status == ExecutionStatus.FAILED
        assert record.failed_step_id == "check"
        assert recorder.calls == []


# ─── Parallel ───

@pytest.mark.unit
class TestParallelSteps:
    async def test_join_collects_branch_outputs(self, engine, make_workflow):
        wf = await make_workflow(
            {"id": "p", "kind": "parallel", "branches": ["b1", "b2"], "next": ["after"]},
            action("b1", "set_variable", {"name": "x", "value": 1}),
            action("b2", "log", {"message": "two"}),
            action("after", "log", {"message": "{{steps.b1.x}}/{{x}}"}),
        )
        record = await engine.get_execution(await engine.run(wf.id))

        assert record.status == ExecutionStatus.COMPLETED
        join = record.step_results["p"]["output"]
        assert join["succeeded"] == 2
        assert join["failed"] == 0
        assert [o["status"] for o in join["outcomes"]] == ["completed", "completed"]
        assert join["outcomes"][0]["fork_id"] == "p:b1"
        # Branch variables stay in the fork; only step outputs are joined
        assert record.step_results["after"]["output"]["message"] == "1/{{x}}"

    async def test_failed_branch_aborts_after_join(self, engine, make_workflow, registry):
        recorder = Recorder(fail_on={"b2"})
        registry.register_handler("record", recorder)
        wf = await make_workflow(
            {"id": "p", "kind": "parallel", "branches": ["b1", "b2"], "next": ["after"]},
            rec("b1"),
            rec("b2"),
            rec("after"),
        )
        record = await engine.get_execution(await engine.run(wf.id))

        assert record.status == ExecutionStatus.FAILED
        assert record.failed_step_id == "b2"
        assert record.error_message == "kaput b2"
        assert record.step_results["p"]["output"]["succeeded"] == 1
        assert record.step_results["p"]["output"]["failed"] == 1
        assert "after" not in recorder.calls

    async def test_failed_branch_with_continue_policy(self, engine, make_workflow, registry):
        recorder = Recorder(fail_on={"b2"})
        registry.register_handler("record", recorder)
        wf = await make_workflow(
            {"id": "p", "kind": "parallel", "branches": ["b1", "b2"], "next": ["after"]},
            rec("b1"),
            rec("b2", on_error="continue"),
            rec("after"),
        )
        record = await engine.get_execution(await engine.run(wf.id))

        assert record.status == ExecutionStatus.COMPLETED
        outcomes = {o["step_id"]: o for o in record.step_results["p"]["output"]["outcomes"]}
        assert outcomes["b2"]["status"] == "failed"
        assert outcomes["b2"]["error"] == "kaput b2"
        assert "after" in recorder.calls

    async def test_branch_timeout(self, engine, make_workflow, registry):
        gate = Gate()
        registry.register_handler("gate", gate)
        wf = await make_workflow(
            {"id": "p", "kind": "parallel", "branches": ["slow"], "timeout_seconds": 0.05},
            action("slow", "gate"),
        )
        record = await engine.get_execution(await engine.run(wf.id))
        assert record.status == ExecutionStatus.FAILED
        assert record.failed_step_id == "slow"
        assert "timed out" in record.error_message


# ─── Loops ───

@pytest.mark.unit
class TestLoopSteps:
    async def test_iterates_items_in_order(self, engine, make_workflow, registry):
        async def echo(config):
            return config["value"]

        registry.register_handler("echo", echo)
        wf = await make_workflow(
            {"id": "each", "kind": "loop", "items": "{{trigger.items}}", "body": ["say"]},
            action("say", "echo", {"value": "{{item}}-{{index}}"}),
        )
        record = await engine.get_execution(await engine.run(wf.id, trigger_data={"items": ["a", "b"]}))

        output = record.step_results["each"]["output"]
        assert output["results"] == ["a-0", "b-1"]
        assert output["iterations_completed"] == 2
        assert output["errors"] == []

    async def test_bare_path_items(self, engine, make_workflow, recorder):
        wf = await make_workflow(
            {"id": "each", "kind": "loop", "items": "trigger.ids", "body": ["r"]},
            action("r", "record", {"id": "{{item}}"}),
        )
        await engine.run(wf.id, trigger_data={"ids": ["x", "y"]})
        assert recorder.calls == ["x", "y"]

    async def test_limit_checked_before_any_iteration(self, engine, make_workflow, recorder):
        wf = await make_workflow(
            {"id": "each", "kind": "loop", "items": [1, 2, 3], "body": ["r"], "max_iterations": 2},
            rec("r"),
        )
        record = await engine.get_execution(await engine.run(wf.id))
        assert record.status == ExecutionStatus.FAILED
        assert "exceeding max_iterations=2" in record.error_message
        assert recorder.calls == []

    async def test_continue_on_error(self, engine, make_workflow, registry):
        recorder = Recorder(fail_on={"bad"})
        registry.register_handler("record", recorder)
        wf = await make_workflow(
            {"id": "each", "kind": "loop", "items": ["ok", "bad", "fine"], "body": ["r"], "continue_on_error": True},
            action("r", "record", {"id": "{{item}}"}),
        )
        record = await engine.get_execution(await engine.run(wf.id))

        assert record.status == ExecutionStatus.COMPLETED
        output = record.step_results["each"]["output"]
        assert output["results"] == ["ok", None, "fine"]
        assert output["errors"] == [{"index": 1, "step_id": "r", "error": "kaput bad"}]

    async def test_items_must_be_array(self, engine, make_workflow, recorder):
        wf = await make_workflow(
            {"id": "each", "kind": "loop", "items": "{{trigger.count}}", "body": ["r"]},
            rec("r"),
        )
        record = await engine.get_execution(await engine.run(wf.id, trigger_data={"count": 3}))
        assert record.status == ExecutionStatus.FAILED
        assert "must resolve to an array" in record.error_message


# ─── Error policies ───

class FakeNotifier:
    def __init__(self):
        self.calls = []

    async def notify_step_failed(self, **kwargs):
        self.calls.append(kwargs)


@pytest.mark.unit
class TestErrorPolicies:
    async def test_continue_follows_next(self, engine, make_workflow, registry):
        recorder = Recorder(fail_on={"a"})
        registry.register_handler("record", recorder)
        wf = await make_workflow(rec("a", on_error="continue", next=["b"]), rec("b"))
        record = await engine.get_execution(await engine.run(wf.id))

        assert record.status == ExecutionStatus.COMPLETED
        assert record.step_results["a"]["status"] == "failed"
        assert recorder.calls == ["a", "b"]

    async def test_notify_then_abort(self, repository, registry, sleeper, make_workflow):
        recorder = Recorder(fail_on={"a"})
        registry.register_handler("record", recorder)
        notifier = FakeNotifier()
        engine = WorkflowEngine(
            repository,
            dispatcher=ActionDispatcher(registry),
            retry_coordinator=RetryCoordinator(sleep=sleeper),
            notifier=notifier,
        )
        wf = await make_workflow(rec("a", on_error="notify", next=["b"]), rec("b"))
        record = await engine.get_execution(await engine.run(wf.id))

        assert record.status == ExecutionStatus.FAILED
        assert recorder.calls == ["a"]
        assert len(notifier.calls) == 1
        assert notifier.calls[0]["step_id"] == "a"
        assert notifier.calls[0]["execution_id"] == record.id


# ─── Pause / resume / cancel ───

@pytest.mark.unit
class TestRunControl:
    async def test_pause_at_boundary_then_resume(self, engine, make_workflow, registry, repository):
        gate = Gate()
        registry.register_handler("gate", gate)
        wf = await make_workflow(
            action("first", "gate", next=["second"]),
            action("second", "log", {"message": "after"}),
        )
        eid = await engine.start(wf.id)
        await gate.entered.wait()
        await engine.pause(eid)
        gate.release.set()

        record = await engine.wait(eid)
        assert record.status == ExecutionStatus.PAUSED
        assert set(record.step_results) == {"first"}
        checkpoint = await repository.get_checkpoint(eid)
        assert checkpoint.reason == "execution_paused"
        assert checkpoint.context["pending"] == ["second"]

        # Edits after the run started do not leak into it
        edited = wf.model_copy(deep=True)
        edited.get_step("second").config["message"] = "edited"
        await repository.save_workflow(edited)

        await engine.resume(eid)
        record = await engine.get_execution(eid)
        assert record.status == ExecutionStatus.COMPLETED
        assert record.step_results["second"]["output"]["message"] == "after"
        assert gate.calls == 1

    async def test_resume_requires_paused(self, engine, make_workflow, recorder):
        wf = await make_workflow(rec("a"))
        eid = await engine.run(wf.id)
        with pytest.raises(ConflictError):
            await engine.resume(eid)
        with pytest.raises(ConflictError):
            await engine.pause(eid)

    async def test_cancel_live_run(self, engine, make_workflow, registry, repository):
        gate = Gate()
        registry.register_handler("gate", gate)
        wf = await make_workflow(action("first", "gate", next=["second"]), action("second", "log"))
        eid = await engine.start(wf.id)
        await gate.entered.wait()
        await engine.cancel(eid)
        gate.release.set()

        record = await engine.wait(eid)
        assert record.status == ExecutionStatus.CANCELLED
        assert "second" not in record.step_results
        assert await repository.get_checkpoint(eid) is None
        assert engine.get_running_executions() == []

        with pytest.raises(ConflictError):
            await engine.cancel(eid)

    async def test_cancel_paused_run(self, engine, make_workflow, registry):
        gate = Gate()
        registry.register_handler("gate", gate)
        wf = await make_workflow(action("first", "gate", next=["second"]), action("second", "log"))
        eid = await engine.start(wf.id)
        await gate.entered.wait()
        await engine.pause(eid)
        gate.release.set()
        await engine.wait(eid)

        record = await engine.cancel(eid)
        assert record.status == ExecutionStatus.CANCELLED

    async def test_concurrency_limit_queues_runs(self, repository, registry, sleeper, make_workflow):
        gate = Gate()
        registry.register_handler("gate", gate)
        engine = WorkflowEngine(
            repository,
            dispatcher=ActionDispatcher(registry),
            retry_coordinator=RetryCoordinator(sleep=sleeper),
            max_concurrency=1,
        )
        wf = await make_workflow(action("a", "gate"))
        first = await engine.start(wf.id)
        second = await engine.start(wf.id)
        await gate.entered.wait()

        assert (await engine.get_execution(first)).status == ExecutionStatus.RUNNING
        assert (await engine.get_execution(second)).status == ExecutionStatus.PENDING

        gate.release.set()
        assert (await engine.wait(first)).status == ExecutionStatus.COMPLETED
        assert (await engine.wait(second)).status == ExecutionStatus.COMPLETED


# ─── Timeouts & retries of whole runs ───

@pytest.mark.unit
class TestRunTimeoutAndRetry:
    async def test_run_with_timeout(self, engine, make_workflow, registry):
        gate = Gate()
        registry.register_handler("gate", gate)
        wf = await make_workflow(action("a", "gate"))

        with pytest.raises(ExecutionTimeout) as exc:
            await engine.run_with_timeout(wf.id, timeout=0.05)

        record = await engine.get_execution(exc.value.execution_id)
        assert record.status == ExecutionStatus.FAILED
        assert record.error_message == "Execution timed out after 0.05s"

    async def test_retry_failed_execution(self, engine, make_workflow, registry):
        attempts = []

        async def flaky(config):
            attempts.append(1)
            if len(attempts) == 1:
                raise ValueError("first time fails")
            return "ok"

        registry.register_handler("flaky", flaky)
        wf = await make_workflow(action("a", "flaky"))
        eid = await engine.run(wf.id, trigger_data={"order": 7})
        assert (await engine.get_execution(eid)).status == ExecutionStatus.FAILED

        new_id = await engine.retry_execution(eid)
        retried = await engine.wait(new_id)
        assert retried.status == ExecutionStatus.COMPLETED
        assert retried.retry_of == eid
        assert retried.retry_count == 1
        assert retried.trigger_payload == {"order": 7}

        with pytest.raises(ConflictError):
            await engine.retry_execution(new_id)
