"""Tests for workflow retry strategies."""

import asyncio
import random

import httpx
import pytest

from core.circuit_breaker import CircuitBreaker
from core.constants import CircuitState
from core.exceptions import CircuitOpenError, HttpStatusError, UnknownActionType, ValidationError
from workflow.retry_strategies import (
    ERROR_CLASS_POLICIES,
    RETRY_PRESETS,
    ErrorClass,
    RetryCoordinator,
    RetryPolicy,
    classify_error,
    is_retryable_error,
    policy_for_error,
)


# ─── RetryPolicy creation ───

@pytest.mark.unit
class TestRetryPolicyCreation:
    def test_defaults(self):
        p = RetryPolicy()
        assert p.max_retries == 3
        assert p.initial_delay == 1.0
        assert p.max_delay == 60.0
        assert p.exponential_base == 2.0
        assert p.backoff_multiplier == 1.5
        assert p.jitter is True

    def test_none_policy_is_single_attempt(self):
        p = RetryPolicy.none()
        assert p.max_retries == 1
        assert p.jitter is False

    def test_zero_attempts_rejected(self):
        with pytest.raises(ValidationError):
            RetryPolicy(max_retries=0)

    def test_negative_delay_rejected(self):
        with pytest.raises(ValidationError):
            RetryPolicy(initial_delay=-1)

    def test_from_dict_overlays_base(self):
        p = RetryPolicy.from_dict({"max_retries": 7, "initial_delay": None, "bogus": 1}, RetryPolicy.network())
        assert p.max_retries == 7
        assert p.initial_delay == RetryPolicy.network().initial_delay
        assert p.max_delay == 30.0

    def test_all_presets_exist(self):
        for name in ("default", "none", "network", "rate_limit", "server_error"):
            assert isinstance(RETRY_PRESETS[name], RetryPolicy)


# ─── Delay computation ───

@pytest.mark.unit
class TestDelayComputation:
    def test_exponential_delay_no_jitter(self):
        p = RetryPolicy(jitter=False)
        assert p.compute_delay(0) == 1.0
        assert p.compute_delay(1) == 3.0
        assert p.compute_delay(2) == 9.0

    def test_max_delay_cap(self):
        p = RetryPolicy(initial_delay=10.0, max_delay=15.0, jitter=False)
        assert p.compute_delay(0) == 10.0
        assert p.compute_delay(1) == 15.0
        assert p.compute_delay(5) == 15.0

    def test_jitter_stays_within_quarter(self):
        p = RetryPolicy(jitter=True)
        rng = random.Random(42)
        for _ in range(50):
            d = p.compute_delay(1, rng)
            assert 2.25 <= d <= 3.75

    def test_jitter_never_exceeds_max_delay(self):
        p = RetryPolicy(initial_delay=60.0, max_delay=60.0, jitter=True)
        rng = random.Random(7)
        assert all(p.compute_delay(0, rng) <= 60.0 for _ in range(50))


# ─── Classification ───

@pytest.mark.unit
class TestClassifyError:
    def test_http_status_errors(self):
        assert classify_error(HttpStatusError(503, "Service Unavailable")) == ErrorClass.SERVER_ERROR
        assert classify_error(HttpStatusError(429, "Too Many Requests")) == ErrorClass.RATE_LIMIT
        assert classify_error(HttpStatusError(404, "Not Found")) == ErrorClass.CLIENT_ERROR

    def test_transport_errors_are_network(self):
        assert classify_error(httpx.ConnectError("refused")) == ErrorClass.NETWORK
        assert classify_error(TimeoutError()) == ErrorClass.NETWORK
        assert classify_error(ConnectionResetError()) == ErrorClass.NETWORK

    def test_message_hints(self):
        assert classify_error(Exception("quota exceeded for today")) == ErrorClass.RATE_LIMIT
        assert classify_error(Exception("upstream is in maintenance")) == ErrorClass.SERVER_ERROR
        assert classify_error(Exception("connection reset by peer")) == ErrorClass.NETWORK
        assert classify_error(Exception("something odd")) == ErrorClass.UNKNOWN

    def test_retryable(self):
        assert is_retryable_error(HttpStatusError(502, "Bad Gateway"))
        assert is_retryable_error(httpx.ReadTimeout("slow"))
        assert not is_retryable_error(HttpStatusError(400, "Bad Request"))
        assert not is_retryable_error(ValueError("boom"))

    def test_engine_errors_never_retried(self):
        assert not is_retryable_error(ValidationError("timeout must be positive"))
        assert not is_retryable_error(UnknownActionType("ftp"))
        assert not is_retryable_error(CircuitOpenError("api"))

    def test_policy_for_error(self):
        assert policy_for_error(HttpStatusError(503)) == ERROR_CLASS_POLICIES[ErrorClass.SERVER_ERROR]
        fallback = RetryPolicy.none()
        assert policy_for_error(ValueError("x"), fallback) is fallback


# ─── Coordinator ───

class Flaky:
    """Fails `failures` times with `error`, then returns "ok"."""

    def __init__(self, failures: int, error: Exception):
        self.failures = failures
        self.error = error
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return "ok"


@pytest.mark.unit
class TestExecuteWithRetry:
    async def test_success_first_attempt(self, sleeper):
        coordinator = RetryCoordinator(sleep=sleeper)
        op = Flaky(0, ValueError())
        assert await coordinator.execute_with_retry(op, unit_id="u1") == "ok"
        assert op.calls == 1
        assert sleeper.delays == []

    async def test_retries_with_backoff(self, sleeper):
        coordinator = RetryCoordinator(sleep=sleeper)
        op = Flaky(2, HttpStatusError(503, "Service Unavailable"))
        result = await coordinator.execute_with_retry(op, unit_id="u1", policy=RetryPolicy(jitter=False))
        assert result == "ok"
        assert op.calls == 3
        assert sleeper.delays == [1.0, 3.0]
        stats = coordinator.get_statistics()
        assert stats["total_attempts"] == 3
        assert stats["total_retries"] == 2
        assert stats["active_retries"] == 0

    async def test_exhausts_retries(self, sleeper):
        coordinator = RetryCoordinator(sleep=sleeper)
        op = Flaky(10, HttpStatusError(503, "Service Unavailable"))
        with pytest.raises(HttpStatusError):
            await coordinator.execute_with_retry(op, unit_id="u1", policy=RetryPolicy(max_retries=3, jitter=False))
        assert op.calls == 3
        assert coordinator.total_exhausted == 1
        assert coordinator.active_units() == []

    async def test_no_retry_on_non_retryable(self, sleeper):
        coordinator = RetryCoordinator(sleep=sleeper)
        op = Flaky(10, HttpStatusError(404, "Not Found"))
        with pytest.raises(HttpStatusError):
            await coordinator.execute_with_retry(op, unit_id="u1")
        assert op.calls == 1
        assert sleeper.delays == []

    async def test_on_retry_callback_sees_attempt_state(self, sleeper):
        coordinator = RetryCoordinator(sleep=sleeper)
        seen = []

        async def on_retry(attempt, error, delay):
            state = coordinator.get_attempt_state("u1")
            seen.append((attempt, str(error), delay, state.total_attempts))

        op = Flaky(1, ConnectionError("connection refused"))
        await coordinator.execute_with_retry(op, unit_id="u1", policy=RetryPolicy(jitter=False), on_retry=on_retry)
        assert seen == [(1, "connection refused", 1.0, 1)]
        assert coordinator.get_attempt_state("u1") is None

    async def test_first_failure_picks_error_class_policy(self, sleeper):
        coordinator = RetryCoordinator(sleep=sleeper)
        op = Flaky(10, HttpStatusError(429, "Too Many Requests"))
        with pytest.raises(HttpStatusError):
            await coordinator.execute_with_retry(
                op, unit_id="u1", policy=RetryPolicy(jitter=False), per_error_class=True
            )
        rate_limit = ERROR_CLASS_POLICIES[ErrorClass.RATE_LIMIT]
        assert op.calls == rate_limit.max_retries
        assert sleeper.delays == [5.0, 15.0]

    async def test_error_class_policy_only_on_request(self, sleeper):
        coordinator = RetryCoordinator(sleep=sleeper)
        op = Flaky(10, HttpStatusError(429, "Too Many Requests"))
        with pytest.raises(HttpStatusError):
            await coordinator.execute_with_retry(op, unit_id="u1", policy=RetryPolicy(max_retries=2, jitter=False))
        assert sleeper.delays == [1.0]


@pytest.mark.unit
class TestCoordinatorWithBreaker:
    async def test_open_circuit_stops_retries(self, sleeper):
        breaker = CircuitBreaker(failure_threshold=3, window_seconds=60)
        coordinator = RetryCoordinator(circuit_breaker=breaker, sleep=sleeper)
        op = Flaky(10, HttpStatusError(503, "Service Unavailable"))

        with pytest.raises(CircuitOpenError):
            await coordinator.execute_with_retry(
                op, unit_id="u1", policy=RetryPolicy(max_retries=5, jitter=False), service_id="api"
            )
        assert op.calls == 3
        assert breaker.get_state("api") == CircuitState.OPEN

    async def test_non_retryable_error_counts_as_reachable(self, sleeper):
        breaker = CircuitBreaker(failure_threshold=2, window_seconds=60)
        coordinator = RetryCoordinator(circuit_breaker=breaker, sleep=sleeper)
        breaker.record_failure("api", "earlier")

        with pytest.raises(HttpStatusError):
            await coordinator.execute_with_retry(Flaky(1, HttpStatusError(400)), unit_id="u1", service_id="api")
        assert breaker.get_status()["api"]["failures"] == 0
        assert breaker.get_state("api") == CircuitState.CLOSED

    async def test_cancelled_half_open_call_gives_slot_back(self, sleeper):
        now = [0.0]
        breaker = CircuitBreaker(failure_threshold=1, window_seconds=10, clock=lambda: now[0])
        coordinator = RetryCoordinator(circuit_breaker=breaker, sleep=sleeper)
        breaker.record_failure("api", "down")
        now[0] = 11.0

        async def hang():
            await asyncio.Event().wait()

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(coordinator.execute_with_retry(hang, unit_id="u1", service_id="api"), 0.05)
        assert breaker.get_state("api") == CircuitState.OPEN
        assert coordinator.active_units() == []

        now[0] = 10_000.0
        assert await coordinator.execute_with_retry(Flaky(0, ValueError()), unit_id="u2", service_id="api") == "ok"
        assert breaker.get_state("api") == CircuitState.CLOSED
