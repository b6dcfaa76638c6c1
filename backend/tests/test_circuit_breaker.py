"""Tests for the per-service circuit breaker."""

import pytest

from core.circuit_breaker import CircuitBreaker
from core.constants import CircuitState


class ManualClock:
    def __init__(self):
        self.t = 1000.0

    def __call__(self) -> float:
        return self.t


@pytest.fixture
def mclock():
    return ManualClock()


@pytest.fixture
def cb(mclock):
    return CircuitBreaker(failure_threshold=3, window_seconds=60, clock=mclock)


@pytest.mark.unit
class TestCircuitBreaker:
    def test_closed_by_default(self, cb):
        assert cb.can_execute("api") is True
        assert cb.get_state("api") == CircuitState.CLOSED

    def test_opens_after_threshold(self, cb):
        for _ in range(3):
            cb.record_failure("api", "503")
        assert cb.get_state("api") == CircuitState.OPEN
        assert cb.can_execute("api") is False

    def test_services_are_independent(self, cb):
        for _ in range(3):
            cb.record_failure("api")
        assert cb.can_execute("mail") is True

    def test_success_resets_streak(self, cb):
        cb.record_failure("api")
        cb.record_failure("api")
        cb.record_success("api")
        cb.record_failure("api")
        assert cb.get_state("api") == CircuitState.CLOSED

    def test_failures_outside_window_start_fresh(self, cb, mclock):
        cb.record_failure("api")
        cb.record_failure("api")
        mclock.t += 61
        cb.record_failure("api")
        assert cb.get_state("api") == CircuitState.CLOSED
        assert cb.get_status()["api"]["failures"] == 1

    def test_half_open_admits_single_probe(self, cb, mclock):
        for _ in range(3):
            cb.record_failure("api")
        mclock.t += 60
        assert cb.get_state("api") == CircuitState.HALF_OPEN
        assert cb.can_execute("api") is True
        assert cb.can_execute("api") is False

    def test_successful_probe_closes(self, cb, mclock):
        for _ in range(3):
            cb.record_failure("api")
        mclock.t += 60
        assert cb.can_execute("api")
        cb.record_success("api")
        assert cb.get_state("api") == CircuitState.CLOSED
        assert cb.can_execute("api") is True

    def test_failed_probe_reopens(self, cb, mclock):
        for _ in range(3):
            cb.record_failure("api")
        mclock.t += 60
        assert cb.can_execute("api")
        cb.record_failure("api", "still down")
        assert cb.get_state("api") == CircuitState.OPEN
        mclock.t += 30
        assert cb.can_execute("api") is False

    def test_reset(self, cb):
        for _ in range(3):
            cb.record_failure("api")
        cb.reset("api")
        assert cb.can_execute("api") is True
        cb.record_failure("mail")
        cb.reset()
        assert cb.get_status() == {}

    def test_released_half_open_slot_reopens_with_fresh_window(self, cb, mclock):
        for _ in range(3):
            cb.record_failure("api")
        mclock.t += 60
        assert cb.can_execute("api")
        cb.release_half_open_slot("api")
        assert cb.get_state("api") == CircuitState.OPEN
        mclock.t += 59
        assert cb.can_execute("api") is False
        mclock.t += 1
        assert cb.can_execute("api") is True

    def test_release_outside_half_open_is_noop(self, cb):
        cb.record_failure("api")
        cb.release_half_open_slot("api")
        cb.release_half_open_slot("mail")
        assert cb.get_state("api") == CircuitState.CLOSED
        assert cb.get_status()["api"]["failures"] == 1
