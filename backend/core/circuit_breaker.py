"""Circuit breaker for calls to external services.

Stops hammering a dependency that keeps failing. After N consecutive
failures for a service (each within the window of the previous one) the
breaker opens and rejects calls until the window has elapsed. It then
goes half-open and lets exactly one probe through; a successful probe
closes it again, a failed one re-opens it.
"""

import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

import structlog

from core.constants import CircuitState

logger = structlog.get_logger(__name__)


@dataclass
class _ServiceCircuit:
    failures: int = 0
    last_failure: Optional[float] = None
    state: CircuitState = CircuitState.CLOSED
    probe_in_flight: bool = False


class CircuitBreaker:
    """Per-service circuit breaker.

    State is owned by the instance and guarded by a lock, so a single
    breaker can be shared by every concurrent run. The lock is only held
    while reading or updating counters, never around the protected call.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.window_seconds = window_seconds
        self._clock = clock
        self._circuits: dict[str, _ServiceCircuit] = {}
        self._lock = threading.Lock()

    def _circuit(self, service_id: str) -> _ServiceCircuit:
        circuit = self._circuits.get(service_id)
        if circuit is None:
            circuit = self._circuits[service_id] = _ServiceCircuit()
        return circuit

    def can_execute(self, service_id: str) -> bool:
        """Check whether a call to this service may proceed.

        Returning True for a half-open circuit reserves the single probe
        slot; the caller must report the outcome via record_success or
        record_failure.
        """
        with self._lock:
            circuit = self._circuit(service_id)

            if circuit.state == CircuitState.CLOSED:
                return True

            if circuit.state == CircuitState.OPEN:
                elapsed = self._clock() - (circuit.last_failure or 0.0)
                if elapsed < self.window_seconds:
                    logger.warning(
                        "Circuit open, rejecting call",
                        service_id=service_id,
                        remaining_seconds=round(self.window_seconds - elapsed, 1),
                    )
                    return False
                circuit.state = CircuitState.HALF_OPEN
                circuit.probe_in_flight = False
                logger.info("Circuit half-open", service_id=service_id)

            if circuit.probe_in_flight:
                return False
            circuit.probe_in_flight = True
            return True

    def record_success(self, service_id: str) -> None:
        """Record a successful call, closing the circuit."""
        with self._lock:
            circuit = self._circuit(service_id)
            if circuit.state != CircuitState.CLOSED:
                logger.info("Circuit closed after successful call", service_id=service_id)
            circuit.failures = 0
            circuit.state = CircuitState.CLOSED
            circuit.probe_in_flight = False

    def release_half_open_slot(self, service_id: str) -> None:
        """Give back the half-open slot of a call that never finished.

        The circuit goes back to open with a fresh window, so the next trial call
        is allowed once that window has elapsed.
        """
        with self._lock:
            circuit = self._circuits.get(service_id)
            if circuit is None or circuit.state != CircuitState.HALF_OPEN or not circuit.probe_in_flight:
                return
            circuit.state = CircuitState.OPEN
            circuit.probe_in_flight = False
            circuit.last_failure = self._clock()
            logger.info("Half-open call abandoned, circuit re-opened", service_id=service_id)

    def record_failure(self, service_id: str, error: Optional[str] = None) -> None:
        """Record a failed call; may trip the breaker."""
        with self._lock:
            circuit = self._circuit(service_id)
            now = self._clock()

            if circuit.state == CircuitState.HALF_OPEN:
                circuit.state = CircuitState.OPEN
                circuit.probe_in_flight = False
                circuit.last_failure = now
                logger.warning("Probe failed, circuit re-opened", service_id=service_id, error=error)
                return

            # A failure outside the window starts a fresh streak
            if circuit.last_failure is not None and now - circuit.last_failure > self.window_seconds:
                circuit.failures = 0

            circuit.failures += 1
            circuit.last_failure = now

            if circuit.failures >= self.failure_threshold and circuit.state == CircuitState.CLOSED:
                circuit.state = CircuitState.OPEN
                logger.error(
                    "Circuit opened",
                    service_id=service_id,
                    failures=circuit.failures,
                    window_seconds=self.window_seconds,
                    error=error,
                )

    def get_state(self, service_id: str) -> CircuitState:
        """Current state, reporting an expired open circuit as half-open."""
        with self._lock:
            circuit = self._circuits.get(service_id)
            if circuit is None:
                return CircuitState.CLOSED
            if (
                circuit.state == CircuitState.OPEN
                and self._clock() - (circuit.last_failure or 0.0) >= self.window_seconds
            ):
                return CircuitState.HALF_OPEN
            return circuit.state

    def get_status(self) -> dict:
        """Get status of all tracked services."""
        with self._lock:
            return {
                service_id: {
                    "state": circuit.state.value,
                    "failures": circuit.failures,
                    "last_failure": circuit.last_failure,
                }
                for service_id, circuit in self._circuits.items()
            }

    def reset(self, service_id: Optional[str] = None) -> None:
        """Reset breaker for a service or all services."""
        with self._lock:
            if service_id:
                self._circuits.pop(service_id, None)
            else:
                self._circuits.clear()
