"""Workflow step retry strategies.

Exponential backoff with jitter, retryability classification, per-error-
class default policies, and a coordinator that runs a unit of work under
a policy while consulting the circuit breaker.

Delay before retry number `attempt` (0-based):

    min(max_delay, initial_delay * exponential_base**attempt * backoff_multiplier**attempt)

optionally perturbed by ±25% jitter (and clamped to max_delay again).

Usage:
    coordinator = RetryCoordinator(circuit_breaker=breaker)
    result = await coordinator.execute_with_retry(
        lambda: client.get(url), unit_id="exec-1:fetch", policy=RetryPolicy.network(),
        service_id="api.example.com",
    )
"""

import asyncio
import random
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import httpx
import structlog

from core.circuit_breaker import CircuitBreaker
from core.exceptions import (
    CircuitOpenError,
    HttpStatusError,
    UnknownActionType,
    ValidationError,
)

logger = structlog.get_logger(__name__)

JITTER_RATIO = 0.25


class ErrorClass(str, Enum):
    """Coarse classification of a failure, used to pick a retry policy."""
    NETWORK = "network"
    RATE_LIMIT = "rate_limit"
    SERVER_ERROR = "server_error"
    CLIENT_ERROR = "client_error"
    UNKNOWN = "unknown"


_RATE_LIMIT_HINTS = ("rate limit", "too many requests", "quota exceeded", "429")
_SERVER_HINTS = (
    "500", "502", "503", "504", "internal server error", "bad gateway",
    "service unavailable", "temporarily unavailable", "maintenance",
)
_NETWORK_HINTS = ("network", "timeout", "timed out", "connection", "econnreset", "enotfound")
_CLIENT_HINTS = ("400", "401", "403", "404", "bad request", "unauthorized", "forbidden", "not found")


def classify_error(error: BaseException) -> ErrorClass:
    """Classify an error by type first, then by its message."""
    if isinstance(error, HttpStatusError):
        if error.status == 429:
            return ErrorClass.RATE_LIMIT
        if error.status >= 500:
            return ErrorClass.SERVER_ERROR
        return ErrorClass.CLIENT_ERROR
    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        if status == 429:
            return ErrorClass.RATE_LIMIT
        return ErrorClass.SERVER_ERROR if status >= 500 else ErrorClass.CLIENT_ERROR
    if isinstance(error, (asyncio.TimeoutError, TimeoutError, ConnectionError, httpx.TransportError)):
        return ErrorClass.NETWORK

    message = str(error).lower()
    if any(hint in message for hint in _RATE_LIMIT_HINTS):
        return ErrorClass.RATE_LIMIT
    if any(hint in message for hint in _SERVER_HINTS):
        return ErrorClass.SERVER_ERROR
    if any(hint in message for hint in _NETWORK_HINTS):
        return ErrorClass.NETWORK
    if any(hint in message for hint in _CLIENT_HINTS):
        return ErrorClass.CLIENT_ERROR
    return ErrorClass.UNKNOWN


def is_retryable_error(error: BaseException) -> bool:
    """Network, timeout, 5xx and 429 failures are retryable; nothing else is."""
    if isinstance(error, (CircuitOpenError, UnknownActionType, ValidationError)):
        return False
    return classify_error(error) in (ErrorClass.NETWORK, ErrorClass.RATE_LIMIT, ErrorClass.SERVER_ERROR)


# ─── Policy ───────────────────────────────────────────────────

@dataclass(frozen=True)
class RetryPolicy:
    """Backoff configuration. `max_retries` is the total number of attempts."""
    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0
    backoff_multiplier: float = 1.5
    jitter: bool = True

    def __post_init__(self):
        if self.max_retries < 1:
            raise ValidationError("max_retries must be at least 1")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ValidationError("Retry delays must not be negative")
        if self.exponential_base < 1 or self.backoff_multiplier < 1:
            raise ValidationError("exponential_base and backoff_multiplier must be >= 1")

    @classmethod
    def none(cls) -> "RetryPolicy":
        """Single attempt, no retries."""
        return cls(max_retries=1, initial_delay=0.0, jitter=False)

    @classmethod
    def network(cls) -> "RetryPolicy":
        return cls(max_retries=5, initial_delay=1.0, max_delay=30.0, exponential_base=2.0, backoff_multiplier=1.5)

    @classmethod
    def rate_limit(cls) -> "RetryPolicy":
        return cls(max_retries=3, initial_delay=10.0, max_delay=300.0, exponential_base=3.0, backoff_multiplier=2.0)

    @classmethod
    def from_dict(cls, config: dict, base: Optional["RetryPolicy"] = None) -> "RetryPolicy":
        """Overlay the non-null keys of `config` onto `base` (or the defaults)."""
        base = base or cls()
        known = {f.name for f in fields(cls)}
        overrides = {k: v for k, v in config.items() if k in known and v is not None}
        return replace(base, **overrides)

    def to_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    def base_delay(self, attempt: int) -> float:
        """Delay before retry `attempt` (0-based), without jitter."""
        raw = self.initial_delay * (self.exponential_base ** attempt) * (self.backoff_multiplier ** attempt)
        return min(self.max_delay, raw)

    def compute_delay(self, attempt: int, rng: Optional[random.Random] = None) -> float:
        """Delay in seconds before retry `attempt` (0-based)."""
        delay = self.base_delay(attempt)
        if self.jitter and delay > 0:
            spread = delay * JITTER_RATIO
            delay += (rng or random).uniform(-spread, spread)
            delay = min(self.max_delay, max(0.0, delay))
        return round(delay, 3)


ERROR_CLASS_POLICIES: dict[ErrorClass, RetryPolicy] = {
    ErrorClass.NETWORK: RetryPolicy(max_retries=5, initial_delay=2.0, max_delay=30.0, exponential_base=2.0, backoff_multiplier=1.0),
    ErrorClass.RATE_LIMIT: RetryPolicy(max_retries=3, initial_delay=5.0, max_delay=300.0, exponential_base=3.0, backoff_multiplier=1.0),
    ErrorClass.SERVER_ERROR: RetryPolicy(max_retries=4, initial_delay=1.0, max_delay=60.0, exponential_base=2.0, backoff_multiplier=1.0),
}

RETRY_PRESETS: dict[str, RetryPolicy] = {
    "default": RetryPolicy(),
    "none": RetryPolicy.none(),
    "network": RetryPolicy.network(),
    "rate_limit": RetryPolicy.rate_limit(),
    "server_error": ERROR_CLASS_POLICIES[ErrorClass.SERVER_ERROR],
}


def policy_for_error(error: BaseException, fallback: Optional[RetryPolicy] = None) -> RetryPolicy:
    """The recommended policy for this kind of failure."""
    return ERROR_CLASS_POLICIES.get(classify_error(error), fallback or RetryPolicy())


# ─── Coordinator ──────────────────────────────────────────────

@dataclass
class RetryAttemptState:
    """Live retry bookkeeping for one unit of work."""
    unit_id: str
    attempt_number: int
    last_attempt_at: datetime
    total_attempts: int
    last_error: str
    history: list[dict] = field(default_factory=list)


OnRetry = Callable[[int, BaseException, float], Any]


class RetryCoordinator:
    """Runs units of work under a retry policy.

    Attempt state lives only while a unit is retrying: it is created on the
    first failure and dropped on success or exhaustion. Backoff waits go
    through the injected `sleep`, and no lock is held while waiting.
    """

    def __init__(
        self,
        circuit_breaker: Optional[CircuitBreaker] = None,
        default_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.circuit_breaker = circuit_breaker
        self.default_policy = default_policy or RetryPolicy()
        self._sleep = sleep
        self._states: dict[str, RetryAttemptState] = {}
        self.total_attempts = 0
        self.total_retries = 0
        self.total_exhausted = 0

    async def execute_with_retry(
        self,
        operation: Callable[[], Awaitable[Any]],
        unit_id: str,
        policy: Optional[RetryPolicy] = None,
        service_id: Optional[str] = None,
        on_retry: Optional[OnRetry] = None,
        per_error_class: bool = False,
    ) -> Any:
        """Run `operation` until it succeeds or the policy is exhausted.

        With `per_error_class`, the first failure swaps `policy` for the
        recommended policy of its error class (keeping the jitter setting).
        A call cancelled while it holds the half-open slot gives the slot
        back before the cancellation propagates.

        Raises:
            CircuitOpenError: the service's circuit rejected the attempt
            The last error once attempts are exhausted, or immediately for
            a non-retryable error
        """
        policy = policy or self.default_policy
        attempt = 0

        while True:
            if service_id and self.circuit_breaker and not self.circuit_breaker.can_execute(service_id):
                self._states.pop(unit_id, None)
                raise CircuitOpenError(service_id)

            self.total_attempts += 1
            try:
                result = await operation()
            except Exception as e:
                retryable = is_retryable_error(e)
                if service_id and self.circuit_breaker:
                    # A non-retryable answer still proves the service is reachable
                    if retryable:
                        self.circuit_breaker.record_failure(service_id, str(e))
                    else:
                        self.circuit_breaker.record_success(service_id)

                if per_error_class and attempt == 0:
                    policy = replace(policy_for_error(e, fallback=policy), jitter=policy.jitter)

                state = self._record_failure(unit_id, attempt, e)
                if not retryable or attempt + 1 >= policy.max_retries:
                    if retryable:
                        self.total_exhausted += 1
                        logger.warning(
                            "Retries exhausted",
                            unit_id=unit_id,
                            attempts=state.total_attempts,
                            error=str(e),
                        )
                    self._states.pop(unit_id, None)
                    raise

                delay = policy.compute_delay(attempt)
                self.total_retries += 1
                logger.info(
                    "Retrying after failure",
                    unit_id=unit_id,
                    attempt=attempt + 1,
                    max_retries=policy.max_retries,
                    delay_s=delay,
                    error=str(e),
                )
                if on_retry:
                    outcome = on_retry(attempt + 1, e, delay)
                    if asyncio.iscoroutine(outcome):
                        await outcome
                await self._sleep(delay)
                attempt += 1
            except BaseException:
                if service_id and self.circuit_breaker:
                    self.circuit_breaker.release_half_open_slot(service_id)
                self._states.pop(unit_id, None)
                raise
            else:
                if service_id and self.circuit_breaker:
                    self.circuit_breaker.record_success(service_id)
                self._states.pop(unit_id, None)
                return result

    def _record_failure(self, unit_id: str, attempt: int, error: BaseException) -> RetryAttemptState:
        now = datetime.now(timezone.utc)
        state = self._states.get(unit_id)
        if state is None:
            state = RetryAttemptState(
                unit_id=unit_id,
                attempt_number=attempt + 1,
                last_attempt_at=now,
                total_attempts=0,
                last_error="",
            )
            self._states[unit_id] = state
        state.attempt_number = attempt + 1
        state.total_attempts += 1
        state.last_attempt_at = now
        state.last_error = str(error)
        state.history.append({"attempt": attempt + 1, "error": str(error), "at": now.isoformat()})
        return state

    def get_attempt_state(self, unit_id: str) -> Optional[RetryAttemptState]:
        return self._states.get(unit_id)

    def active_units(self) -> list[str]:
        return list(self._states)

    def get_statistics(self) -> dict:
        return {
            "active_retries": len(self._states),
            "total_attempts": self.total_attempts,
            "total_retries": self.total_retries,
            "total_exhausted": self.total_exhausted,
            "circuits": self.circuit_breaker.get_status() if self.circuit_breaker else {},
        }
