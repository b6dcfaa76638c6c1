"""Clock and timer facilities used by the scheduler.

The scheduler never reads the wall clock or sleeps on its own; it is
handed a Clock and a TimerFacility so tests can drive time by hand.
"""

import asyncio
from datetime import datetime, timezone
from typing import Callable, Protocol


class Clock(Protocol):
    def now(self) -> datetime:
        """Current time as an aware UTC datetime."""
        ...


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class TimerFacility(Protocol):
    def call_at(self, when: datetime, callback: Callable[[], None]) -> TimerHandle:
        """Invoke `callback` once `when` is reached (immediately if past)."""
        ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class AsyncioTimerFacility:
    """Timers on the running event loop (`loop.call_later`)."""

    def __init__(self, clock: Clock = None):
        self.clock = clock or SystemClock()

    def call_at(self, when: datetime, callback: Callable[[], None]) -> asyncio.TimerHandle:
        delay = max(0.0, (when - self.clock.now()).total_seconds())
        return asyncio.get_running_loop().call_later(delay, callback)
