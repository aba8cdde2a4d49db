"""Scheduling primitives shared by the poll loop, renewal timer and ceremonies.

Every deadline in the engine is an absolute instant on a single Clock, so a
session or ceremony never drifts across repeated interval changes. Tests swap
in a virtual clock.
"""

import asyncio
import logging
from collections.abc import Awaitable
from typing import Protocol, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Clock(Protocol):
    """Time source used for deadlines and timers."""

    def now(self) -> float:
        """Return the current instant in seconds."""
        ...

    async def sleep(self, seconds: float) -> None:
        """Suspend the caller for the given number of seconds."""
        ...


class MonotonicClock:
    """Clock backed by the event loop's monotonic time."""

    def now(self) -> float:
        return asyncio.get_running_loop().time()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))


class DeadlineExceeded(Exception):
    """Raised when an awaited operation outlives its deadline."""

    pass


class CancellationToken:
    """Cooperative cancellation flag for one schedulable unit.

    Checked before every tick and before acting on any response, so a
    response that arrives after cancellation is discarded.
    """

    def __init__(self) -> None:
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True


async def race_deadline(operation: Awaitable[T], clock: Clock, deadline: float) -> T:
    """Await an operation, giving up when the clock reaches the deadline.

    The operation is cancelled if the deadline wins. Deadlines are compared
    on the given clock rather than as relative per-call timeouts.

    Raises:
        DeadlineExceeded: If the deadline passes before the operation completes
    """
    work = asyncio.ensure_future(operation)
    remaining = deadline - clock.now()
    if remaining <= 0:
        work.cancel()
        raise DeadlineExceeded()

    timer = asyncio.ensure_future(clock.sleep(remaining))
    try:
        done, _ = await asyncio.wait({work, timer}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        work.cancel()
        timer.cancel()
        raise

    timer.cancel()
    if work in done:
        return work.result()

    work.cancel()
    logger.debug("Operation abandoned at deadline")
    raise DeadlineExceeded()
