"""
Timing primitives: the bounded wait for editor changes and hover debouncing.

Change metadata and the edited text arrive on separate channels; reacting
to a typed trigger character needs both. ``ChangeWaiter`` waits for the
change to be delivered, bounded by a short timeout, and reports whether it
arrived or timed out instead of polling.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from typing import Any, Callable, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_WAIT_ATTEMPTS = 30
DEFAULT_WAIT_INTERVAL = 0.022


class WaitOutcome(enum.Enum):
    ARRIVED = "arrived"
    TIMED_OUT = "timed-out"


class ChangeWaiter(Generic[T]):
    """Holds the latest change and lets a coroutine wait for one to arrive.

    The wait is bounded by ``attempts * interval`` seconds (about 0.66s by
    default). Cancelling the waiting task cancels the wait.
    """

    def __init__(
        self,
        attempts: int = DEFAULT_WAIT_ATTEMPTS,
        interval: float = DEFAULT_WAIT_INTERVAL,
    ) -> None:
        self.timeout = attempts * interval
        self._change: T | None = None
        self._event = asyncio.Event()

    @property
    def change(self) -> T | None:
        return self._change

    def notify(self, change: T) -> None:
        self._change = change
        self._event.set()

    def invalidate(self) -> None:
        self._change = None
        self._event.clear()

    async def wait(self) -> WaitOutcome:
        if self._change is not None:
            return WaitOutcome.ARRIVED
        try:
            await asyncio.wait_for(self._event.wait(), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.debug(f"No change arrived within {self.timeout:.2f}s")
            return WaitOutcome.TIMED_OUT
        return WaitOutcome.ARRIVED if self._change is not None else WaitOutcome.TIMED_OUT


class Debouncer:
    """Coalesce calls, invoking ``callback`` with the most recent arguments.

    Must be called from within a running event loop.
    """

    def __init__(self, delay: float, callback: Callable[..., Any]) -> None:
        self.delay = delay
        self.callback = callback
        self._handle: asyncio.TimerHandle | None = None

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def __call__(self, *args: Any) -> None:
        self.cancel()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self.delay, self._fire, args)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self, args: tuple[Any, ...]) -> None:
        self._handle = None
        self.callback(*args)
