"""
Flow-scoped timers.

Flow controllers schedule UI timers (the resend countdown, staged status
messages).  Every timer is owned by a ``TimerGroup`` so a single
``cancel_all()`` on teardown guarantees no callback writes state after
the flow is gone.
"""

from __future__ import annotations

import asyncio
import math
import time
from typing import Any, Callable, Coroutine, Optional


class TimerGroup:
    """Tracks timer handles and background tasks for one owner."""

    def __init__(self) -> None:
        self._handles: set[asyncio.TimerHandle] = set()
        self._tasks: set[asyncio.Task[Any]] = set()

    def call_later(
        self, delay: float, callback: Callable[..., None], *args: object,
    ) -> asyncio.TimerHandle:
        """Schedule *callback* on the running loop after *delay* seconds."""
        loop = asyncio.get_running_loop()
        handle: asyncio.TimerHandle

        def fire() -> None:
            self._handles.discard(handle)
            callback(*args)

        handle = loop.call_later(delay, fire)
        self._handles.add(handle)
        return handle

    def spawn(self, coro: Coroutine[Any, Any, Any], name: Optional[str] = None) -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @property
    def active(self) -> int:
        """Number of pending handles and tasks."""
        return len(self._handles) + sum(1 for task in self._tasks if not task.done())

    def cancel_all(self) -> None:
        for handle in list(self._handles):
            handle.cancel()
        self._handles.clear()
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()


class Cooldown:
    """Client-side cooldown, independent of any provider-side limit.

    Parameters
    ----------
    seconds:
        Length of the cooldown.
    timers:
        Owner of the optional countdown ticker.
    on_tick:
        Called with the remaining whole seconds once per second while the
        cooldown runs, and with ``0`` when it ends.
    clock:
        Monotonic seconds; injectable for tests.
    """

    def __init__(
        self,
        seconds: float,
        timers: TimerGroup,
        on_tick: Optional[Callable[[int], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._seconds: float = seconds
        self._timers: TimerGroup = timers
        self._on_tick: Optional[Callable[[int], None]] = on_tick
        self._clock: Callable[[], float] = clock
        self._ends_at: Optional[float] = None
        self._ticker: Optional[asyncio.Task[None]] = None

    def start(self) -> None:
        """(Re)start the cooldown from now."""
        self._ends_at = self._clock() + self._seconds
        if self._ticker is not None:
            self._ticker.cancel()
            self._ticker = None
        if self._on_tick is not None:
            self._ticker = self._timers.spawn(self._tick(), name="resend-cooldown")

    def remaining(self) -> int:
        """Whole seconds left, rounded up; ``0`` when ready."""
        if self._ends_at is None:
            return 0
        return max(0, math.ceil(self._ends_at - self._clock()))

    @property
    def ready(self) -> bool:
        return self.remaining() == 0

    def cancel(self) -> None:
        self._ends_at = None
        if self._ticker is not None:
            self._ticker.cancel()
            self._ticker = None

    async def _tick(self) -> None:
        assert self._on_tick is not None
        while (left := self.remaining()) > 0:
            self._on_tick(left)
            await asyncio.sleep(1)
        self._on_tick(0)
