"""Cooperative progress ticker for the single opaque Generator call.

The Generator reports no intermediate progress, so while it runs the
simulator interpolates between two bounds over the estimated duration and
reports on a fixed tick. The value approaches ``end`` but never reaches it.
Once the curve flattens every tick repeats the last value, so a long call
keeps refreshing whatever the callback writes to.

Always use ``running()`` (or pair ``start()`` with ``stop()`` in a
``finally``) so the ticker task cannot outlive the call it decorates.
"""

import asyncio
import contextlib
import inspect
import logging
import math
import time
from typing import Awaitable, Callable, Optional, Union

logger = logging.getLogger(__name__)

TickCallback = Callable[[int], Union[None, Awaitable[None]]]

# At elapsed == estimate the simulated value sits at 1 - e^-3 (~95%) of the window
_CURVE_STEEPNESS = 3.0


def simulated_percent(start: int, end: int, elapsed_ms: float, estimated_ms: float) -> int:
    """Ease-out interpolation that is strictly below ``end`` for any elapsed time."""
    if end <= start:
        return start
    duration = max(estimated_ms, 1.0)
    fraction = 1.0 - math.exp(-_CURVE_STEEPNESS * max(elapsed_ms, 0.0) / duration)
    value = start + int((end - start) * fraction)
    return min(value, end - 1)


class ProgressSimulator:
    """Interpolates progress on a background task until stopped."""

    def __init__(self, tick_interval: float = 2.0, clock: Callable[[], float] = time.monotonic):
        self._tick_interval = tick_interval
        self._clock = clock
        self._task: Optional[asyncio.Task] = None
        self._last_value: Optional[int] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def last_value(self) -> Optional[int]:
        return self._last_value

    def start(
        self,
        start_percent: int,
        end_percent: int,
        estimated_duration_ms: float,
        on_tick: TickCallback,
    ) -> None:
        """Begin ticking. Raises if the simulator is already running."""
        if self.is_running:
            raise RuntimeError("ProgressSimulator is already running")
        self._last_value = start_percent
        self._task = asyncio.create_task(
            self._run(start_percent, end_percent, estimated_duration_ms, on_tick)
        )

    async def stop(self) -> None:
        """Cancel the ticker. Safe to call more than once or before start()."""
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    @contextlib.asynccontextmanager
    async def running(
        self,
        start_percent: int,
        end_percent: int,
        estimated_duration_ms: float,
        on_tick: TickCallback,
    ):
        """Context manager: start on enter, stop on every exit path."""
        self.start(start_percent, end_percent, estimated_duration_ms, on_tick)
        try:
            yield self
        finally:
            await self.stop()

    async def _run(
        self,
        start_percent: int,
        end_percent: int,
        estimated_duration_ms: float,
        on_tick: TickCallback,
    ) -> None:
        started = self._clock()
        while True:
            await asyncio.sleep(self._tick_interval)
            elapsed_ms = (self._clock() - started) * 1000
            value = simulated_percent(start_percent, end_percent, elapsed_ms, estimated_duration_ms)
            if self._last_value is not None:
                value = max(value, self._last_value)
            self._last_value = value
            try:
                result = on_tick(value)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.warning("Progress simulator callback failed at %d%%", value, exc_info=True)
