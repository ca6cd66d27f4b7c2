"""
timer.py — Speaking Drill · Response Countdown
==============================================
One countdown per turn, run as an asyncio task on the session's event loop.

Each arm() bumps a generation counter; the running task re-checks it after
every sleep and every callback, so nothing is delivered after cancel() even
when cancel() is called from inside on_tick / on_expire.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Optional, Protocol

log = logging.getLogger("speaking_drill.timer")


# ---------------------------------------------------------------------------
# Clocks
# ---------------------------------------------------------------------------

class Clock(Protocol):
    def now(self) -> float:
        """Seconds from an arbitrary, monotonic origin."""


class MonotonicClock:
    def now(self) -> float:
        return time.monotonic()


# ---------------------------------------------------------------------------
# Countdown
# ---------------------------------------------------------------------------

class CountdownTimer:
    """Arms / cancels a single countdown.  Re-arming cancels the previous one."""

    def __init__(self, tick_seconds: float = 1.0):
        self._tick_seconds = tick_seconds
        self._generation: int = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def arm(
        self,
        limit: int,
        on_tick: Callable[[int], None],
        on_expire: Callable[[], None],
    ) -> None:
        self.cancel()
        generation = self._generation
        self._task = asyncio.get_running_loop().create_task(
            self._run(generation, limit, on_tick, on_expire),
            name=f"drill_countdown_{generation}",
        )
        log.debug("event=countdown_armed limit=%d tick_sec=%.3f gen=%d", limit, self._tick_seconds, generation)

    def cancel(self) -> None:
        self._generation += 1
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            log.debug("event=countdown_cancelled gen=%d", self._generation - 1)

    async def _run(
        self,
        generation: int,
        limit: int,
        on_tick: Callable[[int], None],
        on_expire: Callable[[], None],
    ) -> None:
        remaining = limit
        try:
            while remaining > 0:
                await asyncio.sleep(self._tick_seconds)
                if generation != self._generation:
                    return
                remaining -= 1
                on_tick(remaining)
                if generation != self._generation:
                    return

            # Detach before firing so a cancel() from on_expire is a no-op for this task
            self._generation += 1
            self._task = None
            log.debug("event=countdown_expired gen=%d", generation)
            on_expire()
        except asyncio.CancelledError:
            log.debug("event=countdown_task_cancelled gen=%d", generation)
            raise
