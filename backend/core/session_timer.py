"""
Session countdown timer.

Elapsed time is always derived from a monotonic clock rather than by counting
ticks, so suspended or delayed ticks cannot make the countdown drift. A naive
per-tick counter is still kept to detect (and log) drift larger than the
configured threshold, at which point it is resynchronised to the clock.
"""

import asyncio
import inspect
import math
import time
from typing import Any, Callable, Optional

from config import settings
from utils import SessionLogger, format_duration


class SessionTimer:
    """
    Countdown for a voice session of ``total_duration`` seconds.

    ``on_expire`` fires exactly once, when the remaining time reaches zero,
    after which the timer stops itself. It may be a plain function or a
    coroutine function (scheduled as a task).
    """

    def __init__(
        self,
        total_duration: int,
        on_expire: Optional[Callable[[], Any]] = None,
        clock: Callable[[], float] = time.monotonic,
        tick_interval: Optional[float] = None,
        drift_threshold: Optional[float] = None,
        auto_tick: bool = True,
        logger: Optional[SessionLogger] = None
    ):
        self.total_duration = int(total_duration)
        self.on_expire = on_expire
        self.logger = logger or SessionLogger("timer")

        self._clock = clock
        self._tick_interval = tick_interval if tick_interval is not None else settings.timer_tick_seconds
        self._drift_threshold = (
            drift_threshold if drift_threshold is not None else settings.timer_drift_threshold_seconds
        )
        self._auto_tick = auto_tick

        self._start_instant: Optional[float] = None
        self._paused_at: Optional[float] = None
        self._stopped_elapsed = 0.0
        self._active = False
        self._paused = False
        self._expired = False
        self._naive_ticks = 0
        self._drift_corrections = 0

        self._task: Optional[asyncio.Task] = None
        self._expire_task: Optional[asyncio.Task] = None

    # State

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def is_paused(self) -> bool:
        return self._paused

    @property
    def has_expired(self) -> bool:
        return self._expired

    @property
    def elapsed_seconds(self) -> float:
        """Seconds elapsed while running, excluding paused time."""
        if self._start_instant is None:
            return self._stopped_elapsed
        now = self._paused_at if self._paused else self._clock()
        return max(0.0, now - self._start_instant)

    @property
    def session_time(self) -> int:
        """Whole seconds elapsed."""
        return int(math.floor(self.elapsed_seconds))

    @property
    def time_remaining(self) -> int:
        return max(0, self.total_duration - self.session_time)

    @property
    def progress(self) -> float:
        """Percentage of the allotted time used, clamped to 0..100."""
        if self.total_duration <= 0:
            return 0.0
        return min(100.0, max(0.0, self.session_time / self.total_duration * 100))

    @property
    def is_near_end(self) -> bool:
        return 0 < self.time_remaining <= settings.timer_near_end_seconds

    @property
    def drift_corrections(self) -> int:
        return self._drift_corrections

    def formatted_session_time(self) -> str:
        return format_duration(self.session_time)

    def formatted_time_remaining(self) -> str:
        return format_duration(self.time_remaining)

    # Controls

    def start(self):
        """Start (or continue after stop) counting from the elapsed time so far."""
        if self._active:
            self.logger.debug("Timer start skipped: already active")
            return
        if self._expired:
            self.logger.debug("Timer start skipped: already expired")
            return

        now = self._clock()
        self._start_instant = now - self._stopped_elapsed
        self._paused_at = None
        self._active = True
        self._paused = False
        self._naive_ticks = self.session_time
        self.logger.debug(f"Timer started ({self.total_duration}s allotted)")

        self._start_ticking()
        # A zero-length or already exhausted allotment expires right away.
        self._check_expiry()

    def pause(self):
        if not self._active or self._paused:
            self.logger.debug("Timer pause skipped: not running")
            return
        self._paused_at = self._clock()
        self._paused = True
        self._stop_ticking()
        self.logger.debug(f"Timer paused at {self.session_time}s")

    def resume(self):
        if not self._active or not self._paused:
            self.logger.debug("Timer resume skipped: not paused")
            return
        # Shift the start instant forward by the paused span.
        self._start_instant += self._clock() - self._paused_at
        self._paused_at = None
        self._paused = False
        self._start_ticking()
        self.logger.debug(f"Timer resumed at {self.session_time}s")

    def stop(self):
        """Stop counting. Safe to call repeatedly and from any state."""
        if self._start_instant is not None:
            self._stopped_elapsed = self.elapsed_seconds
        self._start_instant = None
        self._paused_at = None
        self._active = False
        self._paused = False
        self._stop_ticking()

    def reset(self):
        """Stop and return to zero elapsed, ready to fire again."""
        self.stop()
        self._stopped_elapsed = 0.0
        self._expired = False
        self._naive_ticks = 0
        self._drift_corrections = 0
        self.logger.debug("Timer reset")

    def set_total_duration(self, total_duration: int):
        """
        Change the allotment mid-flight.

        Fires ``on_expire`` immediately when the new duration is already used up.
        """
        old = self.total_duration
        self.total_duration = int(total_duration)
        if old != self.total_duration:
            self.logger.info(f"Timer duration changed {old}s -> {self.total_duration}s")
        if self._active:
            self._check_expiry()

    def tick(self):
        """Recompute from the clock; normally driven once per tick interval."""
        if not self._active or self._paused or self._expired:
            return

        self._naive_ticks += 1
        expected = self.session_time
        drift = expected - self._naive_ticks
        if abs(drift) > self._drift_threshold:
            self._drift_corrections += 1
            self.logger.debug(f"Timer drift corrected by {drift}s (elapsed {expected}s)")
            self._naive_ticks = expected

        self._check_expiry()

    # Internals

    def _check_expiry(self):
        if self._expired or self.time_remaining > 0:
            return
        self._expire()

    def _expire(self):
        self._expired = True
        elapsed = self.session_time
        self.stop()
        self.logger.info(f"Timer expired after {elapsed}s")

        if self.on_expire is None:
            return
        try:
            result = self.on_expire()
        except Exception as e:
            self.logger.error(f"Timer expiry callback failed: {e}")
            return
        if inspect.isawaitable(result):
            self._expire_task = asyncio.ensure_future(result)

    def _start_ticking(self):
        if not self._auto_tick or self._tick_interval <= 0:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    def _stop_ticking(self):
        task = self._task
        self._task = None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    async def _run(self):
        while self._active and not self._paused:
            await asyncio.sleep(self._tick_interval)
            self.tick()

    async def wait_expired(self):
        """Await the expiry callback task, if one was scheduled."""
        if self._expire_task is not None:
            await self._expire_task
