"""Single-flight periodic task used by the collection agent and sync scheduler."""

import asyncio
import logging
import time
from datetime import datetime
from typing import Awaitable, Callable, Optional

from ..errors import ScheduleDriftError
from ..utils.timeutil import utcnow

logger = logging.getLogger(__name__)


class ScheduledTask:
    """Runs ``func`` every ``interval`` seconds, never overlapping itself.

    The loop period is derived from ``interval`` alone. A caller that pins a
    separate ``effective_interval`` (for example a legacy schedule literal)
    gets a ScheduleDriftError from ``verify_schedule()`` if the two disagree.

    Ticks fall on ``start + k * interval``. When a cycle runs past one or
    more ticks those ticks are skipped and logged as overruns; triggers that
    arrive while a cycle is executing are skipped, never queued.
    """

    def __init__(
        self,
        name: str,
        func: Callable[[], Awaitable[object]],
        interval: float,
        effective_interval: Optional[float] = None,
        run_immediately: bool = True,
    ):
        if interval <= 0:
            raise ValueError(f"{name}: interval must be positive, got {interval}")
        self.name = name
        self.func = func
        self.configured_interval = interval
        self.effective_interval = float(interval) if effective_interval is None else float(effective_interval)
        self.run_immediately = run_immediately

        # State
        self.is_cycle_executing = False
        self.cycle_count = 0
        self.cycles_failed = 0
        self.skipped_triggers = 0
        self.overruns = 0
        self.skipped_ticks = 0
        self.last_started_at: Optional[datetime] = None
        self.last_finished_at: Optional[datetime] = None
        self.last_success_at: Optional[datetime] = None
        self.last_failure_at: Optional[datetime] = None
        self.last_error: Optional[str] = None
        self.last_duration: Optional[float] = None

        self._task: Optional[asyncio.Task] = None
        self._stopping: Optional[asyncio.Event] = None
        self._current_cycle: Optional[asyncio.Future] = None

    @property
    def is_started(self) -> bool:
        return self._task is not None and not self._task.done()

    def verify_schedule(self):
        """Fail loudly if the schedule in use differs from the configured one."""
        if abs(self.effective_interval - float(self.configured_interval)) > 1e-9:
            raise ScheduleDriftError(self.name, self.configured_interval, self.effective_interval)
        logger.info(
            f"[{self.name}] schedule check passed: configured interval {self.configured_interval}s, "
            f"effective interval {self.effective_interval}s"
        )

    def start(self):
        """Start the periodic loop on the running event loop."""
        if self.is_started:
            return
        self.verify_schedule()
        self._stopping = asyncio.Event()
        self._task = asyncio.create_task(self._run_loop(), name=f"scheduled-{self.name}")

    async def stop(self):
        """Stop issuing cycles and wait for the in-flight one to finish."""
        if self._stopping is not None:
            self._stopping.set()
        if self._task is not None:
            if self.is_cycle_executing:
                logger.info(f"[{self.name}] waiting for in-flight cycle to finish")
            await self._task
            self._task = None
        if self._current_cycle is not None:
            # cycle started by an external trigger()
            await asyncio.shield(self._current_cycle)
        logger.info(f"[{self.name}] stopped after {self.cycle_count} cycles")

    async def trigger(self) -> bool:
        """Run one cycle now unless one is already executing.

        Returns False when the trigger was skipped.
        """
        if self.is_cycle_executing:
            self.skipped_triggers += 1
            logger.warning(
                f"[{self.name}] trigger skipped: cycle #{self.cycle_count} still executing "
                f"({self.skipped_triggers} skipped so far)"
            )
            return False

        self.is_cycle_executing = True
        self._current_cycle = asyncio.get_running_loop().create_future()
        self.cycle_count += 1
        number = self.cycle_count
        self.last_started_at = utcnow()
        started = time.monotonic()

        logger.info(
            f"[{self.name}] cycle #{number} starting "
            f"(configured interval {self.configured_interval}s, effective interval {self.effective_interval}s)"
        )
        try:
            await self.func()
        except Exception as e:
            self.cycles_failed += 1
            self.last_failure_at = utcnow()
            self.last_error = str(e)
            logger.error(f"[{self.name}] cycle #{number} failed: {e}", exc_info=True)
        else:
            self.last_success_at = utcnow()
        finally:
            self.last_duration = time.monotonic() - started
            self.last_finished_at = utcnow()
            self.is_cycle_executing = False
            self._current_cycle.set_result(None)
            self._current_cycle = None
            logger.info(f"[{self.name}] cycle #{number} finished in {self.last_duration:.2f}s")

        return True

    async def _run_loop(self):
        loop = asyncio.get_running_loop()
        interval = self.effective_interval
        next_tick = loop.time() if self.run_immediately else loop.time() + interval

        logger.info(
            f"[{self.name}] scheduler started: configured interval {self.configured_interval}s, "
            f"effective interval {interval}s"
        )

        while not self._stopping.is_set():
            delay = next_tick - loop.time()
            if delay > 0:
                logger.debug(f"[{self.name}] idle for {delay:.1f}s until next cycle")
                try:
                    await asyncio.wait_for(self._stopping.wait(), timeout=delay)
                    break
                except asyncio.TimeoutError:
                    pass

            tick = next_tick
            ran = await self.trigger()
            next_tick = tick + interval

            now = loop.time()
            if ran and now > next_tick:
                missed = int((now - tick) // interval)
                next_tick = tick + (missed + 1) * interval
                self.overruns += 1
                self.skipped_ticks += missed
                logger.warning(
                    f"[{self.name}] cycle overran: took {self.last_duration:.1f}s with configured interval "
                    f"{self.configured_interval}s, skipping {missed} scheduled cycle(s)"
                )

    def status(self) -> dict:
        def _iso(value):
            return value.isoformat() if value else None

        return {
            "name": self.name,
            "running": self.is_started,
            "cycle_executing": self.is_cycle_executing,
            "configured_interval": self.configured_interval,
            "effective_interval": self.effective_interval,
            "cycles": self.cycle_count,
            "cycles_failed": self.cycles_failed,
            "skipped_triggers": self.skipped_triggers,
            "overruns": self.overruns,
            "skipped_ticks": self.skipped_ticks,
            "last_started_at": _iso(self.last_started_at),
            "last_finished_at": _iso(self.last_finished_at),
            "last_success_at": _iso(self.last_success_at),
            "last_failure_at": _iso(self.last_failure_at),
            "last_error": self.last_error,
            "last_duration": round(self.last_duration, 3) if self.last_duration is not None else None,
        }
