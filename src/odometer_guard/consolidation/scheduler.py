"""Daily scheduler for the consolidation job.

The scheduler owns its state (no module-level flags): whether it is
running, when the next run is due, and how the last run went.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from datetime import UTC, date, datetime, time, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from odometer_guard.consolidation.job import ConsolidationRunStats, DailyConsolidationJob

logger = logging.getLogger(__name__)

DEFAULT_RUN_HOUR = 2
DEFAULT_RUN_MINUTE = 0


class SchedulerState(str, Enum):
    """Scheduler lifecycle states."""

    STOPPED = "stopped"
    IDLE = "idle"
    RUNNING = "running"


def next_run_after(now: datetime, *, hour: int, minute: int) -> datetime:
    """First ``hour:minute`` UTC strictly after ``now``."""
    now = now.astimezone(UTC)
    candidate = datetime.combine(now.date(), time(hour, minute), tzinfo=UTC)
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


class ConsolidationScheduler:
    """Runs ``DailyConsolidationJob.run`` once a day.

    Example:
        ```python
        scheduler = ConsolidationScheduler(job, run_hour=2)
        await scheduler.start()
        ...
        stats = await scheduler.trigger_now(date(2026, 10, 18))
        await scheduler.stop()
        ```
    """

    def __init__(
        self,
        job: DailyConsolidationJob,
        *,
        run_hour: int = DEFAULT_RUN_HOUR,
        run_minute: int = DEFAULT_RUN_MINUTE,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the scheduler.

        Args:
            job: Consolidation job to run.
            run_hour: UTC hour of the daily run.
            run_minute: Minute of the daily run.
            clock: Returns the current UTC time (tests).
        """
        if not 0 <= run_hour <= 23 or not 0 <= run_minute <= 59:
            raise ValueError(f"Invalid run time {run_hour:02d}:{run_minute:02d}")
        self._job = job
        self._run_hour = run_hour
        self._run_minute = run_minute
        self._clock = clock or (lambda: datetime.now(UTC))

        self._state = SchedulerState.STOPPED
        self._stop_event: asyncio.Event | None = None
        self._task: asyncio.Task[None] | None = None
        self._run_lock = asyncio.Lock()

        self._next_run_at: datetime | None = None
        self._last_run_at: datetime | None = None
        self._last_stats: ConsolidationRunStats | None = None
        self._last_error: str | None = None

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def next_run_at(self) -> datetime | None:
        return self._next_run_at

    @property
    def last_run_at(self) -> datetime | None:
        return self._last_run_at

    @property
    def last_stats(self) -> ConsolidationRunStats | None:
        return self._last_stats

    @property
    def last_error(self) -> str | None:
        return self._last_error

    @property
    def is_started(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.is_started:
            raise RuntimeError("Scheduler already started")
        self._stop_event = asyncio.Event()
        self._state = SchedulerState.IDLE
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            "Consolidation scheduler started (daily at %02d:%02d UTC)",
            self._run_hour,
            self._run_minute,
        )

    async def stop(self) -> None:
        if self._stop_event:
            self._stop_event.set()
        if self._task:
            try:
                await asyncio.wait_for(self._task, timeout=5.0)
            except TimeoutError:
                self._task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await self._task
            self._task = None
        self._state = SchedulerState.STOPPED
        self._next_run_at = None
        logger.info("Consolidation scheduler stopped")

    async def trigger_now(self, for_date: date | None = None) -> ConsolidationRunStats:
        """Run the job immediately, waiting for any run already in progress."""
        async with self._run_lock:
            self._state = SchedulerState.RUNNING
            self._last_run_at = self._clock()
            try:
                stats = await self._job.run(for_date)
            except Exception as e:
                self._last_error = str(e)
                raise
            else:
                self._last_stats = stats
                self._last_error = None
                return stats
            finally:
                self._state = SchedulerState.IDLE if self.is_started else SchedulerState.STOPPED

    async def _run_loop(self) -> None:
        if not self._stop_event:
            return

        while not self._stop_event.is_set():
            try:
                now = self._clock()
                self._next_run_at = next_run_after(
                    now, hour=self._run_hour, minute=self._run_minute
                )
                delay = max(0.0, (self._next_run_at - now).total_seconds())
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
                    break
                except TimeoutError:
                    pass

                await self.trigger_now()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Scheduled consolidation failed: %s", e)

    def get_status(self) -> dict[str, Any]:
        return {
            "state": self._state.value,
            "nextRunAt": self._next_run_at.isoformat() if self._next_run_at else None,
            "lastRunAt": self._last_run_at.isoformat() if self._last_run_at else None,
            "lastError": self._last_error,
            "lastStats": self._last_stats.to_dict() if self._last_stats else None,
        }
