"""Timer driving the state machine.

A single one-shot APScheduler job is re-armed only after the previous step has returned,
so at most one step runs at any time.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger

logger = structlog.get_logger(__name__)

FAST_RETRY_SECONDS = 0.1
STEP_JOB_ID = "liveness-step"


class MonitorDriver:
    """Runs ``step`` repeatedly: fast after a transition, at the poll interval otherwise."""

    def __init__(
        self,
        step: Callable[[], Awaitable[bool]],
        *,
        poll_interval_seconds: float,
        fast_retry_seconds: float = FAST_RETRY_SECONDS,
        drain_timeout_seconds: Optional[float] = None,
    ):
        self.step = step
        self.poll_interval_seconds = float(poll_interval_seconds)
        self.fast_retry_seconds = float(fast_retry_seconds)
        self.drain_timeout_seconds = drain_timeout_seconds
        self.scheduler: AsyncIOScheduler | None = None
        self.running = False
        self.step_count = 0
        self._idle = asyncio.Event()
        self._idle.set()

    def next_delay(self, transitioned: bool) -> float:
        return self.fast_retry_seconds if transitioned else self.poll_interval_seconds

    async def run_step(self) -> float:
        """Run one step and return the delay before the next one. Never raises."""
        self._idle.clear()
        try:
            transitioned = await self.step()
        except Exception as e:
            logger.exception("Monitor step failed", error=f"{type(e).__name__}: {e}")
            transitioned = False
        finally:
            self.step_count += 1
            self._idle.set()
        return self.next_delay(bool(transitioned))

    async def run_until_idle(self, max_steps: int = 100) -> int:
        """Step back-to-back until a step reports no transition. Returns steps taken."""
        for taken in range(1, max_steps + 1):
            delay = await self.run_step()
            if delay != self.fast_retry_seconds:
                return taken
            await asyncio.sleep(delay)
        return max_steps

    async def start(self) -> None:
        if self.running:
            logger.warning("Driver already running")
            return
        self.scheduler = AsyncIOScheduler(event_loop=asyncio.get_running_loop())
        self.scheduler.start()
        self.running = True
        self._arm(0.0)
        logger.info("Monitor driver started", poll_interval_seconds=self.poll_interval_seconds)

    def _arm(self, delay: float) -> None:
        if not self.running or self.scheduler is None:
            return
        run_date = datetime.now(timezone.utc) + timedelta(seconds=delay)
        self.scheduler.add_job(
            self._tick,
            trigger=DateTrigger(run_date=run_date),
            id=STEP_JOB_ID,
            replace_existing=True,
            misfire_grace_time=None,
        )

    async def _tick(self) -> None:
        if not self.running:
            return
        delay = await self.run_step()
        self._arm(delay)

    async def stop(self) -> None:
        """Stop arming ticks and let an in-flight step finish."""
        if not self.running:
            return
        self.running = False
        if self.scheduler is not None:
            if self.scheduler.get_job(STEP_JOB_ID) is not None:
                self.scheduler.remove_job(STEP_JOB_ID)
            try:
                await asyncio.wait_for(self._idle.wait(), self.drain_timeout_seconds)
            except asyncio.TimeoutError:
                logger.warning("In-flight step did not finish before shutdown", timeout_seconds=self.drain_timeout_seconds)
            # The asyncio executor cancels whatever is still pending.
            self.scheduler.shutdown(wait=False)
            self.scheduler = None
        logger.info("Monitor driver stopped", steps=self.step_count)
