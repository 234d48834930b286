"""ScheduleDispatcher — periodic due-schedule detection and claiming.

The dispatcher is the only producer on the execution channel.  Exactly one
dispatcher may run against a given store: there is no cross-process lock,
so two dispatchers sharing a database can both claim the same occurrence.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import timedelta
from typing import TYPE_CHECKING

from taskclock.config import settings
from taskclock.scheduler.missed import Disposition, decide
from taskclock.scheduler.models import ScheduleStatus

if TYPE_CHECKING:
    from datetime import datetime

    from taskclock.scheduler.channel import ExecutionChannel
    from taskclock.scheduler.engine import SchedulerEngine
    from taskclock.scheduler.models import Schedule

logger = logging.getLogger(__name__)


class ScheduleDispatcher:
    """Runs a fixed-interval tick that claims due schedules and enqueues them.

    Args:
        engine: Shared SchedulerEngine (store access, clock, cron evaluation).
        channel: ExecutionChannel consumed by the executor.
        interval: Seconds between ticks (default from settings).
        batch_size: Maximum due schedules fetched per tick (default from settings).
        execution_timeout: The executor's run timeout (default from settings).
            A claim older than this plus one interval is released on the
            next tick; None keeps claims until the executor or a restart
            releases them.
    """

    def __init__(
        self,
        engine: SchedulerEngine,
        channel: ExecutionChannel,
        interval: float | None = None,
        batch_size: int | None = None,
        execution_timeout: float | None = None,
    ) -> None:
        self._engine = engine
        self._store = engine.store
        self._channel = channel
        self._interval = timedelta(seconds=interval or settings.dispatch_interval_seconds)
        self._batch_size = batch_size or settings.due_batch_size
        if execution_timeout is None:
            execution_timeout = settings.execution_timeout_seconds
        self._stale_after = (
            timedelta(seconds=execution_timeout) + self._interval
            if execution_timeout is not None
            else None
        )
        self._stopping = asyncio.Event()

    @property
    def interval(self) -> timedelta:
        return self._interval

    # -- Lifecycle -------------------------------------------------------------

    async def run(self) -> None:
        """Tick until ``stop()`` is called, then close the channel."""
        logger.info("Dispatcher started (interval=%ss)", self._interval.total_seconds())
        try:
            while not self._stopping.is_set():
                await self.tick()
                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(
                        self._stopping.wait(),
                        timeout=self._interval.total_seconds(),
                    )
        finally:
            self._channel.close()
            logger.info("Dispatcher stopped")

    def stop(self) -> None:
        """Ask the loop to exit after the current tick."""
        self._stopping.set()

    async def recover_claims(self) -> int:
        """Release claims left behind by a previous process.

        See ``SchedulerEngine.release_claim`` for what a release restores.
        Returns the number of schedules released.
        """
        released = await self._release_claims(await self._store.list_claimed())
        if released:
            logger.info("Recovered %d interrupted schedule(s)", released)
        return released

    async def _release_claims(self, claimed: list[Schedule]) -> int:
        released = 0
        for schedule in claimed:
            claimed_at = schedule.claimed_at
            self._engine.release_claim(schedule)
            if await self._store.update(schedule):
                released += 1
                logger.warning(
                    "Released claim on schedule '%s' (%s) taken at %s",
                    schedule.name,
                    schedule.id,
                    claimed_at,
                )
        return released

    # -- Tick ------------------------------------------------------------------

    async def tick(self) -> int:
        """Run one dispatch pass. Returns the number of schedules enqueued.

        Releases stale claims first, so a run whose outcome was never
        written back does not block its schedule for good.

        Never raises: a failing store aborts the tick and the next one retries.
        """
        now = self._engine.now()
        try:
            if self._stale_after is not None:
                stale = await self._store.list_claimed(claimed_before=now - self._stale_after)
                await self._release_claims(stale)
            due = await self._store.query_due(now, self._batch_size)
        except Exception:
            logger.exception("Dispatch tick aborted: schedule store failed")
            return 0

        if due:
            logger.debug("Tick at %s found %d due schedule(s)", now.isoformat(), len(due))

        enqueued = 0
        for schedule in due:
            try:
                if await self._dispatch(schedule, now):
                    enqueued += 1
            except Exception:
                logger.exception("Failed to dispatch schedule %s", schedule.id)

        if enqueued:
            logger.info("Dispatched %d schedule(s)", enqueued)
        return enqueued

    async def _dispatch(self, schedule: Schedule, now: datetime) -> bool:
        """Apply the disposition for one due schedule. True if enqueued."""
        decision = decide(schedule, now, self._interval)

        if decision.disposition == Disposition.FAIL:
            schedule.status = ScheduleStatus.FAILED
            schedule.next_run_at = None
            schedule.last_error = decision.reason
            if await self._store.update(schedule):
                logger.error("Schedule %s marked failed: %s", schedule.id, decision.reason)
            return False

        if decision.disposition == Disposition.EXPIRE:
            schedule.status = ScheduleStatus.EXPIRED
            schedule.next_run_at = None
            if await self._store.update(schedule):
                logger.info("Schedule '%s' (%s) expired: %s", schedule.name, schedule.id, decision.reason)
            return False

        if decision.disposition == Disposition.SKIP:
            missed_at = schedule.next_run_at
            self._engine.advance(schedule, now)
            if await self._store.update(schedule):
                logger.info(
                    "Skipped missed run of '%s' (%s) due %s; next run %s",
                    schedule.name,
                    schedule.id,
                    missed_at,
                    schedule.next_run_at,
                )
            return False

        if not await self._claim(schedule, now):
            logger.info("Schedule %s changed before it could be claimed, skipping", schedule.id)
            return False

        if decision.late:
            logger.info("Catch-up run for '%s' (%s): %s", schedule.name, schedule.id, decision.reason)
        await self._channel.put(schedule)
        return True

    async def _claim(self, schedule: Schedule, now: datetime) -> bool:
        """Mark *schedule* in flight and move its due time past *now*.

        The optimistic update fails if the schedule was paused, cancelled or
        otherwise modified since ``query_due`` read it.
        """
        schedule.claimed_at = now
        if schedule.is_recurring:
            self._engine.advance(schedule, now)
        else:
            schedule.next_run_at = None
        return await self._store.update(schedule)
