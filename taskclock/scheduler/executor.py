"""ScheduleExecutor — runs claimed schedules through the agent runner."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Protocol

from taskclock.config import settings
from taskclock.scheduler.errors import ExecutionError, StoreUnavailableError
from taskclock.scheduler.models import ScheduleStatus

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime

    from taskclock.scheduler.channel import ExecutionChannel
    from taskclock.scheduler.engine import SchedulerEngine
    from taskclock.scheduler.models import Schedule, ScheduleTarget

logger = logging.getLogger(__name__)

_WRITE_BACK_ATTEMPTS = 3


class AgentRunner(Protocol):
    """Runs one instruction for a target. Raises on failure."""

    async def __call__(self, instruction: str, target: ScheduleTarget, agent_ref: str) -> None: ...


class ScheduleExecutor:
    """Consumes the execution channel and records each run's outcome.

    Args:
        engine: Shared SchedulerEngine (store access, clock, cron evaluation).
        channel: ExecutionChannel fed by the dispatcher.
        run_agent: The external agent runner.
        concurrency: Number of worker tasks (default from settings).
        timeout: Seconds before a run is abandoned as failed (default from
            settings, where None disables the limit).
    """

    def __init__(
        self,
        engine: SchedulerEngine,
        channel: ExecutionChannel,
        run_agent: AgentRunner,
        concurrency: int | None = None,
        timeout: float | None = None,
    ) -> None:
        self._engine = engine
        self._store = engine.store
        self._channel = channel
        self._run_agent = run_agent
        self._concurrency = concurrency or settings.executor_concurrency
        self._timeout = timeout if timeout is not None else settings.execution_timeout_seconds

    # -- Lifecycle -------------------------------------------------------------

    async def run(self) -> None:
        """Process schedules until the channel is closed and drained."""
        logger.info("Executor started with %d worker(s)", self._concurrency)
        workers = [
            asyncio.create_task(self._worker(i), name=f"schedule-executor-{i}")
            for i in range(self._concurrency)
        ]
        await asyncio.gather(*workers)
        logger.info("Executor stopped")

    async def _worker(self, worker_id: int) -> None:
        async for schedule in self._channel:
            try:
                await self.execute(schedule)
            except Exception:
                logger.exception(
                    "Worker %d failed while handling schedule %s", worker_id, schedule.id
                )

    # -- Execution -------------------------------------------------------------

    async def execute(self, schedule: Schedule) -> bool:
        """Run one claimed schedule and write back the outcome.

        The claim is given up on every path: when the outcome cannot be
        recorded, the claim is released without it and the dispatcher
        picks the schedule up again.

        Returns True if the agent runner succeeded.
        """
        settled = False
        try:
            current = await self._store.get(schedule.id, schedule.owner_id)
            if current is None:
                logger.info("Schedule %s was cancelled before it ran, skipping", schedule.id)
                settled = True
                return False
            if current.claimed_at != schedule.claimed_at:
                logger.info("Claim on schedule %s was released before it ran, skipping", schedule.id)
                settled = True
                return False
            if current.status == ScheduleStatus.PAUSED:
                logger.info("Schedule %s was paused before it ran, skipping", schedule.id)
                settled = await self._write_back(current, lambda s, now: self._engine.release_claim(s))
                return False

            logger.info(
                "Executing schedule '%s' (%s) agent=%s chat=%s",
                current.name,
                current.id,
                current.agent_ref,
                current.target.chat_id,
            )
            try:
                await self._invoke(current)
            except ExecutionError as exc:
                error = str(exc)
                logger.error(
                    "Schedule '%s' (%s) failed: %s", current.name, current.id, error, exc_info=True
                )
                settled = await self._write_back(
                    current, lambda s, now: self._record_failure(s, now, error)
                )
                return False

            settled = await self._write_back(current, self._record_success)
            logger.info("Schedule executed successfully: '%s' (%s)", current.name, current.id)
            return True
        finally:
            if not settled:
                await self._release_claim(schedule)

    async def _invoke(self, schedule: Schedule) -> None:
        """Call the agent runner, wrapping any failure in ExecutionError."""
        try:
            await asyncio.wait_for(
                self._run_agent(schedule.instruction, schedule.target, schedule.agent_ref),
                timeout=self._timeout,
            )
        except TimeoutError as exc:
            msg = f"Timed out after {self._timeout}s"
            raise ExecutionError(schedule.id, msg) from exc
        except Exception as exc:
            msg = f"{type(exc).__name__}: {exc}"
            raise ExecutionError(schedule.id, msg) from exc

    # -- Write-back ------------------------------------------------------------

    async def _write_back(
        self,
        schedule: Schedule,
        apply: Callable[[Schedule, datetime], None],
    ) -> bool:
        """Apply *apply* to the latest stored state and persist it.

        Retries on optimistic-update conflicts (e.g. a concurrent pause) by
        re-reading the schedule.  Returns False if every attempt conflicted;
        a schedule deleted meanwhile counts as written.
        """
        current: Schedule | None = schedule
        for _ in range(_WRITE_BACK_ATTEMPTS):
            if current is None:
                logger.info("Schedule %s was deleted during execution", schedule.id)
                return True
            apply(current, self._engine.now())
            if await self._store.update(current):
                return True
            current = await self._store.get(schedule.id, schedule.owner_id)
        logger.warning(
            "Could not record outcome for schedule %s after %d attempts",
            schedule.id,
            _WRITE_BACK_ATTEMPTS,
        )
        return False

    async def _release_claim(self, schedule: Schedule) -> None:
        """Best-effort release of a claim whose outcome was not recorded.

        Leaves claims taken since then alone.  If the store is down the
        claim stays, and the dispatcher releases it once it is stale.
        """
        try:
            current = await self._store.get(schedule.id, schedule.owner_id)
            if current is None or current.claimed_at != schedule.claimed_at:
                return
            self._engine.release_claim(current)
            released = await self._store.update(current)
        except StoreUnavailableError:
            logger.exception("Could not release claim on schedule %s", schedule.id)
            return
        if released:
            logger.warning("Released claim on schedule %s without recording its outcome", schedule.id)

    def _record_success(self, schedule: Schedule, now: datetime) -> None:
        schedule.claimed_at = None
        schedule.run_count += 1
        schedule.last_run_at = now
        schedule.last_error = None

        if schedule.status.is_terminal:
            # Expired at claim time: this was the last permitted run.
            return
        if schedule.is_one_shot or schedule.max_runs_reached:
            self._complete(schedule)
            return
        if schedule.status == ScheduleStatus.ACTIVE:
            self._engine.advance(schedule, now)

    def _record_failure(self, schedule: Schedule, now: datetime, error: str) -> None:
        schedule.claimed_at = None
        schedule.last_run_at = now
        schedule.last_error = error
        if schedule.status.is_terminal:
            return
        if schedule.is_one_shot:
            # A one-shot has no later occurrence to retry at.
            self._complete(schedule)
        elif schedule.status == ScheduleStatus.ACTIVE:
            self._engine.advance(schedule, now)

    @staticmethod
    def _complete(schedule: Schedule) -> None:
        schedule.status = ScheduleStatus.COMPLETED
        schedule.next_run_at = None
        logger.info(
            "Schedule '%s' (%s) completed after %d successful run(s)",
            schedule.name,
            schedule.id,
            schedule.run_count,
        )
