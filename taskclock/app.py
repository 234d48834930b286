"""SchedulerService — wires the scheduler components together and runs them."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from taskclock.config import settings
from taskclock.scheduler.channel import ExecutionChannel
from taskclock.scheduler.dispatcher import ScheduleDispatcher
from taskclock.scheduler.engine import SchedulerEngine
from taskclock.scheduler.executor import ScheduleExecutor
from taskclock.scheduler.store import ScheduleStore
from taskclock.tools.registry import ToolRegistry
from taskclock.tools.scheduler_tools import register_scheduler_tools

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime
    from pathlib import Path

    from taskclock.scheduler.executor import AgentRunner

logger = logging.getLogger(__name__)


class SchedulerService:
    """Owns one store, engine, dispatcher and executor, plus the tool registry.

    Every component receives its collaborators explicitly; nothing is shared
    through module globals.  ``start()`` releases claims left by a previous
    process and spawns the dispatcher and executor tasks; ``stop()`` lets
    everything already claimed finish before returning.
    """

    def __init__(
        self,
        run_agent: AgentRunner,
        db_path: Path | None = None,
        *,
        timezone: str | None = None,
        clock: Callable[[], datetime] | None = None,
        dispatch_interval: float | None = None,
        concurrency: int | None = None,
        execution_timeout: float | None = None,
    ) -> None:
        self.store = ScheduleStore(db_path or settings.database_path)
        self.engine = SchedulerEngine(self.store, timezone=timezone, clock=clock)
        self.channel = ExecutionChannel()
        self.dispatcher = ScheduleDispatcher(
            self.engine,
            self.channel,
            interval=dispatch_interval,
            execution_timeout=execution_timeout,
        )
        self.executor = ScheduleExecutor(
            self.engine,
            self.channel,
            run_agent,
            concurrency=concurrency,
            timeout=execution_timeout,
        )
        self.registry = ToolRegistry()
        register_scheduler_tools(self.registry, self.engine)

        self._dispatcher_task: asyncio.Task | None = None
        self._executor_task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._dispatcher_task is not None and not self._dispatcher_task.done()

    async def start(self) -> None:
        """Recover interrupted runs, then start dispatching and executing."""
        if self._dispatcher_task is not None:
            msg = "SchedulerService has already been started"
            raise RuntimeError(msg)

        recovered = await self.dispatcher.recover_claims()
        self._executor_task = asyncio.create_task(self.executor.run(), name="schedule-executor")
        self._dispatcher_task = asyncio.create_task(self.dispatcher.run(), name="schedule-dispatcher")
        logger.info(
            "Scheduler service started (timezone=%s, recovered=%d)",
            self.engine.timezone,
            recovered,
        )

    async def stop(self) -> None:
        """Stop dispatching and wait for in-flight executions to finish."""
        if self._dispatcher_task is None:
            return
        self.dispatcher.stop()
        await self._dispatcher_task
        if self._executor_task is not None:
            await self._executor_task
        logger.info("Scheduler service stopped")
