"""Scheduled task system — models, persistence, dispatch, and execution."""

from taskclock.scheduler.channel import ExecutionChannel
from taskclock.scheduler.dispatcher import ScheduleDispatcher
from taskclock.scheduler.engine import SchedulerEngine
from taskclock.scheduler.errors import (
    ExecutionError,
    SchedulerError,
    ScheduleValidationError,
    StoreUnavailableError,
)
from taskclock.scheduler.executor import AgentRunner, ScheduleExecutor
from taskclock.scheduler.models import (
    MissedRunPolicy,
    Schedule,
    ScheduleStatus,
    ScheduleSummary,
    ScheduleTarget,
)
from taskclock.scheduler.store import ScheduleStore

__all__ = [
    "AgentRunner",
    "ExecutionChannel",
    "ExecutionError",
    "MissedRunPolicy",
    "Schedule",
    "ScheduleDispatcher",
    "ScheduleExecutor",
    "ScheduleStatus",
    "ScheduleStore",
    "ScheduleSummary",
    "ScheduleTarget",
    "ScheduleValidationError",
    "SchedulerEngine",
    "SchedulerError",
    "StoreUnavailableError",
]
