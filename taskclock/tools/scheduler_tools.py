"""Scheduler tools — create, list, inspect, pause and cancel schedules."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any

from pydantic import Field

from taskclock.scheduler.errors import ScheduleValidationError
from taskclock.scheduler.models import MissedRunPolicy, ScheduleStatus, ScheduleTarget, format_timestamp
from taskclock.tools.base import BaseTool, ToolParams, ToolResult

if TYPE_CHECKING:
    from taskclock.scheduler.engine import SchedulerEngine
    from taskclock.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

_CATEGORY = "scheduler"


def _normalize_task_id(task_id: str) -> str:
    # Models sometimes wrap IDs in whitespace or quotes.
    return task_id.strip().strip("'\"")


def _not_found(task_id: str) -> ToolResult:
    return ToolResult(data={"status": "not_found", "taskId": task_id})


class _SchedulerTool(BaseTool):
    category = _CATEGORY

    def __init__(self, engine: SchedulerEngine) -> None:
        self._engine = engine


# -- schedule_task -------------------------------------------------------------


class ScheduleTaskParams(ToolParams):
    owner_id: str = Field(description="ID of the user who owns the schedule")
    chat_id: str = Field(description="Chat where results of each run are delivered")
    thread_id: str | None = Field(default=None, description="Optional thread within the chat")
    agent_ref: str = Field(description="Which agent should run the instruction")
    name: str = Field(description="Human-readable name for this schedule")
    description: str = Field(default="", description="Optional longer description")
    instruction: str = Field(description="The prompt or command the agent runs each time")
    cron_expression: str | None = Field(
        default=None,
        description=(
            "5-field cron expression for recurring schedules "
            "(e.g. '0 9 * * 1-5' for weekdays at 9am). Omit when run_at is given."
        ),
    )
    run_at: datetime | None = Field(
        default=None,
        description=(
            "ISO 8601 datetime for a one-shot run (e.g. '2025-06-01T15:00:00-06:00'). "
            "Omit when cron_expression is given."
        ),
    )
    tags: list[str] = Field(default_factory=list, description="Labels for filtering")
    max_runs: int | None = Field(default=None, description="Stop after this many successful runs")
    expires_at: datetime | None = Field(
        default=None, description="ISO 8601 datetime after which the schedule stops firing"
    )
    missed_policy: MissedRunPolicy = Field(
        default=MissedRunPolicy.SKIP_TO_NEXT,
        description=(
            "What to do with a run that was missed while the service was down: "
            '"skip_to_next", "run_immediately" or "run_once_if_missed"'
        ),
    )


class ScheduleTaskTool(_SchedulerTool):
    name = "schedule_task"
    description = (
        "Schedule an instruction for an agent, either once at run_at or repeatedly "
        "on a cron expression. Results are delivered to the given chat."
    )
    params_model = ScheduleTaskParams
    requires_confirmation = True

    async def execute(self, **kwargs: Any) -> ToolResult:
        target = ScheduleTarget(chat_id=kwargs["chat_id"], thread_id=kwargs.get("thread_id"))
        try:
            schedule = await self._engine.create_schedule(
                owner_id=kwargs["owner_id"],
                target=target,
                agent_ref=kwargs["agent_ref"],
                name=kwargs["name"],
                description=kwargs.get("description", ""),
                instruction=kwargs["instruction"],
                cron_expression=kwargs.get("cron_expression"),
                run_at=kwargs.get("run_at"),
                tags=kwargs.get("tags"),
                max_runs=kwargs.get("max_runs"),
                expires_at=kwargs.get("expires_at"),
                missed_run_policy=kwargs.get("missed_policy", MissedRunPolicy.SKIP_TO_NEXT),
            )
        except ScheduleValidationError as exc:
            return ToolResult(error=str(exc))

        return ToolResult(
            data={
                "id": schedule.id,
                "status": "created",
                "nextRunAt": format_timestamp(schedule.next_run_at),
            }
        )


# -- list_schedules ------------------------------------------------------------


class ListSchedulesParams(ToolParams):
    owner_id: str = Field(description="ID of the user whose schedules to list")
    status: ScheduleStatus | None = Field(default=None, description="Only schedules in this state")
    tag: str | None = Field(default=None, description="Only schedules carrying this tag")


class ListSchedulesTool(_SchedulerTool):
    name = "list_schedules"
    description = "List a user's schedules with their next run time, soonest first."
    params_model = ListSchedulesParams

    async def execute(self, **kwargs: Any) -> ToolResult:
        summaries = await self._engine.list_schedules(
            kwargs["owner_id"],
            status=kwargs.get("status"),
            tag=kwargs.get("tag"),
        )
        return ToolResult(
            data={
                "count": len(summaries),
                "schedules": [s.to_dict() for s in summaries],
            }
        )


# -- get_schedule --------------------------------------------------------------


class GetScheduleParams(ToolParams):
    owner_id: str = Field(description="ID of the user who owns the schedule")
    task_id: str = Field(description="ID of the schedule")


class GetScheduleTool(_SchedulerTool):
    name = "get_schedule"
    description = "Show every detail of one schedule, including its last run and error."
    params_model = GetScheduleParams

    async def execute(self, **kwargs: Any) -> ToolResult:
        task_id = _normalize_task_id(kwargs["task_id"])
        schedule = await self._engine.get_schedule(kwargs["owner_id"], task_id)
        if schedule is None:
            return _not_found(task_id)
        return ToolResult(data=schedule.to_dict())


# -- pause_schedule ------------------------------------------------------------


class PauseScheduleParams(ToolParams):
    owner_id: str = Field(description="ID of the user who owns the schedule")
    task_id: str = Field(description="ID of the schedule")
    paused: bool = Field(default=True, description="True to pause, false to resume")


class PauseScheduleTool(_SchedulerTool):
    name = "pause_schedule"
    description = (
        "Pause a schedule so it stops firing, or resume a paused one. "
        "Resuming a recurring schedule picks up at its next occurrence from now."
    )
    params_model = PauseScheduleParams

    async def execute(self, **kwargs: Any) -> ToolResult:
        task_id = _normalize_task_id(kwargs["task_id"])
        try:
            schedule = await self._engine.set_paused(kwargs["owner_id"], task_id, kwargs["paused"])
        except ScheduleValidationError as exc:
            return ToolResult(error=str(exc))
        if schedule is None:
            return _not_found(task_id)
        return ToolResult(data={"id": schedule.id, "status": str(schedule.status)})


# -- cancel_schedule -----------------------------------------------------------


class CancelScheduleParams(ToolParams):
    owner_id: str = Field(description="ID of the user who owns the schedule")
    task_id: str = Field(description="ID of the schedule to cancel")


class CancelScheduleTool(_SchedulerTool):
    name = "cancel_schedule"
    description = "Cancel a schedule permanently. Cancelling an unknown schedule is harmless."
    params_model = CancelScheduleParams
    requires_confirmation = True

    async def execute(self, **kwargs: Any) -> ToolResult:
        task_id = _normalize_task_id(kwargs["task_id"])
        deleted = await self._engine.cancel_schedule(kwargs["owner_id"], task_id)
        return ToolResult(data={"status": "deleted" if deleted else "not_found", "taskId": task_id})


SCHEDULER_TOOLS = (
    ScheduleTaskTool,
    ListSchedulesTool,
    GetScheduleTool,
    PauseScheduleTool,
    CancelScheduleTool,
)


def register_scheduler_tools(registry: ToolRegistry, engine: SchedulerEngine) -> None:
    """Register every scheduler tool on *registry*, bound to *engine*."""
    for tool_cls in SCHEDULER_TOOLS:
        registry.register(tool_cls(engine))
    logger.info("Registered %d scheduler tools", len(SCHEDULER_TOOLS))
