"""Scheduler error types."""

from __future__ import annotations


class SchedulerError(Exception):
    """Base class for all scheduler errors."""


class ScheduleValidationError(SchedulerError):
    """Input rejected before anything was persisted."""


class ExecutionError(SchedulerError):
    """The agent runner failed to execute a schedule's instruction."""

    def __init__(self, schedule_id: str, message: str) -> None:
        super().__init__(message)
        self.schedule_id = schedule_id


class StoreUnavailableError(SchedulerError):
    """The persistence layer could not be reached or failed mid-operation."""
