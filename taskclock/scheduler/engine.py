"""SchedulerEngine — schedule CRUD, validation and lifecycle transitions."""

from __future__ import annotations

import logging
import zoneinfo
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from taskclock.config import settings
from taskclock.scheduler import cron
from taskclock.scheduler.errors import ScheduleValidationError
from taskclock.scheduler.models import (
    MissedRunPolicy,
    Schedule,
    ScheduleStatus,
    ScheduleSummary,
    ScheduleTarget,
    make_schedule_id,
    normalize_tags,
)

if TYPE_CHECKING:
    from collections.abc import Callable

    from taskclock.scheduler.store import ScheduleStore

logger = logging.getLogger(__name__)

_UPDATE_ATTEMPTS = 3


def utcnow() -> datetime:
    return datetime.now(UTC)


class SchedulerEngine:
    """Create, query and transition schedules on behalf of their owners.

    One instance is built by the composition root and shared with the
    dispatcher, the executor and the scheduler tools.

    Args:
        store: ScheduleStore for persistence.
        timezone: IANA timezone cron expressions (and naive datetimes) are
            interpreted in (default from settings).
        clock: Callable returning the current aware datetime (for tests).
    """

    def __init__(
        self,
        store: ScheduleStore,
        timezone: str | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._timezone = timezone or settings.scheduler_timezone
        self._tz = zoneinfo.ZoneInfo(self._timezone)
        self._clock = clock or utcnow

    @property
    def store(self) -> ScheduleStore:
        return self._store

    @property
    def timezone(self) -> str:
        return self._timezone

    def now(self) -> datetime:
        return self._clock()

    # -- Owner-facing operations -----------------------------------------------

    async def create_schedule(
        self,
        *,
        owner_id: str,
        target: ScheduleTarget,
        agent_ref: str,
        name: str,
        instruction: str,
        description: str = "",
        cron_expression: str | None = None,
        run_at: datetime | None = None,
        tags: list[str] | set[str] | None = None,
        max_runs: int | None = None,
        expires_at: datetime | None = None,
        missed_run_policy: MissedRunPolicy | str = MissedRunPolicy.SKIP_TO_NEXT,
    ) -> Schedule:
        """Validate and persist a new active schedule.

        Raises:
            ScheduleValidationError: If the input is rejected. Nothing is
                persisted in that case.
        """
        now = self.now()
        run_at = self._localize(run_at)
        expires_at = self._localize(expires_at)

        if not owner_id or not owner_id.strip():
            raise ScheduleValidationError("owner_id is required")
        if target is None or not str(target.chat_id).strip():
            raise ScheduleValidationError("target chat_id is required")
        if not agent_ref or not agent_ref.strip():
            raise ScheduleValidationError("agent_ref is required")
        if not name or not name.strip():
            raise ScheduleValidationError("name is required")
        if not instruction or not instruction.strip():
            raise ScheduleValidationError("instruction is required")

        if cron_expression is not None and not cron_expression.strip():
            cron_expression = None
        if cron_expression is None and run_at is None:
            raise ScheduleValidationError("Either cron_expression or run_at must be provided")
        if cron_expression is not None and run_at is not None:
            raise ScheduleValidationError("Provide only cron_expression OR run_at, not both")
        if cron_expression is not None and not cron.validate(cron_expression):
            raise ScheduleValidationError(f"Invalid cron expression: {cron_expression}")
        if run_at is not None and run_at <= now:
            raise ScheduleValidationError("run_at must be in the future")
        if max_runs is not None and max_runs < 1:
            raise ScheduleValidationError("max_runs must be at least 1")
        if expires_at is not None and expires_at <= now:
            raise ScheduleValidationError("expires_at must be in the future")

        try:
            policy = MissedRunPolicy(missed_run_policy)
        except ValueError:
            allowed = ", ".join(p.value for p in MissedRunPolicy)
            msg = f"Invalid missed_run_policy: {missed_run_policy} (expected one of {allowed})"
            raise ScheduleValidationError(msg) from None

        if cron_expression is not None:
            cron_expression = " ".join(cron_expression.split())
            next_run_at = cron.next_occurrence(cron_expression, now, self._timezone)
        else:
            next_run_at = run_at

        if expires_at is not None and next_run_at is not None and next_run_at > expires_at:
            raise ScheduleValidationError("Schedule would never run before expires_at")

        schedule = Schedule(
            id=make_schedule_id(),
            owner_id=owner_id.strip(),
            target=target,
            agent_ref=agent_ref.strip(),
            instruction=instruction,
            name=name.strip(),
            description=description,
            cron_expression=cron_expression,
            run_at=run_at,
            next_run_at=next_run_at,
            tags=normalize_tags(tags),
            max_runs=max_runs,
            expires_at=expires_at,
            missed_run_policy=policy,
            created_at=now,
        )
        await self._store.create(schedule)
        logger.info(
            "Created schedule '%s' (%s) for owner %s, next run %s",
            schedule.name,
            schedule.id,
            schedule.owner_id,
            schedule.next_run_at,
        )
        return schedule

    async def list_schedules(
        self,
        owner_id: str,
        status: ScheduleStatus | str | None = None,
        tag: str | None = None,
    ) -> list[ScheduleSummary]:
        """Return summaries of an owner's schedules, optionally filtered."""
        status_filter = None
        if status is not None:
            try:
                status_filter = ScheduleStatus(status)
            except ValueError:
                raise ScheduleValidationError(f"Invalid status filter: {status}") from None
        schedules = await self._store.list_schedules(owner_id, status=status_filter, tag=tag)
        return [ScheduleSummary.from_schedule(s) for s in schedules]

    async def get_schedule(self, owner_id: str, schedule_id: str) -> Schedule | None:
        return await self._store.get(schedule_id, owner_id)

    async def set_paused(self, owner_id: str, schedule_id: str, paused: bool) -> Schedule | None:
        """Pause or resume a schedule. Returns None if it does not exist.

        Pausing drops the schedule out of the due index.  Resuming
        recomputes the next run from now (cron) or restores ``run_at``
        (one-shot), letting the missed-run policy judge a one-shot whose
        time has already passed.

        Raises:
            ScheduleValidationError: If the schedule is in a terminal state,
                or keeps changing underneath us.
        """
        wanted = ScheduleStatus.PAUSED if paused else ScheduleStatus.ACTIVE
        for _ in range(_UPDATE_ATTEMPTS):
            schedule = await self._store.get(schedule_id, owner_id)
            if schedule is None:
                return None
            if schedule.status.is_terminal:
                msg = f"Schedule {schedule_id} is {schedule.status} and cannot be changed"
                raise ScheduleValidationError(msg)
            if schedule.status == wanted:
                return schedule

            schedule.status = wanted
            if paused:
                schedule.next_run_at = None
            elif schedule.is_recurring:
                self.advance(schedule, self.now())
            else:
                schedule.next_run_at = schedule.run_at

            # A False update means the dispatcher or executor got there first.
            if await self._store.update(schedule):
                logger.info("Schedule %s is now %s", schedule_id, schedule.status)
                return schedule
        msg = f"Schedule {schedule_id} is being modified concurrently, try again"
        raise ScheduleValidationError(msg)

    async def cancel_schedule(self, owner_id: str, schedule_id: str) -> bool:
        """Delete a schedule. Returns False when there was nothing to delete."""
        deleted = await self._store.delete(schedule_id, owner_id)
        if deleted:
            logger.info("Cancelled schedule: %s", schedule_id)
        return deleted

    # -- Transitions shared by dispatcher and executor --------------------------

    def next_occurrence(self, schedule: Schedule, after: datetime) -> datetime | None:
        """Next due time of a recurring schedule strictly after *after*."""
        if schedule.cron_expression is None:
            return None
        return cron.next_occurrence(schedule.cron_expression, after, self._timezone)

    def advance(self, schedule: Schedule, now: datetime) -> None:
        """Move a recurring schedule to its next occurrence after *now*.

        Marks the schedule expired instead when that occurrence falls after
        ``expires_at``.
        """
        following = self.next_occurrence(schedule, now)
        if following is None or (
            schedule.expires_at is not None and following > schedule.expires_at
        ):
            schedule.status = ScheduleStatus.EXPIRED
            schedule.next_run_at = None
            logger.info("Schedule %s expired (no occurrence before %s)", schedule.id, schedule.expires_at)
            return
        schedule.next_run_at = following

    def release_claim(self, schedule: Schedule) -> None:
        """Drop the dispatcher's claim without recording a run.

        An active one-shot with no recorded run gets ``run_at`` back as its
        next run, so the missed-run policy decides whether it still runs.
        A cron schedule was advanced at claim time and only loses the claim.
        """
        schedule.claimed_at = None
        if (
            schedule.status == ScheduleStatus.ACTIVE
            and schedule.is_one_shot
            and schedule.last_run_at is None
        ):
            schedule.next_run_at = schedule.run_at

    # -- Internal --------------------------------------------------------------

    def _localize(self, value: datetime | None) -> datetime | None:
        """Attach the scheduler timezone to naive datetimes, then convert to UTC."""
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=self._tz)
        return value.astimezone(UTC)
