"""Schedule data model."""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

_PREVIEW_LENGTH = 100


class ScheduleStatus(StrEnum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {
        ScheduleStatus.COMPLETED,
        ScheduleStatus.FAILED,
        ScheduleStatus.EXPIRED,
        ScheduleStatus.CANCELLED,
    }
)


class MissedRunPolicy(StrEnum):
    """What to do with an occurrence that is discovered late."""

    SKIP_TO_NEXT = "skip_to_next"
    RUN_IMMEDIATELY = "run_immediately"
    RUN_ONCE_IF_MISSED = "run_once_if_missed"


@dataclass
class ScheduleTarget:
    """Where results of a run are delivered."""

    chat_id: str
    thread_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"chatId": self.chat_id}
        if self.thread_id is not None:
            data["threadId"] = self.thread_id
        return data

    def to_json(self) -> str:
        return json.dumps({"chat_id": self.chat_id, "thread_id": self.thread_id})

    @classmethod
    def from_json(cls, raw: str) -> ScheduleTarget:
        data = json.loads(raw)
        return cls(chat_id=str(data["chat_id"]), thread_id=data.get("thread_id"))


@dataclass
class Schedule:
    """A task that runs on a cron expression or once at ``run_at``.

    Attributes:
        id: Unique identifier (``sched_`` + UUID hex).
        owner_id: Principal the schedule is scoped to.
        target: Notification destination for run results.
        agent_ref: Which agent runs the instruction.
        instruction: Prompt/command text handed to the agent.
        name: Human-readable name.
        description: Optional longer description.
        cron_expression: 5-field cron expression for recurring schedules.
        run_at: Due time for one-shot schedules.
        next_run_at: Next computed due time (None while paused, terminal or
            while a one-shot run is in flight).
        status: Lifecycle state.
        tags: Free-form labels for filtering.
        max_runs: Optional cap on successful executions.
        run_count: Successful executions so far.
        expires_at: Optional cutoff after which the schedule no longer fires.
        missed_run_policy: Behaviour for occurrences discovered late.
        created_at / updated_at: Record timestamps.
        last_run_at: When the last execution attempt finished.
        last_error: Error message of the last failed attempt.
        claimed_at: Set by the dispatcher while an execution is in flight.
        version: Optimistic concurrency counter, bumped by every store update.
    """

    id: str
    owner_id: str
    target: ScheduleTarget
    agent_ref: str
    instruction: str
    name: str
    description: str = ""
    cron_expression: str | None = None
    run_at: datetime | None = None
    next_run_at: datetime | None = None
    status: ScheduleStatus = ScheduleStatus.ACTIVE
    tags: set[str] = field(default_factory=set)
    max_runs: int | None = None
    run_count: int = 0
    expires_at: datetime | None = None
    missed_run_policy: MissedRunPolicy = MissedRunPolicy.SKIP_TO_NEXT
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime | None = None
    last_run_at: datetime | None = None
    last_error: str | None = None
    claimed_at: datetime | None = None
    version: int = 0

    def __post_init__(self) -> None:
        if self.updated_at is None:
            self.updated_at = self.created_at

    # -- Convenience properties ------------------------------------------------

    @property
    def is_one_shot(self) -> bool:
        return self.cron_expression is None

    @property
    def is_recurring(self) -> bool:
        return self.cron_expression is not None

    @property
    def has_valid_timing(self) -> bool:
        """Exactly one of ``cron_expression`` / ``run_at`` is set."""
        return (self.cron_expression is None) != (self.run_at is None)

    @property
    def max_runs_reached(self) -> bool:
        return self.max_runs is not None and self.run_count >= self.max_runs

    @property
    def in_flight(self) -> bool:
        return self.claimed_at is not None

    # -- Serialization ---------------------------------------------------------

    def to_row(self) -> tuple:
        """Serialize to a tuple matching ``SCHEDULE_COLUMNS``."""
        return (
            self.id,
            self.owner_id,
            self.target.to_json(),
            self.agent_ref,
            self.instruction,
            self.name,
            self.description,
            self.cron_expression,
            format_timestamp(self.run_at),
            format_timestamp(self.next_run_at),
            str(self.status),
            json.dumps(sorted(self.tags)),
            self.max_runs,
            self.run_count,
            format_timestamp(self.expires_at),
            str(self.missed_run_policy),
            format_timestamp(self.created_at),
            format_timestamp(self.updated_at),
            format_timestamp(self.last_run_at),
            self.last_error,
            format_timestamp(self.claimed_at),
            self.version,
        )

    @classmethod
    def from_row(cls, row: tuple) -> Schedule:
        """Deserialize from a SQLite row in ``SCHEDULE_COLUMNS`` order."""
        return cls(
            id=row[0],
            owner_id=row[1],
            target=ScheduleTarget.from_json(row[2]),
            agent_ref=row[3],
            instruction=row[4],
            name=row[5],
            description=row[6] or "",
            cron_expression=row[7],
            run_at=parse_timestamp(row[8]),
            next_run_at=parse_timestamp(row[9]),
            status=ScheduleStatus(row[10]),
            tags=set(json.loads(row[11] or "[]")),
            max_runs=row[12],
            run_count=row[13],
            expires_at=parse_timestamp(row[14]),
            missed_run_policy=MissedRunPolicy(row[15]),
            created_at=parse_timestamp(row[16]),
            updated_at=parse_timestamp(row[17]),
            last_run_at=parse_timestamp(row[18]),
            last_error=row[19],
            claimed_at=parse_timestamp(row[20]),
            version=row[21],
        )

    def to_dict(self) -> dict[str, Any]:
        """Full JSON-shaped view for tool responses."""
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "agentRef": self.agent_ref,
            "instruction": self.instruction,
            "cronExpression": self.cron_expression,
            "runAt": format_timestamp(self.run_at),
            "nextRunAt": format_timestamp(self.next_run_at),
            "status": str(self.status),
            "target": self.target.to_dict(),
            "tags": sorted(self.tags),
            "maxRuns": self.max_runs,
            "runCount": self.run_count,
            "expiresAt": format_timestamp(self.expires_at),
            "missedPolicy": str(self.missed_run_policy),
            "createdAt": format_timestamp(self.created_at),
            "updatedAt": format_timestamp(self.updated_at),
            "lastRunAt": format_timestamp(self.last_run_at),
            "lastError": self.last_error,
        }


SCHEDULE_COLUMNS = (
    "id",
    "owner_id",
    "target",
    "agent_ref",
    "instruction",
    "name",
    "description",
    "cron_expression",
    "run_at",
    "next_run_at",
    "status",
    "tags",
    "max_runs",
    "run_count",
    "expires_at",
    "missed_run_policy",
    "created_at",
    "updated_at",
    "last_run_at",
    "last_error",
    "claimed_at",
    "version",
)


@dataclass
class ScheduleSummary:
    """Read projection of a Schedule used by listings."""

    id: str
    name: str
    agent_ref: str
    instruction_preview: str
    target: ScheduleTarget
    status: ScheduleStatus
    cron_expression: str | None = None
    run_at: datetime | None = None
    next_run_at: datetime | None = None

    @classmethod
    def from_schedule(cls, schedule: Schedule) -> ScheduleSummary:
        return cls(
            id=schedule.id,
            name=schedule.name,
            agent_ref=schedule.agent_ref,
            instruction_preview=preview(schedule.instruction),
            target=schedule.target,
            status=schedule.status,
            cron_expression=schedule.cron_expression,
            run_at=schedule.run_at,
            next_run_at=schedule.next_run_at,
        )

    def to_dict(self) -> dict[str, Any]:
        """JSON shape; timing keys are omitted when unset."""
        data: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "agentRef": self.agent_ref,
            "instructionPreview": self.instruction_preview,
            "status": str(self.status),
            "target": self.target.to_dict(),
        }
        if self.cron_expression is not None:
            data["cronExpression"] = self.cron_expression
        if self.run_at is not None:
            data["runAt"] = format_timestamp(self.run_at)
        if self.next_run_at is not None:
            data["nextRunAt"] = format_timestamp(self.next_run_at)
        return data


def preview(text: str, limit: int = _PREVIEW_LENGTH) -> str:
    """Truncate *text* to *limit* characters, appending ``...`` when cut."""
    if len(text) <= limit:
        return text
    return f"{text[:limit]}..."


def format_timestamp(value: datetime | None) -> str | None:
    """UTC ISO 8601 with fixed microsecond precision (sorts lexically)."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def normalize_tags(tags: list[str] | set[str] | None) -> set[str]:
    """Strip and lower-case tags, dropping empty ones."""
    if not tags:
        return set()
    return {t.strip().lower() for t in tags if t and t.strip()}


def make_schedule_id() -> str:
    """Generate a new schedule ID."""
    return f"sched_{uuid.uuid4().hex}"
