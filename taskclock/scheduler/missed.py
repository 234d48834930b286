"""Missed-run policy — decide what to do with a due schedule.

A due occurrence is *late* when it has been overdue for longer than one
dispatch interval: the first tick that could have seen it did not, which
means the process was down or the loop stalled.  On-time occurrences always
run; late ones are handled according to the schedule's ``MissedRunPolicy``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import StrEnum

from taskclock.scheduler import cron
from taskclock.scheduler.models import MissedRunPolicy, Schedule

logger = logging.getLogger(__name__)


class Disposition(StrEnum):
    EXECUTE = "execute"
    SKIP = "skip"
    EXPIRE = "expire"
    FAIL = "fail"


@dataclass(frozen=True)
class Decision:
    """Outcome of evaluating one due schedule."""

    disposition: Disposition
    late: bool = False
    reason: str = ""


def is_late(schedule: Schedule, now: datetime, interval: timedelta) -> bool:
    """True when the due time is more than one dispatch interval behind *now*."""
    if schedule.next_run_at is None:
        return False
    return now - schedule.next_run_at > interval


def decide(schedule: Schedule, now: datetime, interval: timedelta) -> Decision:
    """Pick the disposition of a due, active schedule.

    - Corrupt timing (both/neither of cron and run_at, unparsable cron)
      fails the schedule.
    - A passed ``expires_at`` expires it.
    - ``skip_to_next`` drops a late occurrence: a cron schedule moves on to
      its next occurrence, a one-shot expires without running.
    - ``run_immediately`` and ``run_once_if_missed`` run a late occurrence
      once; the claim keeps it from being dispatched again while in flight.
    """
    if not schedule.has_valid_timing:
        return Decision(Disposition.FAIL, reason="Schedule must have exactly one of cron_expression or run_at")
    if schedule.cron_expression is not None and not cron.validate(schedule.cron_expression):
        return Decision(Disposition.FAIL, reason=f"Invalid cron expression: {schedule.cron_expression}")

    if schedule.expires_at is not None and now > schedule.expires_at:
        return Decision(Disposition.EXPIRE, reason="expires_at has passed")

    late = is_late(schedule, now, interval)
    if not late:
        return Decision(Disposition.EXECUTE)

    if schedule.missed_run_policy == MissedRunPolicy.SKIP_TO_NEXT:
        if schedule.is_one_shot:
            return Decision(Disposition.EXPIRE, late=True, reason="missed one-shot run skipped")
        return Decision(Disposition.SKIP, late=True, reason="missed occurrence skipped")

    return Decision(Disposition.EXECUTE, late=True, reason="catch-up run for missed occurrence")
