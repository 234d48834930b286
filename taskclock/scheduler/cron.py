"""Cron expression validation and next-occurrence computation.

Expressions use the standard 5-field crontab grammar (minute, hour,
day-of-month, month, day-of-week) and are evaluated with APScheduler's
``CronTrigger``.  APScheduler numbers weekdays from Monday (``0 = mon``) while
crontab numbers them from Sunday (``0`` and ``7 = sun``), so the day-of-week
field is rewritten into weekday names before it reaches the trigger.
"""

from __future__ import annotations

import logging
import re
from datetime import UTC, datetime

from apscheduler.triggers.cron import CronTrigger

from taskclock.config import settings

logger = logging.getLogger(__name__)

_DAY_NAMES = ("sun", "mon", "tue", "wed", "thu", "fri", "sat")
_DAY_NUMBERS = {name: i for i, name in enumerate(_DAY_NAMES)}
_DAY_TOKEN = re.compile(r"^(\d+|[a-z]{3})$")


def build_trigger(expression: str, timezone: str | None = None) -> CronTrigger:
    """Build a CronTrigger from a crontab expression.

    Raises:
        ValueError: If the expression is not a valid 5-field cron expression.
    """
    if not isinstance(expression, str):
        msg = f"Cron expression must be a string, got {type(expression).__name__}"
        raise ValueError(msg)
    fields = expression.split()
    if len(fields) != 5:
        msg = f"Wrong number of fields; got {len(fields)}, expected 5"
        raise ValueError(msg)
    minute, hour, day, month, day_of_week = fields
    return CronTrigger(
        minute=minute,
        hour=hour,
        day=day,
        month=month,
        day_of_week=_translate_day_of_week(day_of_week),
        timezone=timezone or settings.scheduler_timezone,
    )


def validate(expression: str) -> bool:
    """Return True if *expression* is a valid 5-field cron expression."""
    try:
        build_trigger(expression, timezone="UTC")
    except ValueError:
        return False
    return True


def next_occurrence(
    expression: str,
    after: datetime,
    timezone: str | None = None,
) -> datetime | None:
    """Return the first fire time strictly after *after*, in UTC.

    The expression is evaluated in *timezone* (IANA name, defaults to the
    scheduler timezone).  Returns None if the expression is invalid.
    """
    try:
        trigger = build_trigger(expression, timezone)
    except ValueError:
        logger.warning("Cannot evaluate invalid cron expression: %r", expression)
        return None
    if after.tzinfo is None:
        after = after.replace(tzinfo=UTC)
    # Passing `after` as the previous fire time makes the result strictly later.
    fire_time = trigger.get_next_fire_time(after, after)
    if fire_time is None:
        return None
    return fire_time.astimezone(UTC)


# -- Day-of-week translation ---------------------------------------------------


def _translate_day_of_week(field: str) -> str:
    """Rewrite a crontab day-of-week field as a list of weekday names."""
    if field in ("*", "?"):
        return "*"
    days: set[int] = set()
    for part in field.lower().split(","):
        days.update(_expand_day_part(part))
    # APScheduler orders weekdays from Monday; keep that order for readability.
    ordered = sorted(days, key=lambda d: (d + 6) % 7)
    return ",".join(_DAY_NAMES[d] for d in ordered)


def _expand_day_part(part: str) -> set[int]:
    base, _, step_text = part.partition("/")
    step = 1
    if step_text:
        if not step_text.isdigit() or int(step_text) < 1:
            msg = f"Invalid day-of-week step: {part!r}"
            raise ValueError(msg)
        step = int(step_text)

    if base == "*":
        first, last = 0, 6
    elif "-" in base:
        start_text, _, end_text = base.partition("-")
        first, last = _parse_day(start_text), _parse_day(end_text)
        # "fri-sun" ends on Sunday the same way "5-7" does.
        if last == 0 and first > 0:
            last = 7
        if first > last:
            msg = f"Invalid day-of-week range: {part!r}"
            raise ValueError(msg)
    else:
        first = _parse_day(base) % 7
        # "5/2" means "from friday, every other day" in crontab.
        last = 6 if step_text else first

    return {day % 7 for day in range(first, last + 1, step)}


def _parse_day(token: str) -> int:
    """Return 0-7 for a numeric or named weekday (both 0 and 7 are Sunday)."""
    if not _DAY_TOKEN.match(token):
        msg = f"Invalid day-of-week value: {token!r}"
        raise ValueError(msg)
    if token.isdigit():
        value = int(token)
        if value > 7:
            msg = f"Day-of-week out of range: {token!r}"
            raise ValueError(msg)
        return value
    if token not in _DAY_NUMBERS:
        msg = f"Unknown day-of-week name: {token!r}"
        raise ValueError(msg)
    return _DAY_NUMBERS[token]
