"""ScheduleStore — aiosqlite persistence for schedules and the due index."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import aiosqlite

from taskclock.config import settings
from taskclock.scheduler.errors import StoreUnavailableError
from taskclock.scheduler.models import (
    SCHEDULE_COLUMNS,
    Schedule,
    ScheduleStatus,
    format_timestamp,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

logger = logging.getLogger(__name__)

_COLUMNS = ", ".join(SCHEDULE_COLUMNS)
_PLACEHOLDERS = ", ".join("?" for _ in SCHEDULE_COLUMNS)
# Everything except id, owner_id and version, which the UPDATE statement pins.
_MUTABLE_COLUMNS = [c for c in SCHEDULE_COLUMNS if c not in ("id", "owner_id", "version")]

_CREATE_TABLE = """
CREATE TABLE IF NOT EXISTS schedules (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    target TEXT NOT NULL,
    agent_ref TEXT NOT NULL,
    instruction TEXT NOT NULL,
    name TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    cron_expression TEXT,
    run_at TEXT,
    next_run_at TEXT,
    status TEXT NOT NULL,
    tags TEXT NOT NULL DEFAULT '[]',
    max_runs INTEGER,
    run_count INTEGER NOT NULL DEFAULT 0,
    expires_at TEXT,
    missed_run_policy TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    last_run_at TEXT,
    last_error TEXT,
    claimed_at TEXT,
    version INTEGER NOT NULL DEFAULT 0
)
"""

# Due index: only unclaimed active schedules with a next run time are
# indexed, so paused, in-flight and terminal schedules drop out of it.
_CREATE_DUE_INDEX = """
CREATE INDEX IF NOT EXISTS idx_schedules_due
    ON schedules (next_run_at)
    WHERE status = 'active' AND next_run_at IS NOT NULL AND claimed_at IS NULL
"""

_CREATE_OWNER_INDEX = """
CREATE INDEX IF NOT EXISTS idx_schedules_owner ON schedules (owner_id, created_at)
"""


class ScheduleStore:
    """Persists schedules in SQLite.

    Pass an explicit *db_path* for test isolation (e.g. ``tmp_path / "test.db"``).
    Owner-scoped operations never touch another owner's rows: a mismatched
    owner behaves exactly like an unknown ID.
    """

    def __init__(self, db_path: Path | None = None) -> None:
        self._db_path = db_path or settings.database_path
        self._initialised = False

    # -- Internal helpers ------------------------------------------------------

    async def _connect(self) -> aiosqlite.Connection:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        db = await aiosqlite.connect(str(self._db_path))
        if not self._initialised:
            await db.execute("PRAGMA journal_mode=WAL")
            await db.execute(_CREATE_TABLE)
            await db.execute(_CREATE_DUE_INDEX)
            await db.execute(_CREATE_OWNER_INDEX)
            await db.commit()
            self._initialised = True
        return db

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[aiosqlite.Connection]:
        """Yield a connection, translating driver failures to StoreUnavailableError."""
        try:
            db = await self._connect()
        except (aiosqlite.Error, OSError) as exc:
            msg = f"Cannot open schedule database at {self._db_path}: {exc}"
            raise StoreUnavailableError(msg) from exc
        try:
            yield db
        except aiosqlite.Error as exc:
            msg = f"Schedule database error: {exc}"
            raise StoreUnavailableError(msg) from exc
        finally:
            await db.close()

    # -- CRUD ------------------------------------------------------------------

    async def create(self, schedule: Schedule) -> Schedule:
        """Insert a new schedule. Returns the same schedule object."""
        async with self._connection() as db:
            await db.execute(
                f"INSERT INTO schedules ({_COLUMNS}) VALUES ({_PLACEHOLDERS})",  # noqa: S608
                schedule.to_row(),
            )
            await db.commit()
        logger.info("Added schedule: %s (%s) owner=%s", schedule.name, schedule.id, schedule.owner_id)
        return schedule

    async def get(self, schedule_id: str, owner_id: str) -> Schedule | None:
        """Fetch a schedule by ID for its owner, or None if not found."""
        async with self._connection() as db:
            cursor = await db.execute(
                f"SELECT {_COLUMNS} FROM schedules WHERE id = ? AND owner_id = ?",  # noqa: S608
                (schedule_id, owner_id),
            )
            row = await cursor.fetchone()
        return Schedule.from_row(row) if row else None

    async def list_schedules(
        self,
        owner_id: str,
        status: ScheduleStatus | None = None,
        tag: str | None = None,
    ) -> list[Schedule]:
        """Return an owner's schedules, soonest next run first."""
        sql = f"SELECT {_COLUMNS} FROM schedules WHERE owner_id = ?"  # noqa: S608
        params: list = [owner_id]
        if status is not None:
            sql += " AND status = ?"
            params.append(str(status))
        sql += " ORDER BY next_run_at IS NULL, next_run_at, created_at"

        async with self._connection() as db:
            cursor = await db.execute(sql, tuple(params))
            rows = await cursor.fetchall()
        schedules = [Schedule.from_row(row) for row in rows]
        if tag:
            wanted = tag.strip().lower()
            schedules = [s for s in schedules if wanted in s.tags]
        return schedules

    async def update(self, schedule: Schedule) -> bool:
        """Write *schedule* back if nobody changed it since it was read.

        The row is only updated when its stored version equals
        ``schedule.version``.  On success the version is bumped (on the row
        and on the object) and True is returned; False means the schedule
        was modified, deleted, or belongs to another owner.
        """
        now = datetime.now(UTC)
        previous_updated_at = schedule.updated_at
        schedule.updated_at = now
        row = dict(zip(SCHEDULE_COLUMNS, schedule.to_row(), strict=True))
        assignments = ", ".join(f"{c} = ?" for c in _MUTABLE_COLUMNS)
        params = (
            *(row[c] for c in _MUTABLE_COLUMNS),
            schedule.id,
            schedule.owner_id,
            schedule.version,
        )
        async with self._connection() as db:
            cursor = await db.execute(
                f"UPDATE schedules SET {assignments}, version = version + 1 "  # noqa: S608
                "WHERE id = ? AND owner_id = ? AND version = ?",
                params,
            )
            await db.commit()
            updated = cursor.rowcount > 0

        if not updated:
            schedule.updated_at = previous_updated_at
            logger.debug("Stale update rejected for schedule %s (version %d)", schedule.id, schedule.version)
            return False
        schedule.version += 1
        return True

    async def delete(self, schedule_id: str, owner_id: str) -> bool:
        """Delete an owner's schedule. Returns True if a row was removed."""
        async with self._connection() as db:
            cursor = await db.execute(
                "DELETE FROM schedules WHERE id = ? AND owner_id = ?",
                (schedule_id, owner_id),
            )
            await db.commit()
            deleted = cursor.rowcount > 0
        if deleted:
            logger.info("Deleted schedule: %s", schedule_id)
        return deleted

    # -- Dispatcher queries ----------------------------------------------------

    async def query_due(self, now: datetime, limit: int | None = None) -> list[Schedule]:
        """Return unclaimed active schedules with ``next_run_at <= now``, oldest first.

        Served from the partial due index; at most *limit* rows are returned
        (default ``settings.due_batch_size``).
        """
        limit = limit or settings.due_batch_size
        async with self._connection() as db:
            cursor = await db.execute(
                f"SELECT {_COLUMNS} FROM schedules "  # noqa: S608
                "WHERE status = 'active' AND next_run_at IS NOT NULL AND claimed_at IS NULL "
                "AND next_run_at <= ? "
                "ORDER BY next_run_at LIMIT ?",
                (format_timestamp(now), limit),
            )
            rows = await cursor.fetchall()
        return [Schedule.from_row(row) for row in rows]

    async def list_claimed(self, claimed_before: datetime | None = None) -> list[Schedule]:
        """Return non-terminal schedules still carrying a dispatcher claim.

        With *claimed_before*, only claims taken strictly before that time.
        """
        sql = (
            f"SELECT {_COLUMNS} FROM schedules "  # noqa: S608
            "WHERE status IN ('active', 'paused') AND claimed_at IS NOT NULL"
        )
        params: tuple = ()
        if claimed_before is not None:
            sql += " AND claimed_at < ?"
            params = (format_timestamp(claimed_before),)
        async with self._connection() as db:
            cursor = await db.execute(sql + " ORDER BY claimed_at", params)
            rows = await cursor.fetchall()
        return [Schedule.from_row(row) for row in rows]
