"""Tests for ScheduleExecutor — runs claimed schedules and records outcomes."""

import asyncio
import logging
from datetime import UTC, datetime
from unittest.mock import AsyncMock

import pytest

from taskclock.scheduler.channel import ExecutionChannel
from taskclock.scheduler.dispatcher import ScheduleDispatcher
from taskclock.scheduler.engine import SchedulerEngine
from taskclock.scheduler.errors import StoreUnavailableError
from taskclock.scheduler.executor import ScheduleExecutor
from taskclock.scheduler.models import Schedule, ScheduleStatus, ScheduleTarget
from taskclock.scheduler.store import ScheduleStore


def _utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=UTC)


@pytest.fixture
def channel() -> ExecutionChannel:
    return ExecutionChannel()


@pytest.fixture
def run_agent() -> AsyncMock:
    return AsyncMock(return_value=None)


@pytest.fixture
def dispatcher(engine: SchedulerEngine, channel: ExecutionChannel) -> ScheduleDispatcher:
    return ScheduleDispatcher(engine, channel, interval=30)


@pytest.fixture
def executor(
    engine: SchedulerEngine, channel: ExecutionChannel, run_agent: AsyncMock
) -> ScheduleExecutor:
    return ScheduleExecutor(engine, channel, run_agent, concurrency=2, timeout=5)


async def _create(engine: SchedulerEngine, **kwargs) -> Schedule:
    defaults = {
        "owner_id": "user-1",
        "target": ScheduleTarget(chat_id="chat-1", thread_id="thread-1"),
        "agent_ref": "assistant",
        "name": "Inbox digest",
        "instruction": "Summarise my inbox",
    }
    if "run_at" not in kwargs:
        defaults["cron_expression"] = "0 9 * * *"
    defaults.update(kwargs)
    return await engine.create_schedule(**defaults)


async def _claim(store: ScheduleStore, dispatcher: ScheduleDispatcher, schedule: Schedule) -> Schedule:
    """Run one tick and return the claimed schedule as stored."""
    assert await dispatcher.tick() >= 1
    claimed = await store.get(schedule.id, schedule.owner_id)
    assert claimed.in_flight
    return claimed


# -- Success -------------------------------------------------------------------


async def test_success_records_run(engine, store, clock, dispatcher, executor, run_agent) -> None:
    schedule = await _create(engine)
    clock.set(_utc(2024, 1, 1, 9, 0, 5))
    claimed = await _claim(store, dispatcher, schedule)

    assert await executor.execute(claimed) is True

    run_agent.assert_awaited_once_with(
        "Summarise my inbox", ScheduleTarget(chat_id="chat-1", thread_id="thread-1"), "assistant"
    )
    stored = await store.get(schedule.id, "user-1")
    assert stored.run_count == 1
    assert stored.last_run_at == _utc(2024, 1, 1, 9, 0, 5)
    assert stored.last_error is None
    assert stored.claimed_at is None
    assert stored.status == ScheduleStatus.ACTIVE
    assert stored.next_run_at == _utc(2024, 1, 2, 9, 0)
    assert stored.next_run_at > schedule.next_run_at


async def test_one_shot_completes(engine, store, clock, dispatcher, executor) -> None:
    schedule = await _create(engine, run_at=_utc(2024, 1, 1, 8, 30))
    clock.set(_utc(2024, 1, 1, 8, 30, 2))
    claimed = await _claim(store, dispatcher, schedule)

    await executor.execute(claimed)

    stored = await store.get(schedule.id, "user-1")
    assert stored.status == ScheduleStatus.COMPLETED
    assert stored.next_run_at is None
    assert stored.run_count == 1


async def test_max_runs_completes(engine, store, clock, dispatcher, executor, run_agent) -> None:
    schedule = await _create(engine, cron_expression="* * * * *", max_runs=2)

    for minute in (1, 2):
        clock.set(_utc(2024, 1, 1, 8, minute, 1))
        claimed = await _claim(store, dispatcher, schedule)
        await executor.execute(claimed)

    stored = await store.get(schedule.id, "user-1")
    assert stored.status == ScheduleStatus.COMPLETED
    assert stored.run_count == 2
    assert stored.next_run_at is None

    clock.set(_utc(2024, 1, 1, 8, 3, 1))
    assert await dispatcher.tick() == 0
    assert run_agent.await_count == 2


async def test_run_expired_at_claim_stays_expired(
    engine, store, clock, dispatcher, executor
) -> None:
    schedule = await _create(engine, expires_at=_utc(2024, 1, 1, 12, 0))
    clock.set(_utc(2024, 1, 1, 9, 0, 5))
    claimed = await _claim(store, dispatcher, schedule)

    await executor.execute(claimed)

    stored = await store.get(schedule.id, "user-1")
    assert stored.status == ScheduleStatus.EXPIRED
    assert stored.run_count == 1
    assert stored.claimed_at is None


# -- Failure -------------------------------------------------------------------


async def test_failure_records_error_and_keeps_schedule(
    engine, store, clock, dispatcher, executor, run_agent
) -> None:
    run_agent.side_effect = RuntimeError("agent exploded")
    schedule = await _create(engine)
    clock.set(_utc(2024, 1, 1, 9, 0, 5))
    claimed = await _claim(store, dispatcher, schedule)

    assert await executor.execute(claimed) is False

    stored = await store.get(schedule.id, "user-1")
    assert stored.status == ScheduleStatus.ACTIVE
    assert "agent exploded" in stored.last_error
    assert stored.last_run_at == _utc(2024, 1, 1, 9, 0, 5)
    assert stored.run_count == 0
    assert stored.claimed_at is None
    assert stored.next_run_at == _utc(2024, 1, 2, 9, 0)


async def test_failed_one_shot_completes_with_error(
    engine, store, clock, dispatcher, executor, run_agent
) -> None:
    run_agent.side_effect = RuntimeError("nope")
    schedule = await _create(engine, run_at=_utc(2024, 1, 1, 8, 30))
    clock.set(_utc(2024, 1, 1, 8, 30, 2))
    claimed = await _claim(store, dispatcher, schedule)

    await executor.execute(claimed)

    stored = await store.get(schedule.id, "user-1")
    assert stored.status == ScheduleStatus.COMPLETED
    assert stored.next_run_at is None
    assert stored.run_count == 0
    assert stored.last_error == "RuntimeError: nope"
    assert await engine.list_schedules("user-1", status="active") == []

    clock.set(_utc(2030, 1, 1))
    assert await dispatcher.tick() == 0
    run_agent.assert_awaited_once()


async def test_success_clears_previous_error(
    engine, store, clock, dispatcher, executor, run_agent
) -> None:
    schedule = await _create(engine)
    run_agent.side_effect = RuntimeError("flaky")
    clock.set(_utc(2024, 1, 1, 9, 0, 5))
    await executor.execute(await _claim(store, dispatcher, schedule))

    run_agent.side_effect = None
    clock.set(_utc(2024, 1, 2, 9, 0, 5))
    await executor.execute(await _claim(store, dispatcher, schedule))

    stored = await store.get(schedule.id, "user-1")
    assert stored.last_error is None
    assert stored.run_count == 1


async def test_timeout_is_a_failure(engine, store, clock, dispatcher, channel) -> None:
    async def slow_agent(instruction, target, agent_ref):
        await asyncio.sleep(10)

    executor = ScheduleExecutor(engine, channel, slow_agent, concurrency=1, timeout=0.05)
    schedule = await _create(engine)
    clock.set(_utc(2024, 1, 1, 9, 0, 5))
    claimed = await _claim(store, dispatcher, schedule)

    assert await executor.execute(claimed) is False

    stored = await store.get(schedule.id, "user-1")
    assert stored.last_error == "Timed out after 0.05s"
    assert stored.claimed_at is None


# -- Changed while queued ------------------------------------------------------


async def test_cancelled_while_queued_is_skipped(
    engine, store, clock, dispatcher, executor, run_agent
) -> None:
    schedule = await _create(engine)
    clock.set(_utc(2024, 1, 1, 9, 0, 5))
    claimed = await _claim(store, dispatcher, schedule)
    await engine.cancel_schedule("user-1", schedule.id)

    assert await executor.execute(claimed) is False
    run_agent.assert_not_called()


async def test_paused_while_queued_is_skipped(
    engine, store, clock, dispatcher, executor, run_agent
) -> None:
    schedule = await _create(engine)
    clock.set(_utc(2024, 1, 1, 9, 0, 5))
    claimed = await _claim(store, dispatcher, schedule)
    await engine.set_paused("user-1", schedule.id, True)

    assert await executor.execute(claimed) is False
    run_agent.assert_not_called()

    stored = await store.get(schedule.id, "user-1")
    assert stored.status == ScheduleStatus.PAUSED
    assert stored.claimed_at is None


async def test_pause_during_run_keeps_pause(engine, store, clock, dispatcher, channel) -> None:
    schedule = await _create(engine)

    async def pausing_agent(instruction, target, agent_ref):
        await engine.set_paused("user-1", schedule.id, True)

    executor = ScheduleExecutor(engine, channel, pausing_agent, concurrency=1, timeout=5)
    clock.set(_utc(2024, 1, 1, 9, 0, 5))
    claimed = await _claim(store, dispatcher, schedule)

    assert await executor.execute(claimed) is True

    stored = await store.get(schedule.id, "user-1")
    assert stored.status == ScheduleStatus.PAUSED
    assert stored.next_run_at is None
    assert stored.run_count == 1
    assert stored.claimed_at is None


# -- Worker loop ---------------------------------------------------------------


async def test_run_drains_channel(engine, store, clock, dispatcher, channel, executor, run_agent) -> None:
    await _create(engine, name="First")
    await _create(engine, name="Second")
    clock.set(_utc(2024, 1, 1, 9, 0, 5))
    assert await dispatcher.tick() == 2

    channel.close()
    await asyncio.wait_for(executor.run(), timeout=2)

    assert run_agent.await_count == 2
    summaries = await engine.list_schedules("user-1")
    assert all(s.next_run_at == _utc(2024, 1, 2, 9, 0) for s in summaries)


async def test_worker_survives_write_back_error(
    engine, store, clock, dispatcher, channel, executor, run_agent, monkeypatch
) -> None:
    await _create(engine, name="First")
    await _create(engine, name="Second")
    clock.set(_utc(2024, 1, 1, 9, 0, 5))
    await dispatcher.tick()

    monkeypatch.setattr(store, "update", AsyncMock(side_effect=RuntimeError("disk gone")))
    channel.close()
    await asyncio.wait_for(executor.run(), timeout=2)

    assert run_agent.await_count == 2


# -- Claim release -------------------------------------------------------------


async def test_failed_write_back_releases_claim(
    engine, store, clock, dispatcher, executor, run_agent, monkeypatch
) -> None:
    schedule = await _create(engine, cron_expression="* * * * *")
    clock.set(_utc(2024, 1, 1, 8, 1, 1))
    claimed = await _claim(store, dispatcher, schedule)

    update = store.update
    calls = 0

    async def flaky_update(target):
        nonlocal calls
        calls += 1
        if calls == 1:
            raise StoreUnavailableError("database is locked")
        return await update(target)

    monkeypatch.setattr(store, "update", flaky_update)

    with pytest.raises(StoreUnavailableError):
        await executor.execute(claimed)

    stored = await store.get(schedule.id, "user-1")
    assert stored.claimed_at is None
    assert stored.next_run_at == _utc(2024, 1, 1, 8, 2)
    assert stored.run_count == 0

    clock.set(_utc(2024, 1, 1, 8, 2, 1))
    assert await dispatcher.tick() == 1


async def test_released_one_shot_gets_run_at_back(
    engine, store, clock, dispatcher, executor, monkeypatch
) -> None:
    schedule = await _create(engine, run_at=_utc(2024, 1, 1, 8, 30))
    clock.set(_utc(2024, 1, 1, 8, 30, 2))
    claimed = await _claim(store, dispatcher, schedule)

    update = store.update
    calls = 0

    async def conflicting_update(target):
        nonlocal calls
        calls += 1
        if calls <= 3:
            return False
        return await update(target)

    monkeypatch.setattr(store, "update", conflicting_update)

    assert await executor.execute(claimed) is True

    stored = await store.get(schedule.id, "user-1")
    assert stored.claimed_at is None
    assert stored.next_run_at == _utc(2024, 1, 1, 8, 30)
    assert stored.status == ScheduleStatus.ACTIVE


async def test_claim_released_while_queued_is_skipped(
    engine, store, clock, dispatcher, executor, run_agent
) -> None:
    schedule = await _create(engine)
    clock.set(_utc(2024, 1, 1, 9, 0, 5))
    claimed = await _claim(store, dispatcher, schedule)
    assert await dispatcher.recover_claims() == 1

    assert await executor.execute(claimed) is False
    run_agent.assert_not_called()

    stored = await store.get(schedule.id, "user-1")
    assert stored.claimed_at is None
    assert stored.version == claimed.version + 1


async def test_release_survives_unreachable_store(
    engine, store, clock, dispatcher, executor, run_agent, monkeypatch
) -> None:
    schedule = await _create(engine)
    clock.set(_utc(2024, 1, 1, 9, 0, 5))
    claimed = await _claim(store, dispatcher, schedule)

    monkeypatch.setattr(store, "get", AsyncMock(side_effect=StoreUnavailableError("gone")))

    with pytest.raises(StoreUnavailableError):
        await executor.execute(claimed)
    run_agent.assert_not_called()


async def test_runner_failure_logged_once(
    engine, store, clock, dispatcher, executor, run_agent, caplog
) -> None:
    run_agent.side_effect = RuntimeError("agent exploded")
    schedule = await _create(engine)
    clock.set(_utc(2024, 1, 1, 9, 0, 5))
    claimed = await _claim(store, dispatcher, schedule)

    with caplog.at_level(logging.INFO, logger="taskclock.scheduler.executor"):
        await executor.execute(claimed)

    errors = [r for r in caplog.records if r.levelno >= logging.ERROR]
    assert len(errors) == 1
    assert "agent exploded" in errors[0].getMessage()
    assert errors[0].exc_info is not None
