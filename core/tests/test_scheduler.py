"""Tests for the scheduler."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger
from pydantic import ValidationError

from conftest import wire
from marathon.domain.models import Schedule, ScheduleEntry
from marathon.services.scheduler import Scheduler, build_trigger, following_run, interval_of

NOW = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock():
    return FakeClock(NOW)


@pytest.fixture
def scheduler(store, engine, clock):
    trigger = store.add_node("schedule-trigger", node_id="tick")
    wire(store, trigger, "timestamp", store.add_node("recorder", node_id="r"))
    return Scheduler(engine, store, clock=clock)


class TestSchedule:
    def test_once_needs_at(self):
        with pytest.raises(ValidationError):
            Schedule(type="once")

    def test_recurring_needs_an_interval(self):
        with pytest.raises(ValidationError):
            Schedule(type="recurring")

    def test_intervals(self):
        assert interval_of(Schedule(type="recurring", interval="hourly")) == timedelta(hours=1)
        assert interval_of(Schedule(type="recurring", interval="weekly")) == timedelta(days=7)
        assert interval_of(Schedule(type="recurring", interval="monthly")) == timedelta(days=30)
        assert interval_of(Schedule(type="recurring", every_minutes=15)) == timedelta(minutes=15)


class TestScheduler:
    def test_add_computes_next_run(self, scheduler):
        entry = scheduler.add(Schedule(type="recurring", interval="hourly"), name="hourly")
        assert entry.next_run == NOW + timedelta(hours=1)

        once = scheduler.add(Schedule(type="once", at=NOW + timedelta(minutes=5)))
        assert once.next_run == NOW + timedelta(minutes=5)

    def test_due(self, scheduler):
        entry = scheduler.add(Schedule(type="once", at=NOW))
        later = scheduler.add(Schedule(type="once", at=NOW + timedelta(days=1)))

        assert scheduler.due() == [entry]
        scheduler.disable(entry.id)
        assert scheduler.due() == []
        assert later not in scheduler.due()

    @pytest.mark.asyncio
    async def test_once_fires_and_disables_itself(self, scheduler, clock):
        entry = scheduler.add(Schedule(type="once", at=NOW), name="kickoff")

        executions = await scheduler.tick()

        assert len(executions) == 1
        assert executions[0].status == "completed"
        assert executions[0].input == {"scheduleId": entry.id, "scheduleName": "kickoff"}
        assert entry.enabled is False
        assert entry.next_run is None
        assert entry.last_run == NOW
        assert await scheduler.tick() == []

    @pytest.mark.asyncio
    async def test_recurring_recomputes_next_run(self, scheduler, clock):
        entry = scheduler.add(Schedule(type="recurring", every_minutes=30))
        assert await scheduler.tick() == []

        clock.now = NOW + timedelta(minutes=30)
        executions = await scheduler.tick()

        assert len(executions) == 1
        assert entry.enabled is True
        assert entry.next_run == NOW + timedelta(minutes=60)

    @pytest.mark.asyncio
    async def test_missed_ticks_collapse(self, scheduler, clock):
        entry = scheduler.add(Schedule(type="recurring", interval="hourly"))
        clock.now = NOW + timedelta(hours=5, minutes=10)

        executions = await scheduler.tick()

        assert len(executions) == 1
        assert entry.next_run == NOW + timedelta(hours=6)

    def test_remove_and_enable(self, scheduler):
        entry = scheduler.add(Schedule(type="recurring", interval="daily"))
        scheduler.disable(entry.id)
        assert scheduler.enable(entry.id).enabled is True
        assert scheduler.remove(entry.id) is True
        assert scheduler.remove(entry.id) is False
        with pytest.raises(KeyError):
            scheduler.enable(entry.id)

    @pytest.mark.asyncio
    async def test_naive_schedule_time_is_read_as_utc(self, scheduler):
        entry = ScheduleEntry.model_validate(
            {"id": "s1", "schedule": {"type": "once", "at": "2026-01-05T08:00:00"}}
        )
        scheduler.load([entry])

        assert entry.schedule.at == NOW - timedelta(hours=1)
        assert scheduler.due(datetime(2026, 1, 5, 9, 0)) == [entry]
        executions = await scheduler.tick()

        assert len(executions) == 1
        assert entry.enabled is False
        assert entry.last_run.tzinfo is not None

    def test_once_trigger_has_no_second_run(self):
        entry = ScheduleEntry(id="s1", schedule=Schedule(type="once", at=NOW), next_run=NOW)
        assert following_run(build_trigger(entry, NOW), NOW, NOW) is None

    @pytest.mark.asyncio
    async def test_start_registers_jobs_for_enabled_entries(self, store, engine):
        later = datetime(2099, 1, 1, tzinfo=timezone.utc)
        scheduler = Scheduler(engine, store, clock=FakeClock(later))
        once = scheduler.add(Schedule(type="once", at=later + timedelta(days=1)))
        hourly = scheduler.add(Schedule(type="recurring", interval="hourly"))
        off = scheduler.add(Schedule(type="recurring", every_minutes=5))
        scheduler.disable(off.id)

        scheduler.start()
        try:
            assert scheduler.running
            assert isinstance(scheduler.job(once.id).trigger, DateTrigger)
            assert isinstance(scheduler.job(hourly.id).trigger, IntervalTrigger)
            assert scheduler.job(hourly.id).next_run_time == later + timedelta(hours=1)
            assert scheduler.job(off.id) is None

            scheduler.remove(once.id)
            assert scheduler.job(once.id) is None
        finally:
            scheduler.shutdown()
        assert not scheduler.running

    @pytest.mark.asyncio
    async def test_run_forever_fires_overdue_entries(self, store, engine):
        trigger = store.add_node("schedule-trigger", node_id="tick")
        wire(store, trigger, "timestamp", store.add_node("recorder", node_id="r"))
        scheduler = Scheduler(engine, store)
        now = datetime.now(timezone.utc)
        scheduler.add(Schedule(type="once", at=now - timedelta(minutes=1)), entry_id="once")
        scheduler.load(
            [
                ScheduleEntry(
                    id="every-minute",
                    schedule=Schedule(type="recurring", every_minutes=1),
                    next_run=now - timedelta(seconds=30),
                )
            ]
        )
        stop = asyncio.Event()

        async def stop_soon():
            await asyncio.sleep(0.3)
            stop.set()

        await asyncio.gather(scheduler.run_forever(stop), stop_soon())

        once = scheduler.get("once")
        assert once.enabled is False
        assert once.last_run is not None
        recurring = scheduler.get("every-minute")
        assert recurring.enabled is True
        assert recurring.last_run is not None
        assert recurring.next_run == now + timedelta(seconds=30)
        assert not scheduler.running
