"""Scheduler: fires graph runs from wall-clock schedules.

Every enabled entry becomes an APScheduler job, a ``DateTrigger`` for
"once" and an ``IntervalTrigger`` for "recurring". A fired entry starts a
run, records ``last_run`` and takes its ``next_run`` from the job (or from
the trigger when the entry is ticked by hand). A "once" entry disables
itself after firing.

``due(now)`` and ``tick(now)`` run the same logic against an injectable
clock without starting APScheduler.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable

from apscheduler.job import Job
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from marathon.domain.models import Execution, Schedule, ScheduleEntry, as_utc, utcnow

logger = logging.getLogger(__name__)

_INTERVALS: dict[str, timedelta] = {
    "hourly": timedelta(hours=1),
    "daily": timedelta(days=1),
    "weekly": timedelta(weeks=1),
    "monthly": timedelta(days=30),
}

Clock = Callable[[], datetime]


def interval_of(schedule: Schedule) -> timedelta:
    if schedule.every_minutes is not None:
        return timedelta(minutes=schedule.every_minutes)
    return _INTERVALS[schedule.interval or "daily"]


def first_run(schedule: Schedule, now: datetime) -> datetime:
    """``at`` when given (always for "once"), else one interval from now."""
    if schedule.at is not None:
        return schedule.at
    return now + interval_of(schedule)


def build_trigger(entry: ScheduleEntry, now: datetime) -> BaseTrigger:
    """APScheduler trigger for an entry, anchored at its next (or first) run."""
    schedule = entry.schedule
    if schedule.type == "once":
        return DateTrigger(run_date=schedule.at, timezone="UTC")
    return IntervalTrigger(
        seconds=int(interval_of(schedule).total_seconds()),
        start_date=entry.next_run or first_run(schedule, now),
        timezone="UTC",
    )


def following_run(trigger: BaseTrigger, fired_at: datetime, now: datetime) -> datetime | None:
    """Next fire time after ``now``; missed fire times collapse into one run."""
    next_run = trigger.get_next_fire_time(fired_at, now)
    while next_run is not None and next_run <= now:
        next_run = trigger.get_next_fire_time(next_run, now)
    return as_utc(next_run)


class Scheduler:
    """Runs a graph whenever one of its schedule entries comes due.

    Args:
        engine: ExecutionEngine used for every run.
        store: The GraphStore to execute.
        clock: Returns the current time; injectable for tests.
        input_factory: Builds the trigger payload for an entry.

    Example:
        scheduler = Scheduler(engine, store)
        scheduler.add(Schedule(type="recurring", interval="hourly"), name="digest")
        await scheduler.run_forever(stop_event)
    """

    def __init__(
        self,
        engine: Any,
        store: Any,
        *,
        clock: Clock = utcnow,
        input_factory: Callable[[ScheduleEntry], dict[str, Any]] | None = None,
    ) -> None:
        self.engine = engine
        self.store = store
        self.clock = clock
        self.input_factory = input_factory or _default_input
        self._entries: dict[str, ScheduleEntry] = {}
        self._scheduler: AsyncIOScheduler | None = None

    @property
    def entries(self) -> list[ScheduleEntry]:
        return list(self._entries.values())

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def get(self, entry_id: str) -> ScheduleEntry | None:
        return self._entries.get(entry_id)

    def add(self, schedule: Schedule, *, name: str = "", entry_id: str | None = None) -> ScheduleEntry:
        entry = ScheduleEntry(
            id=entry_id or f"schedule-{uuid.uuid4().hex[:8]}",
            name=name,
            schedule=schedule,
            next_run=first_run(schedule, self._now()),
        )
        self._entries[entry.id] = entry
        self._sync_job(entry)
        logger.info("Scheduled %s (%s) next at %s", entry.id, schedule.type, entry.next_run)
        return entry

    def load(self, entries: list[ScheduleEntry]) -> None:
        """Adopt entries from a persisted document, filling missing next runs."""
        now = self._now()
        for entry in entries:
            if entry.next_run is None and entry.enabled:
                entry.next_run = first_run(entry.schedule, now)
            self._entries[entry.id] = entry
            self._sync_job(entry)

    def remove(self, entry_id: str) -> bool:
        entry = self._entries.pop(entry_id, None)
        if entry is None:
            return False
        self._remove_job(entry_id)
        return True

    def enable(self, entry_id: str) -> ScheduleEntry:
        entry = self._require(entry_id)
        entry.enabled = True
        if entry.next_run is None:
            entry.next_run = first_run(entry.schedule, self._now())
        self._sync_job(entry)
        return entry

    def disable(self, entry_id: str) -> ScheduleEntry:
        entry = self._require(entry_id)
        entry.enabled = False
        self._remove_job(entry_id)
        return entry

    def due(self, now: datetime | None = None) -> list[ScheduleEntry]:
        now = as_utc(now) or self._now()
        return [
            entry
            for entry in self._entries.values()
            if entry.enabled and entry.next_run is not None and entry.next_run <= now
        ]

    async def tick(self, now: datetime | None = None) -> list[Execution]:
        """Run every due entry once; returns the Executions started."""
        now = as_utc(now) or self._now()
        executions: list[Execution] = []
        for entry in self.due(now):
            executions.append(await self._fire_entry(entry, now))
        return executions

    # ── APScheduler ──

    def start(self) -> None:
        """Start APScheduler on the running event loop with one job per entry."""
        if self.running:
            logger.warning("Scheduler already running")
            return
        self._scheduler = AsyncIOScheduler(event_loop=asyncio.get_running_loop(), timezone="UTC")
        for entry in self._entries.values():
            self._sync_job(entry)
        self._scheduler.start()
        logger.info("Scheduler started with %d job(s)", len(self._scheduler.get_jobs()))

    def shutdown(self) -> None:
        if not self.running:
            return
        self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("Scheduler stopped")

    async def run_forever(self, stop_event: asyncio.Event | None = None) -> None:
        """Run scheduled jobs until ``stop_event`` is set."""
        stop_event = stop_event or asyncio.Event()
        self.start()
        try:
            await stop_event.wait()
        finally:
            self.shutdown()

    async def _run_job(self, entry_id: str) -> None:
        """Called by APScheduler when an entry's trigger fires."""
        entry = self._entries.get(entry_id)
        if entry is None or not entry.enabled:
            logger.warning("Schedule %s not found or disabled", entry_id)
            return
        await self._fire_entry(entry, self._now())

    def _sync_job(self, entry: ScheduleEntry) -> None:
        if self._scheduler is None:
            return
        if not entry.enabled or entry.next_run is None:
            self._remove_job(entry.id)
            return
        self._scheduler.add_job(
            self._run_job,
            trigger=build_trigger(entry, self._now()),
            id=entry.id,
            args=[entry.id],
            next_run_time=entry.next_run,
            replace_existing=True,
            coalesce=True,
            misfire_grace_time=None,
        )

    def _remove_job(self, entry_id: str) -> None:
        if self.job(entry_id) is not None:
            self._scheduler.remove_job(entry_id)

    def job(self, entry_id: str) -> Job | None:
        """The APScheduler job of an entry while the scheduler is running."""
        if self._scheduler is None:
            return None
        return self._scheduler.get_job(entry_id)

    # ── Firing ──

    async def _fire_entry(self, entry: ScheduleEntry, now: datetime) -> Execution:
        logger.info("Schedule %s fired", entry.id)
        fired_at = entry.next_run or now
        execution = await self.engine.run(self.store, self.input_factory(entry))
        entry.last_run = now

        job = self.job(entry.id)
        if job is not None:
            entry.next_run = as_utc(job.next_run_time)
        else:
            entry.next_run = following_run(build_trigger(entry, now), fired_at, now)
        if entry.next_run is None:
            entry.enabled = False
            logger.info("Schedule %s has no further runs; disabled", entry.id)
        return execution

    def _now(self) -> datetime:
        return as_utc(self.clock())

    def _require(self, entry_id: str) -> ScheduleEntry:
        entry = self._entries.get(entry_id)
        if entry is None:
            raise KeyError(f"Unknown schedule entry: {entry_id}")
        return entry


def _default_input(entry: ScheduleEntry) -> dict[str, Any]:
    return {"scheduleId": entry.id, "scheduleName": entry.name}
