"""Background daemons: return reminders, reactivation, reservation expiry, monthly reports.

Each daemon is an asyncio task that sleeps until its trigger fires, runs its
job, and goes back to waiting. A failed run is logged and the schedule
continues. Shutdown first asks the loop to stop and only cancels the task if
it does not finish within the timeout.
"""
from __future__ import annotations
import asyncio
import enum
import logging
from datetime import datetime, time, timedelta
from typing import Awaitable, Callable, Dict, Iterable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from circdesk.reminders import reminder_sweep
from circdesk.reports import ReportCache
from circdesk.reservations import expiry_sweep
from circdesk.status import reactivation_sweep

logger = logging.getLogger(__name__)

Job = Callable[[], Awaitable[object]]
Clock = Callable[[], datetime]

class DaemonState(str, enum.Enum):
    IDLE = "IDLE"
    WAITING = "WAITING"
    RUNNING = "RUNNING"
    TERMINATED = "TERMINATED"

class DailyTrigger:
    period = timedelta(days=1)

    def __init__(self, at: time):
        self.at = at

    def first_run(self, now: datetime) -> datetime:
        candidate = datetime.combine(now.date(), self.at)
        if now > candidate:
            candidate += timedelta(days=1)
        return candidate

class MonthlyTrigger:
    """First day of next month at midnight, then every 30 days."""
    period = timedelta(days=30)

    def first_run(self, now: datetime) -> datetime:
        if now.month == 12:
            return datetime(now.year + 1, 1, 1)
        return datetime(now.year, now.month + 1, 1)

class Daemon:
    def __init__(self, name: str, job: Job, trigger, clock: Clock = datetime.now):
        self.name = name
        self.job = job
        self.trigger = trigger
        self.clock = clock
        self.state = DaemonState.IDLE
        self.runs = 0
        self.failures = 0
        self.next_run: Optional[datetime] = None
        self._stop: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        if self._task is not None:
            raise RuntimeError(f"Daemon {self.name} already started")
        self._stop = asyncio.Event()
        self._task = asyncio.create_task(self._loop(), name=f"daemon:{self.name}")

    async def run_once(self) -> bool:
        """Run the job once. Failures are logged, never raised."""
        self.state = DaemonState.RUNNING
        logger.info("[%s] Run started", self.name)
        try:
            await self.job()
        except Exception:
            self.failures += 1
            logger.exception("[%s] Run failed", self.name)
            return False
        finally:
            self.runs += 1
        logger.info("[%s] Run finished", self.name)
        return True

    async def _loop(self) -> None:
        self.next_run = self.trigger.first_run(self.clock())
        try:
            while not self._stop.is_set():
                self.state = DaemonState.WAITING
                delay = max(0.0, (self.next_run - self.clock()).total_seconds())
                logger.debug("[%s] Next run at %s", self.name, self.next_run)
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=delay)
                    break
                except asyncio.TimeoutError:
                    pass
                await self.run_once()
                # missed slots are skipped, not replayed
                now = self.clock()
                while self.next_run <= now:
                    self.next_run += self.trigger.period
        finally:
            self.state = DaemonState.TERMINATED
            logger.info("[%s] Terminated", self.name)

    async def shutdown(self, timeout: float) -> bool:
        """Stop the daemon; returns False when it had to be cancelled."""
        if self._task is None:
            self.state = DaemonState.TERMINATED
            return True
        self._stop.set()
        try:
            await asyncio.wait_for(asyncio.shield(self._task), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            logger.warning("[%s] Did not stop within %ss, cancelling", self.name, timeout)
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            return False

class Scheduler:
    def __init__(self, daemons: Iterable[Daemon]):
        self.daemons = list(daemons)

    def start(self) -> None:
        for d in self.daemons:
            d.start()
        logger.info("[scheduler] Started %s daemon(s)", len(self.daemons))

    async def shutdown(self, timeout: float) -> Dict[str, bool]:
        results = await asyncio.gather(*(d.shutdown(timeout) for d in self.daemons))
        return {d.name: graceful for d, graceful in zip(self.daemons, results)}

def _session_job(session_factory: async_sessionmaker[AsyncSession], sweep) -> Job:
    async def job():
        async with session_factory() as session:
            return await sweep(session)
    return job

def build_scheduler(session_factory: async_sessionmaker[AsyncSession], report_cache: ReportCache, settings) -> Scheduler:
    return Scheduler([
        Daemon("reminders", _session_job(session_factory, reminder_sweep), DailyTrigger(settings.REMINDER_TIME)),
        Daemon("reactivation", _session_job(session_factory, reactivation_sweep), DailyTrigger(settings.REACTIVATION_TIME)),
        Daemon("expiry", _session_job(session_factory, expiry_sweep), DailyTrigger(settings.EXPIRY_TIME)),
        Daemon("reports", _session_job(session_factory, report_cache.generate_all), MonthlyTrigger()),
    ])
