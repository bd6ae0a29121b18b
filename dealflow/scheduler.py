"""Background scheduler — periodic sweeps on fixed wall-clock slots.

Runs on a 1-minute tick loop. Each tick checks which jobs have reached a new
slot (in settings.scheduler_timezone, Asia/Kolkata by default):
  - dormant_sweep: daily 00:00
  - sla_reminders: every 6 hours
  - sla_overdue: hourly
  - kyc_expiry: Mondays 09:00
  - overdue_notifications: daily 10:00
  - actual_overdue: daily 11:00
  - nbfc_capacity_reset: 1st of the month 00:05

The FastAPI lifespan owns the one `scheduler` instance: start() and
shutdown() are idempotent. A job runs at most once per slot; the slot
current at start() counts as already run.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable
from zoneinfo import ZoneInfo

log = logging.getLogger("dealflow.scheduler")

TICK_SECONDS = 60


def _utc(dt):
    """Make a naive datetime UTC-aware (no-op if already aware)."""
    if dt is None:
        return None
    return dt.replace(tzinfo=timezone.utc) if dt.tzinfo is None else dt


# ── Slots ────────────────────────────────────────────────────────────
# Each returns the latest scheduled local datetime at or before `local_now`.


def daily(hour: int, minute: int = 0):
    def slot(local_now: datetime) -> datetime:
        at = local_now.replace(hour=hour, minute=minute, second=0, microsecond=0)
        return at if at <= local_now else at - timedelta(days=1)
    return slot


def every_hours(hours: int):
    def slot(local_now: datetime) -> datetime:
        return local_now.replace(hour=local_now.hour - local_now.hour % hours, minute=0, second=0, microsecond=0)
    return slot


def weekly(weekday: int, hour: int, minute: int = 0):
    def slot(local_now: datetime) -> datetime:
        at = local_now.replace(hour=hour, minute=minute, second=0, microsecond=0)
        at -= timedelta(days=(local_now.weekday() - weekday) % 7)
        return at if at <= local_now else at - timedelta(days=7)
    return slot


def monthly(day: int, hour: int, minute: int = 0):
    def slot(local_now: datetime) -> datetime:
        at = local_now.replace(day=day, hour=hour, minute=minute, second=0, microsecond=0)
        if at <= local_now:
            return at
        prev_month = local_now.replace(day=1) - timedelta(days=1)
        return prev_month.replace(day=day, hour=hour, minute=minute, second=0, microsecond=0)
    return slot


# ── Jobs ─────────────────────────────────────────────────────────────
# Each opens its own session; SessionLocal is imported late so tests can patch it.


def _run_with_session(sweep_name: str) -> dict:
    from .database import SessionLocal
    from .services import sweep_service

    sweep = sweep_service.SWEEPS.get(sweep_name) or getattr(sweep_service, sweep_name)
    db = SessionLocal()
    try:
        return sweep(db, datetime.now(timezone.utc))
    finally:
        db.close()


async def _job_dormant_sweep():
    return _run_with_session("dormant")


async def _job_sla_reminders():
    return _run_with_session("sla_reminders")


async def _job_sla_overdue():
    return _run_with_session("sla_overdue")


async def _job_kyc_expiry():
    return _run_with_session("kyc_expiry")


async def _job_overdue_notifications():
    return _run_with_session("overdue_notifications")


async def _job_actual_overdue():
    return _run_with_session("actual_overdue")


async def _job_nbfc_capacity_reset():
    return _run_with_session("reset_nbfc_capacity")


@dataclass(frozen=True)
class Job:
    id: str
    schedule: str
    slot: Callable[[datetime], datetime]
    func: Callable


JOBS = (
    Job("dormant_sweep", "daily 00:00", daily(0), _job_dormant_sweep),
    Job("sla_reminders", "every 6 hours", every_hours(6), _job_sla_reminders),
    Job("sla_overdue", "hourly", every_hours(1), _job_sla_overdue),
    Job("kyc_expiry", "Mondays 09:00", weekly(0, 9), _job_kyc_expiry),
    Job("overdue_notifications", "daily 10:00", daily(10), _job_overdue_notifications),
    Job("actual_overdue", "daily 11:00", daily(11), _job_actual_overdue),
    Job("nbfc_capacity_reset", "1st of month 00:05", monthly(1, 0, 5), _job_nbfc_capacity_reset),
)


def schedule_description() -> list[dict]:
    from .config import settings

    return [{"id": j.id, "schedule": j.schedule, "timezone": settings.scheduler_timezone} for j in JOBS]


# ── Scheduler ────────────────────────────────────────────────────────


class Scheduler:
    """Tick loop over JOBS. One instance per process, owned by the app lifespan."""

    def __init__(self, jobs=JOBS, tz_name: str | None = None):
        self.jobs = {j.id: j for j in jobs}
        self._tz_name = tz_name
        self._task: asyncio.Task | None = None
        self.last_slot: dict[str, datetime] = {}
        self.last_result: dict[str, dict] = {}

    @property
    def tz(self) -> ZoneInfo:
        from .config import settings

        return ZoneInfo(self._tz_name or settings.scheduler_timezone)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def _local(self, now: datetime) -> datetime:
        return _utc(now).astimezone(self.tz)

    def prime(self, now: datetime | None = None) -> None:
        """Mark every job's current slot as already run."""
        local_now = self._local(now or datetime.now(timezone.utc))
        self.last_slot = {job_id: job.slot(local_now) for job_id, job in self.jobs.items()}

    def due(self, now: datetime) -> list[Job]:
        local_now = self._local(now)
        return [
            job for job in self.jobs.values()
            if self.last_slot.get(job.id) is None or job.slot(local_now) > self.last_slot[job.id]
        ]

    async def tick(self, now: datetime | None = None) -> list[str]:
        """Run every job that reached a new slot. Returns the ids that ran."""
        now = now or datetime.now(timezone.utc)
        ran = []
        for job in self.due(now):
            self.last_slot[job.id] = job.slot(self._local(now))
            try:
                self.last_result[job.id] = await job.func()
                ran.append(job.id)
            except Exception as e:
                log.error(f"Scheduled job {job.id} failed: {e}")
        return ran

    async def run_job(self, job_id: str) -> dict:
        if job_id not in self.jobs:
            raise KeyError(job_id)
        result = await self.jobs[job_id].func()
        self.last_result[job_id] = result
        return result

    async def _loop(self):
        log.info(f"Background scheduler started: {len(self.jobs)} jobs, tick every {TICK_SECONDS}s")
        while True:
            try:
                await self.tick()
            except Exception as e:
                log.error(f"Scheduler tick error: {e}")
            await asyncio.sleep(TICK_SECONDS)

    def start(self) -> bool:
        """Start the loop on the running event loop. False if already running."""
        if self.running:
            log.debug("Scheduler already running")
            return False
        self.prime()
        self._task = asyncio.get_running_loop().create_task(self._loop())
        return True

    async def shutdown(self) -> bool:
        """Stop the loop. False if it was not running."""
        if not self.running:
            return False
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        log.info("Background scheduler stopped")
        return True


scheduler = Scheduler()
