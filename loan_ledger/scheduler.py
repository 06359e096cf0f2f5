"""
Job Scheduler Module

Runs the ledger's recurring jobs (overdue sweep, due-soon reminders, monthly
digest) on a daemon polling thread. Schedules are wall-clock cadences in UTC.
A job is never run twice at once: a firing that arrives while the previous
run is still going is skipped and logged.
"""

import calendar
import threading
from datetime import datetime, timezone, timedelta
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional
from enum import Enum

from .errors import NotFoundError
from .logging_config import get_logger


class ScheduleFrequency(Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


@dataclass(frozen=True)
class JobSchedule:
    """
    Wall-clock cadence.

    weekday follows datetime.weekday() (Monday is 0); day is the day of the
    month and is clamped to the month's last day.
    """
    frequency: ScheduleFrequency
    hour: int = 0
    minute: int = 0
    weekday: int = 0
    day: int = 1

    def __post_init__(self):
        if not 0 <= self.hour <= 23 or not 0 <= self.minute <= 59:
            raise ValueError(f"Invalid schedule time {self.hour:02d}:{self.minute:02d}")
        if not 0 <= self.weekday <= 6:
            raise ValueError(f"Invalid weekday {self.weekday}")
        if not 1 <= self.day <= 31:
            raise ValueError(f"Invalid day of month {self.day}")

    @classmethod
    def daily(cls, hour: int, minute: int = 0) -> 'JobSchedule':
        return cls(ScheduleFrequency.DAILY, hour, minute)

    @classmethod
    def weekly(cls, weekday: int, hour: int, minute: int = 0) -> 'JobSchedule':
        return cls(ScheduleFrequency.WEEKLY, hour, minute, weekday=weekday)

    @classmethod
    def monthly(cls, day: int, hour: int, minute: int = 0) -> 'JobSchedule':
        return cls(ScheduleFrequency.MONTHLY, hour, minute, day=day)

    def _at(self, moment: datetime) -> datetime:
        return moment.replace(hour=self.hour, minute=self.minute, second=0, microsecond=0)

    def next_run_after(self, moment: datetime) -> datetime:
        """First firing strictly after `moment`"""
        if self.frequency == ScheduleFrequency.DAILY:
            candidate = self._at(moment)
            if candidate <= moment:
                candidate += timedelta(days=1)
            return candidate

        if self.frequency == ScheduleFrequency.WEEKLY:
            candidate = self._at(moment) + timedelta(days=(self.weekday - moment.weekday()) % 7)
            if candidate <= moment:
                candidate += timedelta(days=7)
            return candidate

        year, month = moment.year, moment.month
        while True:
            last_day = calendar.monthrange(year, month)[1]
            candidate = self._at(moment.replace(year=year, month=month, day=min(self.day, last_day)))
            if candidate > moment:
                return candidate
            year, month = (year + 1, 1) if month == 12 else (year, month + 1)
            moment = moment.replace(day=1)

    def describe(self) -> str:
        at = f"{self.hour:02d}:{self.minute:02d} UTC"
        if self.frequency == ScheduleFrequency.DAILY:
            return f"daily at {at}"
        if self.frequency == ScheduleFrequency.WEEKLY:
            return f"weekly on {calendar.day_name[self.weekday]} at {at}"
        return f"monthly on day {self.day} at {at}"


@dataclass
class ScheduledJob:
    """A registered job and its run history"""
    name: str
    schedule: JobSchedule
    func: Callable[[], Any]
    description: str = ""
    next_run: Optional[datetime] = None
    last_run: Optional[datetime] = None
    last_status: Optional[str] = None     # success, error, skipped
    last_error: Optional[str] = None
    last_result: Optional[Dict[str, Any]] = None
    run_count: int = 0
    skip_count: int = 0
    running: bool = False
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'description': self.description,
            'schedule': self.schedule.describe(),
            'next_run': self.next_run.isoformat() if self.next_run else None,
            'last_run': self.last_run.isoformat() if self.last_run else None,
            'last_status': self.last_status,
            'last_error': self.last_error,
            'last_result': self.last_result,
            'run_count': self.run_count,
            'skip_count': self.skip_count,
            'running': self.running,
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobScheduler:
    """Polling scheduler for the recurring ledger jobs"""

    def __init__(self, poll_seconds: float = 30.0, clock: Callable[[], datetime] = _utcnow):
        self.poll_seconds = poll_seconds
        self.clock = clock
        self.jobs: Dict[str, ScheduledJob] = {}
        self.running = False
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._lock = threading.RLock()
        self.logger = get_logger("loan_ledger.scheduler")

    def register(
        self,
        name: str,
        schedule: JobSchedule,
        func: Callable[[], Any],
        description: str = ""
    ) -> ScheduledJob:
        with self._lock:
            job = ScheduledJob(
                name=name,
                schedule=schedule,
                func=func,
                description=description,
                next_run=schedule.next_run_after(self.clock()),
            )
            self.jobs[name] = job
            self.logger.info(f"Registered job {name} ({schedule.describe()})")
            return job

    def get_job(self, name: str) -> ScheduledJob:
        job = self.jobs.get(name)
        if not job:
            raise NotFoundError(f"Job {name} not found")
        return job

    def list_jobs(self) -> List[ScheduledJob]:
        return sorted(self.jobs.values(), key=lambda j: j.name)

    def run_pending(self, now: Optional[datetime] = None, background: bool = False) -> List[str]:
        """
        Fire every job whose next run time has passed.

        Returns:
            Names of jobs that were due (whether run or skipped)
        """
        now = now or self.clock()
        due = []
        with self._lock:
            for job in self.jobs.values():
                if job.next_run and job.next_run <= now:
                    job.next_run = job.schedule.next_run_after(now)
                    due.append(job)

        for job in due:
            if background:
                thread = threading.Thread(target=self._execute, args=(job,), name=f"job-{job.name}")
                thread.daemon = True
                thread.start()
            else:
                self._execute(job)
        return [job.name for job in due]

    def run_job(self, name: str) -> ScheduledJob:
        """Run one job now, outside its schedule"""
        job = self.get_job(name)
        self._execute(job)
        return job

    def _execute(self, job: ScheduledJob) -> None:
        if not job._lock.acquire(blocking=False):
            with self._lock:
                job.skip_count += 1
                job.last_status = "skipped"
            self.logger.warning(f"Job {job.name} is still running, skipping this firing")
            return

        with self._lock:
            job.running = True
        started = self.clock()
        status, error, summary = "success", None, None
        try:
            result = job.func()
            summary = result.to_dict() if hasattr(result, 'to_dict') else None
            self.logger.info(f"Job {job.name} finished in {(self.clock() - started).total_seconds():.2f}s")
        except Exception as e:
            status, error = "error", str(e)
            self.logger.error(f"Job {job.name} failed: {e}", exc_info=True)
        finally:
            with self._lock:
                job.last_status = status
                job.last_error = error
                if status == "success":
                    job.last_result = summary
                job.last_run = started
                job.run_count += 1
                job.running = False
            job._lock.release()

    def start(self) -> None:
        """Start the polling thread"""
        with self._lock:
            if self.running:
                return
            self.running = True
            self._stop_event.clear()

        def poll():
            while not self._stop_event.is_set():
                try:
                    self.run_pending(background=True)
                except Exception as e:
                    self.logger.error(f"Scheduler poll error: {e}")
                self._stop_event.wait(self.poll_seconds)

        self._thread = threading.Thread(target=poll, name="ledger-scheduler")
        self._thread.daemon = True
        self._thread.start()
        self.logger.info(f"Scheduler started with {len(self.jobs)} jobs")

    def stop(self) -> None:
        """Stop the polling thread"""
        with self._lock:
            if not self.running:
                return
            self.running = False
            self._stop_event.set()

        if self._thread:
            self._thread.join(timeout=5.0)
            self._thread = None
        self.logger.info("Scheduler stopped")

    def is_running(self) -> bool:
        return self.running
