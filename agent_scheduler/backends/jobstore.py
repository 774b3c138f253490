"""
Job-store backend using APScheduler.

Jobs are registered as named tasks (id "aipm-agent-<name>") in a
persistent SQLite job store. The CLI opens the store with a paused
scheduler, so registering a task never runs it; the long-running
`agent-scheduler daemon` process executes due tasks and writes a PID file
that `status` uses to tell whether tasks will actually fire.
"""

import atexit
import logging
import os
import re
import signal
import subprocess
import sys
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Optional, List, Tuple

from apscheduler.events import (
    EVENT_JOB_EXECUTED,
    EVENT_JOB_ERROR,
    EVENT_JOB_MISSED,
)
from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.base import JobLookupError
from apscheduler.jobstores.sqlalchemy import SQLAlchemyJobStore
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy.exc import SQLAlchemyError

from agent_scheduler.backends import SchedulerBackend, SchedulerEntry, ServiceStatus
from agent_scheduler.errors import (
    DuplicateJob,
    JobNotFound,
    ScheduleParseError,
    SchedulerUnavailable,
)
from agent_scheduler.identity import task_id, slugify
from agent_scheduler.jobs import Job, HistoryStore, execute_scheduled_command

logger = logging.getLogger(__name__)

DAEMON_HINT = "Start it with: agent-scheduler daemon"

_CRON_WEEKDAYS = ['sun', 'mon', 'tue', 'wed', 'thu', 'fri', 'sat']

# How often the daemon re-reads the store for tasks added by other processes
WAKEUP_INTERVAL_SECONDS = 30

JOB_DEFAULTS = {
    'coalesce': True,  # Combine multiple missed runs into one
    'max_instances': 1,  # Prevent concurrent runs of same job
    'misfire_grace_time': 300  # 5 minutes grace period
}


def _is_process_running(pid: int) -> bool:
    """Check if a process with the given PID is running."""
    if sys.platform.startswith('win'):
        # Signal 0 is CTRL_C_EVENT on Windows
        result = subprocess.run(
            ['tasklist', '/FI', f'PID eq {pid}'],
            capture_output=True,
            text=True
        )
        return str(pid) in result.stdout
    try:
        os.kill(pid, 0)  # Signal 0 doesn't kill, just checks
        return True
    except OSError:
        return False


def is_daemon_running(pid_file: Path) -> Tuple[bool, Optional[int]]:
    """
    Check if the daemon is running by reading the PID file.

    Returns:
        Tuple of (is_running, pid). If not running, pid is None.
    """
    if not pid_file.exists():
        return False, None

    try:
        pid = int(pid_file.read_text().strip())
    except (ValueError, OSError):
        return False, None

    if _is_process_running(pid):
        return True, pid

    # Stale PID file, clean it up
    try:
        pid_file.unlink()
    except OSError:
        pass
    return False, None


def _cron_weekday(token: str) -> int:
    """Cron day number (0-7) for a number or a three-letter name."""
    if token.isdigit():
        return int(token)
    return _CRON_WEEKDAYS.index(token.lower()[:3])


def _weekday_names(day_of_week: str) -> str:
    """
    Rewrite a cron day-of-week field as an explicit list of weekday names.

    APScheduler numbers weekdays from Monday = 0 and rejects ranges that
    wrap past Sunday, so every range and step is expanded first:
    '1-5' -> 'mon,tue,wed,thu,fri', '0-6' -> 'sun,mon,...,sat', '*/2' -> 'sun,tue,thu,sat'.
    """
    names = []
    for item in day_of_week.split(','):
        base, _, step = item.partition('/')
        step = int(step) if step else 1
        if base == '*':
            if step == 1:
                return '*'
            first, last = 0, 6
        elif '-' in base:
            first, last = (_cron_weekday(bound) for bound in base.split('-', 1))
        else:
            first = _cron_weekday(base)
            last = 6 if step > 1 else first
        days = range(first, last + 1, step)
        if not days:
            raise ValueError(f"empty weekday range '{item}'")
        for day in days:
            name = _CRON_WEEKDAYS[day % 7]
            if name not in names:
                names.append(name)
    return ','.join(names)


def cron_trigger(expression: str) -> CronTrigger:
    """
    Build a CronTrigger from a five-field crontab expression.

    Day-of-week values use cron numbering (0 and 7 are Sunday) and are
    converted with _weekday_names before APScheduler sees them.
    """
    minute, hour, day, month, day_of_week = expression.split()
    try:
        return CronTrigger(
            minute=minute,
            hour=hour,
            day=day,
            month=month,
            day_of_week=_weekday_names(day_of_week)
        )
    except ValueError as e:
        raise ScheduleParseError(expression, f"not supported by the job-store backend: {e}") from e


def _cron_day_of_week(field: str) -> str:
    """Render an APScheduler day_of_week field in cron numbering, e.g. 'mon,tue,wed' -> '1-3'."""
    numbered = re.sub(
        r'[a-z]{3}',
        lambda m: str(_CRON_WEEKDAYS.index(m.group())) if m.group() in _CRON_WEEKDAYS else m.group(),
        field
    )
    if not re.fullmatch(r'\d(,\d)*', numbered):
        return numbered

    runs = []
    for day in sorted({int(d) for d in numbered.split(',')}):
        if runs and day == runs[-1][1] + 1:
            runs[-1][1] = day
        else:
            runs.append([day, day])

    parts = []
    for first, last in runs:
        if last - first >= 2:
            parts.append(f"{first}-{last}")
        else:
            parts.extend(str(d) for d in range(first, last + 1))
    return ','.join(parts)


def _trigger_expression(trigger) -> str:
    """Read a CronTrigger back as 'minute hour day month day_of_week' in cron numbering."""
    fields = {f.name: str(f) for f in getattr(trigger, 'fields', [])}
    if not fields:
        return str(trigger)
    fields['day_of_week'] = _cron_day_of_week(fields['day_of_week'])
    return ' '.join(fields[n] for n in ('minute', 'hour', 'day', 'month', 'day_of_week'))


class JobStoreBackend(SchedulerBackend):
    """Manages jobs as named tasks in an APScheduler SQLAlchemy job store."""

    name = 'jobstore'

    def __init__(
        self,
        marker_prefix: str,
        job_store_path: Path,
        history_file: Path,
        pid_file: Path
    ):
        self.marker_prefix = marker_prefix
        self.task_prefix = f"{slugify(marker_prefix)}-"
        self.job_store_path = Path(job_store_path)
        self.history_file = Path(history_file)
        self.pid_file = Path(pid_file)

    def _job_store(self) -> SQLAlchemyJobStore:
        self.job_store_path.parent.mkdir(parents=True, exist_ok=True)
        return SQLAlchemyJobStore(url=f'sqlite:///{self.job_store_path}')

    @contextmanager
    def _open(self):
        """A paused scheduler bound to the job store, shut down on exit."""
        scheduler = BackgroundScheduler(
            jobstores={'default': self._job_store()},
            job_defaults=JOB_DEFAULTS
        )
        try:
            scheduler.start(paused=True)
        except SQLAlchemyError as e:
            raise SchedulerUnavailable(
                f"Cannot open job store {self.job_store_path}: {e}"
            ) from e
        try:
            yield scheduler
        finally:
            scheduler.shutdown(wait=False)

    def _managed_jobs(self, scheduler) -> list:
        return [j for j in scheduler.get_jobs() if j.id.startswith(self.task_prefix)]

    def _entry(self, job) -> SchedulerEntry:
        name = job.id[len(self.task_prefix):]
        return SchedulerEntry(
            name=name,
            description=job.name,
            recurrence=_trigger_expression(job.trigger),
            command=job.kwargs.get('command', ''),
            next_run=job.next_run_time.isoformat() if job.next_run_time else None,
            last_run=HistoryStore(self.history_file).last_run(name),
        )

    def exists(self, name: str, description: str) -> bool:
        with self._open() as scheduler:
            return any(
                j.id == task_id(self.marker_prefix, name) or j.name == description
                for j in self._managed_jobs(scheduler)
            )

    def add(self, job: Job):
        trigger = cron_trigger(job.recurrence)
        tid = task_id(self.marker_prefix, job.name)

        with self._open() as scheduler:
            for existing in self._managed_jobs(scheduler):
                if existing.id == tid or existing.name == job.description:
                    raise DuplicateJob(job.name, job.description)

            scheduler.add_job(
                execute_scheduled_command,
                trigger,
                id=tid,
                name=job.description,
                replace_existing=False,
                kwargs={
                    'command': job.command,
                    'job_name': job.name,
                    'history_file': str(self.history_file),
                }
            )
        logger.info(f"Registered task '{tid}' ({job.recurrence})")

    def remove(self, name: str, description: Optional[str] = None) -> SchedulerEntry:
        tid = task_id(self.marker_prefix, name)
        with self._open() as scheduler:
            job = scheduler.get_job(tid)
            if job is None and description is not None:
                job = next(
                    (j for j in self._managed_jobs(scheduler) if j.name == description),
                    None
                )
            if job is None:
                raise JobNotFound(name)

            entry = self._entry(job)
            try:
                scheduler.remove_job(job.id)
            except JobLookupError as e:
                raise JobNotFound(name) from e

        logger.info(f"Removed task '{job.id}'")
        return entry

    def list(self) -> List[SchedulerEntry]:
        with self._open() as scheduler:
            return [self._entry(job) for job in self._managed_jobs(scheduler)]

    def service_status(self) -> ServiceStatus:
        running, pid = is_daemon_running(self.pid_file)
        if running:
            return ServiceStatus(True, f"Scheduler daemon is running (PID: {pid})")
        return ServiceStatus(False, "Scheduler daemon is not running", DAEMON_HINT)

    def validate_recurrence(self, recurrence: str):
        cron_trigger(recurrence)

    def recent_log(self, lines: int = 20) -> List[str]:
        """The most recent task runs from the run history."""
        return [
            f"{run.get('start_time', '')[:19]}  {run.get('job_name')}  "
            f"{run.get('status', 'unknown')} (exit code: {run.get('exit_code')})"
            for run in HistoryStore(self.history_file).recent_runs(lines)
        ]


class JobStoreDaemon:
    """
    Runs the tasks of a JobStoreBackend until stopped.

    Writes a PID file on start and removes it on exit.
    """

    def __init__(self, backend: JobStoreBackend, max_workers: int = 5):
        self.backend = backend
        self.scheduler = BackgroundScheduler(
            jobstores={'default': backend._job_store()},
            executors={'default': ThreadPoolExecutor(max_workers)},
            job_defaults=JOB_DEFAULTS
        )
        self._stopping = False
        self._setup_event_listeners()

    def _setup_event_listeners(self):
        """Setup APScheduler event listeners for logging."""

        def job_executed_listener(event):
            logger.info(f"Task '{event.job_id}' finished (exit code: {event.retval})")

        def job_error_listener(event):
            logger.error(f"Task '{event.job_id}' raised exception: {event.exception}")

        def job_missed_listener(event):
            logger.warning(f"Task '{event.job_id}' missed scheduled run time")

        self.scheduler.add_listener(job_executed_listener, EVENT_JOB_EXECUTED)
        self.scheduler.add_listener(job_error_listener, EVENT_JOB_ERROR)
        self.scheduler.add_listener(job_missed_listener, EVENT_JOB_MISSED)

    def _setup_signal_handlers(self):
        """Setup signal handlers for graceful shutdown."""

        def signal_handler(signum, frame):
            logger.info(f"Received signal {signum}, shutting down...")
            self._stopping = True

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    def _write_pid_file(self):
        pid_file = self.backend.pid_file
        pid_file.parent.mkdir(parents=True, exist_ok=True)
        pid_file.write_text(str(os.getpid()))
        logger.debug(f"Wrote PID file: {pid_file}")
        atexit.register(self._remove_pid_file)

    def _remove_pid_file(self):
        try:
            if self.backend.pid_file.exists():
                self.backend.pid_file.unlink()
                logger.debug(f"Removed PID file: {self.backend.pid_file}")
        except OSError:
            pass

    def run(self):
        """Start executing tasks and block until SIGINT/SIGTERM."""
        running, pid = is_daemon_running(self.backend.pid_file)
        if running:
            raise SchedulerUnavailable(f"Scheduler daemon is already running (PID: {pid})")

        self._setup_signal_handlers()
        try:
            self.scheduler.start()
        except SQLAlchemyError as e:
            raise SchedulerUnavailable(
                f"Cannot open job store {self.backend.job_store_path}: {e}"
            ) from e
        self._write_pid_file()

        jobs = self.scheduler.get_jobs()
        logger.info(f"Scheduler daemon started with {len(jobs)} task(s)")
        for job in jobs:
            logger.info(f"  - {job.id}: next run at {job.next_run_time}")

        ticks = 0
        try:
            while not self._stopping:
                time.sleep(1)
                ticks += 1
                if ticks % WAKEUP_INTERVAL_SECONDS == 0:
                    # Pick up tasks added or removed by other processes
                    self.scheduler.wakeup()
        finally:
            logger.info("Stopping scheduler daemon...")
            self.scheduler.shutdown(wait=True)
            self._remove_pid_file()
            logger.info("Scheduler daemon stopped")

