"""
Native scheduler backends.

Every backend performs add/list/remove against a real scheduler so the
lifecycle layer never branches on platform:

- CrontabBackend: the user's crontab, where a marker comment line is the
  key and the following cron line is the value.
- JobStoreBackend: named tasks in a persistent APScheduler job store,
  executed by the `agent-scheduler daemon` process.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict
from typing import Optional, Dict, Any, List

from agent_scheduler.config import SchedulerConfig
from agent_scheduler.jobs import Job


@dataclass
class SchedulerEntry:
    """A job as the native scheduler sees it."""
    name: str
    description: str
    recurrence: str
    command: str
    next_run: Optional[str] = None
    last_run: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ServiceStatus:
    """Whether the native scheduler service itself is running."""
    running: bool
    detail: str
    remediation: Optional[str] = None


class SchedulerBackend(ABC):
    """Interface shared by all native scheduler backends."""

    name = 'base'

    @abstractmethod
    def add(self, job: Job):
        """
        Register a job.

        Raises:
            DuplicateJob: If an entry with the job's name or description exists
            MalformedScheduleFile: If existing schedule content cannot be parsed
            SchedulerUnavailable: If the scheduler cannot be reached
        """

    @abstractmethod
    def remove(self, name: str, description: Optional[str] = None) -> SchedulerEntry:
        """
        Remove the entry for a job name (or exact description, when known).

        Raises:
            JobNotFound: If nothing matches; the schedule is left untouched
        """

    @abstractmethod
    def list(self) -> List[SchedulerEntry]:
        """All entries managed by this tool."""

    @abstractmethod
    def exists(self, name: str, description: str) -> bool:
        """True if an entry with this name or description is registered."""

    @abstractmethod
    def service_status(self) -> ServiceStatus:
        """Report whether the scheduler service will actually fire jobs."""

    def validate_recurrence(self, recurrence: str):
        """
        Check that this scheduler can run a parsed recurrence.

        Called before anything is written.

        Raises:
            ScheduleParseError: If the recurrence cannot be expressed
        """

    def recent_log(self, lines: int = 20) -> List[str]:
        """Last lines of the scheduler's own log, best effort ([] if unavailable)."""
        return []


def get_backend(config: SchedulerConfig) -> SchedulerBackend:
    """Create the backend selected by configuration."""
    if config.backend == 'crontab':
        from agent_scheduler.backends.crontab import CrontabBackend
        return CrontabBackend(
            marker_prefix=config.marker_prefix,
            backup_file=config.backup_file,
            crontab_path=config.crontab_path,
        )
    if config.backend == 'jobstore':
        from agent_scheduler.backends.jobstore import JobStoreBackend
        return JobStoreBackend(
            marker_prefix=config.marker_prefix,
            job_store_path=config.job_store_path,
            history_file=config.history_file,
            pid_file=config.pid_file,
        )
    raise ValueError(f"Unknown backend: {config.backend}")
