"""
Scheduled agent lifecycle: add, list, remove, status.

SchedulerService composes the schedule parser, job identity, metadata
store, command builder and a native scheduler backend. Every operation
runs to completion or raises an AgentSchedulerError; nothing is retried.
"""

import logging
from dataclasses import dataclass, asdict, field
from pathlib import Path
from typing import Optional, Dict, Any, List

from agent_scheduler.backends import SchedulerBackend, SchedulerEntry, ServiceStatus, get_backend
from agent_scheduler.commands import build_command, resolve_log_path
from agent_scheduler.config import SchedulerConfig, PROVIDERS, normalize_provider
from agent_scheduler.errors import (
    DuplicateJob,
    InvalidJob,
    JobNotFound,
    PartialRegistrationFailure,
)
from agent_scheduler.identity import is_single_line, slugify
from agent_scheduler.jobs import Job, JobMetadataStore
from agent_scheduler.schedule import parse_schedule

logger = logging.getLogger(__name__)

STATE_OK = 'ok'
STATE_MISSING_METADATA = 'missing-metadata'  # fires, but no record of how it was created
STATE_MISSING_SCHEDULE = 'missing-schedule'  # record exists, but nothing will fire


@dataclass
class JobListing:
    """One row of `list`: scheduler entry and metadata record merged by name."""
    name: str
    description: str
    state: str
    recurrence: Optional[str] = None
    command: Optional[str] = None
    schedule: Optional[str] = None
    agent_type: Optional[str] = None
    target_id: Optional[str] = None
    provider: Optional[str] = None
    log_path: Optional[str] = None
    created_at: Optional[str] = None
    next_run: Optional[str] = None
    last_run: Optional[Dict[str, Any]] = None

    @property
    def consistent(self) -> bool:
        return self.state == STATE_OK

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class StatusReport:
    backend: str
    service: ServiceStatus
    jobs: List[JobListing]
    recent_log: List[str] = field(default_factory=list)


class SchedulerService:
    """
    Manages scheduled agents.

    Metadata is written before the scheduler entry and removed after it, so
    a failure in between leaves at most an inert record, never an untracked
    job that fires.
    """

    def __init__(
        self,
        config: SchedulerConfig,
        backend: Optional[SchedulerBackend] = None,
        store: Optional[JobMetadataStore] = None
    ):
        self.config = config
        self.backend = backend or get_backend(config)
        self.store = store or JobMetadataStore(config.data_dir / "jobs")

    def add(
        self,
        agent_type: str,
        target_id: str,
        schedule: str,
        description: str,
        provider: Optional[str] = None,
        input_text: Optional[str] = None,
        background: bool = False,
        log_dir: Optional[str] = None
    ) -> Job:
        """
        Schedule an agent.

        Raises:
            ScheduleParseError: If the schedule is not recognized
            InvalidJob: If the agent type, id, input, provider or description is unusable
            DuplicateJob: If a job with this description (or name) exists
            PartialRegistrationFailure: If registration failed and the
                metadata record could not be rolled back
        """
        recurrence = parse_schedule(schedule)
        self.backend.validate_recurrence(recurrence.expression)

        description = description.strip()
        if not is_single_line(description):
            raise InvalidJob("Description must be a single line")
        name = slugify(description)
        if not name:
            raise InvalidJob(f"Description '{description}' must contain letters or digits")

        if agent_type not in self.config.runners:
            raise InvalidJob(
                f"Unknown agent type: {agent_type}. "
                f"Use one of: {', '.join(sorted(self.config.runners))}"
            )
        if not target_id or not target_id.strip():
            raise InvalidJob("Agent id cannot be empty")
        if not is_single_line(target_id):
            raise InvalidJob("Agent id must be a single line")
        if input_text and not is_single_line(input_text):
            raise InvalidJob("Input text must be a single line")

        resolved_provider = normalize_provider(provider or self.config.default_provider)
        if resolved_provider is None:
            raise InvalidJob(f"Unknown provider: {provider}. Use one of: {', '.join(PROVIDERS)}")

        # The two stores can drift; either one knowing the job counts as a duplicate
        if self.store.get(name) is not None:
            logger.debug(f"Metadata record already exists for '{name}'")
            raise DuplicateJob(name, description)
        if self.backend.exists(name, description):
            logger.debug(f"Scheduler entry already exists for '{name}'")
            raise DuplicateJob(name, description)

        log_dir_path = Path(log_dir).expanduser() if log_dir else self.config.log_dir

        job = Job(
            name=name,
            description=description,
            agent_type=agent_type,
            target_id=target_id.strip(),
            schedule=schedule,
            recurrence=recurrence.expression,
            provider=resolved_provider,
            log_path=str(resolve_log_path(log_dir_path, name)),
            background=background,
            input_text=input_text,
            backend=self.backend.name,
        )
        job.command = build_command(job, self.config.project_root, self.config.runners)
        # Also covers the project root and log path
        if not is_single_line(job.command):
            raise InvalidJob(f"Command for '{name}' must be a single line: {job.command!r}")

        log_dir_path.mkdir(parents=True, exist_ok=True)
        self.store.put(job)
        try:
            self.backend.add(job)
        except Exception as e:
            logger.warning(f"Registration of '{name}' failed, rolling back metadata: {e}")
            try:
                self.store.delete(name)
            except OSError as rollback_error:
                raise PartialRegistrationFailure(
                    name,
                    f"scheduler registration failed ({e}) and metadata record "
                    f"could not be removed ({rollback_error})"
                ) from e
            raise

        logger.info(f"Scheduled agent: {description} ({recurrence.expression})")
        return job

    def list_jobs(self) -> List[JobListing]:
        """
        Merge scheduler entries with metadata records by name.

        Entries present in only one of the two are returned with a
        state other than 'ok'.
        """
        entries = {entry.name: entry for entry in self.backend.list()}
        records = {job.name: job for job in self.store.list()}

        listings = []
        for name in sorted(set(entries) | set(records)):
            entry = entries.get(name)
            record = records.get(name)

            if entry and record:
                state = STATE_OK
            elif entry:
                state = STATE_MISSING_METADATA
                logger.warning(f"Job '{name}' is scheduled but has no metadata record")
            else:
                state = STATE_MISSING_SCHEDULE
                logger.warning(f"Job '{name}' has a metadata record but no scheduler entry")

            listings.append(self._listing(name, state, entry, record))
        return listings

    @staticmethod
    def _listing(
        name: str,
        state: str,
        entry: Optional[SchedulerEntry],
        record: Optional[Job]
    ) -> JobListing:
        listing = JobListing(
            name=name,
            description=entry.description if entry else record.description,
            state=state,
        )
        if entry:
            # The scheduler is authoritative for when and what runs
            listing.recurrence = entry.recurrence
            listing.command = entry.command
            listing.next_run = entry.next_run
            listing.last_run = entry.last_run
        if record:
            listing.schedule = record.schedule
            listing.agent_type = record.agent_type
            listing.target_id = record.target_id
            listing.provider = record.provider
            listing.log_path = record.log_path
            listing.created_at = record.created_at
            if not entry:
                listing.recurrence = record.recurrence
                listing.command = record.command
        return listing

    def remove(self, name_or_description: str) -> SchedulerEntry:
        """
        Remove a job by name or description.

        Raises:
            JobNotFound: If the scheduler has no matching entry; nothing is changed
            PartialRegistrationFailure: If the entry was removed but its
                metadata record could not be
        """
        name = slugify(name_or_description)
        if not name:
            raise JobNotFound(name_or_description)

        record = self.store.get(name)
        if record is not None:
            description = record.description
        elif name_or_description.strip() != name:
            description = name_or_description.strip()
        else:
            description = None

        entry = self.backend.remove(name, description)

        try:
            self.store.delete(name)
        except OSError as e:
            raise PartialRegistrationFailure(
                name, f"scheduler entry removed but metadata record could not be deleted ({e})"
            ) from e

        logger.info(f"Removed scheduled agent: {entry.description}")
        return entry

    def status(self) -> StatusReport:
        """Scheduler service state, the merged job list and recent scheduler log lines."""
        return StatusReport(
            backend=self.backend.name,
            service=self.backend.service_status(),
            jobs=self.list_jobs(),
            recent_log=self.backend.recent_log(),
        )
