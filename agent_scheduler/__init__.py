"""
AIPM Agent Scheduler

Schedules n8n workflows and LangFlow flows on the host's native scheduler
from human-readable recurrences ("daily at 9am", "every monday at 10am").

Features:
- Human-readable schedule parsing with raw cron passthrough
- Idempotent add: one job per description
- Crontab backend (marker comment + job line) and APScheduler job-store backend
- Per-job metadata records for list/status
"""

from agent_scheduler.config import SchedulerConfig
from agent_scheduler.errors import (
    AgentSchedulerError,
    CorruptMetadata,
    DuplicateJob,
    InvalidJob,
    JobNotFound,
    MalformedScheduleFile,
    PartialRegistrationFailure,
    ScheduleParseError,
    SchedulerUnavailable,
)
from agent_scheduler.identity import slugify
from agent_scheduler.jobs import Job, JobMetadataStore
from agent_scheduler.schedule import RecurrenceSpec, parse_schedule
from agent_scheduler.service import SchedulerService

__version__ = "0.1.0"
__all__ = [
    "SchedulerConfig",
    "SchedulerService",
    "Job",
    "JobMetadataStore",
    "RecurrenceSpec",
    "parse_schedule",
    "slugify",
    "AgentSchedulerError",
    "CorruptMetadata",
    "DuplicateJob",
    "InvalidJob",
    "JobNotFound",
    "MalformedScheduleFile",
    "PartialRegistrationFailure",
    "ScheduleParseError",
    "SchedulerUnavailable",
]
