"""
Exceptions raised by the agent scheduler.

All of them derive from AgentSchedulerError so the CLI can treat the
whole family as its single recovery boundary.
"""

from typing import Optional


class AgentSchedulerError(Exception):
    """Base class for all scheduler errors."""
    pass


class ScheduleParseError(AgentSchedulerError):
    """Raised when a schedule string cannot be turned into a cron expression."""

    def __init__(self, schedule: str, reason: str):
        self.schedule = schedule
        self.reason = reason
        super().__init__(f"Unknown schedule format '{schedule}': {reason}")


class InvalidJob(AgentSchedulerError):
    """Raised when a job references an unknown agent type or provider."""
    pass


class DuplicateJob(AgentSchedulerError):
    """Raised by add when a job with the same description or name exists."""

    def __init__(self, name: str, description: str):
        self.name = name
        self.description = description
        super().__init__(
            f"Agent '{description}' is already scheduled. "
            f"Remove it first with: agent-scheduler remove {name}"
        )


class JobNotFound(AgentSchedulerError):
    """Raised by remove when no scheduler entry matches."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(
            f"Job '{name}' not found. List current jobs with: agent-scheduler list"
        )


class SchedulerUnavailable(AgentSchedulerError):
    """Raised when the native scheduler is not installed or cannot be reached."""

    def __init__(self, message: str, remediation: Optional[str] = None):
        self.remediation = remediation
        if remediation:
            message = f"{message}\n  {remediation}"
        super().__init__(message)


class MalformedScheduleFile(AgentSchedulerError):
    """Raised when existing schedule content cannot be parsed safely."""

    def __init__(self, line_number: int, reason: str):
        self.line_number = line_number
        super().__init__(
            f"Refusing to modify schedule: line {line_number}: {reason}"
        )


class PartialRegistrationFailure(AgentSchedulerError):
    """
    Raised when only one half of a job (metadata record or scheduler entry)
    could be written or removed and the other half could not be rolled back.
    """

    def __init__(self, name: str, detail: str):
        self.name = name
        super().__init__(
            f"Job '{name}' is in an inconsistent state and needs manual cleanup: {detail}"
        )


class CorruptMetadata(AgentSchedulerError):
    """Raised when a job metadata record exists but cannot be read."""

    def __init__(self, path, reason: str):
        self.path = path
        super().__init__(
            f"Cannot read job metadata {path}: {reason}. "
            f"Fix or delete the file and try again"
        )
