"""
Job identity helpers.

A job's name is derived from its description so that "remove <name>" and
"remove <description>" resolve to the same job without a lookup table.
"""

import re
from typing import Optional

_NON_SLUG = re.compile(r'[^a-z0-9]')
_HYPHEN_RUN = re.compile(r'-+')


def slugify(description: str) -> str:
    """
    Lowercase a description and reduce it to [a-z0-9-].

    Examples:
        "Daily Standup"          -> "daily-standup"
        "  Weekly -- Report! "   -> "weekly-report"

    slugify(slugify(x)) == slugify(x) for every x.
    """
    slug = _NON_SLUG.sub('-', description.lower())
    slug = _HYPHEN_RUN.sub('-', slug)
    return slug.strip('-')


def marker_comment(marker_prefix: str, description: str) -> str:
    """Crontab comment line that identifies a job, e.g. '# AIPM Agent: Daily Standup'."""
    return f"# {marker_prefix}: {description}"


def parse_marker(marker_prefix: str, line: str) -> Optional[str]:
    """Return the description embedded in a marker comment line, or None."""
    prefix = f"# {marker_prefix}: "
    line = line.rstrip('\r\n')
    if line.startswith(prefix):
        return line[len(prefix):]
    return None


def task_id(marker_prefix: str, name: str) -> str:
    """Job-store task id for a job name, e.g. 'aipm-agent-daily-standup'."""
    return f"{slugify(marker_prefix)}-{name}"


def is_single_line(text: str) -> bool:
    """True if text has no line break of any kind (\\n, \\r, \\x85, \\u2028, ...)."""
    return not text or text.splitlines() == [text]
