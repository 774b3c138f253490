"""
Human-readable schedule parsing.

Turns strings such as "daily at 9am", "every monday at 10:30am" or
"every 15 minutes" into a five-field cron expression. Patterns are tried
in a fixed order and the first match wins:

    1. daily at <H>[:MM][am|pm]
    2. every <weekday> at <H>[:MM][am|pm]
    3. every <N> minutes
    4. hourly
    5. daily
    6. weekly
    7. raw five-field cron expression (passed through verbatim)

Anything else raises ScheduleParseError before any job state is touched.
"""

import re
from dataclasses import dataclass
from typing import Callable, List, Optional

from agent_scheduler.errors import ScheduleParseError

WILDCARD = "*"

WEEKDAYS = {
    'sunday': 0, 'monday': 1, 'tuesday': 2, 'wednesday': 3,
    'thursday': 4, 'friday': 5, 'saturday': 6,
}

# First day of the week for "weekly", in cron numbering
FIRST_WEEKDAY = WEEKDAYS['sunday']

_TIME = r'(?P<hour>\d{1,2})(?::(?P<minute>\d{2}))?\s*(?P<meridiem>am|pm)?'
_DAILY_AT = re.compile(rf'^daily at {_TIME}$')
_WEEKDAY_AT = re.compile(
    rf'^every (?P<weekday>{"|".join(WEEKDAYS)}) at {_TIME}$'
)
_EVERY_N_MINUTES = re.compile(r'^every (?P<n>\d+) minutes?$')
_CRON_FIELD = re.compile(r'^[0-9A-Za-z*/,\-]+$')


@dataclass(frozen=True)
class RecurrenceSpec:
    """A resolved five-field cron recurrence."""
    minute: str
    hour: str
    day_of_month: str
    month: str
    day_of_week: str
    raw: bool = False  # True when the operator supplied cron syntax directly

    def __post_init__(self):
        for field_name in ('minute', 'hour', 'day_of_month', 'month', 'day_of_week'):
            value = getattr(self, field_name)
            if not value or not _CRON_FIELD.match(value):
                raise ValueError(f"Invalid cron field {field_name}={value!r}")

    @property
    def fields(self) -> List[str]:
        return [self.minute, self.hour, self.day_of_month, self.month, self.day_of_week]

    @property
    def expression(self) -> str:
        """The cron expression, e.g. '0 9 * * *'."""
        return ' '.join(self.fields)

    @classmethod
    def from_expression(cls, expression: str, raw: bool = False) -> 'RecurrenceSpec':
        parts = expression.split()
        if len(parts) != 5:
            raise ValueError(f"Expected 5 cron fields, got {len(parts)}: {expression!r}")
        return cls(*parts, raw=raw)

    def __str__(self):
        return self.expression


def convert_hour(hour: int, meridiem: Optional[str]) -> int:
    """
    Convert a wall-clock hour to 24-hour form.

    'pm' adds 12 unless the hour is already 12, 'am' maps 12 to 0, and
    any other hour passes through unchanged.
    """
    if meridiem == 'pm' and hour != 12:
        return hour + 12
    if meridiem == 'am' and hour == 12:
        return 0
    return hour


def _resolve_time(schedule: str, match: re.Match) -> tuple:
    """Return (minute, hour) for a matched time-of-day, validating ranges."""
    hour = int(match.group('hour'))
    minute = int(match.group('minute') or 0)
    meridiem = match.group('meridiem')

    if meridiem and not 1 <= hour <= 12:
        raise ScheduleParseError(schedule, f"hour {hour} is not valid with '{meridiem}'")
    if not meridiem and hour > 23:
        raise ScheduleParseError(schedule, f"hour {hour} is out of range")
    if minute > 59:
        raise ScheduleParseError(schedule, f"minute {minute} is out of range")

    return str(minute), str(convert_hour(hour, meridiem))


def _daily_at(schedule: str, text: str) -> Optional[RecurrenceSpec]:
    match = _DAILY_AT.match(text)
    if not match:
        return None
    minute, hour = _resolve_time(schedule, match)
    return RecurrenceSpec(minute, hour, WILDCARD, WILDCARD, WILDCARD)


def _weekday_at(schedule: str, text: str) -> Optional[RecurrenceSpec]:
    match = _WEEKDAY_AT.match(text)
    if not match:
        return None
    minute, hour = _resolve_time(schedule, match)
    weekday = str(WEEKDAYS[match.group('weekday')])
    return RecurrenceSpec(minute, hour, WILDCARD, WILDCARD, weekday)


def _every_n_minutes(schedule: str, text: str) -> Optional[RecurrenceSpec]:
    match = _EVERY_N_MINUTES.match(text)
    if not match:
        return None
    n = int(match.group('n'))
    if n < 1:
        raise ScheduleParseError(schedule, "minute interval must be a positive integer")
    if n > 59:
        raise ScheduleParseError(schedule, "minute interval must be less than 60 (use 'hourly')")
    return RecurrenceSpec(f"*/{n}", WILDCARD, WILDCARD, WILDCARD, WILDCARD)


def _hourly(schedule: str, text: str) -> Optional[RecurrenceSpec]:
    if text != 'hourly':
        return None
    return RecurrenceSpec('0', WILDCARD, WILDCARD, WILDCARD, WILDCARD)


def _daily(schedule: str, text: str) -> Optional[RecurrenceSpec]:
    if text != 'daily':
        return None
    return RecurrenceSpec('0', '0', WILDCARD, WILDCARD, WILDCARD)


def _weekly(schedule: str, text: str) -> Optional[RecurrenceSpec]:
    if text != 'weekly':
        return None
    return RecurrenceSpec('0', '0', WILDCARD, WILDCARD, str(FIRST_WEEKDAY))


# (label, lo, hi, names) per cron field, in expression order
_FIELD_RANGES = [
    ('minute', 0, 59, ()),
    ('hour', 0, 23, ()),
    ('day-of-month', 1, 31, ()),
    ('month', 1, 12, ('jan', 'feb', 'mar', 'apr', 'may', 'jun',
                      'jul', 'aug', 'sep', 'oct', 'nov', 'dec')),
    ('day-of-week', 0, 7, ('sun', 'mon', 'tue', 'wed', 'thu', 'fri', 'sat')),
]


def _check_cron_field(label: str, value: str, lo: int, hi: int, names: tuple) -> Optional[str]:
    """Return a problem description for one cron field, or None if it looks valid."""
    for item in value.split(','):
        base, _, step = item.partition('/')
        if step and (not step.isdigit() or int(step) < 1):
            return f"{label} step '{step}' must be a positive integer"
        if base == WILDCARD:
            continue
        for bound in base.split('-'):
            if bound.isdigit():
                if not lo <= int(bound) <= hi:
                    return f"{label} value {bound} is outside {lo}-{hi}"
            elif bound.lower() not in names:
                return f"{label} value '{bound}' is not recognized"
    return None


def _raw_cron(schedule: str, text: str) -> Optional[RecurrenceSpec]:
    # Only strings with embedded whitespace are candidates for raw cron
    stripped = schedule.strip()
    if not re.search(r'\s', stripped):
        return None
    try:
        spec = RecurrenceSpec.from_expression(stripped, raw=True)
    except ValueError as e:
        raise ScheduleParseError(
            schedule,
            f"{e}. Use formats like 'daily at 9am', 'every monday at 10am', "
            "or raw cron '0 9 * * 1-5'"
        ) from e

    for value, (label, lo, hi, names) in zip(spec.fields, _FIELD_RANGES):
        problem = _check_cron_field(label, value, lo, hi, names)
        if problem:
            raise ScheduleParseError(schedule, problem)
    return spec


_MATCHERS: List[Callable[[str, str], Optional[RecurrenceSpec]]] = [
    _daily_at,
    _weekday_at,
    _every_n_minutes,
    _hourly,
    _daily,
    _weekly,
    _raw_cron,
]


def parse_schedule(schedule: str) -> RecurrenceSpec:
    """
    Parse a human-readable schedule into a RecurrenceSpec.

    Args:
        schedule: e.g. "daily at 9am", "every friday at 5pm", "0 9 * * 1-5"

    Returns:
        The resolved RecurrenceSpec

    Raises:
        ScheduleParseError: If no pattern matches
    """
    if not schedule or not schedule.strip():
        raise ScheduleParseError(schedule or '', "schedule is empty")

    text = ' '.join(schedule.lower().split())
    for matcher in _MATCHERS:
        spec = matcher(schedule, text)
        if spec is not None:
            return spec

    raise ScheduleParseError(
        schedule,
        "use formats like 'daily at 9am', 'every monday at 10am', "
        "'every 15 minutes', 'hourly', 'daily', 'weekly' or raw cron '0 9 * * 1-5'"
    )
