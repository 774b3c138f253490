#!/usr/bin/env python3
"""
Tests for human-readable schedule parsing.
"""

import pytest

from agent_scheduler.errors import ScheduleParseError
from agent_scheduler.schedule import RecurrenceSpec, convert_hour, parse_schedule


@pytest.mark.parametrize("schedule, expected", [
    ("daily at 9am", "0 9 * * *"),
    ("daily at 2:30pm", "30 14 * * *"),
    ("daily at 12am", "0 0 * * *"),
    ("daily at 12pm", "0 12 * * *"),
    ("daily at 11:05pm", "5 23 * * *"),
    ("daily at 14:15", "15 14 * * *"),
    ("every monday at 10am", "0 10 * * 1"),
    ("every friday at 5pm", "0 17 * * 5"),
    ("every sunday at 8:45am", "45 8 * * 0"),
    ("every saturday at 12am", "0 0 * * 6"),
    ("every 15 minutes", "*/15 * * * *"),
    ("every 30 minutes", "*/30 * * * *"),
    ("every 1 minute", "*/1 * * * *"),
    ("hourly", "0 * * * *"),
    ("daily", "0 0 * * *"),
    ("weekly", "0 0 * * 0"),
])
def test_recognized_schedules(schedule, expected):
    spec = parse_schedule(schedule)
    assert spec.expression == expected
    assert not spec.raw


def test_parse_is_case_and_whitespace_insensitive():
    assert parse_schedule("  Daily   at 9AM ").expression == "0 9 * * *"
    assert parse_schedule("Every FRIDAY at 5PM").expression == "0 17 * * 5"
    assert parse_schedule("HOURLY").expression == "0 * * * *"


@pytest.mark.parametrize("schedule", [
    "daily at 9am",
    "every tuesday at 3:15pm",
    "every 5 minutes",
    "hourly",
    "daily",
    "weekly",
    "0 9 * * 0-6",
])
def test_parse_is_deterministic(schedule):
    first, second = parse_schedule(schedule), parse_schedule(schedule)
    assert first == second
    assert first.expression == second.expression


def test_every_n_minutes_fields():
    spec = parse_schedule("every 15 minutes")
    assert spec.minute == "*/15"
    assert spec.hour == "*"
    assert spec.day_of_month == "*"
    assert spec.month == "*"
    assert spec.day_of_week == "*"


def test_raw_cron_passthrough():
    spec = parse_schedule("0 9 * * 1-5")
    assert spec.raw
    assert spec.expression == "0 9 * * 1-5"

    spec = parse_schedule("*/10 8-18 1,15 jan-jun mon-fri")
    assert spec.raw
    assert spec.expression == "*/10 8-18 1,15 jan-jun mon-fri"


@pytest.mark.parametrize("schedule", [
    "sometime next week",
    "tomorrow",
    "",
    "   ",
    "every 0 minutes",
    "every 90 minutes",
    "daily at 13pm",
    "daily at 0am",
    "daily at 25:00",
    "daily at 9:75am",
    "every funday at 9am",
    "0 9 * *",
    "0 9 * * * *",
    "99 * * * *",
    "0 24 * * *",
    "0 9 * * 8",
    "*/0 * * * *",
    "0 9 ? * *",
])
def test_unrecognized_schedules_fail(schedule):
    with pytest.raises(ScheduleParseError):
        parse_schedule(schedule)


def test_parse_error_message_is_readable():
    with pytest.raises(ScheduleParseError) as exc_info:
        parse_schedule("sometime next week")
    assert "sometime next week" in str(exc_info.value)


@pytest.mark.parametrize("hour, meridiem, expected", [
    (9, 'am', 9),
    (12, 'am', 0),
    (1, 'pm', 13),
    (12, 'pm', 12),
    (11, 'pm', 23),
    (17, None, 17),
    (0, None, 0),
])
def test_convert_hour(hour, meridiem, expected):
    assert convert_hour(hour, meridiem) == expected


def test_recurrence_spec_requires_all_fields():
    with pytest.raises(ValueError):
        RecurrenceSpec("0", "9", "*", "*", "")
    with pytest.raises(ValueError):
        RecurrenceSpec.from_expression("0 9 * *")
    assert str(RecurrenceSpec.from_expression("0 9 * * *")) == "0 9 * * *"
