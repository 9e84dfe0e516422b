"""Tests for timezone conversion helpers."""

from datetime import datetime

import pytest
import pytz

from coachsync.timezones import (
    format_display_date, format_display_time, from_wall_clock, normalize_timezone, to_wall_clock
)


@pytest.mark.parametrize('instant, wall_clock', [
    # Standard time, UTC-5
    (datetime(2024, 1, 15, 15, 0, tzinfo=pytz.UTC), '2024-01-15T10:00:00'),
    # Daylight saving time, UTC-4
    (datetime(2024, 7, 15, 15, 0, tzinfo=pytz.UTC), '2024-07-15T11:00:00'),
])
def test_new_york_round_trip(instant, wall_clock):
    assert to_wall_clock(instant, 'America/New_York') == wall_clock
    assert from_wall_clock(wall_clock, 'America/New_York') == instant


def test_offset_values_ignore_zone():
    parsed = from_wall_clock('2024-07-15T11:00:00-04:00', 'Asia/Tokyo')
    assert parsed == datetime(2024, 7, 15, 15, 0, tzinfo=pytz.UTC)


def test_naive_instant_treated_as_utc():
    assert to_wall_clock(datetime(2024, 1, 15, 15, 0), 'America/Chicago') == '2024-01-15T09:00:00'


@pytest.mark.parametrize('name, expected', [
    ('America/New_York', 'America/New_York'),
    ('EST', 'America/New_York'),
    ('pdt', 'America/Los_Angeles'),
    ('Eastern Standard Time', 'America/New_York'),
    ('W. Europe Standard Time', 'Europe/Berlin'),
    ('Mars/Olympus_Mons', 'UTC'),
    ('', 'UTC'),
    (None, 'UTC'),
])
def test_normalize_timezone(name, expected):
    assert normalize_timezone(name) == expected


def test_display_formats():
    instant = datetime(2024, 1, 1, 20, 0, tzinfo=pytz.UTC)
    assert format_display_date(instant, 'America/New_York') == 'Monday, January 1, 2024'
    assert format_display_time(instant, 'America/New_York') == '3:00 PM EST'


def test_display_time_in_summer():
    instant = datetime(2024, 7, 4, 13, 5, tzinfo=pytz.UTC)
    assert format_display_time(instant, 'America/New_York') == '9:05 AM EDT'
