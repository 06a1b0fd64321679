from datetime import datetime, timedelta, timezone

import pytest

from karma.errors import InvalidDateTime, InvalidZone
from karma.timekeeping.time_resolver import (
    add_offset,
    display,
    is_valid_zone,
    is_within_window,
    load_zone,
    offered_dates,
    offered_times,
    parse_iso,
    project,
    resolve_local,
    to_iso,
)


def test_resolve_local_after_us_dst_switch():
    instant = resolve_local("2025-03-10", "09:00", "America/New_York")
    assert instant == datetime(2025, 3, 10, 13, 0, tzinfo=timezone.utc)


def test_display_in_counterpart_zone():
    instant = resolve_local("2025-03-10", "09:00", "America/New_York")
    assert display(instant, "Asia/Tokyo") == "2025-03-10 22:00"


@pytest.mark.parametrize("zone_a,zone_b", [
    ("America/New_York", "Asia/Tokyo"),
    ("Europe/London", "Australia/Sydney"),
    ("Asia/Kolkata", "America/Los_Angeles"),
])
def test_round_trip_between_zones(zone_a, zone_b):
    original = resolve_local("2025-03-10", "09:00", zone_a)
    date_b, time_b = project(original, zone_b)
    via_b = resolve_local(date_b, time_b, zone_b)
    date_a, time_a = project(via_b, zone_a)
    assert resolve_local(date_a, time_a, zone_a) == original


def test_spring_forward_gap_is_rejected():
    with pytest.raises(InvalidDateTime):
        resolve_local("2025-03-09", "02:30", "America/New_York")


def test_fall_back_resolves_to_first_occurrence():
    instant = resolve_local("2025-11-02", "01:30", "America/New_York")
    # first 01:30 is still EDT (UTC-4)
    assert instant == datetime(2025, 11, 2, 5, 30, tzinfo=timezone.utc)


def test_unknown_zone():
    with pytest.raises(InvalidZone):
        load_zone("Mars/Olympus_Mons")
    assert not is_valid_zone(None)
    assert is_valid_zone("Asia/Tokyo")


@pytest.mark.parametrize("date_label,time_label", [
    ("2025-02-30", "09:00"),
    ("tomorrow", "09:00"),
    ("2025-03-10", "25:00"),
])
def test_malformed_labels(date_label, time_label):
    with pytest.raises(InvalidDateTime):
        resolve_local(date_label, time_label, "UTC")


def test_iso_round_trip_and_garbage():
    instant = datetime(2025, 3, 10, 13, 0, tzinfo=timezone.utc)
    assert to_iso(instant) == "2025-03-10T13:00:00Z"
    assert parse_iso("2025-03-10T13:00:00Z") == instant
    assert parse_iso("not a date") is None
    assert to_iso(None) is None


def test_window_is_half_open():
    target = datetime(2025, 3, 9, 13, 0, tzinfo=timezone.utc)
    assert is_within_window(target, target, 5)
    assert is_within_window(target + timedelta(minutes=4, seconds=59), target, 5)
    assert not is_within_window(target + timedelta(minutes=5), target, 5)
    assert not is_within_window(target - timedelta(seconds=1), target, 5)


def test_offered_dates_start_at_local_today():
    # 16:00Z is already the next day in Tokyo
    now = datetime(2025, 3, 1, 16, 0, tzinfo=timezone.utc)
    assert offered_dates(now, "Asia/Tokyo", 3) == ["2025-03-02", "2025-03-03", "2025-03-04"]
    assert offered_dates(now, "America/New_York", 1) == ["2025-03-01"]


def test_offered_times_every_half_hour():
    times = offered_times(9, 19)
    assert times[0] == "09:00"
    assert times[-1] == "19:30"
    assert len(times) == 22


def test_add_offset_units():
    start = datetime(2025, 3, 10, 13, 0, tzinfo=timezone.utc)
    assert add_offset(start, 60, "minutes") == datetime(2025, 3, 10, 14, 0, tzinfo=timezone.utc)
    assert add_offset(start, 3, "days") == datetime(2025, 3, 13, 13, 0, tzinfo=timezone.utc)
    assert add_offset(start, -24, "hours") == datetime(2025, 3, 9, 13, 0, tzinfo=timezone.utc)
    with pytest.raises(ValueError):
        add_offset(start, 1, "fortnights")
