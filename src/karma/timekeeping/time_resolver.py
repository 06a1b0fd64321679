"""
Zone conversions for commitments.

Every instant that two parties both see is stored in UTC. Local date/time
labels only exist at the edges: when a party picks a slot, and when an
instant is shown back to a party in their own zone.
"""
from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import List, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ..errors import InvalidDateTime, InvalidZone

DATE_FORMAT = "%Y-%m-%d"
TIME_FORMAT = "%H:%M"

_UNITS = {
    "minutes": "minutes",
    "minute": "minutes",
    "hours": "hours",
    "hour": "hours",
    "days": "days",
    "day": "days",
}


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


def load_zone(zone: str | None) -> ZoneInfo:
    if not zone:
        raise InvalidZone(zone=zone)
    try:
        return ZoneInfo(zone)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise InvalidZone(f"Unknown time zone: {zone}", zone=zone) from e


def is_valid_zone(zone: str | None) -> bool:
    try:
        load_zone(zone)
    except InvalidZone:
        return False
    return True


def parse_date_label(date_label: str) -> date:
    try:
        return datetime.strptime((date_label or "").strip(), DATE_FORMAT).date()
    except ValueError as e:
        raise InvalidDateTime(f"Invalid date: {date_label}", date=date_label) from e


def _parse_time_label(time_label: str) -> Tuple[int, int]:
    try:
        t = datetime.strptime((time_label or "").strip(), TIME_FORMAT)
    except ValueError as e:
        raise InvalidDateTime(f"Invalid time: {time_label}", time=time_label) from e
    return t.hour, t.minute


def resolve_local(date_label: str, time_label: str, zone: str) -> datetime:
    """
    Interpret a wall-clock date and time as being in `zone`; return the UTC instant.

    Wall-clock times skipped by a DST transition are rejected. Repeated
    wall-clock times (DST fall-back) resolve to the first occurrence.
    """
    tz = load_zone(zone)
    d = parse_date_label(date_label)
    hour, minute = _parse_time_label(time_label)

    naive = datetime(d.year, d.month, d.day, hour, minute)
    local = naive.replace(tzinfo=tz, fold=0)
    instant = local.astimezone(timezone.utc)

    if instant.astimezone(tz).replace(tzinfo=None) != naive:
        raise InvalidDateTime(
            f"{date_label} {time_label} does not exist in {zone}",
            date=date_label,
            time=time_label,
            zone=zone,
        )
    return instant


def project(instant: datetime, zone: str) -> Tuple[str, str]:
    local = to_utc(instant).astimezone(load_zone(zone))
    return local.strftime(DATE_FORMAT), local.strftime(TIME_FORMAT)


def display(instant: datetime, zone: str) -> str:
    date_label, time_label = project(instant, zone)
    return f"{date_label} {time_label}"


def add_offset(instant: datetime, amount: int, unit: str = "minutes") -> datetime:
    key = _UNITS.get(unit)
    if key is None:
        raise ValueError(f"unsupported unit {unit!r}")
    return instant + timedelta(**{key: amount})


def is_within_window(now: datetime, target: datetime, tolerance_minutes: int) -> bool:
    """True once `now` has reached `target`, until `tolerance_minutes` after it."""
    elapsed = to_utc(now) - to_utc(target)
    return timedelta(0) <= elapsed < timedelta(minutes=tolerance_minutes)


def to_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_iso(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    return to_utc(dt).isoformat(timespec="seconds").replace("+00:00", "Z")


def parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return to_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError:
        return None


def offered_dates(now: datetime, zone: str, days: int) -> List[str]:
    """Date labels a proposer may pick from, starting today in their zone."""
    today = to_utc(now).astimezone(load_zone(zone)).date()
    return [(today + timedelta(days=i)).strftime(DATE_FORMAT) for i in range(days)]


def offered_times(first_hour: int, last_hour: int) -> List[str]:
    times = []
    for hour in range(first_hour, last_hour + 1):
        times.append(f"{hour:02d}:00")
        times.append(f"{hour:02d}:30")
    return times
