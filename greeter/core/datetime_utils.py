"""Centralized datetime utilities for consistent timezone handling.

Database columns hold naive UTC datetimes. Everything that reasons about a
user's local day goes through ``zoneinfo`` so DST shifts move the local 09:00
instant correctly instead of assuming a fixed UTC offset.

Usage:
    from greeter.core.datetime_utils import utc_now, is_in_greeting_window

    now = utc_now()
    if is_in_greeting_window(user.location, "09:00", window_minutes=15, now_utc=now):
        ...
"""

import calendar
from datetime import UTC, date, datetime, time, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


def utc_now() -> datetime:
    """Get current UTC time as naive datetime.

    Returns naive datetime for database compatibility.
    """
    return datetime.now(UTC).replace(tzinfo=None)


def aware_utc_now() -> datetime:
    """Get current UTC time as an aware datetime."""
    return datetime.now(UTC)


def to_naive_utc(dt: datetime) -> datetime:
    """Convert a datetime to naive UTC.

    Args:
        dt: Datetime to convert (can be aware or naive)

    Returns:
        Naive UTC datetime for database compatibility
    """
    if dt.tzinfo is None:
        # Already naive, assume it's UTC
        return dt
    return dt.astimezone(UTC).replace(tzinfo=None)


def to_aware_utc(dt: datetime) -> datetime:
    """Attach UTC to a naive datetime, or convert an aware one to UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def is_valid_timezone(tz_name: str) -> bool:
    """Check if a timezone name is valid IANA identifier.

    Args:
        tz_name: Timezone string (e.g., "America/New_York")

    Returns:
        True if valid IANA timezone
    """
    if not tz_name:
        return False
    try:
        ZoneInfo(tz_name)
        return True
    except (ZoneInfoNotFoundError, KeyError, ValueError):
        return False


def parse_birthday(value: str) -> date:
    """Parse a YYYY-MM-DD birthday string.

    Raises:
        ValueError: If the string is not a real calendar date
    """
    return datetime.strptime(value, "%Y-%m-%d").date()


def month_day(d: date) -> str:
    """Format the MM-DD part of a date (the birthday index value)."""
    return d.strftime("%m-%d")


def parse_local_time(value: str) -> time:
    """Parse an HH:MM string into a time object.

    Raises:
        ValueError: If the string is not a valid HH:MM time
    """
    parts = value.split(":")
    if len(parts) != 2:
        raise ValueError(f"Time must be in HH:MM format: {value}")
    return time(hour=int(parts[0]), minute=int(parts[1]))


def birthday_in_year(birthday: date, year: int) -> date:
    """Date on which a birthday is celebrated in the given year.

    Feb 29 birthdays fall on Feb 28 in non-leap years.
    """
    if birthday.month == 2 and birthday.day == 29 and not calendar.isleap(year):
        return date(year, 2, 28)
    return birthday.replace(year=year)


def is_birthday_on(birthday: date, day: date) -> bool:
    """Check whether ``day`` is the celebrated birthday for its year."""
    return birthday_in_year(birthday, day.year) == day


def birthday_md_candidates(day: date) -> list[str]:
    """Birthday index values that are celebrated on ``day``.

    On Feb 28 of a non-leap year this includes "02-29".
    """
    candidates = [month_day(day)]
    if day.month == 2 and day.day == 28 and not calendar.isleap(day.year):
        candidates.append("02-29")
    return candidates


def local_now(timezone: str, now_utc: datetime | None = None) -> datetime:
    """Get the current time in a user's timezone.

    Args:
        timezone: IANA timezone string (e.g., "America/New_York")
        now_utc: Reference instant, defaults to the current time

    Returns:
        Aware datetime in the user's local timezone
    """
    reference = to_aware_utc(now_utc) if now_utc is not None else aware_utc_now()
    return reference.astimezone(ZoneInfo(timezone))


def local_instant_utc(day: date, local_time: time, timezone: str) -> datetime:
    """UTC instant of a local wall-clock time on a given date.

    Non-existent local times (spring-forward gaps) resolve with ``fold=0``
    semantics, which lands after the gap.
    """
    local_dt = datetime.combine(day, local_time, tzinfo=ZoneInfo(timezone))
    return local_dt.astimezone(UTC)


def is_in_greeting_window(
    timezone: str,
    target_time_local: str,
    window_minutes: int = 15,
    now_utc: datetime | None = None,
) -> bool:
    """Check if the user's local time falls in ``[target, target + window)``.

    Args:
        timezone: User's IANA timezone
        target_time_local: Local time in "HH:MM" format (e.g., "09:00")
        window_minutes: Width of the window in minutes
        now_utc: Reference instant, defaults to the current time

    Returns:
        True if the local time is inside the greeting window
    """
    local = local_now(timezone, now_utc)
    start = local_instant_utc(local.date(), parse_local_time(target_time_local), timezone)
    end = start + timedelta(minutes=window_minutes)
    return start <= local.astimezone(UTC) < end


def start_of_local_year(timezone: str, now_utc: datetime | None = None) -> datetime:
    """Naive UTC instant of Jan 1 00:00 in the user's current local year."""
    local = local_now(timezone, now_utc)
    start = datetime(local.year, 1, 1, tzinfo=ZoneInfo(timezone))
    return to_naive_utc(start)
