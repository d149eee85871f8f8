"""Time and timezone utilities."""

from datetime import datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dateutil.relativedelta import MO, relativedelta

UTC = ZoneInfo("UTC")


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


def to_utc(dt: datetime, tz: str) -> datetime:
    """Convert a timezone-aware datetime to UTC."""
    if dt.tzinfo is None:
        # Assume it's in the given timezone
        dt = dt.replace(tzinfo=ZoneInfo(tz))
    return dt.astimezone(UTC)


def from_utc(dt: datetime, tz: str) -> datetime:
    """Convert a UTC datetime to the given timezone."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(ZoneInfo(tz))


def is_valid_timezone(tz: str) -> bool:
    """Check whether tz names a known IANA timezone."""
    try:
        ZoneInfo(tz)
    except (ZoneInfoNotFoundError, ValueError):
        return False
    return True


def is_quiet_hour(hour: int, quiet_start: int, quiet_end: int) -> bool:
    """Check if an hour of day falls inside a quiet window.

    The window is half-open: [quiet_start, quiet_end). A window whose start
    is after its end wraps past midnight (e.g. 22 -> 7). Equal bounds mean
    there is no quiet window at all.
    """
    if quiet_start == quiet_end:
        return False

    # Handle overnight quiet hours (e.g., 22 to 7)
    if quiet_start < quiet_end:
        return quiet_start <= hour < quiet_end
    else:
        return hour >= quiet_start or hour < quiet_end


def is_in_quiet_hours(dt: datetime, quiet_start: int, quiet_end: int, tz: str) -> bool:
    """Check if a datetime falls within quiet hours.

    Args:
        dt: The datetime to check (UTC)
        quiet_start: Start hour (0-23, user-local)
        quiet_end: End hour (0-23, user-local)
        tz: User's timezone

    Returns:
        True if the datetime is within quiet hours
    """
    local_dt = from_utc(dt, tz)
    return is_quiet_hour(local_dt.hour, quiet_start, quiet_end)


def start_of_local_day(dt: datetime, tz: str) -> datetime:
    """Midnight of dt's calendar day in tz, returned in UTC."""
    local_dt = from_utc(dt, tz)
    midnight = local_dt.replace(hour=0, minute=0, second=0, microsecond=0)
    return to_utc(midnight, tz)


def start_of_local_week(dt: datetime, tz: str) -> datetime:
    """Monday midnight of dt's week in tz, returned in UTC."""
    local_dt = from_utc(dt, tz)
    monday = local_dt + relativedelta(
        weekday=MO(-1), hour=0, minute=0, second=0, microsecond=0
    )
    return to_utc(monday, tz)


def hours_between(start: datetime, end: datetime) -> float:
    """Signed number of hours from start to end."""
    return (end - start).total_seconds() / 3600


def days_between(start: datetime, end: datetime) -> float:
    """Signed number of days from start to end."""
    return (end - start).total_seconds() / 86400


def format_duration(minutes: int) -> str:
    """Format minutes into a human-readable duration.

    Examples:
        15 -> "15 minutes"
        60 -> "1 hour"
        90 -> "1.5 hours"
        1440 -> "1 day"
    """
    if minutes < 60:
        return f"{minutes} minute{'s' if minutes != 1 else ''}"
    elif minutes < 1440:
        hours = minutes / 60
        if hours == int(hours):
            return f"{int(hours)} hour{'s' if hours != 1 else ''}"
        return f"{hours:.1f} hours"
    else:
        days = minutes / 1440
        if days == int(days):
            return f"{int(days)} day{'s' if days != 1 else ''}"
        return f"{days:.1f} days"
