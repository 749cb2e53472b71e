import datetime as dt
from zoneinfo import ZoneInfo

from loguru import logger


def to_minutes(hhmm: str) -> int:
    """Convert ``"09:30"`` → ``570`` minutes after midnight."""
    hours, minutes = hhmm.split(":")
    return int(hours) * 60 + int(minutes)


def from_minutes(total: int) -> str:
    """Convert ``570`` → ``"09:30"``; zero-padded so strings keep their ordering."""
    return f"{total // 60:02d}:{total % 60:02d}"


def date_to_long(date: dt.date) -> str:
    """Convert ``date(2026, 3, 16)`` → ``Monday, March 16, 2026`` for message bodies."""
    return f"{date.strftime('%A')}, {date.strftime('%B')} {date.day}, {date.year}"


def time_range(start_time: str, end_time: str) -> str:
    return f"{start_time} - {end_time}"


def resolve_timezone(name: str) -> dt.tzinfo:
    """Resolve a timezone name, falling back to UTC if invalid."""
    try:
        return ZoneInfo(name)
    except Exception:
        logger.warning("Invalid clinic timezone '{}'; defaulting to UTC", name)
        return dt.timezone.utc


def local_start(date: dt.date, start_time: str, tz: dt.tzinfo) -> dt.datetime:
    """Combine a clinic-local date and ``HH:MM`` into an aware UTC datetime."""
    local = dt.datetime.combine(date, dt.time.fromisoformat(start_time), tzinfo=tz)
    return local.astimezone(dt.timezone.utc)
