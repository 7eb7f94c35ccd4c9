"""Timestamp parsing and calendar helpers."""

from datetime import date, datetime, timedelta, timezone


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: str | datetime | None) -> datetime | None:
    """Parse an ISO 8601 string (``Z`` suffix allowed) into an aware UTC datetime.

    Returns None for empty or unparseable input.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    token = value.strip()
    if not token:
        return None
    try:
        return ensure_utc(datetime.fromisoformat(token.replace("Z", "+00:00")))
    except ValueError:
        return None


def format_utc(value: datetime) -> str:
    """Serialize as a fixed-width ISO string in UTC, so string order is time order."""
    return ensure_utc(value).isoformat(timespec="microseconds")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def week_start(value: datetime | date) -> date:
    """Monday of the week containing ``value``. Sunday belongs to the previous week."""
    day = value.date() if isinstance(value, datetime) else value
    return day - timedelta(days=day.weekday())
